from __future__ import annotations

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .settings import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """Base declarative class for SQLAlchemy models."""


engine = create_async_engine(
    settings.async_database_url,
    future=True,
    echo=False,
)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session


_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def dialect_insert(session: AsyncSession, table):
    """INSERT construct with ON CONFLICT support for the session's backend."""
    name = session.get_bind().dialect.name
    try:
        return _DIALECT_INSERTS[name](table)
    except KeyError:
        raise RuntimeError(f"upsert not supported for dialect {name}") from None
