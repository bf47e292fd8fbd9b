from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .models import TrackedSound
from .providers.base import (
    InvalidSoundUrl,
    ProviderBlocked,
    ProviderConfigError,
    ProviderError,
    UnsupportedUrlForm,
)
from .providers.factory import ProviderFactory, provider_factory
from .schemas import TrackedSoundRead, TrackSoundRequest, TrackSoundResponse
from .services.sound_tracking import request_sound_refresh, track_sound_from_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sounds"])

SessionDep = Depends(get_session)


def get_provider_factory() -> ProviderFactory:
    return provider_factory()


@router.post("/sounds", response_model=TrackSoundResponse, status_code=status.HTTP_201_CREATED)
async def track_sound(
    payload: TrackSoundRequest,
    session: AsyncSession = SessionDep,
    factory: ProviderFactory = Depends(get_provider_factory),
):
    """Resolve a sound link, start tracking it and queue the first refresh."""
    try:
        provider = factory(payload.platform.value)
        sound, job = await track_sound_from_url(
            session,
            provider,
            workspace_id=payload.workspace_id,
            url=payload.url,
            created_by=payload.created_by,
        )
    except ProviderConfigError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail={"error": str(exc)}) from exc
    except InvalidSoundUrl as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.to_dict()) from exc
    except UnsupportedUrlForm as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_dict()) from exc
    except ProviderBlocked as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_dict()) from exc
    except ProviderError as exc:
        logger.warning(f"[sounds] resolve failed platform={payload.platform.value}: {exc}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_dict()) from exc

    await session.commit()
    return TrackSoundResponse(sound=TrackedSoundRead.model_validate(sound), job_id=job.id)


@router.post("/sounds/{sound_id}/refresh", response_model=dict)
async def refresh_sound(sound_id: int, session: AsyncSession = SessionDep):
    sound = await session.get(TrackedSound, sound_id)
    if not sound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sound not found")
    job = await request_sound_refresh(session, sound)
    await session.commit()
    return {"ok": True, "sound_id": sound.id, "job_id": job.id}
