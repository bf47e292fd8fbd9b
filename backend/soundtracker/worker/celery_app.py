"""
Celery application for out-of-request runner passes.

Broker/backend: Redis (REDIS_URL env).
Default queue: soundtrack.
"""
from celery import Celery

from soundtracker.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "soundtracker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # a pass is bounded by batch size x job timeout; keep headroom over the stale-lock window
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,
    task_default_queue="soundtrack",
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    broker_transport_options={"visibility_timeout": 60 * 60},
)

celery_app.autodiscover_tasks(["soundtracker.worker"])
