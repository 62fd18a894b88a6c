"""
Celery Worker Configuration

    celery -A roastme.worker worker --loglevel=info
"""

from celery import Celery

from roastme.core.config import settings

celery_app = Celery(
    "roastme",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # analysis + up to generation_max_attempts image calls with backoff
    task_time_limit=settings.stuck_generation_minutes * 60,
    task_soft_time_limit=settings.stuck_generation_minutes * 60 - 60,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.autodiscover_tasks(["roastme.services"])
