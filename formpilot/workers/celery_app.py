import logging

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from formpilot.core.config import get_settings
from formpilot.core.logging import setup_logging
from formpilot.workers.schedules import CELERY_BEAT_SCHEDULE

settings = get_settings()

SUBMISSION_QUEUE = "submissions"
HOUSEKEEPING_QUEUE = "housekeeping"

celery = Celery(
    "formpilot",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["formpilot.workers.tasks"],
)

celery.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_default_queue=SUBMISSION_QUEUE,
    task_routes={
        "formpilot.workers.tasks.run_submission_job": {"queue": SUBMISSION_QUEUE},
        "formpilot.workers.tasks.expire_stale_challenges": {"queue": HOUSEKEEPING_QUEUE},
        "formpilot.workers.tasks.cleanup_old_artifacts": {"queue": HOUSEKEEPING_QUEUE},
    },
    # Redis priorities: 0 is served first.
    broker_transport_options={"priority_steps": list(range(10)), "queue_order_strategy": "priority"},
    # One long browser session per task; do not prefetch queued jobs behind it.
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_concurrency=settings.worker_concurrency,
    beat_schedule=CELERY_BEAT_SCHEDULE,
)


@celery_setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    setup_logging(logging.DEBUG if settings.debug else logging.INFO)
