from formpilot.core.logging import get_logger
from formpilot.services.container import get_services
from formpilot.workers.celery_app import celery
from formpilot.workers.runner import run_job

logger = get_logger(__name__)


def run_submission_job_sync(job_id: str) -> dict:
    return run_job(get_services(), job_id)


def expire_stale_challenges_sync() -> dict:
    expired = get_services().challenges.expire_stale()
    if expired:
        logger.info("Expired stale CAPTCHA challenges", extra={"extra": {"expired": expired}})
    return {"ok": True, "expired": expired}


def cleanup_old_artifacts_sync(days: int | None = None) -> dict:
    services = get_services()
    removed = services.artifacts.cleanup_older_than(days or services.settings.artifact_retention_days)
    return {"ok": True, "removed": removed}


@celery.task(name="formpilot.workers.tasks.run_submission_job")
def run_submission_job(job_id: str):
    return run_submission_job_sync(job_id)


@celery.task(name="formpilot.workers.tasks.expire_stale_challenges")
def expire_stale_challenges():
    return expire_stale_challenges_sync()


@celery.task(name="formpilot.workers.tasks.cleanup_old_artifacts")
def cleanup_old_artifacts(days: int | None = None):
    return cleanup_old_artifacts_sync(days)
