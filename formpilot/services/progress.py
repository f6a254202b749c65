import redis

from formpilot.core.clock import ensure_utc
from formpilot.core.enums import TERMINAL_PROGRESS_STATUSES, JobStatus
from formpilot.core.errors import JobNotFound
from formpilot.core.logging import get_logger, job_extra
from formpilot.db import crud, models
from formpilot.db.session import SessionFactory, session_scope
from formpilot.services.event_bus import EventBus, Subscription

logger = get_logger(__name__)

FORM_STEP_PREFIX = "form_step_"


def _text(value) -> str:
    return str(getattr(value, "value", value))


def serialize_update(update: models.ProgressUpdate) -> dict:
    created_at = ensure_utc(update.created_at)
    return {
        "id": update.id,
        "job_id": str(update.job_id),
        "step": update.step,
        "step_number": update.step_number,
        "status": update.status,
        "message": update.message,
        "percentage": update.percentage,
        "challenge_image": update.challenge_image,
        "needs_challenge": bool(update.needs_challenge),
        "metadata": update.metadata_json or {},
        "created_at": created_at.isoformat() if created_at else None,
        "terminal": update.status in {s.value for s in TERMINAL_PROGRESS_STATUSES},
    }


class ProgressPublisher:
    """Append-only progress log with fan-out.

    The store is the source of truth; the bus only carries notifications, so a
    lost bus message is recovered by re-reading ``history``.
    """

    def __init__(self, *, session_factory: SessionFactory, bus: EventBus) -> None:
        self.session_factory = session_factory
        self.bus = bus

    def record(
        self,
        job_id,
        *,
        step,
        status,
        message: str = "",
        percentage: int | None = None,
        step_number: int | None = None,
        challenge_image: str | None = None,
        needs_challenge: bool = False,
        metadata: dict | None = None,
    ) -> dict:
        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            floor = crud.max_progress_percentage(db, job.id)
            value = floor if percentage is None else max(floor, min(100, max(0, int(percentage))))
            update = crud.add_progress_update(
                db,
                job_id=job.id,
                owner_id=job.owner_id,
                step=_text(step),
                step_number=step_number,
                status=_text(status),
                message=message,
                percentage=value,
                challenge_image=challenge_image,
                needs_challenge=needs_challenge,
                metadata=metadata or {},
            )
            event = serialize_update(update)

        try:
            self.bus.publish(event["job_id"], event)
        except redis.RedisError:
            logger.warning("Progress publish failed; pull adapter still has it", extra=job_extra(job_id, step=event["step"]))
        return event

    def history(self, job_id) -> list[dict]:
        with session_scope(self.session_factory) as db:
            return [serialize_update(update) for update in crud.list_progress_updates(db, job_id)]

    def summary(self, job_id) -> dict:
        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            updates = [serialize_update(update) for update in crud.list_progress_updates(db, job.id)]
            return build_summary(job, updates)

    def subscribe(self, job_id) -> Subscription:
        return self.bus.subscribe(str(job_id))


def build_summary(job: models.SubmissionJob, updates: list[dict]) -> dict:
    latest = updates[-1] if updates else None
    completed_steps = {
        u["step_number"] for u in updates if u["step"].startswith(FORM_STEP_PREFIX) and u["step_number"] is not None
    }
    waiting = JobStatus(job.status) == JobStatus.WAITING_FOR_CAPTCHA
    captcha_image = None
    if waiting:
        flagged = [u for u in updates if u["needs_challenge"]]
        captcha_image = flagged[-1]["challenge_image"] if flagged else None
    return {
        "job_id": str(job.id),
        "job_status": JobStatus(job.status).value,
        "current_step": latest["step"] if latest else None,
        "current_status": latest["status"] if latest else None,
        "progress_percentage": latest["percentage"] if latest else 0,
        "total_steps": (job.metadata_json or {}).get("total_steps"),
        "completed_steps": len(completed_steps),
        "needs_captcha": waiting,
        "captcha_image": captcha_image,
        "last_update": latest["created_at"] if latest else None,
        "update_count": len(updates),
    }
