from sqlalchemy.orm import Session

from formpilot.core.clock import now_utc
from formpilot.core.enums import TERMINAL_JOB_STATUSES, JobStatus
from formpilot.core.errors import InvalidJobTransition, JobNotFound
from formpilot.core.logging import get_logger, job_extra
from formpilot.db import crud, models
from formpilot.db.session import SessionFactory, session_scope

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.WAITING_FOR_CAPTCHA, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.WAITING_FOR_CAPTCHA: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]


def merge_metadata(job: models.SubmissionJob, patch: dict | None) -> dict:
    if JobStatus(job.status) in TERMINAL_JOB_STATUSES:
        raise InvalidJobTransition(f"Job {job.id} is {job.status.value}; metadata is frozen")
    if patch:
        # New dict instance so the JSON column is flagged dirty.
        job.metadata_json = {**(job.metadata_json or {}), **patch}
    return job.metadata_json


def transition(
    db: Session,
    job: models.SubmissionJob,
    target: JobStatus,
    *,
    error_code: str | None = None,
    error_message: str | None = None,
    metadata: dict | None = None,
) -> models.SubmissionJob:
    current = JobStatus(job.status)
    target = JobStatus(target)
    if current == target and current not in TERMINAL_JOB_STATUSES:
        merge_metadata(job, metadata)
        db.flush()
        return job
    if not can_transition(current, target):
        raise InvalidJobTransition(f"Cannot move job {job.id} from {current.value} to {target.value}")

    merge_metadata(job, metadata)
    now = now_utc()
    job.status = target
    if target == JobStatus.RUNNING and job.started_at is None:
        job.started_at = now
    if target in TERMINAL_JOB_STATUSES:
        job.finished_at = now
    if error_code is not None:
        job.error_code = error_code
        job.error_message = error_message or error_code
    db.flush()
    logger.info(
        "Job status changed",
        extra=job_extra(job.id, previous=current.value, status=target.value, error_code=error_code),
    )
    return job


class JobStateMachine:
    """Row-locked status and metadata writes for callers that hold no session."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    def move(
        self,
        job_id,
        target: JobStatus,
        *,
        error_code: str | None = None,
        error_message: str | None = None,
        metadata: dict | None = None,
    ) -> models.SubmissionJob:
        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id, lock=True)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            return transition(
                db,
                job,
                target,
                error_code=error_code,
                error_message=error_message,
                metadata=metadata,
            )

    def merge(self, job_id, patch: dict) -> dict:
        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id, lock=True)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            merged = dict(merge_metadata(job, patch))
            db.flush()
            return merged

    def status_of(self, job_id) -> JobStatus | None:
        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id)
            return JobStatus(job.status) if job else None

    def load(self, job_id) -> models.SubmissionJob:
        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            return job
