import threading
import time
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.orm import Session

from formpilot.automation.steps import StepPlan, validate_plan
from formpilot.core.config import Settings
from formpilot.core.enums import TERMINAL_JOB_STATUSES, JobStatus, ProgressStatus, ProgressStep
from formpilot.core.errors import InvalidJobTransition, InvalidSubmission, JobNotFound
from formpilot.core.logging import get_logger, job_extra
from formpilot.db import crud, models
from formpilot.db.session import SessionFactory, session_scope
from formpilot.services.artifacts import ArtifactCapture
from formpilot.services.audit import audit_job
from formpilot.services.cancellation import CancellationRegistry
from formpilot.services.job_state import JobStateMachine, merge_metadata, transition
from formpilot.services.progress import ProgressPublisher, build_summary, serialize_update

logger = get_logger(__name__)

SUPERSEDED = "SUPERSEDED"
SUPERSEDED_MESSAGE = "Job superseded by new submission request"
DISPATCH_FAILED = "DISPATCH_FAILED"
MAX_STORED_WARNINGS = 50
SUBMISSION_LOCK_STRIPES = 64
WORKER_UPDATE_KEYS = {"status", "metadata", "application_id", "confirmation_id", "error_code", "error_message"}


def clamp_priority(priority: int | None) -> int:
    return max(1, min(10, int(priority if priority is not None else 5)))


def generate_idempotency_key(submission_id: str, owner_id: str) -> str:
    return f"{submission_id}-{owner_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class JobOrchestrator:
    """Entry point for submissions and the only writer of job status outside a running engine."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        settings: Settings,
        plan: StepPlan,
        progress: ProgressPublisher,
        artifacts: ArtifactCapture,
        cancellations: CancellationRegistry,
        dispatcher=None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.plan = plan
        self.progress = progress
        self.artifacts = artifacts
        self.cancellations = cancellations
        self.dispatcher = dispatcher
        self.states = JobStateMachine(session_factory)
        self._key_locks = [threading.Lock() for _ in range(SUBMISSION_LOCK_STRIPES)]

    def _key_lock(self, submission_id: str, owner_id: str) -> threading.Lock:
        return self._key_locks[hash((submission_id, owner_id)) % SUBMISSION_LOCK_STRIPES]

    @contextmanager
    def _submission_lock(self, submission_id: str, owner_id: str) -> Iterator[None]:
        with self._key_lock(submission_id, owner_id):
            yield

    def _advisory_lock(self, db: Session, submission_id: str, owner_id: str) -> None:
        # Serialises submitters in other processes; released at commit.
        if db.get_bind().dialect.name == "postgresql":
            db.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": f"{submission_id}:{owner_id}"},
            )

    def submit(
        self,
        *,
        submission_id: str,
        owner_id: str,
        field_map: Mapping,
        embassy: str | None = None,
        priority: int | None = None,
        idempotency_key: str | None = None,
        created_via: str = "api",
    ) -> tuple[models.SubmissionJob, bool]:
        """Queue a new job, superseding any active one for the same submission.

        Returns ``(job, created)``; ``created`` is False when a client-supplied
        idempotency key matched an existing job.
        """
        submission_id = (submission_id or "").strip()
        owner_id = (owner_id or "").strip()
        if not submission_id or not owner_id:
            raise InvalidSubmission("submission_id and owner_id are required")
        if not isinstance(field_map, Mapping) or not field_map:
            raise InvalidSubmission("field_map must be a non-empty object")

        warnings = validate_plan(self.plan, field_map)
        job_id = uuid.uuid4()
        superseded: list[str] = []

        with self._submission_lock(submission_id, owner_id):
            with session_scope(self.session_factory) as db:
                self._advisory_lock(db, submission_id, owner_id)
                if idempotency_key:
                    existing = crud.get_job_by_idempotency_key(db, idempotency_key)
                    if existing is not None:
                        if existing.owner_id != owner_id or existing.submission_id != submission_id:
                            raise InvalidSubmission("Idempotency key already used for a different submission")
                        logger.info("Idempotent replay", extra=job_extra(existing.id))
                        return existing, False

                for old in crud.list_active_jobs_for_submission(
                    db, submission_id=submission_id, owner_id=owner_id, lock=True
                ):
                    transition(
                        db,
                        old,
                        JobStatus.FAILED,
                        error_code=SUPERSEDED,
                        error_message=SUPERSEDED_MESSAGE,
                        metadata={"superseded": True, "superseded_by": str(job_id)},
                    )
                    audit_job(
                        db,
                        old.id,
                        "job_superseded",
                        actor_type="system",
                        actor_id=owner_id,
                        superseded_by=str(job_id),
                    )
                    superseded.append(str(old.id))

                job = crud.create_job(
                    db,
                    job_id=job_id,
                    submission_id=submission_id,
                    owner_id=owner_id,
                    embassy=(embassy or "").strip() or "Not specified",
                    priority=clamp_priority(priority),
                    idempotency_key=idempotency_key or generate_idempotency_key(submission_id, owner_id),
                    form_version=self.plan.form_version,
                    field_map=dict(field_map),
                    metadata={
                        "total_steps": self.plan.total_steps,
                        "created_via": created_via,
                        "local_validation": {
                            "warning_count": len(warnings),
                            "warnings": [w.as_dict() for w in warnings[:MAX_STORED_WARNINGS]],
                        },
                    },
                )
                audit_job(
                    db,
                    job.id,
                    "job_submitted",
                    actor_type="user",
                    actor_id=owner_id,
                    submission_id=submission_id,
                    superseded=superseded,
                )

        for old_id in superseded:
            self.cancellations.cancel(old_id)
            self.progress.record(
                old_id,
                step=ProgressStep.JOB_SUPERSEDED,
                status=ProgressStatus.FAILED,
                message=SUPERSEDED_MESSAGE,
                metadata={"error_code": SUPERSEDED, "superseded_by": str(job_id)},
            )
        self.progress.record(
            job.id,
            step=ProgressStep.JOB_CREATED,
            status=ProgressStatus.PENDING,
            message="Job queued",
            percentage=0,
            metadata={"priority": job.priority, "local_warning_count": len(warnings)},
        )
        if warnings:
            logger.warning(
                "Submission has local completeness warnings",
                extra=job_extra(job.id, warning_count=len(warnings)),
            )
        logger.info("Job submitted", extra=job_extra(job.id, superseded=superseded))
        return self._dispatch(job), True

    def _dispatch(self, job: models.SubmissionJob) -> models.SubmissionJob:
        if self.dispatcher is None:
            logger.warning("No dispatcher configured; job left queued", extra=job_extra(job.id))
            return job
        try:
            ref = self.dispatcher.dispatch(str(job.id), priority=job.priority)
        except Exception as exc:
            logger.exception("Dispatch failed", extra=job_extra(job.id))
            return self.fail(
                job.id, exc, code=DISPATCH_FAILED, message=f"Could not hand job to a worker: {exc}", phase="dispatch"
            ) or self.states.load(job.id)
        with session_scope(self.session_factory) as db:
            current = crud.get_job(db, job.id, lock=True)
            current.dispatch_ref = ref
            return current

    def fail(
        self,
        job_id,
        exc: Exception,
        *,
        code: str | None = None,
        message: str | None = None,
        driver=None,
        phase: str = "worker",
    ) -> models.SubmissionJob | None:
        """Fail a job from outside the step engine, with a page snapshot when a session is open.

        Returns None when the job had already finished; its outcome is left alone.
        """
        code = code or getattr(exc, "code", None) or type(exc).__name__
        try:
            job = self.states.move(
                job_id, JobStatus.FAILED, error_code=code, error_message=str(exc), metadata={"failed_phase": phase}
            )
        except InvalidJobTransition:
            logger.warning("Job already terminal; failure not recorded", extra=job_extra(job_id, error_code=code))
            return None

        artifact = None
        if driver is not None:
            artifact = self.artifacts.capture_failure(
                job_id, driver=driver, step_name=phase, reason=code, metadata={"failed_phase": phase}
            )
        self.progress.record(
            job_id,
            step=ProgressStep.JOB_FAILED,
            status=ProgressStatus.FAILED,
            message=message or f"Job failed: {exc}",
            metadata={"error_code": code, "artifact_id": str(artifact.id) if artifact else None},
        )
        logger.error("Job failed", extra=job_extra(job_id, error_code=code, phase=phase))
        return job

    def cancel(self, job_id, *, owner_id: str | None = None, actor_type: str = "user") -> dict:
        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id, lock=True)
            if job is None or (owner_id is not None and job.owner_id != owner_id):
                raise JobNotFound(f"Job {job_id} not found")
            if JobStatus(job.status) in TERMINAL_JOB_STATUSES:
                raise InvalidJobTransition(f"Job is already {JobStatus(job.status).value}")
            transition(db, job, JobStatus.CANCELLED, metadata={"cancelled_by": actor_type})
            audit_job(
                db,
                job.id,
                "job_cancelled",
                actor_type=actor_type,
                actor_id=owner_id,
            )

        session_cancelled = self.cancellations.cancel(job.id)
        self.progress.record(
            job.id,
            step=ProgressStep.JOB_CANCELLED,
            status=ProgressStatus.CANCELLED,
            message="Job cancelled",
            metadata={"session_cancelled": session_cancelled},
        )
        logger.info("Job cancelled", extra=job_extra(job.id, session_cancelled=session_cancelled))
        return {"job": job, "session_cancelled": session_cancelled}

    def get_status(self, job_id, *, owner_id: str | None = None, progress_limit: int = 20) -> dict:
        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id)
            if job is None or (owner_id is not None and job.owner_id != owner_id):
                raise JobNotFound(f"Job {job_id} not found")
            history = [serialize_update(update) for update in crud.list_progress_updates(db, job.id)]
            artifacts = crud.list_artifacts(db, job.id)
            return {
                "job": job,
                "summary": build_summary(job, history),
                "progress": history[-progress_limit:],
                "artifacts": artifacts,
            }

    def list(
        self,
        owner_id: str,
        *,
        status: JobStatus | None = None,
        submission_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict]:
        with session_scope(self.session_factory) as db:
            jobs = crud.list_jobs(
                db, owner_id=owner_id, status=status, submission_id=submission_id, limit=limit, offset=offset
            )
            rows = []
            for job in jobs:
                latest = crud.get_latest_progress_update(db, job.id)
                rows.append({"job": job, "latest_progress": serialize_update(latest) if latest else None})
            return rows

    def apply_worker_update(self, job_id, patch: Mapping, *, actor_id: str = "worker") -> models.SubmissionJob:
        """Fold a worker's report into the job. Metadata merges per key; it is never replaced."""
        unknown = set(patch) - WORKER_UPDATE_KEYS
        if unknown:
            raise InvalidSubmission(f"Unsupported worker update fields: {', '.join(sorted(unknown))}")
        metadata = patch.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise InvalidSubmission("metadata must be an object")

        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id, lock=True)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            if JobStatus(job.status) in TERMINAL_JOB_STATUSES:
                raise InvalidJobTransition(f"Job is already {JobStatus(job.status).value}")
            if patch.get("application_id"):
                job.application_id = str(patch["application_id"])
            if patch.get("confirmation_id"):
                job.confirmation_id = str(patch["confirmation_id"])
            if patch.get("status"):
                transition(
                    db,
                    job,
                    JobStatus(patch["status"]),
                    error_code=patch.get("error_code"),
                    error_message=patch.get("error_message"),
                    metadata=dict(metadata),
                )
            else:
                merge_metadata(job, dict(metadata))
            audit_job(
                db,
                job.id,
                "worker_update",
                actor_type="worker",
                actor_id=actor_id,
                fields=sorted(patch),
                metadata_keys=sorted(metadata),
            )
            db.flush()
            return job
