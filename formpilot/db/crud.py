import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from formpilot.core.enums import ACTIVE_JOB_STATUSES, JobStatus
from formpilot.db import models


def _as_uuid(value) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def get_job(db: Session, job_id, *, lock: bool = False) -> Optional[models.SubmissionJob]:
    key = _as_uuid(job_id)
    if key is None:
        return None
    stmt = select(models.SubmissionJob).where(models.SubmissionJob.id == key)
    if lock:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def get_job_for_owner(db: Session, job_id, owner_id: str) -> Optional[models.SubmissionJob]:
    job = get_job(db, job_id)
    if job is None or job.owner_id != owner_id:
        return None
    return job


def get_job_by_idempotency_key(db: Session, idempotency_key: str) -> Optional[models.SubmissionJob]:
    return db.scalar(
        select(models.SubmissionJob).where(models.SubmissionJob.idempotency_key == idempotency_key)
    )


def list_active_jobs_for_submission(
    db: Session, *, submission_id: str, owner_id: str, lock: bool = False
) -> list[models.SubmissionJob]:
    stmt = (
        select(models.SubmissionJob)
        .where(models.SubmissionJob.submission_id == submission_id)
        .where(models.SubmissionJob.owner_id == owner_id)
        .where(models.SubmissionJob.status.in_(list(ACTIVE_JOB_STATUSES)))
        .order_by(models.SubmissionJob.created_at)
    )
    if lock:
        stmt = stmt.with_for_update()
    return list(db.scalars(stmt))


def list_jobs(
    db: Session,
    *,
    owner_id: str,
    status: JobStatus | None = None,
    submission_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[models.SubmissionJob]:
    stmt = select(models.SubmissionJob).where(models.SubmissionJob.owner_id == owner_id)
    if status is not None:
        stmt = stmt.where(models.SubmissionJob.status == status)
    if submission_id:
        stmt = stmt.where(models.SubmissionJob.submission_id == submission_id)
    stmt = stmt.order_by(models.SubmissionJob.created_at.desc()).limit(limit).offset(offset)
    return list(db.scalars(stmt))


def create_job(
    db: Session,
    *,
    job_id: uuid.UUID,
    submission_id: str,
    owner_id: str,
    embassy: str,
    priority: int,
    idempotency_key: str,
    form_version: str,
    field_map: dict,
    metadata: dict,
) -> models.SubmissionJob:
    job = models.SubmissionJob(
        id=job_id,
        submission_id=submission_id,
        owner_id=owner_id,
        status=JobStatus.QUEUED,
        embassy=embassy,
        priority=priority,
        idempotency_key=idempotency_key,
        form_version=form_version,
        field_map=field_map,
        metadata_json=metadata,
    )
    db.add(job)
    db.flush()
    return job


def add_progress_update(
    db: Session,
    *,
    job_id: uuid.UUID,
    owner_id: str,
    step: str,
    step_number: int | None,
    status: str,
    message: str,
    percentage: int,
    challenge_image: str | None,
    needs_challenge: bool,
    metadata: dict,
) -> models.ProgressUpdate:
    update = models.ProgressUpdate(
        job_id=job_id,
        owner_id=owner_id,
        step=step,
        step_number=step_number,
        status=status,
        message=message,
        percentage=percentage,
        challenge_image=challenge_image,
        needs_challenge=needs_challenge,
        metadata_json=metadata,
    )
    db.add(update)
    db.flush()
    return update


def list_progress_updates(db: Session, job_id, *, limit: int | None = None) -> list[models.ProgressUpdate]:
    key = _as_uuid(job_id)
    if key is None:
        return []
    stmt = select(models.ProgressUpdate).where(models.ProgressUpdate.job_id == key)
    if limit is not None:
        stmt = stmt.order_by(models.ProgressUpdate.created_at.desc(), models.ProgressUpdate.id.desc()).limit(limit)
        return list(reversed(list(db.scalars(stmt))))
    stmt = stmt.order_by(models.ProgressUpdate.created_at, models.ProgressUpdate.id)
    return list(db.scalars(stmt))


def get_latest_progress_update(db: Session, job_id) -> Optional[models.ProgressUpdate]:
    latest = list_progress_updates(db, job_id, limit=1)
    return latest[0] if latest else None


def max_progress_percentage(db: Session, job_id) -> int:
    value = db.scalar(
        select(func.max(models.ProgressUpdate.percentage)).where(models.ProgressUpdate.job_id == _as_uuid(job_id))
    )
    return int(value or 0)


def get_challenge(db: Session, challenge_id, *, lock: bool = False) -> Optional[models.CaptchaChallenge]:
    key = _as_uuid(challenge_id)
    if key is None:
        return None
    stmt = select(models.CaptchaChallenge).where(models.CaptchaChallenge.id == key)
    if lock:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def get_latest_challenge(db: Session, job_id, *, lock: bool = False) -> Optional[models.CaptchaChallenge]:
    stmt = (
        select(models.CaptchaChallenge)
        .where(models.CaptchaChallenge.job_id == _as_uuid(job_id))
        .order_by(models.CaptchaChallenge.created_at.desc())
        .limit(1)
    )
    if lock:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def get_open_challenge(db: Session, job_id, *, lock: bool = False) -> Optional[models.CaptchaChallenge]:
    """Latest challenge that is neither solved nor retired. Expiry is checked by the caller."""
    stmt = (
        select(models.CaptchaChallenge)
        .where(models.CaptchaChallenge.job_id == _as_uuid(job_id))
        .where(models.CaptchaChallenge.solved.is_(False))
        .where(models.CaptchaChallenge.retired_at.is_(None))
        .order_by(models.CaptchaChallenge.created_at.desc())
        .limit(1)
    )
    if lock:
        stmt = stmt.with_for_update()
    return db.scalar(stmt)


def list_open_challenges_for_owner(db: Session, owner_id: str, *, now: datetime) -> list[models.CaptchaChallenge]:
    stmt = (
        select(models.CaptchaChallenge)
        .join(models.SubmissionJob, models.SubmissionJob.id == models.CaptchaChallenge.job_id)
        .where(models.SubmissionJob.owner_id == owner_id)
        .where(models.SubmissionJob.status.in_(list(ACTIVE_JOB_STATUSES)))
        .where(models.CaptchaChallenge.solved.is_(False))
        .where(models.CaptchaChallenge.retired_at.is_(None))
        .where(models.CaptchaChallenge.expires_at > now)
        .order_by(models.CaptchaChallenge.created_at.desc())
    )
    return list(db.scalars(stmt))


def list_stale_challenges(db: Session, *, now: datetime) -> list[models.CaptchaChallenge]:
    stmt = (
        select(models.CaptchaChallenge)
        .where(models.CaptchaChallenge.solved.is_(False))
        .where(models.CaptchaChallenge.retired_at.is_(None))
        .where(models.CaptchaChallenge.expires_at <= now)
    )
    return list(db.scalars(stmt))


def add_challenge(
    db: Session,
    *,
    job_id: uuid.UUID,
    image_ref: str,
    attempts: int,
    expires_at: datetime,
) -> models.CaptchaChallenge:
    challenge = models.CaptchaChallenge(
        job_id=job_id,
        image_ref=image_ref,
        attempts=attempts,
        expires_at=expires_at,
    )
    db.add(challenge)
    db.flush()
    return challenge


def add_artifact(
    db: Session,
    *,
    job_id: uuid.UUID,
    artifact_type,
    step_name: str | None,
    step_number: int | None,
    storage_ref: str,
    checksum_sha256: str,
    mime_type: str,
    size_bytes: int,
    metadata: dict,
) -> models.JobArtifact:
    artifact = models.JobArtifact(
        job_id=job_id,
        artifact_type=artifact_type,
        step_name=step_name,
        step_number=step_number,
        storage_ref=storage_ref,
        checksum_sha256=checksum_sha256,
        mime_type=mime_type,
        size_bytes=size_bytes,
        metadata_json=metadata,
    )
    db.add(artifact)
    db.flush()
    return artifact


def get_artifact(db: Session, artifact_id) -> Optional[models.JobArtifact]:
    key = _as_uuid(artifact_id)
    if key is None:
        return None
    return db.get(models.JobArtifact, key)


def list_artifacts(db: Session, job_id) -> list[models.JobArtifact]:
    stmt = (
        select(models.JobArtifact)
        .where(models.JobArtifact.job_id == _as_uuid(job_id))
        .order_by(models.JobArtifact.created_at)
    )
    return list(db.scalars(stmt))


def list_artifacts_older_than(db: Session, cutoff: datetime) -> list[models.JobArtifact]:
    return list(db.scalars(select(models.JobArtifact).where(models.JobArtifact.created_at < cutoff)))


def delete_artifacts(db: Session, artifact_ids: list[uuid.UUID]) -> int:
    if not artifact_ids:
        return 0
    result = db.execute(delete(models.JobArtifact).where(models.JobArtifact.id.in_(artifact_ids)))
    return int(result.rowcount or 0)


def list_audit_events(db: Session, *, entity_id: str | None = None, limit: int = 100) -> list[models.AuditLog]:
    stmt = select(models.AuditLog).order_by(models.AuditLog.created_at.desc()).limit(limit)
    if entity_id:
        stmt = stmt.where(models.AuditLog.entity_id == entity_id)
    return list(db.scalars(stmt))
