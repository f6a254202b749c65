import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from formpilot.core.clock import ensure_utc, now_utc
from formpilot.core.enums import ArtifactType, JobStatus
from formpilot.db.base import Base

JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only auto-increments INTEGER PRIMARY KEY columns.
SerialType = BigInteger().with_variant(Integer(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware on every backend; SQLite drops the offset on the way back."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


ACTIVE_STATUS_SQL = "status IN ('queued', 'running', 'waiting_for_captcha')"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False, default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc
    )


class SubmissionJob(Base, TimestampMixin):
    __tablename__ = "submission_jobs"
    __table_args__ = (
        Index(
            "uq_submission_jobs_active_per_owner",
            "submission_id",
            "owner_id",
            unique=True,
            postgresql_where=text(ACTIVE_STATUS_SQL),
            sqlite_where=text(ACTIVE_STATUS_SQL),
        ),
        Index("ix_submission_jobs_owner_status", "owner_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    submission_id: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status_enum", values_callable=_enum_values),
        nullable=False,
        default=JobStatus.QUEUED,
    )
    embassy: Mapped[str] = mapped_column(String(255), nullable=False, default="Not specified")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    idempotency_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    form_version: Mapped[str] = mapped_column(String(64), nullable=False, default="ds160")
    field_map: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    metadata_json: Mapped[dict] = mapped_column("metadata", JsonType, nullable=False, default=dict)

    application_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    confirmation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dispatch_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)

    progress_updates = relationship(
        "ProgressUpdate",
        back_populates="job",
        order_by="ProgressUpdate.id",
    )
    challenges = relationship("CaptchaChallenge", back_populates="job")
    artifacts = relationship("JobArtifact", back_populates="job")


class ProgressUpdate(Base):
    __tablename__ = "progress_updates"
    __table_args__ = (Index("ix_progress_updates_job_created", "job_id", "created_at"),)

    id: Mapped[int] = mapped_column(SerialType, primary_key=True, autoincrement=True)
    job_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("submission_jobs.id"), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    step: Mapped[str] = mapped_column(String(64), nullable=False)
    step_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    challenge_image: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    needs_challenge: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    metadata_json: Mapped[dict] = mapped_column("metadata", JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False, default=now_utc)

    job = relationship("SubmissionJob", back_populates="progress_updates")


class CaptchaChallenge(Base, TimestampMixin):
    __tablename__ = "captcha_challenges"
    __table_args__ = (Index("ix_captcha_challenges_job", "job_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("submission_jobs.id"), nullable=False)
    image_ref: Mapped[str] = mapped_column(String(1024), nullable=False)
    solution: Mapped[str | None] = mapped_column(String(64), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    solved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    solved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refresh_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retired_at: Mapped[datetime | None] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False)

    job = relationship("SubmissionJob", back_populates="challenges")


class JobArtifact(Base):
    __tablename__ = "job_artifacts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("submission_jobs.id"), nullable=False)
    artifact_type: Mapped[ArtifactType] = mapped_column(
        Enum(ArtifactType, name="artifact_type_enum", values_callable=_enum_values), nullable=False
    )
    step_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    step_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    storage_ref: Mapped[str] = mapped_column(String(1024), nullable=False)
    checksum_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    metadata_json: Mapped[dict] = mapped_column("metadata", JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False, default=now_utc)

    job = relationship("SubmissionJob", back_populates="artifacts")


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(SerialType, primary_key=True, autoincrement=True)
    actor_type: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False, default=now_utc)
