"""initial schema"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_STATUS_SQL = "status IN ('queued', 'running', 'waiting_for_captcha')"


def upgrade() -> None:
    job_status_enum = sa.Enum(
        "queued",
        "running",
        "waiting_for_captcha",
        "completed",
        "failed",
        "cancelled",
        name="job_status_enum",
    )
    artifact_type_enum = sa.Enum("screenshot", "html", "log", name="artifact_type_enum")

    op.create_table(
        "submission_jobs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("submission_id", sa.String(length=255), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("status", job_status_enum, nullable=False),
        sa.Column("embassy", sa.String(length=255), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=512), nullable=False),
        sa.Column("form_version", sa.String(length=64), nullable=False),
        sa.Column("field_map", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("application_id", sa.String(length=64), nullable=True),
        sa.Column("confirmation_id", sa.String(length=64), nullable=True),
        sa.Column("dispatch_ref", sa.String(length=255), nullable=True),
        sa.Column("error_code", sa.String(length=128), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(
        "uq_submission_jobs_active_per_owner",
        "submission_jobs",
        ["submission_id", "owner_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_STATUS_SQL),
    )
    op.create_index("ix_submission_jobs_owner_status", "submission_jobs", ["owner_id", "status"])

    op.create_table(
        "progress_updates",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.UUID(), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("step", sa.String(length=64), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("percentage", sa.Integer(), nullable=False),
        sa.Column("challenge_image", sa.String(length=1024), nullable=True),
        sa.Column("needs_challenge", sa.Boolean(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["submission_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_progress_updates_job_created", "progress_updates", ["job_id", "created_at"])

    op.create_table(
        "captcha_challenges",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("job_id", sa.UUID(), nullable=False),
        sa.Column("image_ref", sa.String(length=1024), nullable=False),
        sa.Column("solution", sa.String(length=64), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("solved", sa.Boolean(), nullable=False),
        sa.Column("solved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("refresh_requested", sa.Boolean(), nullable=False),
        sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["submission_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_captcha_challenges_job", "captcha_challenges", ["job_id", "created_at"])

    op.create_table(
        "job_artifacts",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("job_id", sa.UUID(), nullable=False),
        sa.Column("artifact_type", artifact_type_enum, nullable=False),
        sa.Column("step_name", sa.String(length=64), nullable=True),
        sa.Column("step_number", sa.Integer(), nullable=True),
        sa.Column("storage_ref", sa.String(length=1024), nullable=False),
        sa.Column("checksum_sha256", sa.String(length=64), nullable=False),
        sa.Column("mime_type", sa.String(length=100), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["submission_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("job_artifacts")
    op.drop_index("ix_captcha_challenges_job", table_name="captcha_challenges")
    op.drop_table("captcha_challenges")
    op.drop_index("ix_progress_updates_job_created", table_name="progress_updates")
    op.drop_table("progress_updates")
    op.drop_index("ix_submission_jobs_owner_status", table_name="submission_jobs")
    op.drop_index("uq_submission_jobs_active_per_owner", table_name="submission_jobs")
    op.drop_table("submission_jobs")
    sa.Enum(name="artifact_type_enum").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="job_status_enum").drop(op.get_bind(), checkfirst=True)
