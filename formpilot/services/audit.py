from sqlalchemy.orm import Session

from formpilot.db import models

JOB_ENTITY = "submission_job"
SENSITIVE_KEYS = {"solution", "security_answer", "us_social_security_number", "passport_number", "token", "api_key"}


def redact_sensitive(payload: dict) -> dict:
    """CAPTCHA answers, security answers and identity numbers never reach the audit log."""
    return {key: "[REDACTED]" if key.lower() in SENSITIVE_KEYS else value for key, value in payload.items()}


def audit_job(
    db: Session,
    job_id,
    action: str,
    *,
    actor_type: str,
    actor_id: str | None = None,
    **payload,
) -> models.AuditLog:
    event = models.AuditLog(
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=JOB_ENTITY,
        entity_id=str(job_id),
        payload=redact_sensitive(payload),
    )
    db.add(event)
    db.flush()
    return event
