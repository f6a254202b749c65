import json
import logging

import redis

from formpilot.core import rate_limit
from formpilot.core.logging import JsonFormatter, job_context, job_extra
from formpilot.db import crud
from formpilot.db.session import session_scope
from formpilot.services.audit import audit_job, redact_sensitive


def _record(message, **kwargs):
    record = logging.LogRecord("formpilot.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in kwargs.items():
        setattr(record, key, value)
    return record


def test_json_lines_carry_bound_job_fields():
    formatter = JsonFormatter()

    with job_context("job-1", worker="thread"):
        inside = json.loads(formatter.format(_record("Step filled", **job_extra("job-1", step=3))))
    outside = json.loads(formatter.format(_record("Idle")))

    assert inside["job_id"] == "job-1"
    assert inside["worker"] == "thread"
    assert inside["step"] == 3
    assert inside["message"] == "Step filled"
    assert "job_id" not in outside


def test_audit_rows_never_hold_answers(services, field_map):
    job, _ = services.orchestrator.submit(submission_id="sub-1", owner_id="owner-1", field_map=field_map)

    with session_scope(services.session_factory) as db:
        audit_job(db, job.id, "manual_check", actor_type="user", solution="ABCD12", attempts=1)
    with session_scope(services.session_factory) as db:
        payloads = [event.payload for event in crud.list_audit_events(db, entity_id=str(job.id))]

    assert {"solution": "[REDACTED]", "attempts": 1} in payloads
    assert redact_sensitive({"Security_Answer": "QWERTY"}) == {"Security_Answer": "[REDACTED]"}


def test_rate_limiter_without_redis(monkeypatch):
    def unreachable(*args, **kwargs):
        raise redis.ConnectionError("no redis")

    monkeypatch.setattr(rate_limit.redis, "from_url", unreachable)
    limiter = rate_limit.RateLimiter()

    assert [limiter.allow("captcha-solve:owner-1", 2, 60) for _ in range(3)] == [True, True, False]
    assert limiter.allow("captcha-solve:owner-2", 2, 60)
