import contextvars
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

# Fields bound for the job the current thread (or Celery task) is working on.
_job_fields: contextvars.ContextVar[dict] = contextvars.ContextVar("formpilot_job_fields", default={})

QUIET_LOGGERS = ("httpx", "httpcore", "celery.worker.strategy")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
            **_job_fields.get(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def job_extra(job_id, **fields) -> dict:
    """Structured fields for a job-scoped log line."""
    return {"extra": {"job_id": str(job_id), **fields}}


@contextmanager
def job_context(job_id, **fields) -> Iterator[None]:
    """Stamp every log line emitted inside the block with ``job_id`` and ``fields``."""
    token = _job_fields.set({**_job_fields.get(), "job_id": str(job_id), **fields})
    try:
        yield
    finally:
        _job_fields.reset(token)
