import json
from collections.abc import Iterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from formpilot.api.deps import get_container, require_owner
from formpilot.api.schemas import ProgressResponse
from formpilot.core.errors import JobNotFound
from formpilot.core.logging import get_logger, job_extra
from formpilot.core.security import verify_session_token
from formpilot.db import crud
from formpilot.db.session import session_scope
from formpilot.services.container import Services

logger = get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["progress"])


def _ensure_owner(services: Services, job_id: str, owner_id: str) -> None:
    with session_scope(services.session_factory) as db:
        if crud.get_job_for_owner(db, job_id, owner_id) is None:
            raise HTTPException(status_code=404, detail="Job not found")


def stream_owner(request: Request) -> str:
    """Bearer header, or ``?token=`` for EventSource clients that cannot set headers."""
    authorization = request.headers.get("authorization")
    if authorization:
        return require_owner(authorization)
    owner_id = verify_session_token(request.query_params.get("token", ""))
    if not owner_id:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return owner_id


def format_event(event: dict) -> str:
    return f"id: {event['id']}\nevent: progress\ndata: {json.dumps(event, default=str)}\n\n"


def progress_events(services: Services, job_id: str, *, last_event_id: int = 0) -> Iterator[str]:
    """History first, then live updates; ends after a terminal update.

    Live events come from the bus. When a keepalive interval passes quietly the
    store is re-read, which also recovers anything the bus dropped.
    """
    subscription = services.progress.subscribe(job_id)
    last_id = last_event_id
    try:
        pending = services.progress.history(job_id)
        while True:
            for event in pending:
                if event["id"] > last_id:
                    last_id = event["id"]
                    yield format_event(event)
                if event["terminal"]:
                    return
            event = subscription.get(timeout=services.settings.progress_stream_keepalive_seconds)
            if event is not None:
                pending = [event]
                continue
            yield ": keepalive\n\n"
            pending = services.progress.history(job_id)
    finally:
        subscription.close()
        logger.info("Progress stream closed", extra=job_extra(job_id, last_event_id=last_id))


@router.get("/{job_id}/progress", response_model=ProgressResponse)
def get_progress(
    job_id: str,
    services: Services = Depends(get_container),
    owner_id: str = Depends(require_owner),
):
    _ensure_owner(services, job_id, owner_id)
    try:
        return {"summary": services.progress.summary(job_id), "updates": services.progress.history(job_id)}
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc


@router.get("/{job_id}/progress/stream")
def stream_progress(
    job_id: str,
    request: Request,
    services: Services = Depends(get_container),
):
    owner_id = stream_owner(request)
    _ensure_owner(services, job_id, owner_id)
    try:
        last_event_id = int(request.headers.get("last-event-id") or 0)
    except ValueError:
        last_event_id = 0
    return StreamingResponse(
        progress_events(services, job_id, last_event_id=last_event_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
