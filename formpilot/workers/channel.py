import httpx

from formpilot.core.config import Settings
from formpilot.core.errors import InvalidJobTransition, JobCancelled, JobNotFound
from formpilot.core.logging import get_logger, job_extra

logger = get_logger(__name__)

WORKER_SECRET_HEADER = "X-Worker-Secret"


def build_patch(
    *,
    application_id: str | None = None,
    confirmation_id: str | None = None,
    metadata: dict | None = None,
) -> dict:
    patch: dict = {}
    if application_id:
        patch["application_id"] = application_id
    if confirmation_id:
        patch["confirmation_id"] = confirmation_id
    if metadata:
        patch["metadata"] = dict(metadata)
    return patch


class DirectWorkerChannel:
    """Worker updates applied in-process through the orchestrator."""

    def __init__(self, orchestrator) -> None:
        self.orchestrator = orchestrator

    def push(self, job_id, *, application_id=None, confirmation_id=None, metadata=None) -> None:
        patch = build_patch(application_id=application_id, confirmation_id=confirmation_id, metadata=metadata)
        try:
            self.orchestrator.apply_worker_update(job_id, patch)
        except (InvalidJobTransition, JobNotFound) as exc:
            # The job was finished elsewhere; nothing further may be written.
            raise JobCancelled(f"Job {job_id} no longer accepts updates") from exc


class HttpWorkerChannel:
    """Worker updates posted to the API's internal endpoint."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self.base_url = settings.worker_update_base_url.rstrip("/")
        self.secret = settings.worker_shared_secret
        self.client = client or httpx.Client(timeout=settings.worker_update_timeout_seconds)

    def push(self, job_id, *, application_id=None, confirmation_id=None, metadata=None) -> None:
        patch = build_patch(application_id=application_id, confirmation_id=confirmation_id, metadata=metadata)
        response = self.client.post(
            f"{self.base_url}/internal/jobs/{job_id}/worker-update",
            json=patch,
            headers={WORKER_SECRET_HEADER: self.secret},
        )
        if response.status_code in (404, 409):
            raise JobCancelled(f"Job {job_id} no longer accepts updates")
        if response.is_error:
            logger.error(
                "Worker update rejected",
                extra=job_extra(job_id, status_code=response.status_code, body=response.text[:500]),
            )
        response.raise_for_status()


def build_channel(settings: Settings, orchestrator):
    if settings.worker_update_base_url:
        return HttpWorkerChannel(settings)
    return DirectWorkerChannel(orchestrator)
