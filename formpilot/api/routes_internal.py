from fastapi import APIRouter, Depends, HTTPException

from formpilot.api.deps import get_container, http_error, require_worker
from formpilot.api.schemas import JobResponse, WorkerUpdateRequest
from formpilot.core.errors import FormPilotError, InvalidJobTransition
from formpilot.services.container import Services

router = APIRouter(prefix="/internal", tags=["internal"])


@router.post("/jobs/{job_id}/worker-update", response_model=JobResponse)
def worker_update(
    job_id: str,
    payload: WorkerUpdateRequest,
    services: Services = Depends(get_container),
    worker: str = Depends(require_worker),
):
    patch = payload.model_dump(exclude_none=True)
    if not patch.get("metadata"):
        patch.pop("metadata", None)
    try:
        return services.orchestrator.apply_worker_update(job_id, patch, actor_id=worker)
    except InvalidJobTransition as exc:
        # Terminal jobs are closed to workers; tell them to stop.
        raise HTTPException(status_code=409, detail={"code": exc.code, "message": exc.message}) from exc
    except FormPilotError as exc:
        raise http_error(exc) from exc
