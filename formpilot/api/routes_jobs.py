from fastapi import APIRouter, Depends, Header, HTTPException, Response, status

from formpilot.api.deps import get_container, http_error, require_owner
from formpilot.api.schemas import (
    ArtifactResponse,
    CancelResponse,
    JobDetailResponse,
    JobListItem,
    JobResponse,
    JobSubmitRequest,
)
from formpilot.core.enums import JobStatus
from formpilot.core.errors import FormPilotError, JobNotFound
from formpilot.db import crud
from formpilot.db.session import session_scope
from formpilot.services.container import Services

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def submit_job(
    payload: JobSubmitRequest,
    response: Response,
    idempotency_key: str | None = Header(default=None),
    services: Services = Depends(get_container),
    owner_id: str = Depends(require_owner),
):
    try:
        job, created = services.orchestrator.submit(
            submission_id=payload.submission_id,
            owner_id=owner_id,
            field_map=payload.field_map,
            embassy=payload.embassy,
            priority=payload.priority,
            idempotency_key=idempotency_key,
        )
    except FormPilotError as exc:
        raise http_error(exc) from exc
    if not created:
        response.status_code = status.HTTP_200_OK
    return job


@router.get("", response_model=list[JobListItem])
def list_jobs(
    status: JobStatus | None = None,
    submission_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
    services: Services = Depends(get_container),
    owner_id: str = Depends(require_owner),
):
    return services.orchestrator.list(
        owner_id,
        status=status,
        submission_id=submission_id,
        limit=max(1, min(limit, 200)),
        offset=max(0, offset),
    )


@router.get("/{job_id}", response_model=JobDetailResponse)
def get_job(
    job_id: str,
    services: Services = Depends(get_container),
    owner_id: str = Depends(require_owner),
):
    try:
        return services.orchestrator.get_status(job_id, owner_id=owner_id)
    except JobNotFound as exc:
        raise http_error(exc) from exc


@router.post("/{job_id}/cancel", response_model=CancelResponse)
def cancel_job(
    job_id: str,
    services: Services = Depends(get_container),
    owner_id: str = Depends(require_owner),
):
    try:
        return services.orchestrator.cancel(job_id, owner_id=owner_id)
    except FormPilotError as exc:
        raise http_error(exc) from exc


@router.get("/{job_id}/artifacts", response_model=list[ArtifactResponse])
def list_artifacts(
    job_id: str,
    services: Services = Depends(get_container),
    owner_id: str = Depends(require_owner),
):
    with session_scope(services.session_factory) as db:
        if crud.get_job_for_owner(db, job_id, owner_id) is None:
            raise HTTPException(status_code=404, detail="Job not found")
    return services.artifacts.list_for_job(job_id)


@router.get("/{job_id}/artifacts/{artifact_id}/content")
def download_artifact(
    job_id: str,
    artifact_id: str,
    services: Services = Depends(get_container),
    owner_id: str = Depends(require_owner),
):
    with session_scope(services.session_factory) as db:
        job = crud.get_job_for_owner(db, job_id, owner_id)
        artifact = crud.get_artifact(db, artifact_id)
    if job is None or artifact is None or artifact.job_id != job.id:
        raise HTTPException(status_code=404, detail="Artifact not found")
    try:
        data = services.artifacts.read(artifact)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=410, detail="Artifact content no longer available") from exc
    return Response(content=data, media_type=artifact.mime_type)
