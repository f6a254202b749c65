from fastapi import APIRouter, Depends, HTTPException

from formpilot.api.deps import get_container, http_error, require_owner
from formpilot.api.schemas import ChallengeResponse, ChallengeSolveRequest, ChallengeSolveResponse
from formpilot.core.errors import FormPilotError
from formpilot.core.rate_limit import get_rate_limiter
from formpilot.db import crud, models
from formpilot.db.session import session_scope
from formpilot.services.challenges import has_pending_solution
from formpilot.services.container import Services

router = APIRouter(tags=["captcha"])


def to_response(challenge: models.CaptchaChallenge) -> ChallengeResponse:
    response = ChallengeResponse.model_validate(challenge)
    response.solution_pending = has_pending_solution(challenge)
    return response


def _ensure_owner(services: Services, job_id: str, owner_id: str) -> None:
    with session_scope(services.session_factory) as db:
        if crud.get_job_for_owner(db, job_id, owner_id) is None:
            raise HTTPException(status_code=404, detail="Job not found")


@router.get("/captcha", response_model=list[ChallengeResponse])
def list_active_challenges(
    services: Services = Depends(get_container),
    owner_id: str = Depends(require_owner),
):
    return [to_response(challenge) for challenge in services.challenges.list_active(owner_id)]


@router.get("/jobs/{job_id}/captcha", response_model=ChallengeResponse | None)
def get_active_challenge(
    job_id: str,
    services: Services = Depends(get_container),
    owner_id: str = Depends(require_owner),
):
    _ensure_owner(services, job_id, owner_id)
    challenge = services.challenges.active(job_id)
    return to_response(challenge) if challenge else None


@router.post("/jobs/{job_id}/captcha/solve", response_model=ChallengeSolveResponse)
def solve_challenge(
    job_id: str,
    payload: ChallengeSolveRequest,
    services: Services = Depends(get_container),
    owner_id: str = Depends(require_owner),
):
    settings = services.settings
    limiter = get_rate_limiter()
    if not limiter.allow(
        f"captcha-solve:{owner_id}",
        settings.captcha_solve_rate_limit,
        settings.rate_limit_window_seconds,
    ):
        raise HTTPException(status_code=429, detail="Too many CAPTCHA attempts; slow down")
    try:
        return services.challenges.solve(job_id, payload.solution, owner_id=owner_id)
    except FormPilotError as exc:
        raise http_error(exc) from exc


@router.post("/jobs/{job_id}/captcha/refresh", response_model=ChallengeResponse)
def refresh_challenge(
    job_id: str,
    services: Services = Depends(get_container),
    owner_id: str = Depends(require_owner),
):
    try:
        return to_response(services.challenges.request_refresh(job_id, owner_id=owner_id))
    except FormPilotError as exc:
        raise http_error(exc) from exc
