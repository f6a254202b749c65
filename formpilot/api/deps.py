from fastapi import Header, HTTPException, status

from formpilot.core.errors import FormPilotError
from formpilot.core.security import is_valid_worker_secret, verify_session_token
from formpilot.services.container import Services, get_services


def get_container() -> Services:
    return get_services()


def require_owner(authorization: str | None = Header(default=None)) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

    token = authorization.split(" ", 1)[1]
    owner_id = verify_session_token(token)
    if not owner_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session token")
    return owner_id


def require_worker(x_worker_secret: str | None = Header(default=None)) -> str:
    if not is_valid_worker_secret(x_worker_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid worker secret")
    return "worker"


def http_error(exc: FormPilotError) -> HTTPException:
    return HTTPException(status_code=exc.http_status, detail={"code": exc.code, "message": exc.message})

