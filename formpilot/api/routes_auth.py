from fastapi import APIRouter

from formpilot.api.schemas import LoginRequest, LoginResponse
from formpilot.core.security import create_session_token, validate_login_api_key

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=LoginResponse)
def login(payload: LoginRequest) -> LoginResponse:
    validate_login_api_key(payload.api_key)
    owner_id = payload.owner_id.strip()
    token = create_session_token(owner_id)
    return LoginResponse(token=token, owner_id=owner_id)
