import base64
import hashlib
import hmac
import time

from fastapi import HTTPException, status

from formpilot.core.config import Settings, get_settings


def _signature(payload: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii")


def create_session_token(owner_id: str, *, settings: Settings | None = None) -> str:
    """Opaque bearer token naming the owner, valid for ``token_ttl_seconds``."""
    settings = settings or get_settings()
    payload = f"{owner_id}:{int(time.time()) + settings.token_ttl_seconds}"
    raw = f"{payload}:{_signature(payload, settings.secret_key)}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def verify_session_token(token: str, *, settings: Settings | None = None) -> str | None:
    settings = settings or get_settings()
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8")
        owner_id, expires_raw, signature = raw.rsplit(":", 2)
        expires_at = int(expires_raw)
    except (ValueError, UnicodeError):
        return None

    expected = _signature(f"{owner_id}:{expires_raw}", settings.secret_key)
    if not owner_id or not hmac.compare_digest(signature, expected):
        return None
    if expires_at < int(time.time()):
        return None
    return owner_id


def validate_login_api_key(api_key: str, *, settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    if not hmac.compare_digest(api_key.encode("utf-8"), settings.local_api_key.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def is_valid_worker_secret(candidate: str | None, *, settings: Settings | None = None) -> bool:
    """Workers carry their own secret; an owner's login key is never accepted in its place."""
    settings = settings or get_settings()
    secret = settings.worker_shared_secret
    if not candidate or not secret or candidate == settings.local_api_key:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))
