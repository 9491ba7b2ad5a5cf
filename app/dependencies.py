import hmac
from fastapi import Depends, Header
from sqlalchemy.orm import Session
from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import NotFound, Unauthorized
from app.models import User
from app.services.users import get_user

settings = get_settings()


def get_current_user(
    x_user_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    # Identity is established by the upstream auth gateway and passed through as a header.
    raw = str(x_user_id or "").strip()
    if not raw.isdigit():
        raise Unauthorized("Missing or invalid user identity")
    try:
        return get_user(db, int(raw))
    except NotFound as exc:
        raise Unauthorized("Unknown user") from exc


def require_internal_key(x_internal_key: str | None = Header(default=None)) -> None:
    expected = settings.internal_api_key
    if not expected:
        raise Unauthorized("Internal API key is not configured")
    if not x_internal_key or not hmac.compare_digest(str(x_internal_key), str(expected)):
        raise Unauthorized("Invalid internal API key")
