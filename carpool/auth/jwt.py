"""Create and decode JWT access tokens. Tokens are issued by the accounts service; we only verify them."""
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from carpool.config import settings
from carpool.errors import NotAuthenticated


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Encode a payload into a JWT. Use 'sub' for user id (string)."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode["exp"] = expire
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict[str, Any] | None:
    """Decode and validate JWT; return payload or None if invalid/expired."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except JWTError:
        return None


def user_id_from_token(token: str | None) -> int:
    """Resolve the user id ('sub' claim, or legacy 'id'). Raises NotAuthenticated."""
    if not token:
        raise NotAuthenticated("Authentication error: No token provided")
    payload = decode_token(token)
    if not payload:
        raise NotAuthenticated()
    sub = payload.get("sub", payload.get("id"))
    try:
        return int(sub)
    except (TypeError, ValueError):
        raise NotAuthenticated() from None
