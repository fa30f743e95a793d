"""Shared dependencies: current user id from the bearer token, matching services."""
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from carpool.auth.jwt import user_id_from_token
from carpool.errors import NotAuthenticated
from carpool.services.container import Services, get_services

security = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> int:
    """Validate JWT from Authorization: Bearer <token> and return the user id. Raises 401 if missing/invalid."""
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        return user_id_from_token(credentials.credentials)
    except NotAuthenticated:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")


def services_dep() -> Services:
    return get_services()
