"""
Authentication dependencies for the admin API.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from commerce_core.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str
    role: str
    email: str | None = None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """
    Dependency that requires a valid bearer token.

    Returns the token payload, raises 401 if the token is invalid.
    """
    payload = JWTService().verify_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenPayload(**payload)


def require_admin(current_user: TokenPayload = Depends(get_current_user)) -> TokenPayload:
    """
    Dependency that requires the admin role.

    Usage:
        @router.post("/{plugin_id}/activate")
        async def activate(plugin_id: str, user: TokenPayload = Depends(require_admin)):
            ...
    """
    if current_user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return current_user
