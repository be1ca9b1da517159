"""
Authentication dependencies for FastAPI.

SECURITY: All queries MUST include tenant_id filter.
The tenant always comes from the verified token, never from the request body.
"""
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ValidationError

from syncengine.services.jwt_service import JWTService


# Security scheme
security = HTTPBearer()


class TokenPayload(BaseModel):
    """JWT token payload model."""
    sub: str        # user_id
    tenant_id: str
    role: str
    email: Optional[str] = None


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> TokenPayload:
    """
    Dependency that requires valid JWT token.

    Returns token payload if valid, raises 401 if invalid.

    Usage:
        @router.post("/api/ndr/{ndr_id}/assign")
        async def assign(user: TokenPayload = Depends(get_current_user)):
            ...
    """
    payload = JWTService().verify_token(credentials.credentials)
    token = None
    if payload is not None:
        try:
            token = TokenPayload(**payload)
        except ValidationError:
            token = None

    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Picked up by the logging middleware
    request.state.tenant_id = token.tenant_id
    request.state.user_id = token.sub
    return token


def require_admin(current_user: TokenPayload = Depends(get_current_user)) -> TokenPayload:
    """
    Dependency that requires admin role.

    Returns user if admin, raises 403 otherwise.
    """
    if current_user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return current_user
