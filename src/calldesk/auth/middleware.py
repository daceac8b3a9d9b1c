"""
Bearer JWT authentication for the calls API.

This module exposes:
- CurrentUser
- get_current_user
- CurrentUserDep (FastAPI dependency)
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from calldesk.auth.jwt import JWTHandler
from calldesk.config import Settings, get_settings
from calldesk.shared.exceptions import InvalidTokenError, TokenExpiredError
from calldesk.shared.logging import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    """Current authenticated user information."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="User ID (token subject)")
    email: str = Field("", description="User email")
    name: str = Field("", description="User display name")
    role: str = Field(..., description="User role")


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
    settings: Settings = Depends(get_settings),
) -> CurrentUser:
    """Extract and validate the current user from the bearer token."""
    if credentials is None:
        logger.warning(
            "Missing authentication credentials",
            extra={
                "endpoint": str(request.url.path),
                "method": request.method,
                "client_ip": request.client.host if request.client else "unknown",
            },
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "MISSING_CREDENTIALS",
                "message": "Authentication credentials required",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = JWTHandler(settings).validate_access_token(credentials.credentials)
    except TokenExpiredError:
        logger.info(
            "Token expired",
            extra={"endpoint": str(request.url.path), "method": request.method},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "TOKEN_EXPIRED", "message": "Token has expired"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    except InvalidTokenError as e:
        logger.warning(
            "Invalid token",
            extra={
                "endpoint": str(request.url.path),
                "method": request.method,
                "error": e.message,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": e.code, "message": e.message},
            headers={"WWW-Authenticate": "Bearer"},
        )

    return CurrentUser(
        id=str(payload["sub"]),
        email=payload.get("email", "") or "",
        name=payload.get("name", "") or "",
        role=payload.get("role") or "agent",
    )


CurrentUserDep = Annotated[CurrentUser, Depends(get_current_user)]
