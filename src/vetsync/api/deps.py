"""FastAPI dependencies for authentication and app.state services.

Services are created once in the application lifespan and stored on
``app.state``; endpoints fetch them through ``get_service`` so a module
that failed to initialize surfaces as 503 instead of an AttributeError.
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel

from src.vetsync.core.security import verify_token


class CurrentUser(BaseModel):
    """Authenticated caller resolved from the bearer token."""

    user_id: str
    organization_id: str | None = None


async def get_current_user(request: Request) -> CurrentUser:
    """Extract and validate the caller from the Authorization header.

    Raises:
        HTTPException(401): If no valid bearer token is provided.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = verify_token(auth_header[7:], token_type="access")
    return CurrentUser(
        user_id=payload["sub"],
        organization_id=payload.get("organization_id"),
    )


def get_service(request: Request, name: str, label: str) -> Any:
    """Retrieve a service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


# Alias for cleaner endpoint signatures
require_auth = Depends(get_current_user)
