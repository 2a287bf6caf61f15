"""REST API endpoints for cross-product identity resolution."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from src.vetsync.api.deps import CurrentUser, get_current_user, get_service
from src.vetsync.registry.schemas import UserContext

router = APIRouter(prefix="/api/v1/identity", tags=["identity"])


class RecognizeRequest(BaseModel):
    """Identity reported by the product's auth provider after sign-in."""

    email: str
    auth_id: str


def _get_resolver(request: Request) -> Any:
    return get_service(request, "user_resolver", "User resolver")


@router.post("/recognize", response_model=UserContext)
async def recognize_user(
    body: RecognizeRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> UserContext:
    """Find, link or create the unified user and return their context."""
    resolver = _get_resolver(request)
    return await resolver.recognize_user(body.email, body.auth_id)


@router.get("/users/{user_id}/context", response_model=UserContext)
async def user_context(
    user_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> UserContext:
    resolver = _get_resolver(request)
    return await resolver.load_user_context(user_id)
