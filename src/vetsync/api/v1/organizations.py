"""REST API endpoints for organization administration (agency and admin tooling)."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from src.vetsync.api.deps import CurrentUser, get_current_user, get_service
from src.vetsync.registry.schemas import (
    OrganizationAnalytics,
    OrganizationCreate,
    OrganizationRead,
    ProductInstanceRead,
    UserRead,
    UserRole,
)

router = APIRouter(prefix="/api/v1/organizations", tags=["organizations"])


class AddUserRequest(BaseModel):
    user_id: str
    role: UserRole = UserRole.CLINIC_USER


class SettingsUpdate(BaseModel):
    settings: dict[str, Any] = Field(default_factory=dict)


def _get_manager(request: Request) -> Any:
    return get_service(request, "organization_manager", "Organization manager")


@router.get("", response_model=list[OrganizationRead])
async def search_organizations(
    request: Request,
    q: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
) -> list[OrganizationRead]:
    """Search organizations by name or domain."""
    manager = _get_manager(request)
    return await manager.search_organizations(q, limit=limit)


@router.post("", response_model=OrganizationRead, status_code=status.HTTP_201_CREATED)
async def create_organization(
    body: OrganizationCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> OrganizationRead:
    manager = _get_manager(request)
    return await manager.create_organization(body)


@router.get("/{organization_id}/users", response_model=list[UserRead])
async def organization_users(
    organization_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> list[UserRead]:
    manager = _get_manager(request)
    return await manager.get_organization_users(organization_id)


@router.post("/{organization_id}/users", status_code=status.HTTP_204_NO_CONTENT)
async def add_user(
    organization_id: str,
    body: AddUserRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> None:
    manager = _get_manager(request)
    await manager.add_user_to_organization(body.user_id, organization_id, body.role)


@router.get("/{organization_id}/products", response_model=list[ProductInstanceRead])
async def organization_products(
    organization_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> list[ProductInstanceRead]:
    """Products enabled on the organization's clinics."""
    manager = _get_manager(request)
    return await manager.get_organization_products(organization_id)


@router.get("/{organization_id}/analytics", response_model=OrganizationAnalytics)
async def organization_analytics(
    organization_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> OrganizationAnalytics:
    manager = _get_manager(request)
    return await manager.get_analytics(organization_id)


@router.put("/{organization_id}/settings", response_model=OrganizationRead)
async def update_settings(
    organization_id: str,
    body: SettingsUpdate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> OrganizationRead:
    manager = _get_manager(request)
    return await manager.update_settings(organization_id, body.settings)


@router.post("/{organization_id}/deactivate", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_organization(
    organization_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> None:
    """Deactivate an organization. Organizations are never deleted."""
    manager = _get_manager(request)
    await manager.deactivate_organization(organization_id)
