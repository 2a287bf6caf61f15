"""REST API endpoints for the GoHighLevel integration.

OAuth connect flow, sub-account discovery, clinic mappings, manual
contact syncs and sync history. The OAuth callback is the only endpoint
that does not require a bearer token: GHL redirects the browser to it.
The browser is tied back to the flow it started by a short-lived cookie
holding the key under which the OAuth state was stored.
"""

from __future__ import annotations

import secrets
from typing import Any

from fastapi import APIRouter, Cookie, Depends, Query, Request, Response, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from src.vetsync.api.deps import CurrentUser, get_current_user, get_service
from src.vetsync.config import get_settings
from src.vetsync.core.exceptions import EntityNotFoundError, OAuthStateError
from src.vetsync.ghl.schemas import (
    ConnectionStatus,
    ContactSyncResult,
    GHLClinicMappingCreate,
    GHLClinicMappingRead,
    GHLSubAccountRead,
    GHLSyncLogRead,
    SyncDirection,
)

router = APIRouter(prefix="/api/v1/ghl", tags=["ghl"])

OAUTH_SESSION_COOKIE = "ghl_oauth_session"


# ── Response Schemas ─────────────────────────────────────────────────────────


class OAuthCallbackResponse(BaseModel):
    """Result of a completed OAuth connect."""

    success: bool = True
    location_id: str | None = None
    sub_accounts: list[GHLSubAccountRead] = Field(default_factory=list)


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_ghl_client(request: Request) -> Any:
    return get_service(request, "ghl_client", "GHL client")


def _get_ghl_repository(request: Request) -> Any:
    return get_service(request, "ghl_repository", "GHL repository")


def _get_sync_engine(request: Request) -> Any:
    return get_service(request, "ghl_sync_engine", "GHL sync engine")


# ── OAuth ────────────────────────────────────────────────────────────────────


@router.get("/oauth/start", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
async def start_oauth(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> RedirectResponse:
    """Redirect the browser to the GHL location chooser."""
    client = _get_ghl_client(request)
    session_key = secrets.token_urlsafe(16)
    url = await client.initiate_oauth(session_key)

    response = RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    response.set_cookie(
        OAUTH_SESSION_COOKIE,
        session_key,
        max_age=get_settings().GHL_OAUTH_STATE_TTL_SECONDS,
        httponly=True,
        samesite="lax",
    )
    return response


@router.get("/oauth/callback", response_model=OAuthCallbackResponse)
async def oauth_callback(
    request: Request,
    response: Response,
    code: str = Query(...),
    state: str = Query(...),
    session_key: str | None = Cookie(default=None, alias=OAUTH_SESSION_COOKIE),
) -> OAuthCallbackResponse:
    """Exchange the authorization code, then discover sub-accounts."""
    if not session_key:
        raise OAuthStateError("Invalid OAuth state - possible CSRF attack")
    client = _get_ghl_client(request)

    token = await client.exchange_code_for_token(code, state, session_key)
    sub_accounts = await client.discover_sub_accounts()

    response.delete_cookie(OAUTH_SESSION_COOKIE)
    return OAuthCallbackResponse(location_id=token.location_id, sub_accounts=sub_accounts)


@router.get("/connection", response_model=ConnectionStatus)
async def test_connection(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> ConnectionStatus:
    client = _get_ghl_client(request)
    return await client.test_connection()


# ── Sub-Accounts and Mappings ────────────────────────────────────────────────


@router.post("/sub-accounts/discover", response_model=list[GHLSubAccountRead])
async def discover_sub_accounts(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> list[GHLSubAccountRead]:
    """Re-read every GHL location and upsert it as a sub-account."""
    client = _get_ghl_client(request)
    return await client.discover_sub_accounts()


@router.get("/sub-accounts", response_model=list[GHLSubAccountRead])
async def list_sub_accounts(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> list[GHLSubAccountRead]:
    repo = _get_ghl_repository(request)
    return await repo.list_sub_accounts()


@router.get("/mappings", response_model=list[GHLClinicMappingRead])
async def list_mappings(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> list[GHLClinicMappingRead]:
    repo = _get_ghl_repository(request)
    return await repo.list_mappings()


@router.post(
    "/mappings",
    response_model=GHLClinicMappingRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_mapping(
    body: GHLClinicMappingCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> GHLClinicMappingRead:
    """Map a clinic to a discovered sub-account, replacing its active mapping."""
    repo = _get_ghl_repository(request)
    if await repo.get_sub_account(body.ghl_sub_account_id) is None:
        raise EntityNotFoundError("GHL sub-account", body.ghl_sub_account_id)
    return await repo.create_mapping(
        body.clinic_id, body.ghl_sub_account_id, mapped_by=user.user_id
    )


# ── Contact Sync ─────────────────────────────────────────────────────────────


@router.post("/clinics/{clinic_id}/sync", response_model=ContactSyncResult)
async def sync_clinic(
    clinic_id: str,
    request: Request,
    direction: SyncDirection = Query(SyncDirection.BOTH),
    user: CurrentUser = Depends(get_current_user),
) -> ContactSyncResult:
    engine = _get_sync_engine(request)
    return await engine.trigger_manual_sync(clinic_id, direction)


@router.get("/clinics/{clinic_id}/sync-log", response_model=list[GHLSyncLogRead])
async def clinic_sync_log(
    clinic_id: str,
    request: Request,
    limit: int = Query(10, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
) -> list[GHLSyncLogRead]:
    engine = _get_sync_engine(request)
    return await engine.get_sync_status(clinic_id, limit=limit)


@router.get("/sync-log", response_model=list[GHLSyncLogRead])
async def sync_log(
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
) -> list[GHLSyncLogRead]:
    """Paginated sync history across all clinics, newest first."""
    repo = _get_ghl_repository(request)
    return await repo.list_sync_logs(limit=limit, offset=offset)
