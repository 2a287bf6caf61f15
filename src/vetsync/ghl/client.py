"""Async client for the GoHighLevel marketplace OAuth and REST APIs.

Every REST call goes through ``make_request``:
- a fixed GHL_RATE_LIMIT_DELAY pause before the call
- up to GHL_MAX_RETRIES attempts (tenacity) on API and transport errors
- HTTP 429 waits GHL_RATE_LIMIT_BACKOFF before the next attempt
- other failures wait attempt x GHL_RETRY_DELAY
- after the last attempt the original error is re-raised

Configuration and auth errors are never retried. The access token is
read (and refreshed when expired) on every attempt.
"""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from src.vetsync.config import Settings, get_settings
from src.vetsync.core.exceptions import (
    GHLApiError,
    GHLAuthError,
    GHLConfigurationError,
    GHLRateLimitError,
    OAuthStateError,
    VetSyncError,
)
from src.vetsync.core.monitoring import ghl_requests_total
from src.vetsync.ghl.oauth_state import OAuthStateStore
from src.vetsync.ghl.repository import GHLRepository
from src.vetsync.ghl.schemas import ConnectionStatus, GHLSubAccountRead, TokenResponse

logger = structlog.get_logger(__name__)

OAUTH_SCOPES = [
    "locations.readonly",
    "contacts.readonly",
    "contacts.write",
    "calendars.readonly",
    "opportunities.readonly",
]

Sleep = Callable[[float], Awaitable[None]]


class GHLClient:
    """GoHighLevel OAuth + REST client.

    Args:
        repository: GHLRepository holding the credential and sub-accounts.
        state_store: OAuthStateStore for anti-CSRF state values.
        settings: Settings instance. Defaults to get_settings().
        http_client: httpx.AsyncClient to use (tests pass one with a
            MockTransport). A private client is created when omitted.
        sleep: Awaitable sleep used for pacing and backoff.
    """

    TIMEOUT = 30.0

    def __init__(
        self,
        repository: GHLRepository,
        state_store: OAuthStateStore,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._repo = repository
        self._state_store = state_store
        self._settings = settings or get_settings()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.TIMEOUT)
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ── OAuth ───────────────────────────────────────────────────────────────

    def _require_oauth_config(self) -> None:
        if not self._settings.ghl_oauth_configured():
            raise GHLConfigurationError(
                "GHL Marketplace App not configured: set GHL_CLIENT_ID, "
                "GHL_CLIENT_SECRET and GHL_REDIRECT_URI"
            )

    @property
    def token_url(self) -> str:
        return f"{self._settings.GHL_OAUTH_BASE_URL}/oauth/token"

    async def initiate_oauth(self, session_key: str) -> str:
        """Persist a fresh state value and return the authorization URL.

        Raises:
            GHLConfigurationError: Before anything else if the marketplace
                app credentials are missing.
        """
        self._require_oauth_config()

        state = secrets.token_urlsafe(32)
        await self._state_store.save(session_key, state)

        query = urlencode(
            {
                "response_type": "code",
                "client_id": self._settings.GHL_CLIENT_ID,
                "redirect_uri": self._settings.GHL_REDIRECT_URI,
                "scope": " ".join(OAUTH_SCOPES),
                "state": state,
            }
        )
        logger.info("ghl.oauth_started")
        return f"{self._settings.GHL_OAUTH_BASE_URL}/oauth/chooselocation?{query}"

    async def exchange_code_for_token(
        self, code: str, state: str, session_key: str
    ) -> TokenResponse:
        """Validate the callback state and trade the code for tokens.

        Raises:
            OAuthStateError: State missing or mismatched; no network call made.
            GHLConfigurationError: Marketplace app credentials missing.
            GHLAuthError: Token endpoint rejected the code.
        """
        stored_state = await self._state_store.get(session_key)
        if not stored_state or not secrets.compare_digest(stored_state, state or ""):
            logger.warning("ghl.oauth_state_mismatch")
            raise OAuthStateError("Invalid OAuth state - possible CSRF attack")

        self._require_oauth_config()
        token = await self._post_token(
            {
                "client_id": self._settings.GHL_CLIENT_ID,
                "client_secret": self._settings.GHL_CLIENT_SECRET,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._settings.GHL_REDIRECT_URI,
            },
            failure="Failed to get access token",
        )
        await self._repo.save_credential(token)
        await self._state_store.clear(session_key)
        logger.info("ghl.oauth_completed", location_id=token.location_id)
        return token

    async def _post_token(self, form: dict[str, str], failure: str) -> TokenResponse:
        response = await self._http.post(
            self.token_url,
            data=form,
            headers={"Accept": "application/json"},
        )
        if response.is_error:
            raise GHLAuthError(f"{failure}: {response.status_code} {response.reason_phrase}")
        try:
            payload = response.json()
        except ValueError:
            raise GHLAuthError(f"{failure}: malformed token response") from None
        if not payload.get("access_token"):
            raise GHLAuthError(failure)
        return TokenResponse.model_validate(payload)

    async def get_valid_token(self) -> str:
        """Return the stored access token, refreshing it first if expired.

        Raises:
            GHLAuthError: No credential stored, or the refresh failed.
        """
        credential = await self._repo.get_credential()
        if credential is None:
            raise GHLAuthError("GHL credentials not configured")
        if credential.is_expired():
            if not credential.refresh_token:
                raise GHLAuthError("GHL token expired and no refresh token is stored")
            return await self.refresh_token(credential.refresh_token)
        return credential.access_token

    async def refresh_token(self, refresh_token: str) -> str:
        """Exchange a refresh token for a new token set and persist it.

        Failures propagate; the caller never continues with an expired token.
        """
        self._require_oauth_config()
        token = await self._post_token(
            {
                "client_id": self._settings.GHL_CLIENT_ID,
                "client_secret": self._settings.GHL_CLIENT_SECRET,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            failure="Failed to refresh token",
        )
        await self._repo.save_credential(token)
        logger.info("ghl.token_refreshed")
        return token.access_token

    # ── REST ────────────────────────────────────────────────────────────────

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, GHLRateLimitError):
            return self._settings.GHL_RATE_LIMIT_BACKOFF
        return retry_state.attempt_number * self._settings.GHL_RETRY_DELAY

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "ghl.request_retry",
            attempt=retry_state.attempt_number,
            error=str(exc),
        )

    async def make_request(
        self,
        endpoint: str,
        method: str = "GET",
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Authenticated GHL REST call with pacing and retries.

        Args:
            endpoint: Path relative to GHL_API_BASE_URL, e.g. "/locations".
            method: HTTP method.
            json: JSON body for POST/PUT.
            params: Query parameters.

        Returns:
            Decoded JSON body ({} for an empty body).
        """
        await self._sleep(self._settings.GHL_RATE_LIMIT_DELAY)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.GHL_MAX_RETRIES),
            wait=self._retry_wait,
            retry=retry_if_exception_type((GHLApiError, httpx.TransportError)),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._send(method, endpoint, json=json, params=params)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _send(
        self,
        method: str,
        endpoint: str,
        json: dict[str, Any] | None,
        params: dict[str, Any] | None,
    ) -> dict[str, Any]:
        token = await self.get_valid_token()
        try:
            response = await self._http.request(
                method,
                f"{self._settings.GHL_API_BASE_URL}{endpoint}",
                json=json,
                params=params,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/json",
                },
            )
        except httpx.TransportError:
            ghl_requests_total.labels(method=method, status="transport_error").inc()
            raise
        ghl_requests_total.labels(method=method, status=str(response.status_code)).inc()
        if response.status_code == 429:
            raise GHLRateLimitError(response.reason_phrase)
        if response.is_error:
            raise GHLApiError(response.status_code, response.reason_phrase)
        if not response.content:
            return {}
        return response.json()

    async def discover_sub_accounts(self) -> list[GHLSubAccountRead]:
        """List every GHL location and upsert each as a sub-account."""
        data = await self.make_request("/locations")
        locations = data.get("locations") or []
        logger.info("ghl.locations_discovered", count=len(locations))

        stored: list[GHLSubAccountRead] = []
        for location in locations:
            stored.append(await self._repo.store_sub_account(location))
        return stored

    async def get_location_contacts(
        self,
        location_id: str,
        limit: int = 100,
        start_after: str | None = None,
    ) -> list[dict[str, Any]]:
        """One page of a location's contacts.

        Callers page by passing the last contact id as ``start_after``; a
        page shorter than ``limit`` is the last one.
        """
        params: dict[str, Any] = {"limit": limit}
        if start_after:
            params["startAfter"] = start_after
        data = await self.make_request(f"/locations/{location_id}/contacts", params=params)
        return data.get("contacts") or []

    async def create_contact(self, location_id: str, contact: dict[str, Any]) -> dict[str, Any]:
        """Create a contact and return GHL's contact object."""
        data = await self.make_request(
            f"/locations/{location_id}/contacts", method="POST", json=contact
        )
        return data.get("contact") or {}

    async def update_contact(
        self, location_id: str, contact_id: str, contact: dict[str, Any]
    ) -> dict[str, Any]:
        """Update an existing contact and return GHL's contact object."""
        data = await self.make_request(
            f"/locations/{location_id}/contacts/{contact_id}", method="PUT", json=contact
        )
        return data.get("contact") or {}

    async def test_connection(self) -> ConnectionStatus:
        """Cheapest authenticated call (list one location) for health display."""
        try:
            await self.make_request("/locations", params={"limit": 1})
        except (VetSyncError, httpx.HTTPError) as exc:
            logger.warning("ghl.connection_failed", error=str(exc))
            return ConnectionStatus(success=False, error=str(exc))
        return ConnectionStatus(success=True, message="GHL API connection successful")
