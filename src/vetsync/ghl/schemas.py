"""Pydantic schemas for the GoHighLevel integration.

Defines:
- TokenResponse: OAuth token endpoint payload
- GHLCredentialRead, GHLSubAccountRead, GHLClinicMappingRead, GHLSyncLogRead
- SyncDirection, SyncError, ContactSyncResult, ConnectionStatus
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class TokenResponse(BaseModel):
    """Token endpoint response for both code exchange and refresh.

    GHL identifiers are accepted in snake_case or camelCase.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str | None = None
    expires_in: int = 86400
    token_type: str | None = "Bearer"
    scope: str | None = None
    location_id: str | None = Field(
        default=None, validation_alias=AliasChoices("location_id", "locationId")
    )
    user_id: str | None = Field(
        default=None, validation_alias=AliasChoices("user_id", "userId")
    )
    company_id: str | None = Field(
        default=None, validation_alias=AliasChoices("company_id", "companyId")
    )


class GHLCredentialRead(BaseModel):
    """Stored OAuth token set."""

    id: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime
    token_type: str | None = None
    scope: str | None = None
    location_id: str | None = None
    user_id: str | None = None
    company_id: str | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """True once ``now`` has reached ``expires_at``."""
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class GHLSubAccountRead(BaseModel):
    """Schema for reading a discovered GHL location."""

    id: str
    ghl_location_id: str
    name: str | None = None
    business_name: str | None = None
    phone: str | None = None
    email: str | None = None
    website: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    timezone: str | None = None
    active: bool = True
    last_synced: datetime | None = None


class GHLClinicMappingCreate(BaseModel):
    """Request body for mapping a clinic to a GHL sub-account."""

    clinic_id: str
    ghl_sub_account_id: str


class GHLClinicMappingRead(BaseModel):
    """Clinic <-> location mapping, joined with its sub-account."""

    id: str
    clinic_id: str
    ghl_sub_account_id: str
    active: bool = True
    mapped_by: str | None = None
    created_at: datetime | None = None
    sub_account: GHLSubAccountRead | None = None


class GHLSyncLogRead(BaseModel):
    """Schema for reading a GHL sync log entry."""

    id: str
    clinic_mapping_id: str
    sync_type: str
    entity_type: str = "contact"
    entity_id: str | None = None
    status: str
    sync_data: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None


class SyncDirection(str, Enum):
    IMPORT = "import"
    EXPORT = "export"
    BOTH = "both"

    @property
    def includes_import(self) -> bool:
        return self in (SyncDirection.IMPORT, SyncDirection.BOTH)

    @property
    def includes_export(self) -> bool:
        return self in (SyncDirection.EXPORT, SyncDirection.BOTH)


class SyncError(BaseModel):
    """One failed item (or aborted page) inside a bulk sync.

    ``stage`` is "import", "export" or "page"; ``identifier`` is the
    contact/client email when known.
    """

    stage: str
    identifier: str | None = None
    error: str


class ContactSyncResult(BaseModel):
    """Aggregate outcome of a contact sync run."""

    imported: int = 0
    exported: int = 0
    updated: int = 0
    errors: list[SyncError] = Field(default_factory=list)


class ConnectionStatus(BaseModel):
    """Result of a cheap authenticated GHL call, for health display."""

    success: bool
    message: str | None = None
    error: str | None = None
