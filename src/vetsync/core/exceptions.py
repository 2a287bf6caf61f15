"""Exception hierarchy shared by the sync, CRM and identity modules.

Configuration problems are kept distinct from runtime failures so the
HTTP layer (and operators) can tell "fix your setup" apart from "retry
later". Per-item failures inside bulk loops are never raised out of the
loop; they are recorded as SyncError entries instead.
"""

from __future__ import annotations


class VetSyncError(Exception):
    """Base class for all application errors."""


class ConfigurationError(VetSyncError):
    """Required configuration is missing; detected before any network call."""


class GHLConfigurationError(ConfigurationError):
    """GHL marketplace client id, secret or redirect URI is not configured."""


class GHLAuthError(VetSyncError):
    """No usable GHL credential, or a token exchange/refresh was rejected."""


class OAuthStateError(VetSyncError):
    """OAuth callback state did not match the persisted value."""


class GHLApiError(VetSyncError):
    """Non-2xx response from the GHL REST API."""

    def __init__(self, status_code: int, reason: str = "") -> None:
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"GHL API error: {status_code} {reason}".rstrip())


class GHLRateLimitError(GHLApiError):
    """HTTP 429 from the GHL REST API."""

    def __init__(self, reason: str = "Too Many Requests") -> None:
        super().__init__(429, reason)


class MappingNotFoundError(VetSyncError):
    """No active clinic <-> GHL location mapping exists for a clinic."""

    def __init__(self, clinic_id: str) -> None:
        self.clinic_id = clinic_id
        super().__init__("No GHL mapping found for this clinic")


class EntityNotFoundError(VetSyncError):
    """A row that must exist could not be found."""

    def __init__(self, entity: str, key: str) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class UnknownEntityTypeError(VetSyncError):
    """Data sync queue item carries an entity type outside the closed set."""

    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"Unknown entity type: {entity_type}")
