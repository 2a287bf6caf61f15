"""GoHighLevel CRM integration.

Provides:
- GHLClient: Marketplace OAuth, token refresh, paced and retried REST calls
- GHLRepository: Credential, sub-account, mapping and sync log persistence
- OAuthStateStore: Redis-backed anti-CSRF state for the OAuth redirect
- GHLSyncEngine: Bidirectional clinic client <-> GHL contact sync
- field_mapping: Client row <-> GHL contact payload conversion
"""

from src.vetsync.ghl.client import GHLClient
from src.vetsync.ghl.oauth_state import OAuthStateStore
from src.vetsync.ghl.repository import GHLRepository
from src.vetsync.ghl.sync import GHLSyncEngine

__all__ = [
    "GHLClient",
    "GHLRepository",
    "GHLSyncEngine",
    "OAuthStateStore",
]
