"""Per-entity handlers that apply a queued sync payload to the registry.

Every member of SyncEntityType must have a handler; construction fails
otherwise. A handler returns False when the target row does not exist and
raises on anything else (bad columns, database errors), leaving the queue
to record the failure.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog

from src.vetsync.core.exceptions import UnknownEntityTypeError
from src.vetsync.datasync.schemas import DataSyncEntry, SyncEntityType
from src.vetsync.registry.repository import ClientRepository, RegistryRepository

logger = structlog.get_logger(__name__)

EntityHandler = Callable[[DataSyncEntry], Awaitable[bool]]


class SyncHandlers:
    """Dispatch table from entity type to the partial update it performs.

    Args:
        registry: RegistryRepository for users, grants and clinics.
        clients: ClientRepository for clients and appointments.
    """

    def __init__(self, registry: RegistryRepository, clients: ClientRepository) -> None:
        self._registry = registry
        self._clients = clients
        self._handlers: dict[SyncEntityType, EntityHandler] = {
            SyncEntityType.USER: self.sync_user,
            SyncEntityType.CLINIC: self.sync_clinic,
            SyncEntityType.CLIENT: self.sync_client,
            SyncEntityType.APPOINTMENT: self.sync_appointment,
        }
        missing = set(SyncEntityType) - set(self._handlers)
        if missing:
            raise RuntimeError(
                f"No sync handler for: {', '.join(sorted(m.value for m in missing))}"
            )

    async def handle(self, entry: DataSyncEntry) -> bool:
        """Apply an entry's payload.

        Raises:
            UnknownEntityTypeError: If the entry's type is outside the closed set.
        """
        try:
            entity_type = SyncEntityType(entry.entity_type)
        except ValueError:
            raise UnknownEntityTypeError(entry.entity_type) from None
        return await self._handlers[entity_type](entry)

    async def sync_user(self, entry: DataSyncEntry) -> bool:
        """Apply ``profile_updates`` to the user and ``access_updates`` to its grant.

        The grant updated is the one for the entry's target product.
        """
        profile_updates = entry.sync_data.get("profile_updates")
        access_updates = entry.sync_data.get("access_updates")

        if profile_updates:
            if not await self._registry.update_user(entry.entity_id, profile_updates):
                return False
        if access_updates:
            if entry.target_product_id is None:
                return False
            if not await self._registry.update_product_access(
                entry.entity_id, entry.target_product_id, access_updates
            ):
                return False
        return True

    async def sync_clinic(self, entry: DataSyncEntry) -> bool:
        return await self._registry.update_clinic(entry.entity_id, entry.sync_data)

    async def sync_client(self, entry: DataSyncEntry) -> bool:
        return await self._clients.update_client(entry.entity_id, entry.sync_data)

    async def sync_appointment(self, entry: DataSyncEntry) -> bool:
        return await self._clients.update_appointment(entry.entity_id, entry.sync_data)
