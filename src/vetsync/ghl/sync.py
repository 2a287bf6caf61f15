"""Bidirectional contact sync between a clinic and its GHL location.

A clinic's active mapping is the only thing that authorizes a sync: no
mapping, no network traffic. Within a run, import always finishes before
export starts. Individual contacts and clients fail in isolation; their
errors are collected into the result and the run is still logged as a
success so operators can triage from the sync log.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.vetsync.config import Settings, get_settings
from src.vetsync.core.exceptions import MappingNotFoundError
from src.vetsync.core.monitoring import ghl_sync_item_errors_total, ghl_sync_runs_total
from src.vetsync.ghl.client import GHLClient, Sleep
from src.vetsync.ghl.field_mapping import (
    client_to_contact_update,
    client_to_new_contact,
    contact_to_client_fields,
)
from src.vetsync.ghl.repository import GHLRepository
from src.vetsync.ghl.schemas import (
    ContactSyncResult,
    GHLClinicMappingRead,
    GHLSyncLogRead,
    SyncDirection,
    SyncError,
)
from src.vetsync.registry.repository import ClientRepository
from src.vetsync.registry.schemas import ClientCreate, ClientRead

logger = structlog.get_logger(__name__)


class GHLSyncEngine:
    """Reconciles clinic clients with the contacts of a mapped GHL location.

    Args:
        client: GHLClient for all remote calls.
        ghl_repository: GHLRepository for mappings and the sync log.
        clients: ClientRepository for local client rows.
        settings: Settings instance. Defaults to get_settings().
        sleep: Awaitable sleep for the pauses between pages and batches.
    """

    def __init__(
        self,
        client: GHLClient,
        ghl_repository: GHLRepository,
        clients: ClientRepository,
        settings: Settings | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._ghl_repo = ghl_repository
        self._clients = clients
        self._settings = settings or get_settings()
        self._batch_size = self._settings.SYNC_BATCH_SIZE
        self._sleep = sleep

    # ── Orchestration ───────────────────────────────────────────────────────

    async def sync_clinic_contacts(
        self,
        clinic_id: str,
        direction: SyncDirection = SyncDirection.BOTH,
    ) -> ContactSyncResult:
        """Run a contact sync for one clinic and log the outcome.

        Raises:
            MappingNotFoundError: The clinic has no active mapping.
        """
        direction = SyncDirection(direction)
        mapping = await self._ghl_repo.get_active_mapping(clinic_id)
        if mapping is None:
            raise MappingNotFoundError(clinic_id)

        logger.info(
            "ghl_sync.started",
            clinic_id=clinic_id,
            mapping_id=mapping.id,
            direction=direction.value,
        )
        result = ContactSyncResult()

        imported_ids: set[str] = set()
        if direction.includes_import:
            imported, imported_ids = await self._import_contacts(mapping)
            result.imported = imported.imported
            result.errors.extend(imported.errors)

        if direction.includes_export:
            exported = await self.export_contacts_to_ghl(mapping, skip_client_ids=imported_ids)
            result.exported = exported.exported
            result.updated = exported.updated
            result.errors.extend(exported.errors)

        await self._ghl_repo.log_sync(
            mapping.id,
            sync_type="contact_sync",
            status="success",
            sync_data={"direction": direction.value, "results": result.model_dump()},
        )
        ghl_sync_runs_total.labels(direction=direction.value).inc()
        for error in result.errors:
            ghl_sync_item_errors_total.labels(stage=error.stage).inc()
        logger.info(
            "ghl_sync.completed",
            clinic_id=clinic_id,
            imported=result.imported,
            exported=result.exported,
            updated=result.updated,
            errors=len(result.errors),
        )
        return result

    async def trigger_manual_sync(
        self,
        clinic_id: str,
        direction: SyncDirection = SyncDirection.BOTH,
    ) -> ContactSyncResult:
        logger.info("ghl_sync.manual_trigger", clinic_id=clinic_id, direction=str(direction))
        return await self.sync_clinic_contacts(clinic_id, direction)

    async def get_sync_status(self, clinic_id: str, limit: int = 10) -> list[GHLSyncLogRead]:
        return await self._ghl_repo.list_sync_logs_for_clinic(clinic_id, limit=limit)

    # ── Import ──────────────────────────────────────────────────────────────

    @staticmethod
    def _location_id(mapping: GHLClinicMappingRead) -> str:
        if mapping.sub_account is None:
            raise MappingNotFoundError(mapping.clinic_id)
        return mapping.sub_account.ghl_location_id

    async def import_contacts_from_ghl(self, mapping: GHLClinicMappingRead) -> ContactSyncResult:
        """Page through the location's contacts and upsert them as clients.

        A failed page fetch ends the import and is recorded as a "page"
        error; contacts already imported stay imported.
        """
        result, _ = await self._import_contacts(mapping)
        return result

    async def _import_contacts(
        self, mapping: GHLClinicMappingRead
    ) -> tuple[ContactSyncResult, set[str]]:
        location_id = self._location_id(mapping)
        result = ContactSyncResult()
        imported_ids: set[str] = set()
        start_after: str | None = None
        page = 0

        while True:
            try:
                contacts = await self._client.get_location_contacts(
                    location_id, limit=self._batch_size, start_after=start_after
                )
            except Exception as exc:
                logger.error(
                    "ghl_sync.import_page_failed",
                    location_id=location_id,
                    page=page,
                    error=str(exc),
                )
                result.errors.append(
                    SyncError(stage="page", identifier=start_after, error=str(exc))
                )
                break

            if not contacts:
                break

            for contact in contacts:
                try:
                    imported_ids.add(await self._import_single_contact(contact, mapping.clinic_id))
                    result.imported += 1
                except Exception as exc:
                    logger.error(
                        "ghl_sync.import_contact_failed",
                        contact_id=contact.get("id"),
                        error=str(exc),
                    )
                    result.errors.append(
                        SyncError(stage="import", identifier=contact.get("email"), error=str(exc))
                    )

            logger.debug("ghl_sync.import_page", page=page, contacts=len(contacts))
            if len(contacts) < self._batch_size:
                break
            next_cursor = contacts[-1].get("id")
            if not next_cursor or next_cursor == start_after:
                logger.error(
                    "ghl_sync.import_cursor_stuck",
                    location_id=location_id,
                    page=page,
                    start_after=start_after,
                )
                result.errors.append(
                    SyncError(
                        stage="page",
                        identifier=start_after,
                        error="Cannot page past a contact without a new id",
                    )
                )
                break
            start_after = next_cursor
            page += 1
            await self._sleep(self._settings.SYNC_IMPORT_PAGE_PAUSE)

        return result, imported_ids

    async def _import_single_contact(self, contact: dict[str, Any], clinic_id: str) -> str:
        """Insert or update the client for one contact. Returns the client id."""
        fields = contact_to_client_fields(contact)
        existing = await self._clients.find_client_by_email(clinic_id, fields["email"])
        if existing is not None:
            fields.pop("notes")
            fields.pop("email")
            await self._clients.update_client(existing.id, fields)
            return existing.id
        client = await self._clients.create_client(ClientCreate(clinic_id=clinic_id, **fields))
        return client.id

    # ── Export ──────────────────────────────────────────────────────────────

    async def export_contacts_to_ghl(
        self,
        mapping: GHLClinicMappingRead,
        skip_client_ids: set[str] | frozenset[str] = frozenset(),
    ) -> ContactSyncResult:
        """Push every clinic client to GHL in fixed-size batches.

        Clients already carrying a ghl_contact_id are updated; the rest are
        created and the returned contact id is stored on the client so a
        retry updates instead of creating a duplicate. Clients in
        ``skip_client_ids`` (just imported from this location) are already
        current in GHL and are not pushed back.
        """
        location_id = self._location_id(mapping)
        result = ContactSyncResult()
        clients = [
            c
            for c in await self._clients.list_clinic_clients(mapping.clinic_id)
            if c.id not in skip_client_ids
        ]

        for start in range(0, len(clients), self._batch_size):
            if start:
                await self._sleep(self._settings.SYNC_EXPORT_BATCH_PAUSE)
            for client in clients[start:start + self._batch_size]:
                try:
                    if await self._export_single_client(client, location_id):
                        result.updated += 1
                    else:
                        result.exported += 1
                except Exception as exc:
                    logger.error(
                        "ghl_sync.export_client_failed",
                        client_id=client.id,
                        error=str(exc),
                    )
                    result.errors.append(
                        SyncError(stage="export", identifier=client.email, error=str(exc))
                    )

        return result

    async def _export_single_client(self, client: ClientRead, location_id: str) -> bool:
        """Create or update one client's contact. Returns True for an update."""
        if client.ghl_contact_id:
            await self._client.update_contact(
                location_id, client.ghl_contact_id, client_to_contact_update(client)
            )
            return True

        contact = await self._client.create_contact(location_id, client_to_new_contact(client))
        contact_id = contact.get("id")
        if not contact_id:
            raise ValueError("GHL did not return a contact id")
        await self._clients.set_ghl_contact_id(client.id, contact_id)
        return False
