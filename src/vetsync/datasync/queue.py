"""DataSyncQueue -- queue, drain and roll back cross-product sync operations.

Queued items move pending -> success | failed and are never retried
automatically; a failed item stays failed until someone re-queues it.
Draining is guarded twice: an in-process ``is_processing`` flag keeps a
single drain loop per queue instance, and the repository claims rows in
the database so separate processes never double-process an item.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.vetsync.config import get_settings
from src.vetsync.core.exceptions import EntityNotFoundError
from src.vetsync.core.monitoring import data_sync_items_total
from src.vetsync.datasync.handlers import SyncHandlers
from src.vetsync.datasync.repository import DataSyncRepository
from src.vetsync.datasync.schemas import (
    DataSyncEntry,
    SyncEntityType,
    SyncStatus,
    SyncType,
)

logger = structlog.get_logger(__name__)


class DataSyncQueue:
    """Async work queue for propagating changes between products.

    Args:
        repository: DataSyncRepository for log rows.
        handlers: SyncHandlers that apply payloads per entity type.
        batch_size: Items claimed per drain iteration. Defaults to the
            DATA_SYNC_BATCH_SIZE setting.
    """

    def __init__(
        self,
        repository: DataSyncRepository,
        handlers: SyncHandlers,
        batch_size: int | None = None,
    ) -> None:
        self._repo = repository
        self._handlers = handlers
        self._batch_size = batch_size or get_settings().DATA_SYNC_BATCH_SIZE
        self._is_processing = False
        self._drain_requested = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    # ── Queueing ────────────────────────────────────────────────────────────

    async def _product_id(self, product_name: str) -> str:
        product_id = await self._repo.get_product_id(product_name)
        if product_id is None:
            raise EntityNotFoundError("Product", product_name)
        return product_id

    async def queue_sync(
        self,
        source_product: str,
        target_product: str,
        entity_type: SyncEntityType,
        entity_id: str,
        sync_data: dict[str, Any],
    ) -> DataSyncEntry:
        """Record a pending sync and trigger a background drain.

        The caller does not wait for the item to be processed.

        Raises:
            EntityNotFoundError: If either product name is not in the catalog.
        """
        entry = await self._repo.create_entry(
            source_product_id=await self._product_id(source_product),
            target_product_id=await self._product_id(target_product),
            entity_type=SyncEntityType(entity_type).value,
            entity_id=entity_id,
            sync_data=sync_data,
            sync_type=SyncType.UPDATE,
        )
        logger.info(
            "data_sync.queued",
            sync_id=entry.id,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            source=source_product,
            target=target_product,
        )
        self._schedule_drain()
        return entry

    def _schedule_drain(self) -> None:
        task = asyncio.create_task(self.process_queue())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_for_drains(self) -> None:
        """Wait for every background drain started by this queue."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Draining ────────────────────────────────────────────────────────────

    async def process_queue(self) -> int:
        """Drain pending items oldest-first, one batch at a time.

        A call made while a drain is already running returns immediately
        with 0; the running drain picks up the newly queued work before it
        exits.

        An item whose terminal status cannot be recorded is released back
        to pending and the rest of its batch still runs. After such a
        failure the drain stops at the end of the batch; released items
        wait for the next drain.

        Returns:
            Number of items processed by this call.
        """
        if self._is_processing:
            self._drain_requested = True
            logger.debug("data_sync.drain_already_running")
            return 0

        self._is_processing = True
        processed = 0
        unfinished: list[str] = []
        try:
            while True:
                self._drain_requested = False
                items = await self._repo.claim_pending(self._batch_size)
                unfinished = [item.id for item in items]
                failed = False
                for item in items:
                    try:
                        await self.process_sync_item(item)
                    except Exception:
                        logger.exception("data_sync.item_not_recorded", sync_id=item.id)
                        failed = True
                        continue
                    unfinished.remove(item.id)
                    processed += 1
                if failed:
                    break
                if len(items) < self._batch_size and not self._drain_requested:
                    break
        except Exception:
            logger.exception("data_sync.drain_failed", processed=processed)
        finally:
            self._is_processing = False
            if unfinished:
                await self._release(unfinished)

        if processed:
            logger.info("data_sync.drained", processed=processed)
        return processed

    async def _release(self, sync_ids: list[str]) -> None:
        try:
            await self._repo.release_claims(sync_ids)
        except Exception:
            logger.exception("data_sync.release_failed", sync_ids=sync_ids)

    async def process_sync_item(self, item: DataSyncEntry) -> SyncStatus:
        """Apply one item and record its terminal status.

        Handler errors (including unknown entity types) fail the item with
        the captured message; they never escape to the drain loop. A failure
        to record the status itself propagates.
        """
        error_message: str | None = None
        try:
            success = await self._handlers.handle(item)
            if not success:
                error_message = f"{item.entity_type} {item.entity_id} was not updated"
        except Exception as exc:
            success = False
            error_message = str(exc) or exc.__class__.__name__
            logger.error(
                "data_sync.item_failed",
                sync_id=item.id,
                entity_type=item.entity_type,
                entity_id=item.entity_id,
                error=error_message,
            )

        status = SyncStatus.SUCCESS if success else SyncStatus.FAILED
        await self._repo.mark_processed(item.id, status, error_message)
        data_sync_items_total.labels(entity_type=item.entity_type, status=status.value).inc()
        return status

    # ── Rollback, Conflicts, Status ─────────────────────────────────────────

    async def rollback_sync(self, sync_id: str) -> DataSyncEntry:
        """Queue the inverse of an entry: source and target swapped, same payload.

        Raises:
            EntityNotFoundError: If the entry does not exist.
        """
        original = await self._repo.get_entry(sync_id)
        if original is None:
            raise EntityNotFoundError("Sync entry", sync_id)

        entry = await self._repo.create_entry(
            source_product_id=original.target_product_id,
            target_product_id=original.source_product_id,
            entity_type=original.entity_type,
            entity_id=original.entity_id,
            sync_data=dict(original.sync_data),
            sync_type=SyncType.ROLLBACK,
        )
        logger.info("data_sync.rollback_queued", sync_id=entry.id, original_id=sync_id)
        self._schedule_drain()
        return entry

    async def resolve_conflict(self, sync_id: str) -> bool:
        """Resolve a conflicting entry as last-write-wins by marking it success.

        Returns:
            False if the entry was already terminal (or does not exist).
        """
        resolved = await self._repo.mark_processed(sync_id, SyncStatus.SUCCESS)
        logger.info("data_sync.conflict_resolved", sync_id=sync_id, resolved=resolved)
        return resolved

    async def get_sync_status(
        self, entity_type: SyncEntityType | str, entity_id: str, limit: int = 10
    ) -> list[DataSyncEntry]:
        """Most recent log entries for one entity, newest first."""
        entity_type = getattr(entity_type, "value", entity_type)
        return await self._repo.list_for_entity(entity_type, entity_id, limit=limit)
