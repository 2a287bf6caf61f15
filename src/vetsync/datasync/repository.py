"""DataSyncRepository -- async persistence for the data sync log.

Claiming pending rows is done in the database, not in memory:
``claim_pending`` flips up to ``limit`` of the oldest pending rows to
``in_progress`` with ``FOR UPDATE SKIP LOCKED``, so concurrent workers in
different processes never receive the same row.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Sequence
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from src.vetsync.core.realtime import ChangeNotifier
from src.vetsync.datasync.models import DataSyncLogModel
from src.vetsync.datasync.schemas import DataSyncEntry, SyncStatus, SyncType
from src.vetsync.registry.models import ProductModel

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]

_SourceProduct = aliased(ProductModel, name="source_product")
_TargetProduct = aliased(ProductModel, name="target_product")


def _model_to_entry(
    model: DataSyncLogModel,
    source_name: str | None = None,
    target_name: str | None = None,
) -> DataSyncEntry:
    """Convert DataSyncLogModel to DataSyncEntry schema."""
    return DataSyncEntry(
        id=str(model.id),
        source_product_id=str(model.source_product_id) if model.source_product_id else None,
        target_product_id=str(model.target_product_id) if model.target_product_id else None,
        source_product=source_name,
        target_product=target_name,
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        sync_type=SyncType(model.sync_type or SyncType.UPDATE.value),
        sync_data=model.sync_data or {},
        status=SyncStatus(model.status),
        error_message=model.error_message,
        created_at=model.created_at,
        processed_at=model.processed_at,
    )


def _parse_id(sync_id: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(sync_id))
    except ValueError:
        return None


def _with_product_names():
    return (
        select(DataSyncLogModel, _SourceProduct.name, _TargetProduct.name)
        .outerjoin(_SourceProduct, _SourceProduct.id == DataSyncLogModel.source_product_id)
        .outerjoin(_TargetProduct, _TargetProduct.id == DataSyncLogModel.target_product_id)
    )


class DataSyncRepository:
    """Async CRUD for data_sync_log rows.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        notifier: Optional ChangeNotifier for row change signals.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        notifier: ChangeNotifier | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier

    async def _notify(self, event: str, entry: DataSyncEntry) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.publish(
                "data_sync_log",
                event,
                entry.id,
                {
                    "entity_type": entry.entity_type,
                    "entity_id": entry.entity_id,
                    "status": entry.status.value,
                },
            )
        except Exception:
            logger.warning("data_sync.notify_failed", sync_id=entry.id, exc_info=True)

    async def get_product_id(self, product_name: str) -> str | None:
        """Resolve a catalog product name to its ID."""
        async for session in self._session_factory():
            stmt = select(ProductModel.id).where(ProductModel.name == product_name)
            result = await session.execute(stmt)
            product_id = result.scalar_one_or_none()
            return str(product_id) if product_id else None

    async def create_entry(
        self,
        source_product_id: str | None,
        target_product_id: str | None,
        entity_type: str,
        entity_id: str,
        sync_data: dict[str, Any],
        sync_type: SyncType = SyncType.UPDATE,
    ) -> DataSyncEntry:
        """Insert a pending entry."""
        async for session in self._session_factory():
            model = DataSyncLogModel(
                source_product_id=uuid.UUID(source_product_id) if source_product_id else None,
                target_product_id=uuid.UUID(target_product_id) if target_product_id else None,
                entity_type=entity_type,
                entity_id=str(entity_id),
                sync_type=sync_type.value,
                sync_data=sync_data,
                status=SyncStatus.PENDING.value,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            entry = _model_to_entry(model)
        await self._notify("insert", entry)
        return entry

    async def get_entry(self, sync_id: str) -> DataSyncEntry | None:
        """Get a single entry with its product names. Malformed ids find nothing."""
        entry_id = _parse_id(sync_id)
        if entry_id is None:
            return None
        async for session in self._session_factory():
            stmt = _with_product_names().where(DataSyncLogModel.id == entry_id)
            result = await session.execute(stmt)
            row = result.first()
            if row is None:
                return None
            model, source_name, target_name = row
            return _model_to_entry(model, source_name, target_name)

    async def claim_pending(self, limit: int) -> list[DataSyncEntry]:
        """Atomically claim up to ``limit`` of the oldest pending entries.

        Returns the claimed entries oldest-first, already marked in_progress.
        """
        pending = (
            select(DataSyncLogModel.id)
            .where(DataSyncLogModel.status == SyncStatus.PENDING.value)
            .order_by(DataSyncLogModel.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(DataSyncLogModel)
            .where(DataSyncLogModel.id.in_(pending))
            .values(status=SyncStatus.IN_PROGRESS.value)
            .returning(DataSyncLogModel)
            .execution_options(synchronize_session=False)
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            models: Sequence[DataSyncLogModel] = result.scalars().all()
            await session.commit()
            # RETURNING order is unspecified
            entries = sorted(
                (_model_to_entry(m) for m in models),
                key=lambda e: e.created_at or datetime.min.replace(tzinfo=timezone.utc),
            )
        if entries:
            logger.debug("data_sync.claimed", count=len(entries))
        return entries

    async def release_claims(self, sync_ids: Sequence[str]) -> int:
        """Return claimed in_progress entries to pending so a later drain retries them.

        Returns:
            Number of rows released.
        """
        entry_ids = [i for i in (_parse_id(s) for s in sync_ids) if i is not None]
        if not entry_ids:
            return 0
        stmt = (
            update(DataSyncLogModel)
            .where(
                DataSyncLogModel.id.in_(entry_ids),
                DataSyncLogModel.status == SyncStatus.IN_PROGRESS.value,
            )
            .values(status=SyncStatus.PENDING.value)
            .returning(DataSyncLogModel.id)
            .execution_options(synchronize_session=False)
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            released = len(result.scalars().all())
            await session.commit()
        logger.info("data_sync.claims_released", count=released)
        return released

    async def mark_processed(
        self,
        sync_id: str,
        status: SyncStatus,
        error_message: str | None = None,
    ) -> bool:
        """Record the terminal status of an entry.

        Only pending or in_progress rows transition, so an entry reaches a
        terminal status exactly once.

        Returns:
            True if the row transitioned, False if it was already terminal
            or does not exist.
        """
        entry_id = _parse_id(sync_id)
        if entry_id is None:
            return False
        stmt = (
            update(DataSyncLogModel)
            .where(
                DataSyncLogModel.id == entry_id,
                DataSyncLogModel.status.in_(
                    [SyncStatus.PENDING.value, SyncStatus.IN_PROGRESS.value]
                ),
            )
            .values(
                status=status.value,
                error_message=error_message,
                processed_at=datetime.now(timezone.utc),
            )
            .returning(DataSyncLogModel)
            .execution_options(synchronize_session=False)
        )
        async for session in self._session_factory():
            result = await session.execute(stmt)
            model = result.scalars().first()
            await session.commit()
            if model is None:
                return False
            entry = _model_to_entry(model)
        await self._notify("update", entry)
        return True

    async def list_for_entity(
        self, entity_type: str, entity_id: str, limit: int = 10
    ) -> list[DataSyncEntry]:
        """Most recent entries for one entity, newest first."""
        async for session in self._session_factory():
            stmt = (
                _with_product_names()
                .where(
                    DataSyncLogModel.entity_type == entity_type,
                    DataSyncLogModel.entity_id == str(entity_id),
                )
                .order_by(DataSyncLogModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [
                _model_to_entry(model, source_name, target_name)
                for model, source_name, target_name in result.all()
            ]
