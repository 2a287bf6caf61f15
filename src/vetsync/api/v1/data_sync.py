"""REST API endpoints for the cross-product data sync queue."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status

from src.vetsync.api.deps import CurrentUser, get_current_user, get_service
from src.vetsync.datasync.schemas import DataSyncEntry, QueueSyncRequest, SyncEntityType

router = APIRouter(prefix="/api/v1/data-sync", tags=["data-sync"])


def _get_queue(request: Request) -> Any:
    return get_service(request, "data_sync_queue", "Data sync queue")


@router.post("", response_model=DataSyncEntry, status_code=status.HTTP_202_ACCEPTED)
async def queue_sync(
    body: QueueSyncRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> DataSyncEntry:
    """Queue a change for another product; processing happens in the background."""
    queue = _get_queue(request)
    return await queue.queue_sync(
        body.source_product,
        body.target_product,
        body.entity_type,
        body.entity_id,
        body.sync_data,
    )


@router.post(
    "/{sync_id}/rollback",
    response_model=DataSyncEntry,
    status_code=status.HTTP_202_ACCEPTED,
)
async def rollback_sync(
    sync_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> DataSyncEntry:
    queue = _get_queue(request)
    return await queue.rollback_sync(sync_id)


@router.post("/{sync_id}/resolve")
async def resolve_conflict(
    sync_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Close a conflicting entry as last-write-wins.

    ``resolved`` is false when the entry had already reached a terminal status.
    """
    queue = _get_queue(request)
    return {"sync_id": sync_id, "resolved": await queue.resolve_conflict(sync_id)}


@router.get("/{entity_type}/{entity_id}", response_model=list[DataSyncEntry])
async def get_sync_status(
    entity_type: SyncEntityType,
    entity_id: str,
    request: Request,
    limit: int = Query(10, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
) -> list[DataSyncEntry]:
    """Most recent queue entries for one entity, newest first."""
    queue = _get_queue(request)
    return await queue.get_sync_status(entity_type, entity_id, limit=limit)
