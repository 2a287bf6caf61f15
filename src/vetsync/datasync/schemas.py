"""Pydantic schemas and enums for the cross-product data sync queue."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SyncEntityType(str, Enum):
    """Closed set of entity types the queue knows how to apply."""

    USER = "user"
    CLINIC = "clinic"
    CLIENT = "client"
    APPOINTMENT = "appointment"


class SyncStatus(str, Enum):
    """Queue item status.

    ``in_progress`` is a transient claim marker set while a worker owns the
    row; the observable lifecycle is pending -> success | failed.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class SyncType(str, Enum):
    UPDATE = "update"
    ROLLBACK = "rollback"


class QueueSyncRequest(BaseModel):
    """Request body for queueing a sync between two products."""

    source_product: str
    target_product: str
    entity_type: SyncEntityType
    entity_id: str
    sync_data: dict[str, Any] = Field(default_factory=dict)


class DataSyncEntry(BaseModel):
    """One row of the data sync log.

    ``entity_type`` stays a plain string so rows written with a type outside
    the closed set can still be read and failed explicitly.
    """

    id: str
    source_product_id: str | None = None
    target_product_id: str | None = None
    source_product: str | None = None
    target_product: str | None = None
    entity_type: str
    entity_id: str
    sync_type: SyncType = SyncType.UPDATE
    sync_data: dict[str, Any] = Field(default_factory=dict)
    status: SyncStatus = SyncStatus.PENDING
    error_message: str | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None
