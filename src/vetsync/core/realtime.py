"""Row change notifications over Redis pub/sub.

Repositories publish a small message after every write; dashboards and
background consumers subscribe per table with an optional column filter.

Channel pattern: changes:{table}

Messages are "something changed, re-fetch" signals. They carry no ordering
guarantee relative to locally-initiated writes and are never used as deltas.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)


class ChangeSubscription:
    """Live subscription to one table's change channel.

    Iterate with ``async for change in subscription`` and call
    ``unsubscribe()`` when done. Messages whose row does not match every
    key/value in ``filters`` are skipped.
    """

    def __init__(
        self,
        pubsub: aioredis.client.PubSub,
        channel: str,
        filters: dict[str, Any] | None = None,
    ) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._filters = {k: str(v) for k, v in (filters or {}).items()}
        self._closed = False

    def matches(self, change: dict[str, Any]) -> bool:
        """Return True if the change's row satisfies every filter."""
        row = change.get("row") or {}
        return all(str(row.get(key)) == value for key, value in self._filters.items())

    async def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        async for message in self._pubsub.listen():
            if self._closed:
                break
            if message.get("type") != "message":
                continue
            try:
                change = json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning("realtime.malformed_message", channel=self._channel)
                continue
            if self.matches(change):
                yield change

    async def unsubscribe(self) -> None:
        """Stop listening and release the pub/sub connection."""
        if self._closed:
            return
        self._closed = True
        await self._pubsub.unsubscribe(self._channel)
        await self._pubsub.aclose()
        logger.debug("realtime.unsubscribed", channel=self._channel)


class ChangeNotifier:
    """Publish and subscribe to per-table row change notifications.

    Args:
        redis: Raw async Redis client.
    """

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    @staticmethod
    def channel(table: str) -> str:
        """Build the pub/sub channel name for a table."""
        return f"changes:{table}"

    async def publish(
        self,
        table: str,
        event: str,
        row_id: Any,
        row: dict[str, Any] | None = None,
    ) -> None:
        """Publish a change notification for one row.

        Args:
            table: Table name the row belongs to.
            event: "insert", "update" or "delete".
            row_id: Primary key of the changed row.
            row: Filterable column values (scalars only).
        """
        payload = {
            "table": table,
            "event": event,
            "id": str(row_id),
            "row": row or {},
        }
        await self._redis.publish(self.channel(table), json.dumps(payload, default=str))
        logger.debug("realtime.published", table=table, change_event=event, row_id=str(row_id))

    async def subscribe(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
    ) -> ChangeSubscription:
        """Subscribe to changes on a table, optionally filtered by column values."""
        pubsub = self._redis.pubsub()
        channel = self.channel(table)
        await pubsub.subscribe(channel)
        logger.debug("realtime.subscribed", channel=channel, filters=filters or {})
        return ChangeSubscription(pubsub, channel, filters)
