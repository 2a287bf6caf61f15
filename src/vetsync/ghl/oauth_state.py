"""Short-lived OAuth anti-CSRF state values, kept in Redis.

Key pattern: ghl:oauth_state:{session_key}

Each browser session that starts the marketplace OAuth flow gets its own
key; the value expires after GHL_OAUTH_STATE_TTL_SECONDS.
"""

from __future__ import annotations

import redis.asyncio as aioredis


class OAuthStateStore:
    """Save, read and clear the pending OAuth state for a session.

    Args:
        redis: Async Redis client (decode_responses=True).
        ttl_seconds: Lifetime of a stored state value.
    """

    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = 600) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    @staticmethod
    def _key(session_key: str) -> str:
        return f"ghl:oauth_state:{session_key}"

    async def save(self, session_key: str, state: str) -> None:
        await self._redis.set(self._key(session_key), state, ex=self._ttl)

    async def get(self, session_key: str) -> str | None:
        value = await self._redis.get(self._key(session_key))
        if isinstance(value, bytes):
            value = value.decode()
        return value

    async def clear(self, session_key: str) -> None:
        await self._redis.delete(self._key(session_key))
