"""Redis callback state storage.

Shared backend for applications running several workers that may each
receive the redirect. Requires the `redis` package: pip install redis

Entries expire through the key TTL and are consumed with GETDEL, so a
state id can be redeemed by exactly one worker.
"""

from __future__ import annotations

import time

from typing import TYPE_CHECKING, Any

from .base import CallbackStorage
from .memory import DEFAULT_PREFIX
from .types import CallbackState


if TYPE_CHECKING:
    from redis.asyncio import Redis


# Check for redis package
try:
    from redis.asyncio import Redis as RedisClient

    HAS_REDIS = True
except ImportError:
    HAS_REDIS = False
    RedisClient = None  # type: ignore[assignment,misc]


def _check_redis() -> None:
    """Check if redis package is available."""
    if not HAS_REDIS:
        msg = "Redis backend requires the 'redis' package. Install with: pip install redis"
        raise ImportError(msg)


class RedisCallbackStorage(CallbackStorage):
    """Redis-backed callback store.

    Parameters
    ----------
    redis_url : str
        Redis connection URL.
    prefix : str
        Key prefix for all entries.
    ttl_seconds : int
        Entry lifetime in seconds.
    redis_client : Redis, optional
        Pre-configured Redis client (for testing with fakeredis).
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = DEFAULT_PREFIX,
        ttl_seconds: int = 3600,
        *,
        redis_client: Redis | None = None,
    ) -> None:
        """Initialize the Redis callback store."""
        _check_redis()
        self._redis_url = redis_url
        self._prefix = prefix
        self._ttl = ttl_seconds
        self._client = redis_client

    def _key(self, state_id: str) -> str:
        """Get Redis key for a state id."""
        return f"{self._prefix}{state_id}"

    async def _redis(self) -> Any:
        """Get a Redis connection, creating it on first use."""
        if self._client is None:
            self._client = RedisClient.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def add(self, state: CallbackState) -> None:
        """Store the entry with the configured TTL."""
        r = await self._redis()
        state.expires = int((time.time() + self._ttl) * 1000)
        await r.set(self._key(state.state), state.to_json(), ex=self._ttl)

    async def get(self, state_id: str | None) -> CallbackState | None:
        """Atomically read and delete the entry."""
        if not state_id:
            return None
        r = await self._redis()
        value = await r.getdel(self._key(state_id))
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        try:
            return CallbackState.from_json(value)
        except (ValueError, TypeError):
            return None

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
