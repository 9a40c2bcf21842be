"""
ZapFlow - Async Redis Client

Provides a singleton async Redis connection and the per-conversation lock
that serializes appends to the AI message buffer across webhook replicas.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from zapflow.config import get_settings

logger = logging.getLogger(__name__)

_redis: Optional[aioredis.Redis] = None
_lock = asyncio.Lock()


async def get_redis() -> aioredis.Redis:
    """Return a singleton async Redis client."""
    global _redis
    async with _lock:
        if _redis is None:
            settings = get_settings()
            logger.info("Connecting to Redis at %s", settings.redis_url)
            _redis = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=20,
            )
            # Verify connectivity
            await _redis.ping()
            logger.info("Redis connection established.")
    return _redis


class ConversationLock:
    """
    ``async with`` wrapper around a Redis lock on ``buffer_lock:{conversation_id}``.

    The lock auto-expires after *timeout* seconds so a crashed webhook cannot
    block a conversation forever.
    """

    def __init__(self, conversation_id: str, timeout: float = 10.0, blocking_timeout: float = 5.0) -> None:
        self.key = f"buffer_lock:{conversation_id}"
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout
        self._lock: Optional[Lock] = None

    async def __aenter__(self) -> "ConversationLock":
        r = await get_redis()
        self._lock = r.lock(self.key, timeout=self._timeout, blocking_timeout=self._blocking_timeout)
        acquired = await self._lock.acquire()
        if not acquired:
            raise TimeoutError(f"Could not acquire {self.key} within {self._blocking_timeout}s")
        logger.debug("Lock '%s' acquired.", self.key)
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._lock is not None:
            try:
                await self._lock.release()
            except LockError:
                # Lock already expired; the buffer write itself is guarded by a status check.
                logger.warning("Lock '%s' expired before release.", self.key)
            self._lock = None


def conversation_lock(conversation_id: str) -> ConversationLock:
    return ConversationLock(conversation_id)


async def close() -> None:
    """Gracefully close the Redis connection pool."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
        logger.info("Redis connection closed.")
