"""
Hash-of-records persistence for the job queue.

The queue only ever needs four hash operations over one logical key, so the
port is kept that small. ``RedisStore`` is the durable, shared backend;
``MemoryStore`` is a process-local map. ``FallbackStore`` puts the two behind
one interface and switches to memory the first time Redis cannot be reached,
so callers never see a store failure.
"""

import abc
import asyncio
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tidal_queue.exceptions import StoreUnavailableError
from tidal_queue.models.config import QueueConfig

log = logging.getLogger(__name__)


class JobStore(abc.ABC):
    """Abstract hash-map-of-records store."""

    backend_name = "unknown"

    @abc.abstractmethod
    async def hash_get_all(self, key: str) -> dict[str, str]:
        """Returns every field/value pair stored under ``key``."""

    @abc.abstractmethod
    async def hash_get(self, key: str, field: str) -> Optional[str]:
        """Returns one value, or None if the field does not exist."""

    @abc.abstractmethod
    async def hash_set(self, key: str, field: str, value: str) -> None:
        """Creates or overwrites one field."""

    @abc.abstractmethod
    async def hash_delete(self, key: str, field: str) -> bool:
        """Removes one field. Returns True if it existed."""

    async def close(self) -> None:
        """Releases any connections held by the backend."""


class MemoryStore(JobStore):
    """Volatile, process-local store. Contents are lost on restart."""

    backend_name = "memory"

    def __init__(self):
        self._hashes: dict[str, dict[str, str]] = {}

    async def hash_get_all(self, key: str) -> dict[str, str]:
        return dict(self._hashes.get(key, {}))

    async def hash_get(self, key: str, field: str) -> Optional[str]:
        return self._hashes.get(key, {}).get(field)

    async def hash_set(self, key: str, field: str, value: str) -> None:
        self._hashes.setdefault(key, {})[field] = value

    async def hash_delete(self, key: str, field: str) -> bool:
        return self._hashes.get(key, {}).pop(field, None) is not None


class RedisStore(JobStore):
    """
    Durable store backed by a Redis-compatible server.

    Every backend failure is re-raised as ``StoreUnavailableError``.
    """

    backend_name = "redis"

    def __init__(
        self,
        url: str,
        socket_timeout: float = 2.0,
        client: Optional[aioredis.Redis] = None,
    ):
        """
        Args:
            url: Redis connection string (redis://, rediss:// or unix://).
            socket_timeout: Seconds to wait for connect and for each command.
            client: Pre-built client, mainly for tests.
        """
        self.url = url
        self._client = client or aioredis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def _call(self, operation: str, coro):
        try:
            return await coro
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailableError(f"Redis {operation} failed: {e}") from e

    async def hash_get_all(self, key: str) -> dict[str, str]:
        return await self._call("HGETALL", self._client.hgetall(key))

    async def hash_get(self, key: str, field: str) -> Optional[str]:
        return await self._call("HGET", self._client.hget(key, field))

    async def hash_set(self, key: str, field: str, value: str) -> None:
        await self._call("HSET", self._client.hset(key, field, value))

    async def hash_delete(self, key: str, field: str) -> bool:
        removed = await self._call("HDEL", self._client.hdel(key, field))
        return bool(removed)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as e:
            log.debug(f"Error while closing Redis connection: {e}")


class FallbackStore(JobStore):
    """
    Routes calls to a durable store until it fails once, then permanently to a
    process-local fallback.

    Jobs written to Redis before the switch are not visible through the
    fallback; the snapshot read reports the degraded backend so operators can
    see this.
    """

    def __init__(self, primary: JobStore, fallback: Optional[JobStore] = None):
        self.primary = primary
        self.fallback = fallback or MemoryStore()
        self._degraded = False

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def backend_name(self) -> str:
        store = self.fallback if self._degraded else self.primary
        return store.backend_name

    def _degrade(self, error: Exception) -> None:
        if not self._degraded:
            log.warning(
                f"[yellow]Durable store unavailable ({error}). "
                "Falling back to process memory; queued jobs will not survive "
                "a restart.[/yellow]"
            )
        self._degraded = True

    async def _run(self, operation: str, *args):
        if not self._degraded:
            try:
                return await getattr(self.primary, operation)(*args)
            except StoreUnavailableError as e:
                self._degrade(e)
        return await getattr(self.fallback, operation)(*args)

    async def hash_get_all(self, key: str) -> dict[str, str]:
        return await self._run("hash_get_all", key)

    async def hash_get(self, key: str, field: str) -> Optional[str]:
        return await self._run("hash_get", key, field)

    async def hash_set(self, key: str, field: str, value: str) -> None:
        await self._run("hash_set", key, field, value)

    async def hash_delete(self, key: str, field: str) -> bool:
        return await self._run("hash_delete", key, field)

    async def close(self) -> None:
        await self.primary.close()
        await self.fallback.close()


def create_store(config: QueueConfig) -> JobStore:
    """Selects the store backend once, at process start."""
    if config.redis_disabled:
        log.debug("Redis disabled by configuration; using process memory.")
        return MemoryStore()
    log.debug(f"Using Redis store at {config.redis_url} with memory fallback.")
    return FallbackStore(RedisStore(config.redis_url), MemoryStore())
