from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from typing import Any, Awaitable, Optional, Protocol, Union

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from catalog.logging import get_logger
from catalog.storage.errors import CacheDecodeError, CacheUnavailableError

logger = get_logger(__name__)

TTL = Union[int, float, timedelta]


class CacheStore(Protocol):
    """Key-value contract shared by the Redis store and the in-memory double.

    Values are JSON-encoded on write. ``get`` returns None on a miss and raises
    CacheDecodeError when a stored value cannot be decoded; any backend failure
    raises CacheUnavailableError.
    """

    async def set(self, key: str, value: Any, ttl: Optional[TTL] = None) -> None: ...

    async def get(self, key: str) -> Any: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def delete_pattern(self, pattern: str) -> int: ...

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[TTL] = None) -> bool: ...

    async def increment(self, key: str) -> int: ...

    async def expire(self, key: str, ttl: TTL) -> bool: ...

    async def add_to_set(self, key: str, member: str, ttl: Optional[TTL] = None) -> None: ...

    async def set_members(self, key: str) -> set[str]: ...

    async def remove_from_set(self, key: str, *members: str) -> int: ...


def ttl_seconds(ttl: Optional[TTL]) -> Optional[int]:
    """Normalize a TTL to whole seconds, clamped to at least 1."""

    if ttl is None:
        return None
    if isinstance(ttl, timedelta):
        ttl = ttl.total_seconds()
    return max(1, int(ttl))


def encode_value(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def decode_value(raw: str, key: str) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise CacheDecodeError(f"corrupt cache entry: {exc}", key=key) from exc


class RedisCache:
    """Redis key-value store with a bounded deadline on every command."""

    DEFAULT_OPERATION_TIMEOUT = 3.0
    _SCAN_BATCH = 500

    def __init__(
        self,
        redis_url: str,
        *,
        connect_timeout: float = 5.0,
        socket_timeout: float = 3.0,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=connect_timeout,
        )

    async def _run(self, op: str, awaitable: Awaitable[Any], *, key: Optional[str] = None) -> Any:
        try:
            return await asyncio.wait_for(awaitable, self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("cache_operation_timeout", op=op, key=key, timeout=self.operation_timeout)
            raise CacheUnavailableError(f"cache {op} timed out", key=key) from exc
        except RedisError as exc:
            logger.warning("cache_operation_failed", op=op, key=key, error=str(exc))
            raise CacheUnavailableError(f"cache {op} failed", key=key) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, key: str, value: Any, ttl: Optional[TTL] = None) -> None:
        await self._run(
            "set", self.client.set(key, encode_value(value), ex=ttl_seconds(ttl)), key=key
        )

    async def get(self, key: str) -> Any:
        raw = await self._run("get", self.client.get(key), key=key)
        if raw is None:
            return None
        return decode_value(raw, key)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run("delete", self.client.delete(*keys), key=keys[0]))

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", self.client.exists(key), key=key))

    async def _delete_matching(self, pattern: str) -> int:
        deleted = 0
        batch: list[str] = []
        async for key in self.client.scan_iter(match=pattern, count=self._SCAN_BATCH):
            batch.append(key)
            if len(batch) >= self._SCAN_BATCH:
                deleted += await self.client.delete(*batch)
                batch = []
        if batch:
            deleted += await self.client.delete(*batch)
        return deleted

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern using SCAN, never KEYS."""

        return int(
            await self._run("delete_pattern", self._delete_matching(pattern), key=pattern)
        )

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[TTL] = None) -> bool:
        created = await self._run(
            "set_if_absent",
            self.client.set(key, encode_value(value), ex=ttl_seconds(ttl), nx=True),
            key=key,
        )
        return bool(created)

    async def increment(self, key: str) -> int:
        return int(await self._run("increment", self.client.incr(key), key=key))

    async def expire(self, key: str, ttl: TTL) -> bool:
        return bool(await self._run("expire", self.client.expire(key, ttl_seconds(ttl)), key=key))

    async def add_to_set(self, key: str, member: str, ttl: Optional[TTL] = None) -> None:
        pipe = self.client.pipeline()
        pipe.sadd(key, member)
        if ttl is not None:
            pipe.expire(key, ttl_seconds(ttl))
        await self._run("add_to_set", pipe.execute(), key=key)

    async def set_members(self, key: str) -> set[str]:
        members = await self._run("set_members", self.client.smembers(key), key=key)
        return set(members or ())

    async def remove_from_set(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._run("remove_from_set", self.client.srem(key, *members), key=key))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


__all__ = [
    "CacheStore",
    "RedisCache",
    "TTL",
    "decode_value",
    "encode_value",
    "ttl_seconds",
]
