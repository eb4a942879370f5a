from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Callable, Dict, Optional, Union

from catalog.storage.errors import CacheDecodeError
from catalog.storage.redis_cache import TTL, decode_value, encode_value, ttl_seconds


@dataclass
class _Entry:
    value: Union[str, set]
    expires_at: Optional[float] = None


class MemoryCache:
    """In-process stand-in for RedisCache used by tests and dev fallback.

    Thread-safe; TTLs are tracked against a monotonic clock that tests can
    replace to simulate expiry.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, _Entry] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _deadline(self, ttl: Optional[TTL]) -> Optional[float]:
        seconds = ttl_seconds(ttl)
        return None if seconds is None else self._clock() + seconds

    def _store_raw(self, key: str, raw: str, ttl: Optional[TTL] = None) -> None:
        with self._lock:
            self._data[key] = _Entry(raw, self._deadline(ttl))

    def verify_connection(self) -> None:
        return None

    async def set(self, key: str, value: Any, ttl: Optional[TTL] = None) -> None:
        self._store_raw(key, encode_value(value), ttl)

    async def get(self, key: str) -> Any:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            if not isinstance(entry.value, str):
                raise CacheDecodeError("value is not a string", key=key)
            raw = entry.value
        return decode_value(raw, key)

    def _delete_locked(self, keys) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                removed += 1
        return removed

    async def delete(self, *keys: str) -> int:
        with self._lock:
            return self._delete_locked(keys)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            matches = [key for key in list(self._data) if fnmatchcase(key, pattern)]
            return self._delete_locked(matches)

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[TTL] = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._store_raw(key, encode_value(value), ttl)
            return True

    async def increment(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry("0")
                self._data[key] = entry
            try:
                current = int(entry.value)
            except (TypeError, ValueError) as exc:
                raise CacheDecodeError("value is not an integer", key=key) from exc
            entry.value = str(current + 1)
            return current + 1

    async def expire(self, key: str, ttl: TTL) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            entry.expires_at = self._deadline(ttl)
            return True

    async def add_to_set(self, key: str, member: str, ttl: Optional[TTL] = None) -> None:
        with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, set):
                entry = _Entry(set())
                self._data[key] = entry
            entry.value.add(member)
            if ttl is not None:
                entry.expires_at = self._deadline(ttl)

    async def set_members(self, key: str) -> set[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, set):
                return set()
            return set(entry.value)

    async def remove_from_set(self, key: str, *members: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, set):
                return 0
            removed = len(entry.value.intersection(members))
            entry.value.difference_update(members)
            if not entry.value:
                del self._data[key]
            return removed

    async def close(self) -> None:
        with self._lock:
            self._data.clear()


__all__ = ["MemoryCache"]
