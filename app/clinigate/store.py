"""Shared key/value state used by the rate limiter, cache and monitor.

Deployments with several gateway instances plug in a networked store with
the same interface; the in-process store serves development, tests and
single-instance installs.
"""

from __future__ import annotations

import fnmatch
import threading
import time
from typing import Any, Callable, Protocol


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, *, ttl_sec: float | None = None) -> None: ...

    async def incr(self, key: str, *, amount: int = 1, ttl_sec: float | None = None) -> int: ...

    async def delete(self, key: str) -> bool: ...

    async def scan(self, pattern: str) -> list[str]: ...

    async def ttl(self, key: str) -> float | None: ...


class InMemoryKVStore:
    """Dictionary-backed store with per-key expiry and atomic increments."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, tuple[Any, float | None]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> tuple[Any, float | None] | None:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return item

    def _expiry(self, ttl_sec: float | None) -> float | None:
        return None if ttl_sec is None else self._clock() + ttl_sec

    async def get(self, key: str) -> Any | None:
        with self._lock:
            item = self._live(key)
            return None if item is None else item[0]

    async def set(self, key: str, value: Any, *, ttl_sec: float | None = None) -> None:
        with self._lock:
            self._data[key] = (value, self._expiry(ttl_sec))

    async def incr(self, key: str, *, amount: int = 1, ttl_sec: float | None = None) -> int:
        with self._lock:
            item = self._live(key)
            if item is None:
                value = amount
                expires_at = self._expiry(ttl_sec)
            else:
                value = int(item[0]) + amount
                expires_at = item[1]
            self._data[key] = (value, expires_at)
            return value

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    async def scan(self, pattern: str) -> list[str]:
        with self._lock:
            keys = [key for key in list(self._data) if self._live(key) is not None]
        return sorted(key for key in keys if fnmatch.fnmatchcase(key, pattern))

    async def ttl(self, key: str) -> float | None:
        with self._lock:
            item = self._live(key)
            if item is None or item[1] is None:
                return None
            return max(0.0, item[1] - self._clock())
