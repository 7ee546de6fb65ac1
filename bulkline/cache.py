"""
TTL caches for non-authoritative state: progress checkpoints, notification
throttles and gate cooldowns. Losing an entry must only ever degrade a
feature (no ETA, an extra notification), never corrupt ledger state.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from typing import Any, Optional, Protocol

from redis import Redis
from redis.exceptions import RedisError


class Cache(Protocol):
    def get(self, key: str, default: Any = None) -> Any:
        ...

    def put(self, key: str, value: Any, ttl_s: float) -> None:
        ...

    def add(self, key: str, value: Any, ttl_s: float) -> bool:
        """Store only if absent. Returns True when stored."""
        ...

    def forget(self, key: str) -> None:
        ...


class MemoryCache:
    """Process-local TTL cache. ``clock`` returns seconds."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[tuple[Any, float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._live(key)
            return default if entry is None else entry[0]

    def put(self, key: str, value: Any, ttl_s: float) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl_s)

    def add(self, key: str, value: Any, ttl_s: float) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._clock() + ttl_s)
            return True

    def forget(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisCache:
    """
    Redis-backed TTL cache storing JSON values under ``<prefix>:<key>``.

    Cache reads and writes are best-effort: Redis errors are reported as a
    miss (``get``) or a skipped write, so a cache outage never fails a batch.
    """

    def __init__(self, redis: Redis, prefix: str = "bulkline") -> None:
        self.redis = redis
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str, default: Any = None) -> Any:
        try:
            raw = self.redis.get(self._key(key))
        except RedisError:
            return default
        if raw is None:
            return default
        return json.loads(raw)

    def put(self, key: str, value: Any, ttl_s: float) -> None:
        try:
            self.redis.set(self._key(key), json.dumps(value), px=max(1, int(ttl_s * 1000)))
        except RedisError:
            return

    def add(self, key: str, value: Any, ttl_s: float) -> bool:
        try:
            return bool(
                self.redis.set(self._key(key), json.dumps(value), px=max(1, int(ttl_s * 1000)), nx=True)
            )
        except RedisError:
            return False

    def forget(self, key: str) -> None:
        try:
            self.redis.delete(self._key(key))
        except RedisError:
            return
