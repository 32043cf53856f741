"""Key-value state store for sessions, login attempts and the token blacklist.

All process-wide auth state goes through a ``KeyValueStore`` so that a
single-instance deployment can keep it in memory while a multi-instance one
points every process at the same Redis.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis
from redis.exceptions import RedisError

from chronos_auth.config import Settings, settings
from chronos_auth.core.exceptions import StateStoreError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class KeyValueStore(ABC):
    """Abstract interface for auth state storage."""

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the value for ``key`` or None if absent/expired."""

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any], ttl: Optional[float] = None) -> None:
        """Store ``value``; ``ttl`` is in seconds, None means no expiry."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if something was removed."""

    @abstractmethod
    def incr(self, key: str, ttl: float) -> int:
        """Atomically increment a counter, setting ``ttl`` when it is created."""

    @abstractmethod
    def get_counter(self, key: str) -> int:
        """Current value of a counter created by ``incr`` (0 if absent)."""

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """List live keys starting with ``prefix``."""

    @abstractmethod
    def sweep(self) -> int:
        """Drop expired entries. Returns the number removed."""


class InMemoryStore(KeyValueStore):
    """Process-local store. Not shared between workers."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}

    def _expired(self, expires_at: Optional[float], now: float) -> bool:
        return expires_at is not None and expires_at <= now

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        now = self._clock()
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at, now):
                del self._data[key]
                return None
            return dict(value) if isinstance(value, dict) else value

    def set(self, key: str, value: Dict[str, Any], ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            self._data[key] = (dict(value), expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def incr(self, key: str, ttl: float) -> int:
        now = self._clock()
        with self._lock:
            entry = self._data.get(key)
            if entry is None or self._expired(entry[1], now):
                self._data[key] = (1, now + ttl)
                return 1
            count, expires_at = entry
            self._data[key] = (count + 1, expires_at)
            return count + 1

    def get_counter(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._data.get(key)
            if entry is None or self._expired(entry[1], now):
                return 0
            return int(entry[0])

    def keys(self, prefix: str = "") -> List[str]:
        now = self._clock()
        with self._lock:
            return [
                k for k, (_, expires_at) in self._data.items()
                if k.startswith(prefix) and not self._expired(expires_at, now)
            ]

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._data.items() if self._expired(exp, now)]
            for k in expired:
                del self._data[k]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisStore(KeyValueStore):
    """
    Redis-backed store shared by every application instance.

    Values are JSON-encoded; expiry is delegated to Redis so ``sweep`` has
    nothing to do.
    """

    def __init__(self, client: Any, key_prefix: str = "chronos:") -> None:
        self._redis = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "chronos:") -> "RedisStore":
        client = redis.Redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, key_prefix=key_prefix)

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except RedisError as exc:
            logger.error(f"Redis state store error: {exc}")
            raise StateStoreError() from exc

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._call(self._redis.get, self._k(key))
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Dict[str, Any], ttl: Optional[float] = None) -> None:
        payload = json.dumps(value)
        if ttl is not None:
            self._call(self._redis.set, self._k(key), payload, ex=max(1, int(ttl)))
        else:
            self._call(self._redis.set, self._k(key), payload)

    def delete(self, key: str) -> bool:
        return bool(self._call(self._redis.delete, self._k(key)))

    def incr(self, key: str, ttl: float) -> int:
        def _pipeline() -> int:
            pipe = self._redis.pipeline()
            pipe.incr(self._k(key))
            pipe.expire(self._k(key), max(1, int(ttl)), nx=True)
            count, _ = pipe.execute()
            return int(count)

        return self._call(_pipeline)

    def get_counter(self, key: str) -> int:
        raw = self._call(self._redis.get, self._k(key))
        return int(raw) if raw is not None else 0

    def keys(self, prefix: str = "") -> List[str]:
        pattern = f"{self._prefix}{prefix}*"
        found = self._call(lambda: list(self._redis.scan_iter(match=pattern)))
        return [k[len(self._prefix):] for k in found]

    def sweep(self) -> int:
        return 0


def create_store(config: Settings) -> KeyValueStore:
    """Build the store selected by STATE_BACKEND"""
    backend = config.STATE_BACKEND.lower().strip()
    if backend == "memory":
        if config.is_production:
            logger.warning(
                "In-memory auth state in production: sessions and lockouts are per-process"
            )
        return InMemoryStore()
    if backend == "redis":
        logger.info("Using Redis auth state store")
        return RedisStore.from_url(config.REDIS_URL, key_prefix=config.REDIS_KEY_PREFIX)
    raise RuntimeError(f"Unknown STATE_BACKEND: {config.STATE_BACKEND}")


state_store = create_store(settings)
