"""In-process and store-backed rate limiting utilities."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional

from starlette.requests import HTTPConnection

from chronos_auth.config import Settings, settings
from chronos_auth.core.storage import InMemoryStore, KeyValueStore

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: float
    limit: int = 0
    message: Optional[str] = None

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(1, math.ceil(self.reset_time - now))


@dataclass
class _Bucket:
    timestamps: Deque[float] = field(default_factory=deque)


class RateLimiter:
    """
    Fixed-list limiter: keeps every request timestamp in the window.

    O(n) per call in window size; suited to low-volume keys such as login.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        skip_successful_requests: bool = False,
        skip_failed_requests: bool = False,
        message: str = "Too many requests",
        clock: Clock = time.time,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.skip_successful_requests = skip_successful_requests
        self.skip_failed_requests = skip_failed_requests
        self.message = message
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, _Bucket] = {}

    def _prune(self, bucket: _Bucket, now: float) -> None:
        cutoff = now - self.window_seconds
        while bucket.timestamps and bucket.timestamps[0] <= cutoff:
            bucket.timestamps.popleft()

    def is_allowed(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            bucket = self._buckets.setdefault(key, _Bucket())
            self._prune(bucket, now)

            if len(bucket.timestamps) >= self.max_requests:
                logger.warning(
                    "Rate limit exceeded key=%s requests=%d max=%d",
                    key, len(bucket.timestamps), self.max_requests,
                )
                return False

            bucket.timestamps.append(now)
            return True

    def get_status(self, key: str) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is not None:
                self._prune(bucket, now)
            count = len(bucket.timestamps) if bucket else 0
            reset_time = bucket.timestamps[0] + self.window_seconds if count else now + self.window_seconds

        exceeded = count >= self.max_requests
        return RateLimitResult(
            allowed=not exceeded,
            remaining=max(0, self.max_requests - count),
            reset_time=reset_time,
            limit=self.max_requests,
            message=self.message if exceeded else None,
        )

    def record_request(self, key: str, success: bool = True) -> RateLimitResult:
        """Manual accounting, honouring the skip_* options"""
        if (success and self.skip_successful_requests) or (
            not success and self.skip_failed_requests
        ):
            return self.get_status(key)

        status = self.get_status(key)
        if status.allowed:
            with self._lock:
                self._buckets.setdefault(key, _Bucket()).timestamps.append(self._clock())
        return status

    def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)
        logger.info("Rate limit reset key=%s", key)

    def cleanup(self) -> int:
        """Drop idle keys. Returns the number of keys removed."""
        now = self._clock()
        cleaned = 0
        with self._lock:
            for key in list(self._buckets):
                bucket = self._buckets[key]
                self._prune(bucket, now)
                if not bucket.timestamps:
                    del self._buckets[key]
                    cleaned += 1
        if cleaned:
            logger.debug("Rate limiter cleaned up %d expired entries", cleaned)
        return cleaned

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "active_keys": len(self._buckets),
                "total_requests": sum(len(b.timestamps) for b in self._buckets.values()),
            }


class SlidingWindowRateLimiter:
    """
    Splits the window into ``sub_window_count`` buckets and sums the ones
    still covered. Bounded memory per key; used for high-volume traffic.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        sub_window_count: int = 10,
        *,
        message: str = "Rate limit exceeded",
        clock: Clock = time.time,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.sub_window_count = sub_window_count
        self.sub_window_seconds = window_seconds / sub_window_count
        self.message = message
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Dict[int, int]] = {}

    def _current_index(self, now: float) -> int:
        return int(now // self.sub_window_seconds)

    def _total(self, key_windows: Dict[int, int], current: int) -> int:
        start = current - self.sub_window_count + 1
        return sum(count for idx, count in key_windows.items() if start <= idx <= current)

    def is_allowed(self, key: str) -> bool:
        current = self._current_index(self._clock())
        with self._lock:
            key_windows = self._windows.setdefault(key, {})
            total = self._total(key_windows, current)
            if total >= self.max_requests:
                logger.warning(
                    "Sliding window rate limit exceeded key=%s requests=%d max=%d",
                    key, total, self.max_requests,
                )
                return False
            key_windows[current] = key_windows.get(current, 0) + 1
            return True

    def get_status(self, key: str) -> RateLimitResult:
        current = self._current_index(self._clock())
        with self._lock:
            total = self._total(self._windows.get(key, {}), current)

        exceeded = total >= self.max_requests
        return RateLimitResult(
            allowed=not exceeded,
            remaining=max(0, self.max_requests - total),
            reset_time=(current + 1) * self.sub_window_seconds,
            limit=self.max_requests,
            message=self.message if exceeded else None,
        )

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def cleanup(self) -> int:
        cutoff = self._current_index(self._clock()) - self.sub_window_count
        cleaned = 0
        with self._lock:
            for key in list(self._windows):
                key_windows = self._windows[key]
                for idx in [i for i in key_windows if i <= cutoff]:
                    del key_windows[idx]
                    cleaned += 1
                if not key_windows:
                    del self._windows[key]
        if cleaned:
            logger.debug("Sliding window rate limiter cleaned up %d old windows", cleaned)
        return cleaned


class DistributedRateLimiter:
    """
    Fixed-window counter kept in a ``KeyValueStore``.

    Shared across instances when the store is Redis; with the in-memory
    store it only limits the local process.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        store: Optional[KeyValueStore] = None,
        *,
        name: str = "distributed",
        clock: Clock = time.time,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._store = store or InMemoryStore(clock=clock)

    def _window(self, key: str, now: float) -> tuple:
        index = int(now // self.window_seconds)
        return f"ratelimit:{self.name}:{key}:{index}", (index + 1) * self.window_seconds

    def is_allowed(self, key: str) -> bool:
        store_key, _ = self._window(key, self._clock())
        if self._store.get_counter(store_key) >= self.max_requests:
            logger.warning("Distributed rate limit exceeded key=%s max=%d", key, self.max_requests)
            return False
        count = self._store.incr(store_key, ttl=self.window_seconds)
        return count <= self.max_requests

    def get_status(self, key: str) -> RateLimitResult:
        store_key, reset_time = self._window(key, self._clock())
        count = self._store.get_counter(store_key)
        return RateLimitResult(
            allowed=count < self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_time=reset_time,
            limit=self.max_requests,
        )

    def cleanup(self) -> int:
        return self._store.sweep()


def create_auth_rate_limiters(config: Settings = settings, clock: Clock = time.time) -> dict:
    """
    Standard limiter set.

    Login bursts are held tighter than general API traffic and the global
    per-IP ceiling sits above every per-route one.
    """
    return {
        "login": RateLimiter(
            5, 5 * 60, message="Too many login attempts. Please wait 5 minutes.", clock=clock
        ),
        "registration": RateLimiter(
            3, 60 * 60, message="Too many registration attempts. Please wait 1 hour.", clock=clock
        ),
        "password_reset": RateLimiter(
            3, 60 * 60, message="Too many password reset attempts. Please wait 1 hour.", clock=clock
        ),
        "api": SlidingWindowRateLimiter(
            config.API_RATE_LIMIT_PER_MINUTE, 60, config.RATE_LIMIT_SUB_WINDOWS, clock=clock
        ),
        "global": SlidingWindowRateLimiter(
            config.GLOBAL_RATE_LIMIT_PER_HOUR, 60 * 60, config.RATE_LIMIT_SUB_WINDOWS, clock=clock
        ),
    }


def get_client_ip(request: HTTPConnection) -> str:
    """
    Client address: first X-Forwarded-For hop, then X-Real-IP, then the
    socket peer.

    Forwarded headers are taken as-is; deploy behind a proxy that
    overwrites them.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


auth_rate_limiters = create_auth_rate_limiters()
