"""Background worker that sweeps expired auth state."""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Iterable, Optional

from chronos_auth.config import settings
from chronos_auth.core.metrics import CLEANUP_WORKER_UP
from chronos_auth.core.storage import KeyValueStore, state_store
from chronos_auth.services.auth_service import AuthService, auth_service
from chronos_auth.services.rate_limiter import auth_rate_limiters

logger = logging.getLogger(__name__)


class CleanupWorker:
    """Periodic sweep of sessions, login attempts, limiter windows and the store."""

    def __init__(
        self,
        auth: AuthService,
        store: KeyValueStore,
        limiters: Iterable = (),
        interval_seconds: float = 300.0,
    ) -> None:
        self._auth = auth
        self._store = store
        self._limiters = list(limiters)
        self._interval = interval_seconds
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._heartbeat: float = 0.0
        self._runs: int = 0
        self._last_result: Dict[str, int] = {}
        self._lock = threading.Lock()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="auth-cleanup-worker", daemon=True)
        self._thread.start()
        CLEANUP_WORKER_UP.set(1)
        logger.info("Cleanup worker started interval=%.0fs", self._interval)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        CLEANUP_WORKER_UP.set(0)
        logger.info("Cleanup worker stopped")

    def status(self) -> dict:
        with self._lock:
            return {
                "running": self.is_running(),
                "last_heartbeat": self._heartbeat,
                "runs": self._runs,
                "last_result": dict(self._last_result),
            }

    def _run_loop(self) -> None:
        while not self._stop_event.wait(max(0.1, self._interval)):
            try:
                self.run_once()
            except Exception as exc:
                logger.exception("Cleanup pass failed: %s", exc)

    def run_once(self) -> Dict[str, int]:
        """One sweep; returns how many entries each step removed."""
        rate_limit_entries = 0
        for limiter in self._limiters:
            rate_limit_entries += limiter.cleanup()

        result = {
            "sessions": self._auth.cleanup_expired_sessions(),
            "login_attempts": self._auth.cleanup_login_attempts(),
            "rate_limit_entries": rate_limit_entries,
            "store_entries": self._store.sweep(),
        }

        with self._lock:
            self._heartbeat = time.time()
            self._runs += 1
            self._last_result = result

        if any(result.values()):
            logger.info("Cleanup pass removed %s", result)
        return result


cleanup_worker = CleanupWorker(
    auth_service,
    state_store,
    limiters=[
        *auth_rate_limiters.values(),
        auth_service.login_limiter,
        auth_service.ip_limiter,
    ],
    interval_seconds=settings.CLEANUP_INTERVAL_SECONDS,
)
