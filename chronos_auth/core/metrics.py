"""Prometheus metrics shared by the services and the HTTP layer"""

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNT = Counter(
    "chronos_auth_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "chronos_auth_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
LOGIN_ATTEMPTS = Counter(
    "chronos_auth_login_attempts_total",
    "PIN login attempts by outcome",
    ["outcome"],
)
RATE_LIMITED = Counter(
    "chronos_auth_rate_limited_total",
    "Requests rejected by a rate limiter",
    ["limiter"],
)
ACTIVE_SESSIONS = Gauge("chronos_auth_active_sessions", "Session records currently held")
CLEANUP_WORKER_UP = Gauge("chronos_auth_cleanup_worker_up", "Cleanup worker liveness (1 running, 0 stopped)")
