"""
Handler wrappers and HTTP middleware for auth, authorization and throttling.

Each ``with_*`` wrapper takes an ``async def handler(request)`` and returns
one with the same signature, so they stack and also work as decorators on
FastAPI routes::

    @router.get("/analytics/premium")
    @with_feature("premium-analytics")
    async def premium_analytics(request: Request): ...

Guard failures are rendered as JSON error responses by the wrapper; the
wrapped handler only runs once every guard passed.
"""

import logging
from functools import partial, wraps
from typing import Awaitable, Callable, Optional, Union

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from chronos_auth.api.responses import error_response
from chronos_auth.config import settings
from chronos_auth.core.exceptions import BaseAPIException, RateLimitExceededError
from chronos_auth.core.metrics import RATE_LIMITED
from chronos_auth.schemas.auth import Role
from chronos_auth.services.permissions import permission_service
from chronos_auth.services.rate_limiter import auth_rate_limiters, get_client_ip

logger = logging.getLogger(__name__)

Handler = Callable[[Request], Awaitable[Response]]
Wrapper = Callable[[Handler], Handler]


def _guarded(handler: Handler, guard: Callable[[Request], Awaitable[None]]) -> Handler:
    @wraps(handler)
    async def wrapper(request: Request):
        try:
            await guard(request)
            return await handler(request)
        except BaseAPIException as exc:
            return error_response(request, exc)
        except Exception as exc:
            logger.exception(f"Unhandled error in {request.method} {request.url.path}: {exc}")
            return error_response(request, BaseAPIException("Internal server error"))

    return wrapper


def with_auth(handler: Handler) -> Handler:
    """401 unless the request resolves to an identity"""

    async def guard(request: Request) -> None:
        await run_in_threadpool(permission_service.require_authenticated, request)

    return _guarded(handler, guard)


def with_role(role: Union[Role, str], handler: Optional[Handler] = None):
    """403 unless the caller's role ranks at or above ``role``"""
    if handler is None:
        return partial(with_role, role)
    required = Role(role)

    async def guard(request: Request) -> None:
        await run_in_threadpool(permission_service.require_role, request, required)

    return _guarded(handler, guard)


def with_admin(handler: Handler) -> Handler:
    return with_role(Role.ADMIN, handler)


def with_permission(permission: str, handler: Optional[Handler] = None):
    """403 unless the caller's role grants ``permission``"""
    if handler is None:
        return partial(with_permission, permission)

    async def guard(request: Request) -> None:
        await run_in_threadpool(permission_service.require_permission, request, permission)

    return _guarded(handler, guard)


def with_feature(feature: str, handler: Optional[Handler] = None):
    """402 unless ``feature`` is enabled for the caller's role"""
    if handler is None:
        return partial(with_feature, feature)

    async def guard(request: Request) -> None:
        await run_in_threadpool(permission_service.require_feature, request, feature)

    return _guarded(handler, guard)


def with_usage_limit(resource: str, handler: Optional[Handler] = None):
    """402 once the caller owns as many ``resource`` items as the plan allows"""
    if handler is None:
        return partial(with_usage_limit, resource)

    async def guard(request: Request) -> None:
        await run_in_threadpool(permission_service.require_usage, request, resource)

    return _guarded(handler, guard)


def _default_rate_key(request: Request) -> str:
    context = permission_service.get_context(request)
    if context.is_authenticated and context.user is not None:
        return f"user:{context.user.id}"
    return f"ip:{get_client_ip(request)}"


def with_rate_limit(
    limiter,
    handler: Optional[Handler] = None,
    key_func: Optional[Callable[[Request], str]] = None,
):
    """429 with Retry-After once ``limiter`` rejects the caller's key"""
    if handler is None:
        return partial(with_rate_limit, limiter, key_func=key_func)
    key_of = key_func or _default_rate_key

    async def guard(request: Request) -> None:
        key = await run_in_threadpool(key_of, request)
        if not limiter.is_allowed(key):
            status = limiter.get_status(key)
            RATE_LIMITED.labels(getattr(limiter, "name", type(limiter).__name__)).inc()
            raise RateLimitExceededError(
                status.message or "Rate limit exceeded. Please try again later.",
                reset_time=status.reset_time,
            )

    return _guarded(handler, guard)


def compose(*wrappers: Wrapper) -> Wrapper:
    """Stack wrappers; the first one listed runs first"""

    def apply(handler: Handler) -> Handler:
        for wrapper in reversed(wrappers):
            handler = wrapper(handler)
        return handler

    return apply


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-IP throttling for every request.

    The global hourly ceiling applies everywhere; the per-minute api limit
    applies under /api/. Rejections are 429 with Retry-After.
    """

    EXEMPT_PATHS = ("/health", "/metrics", "/")

    def __init__(self, app, limiters: Optional[dict] = None):
        super().__init__(app)
        limiters = limiters or auth_rate_limiters
        self.global_limiter = limiters["global"]
        self.api_limiter = limiters["api"]

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if not settings.RATE_LIMIT_ENABLED or path in self.EXEMPT_PATHS:
            return await call_next(request)

        client_ip = get_client_ip(request)
        checks = [("global", self.global_limiter)]
        if path.startswith("/api/"):
            checks.append(("api", self.api_limiter))

        for name, limiter in checks:
            if not limiter.is_allowed(client_ip):
                status = limiter.get_status(client_ip)
                RATE_LIMITED.labels(name).inc()
                logger.warning(f"Rate limit exceeded limiter={name} ip={client_ip} path={path}")
                return error_response(
                    request,
                    RateLimitExceededError(
                        "Rate limit exceeded. Please try again later.",
                        reset_time=status.reset_time,
                    ),
                )

        response = await call_next(request)

        name, limiter = checks[-1]
        status = limiter.get_status(client_ip)
        response.headers["X-RateLimit-Limit"] = str(status.limit)
        response.headers["X-RateLimit-Remaining"] = str(status.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(status.reset_time))
        return response
