"""Admin routes - auth state inspection and maintenance"""

import logging

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from chronos_auth.api.middleware import with_admin
from chronos_auth.services.auth_service import auth_service
from chronos_auth.services.cleanup_worker import cleanup_worker
from chronos_auth.services.permissions import permission_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/auth-stats")
@with_admin
async def auth_stats(request: Request):
    """Session, lockout and blacklist counts plus limiter and worker state"""
    stats = await run_in_threadpool(auth_service.get_auth_stats)
    return {
        "success": True,
        "data": {
            **stats,
            "loginLimiter": auth_service.login_limiter.get_stats(),
            "cleanupWorker": cleanup_worker.status(),
        },
    }


@router.post("/sessions/cleanup")
@with_admin
async def cleanup_sessions(request: Request):
    """Run one maintenance sweep now"""
    result = await run_in_threadpool(cleanup_worker.run_once)
    admin = permission_service.get_context(request).user
    logger.info("Manual cleanup by %s removed %s", admin.id, result)
    return {"success": True, "data": result}
