"""JSON error bodies shared by exception handlers and handler wrappers"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse
from starlette.requests import HTTPConnection

from chronos_auth.core.exceptions import BaseAPIException


def error_body(
    message: str,
    code: str,
    path: str,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "success": False,
        "error": message,
        "code": code,
        **(details or {}),
        "path": path,
        "timestamp": datetime.utcnow().isoformat(),
    }


def error_response(request: HTTPConnection, exc: BaseAPIException) -> JSONResponse:
    """Render a BaseAPIException with its status code and headers"""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.message, exc.code, request.url.path, exc.details),
        headers=exc.headers or None,
    )
