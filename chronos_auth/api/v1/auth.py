"""Authentication routes"""

import logging
import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from chronos_auth.api.deps import get_auth_context, get_current_user
from chronos_auth.config import settings
from chronos_auth.core.exceptions import (
    AccountLockedError,
    AuthenticationRequiredError,
    BaseAPIException,
    InvalidCredentialsError,
    RateLimitExceededError,
    ValidationError,
)
from chronos_auth.schemas.auth import AuthContext, AuthenticationResult, AuthTokens, AuthUser
from chronos_auth.services.auth_service import REFRESH_COOKIE, auth_service
from chronos_auth.services.token_service import ACCESS_COOKIE, secure_token_headers, token_service

logger = logging.getLogger(__name__)

router = APIRouter()

SESSION_COOKIE = "session_token"


def _set_cookie(response: JSONResponse, key: str, value: str, max_age: int, httponly: bool = True) -> None:
    response.set_cookie(
        key,
        value,
        max_age=max_age,
        path="/",
        httponly=httponly,
        secure=settings.is_production,
        samesite="strict",
    )


def _auth_response(tokens: AuthTokens, user: AuthUser) -> JSONResponse:
    """Login body plus the three token cookies; session_token stays readable by scripts"""
    response = JSONResponse(
        content={
            "success": True,
            "user": user.to_json(),
            "tokens": {
                "expiresIn": tokens.expires_in,
                "refreshExpiresIn": tokens.refresh_expires_in,
                "sessionExpiresIn": tokens.session_expires_in,
            },
        },
        headers=secure_token_headers(),
    )
    _set_cookie(response, ACCESS_COOKIE, tokens.access_token, tokens.expires_in)
    _set_cookie(response, REFRESH_COOKIE, tokens.refresh_token, tokens.refresh_expires_in)
    _set_cookie(response, SESSION_COOKIE, tokens.session_token, tokens.session_expires_in, httponly=False)
    return response


def _login_error(result: AuthenticationResult) -> BaseAPIException:
    """Map a failed login to the error rendered by the exception handlers"""
    if result.reason == "invalid_input":
        return ValidationError(result.error or "Invalid input")
    if result.reason == "locked_out" and result.lockout_until:
        return AccountLockedError(result.lockout_until)
    if result.reason == "rate_limited":
        return RateLimitExceededError(
            result.error or "Too many login attempts",
            reset_time=time.time() + (result.retry_after or 60),
        )
    if result.reason == "invalid_credentials":
        return InvalidCredentialsError(result.attempts_remaining)
    return BaseAPIException("Authentication failed", status_code=500, code="AUTHENTICATION_FAILED")


@router.post("/login")
async def login(request: Request):
    """
    PIN login

    Body: {accountId, pin, deviceInfo?}

    Returns:
        User and token lifetimes; the tokens themselves travel in cookies
    """
    result = await auth_service.authenticate_user(request)
    if not result.success or result.tokens is None or result.user is None:
        raise _login_error(result)
    return _auth_response(result.tokens, result.user)


@router.post("/refresh")
async def refresh(request: Request):
    """
    Mint a new access token

    Body: {refreshToken} or the refresh_token cookie
    """
    data = await auth_service.refresh_tokens(request)
    response = JSONResponse(
        content={
            "success": True,
            "accessToken": data["access_token"],
            "expiresIn": data["expires_in"],
        },
        headers=secure_token_headers(),
    )
    _set_cookie(response, ACCESS_COOKIE, data["access_token"], data["expires_in"])
    return response


@router.post("/signout")
def signout(request: Request):
    """Revoke the current session and clear the auth cookies"""
    result = auth_service.sign_out(request)
    response = JSONResponse(content=result)
    for key, httponly in ((ACCESS_COOKIE, True), (REFRESH_COOKIE, True), (SESSION_COOKIE, False)):
        response.delete_cookie(
            key, path="/", secure=settings.is_production, httponly=httponly, samesite="strict"
        )
    return response


@router.get("/me")
def me(
    context: AuthContext = Depends(get_auth_context),
    user: AuthUser = Depends(get_current_user),
):
    """Current identity"""
    return {"success": True, "user": user.to_json(), "isDemo": context.is_demo}


@router.get("/session")
def session(request: Request):
    """Identity from the client-readable session token"""
    token = request.cookies.get(SESSION_COOKIE)
    user = token_service.validate_session_token(token) if token else None
    if user is None:
        raise AuthenticationRequiredError("No valid session")
    return {"success": True, "user": user.to_json()}
