"""PIN login, request identity resolution and session bookkeeping."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool
from starlette.requests import HTTPConnection, Request

from chronos_auth.config import Settings, settings
from chronos_auth.core.exceptions import (
    AuthenticationRequiredError,
    BaseAPIException,
    TokenInvalidError,
    ValidationError,
)
from chronos_auth.core.metrics import ACTIVE_SESSIONS, LOGIN_ATTEMPTS
from chronos_auth.core.security import hash_pin, verify_pin
from chronos_auth.core.storage import KeyValueStore, state_store
from chronos_auth.schemas.auth import (
    AuthContext,
    AuthenticationResult,
    AuthUser,
    DeviceInfo,
    LoginRequest,
    RefreshTokenRequest,
    Role,
    TokenType,
)
from chronos_auth.services.rate_limiter import Clock, RateLimiter, get_client_ip
from chronos_auth.services.token_service import (
    DEMO_USER,
    TokenService,
    extract_token_from_request,
    token_service,
)

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session:"
LOGIN_ATTEMPTS_PREFIX = "login_attempts:"
LOCKOUT_PREFIX = "login_lockout:"
REFRESH_COOKIE = "refresh_token"

DEMO_USER_HEADER = "x-demo-user"
DEMO_USER_VALUE = "demo-user"
DEMO_TOKEN_HEADER = "x-demo-token"
DEMO_TOKEN_VALUE = "demo-token-2024"
DEMO_SESSION_ID = "demo-session"

# Never matches a 4-digit PIN; evens out timing for unknown accounts
_DUMMY_PIN_SOURCE = "not-a-valid-pin"


@dataclass(frozen=True)
class SeedAccount:
    id: str
    display_name: str
    email: str
    role: Role
    pin: str
    is_demo: bool = False


SEED_ACCOUNTS = (
    SeedAccount("demo-user", "Demo User", "demo@astralchronos.com", Role.USER, "0000", is_demo=True),
    SeedAccount("planner-pro", "Planner Pro", "pro@astralchronos.com", Role.PREMIUM, "7347"),
)
_ACCOUNTS = {account.id: account for account in SEED_ACCOUNTS}


@lru_cache(maxsize=None)
def _pin_hash(pin: str) -> str:
    """bcrypt hash of a seed PIN, computed once per process"""
    return hash_pin(pin)


@dataclass
class AttemptCheck:
    allowed: bool
    attempts_remaining: int
    lockout_until: Optional[float] = None


def _safe_device_info(user_agent: Optional[str], ip_address: Optional[str], **extra: Any) -> DeviceInfo:
    try:
        return DeviceInfo(user_agent=user_agent, ip_address=ip_address, **extra)
    except PydanticValidationError:
        return DeviceInfo(user_agent=user_agent, ip_address="unknown")


class AuthService:
    """
    Authentication gate.

    Identity comes from a valid access token first, then the demo headers.
    Sessions and failed-login counters are kept in the state store so that
    every instance pointed at the same store sees the same lockouts.
    """

    def __init__(
        self,
        tokens: TokenService,
        store: KeyValueStore,
        config: Settings = settings,
        clock: Clock = time.time,
        login_limiter: Optional[RateLimiter] = None,
        ip_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self._tokens = tokens
        self._store = store
        self._config = config
        self._clock = clock
        self.login_limiter = login_limiter or RateLimiter(
            config.LOGIN_RATE_LIMIT_PER_MINUTE,
            60,
            message="Too many login attempts. Please wait before trying again.",
            clock=clock,
        )
        self.ip_limiter = ip_limiter or RateLimiter(
            config.LOGIN_IP_RATE_LIMIT_PER_MINUTE,
            60,
            message="Too many requests. Please wait before trying again.",
            clock=clock,
        )

    @property
    def lockout_seconds(self) -> float:
        return self._config.LOCKOUT_MINUTES * 60

    @property
    def session_timeout_seconds(self) -> float:
        return self._config.SESSION_TIMEOUT_HOURS * 3600

    # ------------------------------------------------------------------
    # Login attempts
    # ------------------------------------------------------------------

    def _lockout_until(self, key: str) -> Optional[float]:
        lockout = self._store.get(f"{LOCKOUT_PREFIX}{key}")
        if lockout is None:
            return None
        lockout_until = lockout.get("lockoutUntil", 0)
        if self._clock() >= lockout_until:
            self._store.delete(f"{LOCKOUT_PREFIX}{key}")
            self._store.delete(f"{LOGIN_ATTEMPTS_PREFIX}{key}")
            return None
        return lockout_until

    def check_login_attempts(self, key: str) -> AttemptCheck:
        """Lockout state for an ``accountId:IP`` key without counting an attempt."""
        lockout_until = self._lockout_until(key)
        if lockout_until:
            return AttemptCheck(allowed=False, attempts_remaining=0, lockout_until=lockout_until)
        used = self._store.get_counter(f"{LOGIN_ATTEMPTS_PREFIX}{key}")
        return AttemptCheck(allowed=True, attempts_remaining=max(0, self._config.MAX_LOGIN_ATTEMPTS - used))

    def reserve_login_attempt(self, key: str) -> AttemptCheck:
        """
        Count an attempt for ``key`` before the PIN is checked.

        The counter is bumped with a single ``incr`` so concurrent logins
        each get a distinct position. Positions past MAX_LOGIN_ATTEMPTS
        start (or join) the lockout. ``attempts_remaining`` is what is left
        if this attempt fails.
        """
        lockout_until = self._lockout_until(key)
        if lockout_until:
            return AttemptCheck(allowed=False, attempts_remaining=0, lockout_until=lockout_until)

        max_attempts = self._config.MAX_LOGIN_ATTEMPTS
        count = self._store.incr(f"{LOGIN_ATTEMPTS_PREFIX}{key}", self.lockout_seconds)
        if count <= max_attempts:
            return AttemptCheck(allowed=True, attempts_remaining=max_attempts - count)

        lockout_key = f"{LOCKOUT_PREFIX}{key}"
        lockout = self._store.get(lockout_key)
        if lockout is None:
            now = self._clock()
            lockout = {"count": count - 1, "lastAttempt": now, "lockoutUntil": now + self.lockout_seconds}
            self._store.set(lockout_key, lockout, ttl=self.lockout_seconds)
            logger.warning(
                "Account locked due to too many failed attempts key=%s lockout_until=%.0f",
                key, lockout["lockoutUntil"],
            )
        return AttemptCheck(allowed=False, attempts_remaining=0, lockout_until=lockout["lockoutUntil"])

    def reset_login_attempts(self, key: str) -> None:
        self._store.delete(f"{LOGIN_ATTEMPTS_PREFIX}{key}")

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def authenticate_user(self, request: Request) -> AuthenticationResult:
        """Read the JSON login body from ``request`` and run :meth:`login`."""
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        return await run_in_threadpool(
            self.login,
            payload,
            client_ip=get_client_ip(request),
            user_agent=request.headers.get("user-agent", "unknown"),
        )

    def login(
        self,
        payload: Any,
        client_ip: str = "unknown",
        user_agent: str = "unknown",
    ) -> AuthenticationResult:
        """
        PIN login.

        Order: input validation, rate limits, lockout, credential check.
        Unknown account and wrong PIN are reported identically.
        """
        try:
            body = LoginRequest.model_validate(payload)
        except PydanticValidationError as exc:
            LOGIN_ATTEMPTS.labels("invalid_input").inc()
            errors = exc.errors()
            message = errors[0]["msg"] if errors else "Invalid input"
            return AuthenticationResult(
                success=False,
                error=message.removeprefix("Value error, "),
                reason="invalid_input",
            )

        attempt_key = f"{body.account_id}:{client_ip}"

        for limiter, key, scope in (
            (self.login_limiter, attempt_key, "login"),
            (self.ip_limiter, client_ip, "login_ip"),
        ):
            if not limiter.is_allowed(key):
                status = limiter.get_status(key)
                logger.warning(
                    "Login rate limit exceeded scope=%s account=%s ip=%s",
                    scope, body.account_id, client_ip,
                )
                LOGIN_ATTEMPTS.labels("rate_limited").inc()
                return AuthenticationResult(
                    success=False,
                    error=limiter.message,
                    reason="rate_limited",
                    retry_after=status.retry_after(self._clock()),
                )

        try:
            check = self.reserve_login_attempt(attempt_key)
            if not check.allowed:
                LOGIN_ATTEMPTS.labels("locked_out").inc()
                return AuthenticationResult(
                    success=False,
                    error="Account temporarily locked due to too many failed attempts",
                    lockout_until=check.lockout_until,
                    attempts_remaining=0,
                    reason="locked_out",
                    retry_after=max(1, int(check.lockout_until - self._clock())),
                )

            account = _ACCOUNTS.get(body.account_id)
            if account is None:
                verify_pin(body.pin, _pin_hash(_DUMMY_PIN_SOURCE))
                valid = False
            else:
                valid = verify_pin(body.pin, _pin_hash(account.pin))

            if not valid:
                logger.warning(
                    "Invalid credentials account=%s ip=%s attempts_remaining=%d",
                    body.account_id, client_ip, check.attempts_remaining,
                )
                LOGIN_ATTEMPTS.labels("invalid_credentials").inc()
                return AuthenticationResult(
                    success=False,
                    error="Invalid credentials",
                    attempts_remaining=check.attempts_remaining,
                    reason="invalid_credentials",
                )

            self.reset_login_attempts(attempt_key)
            return self._complete_login(account, body, client_ip, user_agent)
        except BaseAPIException as exc:
            logger.error(f"Authentication failed: {exc.message}")
            LOGIN_ATTEMPTS.labels("error").inc()
            return AuthenticationResult(success=False, error="Authentication failed", reason="error")

    def _complete_login(
        self,
        account: SeedAccount,
        body: LoginRequest,
        client_ip: str,
        user_agent: str,
    ) -> AuthenticationResult:
        first_name, _, last_name = account.display_name.partition(" ")
        user = AuthUser(
            id=account.id,
            email=account.email,
            role=account.role,
            first_name=first_name,
            last_name=last_name or None,
            username=account.id,
            is_demo=account.is_demo,
        )

        supplied = body.device_info.model_dump(exclude_none=True) if body.device_info else {}
        device_info = _safe_device_info(
            supplied.pop("user_agent", user_agent),
            supplied.pop("ip_address", client_ip),
            **supplied,
        )

        if account.is_demo:
            tokens = self._tokens.create_demo_auth_tokens(device_info)
        else:
            tokens = self._tokens.create_auth_tokens(user, device_info)

        now = self._clock()
        self._store.set(
            f"{SESSION_PREFIX}{tokens.session_id}",
            {
                "userId": user.id,
                "createdAt": now,
                "lastActivity": now,
                "deviceId": tokens.device_id,
            },
            ttl=self._tokens.refresh_ttl,
        )
        ACTIVE_SESSIONS.inc()
        LOGIN_ATTEMPTS.labels("success").inc()

        logger.info(
            "User authenticated user_id=%s ip=%s demo=%s session_id=%s",
            user.id, client_ip, user.is_demo, tokens.session_id,
        )
        return AuthenticationResult(
            success=True,
            tokens=tokens,
            user=user.model_copy(update={"session_id": tokens.session_id}),
        )

    # ------------------------------------------------------------------
    # Request identity
    # ------------------------------------------------------------------

    def get_auth_context(self, request: HTTPConnection) -> AuthContext:
        """Resolve the caller. Never raises for bad credentials."""
        token = extract_token_from_request(request)
        if token:
            context = self._context_from_token(token)
            if context is not None:
                return context

        if self._config.DEMO_AUTH_ENABLED and self._is_demo_request(request):
            logger.info("Demo user authenticated via headers")
            return AuthContext(
                user=DEMO_USER.model_copy(update={"session_id": DEMO_SESSION_ID}),
                is_authenticated=True,
                is_demo=True,
                session_id=DEMO_SESSION_ID,
            )

        return AuthContext.anonymous()

    def _context_from_token(self, token: str) -> Optional[AuthContext]:
        validation = self._tokens.verify_token(token)
        if not validation.valid or validation.payload is None:
            return None

        payload = validation.payload
        if payload.type != TokenType.ACCESS:
            logger.warning("Rejected %s token presented as access token", payload.type.value)
            return None

        if self._tokens.is_token_blacklisted(payload.session_id):
            logger.warning("Blacklisted token used session_id=%s", payload.session_id)
            return None

        session_key = f"{SESSION_PREFIX}{payload.session_id}"
        session = self._store.get(session_key)
        if session is not None:
            now = self._clock()
            if now - session.get("lastActivity", 0) > self.session_timeout_seconds:
                self._store.delete(session_key)
                ACTIVE_SESSIONS.dec()
                logger.info("Session expired session_id=%s", payload.session_id)
                return None
            session["lastActivity"] = now
            self._store.set(session_key, session, ttl=self._tokens.refresh_ttl)

        return AuthContext(
            user=payload.user,
            is_authenticated=True,
            is_demo=payload.user.is_demo,
            session_id=payload.session_id,
            device_id=payload.device_id,
        )

    @staticmethod
    def _is_demo_request(request: HTTPConnection) -> bool:
        return (
            request.headers.get(DEMO_USER_HEADER) == DEMO_USER_VALUE
            or request.headers.get(DEMO_TOKEN_HEADER) == DEMO_TOKEN_VALUE
        )

    def require_auth(self, request: HTTPConnection) -> AuthUser:
        """
        Raises:
            AuthenticationRequiredError: If the request carries no identity
        """
        context = self.get_auth_context(request)
        if not context.is_authenticated or context.user is None:
            raise AuthenticationRequiredError()
        return context.user

    # ------------------------------------------------------------------
    # Sign-out and refresh
    # ------------------------------------------------------------------

    def sign_out(self, request: HTTPConnection) -> Dict[str, Any]:
        """Revoke the caller's session and drop its record. Idempotent."""
        token = extract_token_from_request(request)
        if not token:
            return {"success": True}

        session_id = self._tokens.blacklist_token(token)
        if session_id and self._store.delete(f"{SESSION_PREFIX}{session_id}"):
            ACTIVE_SESSIONS.dec()
        if session_id:
            logger.info("User signed out session_id=%s", session_id)
        return {"success": True}

    async def refresh_tokens(self, request: Request) -> Dict[str, Any]:
        """
        New access token from the ``refreshToken`` body field or the
        refresh_token cookie. The refresh token itself is reused.

        Raises:
            ValidationError: No refresh token supplied
            TokenInvalidError: Refresh token invalid, wrong type or revoked
        """
        refresh_token = None
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            try:
                refresh_token = RefreshTokenRequest.model_validate(body).refresh_token
            except PydanticValidationError:
                refresh_token = None
        refresh_token = refresh_token or request.cookies.get(REFRESH_COOKIE)

        if not refresh_token:
            raise ValidationError("Refresh token required")

        device_info = _safe_device_info(
            request.headers.get("user-agent", "unknown"), get_client_ip(request)
        )
        result = self._tokens.refresh_access_token(refresh_token, device_info)
        if result is None:
            raise TokenInvalidError("Invalid refresh token")

        logger.info("Tokens refreshed")
        return {
            "access_token": result["access_token"],
            "refresh_token": refresh_token,
            "expires_in": result["expires_in"],
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_expired_sessions(self) -> int:
        now = self._clock()
        cleaned = 0
        for key in self._store.keys(SESSION_PREFIX):
            session = self._store.get(key)
            if session is None:
                continue
            if now - session.get("lastActivity", 0) > self.session_timeout_seconds:
                if self._store.delete(key):
                    cleaned += 1

        # Records dropped by the store's own TTL never pass through a delete
        ACTIVE_SESSIONS.set(len(self._store.keys(SESSION_PREFIX)))
        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired sessions")
        return cleaned

    def cleanup_login_attempts(self) -> int:
        """Drop lockouts that have run out, together with their attempt counters"""
        now = self._clock()
        cleaned = 0
        for key in self._store.keys(LOCKOUT_PREFIX):
            lockout = self._store.get(key)
            if lockout is None or now < lockout.get("lockoutUntil", 0):
                continue
            attempt_key = key[len(LOCKOUT_PREFIX):]
            self._store.delete(f"{LOGIN_ATTEMPTS_PREFIX}{attempt_key}")
            if self._store.delete(key):
                cleaned += 1

        if cleaned:
            logger.info(f"Cleaned up {cleaned} stale login attempt records")
        return cleaned

    def get_auth_stats(self) -> Dict[str, int]:
        now = self._clock()
        locked = 0
        for key in self._store.keys(LOCKOUT_PREFIX):
            lockout = self._store.get(key) or {}
            if lockout.get("lockoutUntil", 0) > now:
                locked += 1

        active_sessions = len(self._store.keys(SESSION_PREFIX))
        ACTIVE_SESSIONS.set(active_sessions)
        return {
            "activeSessions": active_sessions,
            "activeAttempts": len(self._store.keys(LOGIN_ATTEMPTS_PREFIX)),
            "lockedAccounts": locked,
            "blacklistedSessions": self._tokens.blacklist_size(),
        }


auth_service = AuthService(token_service, state_store)
