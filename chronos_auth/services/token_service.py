"""Signed access/refresh/session tokens and session blacklist."""

from __future__ import annotations

import logging
import secrets
import time
from datetime import timedelta
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import HTTPConnection

from chronos_auth.config import Settings, settings
from chronos_auth.core.exceptions import TokenCreationError
from chronos_auth.core.security import (
    decode_token,
    derive_secret_key,
    encode_token,
    generate_device_id,
    generate_session_id,
)
from chronos_auth.core.storage import KeyValueStore, state_store
from chronos_auth.schemas.auth import (
    AuthTokens,
    AuthUser,
    DeviceInfo,
    Role,
    TokenPayload,
    TokenType,
    TokenValidationResult,
)

logger = logging.getLogger(__name__)

BLACKLIST_PREFIX = "blacklist:"
ACCESS_COOKIE = "access_token"

DEMO_USER = AuthUser(
    id="demo-user",
    email="demo@astralchronos.com",
    role=Role.USER,
    first_name="Demo",
    last_name="User",
    username="demo-user",
    is_demo=True,
)


class TokenService:
    """Issue and verify JWTs; the only state kept is the revoked-session set."""

    def __init__(self, store: KeyValueStore, config: Settings = settings) -> None:
        self._store = store
        self._config = config
        self._key = derive_secret_key(config)

    @property
    def access_ttl(self) -> int:
        return int(timedelta(minutes=self._config.ACCESS_TOKEN_EXPIRE_MINUTES).total_seconds())

    @property
    def refresh_ttl(self) -> int:
        return int(timedelta(days=self._config.REFRESH_TOKEN_EXPIRE_DAYS).total_seconds())

    @property
    def session_ttl(self) -> int:
        return int(timedelta(hours=self._config.SESSION_TOKEN_EXPIRE_HOURS).total_seconds())

    def _ttl_for(self, token_type: TokenType) -> int:
        return {
            TokenType.ACCESS: self.access_ttl,
            TokenType.REFRESH: self.refresh_ttl,
            TokenType.SESSION: self.session_ttl,
        }[token_type]

    def _sign(self, base: Dict[str, Any], token_type: TokenType, now: Optional[float] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        claims = {
            **base,
            "type": token_type.value,
            "iss": self._config.JWT_ISSUER,
            "aud": self._config.JWT_AUDIENCE,
            "iat": issued_at,
            "nbf": issued_at,
            "exp": issued_at + self._ttl_for(token_type),
            "jti": secrets.token_urlsafe(16),
        }
        return encode_token(claims, self._key, self._config.JWT_ALGORITHM)

    def create_auth_tokens(
        self,
        user: AuthUser,
        device_info: Optional[DeviceInfo] = None,
        now: Optional[float] = None,
    ) -> AuthTokens:
        """
        Create an access/refresh/session triple sharing one session id.

        Raises:
            TokenCreationError: If signing fails
        """
        device_info = device_info or DeviceInfo()
        try:
            session_id = generate_session_id()
            device_id = generate_device_id(device_info.user_agent, device_info.ip_address)
            base = {
                "user": user.model_copy(update={"session_id": session_id}).to_json(),
                "sessionId": session_id,
                "deviceId": device_id,
                "ipAddress": device_info.ip_address,
                "userAgent": device_info.user_agent,
            }
            tokens = AuthTokens(
                access_token=self._sign(base, TokenType.ACCESS, now),
                refresh_token=self._sign(base, TokenType.REFRESH, now),
                session_token=self._sign(base, TokenType.SESSION, now),
                expires_in=self.access_ttl,
                refresh_expires_in=self.refresh_ttl,
                session_expires_in=self.session_ttl,
                session_id=session_id,
                device_id=device_id,
            )
        except (JWTError, TypeError, ValueError) as exc:
            logger.error(f"Failed to create auth tokens for user {user.id}: {exc}")
            raise TokenCreationError() from exc

        logger.info(
            "Auth tokens created user_id=%s session_id=%s device_id=%s demo=%s",
            user.id, session_id, device_id, user.is_demo,
        )
        return tokens

    def create_demo_auth_tokens(self, device_info: Optional[DeviceInfo] = None) -> AuthTokens:
        return self.create_auth_tokens(DEMO_USER, device_info)

    def verify_token(self, token: str) -> TokenValidationResult:
        """Verify signature, issuer, audience and lifetime. Never raises."""
        try:
            claims = decode_token(
                token,
                self._key,
                issuer=self._config.JWT_ISSUER,
                audience=self._config.JWT_AUDIENCE,
                algorithm=self._config.JWT_ALGORITHM,
            )
            payload = TokenPayload.model_validate(claims)
        except ExpiredSignatureError as exc:
            logger.warning("Token verification failed: expired")
            return TokenValidationResult(valid=False, expired=True, error=str(exc))
        except (JWTError, PydanticValidationError) as exc:
            logger.warning(f"Token verification failed: {type(exc).__name__}")
            return TokenValidationResult(valid=False, expired=False, error=str(exc))
        except Exception as exc:
            logger.warning(f"Token verification failed: {type(exc).__name__}")
            return TokenValidationResult(valid=False, expired=False, error="Malformed token")

        return TokenValidationResult(valid=True, payload=payload, expired=False)

    def refresh_access_token(
        self,
        refresh_token: str,
        device_info: Optional[DeviceInfo] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Mint a new access token from a refresh token.

        Returns:
            {"access_token", "expires_in"} or None if the token is invalid,
            not a refresh token, or its session was revoked
        """
        validation = self.verify_token(refresh_token)
        if not validation.valid or not validation.payload:
            logger.warning("Invalid refresh token provided")
            return None

        payload = validation.payload
        if payload.type != TokenType.REFRESH:
            logger.warning("Token is not a refresh token")
            return None

        if self.is_token_blacklisted(payload.session_id):
            logger.warning("Refresh attempted for revoked session %s", payload.session_id)
            return None

        device_info = device_info or DeviceInfo()
        current_device = generate_device_id(device_info.user_agent, device_info.ip_address)
        if payload.device_id and payload.device_id != current_device:
            # Soft signal only
            logger.warning(
                "Device fingerprint mismatch during token refresh user_id=%s original=%s current=%s",
                payload.user.id, payload.device_id, current_device,
            )

        base = {
            "user": payload.user.to_json(),
            "sessionId": payload.session_id,
            "deviceId": payload.device_id,
            "ipAddress": device_info.ip_address,
            "userAgent": device_info.user_agent,
        }
        try:
            access_token = self._sign(base, TokenType.ACCESS)
        except (JWTError, TypeError, ValueError) as exc:
            logger.error(f"Token refresh failed: {exc}")
            return None

        logger.info(
            "Access token refreshed user_id=%s session_id=%s", payload.user.id, payload.session_id
        )
        return {"access_token": access_token, "expires_in": self.access_ttl}

    def validate_session_token(self, token: str) -> Optional[AuthUser]:
        """Identity from a session token, for UI state only"""
        validation = self.verify_token(token)
        if not validation.valid or not validation.payload:
            return None
        if validation.payload.type != TokenType.SESSION:
            logger.warning("Token is not a session token")
            return None
        if self.is_token_blacklisted(validation.payload.session_id):
            return None
        return validation.payload.user

    def blacklist_token(self, token: str) -> Optional[str]:
        """
        Revoke the session a token belongs to. Idempotent.

        Entries live as long as the longest token kind so the set stays bounded.

        Returns:
            The revoked session id, or None if the token could not be read
        """
        validation = self.verify_token(token)
        if not validation.payload:
            return None
        return self.blacklist_session(validation.payload.session_id)

    def blacklist_session(self, session_id: str) -> str:
        self._store.set(
            f"{BLACKLIST_PREFIX}{session_id}",
            {"revoked_at": time.time()},
            ttl=self.refresh_ttl,
        )
        logger.info("Session blacklisted session_id=%s", session_id)
        return session_id

    def is_token_blacklisted(self, session_id: str) -> bool:
        return self._store.get(f"{BLACKLIST_PREFIX}{session_id}") is not None

    def blacklist_size(self) -> int:
        return len(self._store.keys(BLACKLIST_PREFIX))


def extract_token_from_request(request: HTTPConnection) -> Optional[str]:
    """Bearer token from the Authorization header, else the access_token cookie"""
    auth_header = request.headers.get("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token

    cookie = request.cookies.get(ACCESS_COOKIE)
    return cookie or None


def secure_token_headers() -> Dict[str, str]:
    return {
        "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
        "X-Content-Type-Options": "nosniff",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    }


token_service = TokenService(state_store)
