"""Security utilities - signing keys, JWT encoding, PIN hashing"""

import hashlib
import logging
import secrets
import time
from typing import Any, Dict, Optional

import bcrypt
from jose import jwt

from chronos_auth.config import Settings, settings

logger = logging.getLogger(__name__)

DEV_FALLBACK_SECRET = "fallback-dev-secret-not-for-production"


def derive_secret_key(config: Optional[Settings] = None) -> bytes:
    """
    Derive the HMAC signing key from the configured secret.

    PBKDF2-SHA256 over JWT_SECRET and JWT_SALT so that a weak operator
    secret is not used as-is.

    Raises:
        RuntimeError: If JWT_SECRET is missing in production
    """
    config = config or settings
    secret = config.JWT_SECRET
    if not secret:
        if config.is_production:
            raise RuntimeError("JWT_SECRET is required in production")
        logger.warning("Using fallback JWT secret for development - NOT SECURE")
        return DEV_FALLBACK_SECRET.encode("utf-8")

    return hashlib.pbkdf2_hmac(
        "sha256",
        secret.encode("utf-8"),
        config.JWT_SALT.encode("utf-8"),
        config.JWT_KDF_ITERATIONS,
        dklen=32,
    )


def encode_token(claims: Dict[str, Any], key: bytes, algorithm: str = "HS256") -> str:
    """Sign a claim set as a compact JWT"""
    return jwt.encode(claims, key, algorithm=algorithm, headers={"typ": "JWT"})


def decode_token(
    token: str,
    key: bytes,
    *,
    issuer: str,
    audience: str,
    algorithm: str = "HS256",
) -> Dict[str, Any]:
    """
    Decode and verify a JWT (signature, exp, nbf, iss, aud).

    Raises:
        jose.ExpiredSignatureError: Token expired
        jose.JWTError: Any other verification failure
    """
    return jwt.decode(
        token,
        key,
        algorithms=[algorithm],
        issuer=issuer,
        audience=audience,
    )


def generate_session_id() -> str:
    """256-bit random session identifier as hex"""
    return secrets.token_hex(32)


def generate_device_id(user_agent: Optional[str] = None, ip_address: Optional[str] = None) -> str:
    """
    Device fingerprint: SHA-256 of user agent, IP and current time,
    truncated to 16 hex chars.
    """
    data = f"{user_agent or 'unknown'}-{ip_address or 'unknown'}-{int(time.time() * 1000)}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]


def hash_pin(pin: str) -> str:
    """
    Hash a PIN using bcrypt

    Args:
        pin: Plain text PIN

    Returns:
        str: Hashed PIN
    """
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_pin(plain_pin: str, hashed_pin: str) -> bool:
    """
    Verify a PIN against its hash

    Args:
        plain_pin: Plain text PIN
        hashed_pin: Hashed PIN

    Returns:
        bool: True if PIN matches
    """
    try:
        return bcrypt.checkpw(plain_pin.encode("utf-8"), hashed_pin.encode("utf-8"))
    except ValueError:
        logger.error("PIN verification failed: malformed hash")
        return False
