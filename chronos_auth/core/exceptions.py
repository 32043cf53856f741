"""Custom exception classes for the application"""

import math
import time
from typing import Any, Dict, Optional


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details or {}
        self.headers = headers or {}
        super().__init__(self.message)


def _retry_after_seconds(until: float) -> int:
    return max(1, math.ceil(until - time.time()))


# Authentication Errors
class AuthenticationRequiredError(BaseAPIException):
    """No authenticated identity on the request"""
    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status_code=401, code="AUTH_REQUIRED")


class InvalidCredentialsError(BaseAPIException):
    """Unknown account or wrong PIN"""
    def __init__(self, attempts_remaining: Optional[int] = None):
        details = {}
        if attempts_remaining is not None:
            details["attemptsRemaining"] = attempts_remaining
        super().__init__(
            "Invalid credentials", status_code=401, code="INVALID_CREDENTIALS", details=details
        )


class TokenInvalidError(BaseAPIException):
    """JWT token is invalid, expired or revoked"""
    def __init__(self, message: str = "Invalid token"):
        super().__init__(message, status_code=401, code="TOKEN_INVALID")


class AccountLockedError(BaseAPIException):
    """Login locked after too many failed attempts"""
    def __init__(self, lockout_until: float):
        super().__init__(
            "Account temporarily locked due to too many failed attempts",
            status_code=429,
            code="ACCOUNT_LOCKED",
            details={"lockoutUntil": lockout_until, "attemptsRemaining": 0},
            headers={"Retry-After": str(_retry_after_seconds(lockout_until))},
        )


# Authorization Errors
class RoleRequiredError(BaseAPIException):
    """Caller's role is below the required one"""
    def __init__(self, required: str):
        super().__init__(
            "Insufficient role", status_code=403, code="ROLE_REQUIRED", details={"required": required}
        )


class PermissionDeniedError(BaseAPIException):
    """Caller lacks a permission"""
    def __init__(self, permission: str):
        super().__init__(
            "Insufficient permissions",
            status_code=403,
            code="PERMISSION_DENIED",
            details={"required": permission},
        )


class FeatureUnavailableError(BaseAPIException):
    """Feature is not part of the caller's plan"""
    def __init__(self, feature: str):
        super().__init__(
            "Feature not available",
            status_code=402,
            code="FEATURE_UNAVAILABLE",
            details={"feature": feature, "upgradeRequired": True},
        )


class UsageLimitExceededError(BaseAPIException):
    """Resource quota for the caller's plan is used up"""
    def __init__(self, resource: str, current: int, limit: Optional[int]):
        super().__init__(
            "Usage limit exceeded",
            status_code=402,
            code="USAGE_LIMIT_EXCEEDED",
            details={
                "resource": resource,
                "current": current,
                "limit": limit,
                "upgradeRequired": True,
            },
        )


# Throttling Errors
class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    def __init__(
        self,
        message: str = "Rate limit exceeded. Please try again later.",
        reset_time: Optional[float] = None,
    ):
        retry_after = _retry_after_seconds(reset_time) if reset_time else 60
        super().__init__(
            message,
            status_code=429,
            code="RATE_LIMIT_EXCEEDED",
            details={"retryAfter": retry_after},
            headers={"Retry-After": str(retry_after)},
        )


# Validation Errors
class ValidationError(BaseAPIException):
    """Malformed request input"""
    def __init__(self, message: str = "Invalid input", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=400, code="INVALID_INPUT", details=details)


# System Errors
class TokenCreationError(BaseAPIException):
    """Signing failed"""
    def __init__(self):
        super().__init__("Token creation failed", status_code=500, code="TOKEN_CREATION_FAILED")


class StateStoreError(BaseAPIException):
    """Shared state backend is unreachable"""
    def __init__(self, message: str = "State store unavailable"):
        super().__init__(message, status_code=503, code="STATE_STORE_UNAVAILABLE")
