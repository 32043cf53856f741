"""Pydantic schemas for API validation"""

from chronos_auth.schemas.auth import (
    AuthContext,
    AuthenticationResult,
    AuthTokens,
    AuthUser,
    DeviceInfo,
    FeatureSummary,
    LoginRequest,
    RefreshTokenRequest,
    Role,
    TokenPayload,
    TokenType,
    TokenValidationResult,
    UsageResult,
)

__all__ = [
    "AuthContext", "AuthenticationResult", "AuthTokens", "AuthUser", "DeviceInfo",
    "FeatureSummary", "LoginRequest", "RefreshTokenRequest", "Role",
    "TokenPayload", "TokenType", "TokenValidationResult", "UsageResult",
]
