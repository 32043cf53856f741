"""Auth schemas"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialised with camelCase field names"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Role(str, Enum):
    """User role enumeration, lowest to highest"""
    USER = "user"
    PREMIUM = "premium"
    ADMIN = "admin"


ROLE_HIERARCHY: Dict[Role, int] = {Role.USER: 0, Role.PREMIUM: 1, Role.ADMIN: 2}


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    SESSION = "session"


class AuthUser(CamelModel):
    """Authenticated identity carried in tokens"""
    id: str
    email: str
    role: Role = Role.USER
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None
    username: Optional[str] = None
    is_demo: bool = False
    session_id: Optional[str] = None


_ACCOUNT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
_SUSPICIOUS_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"script", r"javascript", r"onload", r"onerror", r"<.*>", r"[{}]", r"eval\(", r"exec\(")
]
_IPV4_PATTERN = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")
_IPV6_PATTERN = re.compile(r"^([0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}$")


class DeviceInfo(CamelModel):
    """Client-supplied device hints"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    fingerprint: Optional[str] = Field(default=None, max_length=256)

    @field_validator("user_agent")
    @classmethod
    def sanitize_user_agent(cls, v):
        if v is None:
            return v
        return v[:500].replace("<", "").replace(">", "")

    @field_validator("ip_address")
    @classmethod
    def validate_ip(cls, v):
        if v is None:
            return v
        ip = v.strip()
        if ip == "unknown" or _IPV4_PATTERN.match(ip) or _IPV6_PATTERN.match(ip):
            return ip
        raise ValueError("Invalid IP address format")


class LoginRequest(CamelModel):
    """PIN login payload"""
    account_id: str = Field(..., min_length=3, max_length=50)
    pin: str
    device_info: Optional[DeviceInfo] = None

    @field_validator("account_id")
    @classmethod
    def validate_account_id(cls, v):
        """Alphanumeric with _ or -, no script-like content"""
        if not _ACCOUNT_ID_PATTERN.match(v):
            raise ValueError("Account ID contains invalid characters")
        if any(p.search(v) for p in _SUSPICIOUS_PATTERNS):
            raise ValueError("Account ID contains potentially harmful content")
        return v.strip().lower()

    @field_validator("pin")
    @classmethod
    def validate_pin(cls, v):
        if not re.fullmatch(r"\d{4}", v):
            raise ValueError("PIN must be exactly 4 digits")
        return v


class RefreshTokenRequest(CamelModel):
    refresh_token: Optional[str] = None


class AuthTokens(CamelModel):
    """Signed token triple and lifetimes in seconds"""
    access_token: str
    refresh_token: str
    session_token: str
    expires_in: int
    refresh_expires_in: int
    session_expires_in: int
    session_id: Optional[str] = Field(default=None, exclude=True)
    device_id: Optional[str] = Field(default=None, exclude=True)


class TokenPayload(CamelModel):
    """Verified claim set"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    user: AuthUser
    type: TokenType
    session_id: str
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    iss: Optional[str] = None
    aud: Optional[Any] = None
    iat: Optional[int] = None
    exp: Optional[int] = None
    nbf: Optional[int] = None
    jti: Optional[str] = None


class TokenValidationResult(BaseModel):
    valid: bool
    payload: Optional[TokenPayload] = None
    expired: bool = False
    error: Optional[str] = None


class AuthenticationResult(CamelModel):
    """Outcome of a login attempt"""
    success: bool
    tokens: Optional[AuthTokens] = None
    user: Optional[AuthUser] = None
    error: Optional[str] = None
    lockout_until: Optional[float] = None
    attempts_remaining: Optional[int] = None
    # Internal: drives the HTTP status, never serialised
    reason: Optional[str] = Field(default=None, exclude=True)
    retry_after: Optional[int] = Field(default=None, exclude=True)


class AuthContext(BaseModel):
    """Identity resolved for one request"""
    user: Optional[AuthUser] = None
    is_authenticated: bool = False
    is_demo: bool = False
    session_id: Optional[str] = None
    device_id: Optional[str] = None

    @classmethod
    def anonymous(cls) -> "AuthContext":
        return cls()


class UsageResult(CamelModel):
    """Quota check for one resource kind; limit None means unlimited"""
    allowed: bool
    current: int
    limit: Optional[int] = None
    remaining: Optional[int] = None


class FeatureSummary(CamelModel):
    role: Role
    features: Dict[str, bool]
    limits: Dict[str, Optional[int]]
    permissions: List[str]
