"""Application configuration management"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

# Base directory: repository root
_BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "Astral Chronos Auth"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Tokens
    JWT_SECRET: Optional[str] = None
    JWT_SALT: str = "astral-chronos-salt"
    JWT_ISSUER: str = "astral-chronos"
    JWT_AUDIENCE: str = "astral-chronos-users"
    JWT_ALGORITHM: str = "HS256"
    JWT_KDF_ITERATIONS: int = 100_000
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    SESSION_TOKEN_EXPIRE_HOURS: int = 24

    # Sessions and login
    SESSION_TIMEOUT_HOURS: int = 24
    MAX_LOGIN_ATTEMPTS: int = 5
    LOCKOUT_MINUTES: int = 15
    LOGIN_RATE_LIMIT_PER_MINUTE: int = 10
    LOGIN_IP_RATE_LIMIT_PER_MINUTE: int = 100
    DEMO_AUTH_ENABLED: bool = True

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True
    API_RATE_LIMIT_PER_MINUTE: int = 100
    GLOBAL_RATE_LIMIT_PER_HOUR: int = 1000
    RATE_LIMIT_SUB_WINDOWS: int = 10

    # Shared state
    STATE_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_KEY_PREFIX: str = "chronos:"

    # Database (user directory collaborator)
    DATABASE_URL: str = ""
    DB_INIT_MODE: str = "create_all"  # create_all | off

    # Maintenance
    RUN_CLEANUP_WORKER: bool = True
    CLEANUP_INTERVAL_SECONDS: float = 300.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:3000"]

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, value: Any) -> Any:
        """
        Accept JSON array or comma-separated origins from env.

        Examples:
            CORS_ORIGINS=["http://localhost:3000","http://example.com"]
            CORS_ORIGINS=http://localhost:3000,http://example.com
        """
        if not isinstance(value, str):
            return value

        raw = value.strip()
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, str):
            return [parsed]
        if isinstance(parsed, list):
            return [str(origin).strip() for origin in parsed if str(origin).strip()]

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def get_log_file(self) -> str:
        """Resolve log file path; empty means console only"""
        p = self.LOG_FILE
        if p and not Path(p).is_absolute():
            return str(_BASE_DIR / p)
        return p

    def get_database_url(self) -> str:
        """
        Resolve database URL.

        Falls back to a SQLite file next to the repository when unset.
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"sqlite:///{_BASE_DIR / 'chronos_auth.db'}"

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if not self.is_production:
            return

        insecure_secret_markers = {
            "",
            "fallback-dev-secret-not-for-production",
            "your-super-secret-key-change-this-in-production",
            "change-me",
        }

        secret = self.JWT_SECRET or ""
        if secret in insecure_secret_markers or len(secret) < 32:
            raise ValueError(
                "Insecure JWT_SECRET for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
