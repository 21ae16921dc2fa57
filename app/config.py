from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    APP_ENV: Literal["development", "staging", "production"] = Field(
        default="development"
    )
    DEBUG: bool = Field(default=True)
    LOG_LEVEL: str = Field(default="INFO")

    DATABASE_URL: Optional[str] = Field(default=None)
    REDIS_URL: Optional[str] = Field(default=None)

    # Shared with the upstream IdP; authenticates both directions of the sync
    SYNC_SHARED_SECRET: Optional[str] = Field(default=None)
    SYNC_BROWSER_ORIGINS: list[str] = Field(default_factory=list)
    SYNC_BROADCAST_CHANNEL: str = Field(default="auth:sync")

    UPSTREAM_BASE_URL: Optional[str] = Field(default=None)
    UPSTREAM_SESSIONS_PATH: str = Field(default="/wp-json/asap/v1/get-active-sessions")
    UPSTREAM_PROVIDER: str = Field(default="wordpress")
    UPSTREAM_TIMEOUT_SECONDS: float = Field(default=8.0, gt=0)
    UPSTREAM_MAX_ATTEMPTS: int = Field(default=3, ge=1, le=5)
    UPSTREAM_RETRY_BACKOFF_SECONDS: float = Field(default=0.5, ge=0)
    UPSTREAM_NUMERIC_IDS: bool = Field(default=True)
    # Empty string disables the local upstream-cookie check
    UPSTREAM_LOGIN_COOKIE_PREFIX: Optional[str] = Field(default="wordpress_logged_in_")

    SESSION_EXPIRES_DAYS: int = Field(default=30, ge=1)
    SESSION_COOKIE_NAME: str = Field(default="local_auth_session")
    SESSION_COOKIE_SECURE: Optional[bool] = Field(default=None)

    FALLBACK_SESSION_CAPACITY: int = Field(default=10000, ge=1)

    @property
    def session_cookie_secure(self) -> bool:
        if self.SESSION_COOKIE_SECURE is not None:
            return self.SESSION_COOKIE_SECURE
        return self.APP_ENV != "development"


settings = Settings()
