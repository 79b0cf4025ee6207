"""Login shield configuration."""
import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

MAX_LOCKOUT_MINUTES = 1440


@dataclass(frozen=True)
class PolicyConfig:
    """Thresholds consulted by the tracker and captcha manager for one decision."""

    max_attempts: int = 5
    lockout_duration: timedelta = timedelta(minutes=10)
    captcha_after_attempts: int = 3
    captcha_enabled: bool = True
    notify_address: Optional[str] = None

    @property
    def lockout_minutes(self) -> int:
        return int(self.lockout_duration.total_seconds() // 60)


class ShieldSettings(BaseSettings):
    """Settings for the login shield."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    # App
    debug: bool = Field(default=False, alias="SHIELD_DEBUG")
    secret_key: str = Field(..., alias="SHIELD_SECRET_KEY")
    host: str = Field(default="0.0.0.0", alias="SHIELD_HOST")
    port: int = Field(default=8082, alias="SHIELD_PORT")
    log_level: str = Field(default="INFO", alias="SHIELD_LOG_LEVEL")
    log_dir: Optional[str] = Field(default=None, alias="SHIELD_LOG_DIR")

    # Policy
    max_attempts: int = Field(default=5, alias="SHIELD_MAX_ATTEMPTS")
    lockout_minutes: int = Field(default=10, alias="SHIELD_LOCKOUT_MINUTES")
    captcha_after_attempts: int = Field(default=3, alias="SHIELD_CAPTCHA_AFTER")
    captcha_enabled: bool = Field(default=True, alias="SHIELD_CAPTCHA_ENABLED")
    captcha_ttl_seconds: int = Field(default=300, alias="SHIELD_CAPTCHA_TTL")

    # Store outage policy: False = fail open, True = block while the store is down
    fail_closed: bool = Field(default=False, alias="SHIELD_FAIL_CLOSED")

    # Client identity (X-Forwarded-For / Client-IP are spoofable unless set by a trusted proxy)
    trust_forwarded_headers: bool = Field(default=True, alias="SHIELD_TRUST_FORWARDED")

    # Notifications
    notify_channel: str = Field(default="email", alias="SHIELD_NOTIFY_CHANNEL")
    notify_address: Optional[str] = Field(default=None, alias="SHIELD_NOTIFY_ADDRESS")
    notify_timeout_seconds: float = Field(default=10.0, alias="SHIELD_NOTIFY_TIMEOUT")
    site_name: str = Field(default="Login Shield", alias="SHIELD_SITE_NAME")

    # SMTP relay (email channel)
    smtp_host: Optional[str] = Field(default=None, alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_username: Optional[str] = Field(default=None, alias="SMTP_USERNAME")
    smtp_password: Optional[str] = Field(default=None, alias="SMTP_PASSWORD")
    smtp_use_tls: bool = Field(default=True, alias="SMTP_USE_TLS")
    smtp_from: str = Field(default="loginshield@localhost", alias="SMTP_FROM")

    # Telegram (telegram channel)
    telegram_bot_token: Optional[str] = Field(default=None, alias="BOT_TOKEN")

    # Storage
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")

    # Admin API
    admin_api_key: Optional[str] = Field(default=None, alias="SHIELD_ADMIN_API_KEY")

    # CORS
    cors_origins_raw: str = Field(default="", alias="SHIELD_CORS_ORIGINS")

    @field_validator("max_attempts", "captcha_after_attempts", "lockout_minutes", mode="before")
    @classmethod
    def clamp_to_one(cls, v):
        """Thresholds below 1 are raised to 1 instead of rejected."""
        if v is None or v == "":
            return 1
        value = int(v)
        if value < 1:
            logger.warning("Policy value %s is below 1, using 1", value)
            return 1
        return value

    @field_validator("lockout_minutes")
    @classmethod
    def cap_lockout(cls, v: int) -> int:
        return min(v, MAX_LOCKOUT_MINUTES)

    @field_validator("notify_channel", mode="before")
    @classmethod
    def validate_notify_channel(cls, v):
        allowed = {"email", "telegram", "none"}
        value = str(v or "none").strip().lower()
        if value not in allowed:
            raise ValueError(f"Notify channel must be one of {allowed}, got: {v}")
        return value

    @field_validator("notify_address", mode="before")
    @classmethod
    def blank_address_is_none(cls, v):
        """An empty address disables lockout notifications."""
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        if not self.cors_origins_raw:
            return []
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]

    @property
    def policy(self) -> PolicyConfig:
        return PolicyConfig(
            max_attempts=self.max_attempts,
            lockout_duration=timedelta(minutes=self.lockout_minutes),
            captcha_after_attempts=self.captcha_after_attempts,
            captcha_enabled=self.captcha_enabled,
            notify_address=self.notify_address,
        )


@lru_cache()
def get_shield_settings() -> ShieldSettings:
    """Get cached shield settings."""
    return ShieldSettings()
