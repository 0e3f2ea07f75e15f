"""
Central configuration using Pydantic BaseSettings.

Validates all env vars at startup (fail-fast). The MFA encryption key is
required outside TESTING mode.

Usage:
    from config.settings import get_settings

    settings = get_settings()
    manager = TokenRefreshManager(authority, settings=settings.refresh)

Components never read settings on their own: each one is handed its group
at construction. get_settings() caches the root object; tests reset it via
get_settings.cache_clear().
"""

import os
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings


def _is_testing() -> bool:
    """Check if running in test mode."""
    return os.getenv("TESTING", "").lower() in ("true", "1")


# =============================================================================
# Nested Settings Groups
# =============================================================================


class RotationSettings(BaseSettings):
    """Token rotation policy. Durations are seconds."""

    model_config = {"env_prefix": "ROTATION_", "extra": "ignore"}

    strategy: str = "adaptive"
    rotation_buffer: float = Field(300.0, gt=0)
    enable_refresh_token_rotation: bool = False
    enable_token_validation: bool = True
    max_refresh_attempts: int = Field(3, ge=1)

    # Recheck cadence per strategy
    rotation_delay: float = Field(1.0, gt=0)
    eager_check_interval: float = Field(0.2, gt=0)
    lazy_check_interval: float = Field(2.0, gt=0)
    urgent_check_interval: float = Field(0.5, gt=0)

    # Adaptive: rotate once the token has lived this fraction of its lifetime
    adaptive_age_threshold: float = Field(0.75, gt=0, le=1)

    # None = half the lifetime of the credential being replaced
    fallback_lifetime: Optional[float] = Field(None, gt=0)

    # Run the rotation manager's own monitoring loop
    monitor: bool = True


class RefreshSettings(BaseSettings):
    """Token refresh scheduling and circuit breaker."""

    model_config = {"env_prefix": "REFRESH_", "extra": "ignore"}

    refresh_interval: float = Field(300.0, gt=0)
    refresh_buffer: float = Field(300.0, ge=0)

    # Circuit breaker
    max_retries: int = Field(3, ge=1)
    reset_window: float = Field(60.0, gt=0)

    # Cross-instance sync
    enable_sync: bool = True
    peer_refresh_timeout: float = Field(30.0, gt=0)

    # Security monitoring
    enable_security_monitoring: bool = True
    security_check_interval: float = Field(60.0, gt=0)
    long_interval_factor: float = Field(6.0, gt=1)

    # Delegate rotation decisions to a TokenRotationManager
    enable_advanced_rotation: bool = False


class SessionTimeoutSettings(BaseSettings):
    """Session timeout thresholds. Durations are seconds."""

    model_config = {"env_prefix": "SESSION_", "extra": "ignore"}

    session_duration: float = Field(1800.0, gt=0)  # 30 minutes
    warning_threshold: float = Field(300.0, gt=0)  # 5 minutes
    final_warning_threshold: float = Field(60.0, gt=0)  # 1 minute
    inactivity_timeout: Optional[float] = Field(None, gt=0)  # off by default
    max_extensions: int = Field(3, ge=0)
    extension_amount: Optional[float] = Field(None, gt=0)  # None = session_duration
    enable_sync: bool = True

    @model_validator(mode="after")
    def _validate_thresholds(self):
        if not self.final_warning_threshold < self.warning_threshold < self.session_duration:
            raise ValueError(
                "Expected final_warning_threshold < warning_threshold < session_duration"
            )
        return self


class MFASettings(BaseSettings):
    """Multi-factor authentication configuration."""

    model_config = {"env_prefix": "MFA_", "extra": "ignore"}

    # Factor types
    enable_totp: bool = True
    enable_sms: bool = True
    enable_email: bool = True
    enable_biometrics: bool = False
    enable_security_keys: bool = False
    enable_backup_codes: bool = True

    # TOTP (RFC 6238)
    issuer: str = "CredLife"
    totp_digits: int = Field(6, ge=6, le=8)
    totp_period: int = Field(30, gt=0)
    totp_algorithm: Literal["SHA1", "SHA256", "SHA512"] = "SHA1"
    totp_valid_window: int = Field(1, ge=0)
    totp_qr_code: bool = True
    require_totp_confirmation: bool = False

    # One-time codes sent over SMS / email
    code_length: int = Field(6, ge=4, le=10)
    code_ttl: float = Field(300.0, gt=0)
    sms_template: str = "Your verification code is: {code}"
    email_subject: str = "Your verification code"
    email_template: str = "Your verification code is: {code}. It expires in {minutes} minutes."

    # Attempts per user per minute, for sends and failed verifications alike
    rate_limit_per_minute: int = Field(5, ge=1)

    # Backup codes
    backup_code_count: int = Field(10, ge=1)
    backup_code_length: int = Field(8, ge=6)
    backup_code_format: Literal["numeric", "alphanumeric", "mixed"] = "alphanumeric"

    # Step-up challenges
    challenge_ttl: float = Field(600.0, gt=0)

    # Fernet key for TOTP secrets at rest
    encryption_key: SecretStr = SecretStr("")

    @property
    def rate_limit_window(self) -> float:
        """Seconds that must separate two attempts by the same user."""
        return 60.0 / self.rate_limit_per_minute


class RedisSettings(BaseSettings):
    """Redis connection configuration."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    redis_url: str = "redis://localhost:6379/0"
    channel_prefix: str = "credlife:"


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    # Cross-instance sync backend: memory | redis
    sync_backend: str = "memory"

    # Nested groups (initialized separately to support env_prefix)
    rotation: RotationSettings = None  # type: ignore[assignment]
    refresh: RefreshSettings = None  # type: ignore[assignment]
    session: SessionTimeoutSettings = None  # type: ignore[assignment]
    mfa: MFASettings = None  # type: ignore[assignment]
    redis: RedisSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("rotation") is None:
            values["rotation"] = RotationSettings()
        if values.get("refresh") is None:
            values["refresh"] = RefreshSettings()
        if values.get("session") is None:
            values["session"] = SessionTimeoutSettings()
        if values.get("mfa") is None:
            values["mfa"] = MFASettings()
        if values.get("redis") is None:
            values["redis"] = RedisSettings()
        return values

    @model_validator(mode="after")
    def _validate_required_secrets(self):
        """Require MFA_ENCRYPTION_KEY in production; bypass only in TESTING mode."""
        if _is_testing():
            return self

        if not self.mfa.encryption_key.get_secret_value():
            raise ValueError(
                "MFA_ENCRYPTION_KEY env var is required. Generate one with: "
                "python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )

        return self


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
