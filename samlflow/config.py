"""
Settings for samlflow, read from the environment and an optional .env file.

Login flow options use the LOGINFLOW_ prefix; database, logging and Sentry
options keep their usual unprefixed names. Invalid values fail at startup.

Usage:
    from samlflow.config import get_settings

    settings = get_settings()
    if settings.loginflow.strict_phase_order:
        ...
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Login Flow Settings
# =============================================================================


class LoginFlowSettings(BaseSettings):
    """Configuration for the SSO login flow."""

    model_config = SettingsConfigDict(
        env_prefix="LOGINFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    marker_secret: SecretStr = Field(
        default=SecretStr("change-me"),
        description="HMAC key used to sign the session marker cookie",
    )
    base_url: str = Field(
        default="http://localhost:8000",
        description="Public base URL of the application (used for SP URLs)",
    )
    logout_path: str = Field(
        default="/logout",
        description="Path of the host logout endpoint",
    )
    acs_path: str = Field(
        default="/sso/acs",
        description="Path of the Assertion Consumer Service",
    )
    host_session_cookie: str = Field(
        default="host_session",
        description="Name of the host application's session cookie",
    )
    host_session_idle_seconds: int = Field(
        default=8 * 3600,
        ge=60,
        description="Idle time after which an in-memory host session is dropped",
    )
    host_session_max_entries: int = Field(
        default=10000,
        ge=1,
        description="Upper bound on in-memory host sessions; the least recently used go first",
    )
    persist_excluded: bool = Field(
        default=False,
        description="Persist login state for requests matching an exclusion rule",
    )
    strict_phase_order: bool = Field(
        default=True,
        description="Reject backward phase transitions",
    )
    meta_refresh: bool = Field(
        default=True,
        description="Answer successful logins with a meta refresh page instead of a 302",
    )
    providers_file: str = Field(
        default="./data/providers.json",
        description="JSON file holding the identity provider configurations",
    )
    exclusions_file: str = Field(
        default="./data/exclusions.json",
        description="JSON file holding the exclusion rules",
    )
    audit_api_key: Optional[SecretStr] = Field(
        default=None,
        description="Key required in X-Audit-Key to read login audit records",
    )
    button_name_length: int = Field(
        default=12,
        ge=1,
        description="Maximum length of provider names on login buttons",
    )

    @field_validator("logout_path", "acs_path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("Paths must start with '/'")
        return v

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


# =============================================================================
# Database Settings (Postgres)
# =============================================================================


class DatabaseSettings(BaseSettings):
    """Configuration for the Postgres state backend."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: Optional[str] = Field(
        default=None,
        description="Postgres DSN; when unset login state is kept in memory",
    )
    database_pool_min_size: int = Field(default=1, ge=1)
    database_pool_max_size: int = Field(default=5, ge=1)

    @property
    def is_configured(self) -> bool:
        """Check if Postgres is configured."""
        return bool(self.database_url)


# =============================================================================
# Logging Settings
# =============================================================================


class LoggingSettings(BaseSettings):
    """Log level and format, plus the access log switch."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format_json: bool = Field(
        default=False,
        description="Force JSON log format in development",
    )
    request_logging_enabled: bool = Field(
        default=True,
        description="Enable request logging middleware",
    )


# =============================================================================
# Sentry Settings
# =============================================================================


class SentrySettings(BaseSettings):
    """Sentry error reporting. Only server errors are sent."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking",
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment name",
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry transaction sample rate (0.0 to 1.0)",
    )
    sentry_release: Optional[str] = Field(
        default="samlflow@1.0.0",
        description="Sentry release version",
    )

    @property
    def is_configured(self) -> bool:
        """A DSN is set."""
        return bool(self.sentry_dsn)


# =============================================================================
# Aggregate Settings
# =============================================================================


class Settings(BaseSettings):
    """All settings groups. Obtain through get_settings()."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    loginflow: LoginFlowSettings = Field(default_factory=LoginFlowSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sentry: SentrySettings = Field(default_factory=SentrySettings)

    @property
    def is_production(self) -> bool:
        """Production deployments log JSON and hide API docs."""
        return self.logging.environment == "production"

    @property
    def is_sentry_configured(self) -> bool:
        return self.sentry.is_configured

    def get_config_summary(self) -> dict:
        """
        What the server logs at startup.

        Secrets are reported only as configured / not configured.
        """
        return {
            "environment": self.logging.environment,
            "base_url": self.loginflow.base_url,
            "state_backend": "postgres" if self.database.is_configured else "memory",
            "strict_phase_order": self.loginflow.strict_phase_order,
            "persist_excluded": self.loginflow.persist_excluded,
            "meta_refresh": self.loginflow.meta_refresh,
            "audit_api_enabled": self.loginflow.audit_api_key is not None,
            "marker_secret_default": (
                self.loginflow.marker_secret.get_secret_value() == "change-me"
            ),
            "sentry_configured": self.is_sentry_configured,
            "log_level": self.logging.log_level,
        }


# =============================================================================
# Settings Singleton
# =============================================================================


@lru_cache()
def get_settings() -> Settings:
    """
    Settings loaded once per process.

    Settings are loaded once and cached; call reload_settings() after
    changing the environment (tests do this).
    """
    return Settings()


def reload_settings() -> Settings:
    """Clear the settings cache and load settings again."""
    get_settings.cache_clear()
    return get_settings()
