"""
Centralized configuration management for the changes reader.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
from typing import Optional, Union
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CouchSettings(BaseSettings):
    """CouchDB server configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COUCH_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(default="http://localhost:5984", description="Server root URL")
    database: str = Field(default="changesreader", description="Database whose changes feed is followed")
    username: Optional[str] = Field(default=None, description="Basic auth username")
    password: Optional[str] = Field(default=None, description="Basic auth password")
    verify_ssl: bool = Field(default=True, description="Verify TLS certificates")
    request_timeout_slack: float = Field(
        default=30.0,
        description="Seconds added to the long-poll timeout before the client gives up"
    )

    @field_validator("request_timeout_slack")
    @classmethod
    def validate_slack(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("request_timeout_slack must be positive")
        return v


class ChangesSettings(BaseSettings):
    """Changes feed polling defaults."""

    model_config = SettingsConfigDict(
        env_prefix="CHANGES_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    batch_size: int = Field(default=100, description="Changes per request")
    since: Union[str, int] = Field(default="now", description="Cursor to start from")
    timeout_ms: int = Field(default=60000, description="Long-poll hold time in milliseconds")
    heartbeat_ms: int = Field(default=5000, description="Server keep-alive interval in milliseconds")
    include_docs: bool = Field(default=False, description="Include document bodies")
    fast_changes: bool = Field(default=False, description="Widen seq_interval for cheaper cursors")

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("batch_size must be positive")
        return v

    def to_poll_config(self, **overrides):
        """Build a PollConfig from these defaults."""
        from ..connectors.changes.models import PollConfig

        values = {
            "batch_size": self.batch_size,
            "since": self.since,
            "timeout": self.timeout_ms,
            "heartbeat": self.heartbeat_ms,
            "include_docs": self.include_docs,
            "fast_changes": self.fast_changes,
        }
        values.update(overrides)
        return PollConfig(**values)


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    level: str = Field(default="INFO", description="Log level")
    json_output: bool = Field(default=True, description="Emit JSON log lines")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    couch: CouchSettings = Field(default_factory=CouchSettings)
    changes: ChangesSettings = Field(default_factory=ChangesSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
