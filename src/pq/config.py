"""Configuration settings for pq.

This module provides Pydantic Settings for configuration management.
All settings are loaded from environment variables with the PQ_ prefix
(optionally from a .env file). Unlike the daemon's hardcoded constants in
``pq.constants``, every value here can be overridden per invocation, which
is how the test-suite isolates its Session Directory.
"""

import os
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_session_dir() -> Path:
    """Per-user runtime directory used when PQ_SESSION_DIR is not set."""
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return Path(runtime_dir) / "pq"
    return Path.home() / ".pq"


class PQSettings(BaseSettings):
    """Configuration settings for the pq launcher and daemon.

    Attributes:
        session_dir: Directory holding socket, metadata, log and pointer files.
        spawn_timeout_seconds: Bound on waiting for a new daemon's socket and metadata.
        connect_timeout_seconds: Socket connect timeout.
        request_timeout_seconds: Reply timeout for ping, query and stop.
        load_timeout_seconds: Reply timeout for load (None waits indefinitely).
        stop_timeout_seconds: How long to wait for a stopped daemon to exit.
        failed_linger_seconds: How long a daemon whose load failed waits for
            its launcher to collect the error before exiting.
        daemon_idle_timeout_seconds: Idle shutdown for a ready daemon (None disables).
        log_level: Logging level name.
    """

    model_config = SettingsConfigDict(
        env_prefix="PQ_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    session_dir: Path = Field(
        default_factory=default_session_dir,
        description="Session Directory (PQ_SESSION_DIR)",
    )

    spawn_timeout_seconds: float = Field(default=2.0, gt=0)
    connect_timeout_seconds: float = Field(default=2.0, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    load_timeout_seconds: float | None = Field(default=None, gt=0)
    stop_timeout_seconds: float = Field(default=5.0, gt=0)
    failed_linger_seconds: float = Field(default=10.0, ge=0)
    daemon_idle_timeout_seconds: float | None = Field(default=None, gt=0)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    @field_validator("load_timeout_seconds", "daemon_idle_timeout_seconds", mode="before")
    @classmethod
    def _empty_as_none(cls, value: object) -> object:
        if isinstance(value, str) and value.strip() in ("", "0", "none", "None"):
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level

    def get_session_dir(self) -> Path:
        """Get the session directory, expanding user home."""
        return self.session_dir.expanduser().resolve()
