"""
Configuration management for pipewright.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

_config: Optional["PipewrightConfig"] = None


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class PipewrightConfig:
    """Configuration for pipewright."""

    # State store
    state_dir: str = ".pipewright"

    # Executor settings
    max_concurrency: int = 4
    default_timeout: float = 1800.0
    default_max_attempts: int = 1
    default_backoff_seconds: float = 5.0
    poll_interval: float = 0.05

    # Resource teardown
    teardown_retries: int = 3
    teardown_backoff_seconds: float = 2.0
    teardown_on_failure: bool = True

    # OpenTelemetry
    telemetry_enabled: bool = False
    otel_service_name: str = "pipewright"

    # Logging
    log_level: str = "INFO"

    @property
    def database_path(self) -> str:
        """Path of the SQLite state database."""
        return os.path.join(self.state_dir, "state.db")

    @classmethod
    def from_env(cls) -> "PipewrightConfig":
        """Create configuration from environment variables."""
        return cls(
            state_dir=os.getenv("PIPEWRIGHT_STATE_DIR", ".pipewright"),
            max_concurrency=int(os.getenv("PIPEWRIGHT_MAX_CONCURRENCY", "4")),
            default_timeout=float(os.getenv("PIPEWRIGHT_DEFAULT_TIMEOUT", "1800")),
            default_max_attempts=int(os.getenv("PIPEWRIGHT_DEFAULT_MAX_ATTEMPTS", "1")),
            default_backoff_seconds=float(os.getenv("PIPEWRIGHT_DEFAULT_BACKOFF_SECONDS", "5")),
            poll_interval=float(os.getenv("PIPEWRIGHT_POLL_INTERVAL", "0.05")),
            teardown_retries=int(os.getenv("PIPEWRIGHT_TEARDOWN_RETRIES", "3")),
            teardown_backoff_seconds=float(
                os.getenv("PIPEWRIGHT_TEARDOWN_BACKOFF_SECONDS", "2")
            ),
            teardown_on_failure=_env_bool("PIPEWRIGHT_TEARDOWN_ON_FAILURE", "true"),
            telemetry_enabled=_env_bool("PIPEWRIGHT_TELEMETRY_ENABLED", "false"),
            otel_service_name=os.getenv("PIPEWRIGHT_OTEL_SERVICE_NAME", "pipewright"),
            log_level=os.getenv("PIPEWRIGHT_LOG_LEVEL", "INFO"),
        )


def configure(
    state_dir: Optional[str] = None,
    max_concurrency: Optional[int] = None,
    default_timeout: Optional[float] = None,
    teardown_retries: Optional[int] = None,
    teardown_on_failure: Optional[bool] = None,
    telemetry_enabled: Optional[bool] = None,
    log_level: Optional[str] = None,
    **kwargs,
) -> PipewrightConfig:
    """
    Configure pipewright.

    Args:
        state_dir: Directory holding the state database
        max_concurrency: Maximum number of stages running at once
        default_timeout: Stage timeout in seconds when a stage sets none
        teardown_retries: Retries for a failed resource deletion
        teardown_on_failure: Tear down resources when a run fails
        telemetry_enabled: Emit OpenTelemetry spans
        log_level: Logging level

    Returns:
        The configured PipewrightConfig instance
    """
    global _config

    config = PipewrightConfig.from_env()

    if state_dir is not None:
        config.state_dir = state_dir
    if max_concurrency is not None:
        config.max_concurrency = max_concurrency
    if default_timeout is not None:
        config.default_timeout = default_timeout
    if teardown_retries is not None:
        config.teardown_retries = teardown_retries
    if teardown_on_failure is not None:
        config.teardown_on_failure = teardown_on_failure
    if telemetry_enabled is not None:
        config.telemetry_enabled = telemetry_enabled
    if log_level is not None:
        config.log_level = log_level

    for key, value in kwargs.items():
        if hasattr(config, key) and value is not None:
            setattr(config, key, value)

    _config = config
    return config


def get_config() -> PipewrightConfig:
    """Get the current configuration."""
    global _config
    if _config is None:
        _config = PipewrightConfig.from_env()
    return _config


def reset_config() -> None:
    """Drop the current configuration so the next access rereads the environment."""
    global _config
    _config = None
