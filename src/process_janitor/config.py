"""Configuration management for process-janitor."""

from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import AliasChoices, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Keys a configuration file may set. The mutation safety valve is environment-only.
FILE_KEYS = frozenset(
    {
        "min_session_age_minutes",
        "heartbeat_interval_seconds",
        "stale_heartbeat_threshold_minutes",
        "cleanup_mode",
        "dry_run_default",
        "auto_cleanup_on_start",
        "lock_timeout_seconds",
        "termination_grace_seconds",
        "kill_wait_seconds",
        "terminal_retention_hours",
        "log_level",
    }
)


class ConfigError(RuntimeError):
    """Raised when a configuration file cannot be parsed or validated."""


def _env(name: str, env_var: str) -> AliasChoices:
    return AliasChoices(name, env_var)


class JanitorSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
    )

    home: Path = Field(
        default=Path("~/.process-janitor"), validation_alias=_env("home", "JANITOR_HOME")
    )
    sessions_dir: Path | None = Field(
        default=None, validation_alias=_env("sessions_dir", "JANITOR_SESSIONS_DIR")
    )
    locks_dir: Path | None = Field(
        default=None, validation_alias=_env("locks_dir", "JANITOR_LOCKS_DIR")
    )
    logs_dir: Path | None = Field(
        default=None, validation_alias=_env("logs_dir", "JANITOR_LOGS_DIR")
    )
    config_file: Path | None = Field(
        default=None, validation_alias=_env("config_file", "JANITOR_CONFIG_FILE")
    )
    current_session_id: str | None = Field(
        default=None, validation_alias=_env("current_session_id", "JANITOR_SESSION_ID")
    )

    min_session_age_minutes: float = Field(
        default=10, validation_alias=_env("min_session_age_minutes", "JANITOR_MIN_AGE")
    )
    heartbeat_interval_seconds: float = Field(
        default=60,
        validation_alias=_env("heartbeat_interval_seconds", "JANITOR_HEARTBEAT_INTERVAL"),
    )
    stale_heartbeat_threshold_minutes: float = Field(
        default=5,
        validation_alias=_env("stale_heartbeat_threshold_minutes", "JANITOR_STALE_THRESHOLD"),
    )
    cleanup_mode: Literal["auto", "interactive"] = Field(
        default="interactive", validation_alias=_env("cleanup_mode", "JANITOR_CLEANUP_MODE")
    )
    dry_run_default: bool = Field(
        default=True, validation_alias=_env("dry_run_default", "JANITOR_DRY_RUN_DEFAULT")
    )
    auto_cleanup_on_start: bool = Field(
        default=False, validation_alias=_env("auto_cleanup_on_start", "JANITOR_AUTO_CLEANUP")
    )
    mutation_disabled: bool = Field(
        default=False,
        validation_alias=_env("mutation_disabled", "JANITOR_DISABLE_MUTATION"),
    )

    lock_timeout_seconds: float = Field(
        default=10, validation_alias=_env("lock_timeout_seconds", "JANITOR_LOCK_TIMEOUT")
    )
    termination_grace_seconds: float = Field(
        default=5,
        validation_alias=_env("termination_grace_seconds", "JANITOR_TERMINATION_GRACE"),
    )
    kill_wait_seconds: float = Field(
        default=1, validation_alias=_env("kill_wait_seconds", "JANITOR_KILL_WAIT")
    )
    terminal_retention_hours: float = Field(
        default=168,
        validation_alias=_env("terminal_retention_hours", "JANITOR_RETENTION_HOURS"),
    )
    log_level: str = Field(default="INFO", validation_alias=_env("log_level", "JANITOR_LOG_LEVEL"))

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "JANITOR_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator(
        "min_session_age_minutes",
        "heartbeat_interval_seconds",
        "stale_heartbeat_threshold_minutes",
        "lock_timeout_seconds",
        "terminal_retention_hours",
    )
    @classmethod
    def _require_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("thresholds and intervals must be > 0")
        return value

    @field_validator("termination_grace_seconds", "kill_wait_seconds")
    @classmethod
    def _require_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("termination waits must be >= 0")
        return value

    @field_validator("current_session_id", mode="before")
    @classmethod
    def _blank_session_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _derive_paths(self) -> "JanitorSettings":
        self.home = self.home.expanduser()
        self.sessions_dir = (self.sessions_dir or self.home / "sessions").expanduser()
        self.locks_dir = (self.locks_dir or self.home / "locks").expanduser()
        self.logs_dir = (self.logs_dir or self.home / "logs").expanduser()
        return self

    @property
    def registry_log(self) -> Path:
        return self.sessions_dir / "registry.jsonl"

    @property
    def cleanup_log(self) -> Path:
        return self.logs_dir / "cleanup.log"

    @property
    def min_session_age(self) -> timedelta:
        return timedelta(minutes=self.min_session_age_minutes)

    @property
    def stale_heartbeat_threshold(self) -> timedelta:
        return timedelta(minutes=self.stale_heartbeat_threshold_minutes)

    @property
    def terminal_retention(self) -> timedelta:
        return timedelta(hours=self.terminal_retention_hours)


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse configuration file {path}: {exc}") from exc

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError(f"Configuration file {path} must contain a mapping")

    unknown = sorted(set(document) - FILE_KEYS)
    if unknown:
        logger.warning(
            "Ignoring unknown configuration keys",
            extra={"config_file": str(path), "keys": unknown},
        )
    return {key: value for key, value in document.items() if key in FILE_KEYS}


def load_settings(config_file: Path | None = None, **overrides: Any) -> JanitorSettings:
    """Build settings from defaults, the YAML config file and the environment.

    Environment variables win over the file and explicit keyword overrides win
    over both.
    """

    base = JanitorSettings(**overrides)
    path = Path(config_file or base.config_file or base.home / "config.yaml").expanduser()
    document = _read_config_file(path)
    if not document:
        return base

    document = {key: value for key, value in document.items() if key not in base.model_fields_set}
    try:
        settings = JanitorSettings(**{**document, **overrides})
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc

    if base.mutation_disabled:
        settings.mutation_disabled = True
    return settings


@lru_cache(maxsize=1)
def get_settings() -> JanitorSettings:
    """Return cached settings instance."""

    return load_settings()


__all__ = ["ConfigError", "JanitorSettings", "get_settings", "load_settings"]
