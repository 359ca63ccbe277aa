"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Settings live in config.toml next to the working directory. Environment
variables override it using ``__`` as the nested delimiter (e.g.
``HEARTBEAT__INTERVAL=600``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from baton.config import get_settings

    s = get_settings()
    print(s.dispatcher.poll_interval)
    print(s.status_file)
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Rejects unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class IntakeConfig(_StrictModel):
    file_size_threshold: int = 1500  # bytes; larger payloads spill to attachments
    preview_chars: int = 200
    reply_command: str = "baton send"

    @field_validator("file_size_threshold", "preview_chars")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


class DispatcherConfig(_StrictModel):
    poll_interval: float = 1.0  # seconds
    poll_interval_max: float = 3.0  # adaptive ceiling while idle
    # Minimum idle seconds before a require_idle item of each priority band
    # may be injected. More urgent bands wait less.
    idle_thresholds: dict[int, int] = {0: 0, 1: 3, 2: 5, 3: 10}
    max_retries: int = 5
    retry_base_seconds: float = 0.5
    message_stale_seconds: int = 3600
    session_missing_warn_ticks: int = 60
    done_command: str = "baton done"

    @model_validator(mode="after")
    def _check_idle_thresholds(self) -> DispatcherConfig:
        missing = {0, 1, 2, 3} - set(self.idle_thresholds)
        if missing:
            raise ValueError(f"idle_thresholds missing priorities {sorted(missing)}")
        values = [self.idle_thresholds[p] for p in (0, 1, 2, 3)]
        if any(a >= b for a, b in zip(values, values[1:], strict=False)):
            raise ValueError("idle_thresholds must strictly increase from priority 0 to 3")
        return self


class ControlConfig(_StrictModel):
    max_retries: int = 3
    retention_days: int = 7
    sweep_interval: float = 5.0  # seconds
    message_retention_days: int | None = None  # None → keep done messages forever


class HeartbeatConfig(_StrictModel):
    interval: int = 1800  # seconds between probes in the ok state
    ack_deadline: int = 300
    verify_ack_deadline: int = 120
    max_restart_failures: int = 3
    down_check_interval: int = 1800
    poll_interval: float = 5.0
    probe_content: str = (
        "Heartbeat check. Acknowledge with: baton control ack __CONTROL_ID__"
    )
    recovery_notice: str = (
        "I was temporarily unavailable but I'm back online now. "
        "If you sent me something while I was away, please send it again."
    )


class SessionConfig(_StrictModel):
    name: str = "agent-main"  # tmux session name
    command: str = "claude"
    cwd: str | None = None  # None → project root
    status_stale_seconds: float = 5.0  # status file older than this → no idle reading


class CheckpointConfig(_StrictModel):
    threshold: int = 30  # unsummarized messages before a memory sync is requested
    recent_count: int = 6  # messages replayed at session start when over threshold
    sync_command: str = "/memory-sync"


class SchedulerConfig(_StrictModel):
    poll_interval: float = 5.0
    timezone: str = ""  # empty → auto-detect
    task_timeout: int = 3600  # running tasks older than this are stale
    missed_scan_seconds: int = 300  # overdue by more than this → missed-task policy
    miss_threshold_seconds: int = 3600  # overdue by more than this → skip to next run
    history_retention_days: int = 30
    done_command: str = "baton task done"


class ServerConfig(_StrictModel):
    host: str = "127.0.0.1"
    port: int = 8585
    enabled: bool = True


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    intake: IntakeConfig = IntakeConfig()
    dispatcher: DispatcherConfig = DispatcherConfig()
    control: ControlConfig = ControlConfig()
    heartbeat: HeartbeatConfig = HeartbeatConfig()
    session: SessionConfig = SessionConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    checkpoints: CheckpointConfig = CheckpointConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def timezone(self) -> str:
        if self.scheduler.timezone:
            return self.scheduler.timezone
        return _detect_timezone()

    @cached_property
    def project_root(self) -> Path:
        return Path(os.environ.get("BATON_HOME", Path.cwd()))

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def db_path(self) -> Path:
        return self.data_dir / "baton.db"

    @cached_property
    def monitor_dir(self) -> Path:
        return self.data_dir / "monitor"

    @cached_property
    def status_file(self) -> Path:
        return self.monitor_dir / "agent-status.json"

    @cached_property
    def pending_channels_file(self) -> Path:
        return self.monitor_dir / "pending-channels.jsonl"

    @cached_property
    def heartbeat_pending_file(self) -> Path:
        return self.monitor_dir / "heartbeat-pending.json"

    @cached_property
    def attachments_dir(self) -> Path:
        return self.data_dir / "attachments"

    @cached_property
    def channels_dir(self) -> Path:
        return (self.project_root / "channels").resolve()


# ---------------------------------------------------------------------------
# Timezone detection
# ---------------------------------------------------------------------------


def _detect_timezone() -> str:
    if tz := os.environ.get("TZ"):
        return tz
    try:
        link = os.readlink("/etc/localtime")
        parts = link.split("zoneinfo/")
        if len(parts) > 1:
            return parts[1]
    except OSError:
        pass  # /etc/localtime missing or not a symlink; fall back to UTC
    return "UTC"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
