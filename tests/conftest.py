"""Shared test fixtures for Baton."""

from __future__ import annotations

from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures; importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "timezone",
        "project_root",
        "data_dir",
        "db_path",
        "monitor_dir",
        "status_file",
        "pending_channels_file",
        "heartbeat_pending_file",
        "attachments_dir",
        "channels_dir",
    }
)


def make_settings(root: Path | None = None, **overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (heartbeat, dispatcher, etc.) and cached
    property overrides (status_file, channels_dir, etc.).  When *root* is
    given every path property points inside it.

    Usage::

        s = make_settings(tmp_path)
        s = make_settings(tmp_path, heartbeat=HeartbeatConfig(interval=60))
    """
    from baton.config import (
        CheckpointConfig,
        ControlConfig,
        DispatcherConfig,
        HeartbeatConfig,
        IntakeConfig,
        LoggingConfig,
        SchedulerConfig,
        ServerConfig,
        SessionConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}
    if root is not None:
        data = root / "data"
        monitor = data / "monitor"
        paths = {
            "timezone": "UTC",
            "project_root": root,
            "data_dir": data,
            "db_path": data / "baton.db",
            "monitor_dir": monitor,
            "status_file": monitor / "agent-status.json",
            "pending_channels_file": monitor / "pending-channels.jsonl",
            "heartbeat_pending_file": monitor / "heartbeat-pending.json",
            "attachments_dir": data / "attachments",
            "channels_dir": root / "channels",
        }
        cached = {**paths, **cached}

    defaults = {
        "intake": IntakeConfig(),
        "dispatcher": DispatcherConfig(),
        "control": ControlConfig(),
        "heartbeat": HeartbeatConfig(),
        "session": SessionConfig(),
        "scheduler": SchedulerConfig(),
        "checkpoints": CheckpointConfig(),
        "server": ServerConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


class FakeSession:
    """In-memory stand-in for the tmux session."""

    def __init__(self, *, exists: bool = True, inject_ok: bool = True, start_ok: bool = True):
        self.alive = exists
        self.inject_ok = inject_ok
        self.start_ok = start_ok
        self.injected: list[str] = []
        self.starts = 0
        self.kills = 0

    async def exists(self) -> bool:
        return self.alive

    async def inject(self, text: str) -> bool:
        if self.inject_ok:
            self.injected.append(text)
        return self.inject_ok

    async def start(self) -> bool:
        self.starts += 1
        if self.start_ok:
            self.alive = True
        return self.start_ok

    async def kill(self) -> None:
        self.kills += 1
        self.alive = False


class FakeIdleSource:
    def __init__(self, idle: int | None = None):
        self.idle = idle

    def get_idle_seconds(self) -> int | None:
        return self.idle


class FakeSender:
    def __init__(self, fail: set[str] | None = None):
        self.fail = fail or set()
        self.sent: list[tuple[str, str | None, str]] = []

    async def send(self, channel: str, endpoint: str | None, text: str) -> bool:
        if channel in self.fail:
            return False
        self.sent.append((channel, endpoint, text))
        return True


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def settings(tmp_path, monkeypatch):
    """Every test gets fresh defaults with all paths under tmp_path.

    No config.toml, no .env. Tests are isolated from a real install.
    Tests needing different values replace the singleton themselves.
    """
    s = make_settings(tmp_path)
    monkeypatch.setattr("baton.config._settings", s)
    return s


@pytest.fixture(autouse=True, scope="session")
def _close_test_database():
    """Close the aiosqlite connection after all tests complete.

    Uses ``stop()`` + thread join rather than ``await close()`` because the
    connection was created on a function-scoped event loop.
    """
    yield
    import baton.state.connection as db_conn

    if db_conn._db is not None:
        db_conn._db.stop()
        if db_conn._db._thread is not None and db_conn._db._thread.is_alive():
            db_conn._db._thread.join(timeout=2)
        db_conn._db = None


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def db():
    from baton.state import _init_test_database

    await _init_test_database()


@pytest.fixture
def use_settings(monkeypatch, tmp_path):
    """Install a customised Settings singleton: ``use_settings(heartbeat=...)``."""

    def _use(**overrides):
        s = make_settings(tmp_path, **overrides)
        monkeypatch.setattr("baton.config._settings", s)
        return s

    return _use


@pytest.fixture
def write_status(settings):
    """Write the agent status file as the activity monitor would."""
    import json

    def _write(**fields):
        settings.status_file.parent.mkdir(parents=True, exist_ok=True)
        settings.status_file.write_text(json.dumps(fields))

    return _write
