"""Hosted-session adapters: the tmux session the agent lives in, and its idle clock."""

from __future__ import annotations

import asyncio
import re
import time
from pathlib import Path

from baton.config import get_settings
from baton.liveness import read_liveness_status
from baton.logger import logger
from baton.utils import log_command_result, run_command

# C0 control characters except tab and newline; they would be interpreted as
# keystrokes by the terminal.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f]")

_PASTE_DELAY_BASE = 0.2
_PASTE_DELAY_PER_KB = 0.1
_PASTE_DELAY_MAX = 1.0


def sanitize_text(text: str) -> str:
    return _CONTROL_CHARS.sub("", text)


def paste_delay(byte_length: int) -> float:
    """Pause between paste and Enter; long pastes need longer to render."""
    return min(_PASTE_DELAY_BASE + (byte_length // 1024) * _PASTE_DELAY_PER_KB, _PASTE_DELAY_MAX)


class TmuxSession:
    """Injects text into a named tmux session via a paste buffer."""

    def __init__(self, name: str, command: str, cwd: str | None = None) -> None:
        self.name = name
        self.command = command
        self.cwd = cwd

    @classmethod
    def from_settings(cls) -> TmuxSession:
        s = get_settings()
        return cls(s.session.name, s.session.command, s.session.cwd or str(s.project_root))

    async def _tmux(self, *args: str, label: str) -> bool:
        result = await run_command("tmux", *args)
        log_command_result(result, label=label, session=self.name)
        return result.ok

    async def exists(self) -> bool:
        result = await run_command("tmux", "has-session", "-t", self.name)
        return result.ok

    async def inject(self, text: str) -> bool:
        sanitized = sanitize_text(text)
        buffer = f"baton-{time.monotonic_ns()}"
        try:
            if not await self._tmux("set-buffer", "-b", buffer, "--", sanitized, label="tmux set-buffer"):
                return False
            if not await self._tmux("paste-buffer", "-b", buffer, "-t", self.name, label="tmux paste"):
                return False
        finally:
            await run_command("tmux", "delete-buffer", "-b", buffer)

        await asyncio.sleep(paste_delay(len(sanitized.encode())))
        return await self._tmux("send-keys", "-t", self.name, "Enter", label="tmux send-keys")

    async def start(self) -> bool:
        if await self.exists():
            return True
        args = ["new-session", "-d", "-s", self.name]
        if self.cwd:
            args += ["-c", self.cwd]
        args.append(self.command)
        started = await self._tmux(*args, label="tmux new-session")
        if started:
            logger.info("Session started", session=self.name)
        return started

    async def kill(self) -> None:
        if await self._tmux("kill-session", "-t", self.name, label="tmux kill-session"):
            logger.info("Session killed", session=self.name)


class StatusFileIdleSource:
    """Reads ``idle_seconds`` from the activity monitor's status file.

    Freshness comes from the monitor's own ``last_check`` stamp, not the file
    mtime, since the heartbeat rewrites the file too.  A stale, unstamped or
    missing file yields None, i.e. no reading.
    """

    def __init__(self, path: Path, stale_seconds: float) -> None:
        self.path = path
        self.stale_seconds = stale_seconds

    @classmethod
    def from_settings(cls) -> StatusFileIdleSource:
        s = get_settings()
        return cls(s.status_file, s.session.status_stale_seconds)

    def get_idle_seconds(self) -> int | None:
        status = read_liveness_status(self.path)
        checked = status.monitor_checked_at
        if checked is None or time.time() - checked > self.stale_seconds:
            return None
        if status.idle_seconds is not None:
            return status.idle_seconds
        if status.state == "busy":
            return 0
        return None
