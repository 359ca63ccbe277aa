"""Shared utility functions.

Small helpers used across multiple modules: timestamp formatting, schedule
calculations, async subprocess execution, atomic file writing and
background task supervision.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from asyncio.subprocess import PIPE
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

from baton.logger import logger


def to_iso(dt: datetime) -> str:
    """Format *dt* as a fixed-width UTC ISO string.

    All timestamps in the store go through here so SQLite's lexicographic
    comparison matches chronological order.
    """
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def write_json_atomic(path: Path, data: Any, *, indent: int | None = None) -> None:
    """Write JSON data to a file using atomic rename (tmp → final).

    Readers either see the old content or the complete new content.
    Creates parent directories if they don't exist.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=indent))
    tmp.replace(path)


def compute_next_run(
    cron_expression: str | None,
    interval_seconds: int | None,
    timezone: str,
    *,
    after: datetime | None = None,
) -> str | None:
    """Compute the next run ISO timestamp for a repeating task.

    Cron expressions are evaluated in *timezone*; the result is always UTC so
    it compares correctly against other stored timestamps.

    Returns None when neither a cron expression nor an interval is given.
    Raises ValueError for invalid cron/interval values so callers can reject them.
    """
    base = after or utc_now()
    if cron_expression:
        if not croniter.is_valid(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression!r}")
        tz = ZoneInfo(timezone)
        cron = croniter(cron_expression, base.astimezone(tz))
        return to_iso(cron.get_next(datetime))

    if interval_seconds is not None:
        if interval_seconds <= 0:
            raise ValueError("Interval must be positive")
        return to_iso(base + timedelta(seconds=interval_seconds))

    return None


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here: we're in a done-callback,
        # not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )


@dataclass
class CommandResult:
    """Result of an async subprocess execution."""

    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    start_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    *args: str,
    cwd: str | None = None,
    timeout_seconds: float = 30,
) -> CommandResult:
    """Run a program asynchronously with timeout and structured result.

    Arguments are passed straight to exec (no shell), so message text never
    needs quoting.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            stdout=PIPE,
            stderr=PIPE,
        )
    except OSError as exc:
        return CommandResult(returncode=None, stdout="", stderr="", start_error=str(exc))

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with contextlib.suppress(Exception):
            await process.communicate()
        return CommandResult(returncode=None, stdout="", stderr="", timed_out=True)

    return CommandResult(
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace").strip(),
        stderr=stderr.decode(errors="replace").strip(),
    )


def log_command_result(
    result: CommandResult,
    *,
    label: str,
    **extra: Any,
) -> None:
    """Log the outcome of a failed or timed-out command. Success is silent."""
    if result.start_error:
        logger.error(f"Failed to start {label}", err=result.start_error, **extra)
    elif result.timed_out:
        logger.error(f"{label} timed out", **extra)
    elif result.returncode != 0:
        logger.warning(
            f"{label} failed",
            exit_code=result.returncode,
            stderr_tail=result.stderr[-500:] if result.stderr else "",
            **extra,
        )
