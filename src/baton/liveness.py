"""Agent status file and pending-channel record.

The status file is shared with the agent-side activity monitor, which writes
``state``, ``idle_seconds`` and ``last_check`` (epoch seconds).  Only the
heartbeat engine writes ``health``; everything else reads it.  Both files are loosely typed JSON, so every read
decodes into explicit values with a documented fallback:

- missing or unparsable status file → health ``ok`` (fail-open)
- unknown ``health`` / ``state`` values → ``ok`` / ``None``
- malformed pending-channel lines are skipped
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from baton.logger import logger
from baton.types import AGENT_STATES, HEALTH_VALUES, Health, LivenessStatus, PendingChannel
from baton.utils import write_json_atomic


def _read_raw_status(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning("Unreadable status file, treating as healthy", path=str(path), err=str(exc))
        return None
    return data if isinstance(data, dict) else None


def read_liveness_status(path: Path) -> LivenessStatus:
    """Decode the status file. Never raises."""
    data = _read_raw_status(path)
    if data is None:
        return LivenessStatus()

    health = data.get("health")
    state = data.get("state")
    idle = data.get("idle_seconds")
    checked = data.get("last_check")
    if isinstance(checked, bool) or not isinstance(checked, int | float):
        checked = None
    health_checked = data.get("health_checked_at")

    return LivenessStatus(
        state=state if state in AGENT_STATES else None,
        idle_seconds=int(idle) if isinstance(idle, int | float) and idle >= 0 else None,
        health=health if health in HEALTH_VALUES else "ok",
        monitor_checked_at=float(checked) if checked is not None else None,
        health_checked_at=health_checked if isinstance(health_checked, str) else None,
        source=data.get("source") if isinstance(data.get("source"), str) else None,
    )


def read_health(path: Path) -> Health:
    return read_liveness_status(path).health


def write_health(path: Path, health: Health, *, checked_at: str) -> None:
    """Merge health into the status file, preserving the monitor's fields.

    The monitor's ``last_check`` is left alone so a rewrite here never makes
    its idle reading look fresh.
    """
    data = _read_raw_status(path) or {}
    data.update({"health": health, "health_checked_at": checked_at})
    write_json_atomic(path, data)


# ---------------------------------------------------------------------------
# Pending-channel record (JSONL)
# ---------------------------------------------------------------------------


def read_pending_channels(path: Path) -> list[PendingChannel]:
    """Entries in file order, duplicates collapsed."""
    try:
        lines = path.read_text().splitlines()
    except FileNotFoundError:
        return []

    seen: set[PendingChannel] = set()
    entries: list[PendingChannel] = []
    for line in lines:
        if not line.strip():
            continue
        try:
            raw = json.loads(line)
        except ValueError:
            logger.warning("Skipping malformed pending-channel line", line=line[:200])
            continue
        if not isinstance(raw, dict) or not isinstance(raw.get("channel"), str):
            continue
        endpoint = raw.get("endpoint")
        entry = PendingChannel(
            channel=raw["channel"],
            endpoint=str(endpoint) if endpoint is not None else None,
        )
        if entry not in seen:
            seen.add(entry)
            entries.append(entry)
    return entries


def record_pending_channel(path: Path, entry: PendingChannel) -> bool:
    """Append *entry* unless already recorded. Returns True if it was appended."""
    if entry in read_pending_channels(path):
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a") as f:
        f.write(json.dumps(entry.to_dict()) + "\n")
        f.flush()
        os.fsync(f.fileno())
    return True


def replace_pending_channels(path: Path, entries: list[PendingChannel]) -> None:
    """Rewrite the record with *entries*; an empty list truncates it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text("".join(json.dumps(e.to_dict()) + "\n" for e in entries))
    tmp.replace(path)
