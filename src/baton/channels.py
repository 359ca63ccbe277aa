"""Outbound delivery to external channels.

Each channel is a directory under ``channels_dir`` that provides an
executable ``send`` script, invoked as ``send [endpoint] <text>``.  Baton
treats the script as a black box: exit code 0 means delivered.
"""

from __future__ import annotations

import re
from pathlib import Path

import aiosqlite

from baton.config import get_settings
from baton.liveness import read_pending_channels, replace_pending_channels
from baton.logger import logger
from baton.state import insert_message
from baton.types import ChannelSender, PendingChannel
from baton.utils import log_command_result, run_command

_ENDPOINT_RE = re.compile(r"^[A-Za-z0-9_.:@-]+$")


def validate_channel(channel: str, channels_dir: Path) -> Path:
    """Return the channel's send script path.

    Raises ValueError if the name escapes *channels_dir* or has no script.
    """
    if not channel or "/" in channel or ".." in channel:
        raise ValueError(f"Invalid channel name: {channel!r}")
    root = channels_dir.resolve()
    script = (root / channel / "send").resolve()
    if root not in script.parents:
        raise ValueError(f"Invalid channel name: {channel!r}")
    if not script.is_file():
        raise ValueError(f"Channel {channel!r} has no send script at {script}")
    return script


def validate_endpoint(endpoint: str) -> str:
    if not _ENDPOINT_RE.match(endpoint):
        raise ValueError(f"Invalid endpoint: {endpoint!r}")
    return endpoint


class ScriptChannelSender:
    """Runs ``<channels_dir>/<channel>/send`` for each outbound message."""

    def __init__(self, channels_dir: Path, timeout_seconds: float = 60) -> None:
        self.channels_dir = channels_dir
        self.timeout_seconds = timeout_seconds

    async def send(self, channel: str, endpoint: str | None, text: str) -> bool:
        try:
            script = validate_channel(channel, self.channels_dir)
            if endpoint:
                validate_endpoint(endpoint)
        except ValueError as exc:
            logger.warning("Cannot send to channel", channel=channel, err=str(exc))
            return False

        args = [str(script)]
        if endpoint:
            args.append(endpoint)
        args.append(text)
        result = await run_command(*args, timeout_seconds=self.timeout_seconds)
        log_command_result(result, label="Channel send", channel=channel, endpoint=endpoint)
        return result.ok


async def send_outbound(
    sender: ChannelSender,
    channel: str,
    endpoint: str | None,
    text: str,
) -> bool:
    """Send *text* and keep an audit row (``direction=out``) of it.

    The audit write never blocks delivery: a store failure is logged and the
    send still happens.
    """
    if not text:
        raise ValueError("text is required")
    try:
        await insert_message(channel, text, endpoint=endpoint, direction="out", status="done")
    except aiosqlite.Error:
        logger.exception("Outbound audit write failed", channel=channel)

    sent = await sender.send(channel, endpoint, text)
    if sent:
        logger.info("Message sent", channel=channel, endpoint=endpoint)
    else:
        logger.warning("Message send failed", channel=channel, endpoint=endpoint)
    return sent


async def notify_pending_channels(sender: ChannelSender, notice: str | None = None) -> int:
    """Tell every channel that was turned away that the agent is back.

    Entries whose notice failed stay in the record for the next flush;
    the rest are removed.  Returns the number notified.
    """
    s = get_settings()
    entries = read_pending_channels(s.pending_channels_file)
    if not entries:
        return 0

    text = notice or s.heartbeat.recovery_notice
    failed: list[PendingChannel] = []
    for entry in entries:
        if not await send_outbound(sender, entry.channel, entry.endpoint, text):
            failed.append(entry)

    # Keep anything recorded while we were sending.
    flushed = set(entries)
    added = [e for e in read_pending_channels(s.pending_channels_file) if e not in flushed]
    replace_pending_channels(s.pending_channels_file, failed + added)
    logger.info(
        "Pending channels notified",
        notified=len(entries) - len(failed),
        kept=len(failed),
    )
    return len(entries) - len(failed)
