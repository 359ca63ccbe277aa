"""Intake gate: the single entry point for inbound messages.

Every channel (and the scheduler) calls :func:`receive`.  The gate validates
arguments, refuses new work while the agent is unhealthy (remembering who
to notify once it recovers), spills oversized payloads to disk and writes
the message to the queue.  It answers synchronously and never retries.
"""

from __future__ import annotations

import secrets
from datetime import datetime

import aiosqlite

from baton.config import get_settings
from baton.liveness import read_health, record_pending_channel
from baton.logger import logger
from baton.state import insert_message
from baton.types import AdmissionResult, PendingChannel
from baton.utils import utc_now

NO_REPLY_CHANNEL = "system"


def reply_suffix(channel: str, endpoint: str | None) -> str:
    """Tell the agent exactly how to answer on the originating channel."""
    command = f"{get_settings().intake.reply_command} {channel}"
    if endpoint:
        command += f" {endpoint}"
    return f" ---- reply via: {command}"


def _spill_to_attachment(content: str, now: datetime) -> tuple[str, str, str]:
    """Write *content* to the attachments dir.

    Returns ``(stored_content, preview, attachment_path)``.
    """
    s = get_settings()
    s.attachments_dir.mkdir(parents=True, exist_ok=True)
    path = s.attachments_dir / f"{now.strftime('%Y%m%dT%H%M%S%f')}-{secrets.token_hex(4)}.txt"
    path.write_text(content)
    preview = content[: s.intake.preview_chars]
    stored = f"{preview}... [full message: {path}]"
    return stored, preview, str(path)


async def receive(
    channel: str | None,
    content: str | None,
    *,
    endpoint: str | None = None,
    priority: int = 3,
    require_idle: bool = False,
    no_reply: bool = False,
    now: datetime | None = None,
) -> AdmissionResult:
    """Admit a message into the queue, or say why not."""
    for name, value in (("content", content), ("channel", channel), ("endpoint", endpoint)):
        if value is not None and not isinstance(value, str):
            return AdmissionResult(ok=False, code="INVALID_ARGS", error=f"{name} must be a string")
    if not content:
        return AdmissionResult(ok=False, code="INVALID_ARGS", error="content is required")
    if not channel:
        if not no_reply:
            return AdmissionResult(ok=False, code="INVALID_ARGS", error="channel is required")
        channel = NO_REPLY_CHANNEL
    if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 3:
        return AdmissionResult(ok=False, code="INVALID_ARGS", error="priority must be 1, 2 or 3")

    s = get_settings()
    health = read_health(s.status_file)
    if health != "ok":
        if not no_reply:
            try:
                record_pending_channel(
                    s.pending_channels_file, PendingChannel(channel=channel, endpoint=endpoint)
                )
            except OSError:
                logger.exception("Failed to record pending channel", channel=channel)
        logger.info("Message rejected, agent unhealthy", channel=channel, health=health)
        code = "HEALTH_DOWN" if health == "down" else "HEALTH_RECOVERING"
        return AdmissionResult(ok=False, code=code)

    now = now or utc_now()
    preview: str | None = None
    attachment_path: str | None = None
    try:
        if len(content.encode()) > s.intake.file_size_threshold:
            content, preview, attachment_path = _spill_to_attachment(content, now)
        if not no_reply:
            content += reply_suffix(channel, endpoint)

        message_id = await insert_message(
            channel,
            content,
            endpoint=endpoint,
            priority=priority,
            require_idle=require_idle,
            content_preview=preview,
            attachment_path=attachment_path,
            now=now,
        )
    except (aiosqlite.Error, OSError) as exc:
        logger.exception("Failed to queue message", channel=channel)
        return AdmissionResult(ok=False, code="INTERNAL_ERROR", error=str(exc))

    logger.info(
        "Message queued",
        message_id=message_id,
        channel=channel,
        priority=priority,
        require_idle=require_idle,
        spilled=attachment_path is not None,
    )
    return AdmissionResult(ok=True, id=message_id)
