"""Conversation replay for a fresh agent session.

A new session starts with no memory of the conversation.  These helpers
render the latest checkpoint summary and the messages after it as plain
text for a session-start hook to print.  When too much history is
unsummarized, only the newest messages are replayed and the agent is told
to run a memory sync over the full range.
"""

from __future__ import annotations

from baton.config import get_settings
from baton.state import (
    get_messages_in_range,
    get_recent_unsummarized_messages,
    get_unsummarized_messages,
    get_unsummarized_range,
    latest_checkpoint,
)
from baton.types import Message, UnsummarizedRange


def format_messages(messages: list[Message]) -> str:
    lines: list[str] = []
    for m in messages:
        direction = "IN" if m.direction == "in" else "OUT"
        endpoint = f":{m.endpoint}" if m.endpoint else ""
        lines.append(f"[{m.created_at}] {direction} ({m.channel}{endpoint}):")
        lines.append(m.content)
        lines.append("")
    return "\n".join(lines)


def sync_instruction(rng: UnsummarizedRange) -> str:
    command = get_settings().checkpoints.sync_command
    return (
        f"[Action Required] There are {rng.count} unsummarized conversations "
        f"(conversation id {rng.begin_id} ~ {rng.end_id}). Run a memory sync over "
        f"them: {command} --begin {rng.begin_id} --end {rng.end_id}"
    )


async def _summary_lines() -> list[str]:
    checkpoint = await latest_checkpoint()
    if checkpoint is None or not checkpoint.summary:
        return []
    return [f"[Last Checkpoint Summary] {checkpoint.summary}", ""]


async def needs_sync() -> UnsummarizedRange | None:
    """The unsummarized range when it is over the threshold, else None."""
    rng = await get_unsummarized_range()
    if rng.count > get_settings().checkpoints.threshold:
        return rng
    return None


async def session_init_context() -> str:
    """Summary plus unsummarized messages, trimmed to the newest when over threshold."""
    lines = await _summary_lines()
    rng = await get_unsummarized_range()
    if rng.count == 0:
        lines.append("No new conversations since last checkpoint.")
        return "\n".join(lines)

    c = get_settings().checkpoints
    over = rng.count > c.threshold
    if over:
        messages = await get_recent_unsummarized_messages(c.recent_count)
    else:
        messages = await get_unsummarized_messages()

    lines.append("[Recent Conversations]")
    lines.append(format_messages(messages))
    if over:
        lines.append(sync_instruction(rng))
    return "\n".join(lines)


async def threshold_notice() -> str | None:
    """The sync instruction, or None while under the threshold."""
    rng = await needs_sync()
    return sync_instruction(rng) if rng else None


async def fetch_context(begin_id: int, end_id: int) -> str:
    """Summary plus every message in ``[begin_id, end_id]``."""
    if end_id < begin_id:
        raise ValueError(f"end {end_id} is before begin {begin_id}")
    lines = await _summary_lines()
    lines.append(f"[Conversations] (id {begin_id} ~ {end_id})")
    messages = await get_messages_in_range(begin_id, end_id)
    lines.append(format_messages(messages) if messages else "No conversations in this range.")
    return "\n".join(lines)


async def fetch_unsummarized_context() -> str:
    rng = await get_unsummarized_range()
    if rng.count == 0 or rng.begin_id is None or rng.end_id is None:
        return "No unsummarized conversations."
    header = f"[Unsummarized Range] end_id={rng.end_id} count={rng.count}"
    return header + "\n" + await fetch_context(rng.begin_id, rng.end_id)
