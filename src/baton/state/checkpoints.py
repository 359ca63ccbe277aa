"""Sync checkpoints: durable markers of how much history has been summarized.

Checkpoints partition the message id space.  Each one covers
``[previous.end + 1, end]``; the start is always derived, never supplied.
"""

from __future__ import annotations

from datetime import datetime

from baton.state.connection import _get_db, atomic_write
from baton.state.messages import (
    get_last_messages_after,
    get_message_id_bounds,
    get_messages_after,
)
from baton.types import Checkpoint, Message, UnsummarizedRange
from baton.utils import to_iso, utc_now


def _row_to_checkpoint(row) -> Checkpoint:
    return Checkpoint(
        id=row["id"],
        start_conversation_id=row["start_conversation_id"],
        end_conversation_id=row["end_conversation_id"],
        summary=row["summary"],
        created_at=row["created_at"],
    )


async def create_checkpoint(
    end_id: int,
    summary: str | None = None,
    *,
    now: datetime | None = None,
) -> Checkpoint:
    """Record that messages up to *end_id* are summarized.

    Reading the previous end and inserting happen under one write lock so two
    writers can't produce overlapping ranges.  Raises ValueError when
    *end_id* is before the computed start.
    """
    ts = to_iso(now or utc_now())
    async with atomic_write() as db:
        cursor = await db.execute(
            "SELECT end_conversation_id FROM checkpoints ORDER BY id DESC LIMIT 1"
        )
        row = await cursor.fetchone()
        start_id = row["end_conversation_id"] + 1 if row else 1
        if end_id < start_id:
            raise ValueError(
                f"end_id {end_id} is before the next checkpoint start {start_id}"
            )
        cursor = await db.execute(
            """
            INSERT INTO checkpoints
                (start_conversation_id, end_conversation_id, summary, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (start_id, end_id, summary, ts),
        )
        checkpoint_id = cursor.lastrowid
    assert checkpoint_id is not None
    return Checkpoint(
        id=checkpoint_id,
        start_conversation_id=start_id,
        end_conversation_id=end_id,
        summary=summary,
        created_at=ts,
    )


async def latest_checkpoint() -> Checkpoint | None:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM checkpoints ORDER BY id DESC LIMIT 1")
    row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_checkpoint(row)


async def list_checkpoints(limit: int | None = None) -> list[Checkpoint]:
    """Checkpoints, newest first."""
    db = _get_db()
    if limit is None:
        cursor = await db.execute("SELECT * FROM checkpoints ORDER BY id DESC")
    else:
        if limit <= 0:
            raise ValueError("limit must be positive")
        cursor = await db.execute(
            "SELECT * FROM checkpoints ORDER BY id DESC LIMIT ?", (limit,)
        )
    return [_row_to_checkpoint(row) for row in await cursor.fetchall()]


async def _summarized_through() -> int:
    last = await latest_checkpoint()
    return last.end_conversation_id if last else 0


async def get_unsummarized_range() -> UnsummarizedRange:
    """Id range and count of messages after the latest checkpoint."""
    begin_id, end_id, count = await get_message_id_bounds(await _summarized_through())
    return UnsummarizedRange(begin_id=begin_id, end_id=end_id, count=count)


async def get_unsummarized_messages(limit: int | None = None) -> list[Message]:
    return await get_messages_after(await _summarized_through(), limit=limit)


async def get_recent_unsummarized_messages(limit: int) -> list[Message]:
    """The newest *limit* unsummarized messages, oldest first."""
    if limit <= 0:
        raise ValueError("limit must be positive")
    return await get_last_messages_after(await _summarized_through(), limit)
