"""Conversation message queue: storage, claiming and status transitions."""

from __future__ import annotations

from datetime import datetime, timedelta

from baton.state.connection import _get_db, atomic_write
from baton.types import Message, MessageStatus
from baton.utils import to_iso, utc_now


def _row_to_message(row) -> Message:
    return Message(
        id=row["id"],
        direction=row["direction"],
        channel=row["channel"],
        endpoint=row["endpoint"],
        content=row["content"],
        content_preview=row["content_preview"],
        attachment_path=row["attachment_path"],
        priority=row["priority"],
        status=row["status"],
        require_idle=bool(row["require_idle"]),
        retry_count=row["retry_count"],
        last_error=row["last_error"],
        available_at=row["available_at"],
        started_at=row["started_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


async def insert_message(
    channel: str,
    content: str,
    *,
    endpoint: str | None = None,
    priority: int = 3,
    require_idle: bool = False,
    direction: str = "in",
    status: MessageStatus = "pending",
    content_preview: str | None = None,
    attachment_path: str | None = None,
    now: datetime | None = None,
) -> int:
    """Insert a message and return its id. Durable once this returns."""
    ts = to_iso(now or utc_now())
    async with atomic_write() as db:
        cursor = await db.execute(
            """
            INSERT INTO messages
                (direction, channel, endpoint, content, content_preview,
                 attachment_path, priority, status, require_idle,
                 available_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                direction,
                channel,
                endpoint,
                content,
                content_preview,
                attachment_path,
                priority,
                status,
                int(require_idle),
                ts,
                ts,
                ts,
            ),
        )
        message_id = cursor.lastrowid
    assert message_id is not None
    return message_id


async def get_message(message_id: int) -> Message | None:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
    row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_message(row)


async def list_messages(
    *,
    status: MessageStatus | None = None,
    limit: int = 50,
) -> list[Message]:
    """Most recent messages first, optionally filtered by status."""
    db = _get_db()
    if status is None:
        cursor = await db.execute("SELECT * FROM messages ORDER BY id DESC LIMIT ?", (limit,))
    else:
        cursor = await db.execute(
            "SELECT * FROM messages WHERE status = ? ORDER BY id DESC LIMIT ?",
            (status, limit),
        )
    return [_row_to_message(row) for row in await cursor.fetchall()]


async def next_pending_message(now: datetime | None = None) -> Message | None:
    """Head of the inbound queue: most urgent, then oldest, among available rows."""
    db = _get_db()
    cursor = await db.execute(
        """
        SELECT * FROM messages
        WHERE status = 'pending' AND direction = 'in' AND available_at <= ?
        ORDER BY priority ASC, created_at ASC, id ASC
        LIMIT 1
        """,
        (to_iso(now or utc_now()),),
    )
    row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_message(row)


async def get_running_message() -> Message | None:
    db = _get_db()
    cursor = await db.execute(
        "SELECT * FROM messages WHERE status = 'running' ORDER BY started_at ASC LIMIT 1"
    )
    row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_message(row)


async def claim_message(message_id: int, now: datetime | None = None) -> bool:
    """Move a pending message to running. False if another claimer won."""
    ts = to_iso(now or utc_now())
    async with atomic_write() as db:
        cursor = await db.execute(
            """
            UPDATE messages SET status = 'running', started_at = ?, updated_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (ts, ts, message_id),
        )
        return cursor.rowcount == 1


async def record_delivery_failure(
    message_id: int,
    error: str,
    *,
    max_retries: int,
    retry_base_seconds: float,
    now: datetime | None = None,
) -> MessageStatus:
    """Return a running message to the queue with backoff, or fail it.

    The retry delay doubles with each attempt.  Once ``retry_count`` reaches
    *max_retries* the message is marked ``failed``.
    """
    now = now or utc_now()
    async with atomic_write() as db:
        cursor = await db.execute(
            "SELECT retry_count FROM messages WHERE id = ?", (message_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise ValueError(f"Message {message_id} not found")
        retry_count = row["retry_count"] + 1
        status: MessageStatus = "failed" if retry_count >= max_retries else "pending"
        delay = retry_base_seconds * (2 ** (retry_count - 1))
        await db.execute(
            """
            UPDATE messages
            SET status = ?, retry_count = ?, last_error = ?, available_at = ?,
                started_at = NULL, updated_at = ?
            WHERE id = ?
            """,
            (
                status,
                retry_count,
                error,
                to_iso(now + timedelta(seconds=delay)),
                to_iso(now),
                message_id,
            ),
        )
    return status


async def complete_message(
    message_id: int,
    *,
    success: bool = True,
    error: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Mark a running message done (or failed). False if it wasn't running."""
    status = "done" if success else "failed"
    async with atomic_write() as db:
        cursor = await db.execute(
            """
            UPDATE messages SET status = ?, last_error = COALESCE(?, last_error), updated_at = ?
            WHERE id = ? AND status = 'running'
            """,
            (status, error, to_iso(now or utc_now()), message_id),
        )
        return cursor.rowcount == 1


async def fail_stale_messages(stale_seconds: float, now: datetime | None = None) -> list[int]:
    """Fail messages stuck in running longer than *stale_seconds*. Returns their ids."""
    now = now or utc_now()
    cutoff = to_iso(now - timedelta(seconds=stale_seconds))
    async with atomic_write() as db:
        cursor = await db.execute(
            "SELECT id FROM messages WHERE status = 'running' AND started_at <= ?",
            (cutoff,),
        )
        ids = [row["id"] for row in await cursor.fetchall()]
        if ids:
            placeholders = ", ".join("?" * len(ids))
            await db.execute(
                f"""
                UPDATE messages
                SET status = 'failed', last_error = 'stale: no completion reported',
                    updated_at = ?
                WHERE status = 'running' AND id IN ({placeholders})
                """,
                (to_iso(now), *ids),
            )
    return ids


async def requeue_running_messages(
    error: str,
    *,
    max_retries: int,
    now: datetime | None = None,
) -> list[int]:
    """Put every running message back in the queue after its session died.

    Each one counts as a failed attempt: ``retry_count`` goes up and the
    message is ``failed`` once it reaches *max_retries*, otherwise it is
    ``pending`` and available immediately.  Returns the affected ids.
    """
    ts = to_iso(now or utc_now())
    async with atomic_write() as db:
        cursor = await db.execute("SELECT id FROM messages WHERE status = 'running'")
        ids = [row["id"] for row in await cursor.fetchall()]
        if ids:
            placeholders = ", ".join("?" * len(ids))
            await db.execute(
                f"""
                UPDATE messages
                SET retry_count = retry_count + 1,
                    status = CASE WHEN retry_count + 1 >= ? THEN 'failed' ELSE 'pending' END,
                    last_error = ?, available_at = ?, started_at = NULL, updated_at = ?
                WHERE status = 'running' AND id IN ({placeholders})
                """,
                (max_retries, error, ts, ts, *ids),
            )
    return ids


async def prune_done_messages(older_than: datetime) -> int:
    """Delete finished messages last touched before *older_than*."""
    async with atomic_write() as db:
        cursor = await db.execute(
            "DELETE FROM messages WHERE status = 'done' AND updated_at < ?",
            (to_iso(older_than),),
        )
        return cursor.rowcount


async def get_messages_after(after_id: int, *, limit: int | None = None) -> list[Message]:
    """Messages with id greater than *after_id*, oldest first."""
    db = _get_db()
    sql = "SELECT * FROM messages WHERE id > ? ORDER BY id ASC"
    params: tuple = (after_id,)
    if limit is not None:
        sql += " LIMIT ?"
        params = (after_id, limit)
    cursor = await db.execute(sql, params)
    return [_row_to_message(row) for row in await cursor.fetchall()]


async def get_message_id_bounds(after_id: int) -> tuple[int | None, int | None, int]:
    """(min id, max id, count) of messages with id greater than *after_id*."""
    db = _get_db()
    cursor = await db.execute(
        "SELECT MIN(id) AS lo, MAX(id) AS hi, COUNT(*) AS n FROM messages WHERE id > ?",
        (after_id,),
    )
    row = await cursor.fetchone()
    return row["lo"], row["hi"], row["n"]


async def get_messages_in_range(begin_id: int, end_id: int) -> list[Message]:
    """Messages with ids in ``[begin_id, end_id]``, oldest first."""
    db = _get_db()
    cursor = await db.execute(
        "SELECT * FROM messages WHERE id >= ? AND id <= ? ORDER BY id ASC",
        (begin_id, end_id),
    )
    return [_row_to_message(row) for row in await cursor.fetchall()]


async def get_last_messages_after(after_id: int, limit: int) -> list[Message]:
    """The newest *limit* messages with id greater than *after_id*, oldest first."""
    db = _get_db()
    cursor = await db.execute(
        """
        SELECT * FROM (
            SELECT * FROM messages WHERE id > ? ORDER BY id DESC LIMIT ?
        ) ORDER BY id ASC
        """,
        (after_id, limit),
    )
    return [_row_to_message(row) for row in await cursor.fetchall()]
