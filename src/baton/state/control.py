"""Out-of-band control queue with ack deadlines.

Control records are delivered ahead of conversation messages and are only
considered successful once the agent explicitly acks them.  A record whose
``ack_deadline_at`` passes without an ack ends ``timeout``, which is final.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from baton.logger import logger
from baton.state.connection import _get_db, atomic_write
from baton.types import AckResult, ControlRecord, ControlStatus
from baton.utils import to_iso, utc_now

CONTROL_ID_PLACEHOLDER = "__CONTROL_ID__"
_DEADLINE_ERROR = "ACK_DEADLINE_EXCEEDED"


def _row_to_control(row) -> ControlRecord:
    return ControlRecord(
        id=row["id"],
        content=row["content"],
        priority=row["priority"],
        status=row["status"],
        require_idle=bool(row["require_idle"]),
        bypass_state=bool(row["bypass_state"]),
        retry_count=row["retry_count"],
        last_error=row["last_error"],
        ack_deadline_at=row["ack_deadline_at"],
        available_at=row["available_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


async def enqueue_control(
    content: str,
    *,
    priority: int = 3,
    require_idle: bool = False,
    bypass_state: bool = False,
    ack_deadline_seconds: float | None = None,
    available_in_seconds: float | None = None,
    now: datetime | None = None,
) -> ControlRecord:
    """Queue a control record.

    Any ``__CONTROL_ID__`` in *content* is replaced with the assigned id in
    the same transaction, so the agent can be told how to ack it.

    Raises ValueError for empty content, out-of-range priority or
    non-positive durations.
    """
    if not content or not content.strip():
        raise ValueError("content is required")
    if not 0 <= priority <= 3:
        raise ValueError("priority must be between 0 and 3")
    if ack_deadline_seconds is not None and ack_deadline_seconds <= 0:
        raise ValueError("ack_deadline_seconds must be positive")
    if available_in_seconds is not None and available_in_seconds < 0:
        raise ValueError("available_in_seconds must not be negative")

    now = now or utc_now()
    ts = to_iso(now)
    available_at = to_iso(now + timedelta(seconds=available_in_seconds or 0))
    deadline = (
        to_iso(now + timedelta(seconds=ack_deadline_seconds))
        if ack_deadline_seconds is not None
        else None
    )

    async with atomic_write() as db:
        cursor = await db.execute(
            """
            INSERT INTO control_queue
                (content, priority, require_idle, bypass_state, status,
                 ack_deadline_at, available_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, ?)
            """,
            (
                content,
                priority,
                int(require_idle),
                int(bypass_state),
                deadline,
                available_at,
                ts,
                ts,
            ),
        )
        control_id = cursor.lastrowid
        assert control_id is not None
        if CONTROL_ID_PLACEHOLDER in content:
            content = content.replace(CONTROL_ID_PLACEHOLDER, str(control_id))
            await db.execute(
                "UPDATE control_queue SET content = ? WHERE id = ?",
                (content, control_id),
            )

    return ControlRecord(
        id=control_id,
        content=content,
        priority=priority,
        require_idle=require_idle,
        bypass_state=bypass_state,
        ack_deadline_at=deadline,
        available_at=available_at,
        created_at=ts,
        updated_at=ts,
    )


async def get_control(control_id: int) -> ControlRecord | None:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM control_queue WHERE id = ?", (control_id,))
    row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_control(row)


async def get_control_status(
    control_id: int, now: datetime | None = None
) -> ControlStatus | None:
    """Current status after applying any overdue deadlines. None if unknown."""
    await expire_timed_out_controls(now)
    record = await get_control(control_id)
    return record.status if record else None


async def next_pending_control(now: datetime | None = None) -> ControlRecord | None:
    db = _get_db()
    cursor = await db.execute(
        """
        SELECT * FROM control_queue
        WHERE status = 'pending' AND available_at <= ?
        ORDER BY priority ASC, created_at ASC, id ASC
        LIMIT 1
        """,
        (to_iso(now or utc_now()),),
    )
    row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_control(row)


async def claim_control(control_id: int, now: datetime | None = None) -> bool:
    """Move a pending record to running. False if another claimer won."""
    async with atomic_write() as db:
        cursor = await db.execute(
            """
            UPDATE control_queue SET status = 'running', last_error = NULL, updated_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (to_iso(now or utc_now()), control_id),
        )
        return cursor.rowcount == 1


async def ack_control(control_id: int, now: datetime | None = None) -> AckResult:
    """Acknowledge a control record. Idempotent.

    Final records report ``already_final``.  A record whose deadline has
    already passed is marked ``timeout`` rather than ``done``.
    """
    now = now or utc_now()
    ts = to_iso(now)
    async with atomic_write() as db:
        cursor = await db.execute(
            "SELECT status, ack_deadline_at FROM control_queue WHERE id = ?",
            (control_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return AckResult(found=False)

        status = row["status"]
        deadline = row["ack_deadline_at"]
        if status in ("pending", "running") and deadline is not None and deadline <= ts:
            await db.execute(
                """
                UPDATE control_queue
                SET status = 'timeout', updated_at = ?,
                    last_error = COALESCE(last_error, ?)
                WHERE id = ?
                """,
                (ts, _DEADLINE_ERROR, control_id),
            )
            return AckResult(found=True, already_final=True, status="timeout")

        if status not in ("pending", "running"):
            return AckResult(found=True, already_final=True, status=status)

        await db.execute(
            """
            UPDATE control_queue SET status = 'done', last_error = NULL, updated_at = ?
            WHERE id = ? AND status IN ('pending', 'running')
            """,
            (ts, control_id),
        )
    logger.info("Control acknowledged", control_id=control_id)
    return AckResult(found=True, already_final=False, status="done")


async def retry_or_fail_control(
    control_id: int,
    error: str,
    *,
    max_retries: int,
    now: datetime | None = None,
) -> ControlStatus | None:
    """Return a record to pending after a delivery failure, or fail it.

    Returns the new status, or None when the record doesn't exist.
    """
    ts = to_iso(now or utc_now())
    async with atomic_write() as db:
        cursor = await db.execute(
            "SELECT retry_count, status FROM control_queue WHERE id = ?", (control_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        if row["status"] not in ("pending", "running"):
            return row["status"]
        retry_count = row["retry_count"] + 1
        status: ControlStatus = "failed" if retry_count >= max_retries else "pending"
        await db.execute(
            """
            UPDATE control_queue
            SET status = ?, retry_count = ?, last_error = ?, updated_at = ?
            WHERE id = ?
            """,
            (status, retry_count, error, ts, control_id),
        )
    return status


async def expire_timed_out_controls(now: datetime | None = None) -> int:
    """Mark open records whose deadline has been reached as ``timeout``."""
    ts = to_iso(now or utc_now())
    async with atomic_write() as db:
        cursor = await db.execute(
            """
            UPDATE control_queue
            SET status = 'timeout', updated_at = ?, last_error = COALESCE(last_error, ?)
            WHERE status IN ('pending', 'running')
              AND ack_deadline_at IS NOT NULL
              AND ack_deadline_at <= ?
            """,
            (ts, _DEADLINE_ERROR, ts),
        )
        return cursor.rowcount


async def cleanup_control_queue(older_than: datetime) -> int:
    """Delete final records last updated before *older_than*."""
    async with atomic_write() as db:
        cursor = await db.execute(
            """
            DELETE FROM control_queue
            WHERE status IN ('done', 'failed', 'timeout') AND updated_at < ?
            """,
            (to_iso(older_than),),
        )
        return cursor.rowcount
