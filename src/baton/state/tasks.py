"""Scheduled task CRUD, claiming and run history."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from baton.state.connection import _get_db, _update_by_id, atomic_write
from baton.types import ScheduledTask, TaskRun, TaskStatus
from baton.utils import to_iso, utc_now


def _row_to_task(row) -> ScheduledTask:
    return ScheduledTask(
        id=row["id"],
        name=row["name"],
        prompt=row["prompt"],
        type=row["type"],
        cron_expression=row["cron_expression"],
        interval_seconds=row["interval_seconds"],
        timezone=row["timezone"],
        next_run_at=row["next_run_at"],
        last_run_at=row["last_run_at"],
        priority=row["priority"],
        require_idle=bool(row["require_idle"]),
        reply_channel=row["reply_channel"],
        reply_endpoint=row["reply_endpoint"],
        miss_threshold_seconds=row["miss_threshold_seconds"],
        status=row["status"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


async def create_task(task: ScheduledTask) -> None:
    """Insert a new scheduled task."""
    async with atomic_write() as db:
        await db.execute(
            """
            INSERT INTO tasks
                (id, name, prompt, type, cron_expression, interval_seconds,
                 timezone, next_run_at, priority, require_idle, reply_channel,
                 reply_endpoint, miss_threshold_seconds, status, created_at,
                 updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.name,
                task.prompt,
                task.type,
                task.cron_expression,
                task.interval_seconds,
                task.timezone,
                task.next_run_at,
                task.priority,
                int(task.require_idle),
                task.reply_channel,
                task.reply_endpoint,
                task.miss_threshold_seconds,
                task.status,
                task.created_at,
                task.updated_at,
            ),
        )


async def get_task(task_id: str) -> ScheduledTask | None:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
    row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_task(row)


async def list_tasks(status: TaskStatus | None = None) -> list[ScheduledTask]:
    """All tasks (optionally one status), soonest next run first."""
    db = _get_db()
    sql = "SELECT * FROM tasks"
    params: tuple = ()
    if status is not None:
        sql += " WHERE status = ?"
        params = (status,)
    sql += " ORDER BY next_run_at IS NULL, next_run_at ASC, created_at ASC"
    cursor = await db.execute(sql, params)
    return [_row_to_task(row) for row in await cursor.fetchall()]


_TASK_UPDATE_FIELDS = {
    "name",
    "prompt",
    "cron_expression",
    "interval_seconds",
    "timezone",
    "next_run_at",
    "priority",
    "require_idle",
    "reply_channel",
    "reply_endpoint",
    "miss_threshold_seconds",
    "status",
    "last_error",
    "updated_at",
}


async def update_task(task_id: str, updates: dict[str, Any]) -> None:
    """Update specific fields of a task."""
    updates = {**updates, "updated_at": to_iso(utc_now())}
    await _update_by_id("tasks", task_id, updates, _TASK_UPDATE_FIELDS)


async def delete_task(task_id: str) -> bool:
    """Delete a task and its history."""
    async with atomic_write() as db:
        await db.execute("DELETE FROM task_history WHERE task_id = ?", (task_id,))
        cursor = await db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return cursor.rowcount == 1


async def _transition(task_id: str, from_status: str, to_status: str) -> bool:
    async with atomic_write() as db:
        cursor = await db.execute(
            "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (to_status, to_iso(utc_now()), task_id, from_status),
        )
        return cursor.rowcount == 1


async def pause_task(task_id: str) -> bool:
    """Pause a pending task. False if it isn't pending."""
    return await _transition(task_id, "pending", "paused")


async def resume_task(task_id: str) -> bool:
    """Resume a paused task. False if it isn't paused."""
    return await _transition(task_id, "paused", "pending")


async def get_next_due_task(now: datetime | None = None) -> ScheduledTask | None:
    db = _get_db()
    cursor = await db.execute(
        """
        SELECT * FROM tasks
        WHERE status = 'pending' AND next_run_at IS NOT NULL AND next_run_at <= ?
        ORDER BY priority ASC, next_run_at ASC
        LIMIT 1
        """,
        (to_iso(now or utc_now()),),
    )
    row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_task(row)


async def claim_task(task_id: str, now: datetime | None = None) -> bool:
    """Move a pending task to running and open a history entry."""
    ts = to_iso(now or utc_now())
    async with atomic_write() as db:
        cursor = await db.execute(
            "UPDATE tasks SET status = 'running', updated_at = ? WHERE id = ? AND status = 'pending'",
            (ts, task_id),
        )
        if cursor.rowcount != 1:
            return False
        await db.execute(
            "INSERT INTO task_history (task_id, status, run_at) VALUES (?, 'started', ?)",
            (task_id, ts),
        )
        return True


async def _close_history(db, task_id: str, status: str, error: str | None) -> None:
    await db.execute(
        """
        UPDATE task_history SET status = ?, error = ?
        WHERE id = (
            SELECT id FROM task_history
            WHERE task_id = ? AND status = 'started'
            ORDER BY run_at DESC, id DESC LIMIT 1
        )
        """,
        (status, error, task_id),
    )


async def release_task_claim(task_id: str, error: str, now: datetime | None = None) -> None:
    """Put a claimed task back to pending after its dispatch was rejected."""
    async with atomic_write() as db:
        await db.execute(
            """
            UPDATE tasks SET status = 'pending', last_error = ?, updated_at = ?
            WHERE id = ? AND status = 'running'
            """,
            (error, to_iso(now or utc_now()), task_id),
        )
        await _close_history(db, task_id, "failed", error)


async def mark_task_done(
    task_id: str,
    error: str | None = None,
    *,
    now: datetime | None = None,
) -> ScheduledTask | None:
    """Record a finished run.

    Repeating tasks always end ``completed`` so the scheduler reschedules
    them; a one-time task that reports *error* ends ``failed``.  Returns the
    updated task, or None if it doesn't exist.
    """
    ts = to_iso(now or utc_now())
    task = await get_task(task_id)
    if task is None:
        return None
    status = "failed" if error and not task.is_repeating else "completed"
    async with atomic_write() as db:
        await db.execute(
            """
            UPDATE tasks SET status = ?, last_run_at = ?, last_error = ?, updated_at = ?
            WHERE id = ?
            """,
            (status, ts, error, ts, task_id),
        )
        await _close_history(db, task_id, "failed" if error else "success", error)
    return await get_task(task_id)


async def get_stale_running_tasks(timeout_seconds: float, now: datetime | None = None) -> list[ScheduledTask]:
    cutoff = to_iso((now or utc_now()) - timedelta(seconds=timeout_seconds))
    db = _get_db()
    cursor = await db.execute(
        "SELECT * FROM tasks WHERE status = 'running' AND updated_at < ?", (cutoff,)
    )
    return [_row_to_task(row) for row in await cursor.fetchall()]


async def expire_stale_task(task: ScheduledTask, now: datetime | None = None) -> TaskStatus:
    """End a timed-out run: one-time tasks fail, repeating ones complete."""
    status: TaskStatus = "completed" if task.is_repeating else "failed"
    async with atomic_write() as db:
        await db.execute(
            """
            UPDATE tasks SET status = ?, last_error = 'Task timed out', updated_at = ?
            WHERE id = ? AND status = 'running'
            """,
            (status, to_iso(now or utc_now()), task.id),
        )
        await _close_history(db, task.id, "timeout", "Task timed out")
    return status


async def get_completed_repeating_tasks() -> list[ScheduledTask]:
    db = _get_db()
    cursor = await db.execute(
        "SELECT * FROM tasks WHERE status = 'completed' AND type IN ('recurring', 'interval')"
    )
    return [_row_to_task(row) for row in await cursor.fetchall()]


async def get_overdue_repeating_tasks(before: datetime) -> list[ScheduledTask]:
    """Pending repeating tasks whose next run is earlier than *before*."""
    db = _get_db()
    cursor = await db.execute(
        """
        SELECT * FROM tasks
        WHERE status = 'pending' AND type IN ('recurring', 'interval')
          AND next_run_at IS NOT NULL AND next_run_at < ?
        ORDER BY next_run_at ASC
        """,
        (to_iso(before),),
    )
    return [_row_to_task(row) for row in await cursor.fetchall()]


async def reschedule_task(task_id: str, next_run_at: str, now: datetime | None = None) -> None:
    async with atomic_write() as db:
        await db.execute(
            """
            UPDATE tasks SET status = 'pending', next_run_at = ?, updated_at = ?
            WHERE id = ? AND status IN ('pending', 'completed')
            """,
            (next_run_at, to_iso(now or utc_now()), task_id),
        )


async def get_task_history(task_id: str, limit: int = 20) -> list[TaskRun]:
    db = _get_db()
    cursor = await db.execute(
        "SELECT * FROM task_history WHERE task_id = ? ORDER BY run_at DESC, id DESC LIMIT ?",
        (task_id, limit),
    )
    return [
        TaskRun(
            id=row["id"],
            task_id=row["task_id"],
            status=row["status"],
            run_at=row["run_at"],
            error=row["error"],
        )
        for row in await cursor.fetchall()
    ]


async def cleanup_task_history(older_than: datetime) -> int:
    async with atomic_write() as db:
        cursor = await db.execute(
            "DELETE FROM task_history WHERE run_at < ?", (to_iso(older_than),)
        )
        return cursor.rowcount
