"""Task scheduler: turns due tasks into messages through the intake gate.

The scheduler is just another channel (``scheduler``): a due task is claimed,
its prompt goes through :func:`baton.intake.receive`, and the agent reports
completion with ``baton task done <id>``.  Repeating tasks are rescheduled
once they complete.
"""

from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from baton.config import get_settings
from baton.intake import receive
from baton.liveness import read_health, read_liveness_status
from baton.logger import logger
from baton.state import (
    claim_task,
    cleanup_task_history,
    create_task,
    expire_stale_task,
    get_completed_repeating_tasks,
    get_next_due_task,
    get_overdue_repeating_tasks,
    get_stale_running_tasks,
    release_task_claim,
    reschedule_task,
    update_task,
)
from baton.types import HostedSession, ScheduledTask, TaskType
from baton.utils import compute_next_run, parse_iso, to_iso, utc_now

SCHEDULER_CHANNEL = "scheduler"
_OFFLINE_LOG_EVERY = timedelta(seconds=30)
_HISTORY_CLEANUP_EVERY = timedelta(hours=1)


def generate_task_id() -> str:
    return f"task-{secrets.token_hex(4)}"


async def add_task(
    name: str,
    prompt: str,
    *,
    run_at: datetime | None = None,
    cron_expression: str | None = None,
    interval_seconds: int | None = None,
    timezone: str | None = None,
    priority: int = 3,
    require_idle: bool = False,
    reply_channel: str | None = None,
    reply_endpoint: str | None = None,
    miss_threshold_seconds: int | None = None,
    now: datetime | None = None,
) -> ScheduledTask:
    """Validate and store a new task.

    Exactly one of *run_at* (one-time), *cron_expression* (recurring) or
    *interval_seconds* (interval) must be given.  Raises ValueError otherwise,
    and for invalid schedules or priorities.
    """
    if not name or not prompt:
        raise ValueError("name and prompt are required")
    given = [v is not None for v in (run_at, cron_expression, interval_seconds)]
    if sum(given) != 1:
        raise ValueError("exactly one of run_at, cron_expression, interval_seconds is required")
    if not 1 <= priority <= 3:
        raise ValueError("priority must be 1, 2 or 3")
    if reply_endpoint and not reply_channel:
        raise ValueError("reply_endpoint requires reply_channel")

    now = now or utc_now()
    tz = timezone or get_settings().timezone
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {tz!r}") from exc
    task_type: TaskType
    if run_at is not None:
        task_type = "one-time"
        next_run_at = to_iso(run_at)
    else:
        task_type = "recurring" if cron_expression else "interval"
        next_run_at = compute_next_run(cron_expression, interval_seconds, tz, after=now)

    ts = to_iso(now)
    task = ScheduledTask(
        id=generate_task_id(),
        name=name,
        prompt=prompt,
        type=task_type,
        cron_expression=cron_expression,
        interval_seconds=interval_seconds,
        timezone=tz,
        next_run_at=next_run_at,
        priority=priority,
        require_idle=require_idle,
        reply_channel=reply_channel,
        reply_endpoint=reply_endpoint,
        miss_threshold_seconds=miss_threshold_seconds,
        created_at=ts,
        updated_at=ts,
    )
    await create_task(task)
    logger.info("Task created", task_id=task.id, type=task_type, next_run_at=next_run_at)
    return task


def _task_prompt(task: ScheduledTask) -> str:
    done = get_settings().scheduler.done_command
    return (
        f"[Scheduled Task: {task.id}] {task.prompt}\n\n"
        f"---- After completing this task, run: {done} {task.id}"
    )


class TaskScheduler:
    def __init__(self, session: HostedSession) -> None:
        self.session = session
        self._last_offline_log: datetime | None = None
        self._last_history_cleanup: datetime | None = None

    async def runtime_alive(self) -> bool:
        """Session present, not offline and healthy: intake would accept a task now."""
        if not await self.session.exists():
            return False
        status_file = get_settings().status_file
        if read_health(status_file) != "ok":
            return False
        return read_liveness_status(status_file).state != "offline"

    def _miss_threshold(self, task: ScheduledTask) -> int:
        if task.miss_threshold_seconds is not None:
            return task.miss_threshold_seconds
        return get_settings().scheduler.miss_threshold_seconds

    async def _advance(self, task: ScheduledTask, now: datetime) -> None:
        """Move a repeating task to its next run; fail it if that can't be computed."""
        try:
            next_run = compute_next_run(
                task.cron_expression,
                task.interval_seconds,
                task.timezone or get_settings().timezone,
                after=now,
            )
        except (ValueError, KeyError) as exc:
            logger.error("Failed to reschedule task", task_id=task.id, err=str(exc))
            await update_task(task.id, {"status": "failed", "last_error": str(exc)})
            return
        if next_run is None:
            await update_task(task.id, {"status": "failed", "last_error": "No schedule"})
            return
        await reschedule_task(task.id, next_run, now)
        logger.info("Task rescheduled", task_id=task.id, next_run_at=next_run)

    async def dispatch(self, task: ScheduledTask, now: datetime) -> bool:
        """Claim *task* and hand its prompt to the intake gate."""
        if not await claim_task(task.id, now):
            logger.debug("Task already claimed, skipping", task_id=task.id)
            return False

        logger.info("Dispatching task", task_id=task.id, name=task.name)
        result = await receive(
            task.reply_channel or SCHEDULER_CHANNEL,
            _task_prompt(task),
            endpoint=task.reply_endpoint,
            priority=task.priority,
            require_idle=task.require_idle,
            no_reply=task.reply_channel is None,
            now=now,
        )
        if not result.ok:
            error = f"Dispatch rejected: {result.code}"
            logger.warning("Task dispatch rejected", task_id=task.id, code=result.code)
            await release_task_claim(task.id, error, now)
            return False
        return True

    async def handle_stale_tasks(self, now: datetime) -> None:
        timeout = get_settings().scheduler.task_timeout
        for task in await get_stale_running_tasks(timeout, now):
            status = await expire_stale_task(task, now)
            logger.warning("Task timed out", task_id=task.id, name=task.name, status=status)

    async def process_completed_tasks(self, now: datetime) -> None:
        for task in await get_completed_repeating_tasks():
            await self._advance(task, now)

    async def handle_missed_tasks(self, now: datetime) -> None:
        s = get_settings().scheduler
        for task in await get_overdue_repeating_tasks(now - timedelta(seconds=s.missed_scan_seconds)):
            overdue = (now - parse_iso(task.next_run_at or to_iso(now))).total_seconds()
            threshold = self._miss_threshold(task)
            if overdue > threshold:
                logger.info(
                    "Task missed, skipping to next run",
                    task_id=task.id,
                    overdue_seconds=int(overdue),
                    threshold=threshold,
                )
                await self._advance(task, now)
            elif await self.runtime_alive():
                logger.info("Late-dispatching missed task", task_id=task.id, overdue_seconds=int(overdue))
                await self.dispatch(task, now)

    async def dispatch_next_due(self, now: datetime) -> bool:
        task = await get_next_due_task(now)
        if task is None:
            return False
        overdue = (now - parse_iso(task.next_run_at or to_iso(now))).total_seconds()
        if overdue > self._miss_threshold(task):
            logger.info("Task overdue beyond threshold, skipping", task_id=task.id, overdue_seconds=int(overdue))
            if task.is_repeating:
                await self._advance(task, now)
            else:
                await update_task(
                    task.id, {"status": "failed", "last_error": "Missed execution window"}
                )
            return False
        return await self.dispatch(task, now)

    async def tick(self, now: datetime | None = None) -> None:
        now = now or utc_now()
        await self.handle_stale_tasks(now)
        await self.process_completed_tasks(now)

        if not await self.runtime_alive():
            if self._last_offline_log is None or now - self._last_offline_log >= _OFFLINE_LOG_EVERY:
                logger.info("Waiting for agent runtime (offline or unhealthy)")
                self._last_offline_log = now
            return

        await self.dispatch_next_due(now)
        await self.handle_missed_tasks(now)

        if (
            self._last_history_cleanup is None
            or now - self._last_history_cleanup >= _HISTORY_CLEANUP_EVERY
        ):
            self._last_history_cleanup = now
            days = get_settings().scheduler.history_retention_days
            deleted = await cleanup_task_history(now - timedelta(days=days))
            if deleted:
                logger.info("Task history cleaned up", deleted=deleted)

    async def run(self) -> None:
        logger.info("Scheduler loop started", timezone=get_settings().timezone)
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Error in scheduler loop")
            await asyncio.sleep(get_settings().scheduler.poll_interval)
