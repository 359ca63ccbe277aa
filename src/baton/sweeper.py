"""Background sweep: control deadlines, stale messages, retention."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from baton.config import get_settings
from baton.logger import logger
from baton.state import (
    cleanup_control_queue,
    expire_timed_out_controls,
    fail_stale_messages,
    prune_done_messages,
)
from baton.utils import utc_now

_RETENTION_EVERY = timedelta(hours=1)


class Sweeper:
    def __init__(self) -> None:
        self._last_retention: datetime | None = None

    async def sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Run one pass. Returns counts per action for logging and tests."""
        s = get_settings()
        now = now or utc_now()
        counts = {
            "timed_out": await expire_timed_out_controls(now),
            "stale_failed": len(
                await fail_stale_messages(s.dispatcher.message_stale_seconds, now)
            ),
            "controls_deleted": 0,
            "messages_pruned": 0,
        }

        if self._last_retention is None or now - self._last_retention >= _RETENTION_EVERY:
            self._last_retention = now
            counts["controls_deleted"] = await cleanup_control_queue(
                now - timedelta(days=s.control.retention_days)
            )
            if s.control.message_retention_days is not None:
                counts["messages_pruned"] = await prune_done_messages(
                    now - timedelta(days=s.control.message_retention_days)
                )

        if any(counts.values()):
            logger.info("Sweep", **counts)
        return counts

    async def run(self) -> None:
        logger.info("Sweeper started")
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Error in sweep")
            await asyncio.sleep(get_settings().control.sweep_interval)
