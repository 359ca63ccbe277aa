"""Dispatcher: serializes delivery into the agent's session.

Each tick delivers at most one item.  Control records always come first:
if one is queued but can't go yet, conversation messages wait too.  Only
one conversation message is in flight at a time; it stays ``running``
until the agent reports completion (``baton done <id>``).
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from baton.config import get_settings
from baton.liveness import read_health
from baton.logger import logger
from baton.state import (
    claim_control,
    claim_message,
    get_running_message,
    next_pending_control,
    next_pending_message,
    record_delivery_failure,
    retry_or_fail_control,
)
from baton.types import ControlRecord, Health, HostedSession, IdleSource, Message
from baton.utils import utc_now


@dataclass
class TickResult:
    delivered: bool
    kind: Literal["control", "message"] | None = None
    item_id: int | None = None
    reason: str | None = None  # Why nothing was delivered
    idle_seconds: float | None = None


def completion_hint(message_id: int) -> str:
    return f" ---- when finished: {get_settings().dispatcher.done_command} {message_id}"


def is_eligible(
    item: ControlRecord | Message,
    *,
    health: Health,
    idle_seconds: float,
    idle_thresholds: dict[int, int],
) -> tuple[bool, str | None]:
    """Whether *item* may be injected now, and if not, why."""
    if isinstance(item, ControlRecord) and item.bypass_state:
        return True, None
    if health != "ok":
        return False, f"health_{health}"
    if item.require_idle and idle_seconds < idle_thresholds[item.priority]:
        return False, "not_idle"
    return True, None


class Dispatcher:
    def __init__(self, session: HostedSession, idle_source: IdleSource) -> None:
        self.session = session
        self.idle_source = idle_source
        self.poll_interval = get_settings().dispatcher.poll_interval
        self._missing_ticks = 0

    async def _session_available(self) -> bool:
        if await self.session.exists():
            if self._missing_ticks >= get_settings().dispatcher.session_missing_warn_ticks:
                logger.info("Session is back", missed_ticks=self._missing_ticks)
            self._missing_ticks = 0
            return True
        self._missing_ticks += 1
        if self._missing_ticks == get_settings().dispatcher.session_missing_warn_ticks:
            logger.warning("Session missing", consecutive_ticks=self._missing_ticks)
        return False

    async def tick(self, now: datetime | None = None) -> TickResult:
        s = get_settings()
        now = now or utc_now()

        if not await self._session_available():
            return TickResult(delivered=False, reason="session_missing")

        idle = self.idle_source.get_idle_seconds()
        idle_seconds: float = math.inf if idle is None else idle
        health = read_health(s.status_file)
        thresholds = s.dispatcher.idle_thresholds

        control = await next_pending_control(now)
        if control is not None:
            ok, reason = is_eligible(
                control, health=health, idle_seconds=idle_seconds, idle_thresholds=thresholds
            )
            if not ok:
                return TickResult(delivered=False, reason=f"control_{reason}", idle_seconds=idle_seconds)
            if not await claim_control(control.id, now):
                # Another claimer won; don't fall through to the message queue.
                return TickResult(delivered=False, reason="control_claim_lost", idle_seconds=idle_seconds)
            return await self._deliver_control(control, idle_seconds)

        running = await get_running_message()
        if running is not None:
            return TickResult(delivered=False, reason="message_in_flight", idle_seconds=idle_seconds)

        message = await next_pending_message(now)
        if message is None:
            return TickResult(delivered=False, reason="empty", idle_seconds=idle_seconds)
        ok, reason = is_eligible(
            message, health=health, idle_seconds=idle_seconds, idle_thresholds=thresholds
        )
        if not ok:
            return TickResult(delivered=False, reason=f"message_{reason}", idle_seconds=idle_seconds)
        if not await claim_message(message.id, now):
            return TickResult(delivered=False, reason="message_claim_lost", idle_seconds=idle_seconds)
        return await self._deliver_message(message, idle_seconds)

    async def _deliver_control(self, control: ControlRecord, idle_seconds: float) -> TickResult:
        logger.info("Delivering control", control_id=control.id, priority=control.priority)
        if await self.session.inject(control.content):
            logger.info("Control submitted, waiting for ack", control_id=control.id)
            return TickResult(delivered=True, kind="control", item_id=control.id, idle_seconds=idle_seconds)

        status = await retry_or_fail_control(
            control.id, "INJECT_FAILED", max_retries=get_settings().control.max_retries
        )
        if status == "failed":
            logger.error("Control failed after retries", control_id=control.id)
        else:
            logger.warning("Control delivery failed, will retry", control_id=control.id)
        return TickResult(
            delivered=False, kind="control", item_id=control.id, reason="inject_failed",
            idle_seconds=idle_seconds,
        )

    async def _deliver_message(self, message: Message, idle_seconds: float) -> TickResult:
        logger.info(
            "Delivering message",
            message_id=message.id,
            channel=message.channel,
            priority=message.priority,
        )
        if await self.session.inject(message.content + completion_hint(message.id)):
            return TickResult(delivered=True, kind="message", item_id=message.id, idle_seconds=idle_seconds)

        d = get_settings().dispatcher
        status = await record_delivery_failure(
            message.id,
            "INJECT_FAILED",
            max_retries=d.max_retries,
            retry_base_seconds=d.retry_base_seconds,
        )
        if status == "failed":
            logger.error("Message failed after retries", message_id=message.id, channel=message.channel)
        else:
            logger.warning("Message delivery failed, will retry", message_id=message.id)
        return TickResult(
            delivered=False, kind="message", item_id=message.id, reason="inject_failed",
            idle_seconds=idle_seconds,
        )

    def next_interval(self, result: TickResult) -> float:
        """Back off while the agent sits idle with nothing to deliver."""
        d = get_settings().dispatcher
        if result.delivered:
            self.poll_interval = d.poll_interval
        elif result.idle_seconds is not None and result.idle_seconds >= d.idle_thresholds[1]:
            self.poll_interval = min(d.poll_interval_max, self.poll_interval + d.poll_interval)
        else:
            self.poll_interval = d.poll_interval
        return self.poll_interval

    async def run(self) -> None:
        """Polling loop. Runs until cancelled."""
        logger.info("Dispatcher started")
        while True:
            interval = get_settings().dispatcher.poll_interval
            try:
                result = await self.tick()
                interval = self.next_interval(result)
            except Exception:
                logger.exception("Error in dispatcher tick")
            await asyncio.sleep(interval)
