"""Tests for the dispatcher: ordering, control preemption and gating."""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta

import pytest
from conftest import FakeIdleSource, FakeSession

from baton.config import DispatcherConfig
from baton.dispatcher import Dispatcher, TickResult, completion_hint, is_eligible
from baton.state import (
    complete_message,
    enqueue_control,
    get_control,
    get_message,
    insert_message,
)
from baton.types import ControlRecord, Message

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
LATER = T0 + timedelta(minutes=1)
THRESHOLDS = {0: 0, 1: 3, 2: 5, 3: 10}


def _dispatcher(*, idle: int | None = 100, **session_kwargs) -> tuple[Dispatcher, FakeSession]:
    session = FakeSession(**session_kwargs)
    return Dispatcher(session, FakeIdleSource(idle)), session


class TestIsEligible:
    def test_bypass_ignores_health_and_idle(self):
        record = ControlRecord(id=1, content="x", priority=0, bypass_state=True, require_idle=True)
        assert is_eligible(record, health="down", idle_seconds=0, idle_thresholds=THRESHOLDS) == (
            True,
            None,
        )

    def test_unhealthy_blocks(self):
        msg = Message(id=1, direction="in", channel="c", content="x")
        assert is_eligible(msg, health="recovering", idle_seconds=99, idle_thresholds=THRESHOLDS) == (
            False,
            "health_recovering",
        )

    @pytest.mark.parametrize(("priority", "idle", "ok"), [(1, 3, True), (1, 2, False), (3, 9, False), (3, 10, True)])
    def test_idle_threshold_by_priority(self, priority, idle, ok):
        msg = Message(id=1, direction="in", channel="c", content="x", priority=priority, require_idle=True)
        assert is_eligible(msg, health="ok", idle_seconds=idle, idle_thresholds=THRESHOLDS)[0] is ok

    def test_unknown_idle_counts_as_idle(self):
        msg = Message(id=1, direction="in", channel="c", content="x", require_idle=True)
        assert is_eligible(msg, health="ok", idle_seconds=math.inf, idle_thresholds=THRESHOLDS)[0]


@pytest.mark.usefixtures("db")
class TestMessageDelivery:
    async def test_priority_order(self):
        dispatcher, session = _dispatcher()
        ids = {}
        for i, priority in enumerate((1, 3, 2)):
            ids[priority] = await insert_message(
                "chat", f"p{priority}", priority=priority, now=T0 + timedelta(seconds=i)
            )

        delivered = []
        for _ in range(3):
            result = await dispatcher.tick(LATER)
            assert result.delivered
            delivered.append(result.item_id)
            await complete_message(result.item_id)
        assert delivered == [ids[1], ids[2], ids[3]]

    async def test_completion_hint_appended(self):
        dispatcher, session = _dispatcher()
        mid = await insert_message("chat", "hello", now=T0)
        await dispatcher.tick(LATER)
        assert session.injected == ["hello" + completion_hint(mid)]
        assert session.injected[0].endswith(f"baton done {mid}")
        assert (await get_message(mid)).status == "running"

    async def test_one_message_in_flight(self):
        dispatcher, session = _dispatcher()
        await insert_message("chat", "a", now=T0)
        await insert_message("chat", "b", now=T0)
        assert (await dispatcher.tick(LATER)).delivered
        result = await dispatcher.tick(LATER)
        assert result.reason == "message_in_flight"
        assert len(session.injected) == 1

    async def test_require_idle_waits(self):
        dispatcher, session = _dispatcher(idle=2)
        await insert_message("chat", "wait", priority=3, require_idle=True, now=T0)
        result = await dispatcher.tick(LATER)
        assert result.reason == "message_not_idle"
        dispatcher.idle_source.idle = 10
        assert (await dispatcher.tick(LATER)).delivered

    async def test_unknown_idle_delivers(self):
        dispatcher, session = _dispatcher(idle=None)
        await insert_message("chat", "x", require_idle=True, now=T0)
        result = await dispatcher.tick(LATER)
        assert result.delivered
        assert result.idle_seconds == math.inf

    async def test_unhealthy_holds_messages(self, write_status):
        write_status(health="recovering")
        dispatcher, session = _dispatcher()
        await insert_message("chat", "x", now=T0)
        result = await dispatcher.tick(LATER)
        assert result.reason == "message_health_recovering"
        assert session.injected == []

    async def test_inject_failure_backs_off(self):
        dispatcher, session = _dispatcher(inject_ok=False)
        mid = await insert_message("chat", "x", now=T0)
        result = await dispatcher.tick(LATER)
        assert result.reason == "inject_failed"
        msg = await get_message(mid)
        assert msg.status == "pending"
        assert msg.retry_count == 1

    async def test_session_missing(self):
        dispatcher, session = _dispatcher(exists=False)
        await insert_message("chat", "x", now=T0)
        assert (await dispatcher.tick(LATER)).reason == "session_missing"

    async def test_empty_queue(self):
        dispatcher, _ = _dispatcher()
        assert (await dispatcher.tick(LATER)).reason == "empty"


@pytest.mark.usefixtures("db")
class TestControlPreemption:
    async def test_control_before_messages(self):
        dispatcher, session = _dispatcher()
        await insert_message("chat", "urgent", priority=1, now=T0)
        record = await enqueue_control("control", priority=3, now=T0 + timedelta(seconds=5))
        result = await dispatcher.tick(LATER)
        assert (result.kind, result.item_id) == ("control", record.id)
        assert (await get_control(record.id)).status == "running"
        assert session.injected == ["control"]

    async def test_blocked_control_blocks_messages(self):
        dispatcher, session = _dispatcher(idle=0)
        await enqueue_control("needs idle", require_idle=True, now=T0)
        await insert_message("chat", "msg", now=T0)
        result = await dispatcher.tick(LATER)
        assert result.reason == "control_not_idle"
        assert session.injected == []

    async def test_bypass_control_delivered_while_down(self, write_status):
        write_status(health="down")
        dispatcher, session = _dispatcher(idle=0)
        record = await enqueue_control("probe", priority=0, bypass_state=True, now=T0)
        result = await dispatcher.tick(LATER)
        assert result.delivered
        assert result.item_id == record.id

    async def test_control_not_blocked_by_running_message(self):
        dispatcher, session = _dispatcher()
        await insert_message("chat", "first", now=T0)
        await dispatcher.tick(LATER)
        record = await enqueue_control("probe", priority=0, bypass_state=True, now=T0)
        result = await dispatcher.tick(LATER)
        assert result.item_id == record.id

    async def test_control_inject_failure_retries_then_fails(self):
        dispatcher, session = _dispatcher(inject_ok=False)
        record = await enqueue_control("x", now=T0)
        for _ in range(3):
            await dispatcher.tick(LATER)
        stored = await get_control(record.id)
        assert stored.status == "failed"
        assert stored.retry_count == 3


class TestAdaptiveInterval:
    def test_grows_while_idle_and_resets_on_delivery(self, use_settings):
        use_settings(dispatcher=DispatcherConfig(poll_interval=1.0, poll_interval_max=3.0))
        dispatcher, _ = _dispatcher()
        idle = TickResult(delivered=False, reason="empty", idle_seconds=60)
        assert dispatcher.next_interval(idle) == 2.0
        assert dispatcher.next_interval(idle) == 3.0
        assert dispatcher.next_interval(idle) == 3.0
        assert dispatcher.next_interval(TickResult(delivered=True)) == 1.0

    def test_busy_agent_keeps_base_interval(self):
        dispatcher, _ = _dispatcher()
        busy = TickResult(delivered=False, reason="empty", idle_seconds=0)
        assert dispatcher.next_interval(busy) == 1.0
