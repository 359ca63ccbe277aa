"""Tests for the conversation message queue."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from baton.state import (
    claim_message,
    complete_message,
    fail_stale_messages,
    get_message,
    get_running_message,
    insert_message,
    list_messages,
    next_pending_message,
    prune_done_messages,
    record_delivery_failure,
)

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

pytestmark = pytest.mark.usefixtures("db")


class TestQueueOrder:
    async def test_priority_then_age(self):
        normal = await insert_message("chat", "normal", priority=3, now=T0)
        urgent = await insert_message("chat", "urgent", priority=1, now=T0 + timedelta(seconds=2))
        high = await insert_message("chat", "high", priority=2, now=T0 + timedelta(seconds=1))

        order = []
        for _ in range(3):
            msg = await next_pending_message(T0 + timedelta(seconds=10))
            assert msg is not None
            order.append(msg.id)
            await claim_message(msg.id, T0)
            await complete_message(msg.id)
        assert order == [urgent, high, normal]

    async def test_fifo_within_priority(self):
        first = await insert_message("chat", "a", now=T0)
        await insert_message("chat", "b", now=T0 + timedelta(seconds=1))
        msg = await next_pending_message(T0 + timedelta(seconds=5))
        assert msg.id == first

    async def test_outbound_rows_never_queued(self):
        await insert_message("chat", "sent", direction="out", status="done", now=T0)
        assert await next_pending_message(T0 + timedelta(seconds=1)) is None

    async def test_unavailable_rows_skipped(self):
        await insert_message("chat", "later", now=T0)
        assert await next_pending_message(T0 - timedelta(seconds=1)) is None


class TestClaim:
    async def test_claim_once(self):
        mid = await insert_message("chat", "x", now=T0)
        assert await claim_message(mid, T0) is True
        assert await claim_message(mid, T0) is False
        running = await get_running_message()
        assert running.id == mid
        assert running.started_at is not None

    async def test_complete_requires_running(self):
        mid = await insert_message("chat", "x", now=T0)
        assert await complete_message(mid) is False
        await claim_message(mid, T0)
        assert await complete_message(mid) is True
        assert (await get_message(mid)).status == "done"

    async def test_complete_as_failed(self):
        mid = await insert_message("chat", "x", now=T0)
        await claim_message(mid, T0)
        await complete_message(mid, success=False, error="agent gave up")
        msg = await get_message(mid)
        assert msg.status == "failed"
        assert msg.last_error == "agent gave up"


class TestDeliveryFailure:
    async def test_backoff_doubles(self):
        mid = await insert_message("chat", "x", now=T0)
        await claim_message(mid, T0)
        status = await record_delivery_failure(
            mid, "INJECT_FAILED", max_retries=5, retry_base_seconds=1.0, now=T0
        )
        assert status == "pending"
        msg = await get_message(mid)
        assert msg.retry_count == 1
        assert msg.available_at == (T0 + timedelta(seconds=1)).isoformat(timespec="microseconds")

        await claim_message(mid, T0)
        await record_delivery_failure(
            mid, "INJECT_FAILED", max_retries=5, retry_base_seconds=1.0, now=T0
        )
        msg = await get_message(mid)
        assert msg.available_at == (T0 + timedelta(seconds=2)).isoformat(timespec="microseconds")

    async def test_fails_at_max_retries(self):
        mid = await insert_message("chat", "x", now=T0)
        statuses = []
        for _ in range(3):
            await claim_message(mid, T0)
            statuses.append(
                await record_delivery_failure(
                    mid, "INJECT_FAILED", max_retries=3, retry_base_seconds=0.1, now=T0
                )
            )
        assert statuses == ["pending", "pending", "failed"]
        assert (await get_message(mid)).last_error == "INJECT_FAILED"

    async def test_unknown_id_raises(self):
        with pytest.raises(ValueError):
            await record_delivery_failure(999, "x", max_retries=3, retry_base_seconds=1)


class TestMaintenance:
    async def test_stale_running_failed(self):
        mid = await insert_message("chat", "x", now=T0)
        await claim_message(mid, T0)
        assert await fail_stale_messages(3600, T0 + timedelta(minutes=30)) == []
        assert await fail_stale_messages(3600, T0 + timedelta(hours=2)) == [mid]
        msg = await get_message(mid)
        assert msg.status == "failed"
        assert msg.last_error.startswith("stale")

    async def test_prune_only_done(self):
        done = await insert_message("chat", "x", now=T0)
        await claim_message(done, T0)
        await complete_message(done, now=T0)
        pending = await insert_message("chat", "y", now=T0)

        assert await prune_done_messages(T0 + timedelta(days=1)) == 1
        assert await get_message(done) is None
        assert await get_message(pending) is not None

    async def test_list_by_status(self):
        await insert_message("chat", "a", now=T0)
        b = await insert_message("chat", "b", now=T0)
        await claim_message(b, T0)
        running = await list_messages(status="running")
        assert [m.id for m in running] == [b]
        assert len(await list_messages()) == 2
