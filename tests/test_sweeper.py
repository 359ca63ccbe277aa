"""Tests for the background sweep."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from baton.config import ControlConfig
from baton.state import (
    ack_control,
    claim_message,
    complete_message,
    enqueue_control,
    get_control,
    get_message,
    insert_message,
)
from baton.sweeper import Sweeper

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

pytestmark = pytest.mark.usefixtures("db")


async def test_expires_overdue_controls():
    record = await enqueue_control("probe", ack_deadline_seconds=60, now=T0)
    counts = await Sweeper().sweep(T0 + timedelta(seconds=61))
    assert counts["timed_out"] == 1
    assert (await get_control(record.id)).status == "timeout"


async def test_fails_stale_messages():
    mid = await insert_message("chat", "x", now=T0)
    await claim_message(mid, T0)
    counts = await Sweeper().sweep(T0 + timedelta(hours=2))
    assert counts["stale_failed"] == 1
    assert (await get_message(mid)).status == "failed"


async def test_retention_runs_hourly():
    sweeper = Sweeper()
    old = await enqueue_control("old", now=T0)
    await ack_control(old.id, T0)

    counts = await sweeper.sweep(T0 + timedelta(days=8))
    assert counts["controls_deleted"] == 1

    newer = await enqueue_control("newer", now=T0)
    await ack_control(newer.id, T0)
    counts = await sweeper.sweep(T0 + timedelta(days=8, minutes=5))
    assert counts["controls_deleted"] == 0  # within the hour
    counts = await sweeper.sweep(T0 + timedelta(days=8, hours=2))
    assert counts["controls_deleted"] == 1


async def test_done_messages_kept_by_default():
    mid = await insert_message("chat", "x", now=T0)
    await claim_message(mid, T0)
    await complete_message(mid, now=T0)
    counts = await Sweeper().sweep(T0 + timedelta(days=365))
    assert counts["messages_pruned"] == 0
    assert await get_message(mid) is not None


async def test_done_messages_pruned_when_configured(use_settings):
    use_settings(control=ControlConfig(message_retention_days=30))
    mid = await insert_message("chat", "x", now=T0)
    await claim_message(mid, T0)
    await complete_message(mid, now=T0)
    counts = await Sweeper().sweep(T0 + timedelta(days=31))
    assert counts["messages_pruned"] == 1
