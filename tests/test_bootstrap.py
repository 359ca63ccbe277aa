"""Tests for the session-start conversation replay."""

from __future__ import annotations

import pytest

from baton.bootstrap import (
    fetch_context,
    fetch_unsummarized_context,
    format_messages,
    session_init_context,
    threshold_notice,
)
from baton.config import CheckpointConfig
from baton.state import create_checkpoint, get_message, insert_message

pytestmark = pytest.mark.usefixtures("db")


async def _messages(n: int, channel: str = "chat") -> list[int]:
    return [await insert_message(channel, f"msg{i}") for i in range(1, n + 1)]


class TestFormat:
    async def test_direction_and_endpoint(self):
        inbound = await get_message(await insert_message("slack", "hello", endpoint="C1"))
        outbound = await get_message(
            await insert_message("slack", "hi back", direction="out", status="done")
        )
        text = format_messages([inbound, outbound])
        assert f"[{inbound.created_at}] IN (slack:C1):\nhello\n" in text
        assert f"[{outbound.created_at}] OUT (slack):\nhi back\n" in text

    def test_empty(self):
        assert format_messages([]) == ""


class TestSessionInit:
    async def test_nothing_new(self):
        assert await session_init_context() == "No new conversations since last checkpoint."

    async def test_summary_always_included(self):
        ids = await _messages(2)
        await create_checkpoint(ids[0], "Synced first batch")
        text = await session_init_context()
        assert text.startswith("[Last Checkpoint Summary] Synced first batch\n")
        assert "msg2" in text
        assert "msg1\n" not in text

    async def test_under_threshold_replays_everything(self):
        await _messages(3)
        text = await session_init_context()
        assert "[Recent Conversations]" in text
        for i in (1, 2, 3):
            assert f"\nmsg{i}\n" in text
        assert "Action Required" not in text

    async def test_over_threshold_replays_recent_and_asks_for_sync(self, use_settings):
        use_settings(checkpoints=CheckpointConfig(threshold=4, recent_count=2))
        ids = await _messages(5)
        text = await session_init_context()
        assert "\nmsg5\n" in text
        assert "\nmsg4\n" in text
        assert "\nmsg3\n" not in text
        assert "There are 5 unsummarized conversations" in text
        assert text.endswith(f"/memory-sync --begin {ids[0]} --end {ids[-1]}")


class TestThresholdNotice:
    async def test_silent_at_threshold(self, use_settings):
        use_settings(checkpoints=CheckpointConfig(threshold=3))
        await _messages(3)
        assert await threshold_notice() is None

    async def test_notice_over_threshold(self, use_settings):
        use_settings(checkpoints=CheckpointConfig(threshold=3, sync_command="sync"))
        ids = await _messages(4)
        notice = await threshold_notice()
        assert notice.startswith("[Action Required] There are 4 unsummarized")
        assert notice.endswith(f"sync --begin {ids[0]} --end {ids[-1]}")


class TestFetch:
    async def test_range(self):
        ids = await _messages(4)
        await create_checkpoint(ids[1], "older")
        text = await fetch_context(ids[1], ids[2])
        assert text.splitlines()[0] == "[Last Checkpoint Summary] older"
        assert f"[Conversations] (id {ids[1]} ~ {ids[2]})" in text
        assert "\nmsg2\n" in text
        assert "\nmsg3\n" in text
        assert "msg4" not in text

    async def test_empty_range(self):
        text = await fetch_context(100, 200)
        assert text.endswith("No conversations in this range.")

    async def test_reversed_range_rejected(self):
        with pytest.raises(ValueError):
            await fetch_context(5, 2)

    async def test_unsummarized(self):
        ids = await _messages(3)
        await create_checkpoint(ids[0])
        text = await fetch_unsummarized_context()
        assert text.startswith(f"[Unsummarized Range] end_id={ids[-1]} count=2\n")
        assert "msg1" not in text

    async def test_unsummarized_empty(self):
        assert await fetch_unsummarized_context() == "No unsummarized conversations."
