"""Tests for summarization checkpoints."""

from __future__ import annotations

import asyncio

import pytest

from baton.state import (
    create_checkpoint,
    get_messages_in_range,
    get_recent_unsummarized_messages,
    get_unsummarized_messages,
    get_unsummarized_range,
    insert_message,
    latest_checkpoint,
    list_checkpoints,
)

pytestmark = pytest.mark.usefixtures("db")


async def _messages(n: int) -> list[int]:
    return [await insert_message("chat", f"m{i}") for i in range(n)]


class TestCreate:
    async def test_first_checkpoint_starts_at_one(self):
        cp = await create_checkpoint(5, "first five")
        assert cp.start_conversation_id == 1
        assert cp.end_conversation_id == 5
        assert cp.to_dict()["summary"] == "first five"

    async def test_ranges_are_contiguous(self):
        await create_checkpoint(5)
        second = await create_checkpoint(9)
        assert second.start_conversation_id == 6
        assert second.end_conversation_id == 9

    async def test_end_before_start_rejected(self):
        await create_checkpoint(5)
        with pytest.raises(ValueError, match="before the next checkpoint start 6"):
            await create_checkpoint(5)

    async def test_single_message_checkpoint(self):
        await create_checkpoint(3)
        cp = await create_checkpoint(4)
        assert (cp.start_conversation_id, cp.end_conversation_id) == (4, 4)

    async def test_concurrent_creates_never_overlap(self):
        results = await asyncio.gather(
            create_checkpoint(10), create_checkpoint(20), return_exceptions=True
        )
        created = [r for r in results if not isinstance(r, Exception)]
        ranges = sorted((c.start_conversation_id, c.end_conversation_id) for c in created)
        for (_, prev_end), (start, _) in zip(ranges, ranges[1:], strict=False):
            assert start == prev_end + 1


class TestQueries:
    async def test_latest_and_list(self):
        assert await latest_checkpoint() is None
        await create_checkpoint(2)
        await create_checkpoint(4)
        await create_checkpoint(6)
        assert (await latest_checkpoint()).end_conversation_id == 6
        listed = await list_checkpoints()
        assert [c.end_conversation_id for c in listed] == [6, 4, 2]
        assert len(await list_checkpoints(limit=2)) == 2

    async def test_list_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            await list_checkpoints(limit=0)

    async def test_to_dict_keys(self):
        cp = await create_checkpoint(1)
        assert set(cp.to_dict()) == {"id", "start_id", "end_id", "summary", "timestamp"}


class TestUnsummarized:
    async def test_range_without_checkpoints(self):
        ids = await _messages(3)
        rng = await get_unsummarized_range()
        assert (rng.begin_id, rng.end_id, rng.count) == (ids[0], ids[-1], 3)

    async def test_range_after_checkpoint(self):
        ids = await _messages(5)
        await create_checkpoint(ids[2])
        rng = await get_unsummarized_range()
        assert (rng.begin_id, rng.end_id, rng.count) == (ids[3], ids[4], 2)
        messages = await get_unsummarized_messages()
        assert [m.id for m in messages] == ids[3:]

    async def test_empty_range(self):
        ids = await _messages(2)
        await create_checkpoint(ids[-1])
        rng = await get_unsummarized_range()
        assert rng.count == 0
        assert rng.begin_id is None
        assert await get_unsummarized_messages(limit=10) == []

    async def test_recent_messages_are_the_newest(self):
        ids = await _messages(6)
        await create_checkpoint(ids[0])
        recent = await get_recent_unsummarized_messages(2)
        assert [m.id for m in recent] == ids[4:]

    async def test_recent_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            await get_recent_unsummarized_messages(0)

    async def test_range_fetch_is_inclusive(self):
        ids = await _messages(5)
        messages = await get_messages_in_range(ids[1], ids[3])
        assert [m.id for m in messages] == ids[1:4]
