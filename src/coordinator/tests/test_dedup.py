"""Tests for the dedup cache."""

from __future__ import annotations

import pytest

from src.coordinator.base import Direction
from src.coordinator.dedup import (
    DedupCache,
    dedup_key,
    group_by_direction,
    payload_content_hash,
)
from src.coordinator.store import InMemoryStore
from src.coordinator.tests.conftest import (
    OTHER_SCOPE,
    TEST_SCOPE,
    FakeClock,
    make_message,
    make_messages,
)


class TestDedupKey:
    def test_key_layout(self) -> None:
        assert dedup_key("dev-1", Direction.INBOUND, "ABC") == "dedup:dev-1:in:ABC"
        assert dedup_key("dev-1", Direction.OUTBOUND, "ABC") == "dedup:dev-1:out:ABC"

    def test_content_hash_ignores_key_order(self) -> None:
        assert payload_content_hash({"a": 1, "b": 2}) == payload_content_hash({"b": 2, "a": 1})
        assert payload_content_hash({"a": 1}) != payload_content_hash({"a": 2})


class TestFilterUnseen:
    @pytest.mark.asyncio
    async def test_nothing_seen_returns_everything(self, dedup: DedupCache) -> None:
        batch = make_messages(3)
        assert await dedup.filter_unseen(TEST_SCOPE, Direction.INBOUND, batch) == batch

    @pytest.mark.asyncio
    async def test_seen_messages_are_excluded(self, dedup: DedupCache) -> None:
        batch = make_messages(4)
        await dedup.mark_seen(TEST_SCOPE, Direction.INBOUND, batch[:2])
        unseen = await dedup.filter_unseen(TEST_SCOPE, Direction.INBOUND, batch)
        assert [m.message_id for m in unseen] == ["msg-3", "msg-4"]

    @pytest.mark.asyncio
    async def test_mark_seen_twice_is_noop(self, dedup: DedupCache, store: InMemoryStore) -> None:
        batch = make_messages(2)
        await dedup.mark_seen(TEST_SCOPE, Direction.INBOUND, batch)
        await dedup.mark_seen(TEST_SCOPE, Direction.INBOUND, batch)
        assert len(store) == 2
        assert await dedup.filter_unseen(TEST_SCOPE, Direction.INBOUND, batch) == []

    @pytest.mark.asyncio
    async def test_direction_is_part_of_identity(self, dedup: DedupCache) -> None:
        inbound = make_message(1, direction=Direction.INBOUND, message_id="X")
        outbound = make_message(2, direction=Direction.OUTBOUND, message_id="X")
        await dedup.mark_seen(TEST_SCOPE, Direction.INBOUND, [inbound])
        assert await dedup.filter_unseen(TEST_SCOPE, Direction.OUTBOUND, [outbound]) == [outbound]

    @pytest.mark.asyncio
    async def test_scope_is_part_of_identity(self, dedup: DedupCache) -> None:
        message = make_message(1)
        await dedup.mark_seen(TEST_SCOPE, Direction.INBOUND, [message])
        other = make_message(1, scope=OTHER_SCOPE)
        assert await dedup.filter_unseen(OTHER_SCOPE, Direction.INBOUND, [other]) == [other]

    @pytest.mark.asyncio
    async def test_in_batch_duplicates_collapse(self, dedup: DedupCache) -> None:
        first = make_message(1, message_id="dup")
        again = make_message(2, message_id="dup")
        unseen = await dedup.filter_unseen(TEST_SCOPE, Direction.INBOUND, [first, again])
        assert unseen == [first]

    @pytest.mark.asyncio
    async def test_entries_expire_after_ttl(self, store: InMemoryStore, clock: FakeClock) -> None:
        cache = DedupCache(store, ttl_seconds=60)
        message = make_message(1)
        await cache.mark_seen(TEST_SCOPE, Direction.INBOUND, [message])
        assert await cache.is_seen(TEST_SCOPE, Direction.INBOUND, message.message_id)

        clock.advance(61)
        assert not await cache.is_seen(TEST_SCOPE, Direction.INBOUND, message.message_id)


class TestMixedBatches:
    @pytest.mark.asyncio
    async def test_filter_batch_keeps_fetch_order(self, dedup: DedupCache) -> None:
        batch = [
            make_message(1, direction=Direction.INBOUND),
            make_message(2, direction=Direction.OUTBOUND),
            make_message(3, direction=Direction.INBOUND),
            make_message(4, direction=Direction.OUTBOUND),
        ]
        await dedup.mark_seen(TEST_SCOPE, Direction.OUTBOUND, [batch[1]])
        unseen = await dedup.filter_batch(TEST_SCOPE, batch)
        assert [m.message_id for m in unseen] == ["msg-1", "msg-3", "msg-4"]

    @pytest.mark.asyncio
    async def test_mark_batch_seen_covers_both_directions(self, dedup: DedupCache) -> None:
        batch = [
            make_message(1, direction=Direction.INBOUND),
            make_message(2, direction=Direction.OUTBOUND),
        ]
        await dedup.mark_batch_seen(TEST_SCOPE, batch)
        assert await dedup.filter_batch(TEST_SCOPE, batch) == []

    def test_group_by_direction(self) -> None:
        batch = [
            make_message(1, direction=Direction.OUTBOUND),
            make_message(2, direction=Direction.INBOUND),
            make_message(3, direction=Direction.OUTBOUND),
        ]
        groups = group_by_direction(batch)
        assert list(groups) == [Direction.OUTBOUND, Direction.INBOUND]
        assert [m.message_id for m in groups[Direction.OUTBOUND]] == ["msg-1", "msg-3"]
