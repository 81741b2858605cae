"""Tests for the in-memory message store: ordering, pagination, eviction."""
from datetime import datetime, timedelta, timezone

import pytest

from chat_gateway.chat.schemas import ChatMessage
from chat_gateway.chat.store import MessageStore
from chat_gateway.errors import ConflictError


def _msg(content: str, room_id: str = "7", **kwargs) -> ChatMessage:
    return ChatMessage(roomId=room_id, senderId="42", content=content, **kwargs)


class TestAppend:
    @pytest.mark.asyncio
    async def test_assigns_id_and_timestamp(self, clock):
        store = MessageStore(clock=clock)
        stored = await store.append("7", _msg("hi"))
        assert stored.id
        assert stored.timestamp == clock.now
        assert stored.roomId == "7"

    @pytest.mark.asyncio
    async def test_keeps_client_supplied_id(self, clock):
        store = MessageStore(clock=clock)
        stored = await store.append("7", _msg("hi", id="client-1"))
        assert stored.id == "client-1"

    @pytest.mark.asyncio
    async def test_duplicate_id_returns_existing_record(self, clock):
        store = MessageStore(clock=clock)
        first = await store.append("7", _msg("hi", id="client-1"))
        clock.advance(seconds=5)
        again = await store.append("7", _msg("hi again", id="client-1"))
        assert again == first
        assert store.get_message_count("7") == 1

    @pytest.mark.asyncio
    async def test_id_taken_by_another_sender_is_a_conflict(self, clock):
        store = MessageStore(clock=clock)
        await store.append("7", _msg("from 42", id="x1"))
        with pytest.raises(ConflictError):
            await store.append("7", ChatMessage(roomId="7", senderId="43", content="from 43", id="x1"))
        [kept] = store.get_recent("7", 10)
        assert kept.senderId == "42"
        assert kept.content == "from 42"

    @pytest.mark.asyncio
    async def test_same_id_in_different_rooms_is_not_a_duplicate(self, clock):
        store = MessageStore(clock=clock)
        await store.append("7", _msg("a", id="x"))
        await store.append("8", _msg("b", room_id="8", id="x"))
        assert store.get_message_count("7") == 1
        assert store.get_message_count("8") == 1

    @pytest.mark.asyncio
    async def test_room_id_argument_wins(self, clock):
        store = MessageStore(clock=clock)
        stored = await store.append("8", _msg("hi", room_id="7"))
        assert stored.roomId == "8"


class TestOrdering:
    @pytest.mark.asyncio
    async def test_history_in_append_order(self, clock):
        store = MessageStore(clock=clock)
        for i in range(5):
            await store.append("7", _msg(f"m{i}"))
            clock.advance(seconds=1)
        assert [m.content for m in store.get_recent("7", 10)] == ["m0", "m1", "m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_equal_timestamps_keep_insertion_order(self, clock):
        store = MessageStore(clock=clock)
        for i in range(3):
            await store.append("7", _msg(f"m{i}"))
        assert [m.content for m in store.get_recent("7", 10)] == ["m0", "m1", "m2"]

    @pytest.mark.asyncio
    async def test_clock_stepping_back_keeps_append_order(self, clock):
        store = MessageStore(clock=clock)
        first = await store.append("7", _msg("first"))
        clock.advance(minutes=-5)
        second = await store.append("7", _msg("second"))
        assert second.timestamp == first.timestamp
        assert [m.content for m in store.get_recent("7", 10)] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_preset_timestamp_is_inserted_in_order(self, clock):
        store = MessageStore(clock=clock)
        await store.append("7", _msg("now"))
        await store.append("7", _msg("earlier", timestamp=clock.now - timedelta(minutes=5)))
        assert [m.content for m in store.get_recent("7", 10)] == ["earlier", "now"]

    @pytest.mark.asyncio
    async def test_naive_timestamp_treated_as_utc(self, clock):
        store = MessageStore(clock=clock)
        stored = await store.append("7", _msg("x", timestamp=datetime(2026, 1, 1, 0, 0)))
        assert stored.timestamp.tzinfo is not None
        assert stored.timestamp == datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestPagination:
    @pytest.mark.asyncio
    async def test_page_example(self, clock):
        """Three messages T1<T2<T3: newest page of 2 then the older page."""
        store = MessageStore(clock=clock)
        stamps = []
        for name in ("T1", "T2", "T3"):
            stamps.append((await store.append("7", _msg(name))).timestamp)
            clock.advance(seconds=1)

        page = store.get_page("7", limit=2)
        assert [m.content for m in page.messages] == ["T2", "T3"]
        assert page.nextCursor == stamps[1]
        assert page.hasMore is True

        older = store.get_page("7", limit=2, before=page.nextCursor)
        assert [m.content for m in older.messages] == ["T1"]
        assert older.hasMore is False
        assert older.nextCursor is None

    def test_unknown_room_is_empty(self):
        store = MessageStore()
        page = store.get_page("nope", limit=10)
        assert page.messages == []
        assert page.hasMore is False
        assert store.get_recent("nope", 10) == []

    @pytest.mark.asyncio
    async def test_cursor_excludes_messages_at_cursor(self, clock):
        store = MessageStore(clock=clock)
        first = await store.append("7", _msg("a"))
        await store.append("7", _msg("b"))
        page = store.get_page("7", limit=10, before=first.timestamp)
        assert page.messages == []

    @pytest.mark.asyncio
    async def test_appends_during_paging_do_not_shift_pages(self, clock):
        store = MessageStore(clock=clock)
        for i in range(6):
            await store.append("7", _msg(f"m{i}"))
            clock.advance(seconds=1)

        first = store.get_page("7", limit=2)
        assert [m.content for m in first.messages] == ["m4", "m5"]

        # New messages arrive between page fetches
        for i in range(6, 9):
            await store.append("7", _msg(f"m{i}"))
            clock.advance(seconds=1)

        second = store.get_page("7", limit=2, before=first.nextCursor)
        third = store.get_page("7", limit=2, before=second.nextCursor)
        assert [m.content for m in second.messages] == ["m2", "m3"]
        assert [m.content for m in third.messages] == ["m0", "m1"]
        assert third.hasMore is False

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            MessageStore().get_page("7", limit=0)


class TestEviction:
    @pytest.mark.asyncio
    async def test_old_room_is_dropped(self, clock):
        store = MessageStore(clock=clock)
        await store.append("3", _msg("old", room_id="3"))
        clock.advance(days=3)

        evicted = await store.evict_expired(timedelta(days=2))

        assert evicted == 1
        assert store.get_recent("3", 10) == []
        assert "3" not in store
        assert store.room_ids() == []

    @pytest.mark.asyncio
    async def test_messages_inside_window_untouched(self, clock):
        store = MessageStore(clock=clock)
        await store.append("7", _msg("old"))
        clock.advance(days=1, hours=12)
        await store.append("7", _msg("mid"))
        clock.advance(days=1)
        await store.append("7", _msg("new"))

        await store.evict_expired(timedelta(days=2))

        assert [m.content for m in store.get_recent("7", 10)] == ["mid", "new"]

    @pytest.mark.asyncio
    async def test_evicted_ids_can_be_reused(self, clock):
        store = MessageStore(clock=clock)
        await store.append("7", _msg("old", id="dup"))
        await store.append("7", _msg("keep"))
        clock.advance(days=3)
        await store.append("7", _msg("fresh"))
        await store.evict_expired(timedelta(days=2))

        assert store.get_message("7", "dup") is None
        reused = await store.append("7", _msg("again", id="dup"))
        assert reused.content == "again"

    @pytest.mark.asyncio
    async def test_explicit_now(self, clock):
        store = MessageStore(clock=clock)
        await store.append("7", _msg("x"))
        evicted = await store.evict_expired(timedelta(hours=1), now=clock.now + timedelta(hours=2))
        assert evicted == 1


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_message(self, clock):
        store = MessageStore(clock=clock)
        a = await store.append("7", _msg("a"))
        await store.append("7", _msg("b"))
        removed = await store.delete("7", a.id)
        assert removed.id == a.id
        assert [m.content for m in store.get_recent("7", 10)] == ["b"]

    @pytest.mark.asyncio
    async def test_delete_last_message_drops_room(self, clock):
        store = MessageStore(clock=clock)
        a = await store.append("7", _msg("a"))
        await store.delete("7", a.id)
        assert "7" not in store

    @pytest.mark.asyncio
    async def test_delete_unknown_returns_none(self):
        store = MessageStore()
        assert await store.delete("7", "missing") is None
