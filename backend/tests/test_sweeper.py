"""Tests for the background retention sweep."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from chat_gateway.chat.schemas import ChatMessage
from chat_gateway.chat.store import MessageStore
from chat_gateway.chat.sweeper import RetentionSweeper


def _msg(content, room_id="3"):
    return ChatMessage(roomId=room_id, senderId="42", content=content)


class TestRetentionSweeper:
    @pytest.mark.asyncio
    async def test_run_once_uses_injected_clock(self, clock):
        store = MessageStore(clock=clock)
        await store.append("3", _msg("old"))
        sweeper = RetentionSweeper(
            store, retention=timedelta(days=2), interval=timedelta(hours=1), clock=clock
        )

        assert await sweeper.run_once() == 0
        clock.advance(days=3)
        assert await sweeper.run_once() == 1
        assert "3" not in store

    @pytest.mark.asyncio
    async def test_background_loop_sweeps_each_interval(self, clock):
        store = MessageStore(clock=clock)
        await store.append("3", _msg("old"))
        clock.advance(days=3)

        sleeps = []
        ticked = asyncio.Event()

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) > 1:
                ticked.set()
            await asyncio.sleep(0)

        sweeper = RetentionSweeper(
            store,
            retention=timedelta(days=2),
            interval=timedelta(hours=1),
            clock=clock,
            sleep=fake_sleep,
        )
        sweeper.start()
        await asyncio.wait_for(ticked.wait(), timeout=1)
        await sweeper.stop()

        assert sleeps[0] == 3600
        assert "3" not in store
        assert not sweeper.running

    @pytest.mark.asyncio
    async def test_failed_sweep_keeps_loop_alive(self, clock):
        store = MessageStore(clock=clock)
        store.evict_expired = AsyncMock(side_effect=RuntimeError("boom"))

        async def fake_sleep(seconds):
            await asyncio.sleep(0)

        sweeper = RetentionSweeper(
            store, timedelta(days=2), timedelta(hours=1), clock=clock, sleep=fake_sleep
        )
        sweeper.start()
        for _ in range(50):
            if store.evict_expired.await_count >= 2:
                break
            await asyncio.sleep(0)
        assert sweeper.running
        await sweeper.stop()
        assert store.evict_expired.await_count >= 2

    def test_rejects_non_positive_intervals(self):
        with pytest.raises(ValueError):
            RetentionSweeper(MessageStore(), timedelta(0), timedelta(hours=1))
        with pytest.raises(ValueError):
            RetentionSweeper(MessageStore(), timedelta(days=2), timedelta(seconds=-1))

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        sweeper = RetentionSweeper(MessageStore(), timedelta(days=2), timedelta(hours=1))
        await sweeper.stop()
        assert not sweeper.running
