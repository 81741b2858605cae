"""Per-key asyncio locks.

Mutations of a room's log or connection set are serialised per room, never
globally: two rooms never wait on each other. A key's lock exists only while
someone holds or awaits it, so idle rooms leave nothing behind.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List


class KeyedLock:
    """A family of asyncio locks addressed by key (here: room id)."""

    def __init__(self) -> None:
        # key -> [lock, number of holders + waiters]
        self._entries: Dict[str, List] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = [asyncio.Lock(), 0]
            self._entries[key] = entry
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
