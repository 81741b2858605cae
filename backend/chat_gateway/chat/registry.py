"""Room registry: which live connections are joined to which room.

The registry is a small publish/subscribe hub. A subscriber ("sink") is any
delivery channel that accepts events without blocking: a queue drained by a
WebSocket writer task, a list in a test, a callback. Keeping delivery
non-blocking means ``publish`` never suspends, so events for a room reach
every sink in exactly the order they were published.

Each sink is joined to at most one room; subscribing it to another room
moves it. Rooms with no sinks are removed from the keyspace.

Performance Notes:
    - publish() is O(n) in the room's sinks and never awaits
    - Sinks that refuse an event (full or closed) are unsubscribed and closed,
      and ``on_drop`` is told so the owner can clean up the connection
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

logger = logging.getLogger(__name__)

Event = Dict[str, Any]


class Sink(Protocol):
    """Transport-agnostic delivery channel for room events."""

    def deliver(self, event: Event) -> bool:
        """Accept an event without blocking; False if it cannot be accepted."""
        ...

    def close(self) -> None:
        ...


_CLOSE = object()


class QueueSink:
    """Bounded in-memory queue feeding one connection's writer task.

    A client that stops reading fills its queue; the next ``deliver`` then
    fails and the registry drops the connection rather than buffer forever.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, event: Event) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            return False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Pending events are discarded; the writer only needs to see _CLOSE
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSE)

    async def get(self) -> Optional[Event]:
        """Next event, or None once the sink has been closed."""
        item = await self._queue.get()
        if item is _CLOSE:
            return None
        return item

    async def drain(self, send: Callable[[Event], Awaitable[None]]) -> None:
        """Forward events to ``send`` until the sink is closed."""
        while True:
            event = await self.get()
            if event is None:
                return
            await send(event)


class RoomRegistry:
    """Maps room ids to the sinks of connections currently joined there."""

    def __init__(self, on_drop: Optional[Callable[[str, Sink], None]] = None) -> None:
        # Called with (room_id, sink) after a refusing sink has been dropped
        self.on_drop = on_drop
        # room_id -> set of sinks
        self._rooms: Dict[str, Set[Sink]] = {}
        # sink -> room_id for leave handling
        self._sink_rooms: Dict[Sink, str] = {}

    def subscribe(self, room_id: str, sink: Sink) -> Optional[str]:
        """Join ``sink`` to ``room_id``, leaving any room it was in before.

        Returns:
            The room the sink was moved out of, or None.
        """
        previous = self._sink_rooms.get(sink)
        if previous == room_id:
            return None
        if previous is not None:
            self._discard(previous, sink)

        self._rooms.setdefault(room_id, set()).add(sink)
        self._sink_rooms[sink] = room_id
        return previous

    def unsubscribe(self, sink: Sink) -> Optional[str]:
        """Remove ``sink`` from its room. Idempotent.

        Returns:
            The room the sink left, or None if it was not joined anywhere.
        """
        room_id = self._sink_rooms.pop(sink, None)
        if room_id is not None:
            self._discard(room_id, sink)
        return room_id

    def publish(self, room_id: str, event: Event, exclude: Optional[Sink] = None) -> int:
        """Deliver ``event`` to every sink in the room (optionally minus one).

        The sender is not excluded unless asked; chat messages are echoed
        back to their author.

        Returns:
            Number of sinks that accepted the event.
        """
        sinks = self._rooms.get(room_id)
        if not sinks:
            return 0

        delivered = 0
        failed: List[Sink] = []
        for sink in list(sinks):
            if sink is exclude:
                continue
            if sink.deliver(event):
                delivered += 1
            else:
                failed.append(sink)

        for sink in failed:
            self.unsubscribe(sink)
            sink.close()
            logger.warning(f"[Registry] Dropped unresponsive connection from room {room_id}")
            if self.on_drop is not None:
                self.on_drop(room_id, sink)

        return delivered

    def room_of(self, sink: Sink) -> Optional[str]:
        return self._sink_rooms.get(sink)

    def get_room_size(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, ()))

    def room_ids(self) -> List[str]:
        return list(self._rooms)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def _discard(self, room_id: str, sink: Sink) -> None:
        sinks = self._rooms.get(room_id)
        if sinks is None:
            return
        sinks.discard(sink)
        if not sinks:
            del self._rooms[room_id]
