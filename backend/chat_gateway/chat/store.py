"""In-memory message store for chapter chat rooms.

Each room owns an append-only log kept in timestamp order (ties keep their
insertion order). Mutations of one room are serialised by a per-room lock;
different rooms never contend. A background sweep (see ``sweeper.py``)
evicts messages older than the retention window and drops rooms whose log
becomes empty, so a quiet room leaves no footprint.

Pagination is cursor-based on ``timestamp``: ``before`` strictly excludes
messages at or after the cursor, so appends that land while a client pages
backwards never shift or duplicate already-returned messages.
"""
import bisect
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from chat_gateway.errors import ConflictError

from .locks import KeyedLock
from .schemas import ChatMessage, HistoryPage

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(ts: datetime) -> datetime:
    # Naive timestamps from clients are taken to be UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _by_timestamp(message: ChatMessage) -> datetime:
    return message.timestamp


class _RoomLog:
    __slots__ = ("messages", "by_id")

    def __init__(self) -> None:
        self.messages: List[ChatMessage] = []
        self.by_id: Dict[str, ChatMessage] = {}


class MessageStore:
    """Per-room message logs held in process memory.

    Args:
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._rooms: Dict[str, _RoomLog] = {}
        self._locks = KeyedLock()

    # =========================================================================
    # Writes
    # =========================================================================

    async def append(self, room_id: str, message: ChatMessage) -> ChatMessage:
        """Store a message and return the canonical record.

        Assigns ``timestamp`` and ``id`` when absent. Server-assigned
        timestamps never go backwards within a room, even if the clock does.
        If the room already has a message with the same ``id`` from the same
        sender, the existing record is returned and nothing is stored, which
        makes client retries idempotent.

        Raises:
            ConflictError: The ``id`` is taken by another sender's message.
        """
        async with self._locks.hold(room_id):
            log = self._rooms.get(room_id)
            if log is not None and message.id and message.id in log.by_id:
                existing = log.by_id[message.id]
                if existing.senderId != message.senderId:
                    logger.warning(
                        f"[Store] Message id {message.id} in room {room_id} already used by "
                        f"user {existing.senderId}; rejecting write from user {message.senderId}"
                    )
                    raise ConflictError()
                logger.debug(f"[Store] Duplicate message {message.id} in room {room_id}")
                return existing

            if message.timestamp:
                timestamp = _as_utc(message.timestamp)
            else:
                timestamp = self._clock()
                if log is not None and log.messages and log.messages[-1].timestamp > timestamp:
                    timestamp = log.messages[-1].timestamp

            stored = message.model_copy(update={
                "roomId": room_id,
                "id": message.id or str(uuid.uuid4()),
                "timestamp": timestamp,
            })

            if log is None:
                log = _RoomLog()
                self._rooms[room_id] = log
            bisect.insort_right(log.messages, stored, key=_by_timestamp)
            log.by_id[stored.id] = stored
            return stored

    async def delete(self, room_id: str, message_id: str) -> Optional[ChatMessage]:
        """Remove one message; returns it, or None if it was not stored."""
        async with self._locks.hold(room_id):
            log = self._rooms.get(room_id)
            if log is None or message_id not in log.by_id:
                return None
            removed = log.by_id.pop(message_id)
            log.messages = [m for m in log.messages if m.id != message_id]
            if not log.messages:
                del self._rooms[room_id]
            return removed

    async def evict_expired(
        self, retention: timedelta, now: Optional[datetime] = None
    ) -> int:
        """Drop every message older than ``retention``, across all rooms.

        Rooms are visited one at a time under their own lock. Rooms left
        empty are removed from the keyspace.

        Returns:
            Number of messages evicted.
        """
        now = _as_utc(now) if now else self._clock()
        cutoff = now - retention
        evicted = 0

        for room_id in list(self._rooms):
            async with self._locks.hold(room_id):
                log = self._rooms.get(room_id)
                if log is None:
                    continue
                # Everything before the cutoff is older than the window
                split = bisect.bisect_left(log.messages, cutoff, key=_by_timestamp)
                if not split:
                    continue
                for expired in log.messages[:split]:
                    log.by_id.pop(expired.id, None)
                log.messages = log.messages[split:]
                evicted += split
                if not log.messages:
                    del self._rooms[room_id]

        logger.info(
            f"[Store] Evicted {evicted} expired messages. Active rooms: {len(self._rooms)}"
        )
        return evicted

    # =========================================================================
    # Reads
    # =========================================================================

    def get_recent(self, room_id: str, limit: int) -> List[ChatMessage]:
        """Return the most recent ``limit`` messages, oldest first."""
        return self.get_page(room_id, limit).messages

    def get_page(
        self,
        room_id: str,
        limit: int,
        before: Optional[datetime] = None,
    ) -> HistoryPage:
        """Return up to ``limit`` messages older than ``before``, oldest first.

        Args:
            room_id: The room ID. Unknown rooms yield an empty page.
            limit: Maximum number of messages to return (at least 1).
            before: Cursor; messages at or after this time are excluded.
                If None, the newest messages are returned.

        Returns:
            HistoryPage with ``nextCursor`` set to the oldest returned
            timestamp when older messages remain.
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")

        log = self._rooms.get(room_id)
        if log is None:
            return HistoryPage()

        messages = log.messages
        end = len(messages)
        if before is not None:
            end = bisect.bisect_left(messages, _as_utc(before), key=_by_timestamp)

        start = max(0, end - limit)
        page = messages[start:end]
        has_more = start > 0
        return HistoryPage(
            messages=list(page),
            nextCursor=page[0].timestamp if has_more and page else None,
            hasMore=has_more,
        )

    def get_message(self, room_id: str, message_id: str) -> Optional[ChatMessage]:
        log = self._rooms.get(room_id)
        if log is None:
            return None
        return log.by_id.get(message_id)

    def get_message_count(self, room_id: str) -> int:
        log = self._rooms.get(room_id)
        return len(log.messages) if log else 0

    def room_ids(self) -> List[str]:
        return list(self._rooms)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms
