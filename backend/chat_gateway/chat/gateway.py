"""Gateway protocol handler for chapter chat.

This module owns the per-connection state machine and bridges the room
registry and the message store:

    Connected --joinRoom(ok)--> Joined(room) --joinRoom(ok)--> Joined(room')
        ^                          |    |
        +------ leaveRoom ---------+    +-- disconnect --> Disconnected

A rejected join never changes state: the connection stays in the room it
had (or stays unjoined). A send is only accepted from a joined connection
whose ``roomId``/``senderId`` match the identity authorized at join time.

SECURITY MODEL:
    - Membership comes from the membership oracle and is fail-closed: an
      oracle error or timeout denies the join exactly like "not a member".
    - Validation and authorization happen before any store or registry
      mutation, so a rejected event leaves no partial state behind.

Ordering:
    Appending a message and publishing it happen under the room's lock with
    no suspension in between, so every member sees a room's messages in
    store order. Acks are delivered through the connection's own sink, ahead
    of the broadcast they relate to.

Protocol Message Types (client -> server):
    - joinRoom {roomId, userId}
    - leaveRoom
    - sendMessage {id?, roomId, senderId, senderName, senderAvatarUrl?, content}
    - typing / stopTyping
Every client event may carry a ``requestId`` that the ack echoes back.
"""
import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from chat_gateway.config import ChatSettings
from chat_gateway.errors import (
    AuthorizationError,
    ChatGatewayError,
    ConflictError,
    InternalError,
    NotFoundError,
    TransientUpstreamError,
    ValidationError,
)
from chat_gateway.membership.oracle import MembershipOracle
from chat_gateway.users.directory import UserDirectory

from .locks import KeyedLock
from .registry import RoomRegistry, Sink
from .schemas import (
    Ack,
    ChatMessage,
    HistoryPage,
    JoinRoomRequest,
    SendMessagePayload,
    message_deleted_event,
    new_message_event,
    presence_event,
    typing_event,
)
from .store import MessageStore

logger = logging.getLogger(__name__)

NOT_JOINED = "unauthorized or not joined"


class ConnectionState(str, Enum):
    """Lifecycle state of one persistent connection."""
    CONNECTED = "connected"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


class ConnectionSession:
    """State of one live connection.

    Attributes:
        id: Server-side connection id (for logs).
        sink: Delivery channel for events addressed to this connection.
        state: Current lifecycle state.
        user_id: Identity authorized by the last successful join.
        room_id: Room joined by the last successful join.
        dropped: True once the server gave up on delivering to this
            connection (its queue overflowed); the transport should close.
    """

    def __init__(self, sink: Sink) -> None:
        self.id = str(uuid.uuid4())
        self.sink = sink
        self.state = ConnectionState.CONNECTED
        self.user_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.dropped = False

    @property
    def joined(self) -> bool:
        return self.state == ConnectionState.JOINED

    def reply(self, ack: Ack) -> Ack:
        if self.state != ConnectionState.DISCONNECTED and not self.sink.deliver(ack.to_wire()):
            self.dropped = True
            self.sink.close()
        return ack


class ChatGateway:
    """Handles join/send/leave/disconnect events and the HTTP fallback.

    Args:
        store: Message store shared by all connections.
        registry: Room registry shared by all connections.
        oracle: Membership oracle client.
        settings: Chat limits and switches.
        recheck_on_send: Ask the oracle again on every persistent-channel send.
        directory: User directory for sender names and avatars. Without
            one, the names clients send are used as-is.
    """

    def __init__(
        self,
        store: MessageStore,
        registry: RoomRegistry,
        oracle: MembershipOracle,
        settings: Optional[ChatSettings] = None,
        recheck_on_send: bool = False,
        directory: Optional[UserDirectory] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.oracle = oracle
        self.directory = directory
        self.settings = settings or ChatSettings()
        self.recheck_on_send = recheck_on_send
        self._room_locks = KeyedLock()
        # sink -> session, for connections the registry drops
        self._sessions: Dict[Sink, ConnectionSession] = {}
        self.registry.on_drop = self._on_sink_dropped

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def connect(self, sink: Sink) -> ConnectionSession:
        session = ConnectionSession(sink)
        self._sessions[sink] = session
        logger.info(f"[WS] Connection {session.id} established")
        return session

    async def disconnect(self, session: ConnectionSession) -> None:
        """Forget a connection. Safe to call more than once."""
        self._sessions.pop(session.sink, None)
        if session.state == ConnectionState.DISCONNECTED:
            return
        session.state = ConnectionState.DISCONNECTED
        await self._unsubscribe(session)
        session.sink.close()
        logger.info(f"[WS] Connection {session.id} disconnected")

    async def handle_event(self, session: ConnectionSession, data: Any) -> Optional[Ack]:
        """Dispatch one client event by its ``type``."""
        if not isinstance(data, dict):
            return session.reply(Ack(event="unknown", ok=False, error="Invalid message format"))

        event_type = data.get("type")
        request_id = data.get("requestId")
        if request_id is not None:
            request_id = str(request_id)

        if event_type == "joinRoom":
            return await self._parse_and_run(session, data, "joinRoom", JoinRoomRequest, self.join_room)
        if event_type == "sendMessage":
            return await self._parse_and_run(session, data, "sendMessage", SendMessagePayload, self.send_message)
        if event_type == "leaveRoom":
            return await self.leave_room(session, request_id=request_id)
        if event_type in ("typing", "stopTyping"):
            self.typing(session, event_type)
            return None

        logger.debug(f"[WS] Connection {session.id} sent unknown event type {event_type!r}")
        return session.reply(Ack(
            event=str(event_type or "unknown"),
            ok=False,
            error="unknown event type",
            requestId=request_id,
        ))

    async def _parse_and_run(self, session, data, event, model, handler) -> Ack:
        try:
            payload = model.model_validate(data)
        except PydanticValidationError:
            return session.reply(Ack(
                event=event,
                ok=False,
                error="Invalid message format",
                requestId=str(data["requestId"]) if data.get("requestId") is not None else None,
            ))
        return await handler(session, payload)

    # =========================================================================
    # joinRoom / leaveRoom
    # =========================================================================

    async def join_room(self, session: ConnectionSession, request: JoinRoomRequest) -> Ack:
        """Join a room after checking membership with the oracle.

        On any failure the session keeps its previous state.
        """
        def reject(error: str) -> Ack:
            return session.reply(Ack(event="joinRoom", ok=False, error=error, requestId=request.requestId))

        if not request.roomId or not request.userId:
            return reject("roomId and userId required")

        room_id, user_id = request.roomId, request.userId
        try:
            await self.oracle.authorize(user_id, room_id)
        except (AuthorizationError, TransientUpstreamError) as exc:
            logger.info(f"[WS] Join rejected: user {user_id} -> room {room_id}: {exc.message}")
            return reject(exc.message)
        except Exception:  # pylint: disable=broad-except
            logger.exception(f"[WS] Join failed for user {user_id} -> room {room_id}")
            return reject("internal join error")

        previous = session.room_id if session.joined else None
        async with self._hold_rooms(room_id, previous):
            # The connection may have gone away while the oracle was answering
            if session.state == ConnectionState.DISCONNECTED:
                logger.info(f"[WS] Connection {session.id} closed during join; not registering")
                return Ack(event="joinRoom", ok=False, error="connection closed", requestId=request.requestId)

            self.registry.subscribe(room_id, session.sink)
            session.state = ConnectionState.JOINED
            session.user_id = user_id
            session.room_id = room_id
            ack = session.reply(Ack(event="joinRoom", ok=True, requestId=request.requestId))
            self._publish_presence(room_id)
            if previous and previous != room_id:
                self._publish_presence(previous)

        logger.info(
            f"[WS] Connection {session.id} joined room {room_id} as user {user_id}. "
            f"Room now has {self.registry.get_room_size(room_id)} connections"
        )
        return ack

    async def leave_room(self, session: ConnectionSession, request_id: Optional[str] = None) -> Ack:
        """Leave the current room, returning to ``Connected``. Idempotent."""
        if session.joined:
            await self._unsubscribe(session)
            session.state = ConnectionState.CONNECTED
            session.user_id = None
            session.room_id = None
        return session.reply(Ack(event="leaveRoom", ok=True, requestId=request_id))

    def _on_sink_dropped(self, room_id: str, sink: Sink) -> None:
        """Registry callback: a slow consumer was unsubscribed and closed.

        Runs inside ``publish``, so it must not suspend.
        """
        session = self._sessions.pop(sink, None)
        if session is None:
            return
        session.dropped = True
        session.state = ConnectionState.DISCONNECTED
        session.user_id = None
        session.room_id = None
        logger.warning(f"[WS] Connection {session.id} dropped from room {room_id}: not reading")
        self._publish_presence(room_id)

    async def _unsubscribe(self, session: ConnectionSession) -> None:
        room_id = self.registry.room_of(session.sink)
        if room_id is None:
            return
        async with self._room_locks.hold(room_id):
            self.registry.unsubscribe(session.sink)
            self._publish_presence(room_id)

    # =========================================================================
    # sendMessage / typing
    # =========================================================================

    async def send_message(self, session: ConnectionSession, payload: SendMessagePayload) -> Ack:
        """Store and broadcast a message from a joined connection."""
        def reject(error: str) -> Ack:
            return session.reply(Ack(event="sendMessage", ok=False, error=error, requestId=payload.requestId))

        if (
            not session.joined
            or payload.roomId != session.room_id
            or payload.senderId != session.user_id
        ):
            logger.warning(
                f"[WS] Rejected send on connection {session.id}: "
                f"room={payload.roomId} sender={payload.senderId} "
                f"(joined room={session.room_id} user={session.user_id})"
            )
            return reject(NOT_JOINED)

        acks = []

        def acknowledge(stored: ChatMessage) -> None:
            acks.append(session.reply(Ack(
                event="sendMessage", ok=True, message=stored, requestId=payload.requestId
            )))

        room_id = session.room_id
        try:
            content = self._validate_content(payload.content)
            if self.recheck_on_send:
                await self.oracle.authorize(session.user_id, room_id)
            message = await self._build_message(room_id, session.user_id, payload, content)
            stored = await self._store_and_publish(room_id, message, on_stored=acknowledge)
        except ChatGatewayError as exc:
            return reject(exc.message)
        except Exception:  # pylint: disable=broad-except
            logger.exception(f"[WS] Send failed in room {room_id}")
            return reject("internal error")

        logger.info(f"[WS] Message {stored.id} from user {stored.senderId} in room {room_id}: {stored.content[:50]}")
        return acks[0]

    def typing(self, session: ConnectionSession, kind: str) -> None:
        """Relay a typing indicator to everyone else in the room."""
        if not session.joined:
            return
        self.registry.publish(
            session.room_id,
            typing_event(kind, session.room_id, session.user_id),
            exclude=session.sink,
        )

    # =========================================================================
    # HTTP fallback
    # =========================================================================

    async def post_message(self, room_id: str, payload: SendMessagePayload) -> ChatMessage:
        """Stateless equivalent of ``sendMessage`` for the HTTP fallback.

        The sender is checked with the oracle (fail-closed) and the stored
        message is broadcast to live connections in the room.

        Raises:
            ValidationError: Missing sender or bad content.
            AuthorizationError: Not a member, or membership unknown.
            ConflictError: The message id is taken by another sender.
        """
        if not payload.senderId:
            raise ValidationError("userId required")
        content = self._validate_content(payload.content)
        await self._authorize_or_deny(payload.senderId, room_id)

        message = await self._build_message(room_id, payload.senderId, payload, content)
        stored = await self._store_and_publish(room_id, message)
        logger.info(f"[HTTP] Message {stored.id} from user {stored.senderId} in room {room_id}")
        return stored

    def get_history(
        self,
        room_id: str,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
    ) -> HistoryPage:
        limit = min(max(limit or self.settings.default_page_size, 1), self.settings.max_page_size)
        return self.store.get_page(room_id, limit, before)

    async def authorize_history(self, room_id: str, user_id: Optional[str]) -> None:
        """Guard history reads when ``history_requires_membership`` is set."""
        if not self.settings.history_requires_membership:
            return
        if not user_id:
            raise ValidationError("userId required")
        await self._authorize_or_deny(user_id, room_id)

    async def delete_message(self, room_id: str, message_id: str, user_id: Optional[str]) -> ChatMessage:
        """Delete a message on behalf of its sender and tell the room."""
        if not user_id:
            raise ValidationError("userId required")
        message = self.store.get_message(room_id, message_id)
        if message is None:
            raise NotFoundError()
        if message.senderId != str(user_id):
            raise AuthorizationError("Forbidden")

        async with self._room_locks.hold(room_id):
            removed = await self.store.delete(room_id, message_id)
            if removed is None:
                raise NotFoundError()
            self.registry.publish(room_id, message_deleted_event(room_id, message_id))

        logger.info(f"[HTTP] Message {message_id} deleted from room {room_id} by user {user_id}")
        return removed

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _authorize_or_deny(self, user_id: str, room_id: str) -> None:
        try:
            await self.oracle.authorize(user_id, room_id)
        except TransientUpstreamError as exc:
            raise AuthorizationError(exc.message) from exc

    def _validate_content(self, content: Optional[str]) -> str:
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty")
        max_length = self.settings.max_message_length
        if max_length and len(text) > max_length:
            raise ValidationError("Message too long")
        return text

    async def _build_message(
        self, room_id: str, sender_id: str, payload: SendMessagePayload, content: str
    ) -> ChatMessage:
        """Build the record to store. Directory values beat client-sent ones."""
        profile = await self.directory.lookup(sender_id) if self.directory else None
        name = profile.name if profile else None
        avatar = profile.avatarUrl if profile else None
        # Timestamps are always assigned by the store
        return ChatMessage(
            id=payload.id or None,
            roomId=room_id,
            senderId=sender_id,
            senderName=name or payload.senderName or "User",
            senderAvatarUrl=avatar or payload.senderAvatarUrl or None,
            content=content,
        )

    async def _store_and_publish(
        self,
        room_id: str,
        message: ChatMessage,
        on_stored: Optional[Callable[[ChatMessage], None]] = None,
    ) -> ChatMessage:
        async with self._room_locks.hold(room_id):
            if message.id:
                existing = self.store.get_message(room_id, message.id)
                if existing is not None:
                    if existing.senderId != message.senderId:
                        logger.warning(
                            f"[Gateway] Message id {message.id} in room {room_id} belongs to user "
                            f"{existing.senderId}, not {message.senderId}"
                        )
                        raise ConflictError()
                    # Retried send: answer with the stored record, no second broadcast
                    if on_stored is not None:
                        on_stored(existing)
                    return existing
            try:
                stored = await self.store.append(room_id, message)
            except ChatGatewayError:
                raise
            except Exception as exc:
                raise InternalError() from exc
            if on_stored is not None:
                on_stored(stored)
            self.registry.publish(room_id, new_message_event(stored))
            return stored

    def _publish_presence(self, room_id: str) -> None:
        self.registry.publish(room_id, presence_event(room_id, self.registry.get_room_size(room_id)))

    @asynccontextmanager
    async def _hold_rooms(self, *room_ids: Optional[str]) -> AsyncIterator[None]:
        # Sorted acquisition keeps two concurrent moves from deadlocking
        async with AsyncExitStack() as stack:
            for room_id in sorted({r for r in room_ids if r}):
                await stack.enter_async_context(self._room_locks.hold(room_id))
            yield
