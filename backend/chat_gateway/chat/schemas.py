"""Pydantic schemas for the chapter chat gateway.

Wire payloads use camelCase field names, matching what browser clients send
and expect:
- ChatMessage: a stored message, broadcast as ``newMessage``
- SendMessagePayload: ``sendMessage`` event / HTTP POST body
- JoinRoomRequest: ``joinRoom`` event
- Ack: acknowledgement returned for every client event
- HistoryPage: one page of backward-paginated history

Required fields on inbound payloads are optional at the schema level so the
gateway can reject them with its own error messages instead of pydantic's.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    """A chat message as stored and broadcast.

    ``id`` and ``timestamp`` are filled in by the message store when absent;
    every record returned by the store has both set.

    Attributes:
        id: Unique within the room; client-supplied ids make retries idempotent.
        roomId: Room (chapter) the message belongs to.
        senderId: Authenticated user who produced the message.
        senderName: Display name, denormalised and possibly stale.
        senderAvatarUrl: Avatar URL, denormalised and possibly stale.
        content: Message text.
        timestamp: Creation time; authoritative for ordering and eviction.
    """
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: Optional[str] = Field(default=None, description="Unique message ID")
    roomId: str = Field(..., description="Room ID this message belongs to")
    senderId: str = Field(..., description="User ID of the sender")
    senderName: str = Field(default="User", description="Display name of the sender")
    senderAvatarUrl: Optional[str] = Field(default=None, description="Avatar URL of the sender")
    content: str = Field(..., description="Message content")
    timestamp: Optional[datetime] = Field(default=None, description="Creation time (UTC)")


class SendMessagePayload(BaseModel):
    """Inbound ``sendMessage`` event, also the HTTP fallback POST body.

    The HTTP fallback historically sent ``userId`` instead of ``senderId``;
    both are accepted.
    """
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: Optional[str] = None
    roomId: Optional[str] = None
    senderId: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("senderId", "userId")
    )
    senderName: Optional[str] = None
    senderAvatarUrl: Optional[str] = None
    content: Optional[str] = None
    timestamp: Optional[datetime] = None
    requestId: Optional[str] = None


class JoinRoomRequest(BaseModel):
    """Inbound ``joinRoom`` event."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    roomId: Optional[str] = None
    userId: Optional[str] = None
    requestId: Optional[str] = None


class Ack(BaseModel):
    """Acknowledgement for a client event.

    Attributes:
        event: Name of the acknowledged client event (joinRoom, sendMessage, ...).
        ok: Whether the event was accepted.
        error: Client-safe reason when ``ok`` is false.
        requestId: Echo of the client's correlation id, if it sent one.
        message: The canonical stored record, for accepted sends.
    """
    type: str = "ack"
    event: str
    ok: bool
    error: Optional[str] = None
    requestId: Optional[str] = None
    message: Optional[ChatMessage] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class HistoryPage(BaseModel):
    """A page of history in chronological order (oldest first).

    ``nextCursor`` is the timestamp of the oldest returned message when older
    history exists; pass it back as ``before`` to fetch the next older page.
    """
    messages: List[ChatMessage] = Field(default_factory=list)
    nextCursor: Optional[datetime] = None
    hasMore: bool = False


# =============================================================================
# Server -> client events
# =============================================================================


def new_message_event(message: ChatMessage) -> Dict[str, Any]:
    return {"type": "newMessage", **message.model_dump(mode="json")}


def presence_event(room_id: str, count: int) -> Dict[str, Any]:
    return {"type": "presence", "roomId": room_id, "count": count}


def typing_event(kind: str, room_id: str, user_id: str) -> Dict[str, Any]:
    return {"type": kind, "roomId": room_id, "userId": user_id}


def message_deleted_event(room_id: str, message_id: str) -> Dict[str, Any]:
    return {"type": "messageDeleted", "roomId": room_id, "id": message_id}
