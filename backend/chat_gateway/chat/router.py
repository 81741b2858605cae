"""Chat router providing WebSocket and HTTP fallback endpoints.

This module provides:
    - WebSocket /ws/chat: Persistent connection (joinRoom, sendMessage, ...)
    - GET /messages/{room_id}: Paginated message history
    - POST /messages/{room_id}: Send a message without a persistent connection
    - DELETE /messages/{room_id}/{message_id}: Sender deletes a message

HTTP responses use the ``{success, ...}`` envelope the web client expects;
failures are ``{success: false, error}`` with a 4xx/5xx status.
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from chat_gateway.errors import ChatGatewayError

from .gateway import ChatGateway
from .registry import QueueSink
from .schemas import Ack, SendMessagePayload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

_datetime_adapter = TypeAdapter(datetime)


def _gateway(conn) -> ChatGateway:
    return conn.app.state.gateway


def _error_response(exc: ChatGatewayError) -> JSONResponse:
    return JSONResponse({"success": False, "error": exc.message}, status_code=exc.status_code)


def _internal_error(context: str) -> JSONResponse:
    logger.exception(f"[HTTP] {context}")
    return JSONResponse({"success": False, "error": "internal error"}, status_code=500)


def _parse_limit(raw: Optional[str]) -> Optional[int]:
    try:
        return int(raw) if raw is not None else None
    except ValueError:
        return None


def _resolve_cursor(gateway: ChatGateway, room_id: str, raw: Optional[str]) -> Optional[datetime]:
    """Turn a cursor (message id or ISO timestamp) into a timestamp.

    Unknown ids and unparseable values are ignored, yielding the newest page.
    """
    if not raw:
        return None
    message = gateway.store.get_message(room_id, raw)
    if message is not None:
        return message.timestamp
    try:
        return _datetime_adapter.validate_python(raw)
    except PydanticValidationError:
        logger.debug(f"[HTTP] Ignoring unusable cursor {raw!r} for room {room_id}")
        return None


@router.get("/messages/{room_id}")
async def get_messages(
    request: Request,
    room_id: str,
    limit: Optional[str] = Query(None, description="Page size (clamped to 1..max_page_size)"),
    cursor: Optional[str] = Query(None, description="Message id or ISO timestamp; returns older messages"),
    before: Optional[str] = Query(None, description="Alias of cursor"),
    userId: Optional[str] = Query(None, description="Reader id, required when history is guarded"),
) -> JSONResponse:
    """Get paginated message history for a room.

    Does not need a live connection; clients call it on page load and to
    lazily fetch older messages by passing back ``nextCursor``.

    Example:
        GET /messages/7?limit=50
        GET /messages/7?cursor=2026-10-16T09:30:00Z&limit=50
    """
    gateway = _gateway(request)
    try:
        await gateway.authorize_history(room_id, userId)
        page = gateway.get_history(
            room_id,
            limit=_parse_limit(limit),
            before=_resolve_cursor(gateway, room_id, cursor or before),
        )
    except ChatGatewayError as exc:
        return _error_response(exc)
    except Exception:  # pylint: disable=broad-except
        return _internal_error(f"Failed to fetch messages for room {room_id}")

    logger.info(f"[HTTP] History for room {room_id}: returning {len(page.messages)} messages")
    return JSONResponse({"success": True, **page.model_dump(mode="json")})


@router.post("/messages/{room_id}")
async def post_message(request: Request, room_id: str) -> JSONResponse:
    """Send a message over HTTP (fallback when the WebSocket is unavailable).

    Performs the same membership check as a WebSocket join and broadcasts
    the stored message to every live connection in the room.

    Body:
        {userId | senderId, content, id?, senderName?, senderAvatarUrl?}
    """
    gateway = _gateway(request)
    try:
        data = await request.json()
    except ValueError:
        return JSONResponse({"success": False, "error": "Invalid JSON body"}, status_code=400)
    if not isinstance(data, dict):
        return JSONResponse({"success": False, "error": "Invalid message format"}, status_code=400)

    try:
        payload = SendMessagePayload.model_validate(data)
    except PydanticValidationError:
        return JSONResponse({"success": False, "error": "Invalid message format"}, status_code=400)

    try:
        stored = await gateway.post_message(room_id, payload)
    except ChatGatewayError as exc:
        return _error_response(exc)
    except Exception:  # pylint: disable=broad-except
        return _internal_error(f"Failed to post message to room {room_id}")

    return JSONResponse({"success": True, "message": stored.model_dump(mode="json")})


@router.delete("/messages/{room_id}/{message_id}")
async def delete_message(
    request: Request,
    room_id: str,
    message_id: str,
    userId: Optional[str] = Query(None, description="Id of the user deleting the message"),
) -> JSONResponse:
    """Delete a message. Only its sender may delete it."""
    gateway = _gateway(request)
    try:
        await gateway.delete_message(room_id, message_id, userId)
    except ChatGatewayError as exc:
        return _error_response(exc)
    except Exception:  # pylint: disable=broad-except
        return _internal_error(f"Failed to delete message {message_id} in room {room_id}")
    return JSONResponse({"success": True})


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time chapter chat.

    Protocol Flow:
        1. Client connects (state: connected, no room yet)
        2. Client sends: {type: "joinRoom", roomId, userId}
           → Server checks membership with the oracle
           → Server sends: {type: "ack", event: "joinRoom", ok, error?}
           → Server broadcasts: {type: "presence", roomId, count}
        3. Client sends: {type: "sendMessage", roomId, senderId, content, ...}
           → Server sends: {type: "ack", event: "sendMessage", ok, message?}
           → Server broadcasts: {type: "newMessage", ...message} (sender included)
        4. Client sends: {type: "typing"} / {type: "stopTyping"}
           → Others receive: {type: "typing"|"stopTyping", roomId, userId}
        5. On disconnect → connection leaves its room, presence is rebroadcast

    All outbound events go through the connection's queue and a single
    writer task, so acks and broadcasts reach the client in order.
    """
    gateway = _gateway(websocket)
    await websocket.accept()

    sink = QueueSink(maxsize=gateway.settings.send_queue_size)
    session = gateway.connect(sink)

    async def write_loop() -> None:
        try:
            await sink.drain(websocket.send_json)
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug(f"[WS] Writer for connection {session.id} stopped: {exc}")
            return
        # Sink closed because the client stopped reading: end the connection
        if session.dropped:
            try:
                await websocket.close(code=1008)
            except RuntimeError:
                pass

    writer = asyncio.create_task(write_loop())

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                session.reply(Ack(event="unknown", ok=False, error="Invalid message format"))
                continue
            logger.debug(
                "[WS] Connection %s received: type=%s",
                session.id,
                data.get("type", "?") if isinstance(data, dict) else "?",
            )
            await gateway.handle_event(session, data)
    except WebSocketDisconnect:
        pass
    except RuntimeError as exc:
        # Raised by Starlette when receiving after the server closed the socket
        logger.debug(f"[WS] Connection {session.id} closed: {exc}")
    finally:
        await gateway.disconnect(session)
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass
