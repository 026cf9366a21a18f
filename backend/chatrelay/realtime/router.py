"""WebSocket endpoint for live conversation traffic.

Protocol Flow:
    1. Client connects to /ws?token=<jwt> (or sends Authorization: Bearer)
       -> Identity Gate validates the token; on failure the socket is closed
          with 1008 before it joins any group and no event is sent
       -> Server sends: {type: "connected", userId, username, connectionId}
       -> The connection joins its personal group user:<id>
    2. Client sends: {type: "joinConversation", conversationId}
       -> participants only; joins conversation:<id>, acknowledged with {type: "joined"}
    3. Client sends: {type: "send", conversationId, body?, media?, clientId?}
       -> Message Pipeline; failures come back as {type: "sendFailed"}
    4. Client sends: {type: "markRead", conversationId}
       -> Read-State Tracker; readStateChanged to the reader's own devices
    5. Client sends: {type: "typing", conversationId, isTyping}
       -> broadcast to the conversation group, excluding this connection
    6. Client sends: {type: "leaveConversation", conversationId}
       -> acknowledged with {type: "left"}
    7. On disconnect the connection leaves every group

Errors are reported to the originating connection only.
"""
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from chatrelay.auth.gate import extract_bearer
from chatrelay.container import ChatServices, get_services
from chatrelay.conversations.schemas import MediaRef
from chatrelay.errors import ChatError, Forbidden, InvalidPayload, Unauthenticated

from . import events
from .presence import LiveConnection, conversation_group

logger = logging.getLogger(__name__)

router = APIRouter()

POLICY_VIOLATION = 1008


def _conversation_id(data: Dict[str, Any]) -> str:
    conversation_id = data.get("conversationId")
    if not isinstance(conversation_id, str) or not conversation_id:
        raise InvalidPayload("conversationId is required")
    return conversation_id


def _media(data: Dict[str, Any]) -> Optional[MediaRef]:
    raw = data.get("media")
    if raw is None:
        return None
    try:
        return MediaRef.model_validate(raw)
    except ValidationError as exc:
        raise InvalidPayload("media must have a url and a kind of image, video or gif") from exc


async def _receive_frame(websocket: WebSocket) -> Any:
    """Next client frame decoded as JSON. Text and binary frames are both accepted."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(code=message.get("code", 1000))
    raw = message.get("text")
    if raw is None:
        raw = message.get("bytes") or b""
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise InvalidPayload("Frame is not valid JSON") from exc


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token"),
) -> None:
    """WebSocket endpoint for one client connection.

    Args:
        websocket: The WebSocket connection.
        token: JWT; falls back to the Authorization header when absent.
    """
    services = get_services(websocket)

    try:
        if token is None:
            token = extract_bearer(websocket.headers.get("authorization"))
        identity = await services.gate.authenticate(token)
    except Unauthenticated as exc:
        logger.warning("[WS] Handshake refused: %s", exc.kind.value)
        await websocket.close(code=POLICY_VIOLATION)
        return
    except ChatError as exc:
        logger.error("[WS] Handshake failed: %s", exc.message)
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()
    connection = LiveConnection.from_websocket(websocket, identity)
    await services.presence.register(connection)
    logger.info("[WS] %s connected as %s", connection.id, identity.user_id)

    try:
        await websocket.send_json(
            events.connected(identity.user_id, identity.username, connection.id)
        )

        # Main message loop
        while True:
            try:
                data = await _receive_frame(websocket)
            except InvalidPayload as exc:
                await websocket.send_json(events.error(exc))
                continue
            if not isinstance(data, dict):
                await websocket.send_json(
                    events.error(InvalidPayload("Expected a JSON object"))
                )
                continue

            message_type = data.get("type")
            logger.debug("[WS] %s received: type=%s", connection.id, message_type or "?")
            try:
                await _dispatch(services, connection, message_type, data)
            except ChatError as exc:
                if message_type == "send":
                    await websocket.send_json(
                        events.send_failed(data.get("conversationId"), exc, data.get("clientId"))
                    )
                else:
                    await websocket.send_json(events.error(exc, message_type))

    except WebSocketDisconnect:
        logger.info("[WS] %s disconnected", connection.id)
    finally:
        await services.presence.disconnect(connection)


async def _dispatch(
    services: ChatServices,
    connection: LiveConnection,
    message_type: Optional[str],
    data: Dict[str, Any],
) -> None:
    user_id = connection.user_id

    # --- Handle JOIN_CONVERSATION (participants only) ---
    if message_type == "joinConversation":
        conversation_id = _conversation_id(data)
        # Check and join under the section membership eviction runs in.
        async with services.store.serialized(conversation_id):
            conversation = await services.store.get_for_participant(conversation_id, user_id)
            if user_id in conversation.left_by:
                raise Forbidden("You left this conversation")
            await services.presence.join(connection, conversation_group(conversation_id))
        await connection.send(events.joined(conversation_id))
        return

    # --- Handle LEAVE_CONVERSATION (group only, no membership change) ---
    if message_type == "leaveConversation":
        conversation_id = _conversation_id(data)
        await services.presence.leave(connection, conversation_group(conversation_id))
        await connection.send(events.left(conversation_id))
        return

    # --- Handle SEND ---
    if message_type == "send":
        conversation_id = _conversation_id(data)
        body = data.get("body")
        if body is not None and not isinstance(body, str):
            raise InvalidPayload("body must be a string")
        await services.pipeline.send(user_id, conversation_id, body, _media(data))
        return

    # --- Handle MARK_READ ---
    if message_type == "markRead":
        await services.read_state.mark_read(_conversation_id(data), user_id)
        return

    # --- Handle TYPING indicator (best effort) ---
    if message_type == "typing":
        conversation_id = _conversation_id(data)
        group_key = conversation_group(conversation_id)
        if group_key not in connection.groups:
            return
        await services.presence.broadcast(
            group_key,
            events.typing(
                conversation_id,
                user_id,
                connection.identity.username,
                bool(data.get("isTyping", True)),
            ),
            exclude=connection,
        )
        return

    raise InvalidPayload(f"Unknown message type: {message_type}")
