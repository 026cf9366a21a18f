"""Server-to-client event shapes.

Every event is a JSON object with a ``type`` field. Conversation and message
payloads come from ``conversations.serializers`` so REST and WebSocket clients
see identical shapes.
"""
from typing import Optional

from chatrelay.errors import ChatError

CONNECTED = "connected"
JOINED = "joined"
LEFT = "left"
MESSAGE_RECEIVED = "messageReceived"
CONVERSATION_UPDATED = "conversationUpdated"
CONVERSATION_CREATED = "conversationCreated"
CONVERSATION_REMOVED = "conversationRemoved"
READ_STATE_CHANGED = "readStateChanged"
TYPING = "typing"
SEND_FAILED = "sendFailed"
ERROR = "error"


def connected(user_id: str, username: str, connection_id: str) -> dict:
    return {
        "type": CONNECTED,
        "userId": user_id,
        "username": username,
        "connectionId": connection_id,
    }


def joined(conversation_id: str) -> dict:
    return {"type": JOINED, "conversationId": conversation_id}


def left(conversation_id: str) -> dict:
    return {"type": LEFT, "conversationId": conversation_id}


def message_received(conversation_id: str, message: dict) -> dict:
    return {"type": MESSAGE_RECEIVED, "conversationId": conversation_id, "message": message}


def conversation_updated(conversation: dict) -> dict:
    return {"type": CONVERSATION_UPDATED, "conversation": conversation}


def conversation_created(conversation: dict) -> dict:
    return {"type": CONVERSATION_CREATED, "conversation": conversation}


def conversation_removed(conversation_id: str, deleted: bool = False) -> dict:
    return {"type": CONVERSATION_REMOVED, "conversationId": conversation_id, "deleted": deleted}


def read_state_changed(
    conversation_id: str, user_id: str, updated_count: int, unread_count: int
) -> dict:
    return {
        "type": READ_STATE_CHANGED,
        "conversationId": conversation_id,
        "userId": user_id,
        "updatedCount": updated_count,
        "unreadCount": unread_count,
    }


def typing(conversation_id: str, user_id: str, username: str, is_typing: bool) -> dict:
    return {
        "type": TYPING,
        "conversationId": conversation_id,
        "userId": user_id,
        "username": username,
        "isTyping": is_typing,
    }


def send_failed(
    conversation_id: Optional[str], error: ChatError, client_id: Optional[str] = None
) -> dict:
    """Reported to the sending connection only."""
    return {
        "type": SEND_FAILED,
        "conversationId": conversation_id,
        "clientId": client_id,
        **error.to_dict(),
    }


def error(err: ChatError, request_type: Optional[str] = None) -> dict:
    return {"type": ERROR, "requestType": request_type, **err.to_dict()}
