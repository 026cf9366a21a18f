"""The one place conversations and messages are turned into JSON.

REST responses and WebSocket events both go through these functions, so a
conversation always has the same shape whether it arrives from
``GET /conversations`` or a ``conversationUpdated`` event. Clients treat a
conversation payload as an idempotent overwrite keyed by ``id``.
"""
from datetime import datetime
from typing import Dict, Iterable, Optional

from .schemas import Conversation, Message, User
from .service import unread_indicator


def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() + "Z"


def serialize_user(user_id: str, users: Dict[str, User]) -> dict:
    user = users.get(user_id)
    if user is None:
        return {"id": user_id, "username": None, "displayImage": None}
    return {"id": user.id, "username": user.username, "displayImage": user.display_image}


def serialize_message(message: Message, users: Dict[str, User]) -> dict:
    return {
        "id": message.id,
        "conversationId": message.conversation_id,
        "senderId": message.sender_id,
        "sender": serialize_user(message.sender_id, users),
        "body": message.body,
        "media": (
            {"url": message.media.url, "kind": message.media.kind.value}
            if message.media else None
        ),
        "readBy": list(message.read_by),
        "isSystem": message.is_system,
        "createdAt": iso(message.created_at),
    }


def serialize_conversation(
    conversation: Conversation,
    viewer_id: str,
    users: Dict[str, User],
    last_message: Optional[Message] = None,
    unread: Optional[int] = None,
) -> dict:
    """Conversation as ``viewer_id`` sees it.

    ``unread`` defaults to the last-message indicator for the viewer.
    """
    if unread is None:
        unread = unread_indicator(last_message, viewer_id)
    recipient_id = conversation.recipient_id(viewer_id)
    return {
        "id": conversation.id,
        "kind": conversation.kind.value,
        "title": conversation.title,
        "participantIds": list(conversation.participant_ids),
        "participants": [serialize_user(p, users) for p in conversation.participant_ids],
        "adminIds": list(conversation.admin_ids),
        "recipient": serialize_user(recipient_id, users) if recipient_id else None,
        "lastMessageId": conversation.last_message_id,
        "lastMessage": serialize_message(last_message, users) if last_message else None,
        "unreadCount": unread,
        "createdAt": iso(conversation.created_at),
        "updatedAt": iso(conversation.updated_at),
    }


def serialize_member(user_id: str, conversation: Conversation, users: Dict[str, User]) -> dict:
    return {**serialize_user(user_id, users), "isAdmin": conversation.is_admin(user_id)}


def serialize_for_each(
    conversation: Conversation,
    viewer_ids: Iterable[str],
    users: Dict[str, User],
    last_message: Optional[Message] = None,
) -> Dict[str, dict]:
    """One summary per viewer, keyed by viewer id."""
    return {
        viewer_id: serialize_conversation(conversation, viewer_id, users, last_message)
        for viewer_id in dict.fromkeys(viewer_ids)
    }
