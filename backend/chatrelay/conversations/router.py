"""Conversation endpoints.

Endpoints:
    POST   /conversations                           - create direct or group
    GET    /conversations                           - the caller's conversation list
    GET    /conversations/{id}/messages             - history (optional before/limit cursor)
    POST   /conversations/{id}/messages             - send a message
    POST   /conversations/{id}/read                 - mark everything read
    GET    /conversations/{id}/members              - members with admin flags
    POST   /conversations/{id}/members              - add members (admin only)
    DELETE /conversations/{id}/members/{memberId}   - remove a member (admin only)
    POST   /conversations/{id}/leave                - leave
    PUT    /conversations/{id}/hide                 - hide a direct conversation

Every endpoint goes through the Identity Gate. Writes that other clients
need to see are fanned out by the pipeline and the membership manager, so
HTTP and WebSocket senders produce the same events.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from chatrelay.auth.dependencies import get_identity
from chatrelay.auth.schemas import Identity
from chatrelay.container import ChatServices, get_services
from chatrelay.errors import InvalidPayload

from .schemas import (
    AddMembersRequest,
    ConversationKind,
    CreateConversationRequest,
    MembershipChange,
    SendMessageRequest,
)
from .serializers import serialize_conversation, serialize_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


async def _summary(services: ChatServices, change: MembershipChange, viewer_id: str) -> dict:
    conversation = change.conversation
    users = await services.store.get_users(conversation.participant_ids)
    return serialize_conversation(conversation, viewer_id, users, change.system_message)


@router.post("")
async def create_conversation(
    request: CreateConversationRequest,
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> JSONResponse:
    """Create a conversation.

    A direct conversation is idempotent over its two participants: asking
    again returns the existing one with 200 instead of 201.
    """
    store = services.store
    caller = identity.user_id

    if request.kind == ConversationKind.DIRECT:
        others = [p for p in dict.fromkeys(request.participant_ids) if p != caller]
        if len(others) > 1:
            raise InvalidPayload("A direct conversation has exactly two participants")
        other = others[0] if others else caller
        conversation, created = await store.create_direct(caller, other)
    else:
        conversation = await store.create_group(caller, request.participant_ids, request.title)
        created = True

    if created:
        await services.membership.announce_created(conversation, caller)

    users = await store.get_users(conversation.participant_ids)
    last_message = await store.get_message(conversation.last_message_id)
    return JSONResponse(
        serialize_conversation(conversation, caller, users, last_message),
        status_code=201 if created else 200,
    )


@router.get("")
async def list_conversations(
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> list:
    """Conversations visible to the caller, most recently active first."""
    views = await services.store.list_for_user(identity.user_id)
    user_ids = {p for v in views for p in v.conversation.participant_ids}
    users = await services.store.get_users(sorted(user_ids))
    return [
        serialize_conversation(v.conversation, identity.user_id, users, v.last_message, v.unread)
        for v in views
    ]


@router.get("/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    before: Optional[datetime] = Query(None, description="Return messages older than this"),
    limit: Optional[int] = Query(None, ge=1, description="Page size (max 100)"),
    before_id: Optional[str] = Query(
        None, alias="beforeId", description="Return messages committed before this message"
    ),
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> dict:
    """Messages in ascending order.

    Without a cursor or ``limit`` the whole history is returned. Otherwise
    the most recent page older than the cursor is returned and ``hasMore``
    tells whether older messages exist. ``beforeId`` (a message id) pages by
    commit order and is exact; ``before`` (a timestamp) is kept for clients
    that only track times.

    Example:
        GET /conversations/abc/messages?limit=50
        GET /conversations/abc/messages?beforeId=<oldest message id>&limit=50
        GET /conversations/abc/messages?before=2024-02-07T16:00:00Z&limit=50
    """
    store = services.store
    if before is not None and before.tzinfo is not None:
        before = before.astimezone(timezone.utc).replace(tzinfo=None)
    paginate = before is not None or before_id is not None or limit is not None
    if paginate and limit is None:
        limit = services.config.conversations.page_size

    messages = await store.list_messages(
        conversation_id, identity.user_id, before, limit, before_id
    )

    has_more = False
    if paginate and messages:
        older = await store.list_messages(
            conversation_id, identity.user_id, limit=1, before_id=messages[0].id
        )
        has_more = len(older) > 0

    sender_ids = sorted({m.sender_id for m in messages})
    users = await store.get_users(sender_ids)
    return {
        "messages": [serialize_message(m, users) for m in messages],
        "hasMore": has_more,
    }


@router.post("/{conversation_id}/messages", status_code=201)
async def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> dict:
    message = await services.pipeline.send(
        identity.user_id, conversation_id, request.body, request.media
    )
    users = await services.store.get_users([message.sender_id])
    return serialize_message(message, users)


@router.post("/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> dict:
    updated = await services.read_state.mark_read(conversation_id, identity.user_id)
    return {"conversationId": conversation_id, "updatedCount": updated}


@router.get("/{conversation_id}/members")
async def list_members(
    conversation_id: str,
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> dict:
    members = await services.membership.list_members(conversation_id, identity.user_id)
    return {"conversationId": conversation_id, "members": members}


@router.post("/{conversation_id}/members")
async def add_members(
    conversation_id: str,
    request: AddMembersRequest,
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> dict:
    change = await services.membership.add_members(
        conversation_id, identity.user_id, request.new_ids
    )
    return await _summary(services, change, identity.user_id)


@router.delete("/{conversation_id}/members/{member_id}")
async def remove_member(
    conversation_id: str,
    member_id: str,
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> dict:
    change = await services.membership.remove_member(
        conversation_id, identity.user_id, member_id
    )
    return await _summary(services, change, identity.user_id)


@router.post("/{conversation_id}/leave")
async def leave_conversation(
    conversation_id: str,
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> dict:
    change = await services.membership.leave(conversation_id, identity.user_id)
    return {"conversationId": conversation_id, "deleted": change.deleted}


@router.put("/{conversation_id}/hide")
async def hide_conversation(
    conversation_id: str,
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
) -> dict:
    await services.store.hide(conversation_id, identity.user_id)
    return {"conversationId": conversation_id, "hidden": True}
