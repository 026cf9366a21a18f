"""Membership Manager: add, remove and leave for group conversations.

Each operation is expressed as a *plan*: a pure function that inspects the
fresh conversation (read inside the store's per-conversation critical
section) and either refuses with a ChatError or returns the new participant
and admin lists plus the system message body. The store applies the plan,
enforces the admin invariant, appends the system message and deletes the
conversation if nobody is left. This module then fans the change out:

    system message          -> conversation:<id>
    conversationCreated     -> user:<added>
    conversationUpdated     -> user:<remaining>
    conversationRemoved     -> user:<removed>   (and evicted from conversation:<id>)
"""
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from chatrelay.config import ConversationSettings
from chatrelay.conversations.schemas import (
    Conversation,
    ConversationKind,
    MembershipChange,
    MembershipPlan,
    Message,
    User,
)
from chatrelay.conversations.serializers import (
    serialize_for_each,
    serialize_member,
    serialize_message,
)
from chatrelay.conversations.service import ConversationStore
from chatrelay.errors import Conflict, Forbidden, InvalidPayload, NotFound
from chatrelay.realtime import events
from chatrelay.realtime.presence import PresenceRouter, conversation_group

logger = logging.getLogger(__name__)


def _name(users: Dict[str, User], user_id: str) -> str:
    user = users.get(user_id)
    return user.username if user else "A user"


def _require_group_admin(conversation: Conversation, actor_id: str) -> None:
    if conversation.kind != ConversationKind.GROUP:
        raise InvalidPayload("Membership can only be changed on group conversations")
    if not conversation.is_participant(actor_id):
        raise Forbidden("Not a participant of this conversation")
    if not conversation.is_admin(actor_id):
        raise Forbidden("Only a group admin can change its members")


def plan_add(
    conversation: Conversation,
    users: Dict[str, User],
    actor_id: str,
    new_users: Dict[str, User],
    max_group_size: int,
) -> MembershipPlan:
    _require_group_admin(conversation, actor_id)
    added = [u for u in new_users if not conversation.is_participant(u)]
    if not added:
        raise InvalidPayload("Everyone listed is already a participant")
    if len(conversation.participant_ids) + len(added) > max_group_size:
        raise InvalidPayload(f"A group can have at most {max_group_size} participants")

    names = ", ".join(new_users[u].username for u in added)
    return MembershipPlan(
        participant_ids=conversation.participant_ids + added,
        admin_ids=list(conversation.admin_ids),
        system_body=f"{_name(users, actor_id)} added {names}.",
        actor_id=actor_id,
        added_ids=added,
    )


def plan_remove(
    conversation: Conversation,
    users: Dict[str, User],
    actor_id: str,
    target_id: str,
) -> MembershipPlan:
    _require_group_admin(conversation, actor_id)
    if not conversation.is_participant(target_id):
        raise NotFound(f"User {target_id} is not a participant of this conversation")
    if conversation.admin_ids == [target_id]:
        raise Conflict("Cannot remove the only admin of the group")

    return MembershipPlan(
        participant_ids=[p for p in conversation.participant_ids if p != target_id],
        admin_ids=[a for a in conversation.admin_ids if a != target_id],
        system_body=f"{_name(users, actor_id)} removed {_name(users, target_id)}.",
        actor_id=actor_id,
        removed_ids=[target_id],
    )


class MembershipManager:
    """Group membership mutations and their fan-out."""

    def __init__(
        self,
        store: ConversationStore,
        presence: PresenceRouter,
        settings: Optional[ConversationSettings] = None,
    ) -> None:
        self._store = store
        self._presence = presence
        self._settings = settings or ConversationSettings()

    # =========================================================================
    # Operations
    # =========================================================================

    async def add_members(
        self, conversation_id: str, actor_id: str, new_ids: Sequence[str]
    ) -> MembershipChange:
        """Add users to a group. The actor must be an admin.

        Raises:
            NotFound: Conversation or one of the users does not exist.
            Forbidden: Actor is not an admin participant.
            InvalidPayload: Direct conversation, or nobody new to add.
        """
        new_ids = [u for u in dict.fromkeys(new_ids) if u]
        if not new_ids:
            raise InvalidPayload("No users to add")

        conversation = await self._store.get(conversation_id)
        _require_group_admin(conversation, actor_id)

        new_users = await self._store.get_users(new_ids)
        missing = [u for u in new_ids if u not in new_users]
        if missing:
            raise NotFound(f"Unknown user(s): {', '.join(missing)}")
        new_users = {u: new_users[u] for u in new_ids}

        change = await self._apply(
            conversation_id,
            lambda: self._store.apply_membership(
                conversation_id,
                lambda fresh, users: plan_add(
                    fresh, users, actor_id, new_users, self._settings.max_group_size
                ),
            ),
        )
        logger.info(
            "[Membership] %s added %s to %s", actor_id, change.added_ids, conversation_id
        )
        return change

    async def remove_member(
        self, conversation_id: str, actor_id: str, target_id: str
    ) -> MembershipChange:
        """Remove a participant from a group. The actor must be an admin.

        Raises:
            NotFound: Conversation missing, or target is not a participant.
            Forbidden: Actor is not an admin participant.
            Conflict: Target is the group's only admin.
        """
        change = await self._apply(
            conversation_id,
            lambda: self._store.apply_membership(
                conversation_id,
                lambda fresh, users: plan_remove(fresh, users, actor_id, target_id),
            ),
        )
        logger.info(
            "[Membership] %s removed %s from %s", actor_id, target_id, conversation_id
        )
        return change

    async def leave(self, conversation_id: str, actor_id: str) -> MembershipChange:
        """Leave a conversation.

        The last admin of a group hands admin rights to the earliest-joined
        remaining participant. A direct conversation is left one-sidedly.
        """
        change = await self._apply(
            conversation_id, lambda: self._store.leave(conversation_id, actor_id)
        )
        logger.info(
            "[Membership] %s left %s (deleted=%s)", actor_id, conversation_id, change.deleted
        )
        return change

    async def list_members(self, conversation_id: str, requester_id: str) -> List[dict]:
        conversation = await self._store.get_for_participant(conversation_id, requester_id)
        users = await self._store.get_users(conversation.participant_ids)
        return [serialize_member(p, conversation, users) for p in conversation.participant_ids]

    async def announce_created(self, conversation: Conversation, creator_id: str) -> None:
        """Tell the other participants of a new conversation that it exists."""
        others = [p for p in conversation.participant_ids if p != creator_id]
        await self._send_summaries(conversation, others, events.conversation_created)

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def _apply(
        self, conversation_id: str, mutate: Callable[[], Awaitable[MembershipChange]]
    ) -> MembershipChange:
        """Run a mutation and broadcast its system message in commit order.

        Removed users are evicted from the conversation group before the
        system message goes out, so they never see traffic past their removal.
        """
        group_key = conversation_group(conversation_id)
        users: Dict[str, User] = {}
        async with self._store.serialized(conversation_id):
            change = await mutate()
            for user_id in change.removed_ids:
                await self._presence.evict(user_id, group_key)

            if change.conversation is not None:
                users = await self._store.get_users(change.conversation.participant_ids)
                if change.system_message is not None:
                    await self._presence.broadcast(
                        group_key,
                        events.message_received(
                            conversation_id, serialize_message(change.system_message, users)
                        ),
                    )

        await self._notify(change, users)
        return change

    async def _notify(self, change: MembershipChange, users: Dict[str, User]) -> None:
        await self._presence.broadcast_to_users(
            change.removed_ids,
            events.conversation_removed(change.conversation_id, deleted=change.deleted),
        )
        if change.conversation is None:
            return

        conversation = change.conversation
        notified = set(change.added_ids) | set(change.removed_ids)
        existing = [p for p in conversation.participant_ids if p not in notified]
        await self._send_summaries(
            conversation, change.added_ids, events.conversation_created,
            users=users, last_message=change.system_message,
        )
        await self._send_summaries(
            conversation, existing, events.conversation_updated,
            users=users, last_message=change.system_message,
        )

    async def _send_summaries(
        self,
        conversation: Conversation,
        viewer_ids: Iterable[str],
        make_event: Callable[[dict], dict],
        users: Optional[Dict[str, User]] = None,
        last_message: Optional[Message] = None,
    ) -> None:
        viewer_ids = list(viewer_ids)
        if not viewer_ids:
            return
        if users is None:
            users = await self._store.get_users(conversation.participant_ids)
        summaries = serialize_for_each(conversation, viewer_ids, users, last_message)
        await self._presence.send_each(
            {user_id: make_event(summary) for user_id, summary in summaries.items()}
        )
