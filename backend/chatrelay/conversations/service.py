"""ConversationStore, the owner of conversation and message records.

This is the only component that writes durable state. Every mutating
operation on a conversation (message append, summary update, membership
change, hide, leave) runs inside the per-conversation critical section
``serialized(conversation_id)``, so two concurrent sends never interleave
their read-modify-write of ``last_message_id`` / ``updated_at`` and a
membership change never races a send's participant check.

Invariants kept here:
    - one direct conversation per unordered pair of users
    - ``admin_ids`` is a subset of ``participant_ids``; a group that still has
      participants always has an admin (earliest-joined gets promoted)
    - a message has a body or media unless it is a system message
    - the sender is in ``read_by`` from the start
"""
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from chatrelay.concurrency import KeyedLock
from chatrelay.config import ConversationSettings
from chatrelay.errors import (
    Forbidden,
    InvalidPayload,
    NotFound,
    SummaryUpdateFailed,
    TransientStoreFailure,
)
from chatrelay.store.duckdb_store import direct_key
from chatrelay.store.gateway import StoreGateway

from .schemas import (
    Conversation,
    ConversationKind,
    ConversationView,
    MediaRef,
    MembershipChange,
    MembershipPlan,
    Message,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

PlanFn = Callable[[Conversation, Dict[str, User]], MembershipPlan]


class ConversationStore:
    """Conversation and message operations over the document store.

    Args:
        gateway:  Async, timeout-bounded access to the repository.
        settings: Group size and payload limits.
        locks:    Per-conversation lock table. Shared with the message
                  pipeline so a send can keep its broadcast inside the same
                  critical section as its append.
    """

    def __init__(
        self,
        gateway: StoreGateway,
        settings: Optional[ConversationSettings] = None,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self._db = gateway
        self._repo = gateway.repository
        self._settings = settings or ConversationSettings()
        self.locks = locks or KeyedLock()

    def serialized(self, conversation_id: str):
        """Critical section for every write to one conversation."""
        return self.locks.hold(("conversation", conversation_id))

    # -----------------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------------

    async def get(self, conversation_id: str) -> Conversation:
        conversation = await self._db.call(self._repo.get_conversation, conversation_id)
        if conversation is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        return conversation

    async def get_for_participant(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self.get(conversation_id)
        if not conversation.is_participant(user_id):
            raise Forbidden("Not a participant of this conversation")
        return conversation

    async def get_users(self, user_ids: Sequence[str]) -> Dict[str, User]:
        return await self._db.call(self._repo.get_users, list(user_ids))

    async def get_user(self, user_id: str) -> Optional[User]:
        users = await self.get_users([user_id])
        return users.get(user_id)

    async def search_users(self, prefix: str, limit: int = 20) -> List[User]:
        return await self._db.call(self._repo.search_users, prefix, limit)

    async def get_message(self, message_id: Optional[str]) -> Optional[Message]:
        if not message_id:
            return None
        messages = await self._db.call(self._repo.get_messages, [message_id])
        return messages.get(message_id)

    async def _require_users(self, user_ids: Sequence[str]) -> Dict[str, User]:
        users = await self.get_users(user_ids)
        missing = [u for u in user_ids if u not in users]
        if missing:
            raise NotFound(f"Unknown user(s): {', '.join(missing)}")
        return users

    # -----------------------------------------------------------------------
    # Creation
    # -----------------------------------------------------------------------

    async def create_direct(self, user_a: str, user_b: str) -> Tuple[Conversation, bool]:
        """Return the direct conversation between two users, creating it if needed.

        Returns:
            Tuple of (conversation, created). ``created`` is False when the
            conversation already existed. If ``user_a`` had hidden or left it,
            it is restored to their view.
        """
        if user_a == user_b:
            raise InvalidPayload("A direct conversation needs two different participants")
        await self._require_users([user_a, user_b])

        async with self.locks.hold(("direct", direct_key(user_a, user_b))):
            existing = await self._db.call(self._repo.find_direct, user_a, user_b)
            if existing is not None:
                if user_a in existing.hidden_for or user_a in existing.left_by:
                    existing = await self._restore_view(existing.id, user_a)
                logger.info("[Store] Direct conversation %s already exists", existing.id)
                return existing, False

            conversation = Conversation(
                kind=ConversationKind.DIRECT,
                participant_ids=[user_a, user_b],
            )
            await self._db.call(self._repo.insert_conversation, conversation)
            logger.info(
                "[Store] Created direct conversation %s for %s/%s",
                conversation.id, user_a, user_b,
            )
            return conversation, True

    async def _restore_view(self, conversation_id: str, user_id: str) -> Conversation:
        async with self.serialized(conversation_id):
            conversation = await self.get(conversation_id)
            restored = conversation.model_copy(update={
                "hidden_for": [u for u in conversation.hidden_for if u != user_id],
                "left_by": [u for u in conversation.left_by if u != user_id],
            })
            await self._db.call(self._repo.update_conversation, restored)
            return restored

    async def create_group(
        self, creator_id: str, participant_ids: Sequence[str], title: Optional[str]
    ) -> Conversation:
        title = (title or "").strip()
        if not title:
            raise InvalidPayload("A group conversation requires a title")

        others = [p for p in dict.fromkeys(participant_ids) if p != creator_id]
        if len(others) < self._settings.min_group_others:
            raise InvalidPayload(
                f"A group needs at least {self._settings.min_group_others} other participant(s)"
            )
        members = [creator_id] + others
        if len(members) > self._settings.max_group_size:
            raise InvalidPayload(
                f"A group can have at most {self._settings.max_group_size} participants"
            )
        await self._require_users(members)

        conversation = Conversation(
            kind=ConversationKind.GROUP,
            title=title,
            participant_ids=members,
            admin_ids=[creator_id],
        )
        await self._db.call(self._repo.insert_conversation, conversation)
        logger.info(
            "[Store] Created group %s '%s' with %d participants",
            conversation.id, title, len(members),
        )
        return conversation

    # -----------------------------------------------------------------------
    # Listing
    # -----------------------------------------------------------------------

    async def list_for_user(self, user_id: str) -> List[ConversationView]:
        """Conversations visible to ``user_id``, most recently active first.

        The unread value is the cheap 0/1 indicator derived from the last
        message only.
        """
        conversations = await self._db.call(self._repo.list_conversations, user_id)
        visible = [c for c in conversations if c.visible_to(user_id)]
        last_messages = await self._db.call(
            self._repo.get_messages, [c.last_message_id for c in visible if c.last_message_id]
        )

        views = []
        for conversation in visible:
            last = last_messages.get(conversation.last_message_id or "")
            views.append(ConversationView(
                conversation=conversation,
                last_message=last,
                unread=unread_indicator(last, user_id),
            ))
        return views

    async def list_messages(
        self,
        conversation_id: str,
        requester_id: str,
        before: Optional[datetime] = None,
        limit: Optional[int] = None,
        before_id: Optional[str] = None,
    ) -> List[Message]:
        await self.get_for_participant(conversation_id, requester_id)
        if before_id is not None:
            cursor = await self.get_message(before_id)
            if cursor is None or cursor.conversation_id != conversation_id:
                raise NotFound("Cursor message not found in this conversation")
        if limit is not None:
            limit = max(1, min(limit, self._settings.max_page_size))
        return await self._db.call(
            self._repo.list_messages, conversation_id, before, limit, before_id
        )

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def validate_payload(
        self, body: Optional[str], media: Optional[MediaRef]
    ) -> Optional[str]:
        """Normalize a message body and enforce the body-or-media rule."""
        if body is not None:
            body = body.strip() or None
        if body is None and media is None:
            raise InvalidPayload("A message needs a body or a media attachment")
        if body is not None and len(body) > self._settings.max_body_length:
            raise InvalidPayload(
                f"Message body exceeds {self._settings.max_body_length} characters"
            )
        return body

    async def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        body: Optional[str] = None,
        media: Optional[MediaRef] = None,
    ) -> Message:
        """Persist a message and point the conversation summary at it.

        Raises:
            NotFound: Conversation does not exist.
            Forbidden: Sender is not a participant.
            InvalidPayload: Neither body nor media.
            SummaryUpdateFailed: Message saved, summary write failed.
        """
        async with self.serialized(conversation_id):
            conversation = await self.get_for_participant(conversation_id, sender_id)
            body = self.validate_payload(body, media)
            message = Message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                body=body,
                media=media,
                read_by=[sender_id],
            )
            return await self._persist(conversation, message)

    async def _persist(self, conversation: Conversation, message: Message) -> Message:
        await self._db.call(self._repo.insert_message, message)
        try:
            if conversation.kind == ConversationKind.DIRECT and conversation.hidden_for:
                await self._db.call(
                    self._repo.update_conversation,
                    conversation.model_copy(update={
                        "hidden_for": [],
                        "last_message_id": message.id,
                        "updated_at": message.created_at,
                    }),
                )
            else:
                await self._db.call(
                    self._repo.set_summary,
                    conversation.id, message.id, message.created_at,
                )
        except TransientStoreFailure as exc:
            logger.warning(
                "[Store] Message %s saved but summary update failed for %s",
                message.id, conversation.id,
            )
            raise SummaryUpdateFailed(
                f"Summary update failed for conversation {conversation.id}", message
            ) from exc
        return message

    async def repair_summary(self, conversation_id: str) -> Conversation:
        """Re-derive ``last_message_id`` / ``updated_at`` from the true latest message.

        Idempotent; safe to call any number of times.
        """
        async with self.serialized(conversation_id):
            conversation = await self.get(conversation_id)
            latest = await self._db.call(self._repo.latest_message, conversation_id)
            if latest is None:
                last_id, updated_at = None, conversation.updated_at
            else:
                last_id = latest.id
                updated_at = max(conversation.updated_at, latest.created_at)
            await self._db.call(self._repo.set_summary, conversation_id, last_id, updated_at)
            logger.info("[Store] Repaired summary of %s -> %s", conversation_id, last_id)
            return conversation.model_copy(
                update={"last_message_id": last_id, "updated_at": updated_at}
            )

    # -----------------------------------------------------------------------
    # Read markers
    # -----------------------------------------------------------------------

    async def mark_read(self, conversation_id: str, user_id: str) -> int:
        return await self._db.call(self._repo.mark_read, conversation_id, user_id)

    async def unread_count(self, conversation_id: str, user_id: str) -> int:
        return await self._db.call(self._repo.unread_count, conversation_id, user_id)

    # -----------------------------------------------------------------------
    # Visibility and membership
    # -----------------------------------------------------------------------

    async def hide(self, conversation_id: str, user_id: str) -> Conversation:
        """Soft-hide a direct conversation from one user's list. Idempotent."""
        async with self.serialized(conversation_id):
            conversation = await self.get_for_participant(conversation_id, user_id)
            if conversation.kind != ConversationKind.DIRECT:
                raise InvalidPayload("Only direct conversations can be hidden")
            if user_id in conversation.hidden_for:
                return conversation
            hidden = conversation.model_copy(
                update={"hidden_for": conversation.hidden_for + [user_id]}
            )
            await self._db.call(self._repo.update_conversation, hidden)
            logger.info("[Store] %s hid conversation %s", user_id, conversation_id)
            return hidden

    async def leave(self, conversation_id: str, user_id: str) -> MembershipChange:
        """Remove ``user_id`` from a conversation.

        Group: the user stops being a participant (and admin); if they were
        the last admin the earliest-joined remaining participant is promoted.
        Direct: a one-sided leave; the conversation disappears from the
        user's view and is deleted once both sides have left.
        """
        conversation = await self.get_for_participant(conversation_id, user_id)
        if conversation.kind == ConversationKind.GROUP:
            def plan(fresh: Conversation, users: Dict[str, User]) -> MembershipPlan:
                if not fresh.is_participant(user_id):
                    raise Forbidden("Not a participant of this conversation")
                name = users[user_id].username if user_id in users else "A user"
                return MembershipPlan(
                    participant_ids=[p for p in fresh.participant_ids if p != user_id],
                    admin_ids=[a for a in fresh.admin_ids if a != user_id],
                    system_body=f"{name} left the group.",
                    actor_id=user_id,
                    removed_ids=[user_id],
                )

            return await self.apply_membership(conversation_id, plan)

        async with self.serialized(conversation_id):
            conversation = await self.get_for_participant(conversation_id, user_id)
            left = conversation.model_copy(update={
                "left_by": list(dict.fromkeys(conversation.left_by + [user_id])),
            })
            await self._db.call(self._repo.update_conversation, left)
            deleted = await self.delete_if_empty(conversation_id)
            logger.info(
                "[Store] %s left direct conversation %s (deleted=%s)",
                user_id, conversation_id, deleted,
            )
            return MembershipChange(
                conversation_id=conversation_id,
                conversation=None if deleted else left,
                previous_participant_ids=list(conversation.participant_ids),
                removed_ids=[user_id],
                deleted=deleted,
            )

    async def apply_membership(self, conversation_id: str, plan_fn: PlanFn) -> MembershipChange:
        """Apply a membership plan to the current state of a group.

        ``plan_fn`` receives the fresh conversation and the users it
        references, and either raises (Forbidden, Conflict, ...) or returns
        the new participant/admin lists plus a system message body. The
        admin invariant is enforced on the result regardless of the plan.
        """
        async with self.serialized(conversation_id):
            conversation = await self.get(conversation_id)
            users = await self.get_users(conversation.participant_ids)
            plan = plan_fn(conversation, users)

            participants = list(dict.fromkeys(plan.participant_ids))
            admins = [a for a in dict.fromkeys(plan.admin_ids) if a in participants]
            promoted: List[str] = []
            if not admins and participants:
                promoted = [participants[0]]
                admins = promoted

            updated = conversation.model_copy(update={
                "participant_ids": participants,
                "admin_ids": admins,
                "hidden_for": [u for u in conversation.hidden_for if u in participants],
                "left_by": [u for u in conversation.left_by if u in participants],
                "updated_at": utcnow(),
            })
            await self._db.call(self._repo.update_conversation, updated)

            change = MembershipChange(
                conversation_id=conversation_id,
                conversation=updated,
                previous_participant_ids=list(conversation.participant_ids),
                added_ids=list(plan.added_ids),
                removed_ids=list(plan.removed_ids),
                promoted_ids=promoted,
            )

            if plan.removed_ids and await self.delete_if_empty(conversation_id):
                change.conversation = None
                change.deleted = True
                return change

            body = plan.system_body
            if promoted:
                promoted_users = await self.get_users(promoted)
                name = promoted_users[promoted[0]].username if promoted_users else "A member"
                body = f"{body} {name} is now an admin."

            message = Message(
                conversation_id=conversation_id,
                sender_id=plan.actor_id,
                body=body,
                read_by=[plan.actor_id],
                is_system=True,
            )
            change.system_message = await self._persist_system(updated, message)
            change.conversation = updated.model_copy(update={
                "last_message_id": message.id,
                "updated_at": message.created_at,
            })
            logger.info(
                "[Store] Membership of %s changed: +%s -%s promoted=%s",
                conversation_id, change.added_ids, change.removed_ids, promoted,
            )
            return change

    async def _persist_system(self, conversation: Conversation, message: Message) -> Message:
        try:
            return await self._persist(conversation, message)
        except SummaryUpdateFailed:
            await self.repair_summary(conversation.id)
            return message

    async def delete_if_empty(self, conversation_id: str) -> bool:
        """Delete a conversation (and its messages) once nobody references it."""
        async with self.serialized(conversation_id):
            conversation = await self._db.call(self._repo.get_conversation, conversation_id)
            if conversation is None:
                return False
            unreferenced = not conversation.participant_ids or (
                conversation.kind == ConversationKind.DIRECT
                and set(conversation.participant_ids) <= set(conversation.left_by)
            )
            if not unreferenced:
                return False
            await self._db.call(self._repo.delete_conversation, conversation_id)
            logger.info("[Store] Deleted unreferenced conversation %s", conversation_id)
            return True


def unread_indicator(last_message: Optional[Message], user_id: str) -> int:
    """0/1 unread approximation for list views, off the last message only."""
    if last_message is None or last_message.sender_id == user_id:
        return 0
    return 0 if user_id in last_message.read_by else 1
