"""Read-State Tracker: read markers and exact unread counts.

markRead is a set-union of the reader into ``readBy`` of every message they
did not send, so repeating it changes nothing. Updates for one
(conversation, user) pair are serialized by their own lock; they never wait
on the conversation lock a send holds. The resulting ``readStateChanged``
event goes to the reader's personal group only, which keeps badges in sync
across the reader's own devices.
"""
import logging

from chatrelay.concurrency import KeyedLock
from chatrelay.conversations.service import ConversationStore
from chatrelay.realtime import events
from chatrelay.realtime.presence import PresenceRouter, personal_group

logger = logging.getLogger(__name__)


class ReadStateTracker:

    def __init__(self, store: ConversationStore, presence: PresenceRouter) -> None:
        self._store = store
        self._presence = presence
        self._locks = KeyedLock()

    async def mark_read(self, conversation_id: str, user_id: str) -> int:
        """Mark every message in the conversation as read by ``user_id``.

        Returns:
            Number of messages that were newly marked.

        Raises:
            NotFound: Conversation does not exist.
            Forbidden: User is not a participant.
        """
        await self._store.get_for_participant(conversation_id, user_id)

        async with self._locks.hold(("read", conversation_id, user_id)):
            updated = await self._store.mark_read(conversation_id, user_id)
            unread = await self._store.unread_count(conversation_id, user_id)

        if updated:
            logger.info(
                "[ReadState] %s read %d message(s) in %s", user_id, updated, conversation_id
            )
        await self._presence.broadcast(
            personal_group(user_id),
            events.read_state_changed(conversation_id, user_id, updated, unread),
        )
        return updated

    async def unread_count(self, conversation_id: str, user_id: str) -> int:
        """Exact number of messages from others that ``user_id`` has not read."""
        await self._store.get_for_participant(conversation_id, user_id)
        return await self._store.unread_count(conversation_id, user_id)
