"""Message Pipeline: the send path.

    send()
      -> ConversationStore.append_message()   (authorize + persist + summary)
      -> broadcast messageReceived to conversation:<id>
      -> broadcast conversationUpdated to user:<p> for every participant

The append and the conversation-group broadcast share the store's
per-conversation critical section, so clients viewing a conversation receive
its messages in commit order. The personal-group summaries go out after the
section is released; they carry the whole summary and are idempotent
overwrites on the client, so their relative order does not matter.

If the message is saved but the summary write fails, the pipeline runs
``repair_summary`` exactly once. When that also fails the sender gets a
``TransientStoreFailure`` and nothing is broadcast; the message is durable and
becomes visible on the next fetch.
"""
import logging
from typing import Optional

from chatrelay.conversations.schemas import Conversation, MediaRef, Message
from chatrelay.conversations.serializers import serialize_for_each, serialize_message
from chatrelay.conversations.service import ConversationStore
from chatrelay.errors import SummaryUpdateFailed, TransientStoreFailure
from chatrelay.realtime import events
from chatrelay.realtime.presence import PresenceRouter, conversation_group

logger = logging.getLogger(__name__)


class MessagePipeline:
    """Validates, persists and fans out one message at a time per conversation."""

    def __init__(self, store: ConversationStore, presence: PresenceRouter) -> None:
        self._store = store
        self._presence = presence

    async def send(
        self,
        sender_id: str,
        conversation_id: str,
        body: Optional[str] = None,
        media: Optional[MediaRef] = None,
    ) -> Message:
        """Append a message and fan it out.

        Raises:
            NotFound: Conversation does not exist.
            Forbidden: Sender is not a participant.
            InvalidPayload: Neither body nor media, or body too long.
            TransientStoreFailure: Store unavailable, or summary repair failed.
        """
        async with self._store.serialized(conversation_id):
            message = await self._append(conversation_id, sender_id, body, media)
            conversation = await self._store.get(conversation_id)
            users = await self._store.get_users(conversation.participant_ids)

            delivered = await self._presence.broadcast(
                conversation_group(conversation_id),
                events.message_received(conversation_id, serialize_message(message, users)),
            )

        logger.info(
            "[Pipeline] Message %s in %s delivered to %d live connection(s)",
            message.id, conversation_id, delivered,
        )
        await self._publish_summaries(conversation, users, message)
        return message

    async def _append(
        self,
        conversation_id: str,
        sender_id: str,
        body: Optional[str],
        media: Optional[MediaRef],
    ) -> Message:
        try:
            return await self._store.append_message(conversation_id, sender_id, body, media)
        except SummaryUpdateFailed as exc:
            logger.warning(
                "[Pipeline] Summary update failed for %s, repairing once", conversation_id
            )
            try:
                await self._store.repair_summary(conversation_id)
            except TransientStoreFailure as repair_exc:
                logger.error(
                    "[Pipeline] Summary repair failed for %s; message %s saved, not broadcast",
                    conversation_id, exc.saved_message.id,
                )
                raise TransientStoreFailure(
                    "Message saved but the conversation could not be updated; retry later"
                ) from repair_exc
            return exc.saved_message

    async def _publish_summaries(self, conversation: Conversation, users, message: Message) -> None:
        # A participant who left a direct conversation no longer sees it.
        viewers = [p for p in conversation.participant_ids if p not in conversation.left_by]
        summaries = serialize_for_each(conversation, viewers, users, last_message=message)
        await self._presence.send_each({
            user_id: events.conversation_updated(summary)
            for user_id, summary in summaries.items()
        })
