"""ChatRepository abstract interface for the document store.

The repository is the only thing that touches durable state. It is a plain
synchronous CRUD + query surface; invariants, authorization and
serialization live one level up in ``ConversationStore``.

Usage:
    from chatrelay.store import DuckDBChatRepository

    repo = DuckDBChatRepository(":memory:")
    repo.insert_conversation(conversation)
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from chatrelay.conversations.schemas import Conversation, Message, User


class ChatRepository(ABC):
    """CRUD and query operations over users, conversations and messages."""

    # -- users -------------------------------------------------------------

    @abstractmethod
    def upsert_user(self, user: User) -> None:
        """Insert or replace a user record."""

    @abstractmethod
    def get_users(self, user_ids: Sequence[str]) -> Dict[str, User]:
        """Return the known users among ``user_ids`` keyed by id."""

    @abstractmethod
    def search_users(self, prefix: str, limit: int) -> List[User]:
        """Case-insensitive username prefix search."""

    # -- conversations -----------------------------------------------------

    @abstractmethod
    def insert_conversation(self, conversation: Conversation) -> None:
        pass

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    def find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
        """Find the direct conversation between exactly these two users."""

    @abstractmethod
    def list_conversations(self, user_id: str) -> List[Conversation]:
        """All conversations ``user_id`` participates in, newest activity first."""

    @abstractmethod
    def update_conversation(self, conversation: Conversation) -> None:
        """Rewrite title, membership, visibility and summary fields."""

    @abstractmethod
    def set_summary(
        self, conversation_id: str, last_message_id: Optional[str], updated_at: datetime
    ) -> None:
        """Point the conversation at its latest message and bump ``updated_at``."""

    @abstractmethod
    def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation with all of its messages and read markers."""

    # -- messages ----------------------------------------------------------

    @abstractmethod
    def insert_message(self, message: Message) -> None:
        """Insert a message together with its initial read markers."""

    @abstractmethod
    def get_messages(self, message_ids: Sequence[str]) -> Dict[str, Message]:
        pass

    @abstractmethod
    def latest_message(self, conversation_id: str) -> Optional[Message]:
        """The most recently committed message of a conversation."""

    @abstractmethod
    def list_messages(
        self,
        conversation_id: str,
        before: Optional[datetime] = None,
        limit: Optional[int] = None,
        before_id: Optional[str] = None,
    ) -> List[Message]:
        """Messages in commit order; with ``limit``, the newest page before the cursor.

        ``before`` is a timestamp cursor. ``before_id`` is a message id cursor
        that compares by commit order, so equal timestamps are never skipped.
        """

    @abstractmethod
    def mark_read(self, conversation_id: str, user_id: str) -> int:
        """Add ``user_id`` to ``read_by`` of every message not sent by them.

        Returns the number of messages that gained a read marker.
        """

    @abstractmethod
    def unread_count(self, conversation_id: str, user_id: str) -> int:
        pass

    def close(self) -> None:
        """Release any underlying resources."""
