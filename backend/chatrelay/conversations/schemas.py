"""Pydantic models for conversations, messages and their request bodies.

Domain models use snake_case attributes; request bodies accept the camelCase
names clients send (``participantIds``, ``newIds``) as well as snake_case.
Timestamps are naive UTC datetimes throughout (DuckDB ``TIMESTAMP``).
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class ConversationKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    GIF = "gif"


class MediaRef(BaseModel):
    """Reference to a media attachment held by the blob store."""
    url: str = Field(..., min_length=1)
    kind: MediaKind


class User(BaseModel):
    """User reference as the core sees it (owned by the user collaborator)."""
    id: str
    username: str
    display_image: Optional[str] = None


class Conversation(BaseModel):
    """A direct or group conversation.

    ``participant_ids`` keeps join order; the first entry is the
    earliest-joined participant.
    """
    id: str = Field(default_factory=new_id)
    kind: ConversationKind
    title: Optional[str] = None
    participant_ids: List[str] = Field(default_factory=list)
    admin_ids: List[str] = Field(default_factory=list)
    last_message_id: Optional[str] = None
    hidden_for: List[str] = Field(default_factory=list)
    left_by: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids

    def is_admin(self, user_id: str) -> bool:
        return user_id in self.admin_ids

    def recipient_id(self, viewer_id: str) -> Optional[str]:
        """The other participant of a direct conversation."""
        if self.kind != ConversationKind.DIRECT:
            return None
        others = [p for p in self.participant_ids if p != viewer_id]
        return others[0] if others else None

    def visible_to(self, user_id: str) -> bool:
        return (
            self.is_participant(user_id)
            and user_id not in self.hidden_for
            and user_id not in self.left_by
        )


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    conversation_id: str
    sender_id: str
    body: Optional[str] = None
    media: Optional[MediaRef] = None
    read_by: List[str] = Field(default_factory=list)
    is_system: bool = False
    created_at: datetime = Field(default_factory=utcnow)


@dataclass
class ConversationView:
    """A conversation as one user's list shows it."""
    conversation: Conversation
    last_message: Optional[Message] = None
    unread: int = 0


@dataclass
class MembershipPlan:
    """The outcome a membership rule computed against a fresh conversation."""
    participant_ids: List[str]
    admin_ids: List[str]
    system_body: str
    actor_id: str
    added_ids: List[str] = field(default_factory=list)
    removed_ids: List[str] = field(default_factory=list)


@dataclass
class MembershipChange:
    """What a membership mutation did, for fan-out."""
    conversation_id: str
    conversation: Optional[Conversation]
    previous_participant_ids: List[str]
    system_message: Optional[Message] = None
    added_ids: List[str] = field(default_factory=list)
    removed_ids: List[str] = field(default_factory=list)
    promoted_ids: List[str] = field(default_factory=list)
    deleted: bool = False


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateConversationRequest(_CamelModel):
    participant_ids: List[str] = Field(..., min_length=1)
    kind: ConversationKind
    title: Optional[str] = None


class SendMessageRequest(_CamelModel):
    body: Optional[str] = None
    media: Optional[MediaRef] = None


class AddMembersRequest(_CamelModel):
    new_ids: List[str] = Field(..., min_length=1)
