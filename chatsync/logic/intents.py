from datetime import datetime
from typing import Any, Union

from pydantic import BaseModel, ConfigDict

from chatsync.models import Conversation, Message


class _Intent(BaseModel):
    model_config = ConfigDict(frozen=True)


class MessageCreated(_Intent):
    message: Message


class MessageEdited(_Intent):
    message_id: str
    conversation_id: str | None = None
    content: str
    edited_at: datetime | None = None


class MessageTombstoned(_Intent):
    message_id: str
    conversation_id: str | None = None


class ConversationRenamed(_Intent):
    """General conversation patch (name, participants)."""

    conversation: Conversation
    fields: frozenset[str] | None = None  # Fields present in the payload; None means all


class ConversationParticipantRemoved(_Intent):
    conversation_id: str
    user_id: str


class ConversationDeleted(_Intent):
    conversation_id: str


class Unrecognized(_Intent):
    event: str
    reason: str
    payload: Any = None


Intent = Union[
    MessageCreated,
    MessageEdited,
    MessageTombstoned,
    ConversationRenamed,
    ConversationParticipantRemoved,
    ConversationDeleted,
    Unrecognized,
]
