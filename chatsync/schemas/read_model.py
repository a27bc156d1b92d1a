from datetime import datetime

from pydantic import BaseModel

from chatsync.models import Message


class ConversationSummary(BaseModel):
    """One row of the conversation list as the presentation layer shows it."""

    id: str
    display_name: str
    preview: str
    is_group: bool
    participant_count: int
    updated_at: datetime


class ReadModel(BaseModel):
    """Point-in-time snapshot of the synchronized state."""

    conversations: list[ConversationSummary] = []
    active_conversation_id: str | None = None
    messages: list[Message] = []  # Log of the active conversation
    draft: str = ""
    connection_state: str = "disconnected"
