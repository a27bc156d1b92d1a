from datetime import datetime

from pydantic import BaseModel

DELETED_PLACEHOLDER = "This message was deleted"
ATTACHMENT_PLACEHOLDER = "Sent an attachment"


class Attachment(BaseModel):
    url: str
    mime_type: str | None = None


class Message(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    content: str = ""
    attachment: Attachment | None = None
    created_at: datetime
    edited_at: datetime | None = None
    is_tombstoned: bool = False
    is_pending: bool = False  # Optimistic placeholder awaiting confirmation

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)

    @property
    def preview_text(self) -> str:
        if self.is_tombstoned:
            return DELETED_PLACEHOLDER
        if self.content:
            return self.content
        if self.attachment:
            return ATTACHMENT_PLACEHOLDER
        return ""
