from chatsync.models import Attachment, Message

from .common import Identifier, Timestamp, WireModel
from .user import UserPayload


class AttachmentPayload(WireModel):
    url: str
    mime_type: str | None = None


class MessagePayload(WireModel):
    """A message as sent by the service, in either of its known shapes."""

    id: Identifier
    conversation_id: Identifier | None = None
    sender_id: Identifier | None = None
    sender: UserPayload | None = None
    content: str | None = None
    attachment: AttachmentPayload | None = None
    attachment_url: str | None = None
    attachment_type: str | None = None
    created_at: Timestamp | None = None
    updated_at: Timestamp | None = None
    edited_at: Timestamp | None = None
    is_deleted: bool = False
    is_tombstoned: bool = False

    def resolved_sender_id(self) -> str | None:
        if self.sender_id:
            return self.sender_id
        return self.sender.id if self.sender else None

    def resolved_attachment(self) -> Attachment | None:
        if self.attachment:
            return Attachment(url=self.attachment.url, mime_type=self.attachment.mime_type)
        if self.attachment_url:
            return Attachment(url=self.attachment_url, mime_type=self.attachment_type)
        return None

    def resolved_edited_at(self):
        if self.edited_at:
            return self.edited_at
        # `updatedAt` equals `createdAt` on untouched rows.
        if self.updated_at and self.created_at and self.updated_at > self.created_at:
            return self.updated_at
        return None

    def to_model(self, conversation_id: str | None = None) -> Message:
        """Builds the entity; raises ValueError when required fields are missing."""
        owner = self.conversation_id or conversation_id
        sender_id = self.resolved_sender_id()
        missing = [
            name
            for name, value in (
                ("conversationId", owner),
                ("senderId", sender_id),
                ("createdAt", self.created_at),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Message {self.id} is missing {', '.join(missing)}")

        return Message(
            id=self.id,
            conversation_id=owner,
            sender_id=sender_id,
            content=self.content or "",
            attachment=self.resolved_attachment(),
            created_at=self.created_at,
            edited_at=self.resolved_edited_at(),
            is_tombstoned=self.is_deleted or self.is_tombstoned,
        )


class MessageCreateRequest(WireModel):
    conversation_id: str
    content: str
    attachment_url: str | None = None
    attachment_type: str | None = None


class MessageUpdateRequest(WireModel):
    content: str
