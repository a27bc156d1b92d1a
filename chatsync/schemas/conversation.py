from chatsync.models import Conversation, ParticipantRef

from .common import EPOCH, Identifier, Timestamp, WireModel
from .message import MessagePayload
from .user import UserPayload


class ParticipantPayload(WireModel):
    user: UserPayload | None = None
    user_id: Identifier | None = None

    def to_ref(self) -> ParticipantRef | None:
        if self.user:
            user = self.user.to_model()
            return ParticipantRef(
                user_id=user.id,
                display_name=user.display_name,
                first_name=user.first_name or None,
            )
        if self.user_id:
            return ParticipantRef(user_id=self.user_id, display_name=self.user_id)
        return None


class ConversationPayload(WireModel):
    id: Identifier
    name: str | None = None
    is_group: bool = False
    participants: list[ParticipantPayload] = []
    messages: list[MessagePayload] = []
    created_at: Timestamp | None = None
    updated_at: Timestamp | None = None

    def to_model(self) -> Conversation:
        participants: dict[str, ParticipantRef] = {}
        for payload in self.participants:
            ref = payload.to_ref()
            if ref and ref.user_id not in participants:
                participants[ref.user_id] = ref

        preview = None
        latest_activity = None
        if self.messages:
            last = max(
                self.messages,
                key=lambda m: (m.created_at or EPOCH, m.id),
            )
            latest_activity = last.created_at
            try:
                preview = last.to_model(conversation_id=self.id).preview_text
            except ValueError:
                preview = last.content or None

        return Conversation(
            id=self.id,
            display_name=self.name or None,
            is_group=self.is_group,
            participants=list(participants.values()),
            last_message_preview=preview,
            updated_at=self.updated_at or latest_activity or self.created_at or EPOCH,
        )


class ConversationCreateRequest(WireModel):
    participant_ids: list[str]
    is_group: bool = False
    name: str | None = None


class ConversationUpdateRequest(WireModel):
    name: str


class ParticipantsAddRequest(WireModel):
    user_ids: list[str]
