from .common import Identifier, WireModel
from .conversation import ConversationPayload
from .message import MessagePayload


class NewMessageEvent(WireModel):
    conversation_id: Identifier | None = None
    message: MessagePayload


class MessageUpdatedEvent(WireModel):
    message: MessagePayload


class MessageDeletedEvent(WireModel):
    message_id: Identifier
    conversation_id: Identifier | None = None


class ConversationUpdatedEvent(WireModel):
    conversation: ConversationPayload


class ParticipantRemovedEvent(WireModel):
    conversation_id: Identifier
    user_id: Identifier


class ConversationDeletedEvent(WireModel):
    conversation_id: Identifier
