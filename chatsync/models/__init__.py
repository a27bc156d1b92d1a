# Makes 'models' a package and simplifies imports

from .conversation import Conversation, ParticipantRef
from .message import ATTACHMENT_PLACEHOLDER, DELETED_PLACEHOLDER, Attachment, Message
from .user import UserSummary

__all__ = [
    "ATTACHMENT_PLACEHOLDER",
    "DELETED_PLACEHOLDER",
    "Attachment",
    "Conversation",
    "Message",
    "ParticipantRef",
    "UserSummary",
]
