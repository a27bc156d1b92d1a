from chatsync.models import Conversation, Message

# Derived, read-only views over conversations, kept apart from the store
# so they can be tested without any synchronization machinery.

EMPTY_PREVIEW = "No messages yet"
SOLO_CONVERSATION_NAME = "Just You"


def conversation_display_name(conversation: Conversation, self_user_id: str) -> str:
    """
    Explicit name if set; otherwise built from the other participants:
    a single other participant gives their full name, several give their
    first names joined by commas.
    """
    if conversation.display_name:
        return conversation.display_name

    others = [p for p in conversation.participants if p.user_id != self_user_id]
    if not others:
        return SOLO_CONVERSATION_NAME
    if len(others) == 1:
        return others[0].display_name
    return ", ".join(p.first_name or p.display_name for p in others)


def conversation_preview(conversation: Conversation, messages: list[Message] | None) -> str:
    """
    Preview of the most recent message.

    Uses the loaded message log when there is one, the server summary
    otherwise. Tombstoned messages preview as a placeholder.
    """
    if messages:
        return messages[-1].preview_text or EMPTY_PREVIEW
    if conversation.last_message_preview:
        return conversation.last_message_preview
    return EMPTY_PREVIEW
