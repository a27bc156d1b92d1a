import logging
from typing import Any, Callable

from pydantic import ValidationError

from chatsync.logic.intents import (
    ConversationDeleted,
    ConversationParticipantRemoved,
    ConversationRenamed,
    Intent,
    MessageCreated,
    MessageEdited,
    MessageTombstoned,
    Unrecognized,
)
from chatsync.schemas.events import (
    ConversationDeletedEvent,
    ConversationUpdatedEvent,
    MessageDeletedEvent,
    MessageUpdatedEvent,
    NewMessageEvent,
    ParticipantRemovedEvent,
)

# Translation of raw push notifications into canonical intents.
# Pure: nothing here touches the entity store.

logger = logging.getLogger(__name__)


def _nest(payload: dict, key: str) -> dict:
    """Accepts `{key: {...}, ...}` as well as the bare object itself."""
    if key in payload:
        return payload
    return {key: payload, "conversationId": payload.get("conversationId")}


def _message_created(payload: dict) -> Intent:
    event = NewMessageEvent.model_validate(_nest(payload, "message"))
    message = event.message.to_model(conversation_id=event.conversation_id)
    return MessageCreated(message=message)


def _message_edited(payload: dict) -> Intent:
    event = MessageUpdatedEvent.model_validate(_nest(payload, "message"))
    message = event.message
    if message.content is None:
        raise ValueError(f"Edit for message {message.id} carries no content")
    return MessageEdited(
        message_id=message.id,
        conversation_id=message.conversation_id or payload.get("conversationId"),
        content=message.content,
        edited_at=message.resolved_edited_at() or message.updated_at,
    )


def _message_deleted(payload: dict) -> Intent:
    event = MessageDeletedEvent.model_validate(payload)
    return MessageTombstoned(
        message_id=event.message_id, conversation_id=event.conversation_id
    )


_CONVERSATION_FIELDS = {
    "name": "display_name",
    "is_group": "is_group",
    "participants": "participants",
    "messages": "last_message_preview",
}


def _conversation_updated(payload: dict) -> Intent:
    event = ConversationUpdatedEvent.model_validate(_nest(payload, "conversation"))
    conversation = event.conversation
    fields = frozenset(
        _CONVERSATION_FIELDS[name]
        for name in conversation.model_fields_set
        if name in _CONVERSATION_FIELDS
    )
    return ConversationRenamed(conversation=conversation.to_model(), fields=fields)


def _participant_removed(payload: dict) -> Intent:
    event = ParticipantRemovedEvent.model_validate(payload)
    return ConversationParticipantRemoved(
        conversation_id=event.conversation_id, user_id=event.user_id
    )


def _conversation_deleted(payload: dict) -> Intent:
    event = ConversationDeletedEvent.model_validate(payload)
    return ConversationDeleted(conversation_id=event.conversation_id)


_HANDLERS: dict[str, Callable[[dict], Intent]] = {
    "new-message": _message_created,
    "newMessage": _message_created,
    "message-updated": _message_edited,
    "messageUpdated": _message_edited,
    "message-deleted": _message_deleted,
    "messageDeleted": _message_deleted,
    "conversation-updated": _conversation_updated,
    "conversationUpdated": _conversation_updated,
    "participant-removed": _participant_removed,
    "participantRemoved": _participant_removed,
    "conversation-deleted": _conversation_deleted,
    "conversationDeleted": _conversation_deleted,
}

KNOWN_EVENTS = frozenset(_HANDLERS)


def normalize_event(event: str, payload: Any) -> Intent:
    """
    Converts one raw push notification into a canonical intent.

    Never raises: unknown discriminants and malformed payloads come back as
    `Unrecognized` and are logged.
    """
    handler = _HANDLERS.get(event)
    if handler is None:
        logger.info(f"Dropping unrecognized push event '{event}'")
        return Unrecognized(event=event, reason="unknown event", payload=payload)

    if not isinstance(payload, dict):
        logger.warning(f"Dropping '{event}' with non-object payload: {payload!r}")
        return Unrecognized(event=event, reason="payload is not an object", payload=payload)

    try:
        return handler(payload)
    except (ValidationError, ValueError) as e:
        logger.warning(f"Dropping malformed '{event}' payload: {e}")
        return Unrecognized(event=event, reason=str(e), payload=payload)
