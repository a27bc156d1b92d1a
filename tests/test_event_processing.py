from chatsync.logic.event_processing import KNOWN_EVENTS, normalize_event
from chatsync.logic.intents import (
    ConversationDeleted,
    ConversationParticipantRemoved,
    ConversationRenamed,
    MessageCreated,
    MessageEdited,
    MessageTombstoned,
    Unrecognized,
)


def test_new_message_nested_shape():
    intent = normalize_event(
        "newMessage",
        {
            "conversationId": "c1",
            "message": {
                "id": 42,
                "sender": {"id": "u-alice", "firstName": "Alice"},
                "content": "",
                "attachmentUrl": "https://files.example/cat.png",
                "attachmentType": "image/png",
                "createdAt": "2024-05-01T12:00:00Z",
            },
        },
    )

    assert isinstance(intent, MessageCreated)
    message = intent.message
    assert message.id == "42"
    assert message.conversation_id == "c1"
    assert message.sender_id == "u-alice"
    assert message.attachment.url == "https://files.example/cat.png"
    assert message.preview_text == "Sent an attachment"


def test_new_message_flat_shape_with_kebab_name():
    intent = normalize_event(
        "new-message",
        {
            "id": "m1",
            "conversationId": "c1",
            "senderId": "u-alice",
            "content": "hi",
            "createdAt": "2024-05-01T12:00:00",
        },
    )

    assert isinstance(intent, MessageCreated)
    assert intent.message.content == "hi"
    assert intent.message.created_at.tzinfo is not None


def test_message_updated_uses_updated_at_as_edit_time():
    intent = normalize_event(
        "messageUpdated",
        {
            "id": "m1",
            "conversationId": "c1",
            "content": "fixed typo",
            "createdAt": "2024-05-01T12:00:00Z",
            "updatedAt": "2024-05-01T12:05:00Z",
        },
    )

    assert isinstance(intent, MessageEdited)
    assert intent.content == "fixed typo"
    assert intent.edited_at.minute == 5


def test_message_updated_without_content_is_unrecognized():
    intent = normalize_event("message-updated", {"message": {"id": "m1"}})

    assert isinstance(intent, Unrecognized)


def test_message_deleted():
    intent = normalize_event("messageDeleted", {"messageId": "m1", "conversationId": "c1"})

    assert intent == MessageTombstoned(message_id="m1", conversation_id="c1")


def test_conversation_updated_reports_present_fields():
    intent = normalize_event("conversationUpdated", {"conversation": {"id": "c1", "name": "Team"}})

    assert isinstance(intent, ConversationRenamed)
    assert intent.conversation.display_name == "Team"
    assert intent.fields == frozenset({"display_name"})


def test_conversation_updated_with_participants():
    intent = normalize_event(
        "conversation-updated",
        {
            "id": "c1",
            "participants": [{"user": {"id": "u-self"}}, {"userId": "u-bob"}],
        },
    )

    assert isinstance(intent, ConversationRenamed)
    assert "participants" in intent.fields
    assert [p.user_id for p in intent.conversation.participants] == ["u-self", "u-bob"]


def test_participant_removed_and_conversation_deleted():
    removed = normalize_event("participantRemoved", {"conversationId": "c1", "userId": 7})
    deleted = normalize_event("conversation-deleted", {"conversationId": "c1"})

    assert removed == ConversationParticipantRemoved(conversation_id="c1", user_id="7")
    assert deleted == ConversationDeleted(conversation_id="c1")


def test_unknown_event_is_unrecognized():
    intent = normalize_event("typing", {"conversationId": "c1"})

    assert isinstance(intent, Unrecognized)
    assert intent.reason == "unknown event"


def test_malformed_payloads_are_unrecognized():
    assert isinstance(normalize_event("newMessage", "not an object"), Unrecognized)
    assert isinstance(normalize_event("newMessage", {"message": {"content": "x"}}), Unrecognized)
    # Missing createdAt cannot be placed in the log.
    assert isinstance(
        normalize_event("newMessage", {"conversationId": "c1", "message": {"id": "m1", "senderId": "u"}}),
        Unrecognized,
    )
    assert isinstance(normalize_event("participantRemoved", {"conversationId": "c1"}), Unrecognized)


def test_both_naming_styles_are_known():
    assert {"newMessage", "new-message", "conversationDeleted", "conversation-deleted"} <= KNOWN_EVENTS
