import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from chatsync.models import Attachment, Conversation, Message, ParticipantRef, UserSummary
from chatsync.services.exceptions import ChannelUnavailableError, ConflictOrGoneError, SyncError

SELF_ID = "u-self"
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def ts(seconds: float) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


def make_participant(user_id: str, first_name: str | None = None, last_name: str = "") -> ParticipantRef:
    first_name = first_name or user_id.removeprefix("u-").capitalize()
    return ParticipantRef(
        user_id=user_id,
        display_name=f"{first_name} {last_name}".strip(),
        first_name=first_name,
    )


def make_conversation(
    id: str = "c1",
    participant_ids: tuple[str, ...] = (SELF_ID, "u-alice"),
    name: str | None = None,
    updated_at: datetime | None = None,
    preview: str | None = None,
) -> Conversation:
    """Creates a Conversation with defaults suitable for most tests."""
    return Conversation(
        id=id,
        display_name=name,
        is_group=len(participant_ids) > 2,
        participants=[make_participant(uid) for uid in participant_ids],
        last_message_preview=preview,
        updated_at=updated_at or BASE_TIME,
    )


def make_message(
    id: str = "m1",
    conversation_id: str = "c1",
    sender_id: str = "u-alice",
    content: str = "hello",
    created_at: datetime | None = None,
    edited_at: datetime | None = None,
    attachment: Attachment | None = None,
    is_tombstoned: bool = False,
) -> Message:
    return Message(
        id=id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        attachment=attachment,
        created_at=created_at or BASE_TIME,
        edited_at=edited_at,
        is_tombstoned=is_tombstoned,
    )


def message_event(message: Message) -> dict:
    """Nested `newMessage` payload as the chat server emits it."""
    return {
        "conversationId": message.conversation_id,
        "message": {
            "id": message.id,
            "senderId": message.sender_id,
            "content": message.content,
            "createdAt": message.created_at.isoformat(),
        },
    }


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Polls `predicate` until it holds; fails the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.005)


class FakePushTransport:
    """In-memory push transport recording what the client emits."""

    def __init__(self, fail_connects: int = 0):
        self.fail_connects = fail_connects
        self.connect_calls = 0
        self.connected = False
        self.emitted: list[tuple[str, Any]] = []
        self._on_event = None
        self._on_disconnect = None

    def set_handlers(self, on_event, on_disconnect) -> None:
        self._on_event = on_event
        self._on_disconnect = on_disconnect

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise ChannelUnavailableError("connection refused")
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def emit(self, event: str, data: Any) -> None:
        if not self.connected:
            raise ChannelUnavailableError(f"Cannot emit '{event}' while disconnected")
        self.emitted.append((event, data))

    async def push(self, event: str, payload: Any) -> None:
        await self._on_event(event, payload)

    async def drop(self) -> None:
        self.connected = False
        await self._on_disconnect()


class ScriptedQueryService:
    """
    In-memory query service whose answers and failures tests control.

    Returns copies so the store never shares instances with the fake.
    With `gated` set, list pulls wait until the test resolves them, which
    lets tests pick the order in which concurrent responses arrive.
    """

    def __init__(self, self_user_id: str = SELF_ID):
        self.self_user_id = self_user_id
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, list[Message]] = {}
        self.users: list[UserSummary] = []
        self.calls: list[tuple] = []
        self.errors: dict[str, SyncError] = {}
        self.return_none: set[str] = set()
        self.gated = False
        self.gates: list[asyncio.Future] = []
        self._ids = itertools.count(1)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def add_conversation(self, conversation: Conversation) -> None:
        self.conversations[conversation.id] = conversation.model_copy(deep=True)
        self.messages.setdefault(conversation.id, [])

    def add_message(self, message: Message) -> None:
        self.messages.setdefault(message.conversation_id, []).append(message.model_copy(deep=True))

    async def _call(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        await asyncio.sleep(0)
        if name in self.errors:
            raise self.errors.pop(name)

    async def _gate(self) -> Any:
        future = asyncio.get_running_loop().create_future()
        self.gates.append(future)
        return await future

    def _find_message(self, message_id: str) -> Message:
        for log in self.messages.values():
            for message in log:
                if message.id == message_id:
                    return message
        raise ConflictOrGoneError(f"Message {message_id} not found", status_code=404)

    async def list_conversations(self) -> list[Conversation]:
        await self._call("list_conversations")
        if self.gated:
            return await self._gate()
        return [
            c.model_copy(deep=True)
            for c in self.conversations.values()
            if c.has_participant(self.self_user_id)
        ]

    async def list_messages(self, conversation_id: str) -> list[Message]:
        await self._call("list_messages", conversation_id)
        if self.gated:
            return await self._gate()
        if conversation_id not in self.conversations:
            raise ConflictOrGoneError(f"Conversation {conversation_id} not found", status_code=404)
        return [m.model_copy(deep=True) for m in self.messages.get(conversation_id, [])]

    async def list_users(self) -> list[UserSummary]:
        await self._call("list_users")
        return list(self.users)

    async def create_message(
        self, conversation_id: str, content: str, attachment: Attachment | None = None
    ) -> Message | None:
        await self._call("create_message", conversation_id, content)
        message = Message(
            id=f"m-new-{next(self._ids)}",
            conversation_id=conversation_id,
            sender_id=self.self_user_id,
            content=content,
            attachment=attachment,
            created_at=datetime.now(timezone.utc),
        )
        self.add_message(message)
        if "create_message" in self.return_none:
            return None
        return message.model_copy(deep=True)

    async def update_message(
        self, message_id: str, content: str, conversation_id: str | None = None
    ) -> Message | None:
        await self._call("update_message", message_id, content)
        message = self._find_message(message_id)
        message.content = content
        message.edited_at = datetime.now(timezone.utc)
        if "update_message" in self.return_none:
            return None
        return message.model_copy(deep=True)

    async def delete_message(self, message_id: str) -> None:
        await self._call("delete_message", message_id)
        self._find_message(message_id).is_tombstoned = True

    async def create_conversation(
        self, participant_ids: list[str], name: str | None = None
    ) -> Conversation | None:
        await self._call("create_conversation", tuple(participant_ids), name)
        conversation = make_conversation(
            id=f"c-new-{next(self._ids)}",
            participant_ids=(self.self_user_id, *participant_ids),
            name=name,
            updated_at=datetime.now(timezone.utc),
        )
        self.add_conversation(conversation)
        return conversation.model_copy(deep=True)

    async def update_conversation(self, conversation_id: str, name: str) -> Conversation | None:
        await self._call("update_conversation", conversation_id, name)
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise ConflictOrGoneError(f"Conversation {conversation_id} not found", status_code=404)
        conversation.display_name = name
        if "update_conversation" in self.return_none:
            return None
        return conversation.model_copy(deep=True)

    async def add_participants(self, conversation_id: str, user_ids: list[str]) -> None:
        await self._call("add_participants", conversation_id, tuple(user_ids))
        conversation = self.conversations[conversation_id]
        for uid in user_ids:
            if not conversation.has_participant(uid):
                conversation.participants.append(make_participant(uid))

    async def remove_participant(self, conversation_id: str, user_id: str) -> None:
        await self._call("remove_participant", conversation_id, user_id)
        conversation = self.conversations.get(conversation_id)
        if conversation is None or not conversation.has_participant(user_id):
            raise ConflictOrGoneError(f"{user_id} is not in {conversation_id}", status_code=404)
        conversation.participants = [p for p in conversation.participants if p.user_id != user_id]

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._call("delete_conversation", conversation_id)
        if self.conversations.pop(conversation_id, None) is None:
            raise ConflictOrGoneError(f"Conversation {conversation_id} not found", status_code=404)
        self.messages.pop(conversation_id, None)
