import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from chatsync.models import Conversation, Message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreChange:
    """Change signal emitted after every effective mutation."""

    kind: str  # "conversations" | "messages"
    conversation_id: str | None = None


StoreListener = Callable[[StoreChange], None]


class EntityStore:
    """
    In-memory conversations and message logs for one session.

    Every mutator is idempotent for its own input and reports whether it
    changed anything. Listeners are notified only on effective changes.
    """

    def __init__(self):
        self._conversations: dict[str, Conversation] = {}
        self._logs: dict[str, dict[str, Message]] = {}
        self._message_owner: dict[str, str] = {}
        self._listeners: list[StoreListener] = []

    # Change signal

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, kind: str, conversation_id: str | None = None) -> None:
        change = StoreChange(kind=kind, conversation_id=conversation_id)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Store listener failed on {change}: {e}", exc_info=True)

    # Reads

    def get_conversations(self) -> list[Conversation]:
        """Conversations, most recently updated first."""
        ordered = sorted(self._conversations.values(), key=lambda c: c.id)
        return sorted(ordered, key=lambda c: c.updated_at, reverse=True)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def has_message_log(self, conversation_id: str) -> bool:
        return conversation_id in self._logs

    def get_messages(self, conversation_id: str) -> list[Message]:
        """Messages ordered by `created_at`, ties broken by id."""
        log = self._logs.get(conversation_id, {})
        return sorted(log.values(), key=lambda m: m.sort_key)

    def get_message(self, message_id: str) -> Message | None:
        owner = self._message_owner.get(message_id)
        if owner is None:
            return None
        return self._logs[owner].get(message_id)

    # Conversation mutators

    def replace_conversations(self, conversations: Iterable[Conversation]) -> list[str]:
        """
        Replaces the conversation list wholesale.

        Existing instances are updated in place so their identity is stable.
        Returns the ids of evicted conversations.
        """
        incoming = {c.id: c for c in conversations}
        evicted = [cid for cid in self._conversations if cid not in incoming]
        changed = bool(evicted)

        for cid in evicted:
            self._drop(cid)
        for cid, conversation in incoming.items():
            current = self._conversations.get(cid)
            if current is None:
                self._conversations[cid] = conversation
                changed = True
            elif current.update_from(conversation):
                changed = True

        if changed:
            self._notify("conversations")
        return evicted

    def upsert_conversation(
        self, conversation: Conversation, fields: Iterable[str] | None = None
    ) -> Conversation:
        """Inserts a conversation or patches the existing instance in place."""
        current = self._conversations.get(conversation.id)
        if current is None:
            self._conversations[conversation.id] = conversation
            self._notify("conversations", conversation.id)
            return conversation
        if current.update_from(conversation, fields):
            self._notify("conversations", conversation.id)
        return current

    def evict_conversation(self, conversation_id: str) -> bool:
        if conversation_id not in self._conversations and conversation_id not in self._logs:
            return False
        self._drop(conversation_id)
        self._notify("conversations", conversation_id)
        return True

    def _drop(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)
        for message_id in self._logs.pop(conversation_id, {}):
            self._message_owner.pop(message_id, None)

    # Message mutators

    @staticmethod
    def _merge(current: Message | None, incoming: Message) -> Message:
        """Keeps tombstones sticky and never rolls an edit back to older content."""
        if current is None:
            return incoming
        update = {}
        if current.is_tombstoned and not incoming.is_tombstoned:
            update["is_tombstoned"] = True
        if current.edited_at and (
            incoming.edited_at is None or incoming.edited_at < current.edited_at
        ):
            update["content"] = current.content
            update["edited_at"] = current.edited_at
        return incoming.model_copy(update=update) if update else incoming

    def replace_messages(self, conversation_id: str, messages: Iterable[Message]) -> None:
        """Replaces a conversation's message log wholesale."""
        previous = self._logs.get(conversation_id, {})
        for message_id in previous:
            self._message_owner.pop(message_id, None)
        log = {}
        for message in messages:
            log[message.id] = self._merge(previous.get(message.id), message)
            self._message_owner[message.id] = conversation_id
        self._logs[conversation_id] = log
        self._notify("messages", conversation_id)

    def upsert_message(self, message: Message) -> bool:
        """Inserts or refreshes a message."""
        log = self._logs.setdefault(message.conversation_id, {})
        current = log.get(message.id)
        message = self._merge(current, message)
        if current == message:
            return False
        log[message.id] = message
        self._message_owner[message.id] = message.conversation_id
        self._notify("messages", message.conversation_id)
        return True

    def replace_message(self, old_id: str, message: Message) -> bool:
        """Swaps a placeholder for its confirmed counterpart."""
        owner = self._message_owner.get(old_id)
        if owner is not None and old_id != message.id:
            self._logs[owner].pop(old_id, None)
            self._message_owner.pop(old_id, None)
            self._notify("messages", owner)
        return self.upsert_message(message)

    def patch_message(self, message_id: str, content: str, edited_at: datetime | None) -> bool:
        """Applies an edit unless the stored copy is already newer."""
        message = self.get_message(message_id)
        if message is None:
            return False
        if message.edited_at and edited_at and edited_at < message.edited_at:
            return False
        if message.content == content and message.edited_at == (edited_at or message.edited_at):
            return False
        message.content = content
        message.edited_at = edited_at or message.edited_at
        self._notify("messages", message.conversation_id)
        return True

    def tombstone_message(self, message_id: str) -> bool:
        message = self.get_message(message_id)
        if message is None or message.is_tombstoned:
            return False
        message.is_tombstoned = True
        self._notify("messages", message.conversation_id)
        return True

    def remove_message(self, message_id: str) -> bool:
        owner = self._message_owner.pop(message_id, None)
        if owner is None:
            return False
        self._logs[owner].pop(message_id, None)
        self._notify("messages", owner)
        return True
