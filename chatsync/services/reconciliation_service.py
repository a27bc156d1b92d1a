import asyncio
import enum
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Protocol

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
from chatsync.models import Attachment, Conversation, Message
from chatsync.models.conversation import MUTABLE_FIELDS
from chatsync.repositories.entity_store import EntityStore

logger = logging.getLogger(__name__)

REMOVED_NOTICE = "You have been removed from this conversation"
DELETED_NOTICE = "This conversation has been deleted"


class PendingKind(str, enum.Enum):
    SEND_MESSAGE = "send_message"
    EDIT_MESSAGE = "edit_message"
    DELETE_MESSAGE = "delete_message"
    DELETE_CONVERSATION = "delete_conversation"


@dataclass
class PendingOperation:
    """A local mutation issued before the server confirmed it."""

    kind: PendingKind
    conversation_id: str | None
    message_id: str | None = None
    content: str = ""
    attachment: Attachment | None = None
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    confirmed: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def placeholder_id(self) -> str:
        return f"pending-{self.token}"


class ReconciliationListener(Protocol):
    """Follow-up work the engine asks of its owner. Never writes the store."""

    def request_conversations_refresh(self) -> None: ...

    def request_conversation_refetch(self, conversation_id: str) -> None: ...

    async def resolve_conversation(self, conversation_id: str) -> bool: ...

    def conversation_evicted(self, conversation_id: str, notice: str | None) -> None: ...


class ReconciliationEngine:
    """
    Applies canonical intents and pull results to the entity store.

    This is the only writer of the store. It reconciles confirmed remote
    state with pending local operations and asks its listener for
    pull-based corrections instead of trusting derived push data.
    Stale or unknown data is dropped, never raised.
    """

    def __init__(
        self,
        store: EntityStore,
        self_user_id: str,
        listener: ReconciliationListener | None = None,
        *,
        pending_match_window: float = 30.0,
        deferred_patch_limit: int = 256,
    ):
        self.store = store
        self.self_user_id = self_user_id
        self.listener = listener
        self.pending_match_window = pending_match_window
        self.deferred_patch_limit = deferred_patch_limit

        self._pending: "OrderedDict[str, PendingOperation]" = OrderedDict()
        self._deferred: "OrderedDict[str, MessageEdited]" = OrderedDict()

    def bind(self, listener: ReconciliationListener) -> None:
        self.listener = listener

    # Pending operations

    @property
    def pending_operations(self) -> list[PendingOperation]:
        return list(self._pending.values())

    def begin_send(
        self, conversation_id: str, content: str, attachment: Attachment | None = None
    ) -> PendingOperation:
        """Registers a send and shows its placeholder in a loaded log."""
        op = PendingOperation(
            kind=PendingKind.SEND_MESSAGE,
            conversation_id=conversation_id,
            content=content,
            attachment=attachment,
        )
        self._pending[op.token] = op
        if self.store.has_message_log(conversation_id):
            self.store.upsert_message(self._placeholder_for(op))
        return op

    def begin(
        self,
        kind: PendingKind,
        conversation_id: str | None,
        message_id: str | None = None,
        content: str = "",
    ) -> PendingOperation:
        op = PendingOperation(
            kind=kind, conversation_id=conversation_id, message_id=message_id, content=content
        )
        self._pending[op.token] = op
        return op

    def confirm_send(self, token: str, message: Message) -> None:
        """Swaps the placeholder of a send for the server's copy, in place."""
        op = self._pending.pop(token, None)
        if op is None:
            return
        op.confirmed.set()
        if self.store.has_message_log(message.conversation_id):
            self.store.replace_message(op.placeholder_id, message)
        self._apply_deferred(message.id)

    def settle(self, token: str) -> None:
        """Forgets an operation once its outcome has been applied."""
        op = self._pending.pop(token, None)
        if op is None:
            return
        op.confirmed.set()
        if op.kind == PendingKind.SEND_MESSAGE:
            self.store.remove_message(op.placeholder_id)

    def rollback(self, token: str) -> None:
        """Undoes the optimistic part of a failed operation."""
        op = self._pending.pop(token, None)
        if op is None:
            return
        logger.info(f"Rolling back pending {op.kind.value} {op.token}")
        if op.kind == PendingKind.SEND_MESSAGE:
            self.store.remove_message(op.placeholder_id)

    def _placeholder_for(self, op: PendingOperation) -> Message:
        return Message(
            id=op.placeholder_id,
            conversation_id=op.conversation_id,
            sender_id=self.self_user_id,
            content=op.content,
            attachment=op.attachment,
            created_at=op.issued_at,
            is_pending=True,
        )

    def _match_pending_send(self, message: Message) -> PendingOperation | None:
        if message.sender_id != self.self_user_id:
            return None
        attachment_url = message.attachment.url if message.attachment else None
        for op in self._pending.values():
            if op.kind != PendingKind.SEND_MESSAGE:
                continue
            if op.conversation_id != message.conversation_id or op.content != message.content:
                continue
            if (op.attachment.url if op.attachment else None) != attachment_url:
                continue
            drift = abs((message.created_at - op.issued_at).total_seconds())
            if drift <= self.pending_match_window:
                return op
        return None

    def _confirm(self, kind: PendingKind, **match) -> None:
        for token, op in list(self._pending.items()):
            if op.kind == kind and all(getattr(op, k) == v for k, v in match.items()):
                del self._pending[token]
                op.confirmed.set()

    # Push intents

    async def apply(self, intent: Intent) -> None:
        if isinstance(intent, MessageCreated):
            await self._on_message_created(intent)
        elif isinstance(intent, MessageEdited):
            self._on_message_edited(intent)
        elif isinstance(intent, MessageTombstoned):
            self._on_message_tombstoned(intent)
        elif isinstance(intent, ConversationRenamed):
            self._on_conversation_renamed(intent)
        elif isinstance(intent, ConversationParticipantRemoved):
            self._on_participant_removed(intent)
        elif isinstance(intent, ConversationDeleted):
            self._on_conversation_deleted(intent)
        elif isinstance(intent, Unrecognized):
            logger.debug(f"Ignoring unrecognized intent for '{intent.event}': {intent.reason}")
        else:
            logger.warning(f"No reconciliation rule for {type(intent).__name__}")

    async def _on_message_created(self, intent: MessageCreated) -> None:
        message = intent.message
        if not await self._ensure_conversation(message.conversation_id):
            logger.debug(
                f"Dropping message {message.id} for unknown conversation {message.conversation_id}"
            )
            return

        op = self._match_pending_send(message)
        if op is not None:
            self.confirm_send(op.token, message)
        elif self.store.has_message_log(message.conversation_id):
            self.store.upsert_message(message)
            self._apply_deferred(message.id)

        # The push payload says nothing reliable about the *latest* message.
        self._request_conversations_refresh()

    def _on_message_edited(self, intent: MessageEdited) -> None:
        if self.store.get_message(intent.message_id) is None:
            self._defer(intent)
            return
        self.store.patch_message(intent.message_id, intent.content, intent.edited_at)
        self._confirm(PendingKind.EDIT_MESSAGE, message_id=intent.message_id, content=intent.content)

    def _on_message_tombstoned(self, intent: MessageTombstoned) -> None:
        self.store.tombstone_message(intent.message_id)
        self._deferred.pop(intent.message_id, None)
        self._confirm(PendingKind.DELETE_MESSAGE, message_id=intent.message_id)
        self._request_conversations_refresh()

    def _on_conversation_renamed(self, intent: ConversationRenamed) -> None:
        conversation = intent.conversation
        fields = intent.fields
        if (
            (fields is None or "participants" in fields)
            and conversation.participants
            and not conversation.has_participant(self.self_user_id)
        ):
            logger.info(f"Local user no longer in conversation {conversation.id}; evicting")
            self._evict(conversation.id, REMOVED_NOTICE)
            return

        existing = self.store.get_conversation(conversation.id)
        if existing is None and fields is not None and "participants" not in fields:
            # A partial patch is not enough to materialise a conversation.
            self._request_conversations_refresh()
            return
        self.store.upsert_conversation(conversation, fields)

    def _on_participant_removed(self, intent: ConversationParticipantRemoved) -> None:
        if intent.user_id == self.self_user_id:
            self._evict(intent.conversation_id, REMOVED_NOTICE)
        elif self.store.get_conversation(intent.conversation_id) is not None:
            # A stale roster is tolerable until the refetch lands.
            if self.listener:
                self.listener.request_conversation_refetch(intent.conversation_id)

    def _on_conversation_deleted(self, intent: ConversationDeleted) -> None:
        self._confirm(PendingKind.DELETE_CONVERSATION, conversation_id=intent.conversation_id)
        self._evict(intent.conversation_id, DELETED_NOTICE)

    # Pull results

    def apply_conversation_list(self, conversations: Iterable[Conversation]) -> list[str]:
        """Wholesale replace of the conversation list; returns evicted ids."""
        evicted = self.store.replace_conversations(conversations)
        for conversation_id in evicted:
            if self.listener:
                self.listener.conversation_evicted(conversation_id, None)
        return evicted

    def apply_message_page(self, conversation_id: str, messages: Iterable[Message]) -> None:
        """
        Wholesale replace of one message log.

        Placeholders of sends still in flight survive the replace; sends the
        page already contains are resolved here.
        """
        page = [m for m in messages if m.conversation_id == conversation_id]
        for message in page:
            op = self._match_pending_send(message)
            if op is not None:
                self._pending.pop(op.token, None)
                op.confirmed.set()

        in_flight = [
            self._placeholder_for(op)
            for op in self._pending.values()
            if op.kind == PendingKind.SEND_MESSAGE and op.conversation_id == conversation_id
        ]
        self.store.replace_messages(conversation_id, page + in_flight)
        for message in page:
            self._apply_deferred(message.id)

    def apply_confirmed_conversation(self, conversation: Conversation) -> Conversation:
        """Applies a conversation returned by a create or rename call."""
        fields = [
            f
            for f in MUTABLE_FIELDS
            if not (f == "participants" and not conversation.participants)
            and not (f == "last_message_preview" and conversation.last_message_preview is None)
        ]
        return self.store.upsert_conversation(conversation, fields)

    def forget_conversation(self, conversation_id: str) -> None:
        """Evicts a conversation the service reported as gone."""
        self._evict(conversation_id, None)

    # Helpers

    async def _ensure_conversation(self, conversation_id: str) -> bool:
        if self.store.get_conversation(conversation_id) is not None:
            return True
        if self.listener is None:
            return False
        return await self.listener.resolve_conversation(conversation_id)

    def _evict(self, conversation_id: str, notice: str | None) -> None:
        self.store.evict_conversation(conversation_id)
        if self.listener:
            self.listener.conversation_evicted(conversation_id, notice)

    def _request_conversations_refresh(self) -> None:
        if self.listener:
            self.listener.request_conversations_refresh()

    def _defer(self, intent: MessageEdited) -> None:
        current = self._deferred.get(intent.message_id)
        if current and current.edited_at and intent.edited_at and intent.edited_at < current.edited_at:
            return
        self._deferred[intent.message_id] = intent
        self._deferred.move_to_end(intent.message_id)
        while len(self._deferred) > self.deferred_patch_limit:
            dropped, _ = self._deferred.popitem(last=False)
            logger.debug(f"Deferred patch buffer full; dropped edit for {dropped}")

    def _apply_deferred(self, message_id: str) -> None:
        patch = self._deferred.pop(message_id, None)
        if patch is not None:
            self.store.patch_message(message_id, patch.content, patch.edited_at)
