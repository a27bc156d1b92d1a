import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine

from chatsync.clients.query_service import QueryService
from chatsync.core.logging import log_operation
from chatsync.logic import conversation_processing
from chatsync.logic.event_processing import normalize_event
from chatsync.logic.intents import MessageEdited, MessageTombstoned
from chatsync.models import Attachment, Conversation, Message, UserSummary
from chatsync.repositories.entity_store import EntityStore, StoreChange
from chatsync.schemas.read_model import ConversationSummary, ReadModel
from chatsync.services.connection_service import SessionConnectionManager
from chatsync.services.exceptions import (
    ConflictOrGoneError,
    SyncError,
    ValidationRejectedError,
)
from chatsync.services.reconciliation_service import (
    PendingKind,
    PendingOperation,
    ReconciliationEngine,
)
from chatsync.services.results import OperationResult

logger = logging.getLogger(__name__)

CONVERSATIONS_KEY = "conversations"

Observer = Callable[[StoreChange], None]


def messages_key(conversation_id: str) -> str:
    return f"messages:{conversation_id}"


class RequestSequencer:
    """
    Orders concurrent pulls of the same resource by issuance.

    `issue` hands out increasing sequence numbers per key. `accept` admits a
    response only if no later-issued response for the key was applied.
    """

    def __init__(self):
        self._issued: dict[str, int] = {}
        self._applied: dict[str, int] = {}

    def issue(self, key: str) -> int:
        seq = self._issued.get(key, 0) + 1
        self._issued[key] = seq
        return seq

    def accept(self, key: str, seq: int) -> bool:
        if seq <= self._applied.get(key, 0):
            return False
        self._applied[key] = seq
        return True

    def invalidate(self, key: str) -> None:
        """Makes every response issued so far for `key` stale."""
        self._applied[key] = max(self._applied.get(key, 0), self._issued.get(key, 0))


class SyncCoordinator:
    """
    Facade the presentation layer talks to.

    Pulls and mutations go to the query service; their results, like push
    events, are applied through the reconciliation engine only. Every public
    operation returns an OperationResult instead of raising.
    """

    def __init__(
        self,
        query: QueryService,
        store: EntityStore,
        self_user_id: str,
        *,
        delete_confirmation_timeout: float = 3.0,
        pending_match_window: float = 30.0,
        deferred_patch_limit: int = 256,
    ):
        self.query = query
        self.store = store
        self.self_user_id = self_user_id
        self.delete_confirmation_timeout = delete_confirmation_timeout
        self.engine = ReconciliationEngine(
            store,
            self_user_id,
            self,
            pending_match_window=pending_match_window,
            deferred_patch_limit=deferred_patch_limit,
        )
        self.sequencer = RequestSequencer()
        self.connection: SessionConnectionManager | None = None

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

        self._active_conversation_id: str | None = None
        self._evicted_ids: set[str] = set()
        self._applying_list = False
        self._list_pulls_in_flight = 0
        self._drafts: dict[str, str] = {}
        self._notices: list[str] = []
        self._observers: list[Observer] = []
        self._read_model: ReadModel | None = None

        self._unsubscribe_store = store.subscribe(self._on_store_change)

    def attach_connection(self, connection: SessionConnectionManager) -> None:
        self.connection = connection
        connection.add_state_listener(lambda state: self._changed(StoreChange("connection")))
        connection.join_conversation(self._active_conversation_id)

    @property
    def active_conversation_id(self) -> str | None:
        return self._active_conversation_id

    # Lifecycle

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._event_worker())

    async def stop(self) -> None:
        """Cancels the event worker and any background work still running."""
        tasks = [t for t in (self._worker, *self._tasks) if t and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._tasks.clear()
        self._unsubscribe_store()

    async def wait_idle(self) -> None:
        """Returns once the event queue is drained and no background task runs."""
        while True:
            if not self._queue.empty():
                self.start()
            await self._queue.join()
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                if self._queue.empty():
                    return
                continue
            await asyncio.wait(pending)

    # Push path

    async def enqueue_event(self, event: str, payload: Any) -> None:
        self.start()
        self._queue.put_nowait((event, payload))

    async def _event_worker(self) -> None:
        while True:
            event, payload = await self._queue.get()
            try:
                intent = normalize_event(event, payload)
                await self.engine.apply(intent)
            except Exception as e:
                logger.error(f"Failed to apply push event '{event}': {e}", exc_info=True)
            finally:
                self._queue.task_done()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guarded(coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except SyncError as e:
            logger.warning(f"Background sync failed ({e.kind.value}): {e.message}")
        except Exception as e:
            logger.error(f"Background sync task crashed: {e}", exc_info=True)

    async def resync(self) -> bool:
        """Full resynchronization after the push channel comes back."""
        try:
            await self._pull_conversations()
            if self._active_conversation_id:
                await self._pull_messages(self._active_conversation_id)
        except SyncError as e:
            logger.warning(f"Resynchronization failed ({e.kind.value}): {e.message}")
            return False
        return True

    # Reconciliation listener

    def request_conversations_refresh(self) -> None:
        self._spawn(self._pull_conversations())

    def request_conversation_refetch(self, conversation_id: str) -> None:
        # There is no single-conversation endpoint; the list carries the roster.
        logger.debug(f"Refetching conversation {conversation_id} through the list")
        self._spawn(self._pull_conversations())

    async def resolve_conversation(self, conversation_id: str) -> bool:
        try:
            await self._pull_conversations()
        except SyncError as e:
            logger.warning(f"Could not resolve conversation {conversation_id}: {e.message}")
            return False
        return self.store.get_conversation(conversation_id) is not None

    def conversation_evicted(self, conversation_id: str, notice: str | None) -> None:
        self._evicted_ids.add(conversation_id)
        self._drafts.pop(conversation_id, None)
        if not self._applying_list:
            # Pulls issued before the eviction must not bring it back.
            self.sequencer.invalidate(CONVERSATIONS_KEY)
            if self._list_pulls_in_flight:
                # The discarded pulls may carry a preview correction.
                self.request_conversations_refresh()
        self.sequencer.invalidate(messages_key(conversation_id))

        if conversation_id == self._active_conversation_id:
            self._set_active(None)
            if notice:
                self._notices.append(notice)
                self._changed(StoreChange("notices", conversation_id))

    # Pulls

    async def _pull_conversations(self) -> bool:
        seq = self.sequencer.issue(CONVERSATIONS_KEY)
        self._list_pulls_in_flight += 1
        try:
            conversations = await self.query.list_conversations()
        finally:
            self._list_pulls_in_flight -= 1
        if not self.sequencer.accept(CONVERSATIONS_KEY, seq):
            logger.debug(f"Discarding stale conversation list (request {seq})")
            return False
        self._applying_list = True
        try:
            self.engine.apply_conversation_list(conversations)
        finally:
            self._applying_list = False
        self._evicted_ids.difference_update(c.id for c in conversations)
        return True

    async def _pull_messages(self, conversation_id: str) -> bool:
        key = messages_key(conversation_id)
        seq = self.sequencer.issue(key)
        messages = await self.query.list_messages(conversation_id)
        if conversation_id in self._evicted_ids:
            logger.debug(f"Discarding messages of evicted conversation {conversation_id}")
            return False
        if not self.sequencer.accept(key, seq):
            logger.debug(f"Discarding stale message page for {conversation_id} (request {seq})")
            return False
        self.engine.apply_message_page(conversation_id, messages)
        return True

    async def _await_confirmation(
        self, op: PendingOperation, fallback: Callable[[], Awaitable[Any]]
    ) -> None:
        """Waits for the push echo of a delete, then falls back to a pull."""
        try:
            await asyncio.wait_for(op.confirmed.wait(), self.delete_confirmation_timeout)
            return
        except asyncio.TimeoutError:
            logger.info(
                f"No confirmation for {op.kind.value} within "
                f"{self.delete_confirmation_timeout}s; pulling instead"
            )
        self.engine.settle(op.token)
        await fallback()

    # Operations

    @log_operation
    async def load_conversations(self) -> OperationResult[list[Conversation]]:
        try:
            await self._pull_conversations()
        except SyncError as e:
            return OperationResult.failure(e)
        return OperationResult.success(self.store.get_conversations())

    @log_operation
    async def open_conversation(self, conversation_id: str) -> OperationResult[list[Message]]:
        self._set_active(conversation_id)
        return await self.load_messages(conversation_id)

    def close_conversation(self) -> OperationResult[None]:
        self._set_active(None)
        return OperationResult.success()

    @log_operation
    async def load_messages(self, conversation_id: str) -> OperationResult[list[Message]]:
        try:
            await self._pull_messages(conversation_id)
        except ConflictOrGoneError as e:
            self.engine.forget_conversation(conversation_id)
            self.request_conversations_refresh()
            return OperationResult.failure(e)
        except SyncError as e:
            return OperationResult.failure(e)
        return OperationResult.success(self.store.get_messages(conversation_id))

    @log_operation
    async def send_message(
        self, conversation_id: str, content: str, attachment: Attachment | None = None
    ) -> OperationResult[Message | None]:
        content = content or ""
        if not content.strip() and attachment is None:
            return OperationResult.failure(ValidationRejectedError("Cannot send an empty message"))

        op = self.engine.begin_send(conversation_id, content, attachment)
        try:
            message = await self.query.create_message(conversation_id, content, attachment)
        except SyncError as e:
            self.engine.rollback(op.token)
            self._drafts[conversation_id] = content
            self._changed(StoreChange("drafts", conversation_id))
            if isinstance(e, ConflictOrGoneError):
                self.request_conversations_refresh()
            return OperationResult.failure(e)

        if message is not None:
            self.engine.confirm_send(op.token, message)
        self._drafts.pop(conversation_id, None)
        try:
            await self._pull_messages(conversation_id)
        except SyncError as e:
            logger.warning(f"Reload after send to {conversation_id} failed: {e.message}")
        finally:
            self.engine.settle(op.token)
        self.request_conversations_refresh()
        return OperationResult.success(message)

    @log_operation
    async def edit_message(self, message_id: str, new_content: str) -> OperationResult[Message | None]:
        content = (new_content or "").strip()
        if not content:
            return OperationResult.failure(ValidationRejectedError("Message content cannot be empty"))

        existing = self.store.get_message(message_id)
        if existing is not None and existing.is_pending:
            return OperationResult.failure(
                ValidationRejectedError("Message has not been confirmed yet")
            )
        if existing is not None and existing.is_tombstoned:
            return OperationResult.failure(ConflictOrGoneError("Message was deleted"))
        conversation_id = existing.conversation_id if existing else None

        op = self.engine.begin(PendingKind.EDIT_MESSAGE, conversation_id, message_id, content)
        try:
            message = await self.query.update_message(message_id, content, conversation_id)
        except SyncError as e:
            self.engine.rollback(op.token)
            if isinstance(e, ConflictOrGoneError) and conversation_id:
                self._spawn(self._pull_messages(conversation_id))
            return OperationResult.failure(e)

        if message is not None:
            await self.engine.apply(
                MessageEdited(
                    message_id=message.id,
                    conversation_id=message.conversation_id,
                    content=message.content,
                    edited_at=message.edited_at or op.issued_at,
                )
            )
        elif conversation_id:
            try:
                await self._pull_messages(conversation_id)
            except SyncError as e:
                logger.warning(f"Reload after edit of {message_id} failed: {e.message}")
        self.engine.settle(op.token)
        return OperationResult.success(self.store.get_message(message_id))

    @log_operation
    async def delete_message(self, message_id: str) -> OperationResult[None]:
        existing = self.store.get_message(message_id)
        if existing is not None and existing.is_pending:
            return OperationResult.failure(
                ValidationRejectedError("Message has not been confirmed yet")
            )
        conversation_id = existing.conversation_id if existing else None

        op = self.engine.begin(PendingKind.DELETE_MESSAGE, conversation_id, message_id)
        try:
            await self.query.delete_message(message_id)
        except ConflictOrGoneError:
            logger.info(f"Message {message_id} is already gone")
            await self.engine.apply(
                MessageTombstoned(message_id=message_id, conversation_id=conversation_id)
            )
            return OperationResult.success()
        except SyncError as e:
            self.engine.rollback(op.token)
            return OperationResult.failure(e)

        async def fallback() -> None:
            if conversation_id:
                await self._pull_messages(conversation_id)
            await self._pull_conversations()

        self._spawn(self._await_confirmation(op, fallback))
        return OperationResult.success()

    @log_operation
    async def delete_conversation(self, conversation_id: str) -> OperationResult[None]:
        op = self.engine.begin(PendingKind.DELETE_CONVERSATION, conversation_id)
        try:
            await self.query.delete_conversation(conversation_id)
        except ConflictOrGoneError:
            logger.info(f"Conversation {conversation_id} is already gone")
            self.engine.settle(op.token)
            self.engine.forget_conversation(conversation_id)
            self.request_conversations_refresh()
            return OperationResult.success()
        except SyncError as e:
            self.engine.rollback(op.token)
            return OperationResult.failure(e)

        self._spawn(self._await_confirmation(op, self._pull_conversations))
        return OperationResult.success()

    @log_operation
    async def create_conversation(
        self, participant_ids: list[str], name: str | None = None
    ) -> OperationResult[Conversation | None]:
        ids = [uid for uid in dict.fromkeys(participant_ids) if uid and uid != self.self_user_id]
        if not ids:
            return OperationResult.failure(
                ValidationRejectedError("A conversation needs at least one other participant")
            )
        name = name.strip() if name else None

        try:
            conversation = await self.query.create_conversation(ids, name or None)
        except SyncError as e:
            return OperationResult.failure(e)

        if conversation is None:
            return await self.load_conversations()
        self._evicted_ids.discard(conversation.id)
        conversation = self.engine.apply_confirmed_conversation(conversation)
        await self.open_conversation(conversation.id)
        return OperationResult.success(conversation)

    @log_operation
    async def rename_conversation(
        self, conversation_id: str, name: str
    ) -> OperationResult[Conversation | None]:
        name = (name or "").strip()
        if not name:
            return OperationResult.failure(ValidationRejectedError("Name cannot be empty"))

        try:
            conversation = await self.query.update_conversation(conversation_id, name)
        except SyncError as e:
            if isinstance(e, ConflictOrGoneError):
                self.request_conversations_refresh()
            return OperationResult.failure(e)

        if conversation is None:
            try:
                await self._pull_conversations()
            except SyncError as e:
                return OperationResult.failure(e)
            return OperationResult.success(self.store.get_conversation(conversation_id))
        self._evicted_ids.discard(conversation.id)
        return OperationResult.success(self.engine.apply_confirmed_conversation(conversation))

    @log_operation
    async def add_participants(
        self, conversation_id: str, user_ids: list[str]
    ) -> OperationResult[Conversation | None]:
        ids = [uid for uid in dict.fromkeys(user_ids) if uid]
        if not ids:
            return OperationResult.failure(ValidationRejectedError("No participants to add"))

        try:
            await self.query.add_participants(conversation_id, ids)
        except SyncError as e:
            if isinstance(e, ConflictOrGoneError):
                self.request_conversations_refresh()
            return OperationResult.failure(e)

        await self._refetch_after_roster_change(conversation_id)
        return OperationResult.success(self.store.get_conversation(conversation_id))

    @log_operation
    async def remove_participant(
        self, conversation_id: str, user_id: str
    ) -> OperationResult[Conversation | None]:
        try:
            await self.query.remove_participant(conversation_id, user_id)
        except ConflictOrGoneError:
            logger.info(f"User {user_id} is no longer in conversation {conversation_id}")
        except SyncError as e:
            return OperationResult.failure(e)

        if user_id == self.self_user_id:
            self.engine.forget_conversation(conversation_id)
        await self._refetch_after_roster_change(conversation_id)
        return OperationResult.success(self.store.get_conversation(conversation_id))

    async def _refetch_after_roster_change(self, conversation_id: str) -> None:
        try:
            await self._pull_conversations()
        except SyncError as e:
            logger.warning(f"Refetch of conversation {conversation_id} failed: {e.message}")

    @log_operation
    async def list_users(self) -> OperationResult[list[UserSummary]]:
        try:
            users = await self.query.list_users()
        except SyncError as e:
            return OperationResult.failure(e)
        return OperationResult.success([u for u in users if u.id != self.self_user_id])

    # Derived reads

    def conversation_preview(self, conversation: Conversation) -> str:
        messages = (
            self.store.get_messages(conversation.id)
            if self.store.has_message_log(conversation.id)
            else None
        )
        return conversation_processing.conversation_preview(conversation, messages)

    def conversation_display_name(self, conversation: Conversation) -> str:
        return conversation_processing.conversation_display_name(conversation, self.self_user_id)

    def read_model(self) -> ReadModel:
        """Snapshot of the current state, rebuilt only after a change."""
        if self._read_model is None:
            active = self._active_conversation_id
            self._read_model = ReadModel(
                conversations=[
                    ConversationSummary(
                        id=c.id,
                        display_name=self.conversation_display_name(c),
                        preview=self.conversation_preview(c),
                        is_group=c.is_group,
                        participant_count=len(c.participants),
                        updated_at=c.updated_at,
                    )
                    for c in self.store.get_conversations()
                ],
                active_conversation_id=active,
                messages=[m.model_copy() for m in self.store.get_messages(active)] if active else [],
                draft=self.get_draft(active) if active else "",
                connection_state=self.connection.state.value if self.connection else "disconnected",
            )
        return self._read_model

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def pop_notices(self) -> list[str]:
        notices, self._notices = self._notices, []
        return notices

    def set_draft(self, conversation_id: str, text: str) -> None:
        if text:
            self._drafts[conversation_id] = text
        else:
            self._drafts.pop(conversation_id, None)
        self._changed(StoreChange("drafts", conversation_id))

    def get_draft(self, conversation_id: str) -> str:
        return self._drafts.get(conversation_id, "")

    # Change propagation

    def _set_active(self, conversation_id: str | None) -> None:
        self._active_conversation_id = conversation_id
        if self.connection:
            self.connection.join_conversation(conversation_id)
        self._changed(StoreChange("selection", conversation_id))

    def _on_store_change(self, change: StoreChange) -> None:
        self._changed(change)

    def _changed(self, change: StoreChange) -> None:
        self._read_model = None
        for observer in list(self._observers):
            try:
                observer(change)
            except Exception as e:
                logger.error(f"Observer failed on {change}: {e}", exc_info=True)
