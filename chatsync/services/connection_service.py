import asyncio
import enum
import logging
import random
from typing import Any, Awaitable, Callable, Protocol

from chatsync.services.exceptions import ChannelUnavailableError

logger = logging.getLogger(__name__)

JOIN_CONVERSATION_EVENT = "joinConversation"

EventHandler = Callable[[str, Any], Awaitable[None]]
ResyncHandler = Callable[[], Awaitable[None]]
StateListener = Callable[["ConnectionState"], None]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class PushTransport(Protocol):
    """The wire side of the push channel (see clients.push_channel)."""

    def set_handlers(
        self, on_event: EventHandler, on_disconnect: Callable[[], Awaitable[None]]
    ) -> None: ...

    async def connect(self) -> None:
        """Opens the channel; raises ChannelUnavailableError on failure."""

    async def disconnect(self) -> None: ...

    async def emit(self, event: str, data: Any) -> None: ...


class BackoffStrategy:
    """Capped exponential backoff with jitter."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.attempts = 0

    def get_delay(self) -> float:
        """min(max, base * 2^attempts) plus up to 10% jitter."""
        delay = min(self.max_delay, self.base_delay * (2 ** self.attempts))
        jitter = delay * 0.1 * random.random()
        self.attempts += 1
        return delay + jitter

    def reset(self) -> None:
        self.attempts = 0


class SessionConnectionManager:
    """
    Owns the lifecycle of the push channel.

    States: DISCONNECTED -> CONNECTING -> CONNECTED -> {RECONNECTING ->
    CONNECTED | DISCONNECTED}. Entering CONNECTED re-joins the open
    conversation. Every connection after the first one in the session, and
    every connection made by the reconnect loop, triggers one full
    resynchronization, since the channel cannot replay what was missed.
    Reconnect attempts never stop until disconnect().
    """

    def __init__(
        self,
        transport: PushTransport,
        on_event: EventHandler,
        on_resync: ResyncHandler,
        backoff: BackoffStrategy | None = None,
    ):
        self.transport = transport
        self._on_event = on_event
        self._on_resync = on_resync
        self._backoff = backoff or BackoffStrategy()

        self._state = ConnectionState.DISCONNECTED
        self._state_listeners: list[StateListener] = []
        self._active_conversation_id: str | None = None
        self._has_connected = False
        self._closing = False

        self._reconnect_task: asyncio.Task | None = None
        self._resubscribe_task: asyncio.Task | None = None

        self.transport.set_handlers(self._handle_event, self._handle_transport_disconnect)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def active_conversation_id(self) -> str | None:
        return self._active_conversation_id

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.info(f"Push channel {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Connection state listener failed: {e}", exc_info=True)

    async def connect(self) -> bool:
        """
        Opens the channel. Returns False when it is unavailable; the manager
        then keeps retrying in the background and callers stay pull-only.
        """
        if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return self.is_connected
        self._closing = False
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self.transport.connect()
        except ChannelUnavailableError as e:
            logger.warning(f"Push channel unavailable, continuing pull-only: {e.message}")
            self._schedule_reconnect()
            return False
        await self._enter_connected(resync=self._has_connected)
        return True

    async def disconnect(self) -> None:
        """Closes the channel and cancels re-subscribe and reconnect work."""
        self._closing = True
        for task in (self._reconnect_task, self._resubscribe_task):
            if task and not task.done():
                task.cancel()
        for task in (self._reconnect_task, self._resubscribe_task):
            if task:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None
        self._resubscribe_task = None

        try:
            await self.transport.disconnect()
        except ChannelUnavailableError as e:
            logger.debug(f"Ignoring error while closing push channel: {e.message}")
        self._set_state(ConnectionState.DISCONNECTED)

    def join_conversation(self, conversation_id: str | None) -> None:
        """Records the open conversation and joins it if connected."""
        self._active_conversation_id = conversation_id
        if conversation_id and self.is_connected:
            self._start_resubscribe()

    async def _enter_connected(self, resync: bool) -> None:
        self._has_connected = True
        self._backoff.reset()
        self._set_state(ConnectionState.CONNECTED)
        self._start_resubscribe()
        if resync:
            logger.info("Push channel re-established; resynchronizing")
            try:
                await self._on_resync()
            except Exception as e:
                logger.error(f"Resynchronization after reconnect failed: {e}", exc_info=True)

    def _start_resubscribe(self) -> None:
        if not self._active_conversation_id:
            return
        if self._resubscribe_task and not self._resubscribe_task.done():
            self._resubscribe_task.cancel()
        self._resubscribe_task = asyncio.create_task(
            self._resubscribe(self._active_conversation_id)
        )

    async def _resubscribe(self, conversation_id: str) -> None:
        try:
            await self.transport.emit(JOIN_CONVERSATION_EVENT, conversation_id)
            logger.debug(f"Joined conversation {conversation_id}")
        except ChannelUnavailableError as e:
            logger.warning(f"Could not join conversation {conversation_id}: {e.message}")

    async def _handle_event(self, event: str, data: Any) -> None:
        await self._on_event(event, data)

    async def _handle_transport_disconnect(self) -> None:
        if self._closing:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        logger.warning("Push channel dropped")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        self._set_state(ConnectionState.RECONNECTING)
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._closing:
            wait_time = self._backoff.get_delay()
            logger.info(f"Reconnecting in {wait_time:.2f} seconds...")
            await asyncio.sleep(wait_time)
            if self._closing:
                return
            try:
                await self.transport.connect()
            except ChannelUnavailableError as e:
                logger.warning(f"Reconnect attempt {self._backoff.attempts} failed: {e.message}")
                continue
            self._reconnect_task = None
            # Whatever was pulled while RECONNECTING may already be stale.
            await self._enter_connected(resync=True)
            return
