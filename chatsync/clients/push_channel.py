"""Socket.IO transport for the chat push channel.

Reconnection is disabled on the Socket.IO client itself; the session
connection manager owns retries so it can resynchronize after each one.
"""

import logging
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError
from socketio.exceptions import SocketIOError

from chatsync.services.exceptions import ChannelUnavailableError

logger = logging.getLogger(__name__)


class SocketIOPushTransport:
    def __init__(
        self,
        url: str,
        user_id: str,
        namespace: str = "/chat",
        token: str | None = None,
        connect_timeout: float = 10.0,
    ):
        self.url = url.rstrip("/")
        self.user_id = user_id
        self.namespace = namespace
        self.token = token
        self.connect_timeout = connect_timeout

        self._on_event: Callable[[str, Any], Awaitable[None]] | None = None
        self._on_disconnect: Callable[[], Awaitable[None]] | None = None

        self._sio = socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        self._sio.on("connect", self._handle_connect, namespace=self.namespace)
        self._sio.on("disconnect", self._handle_disconnect, namespace=self.namespace)
        self._sio.on("*", self._handle_any, namespace=self.namespace)

    def set_handlers(
        self,
        on_event: Callable[[str, Any], Awaitable[None]],
        on_disconnect: Callable[[], Awaitable[None]],
    ) -> None:
        self._on_event = on_event
        self._on_disconnect = on_disconnect

    @property
    def connected(self) -> bool:
        return self._sio.connected

    async def connect(self) -> None:
        query = urlencode({"userId": self.user_id})
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            await self._sio.connect(
                f"{self.url}?{query}",
                headers=headers,
                namespaces=[self.namespace],
                transports=["websocket"],
                wait_timeout=self.connect_timeout,
            )
        except SocketConnectionError as e:
            raise ChannelUnavailableError(f"Could not connect to {self.url}: {e}") from e

    async def disconnect(self) -> None:
        if self._sio.connected:
            await self._sio.disconnect()

    async def emit(self, event: str, data: Any) -> None:
        if not self._sio.connected:
            raise ChannelUnavailableError(f"Cannot emit '{event}' while disconnected")
        try:
            await self._sio.emit(event, data, namespace=self.namespace)
        except SocketIOError as e:
            raise ChannelUnavailableError(f"Failed to emit '{event}': {e}") from e

    async def _handle_connect(self) -> None:
        logger.info(f"Connected to chat socket {self.url}{self.namespace}")

    async def _handle_disconnect(self, *args) -> None:
        # Newer python-socketio releases pass a reason argument.
        reason = args[0] if args else None
        logger.info(f"Chat socket disconnected (reason: {reason})")
        if self._on_disconnect:
            await self._on_disconnect()

    async def _handle_any(self, event: str, *args) -> None:
        if self._on_event is None:
            return
        data = args[0] if args else None
        await self._on_event(event, data)
