import logging

from chatsync.clients.push_channel import SocketIOPushTransport
from chatsync.clients.query_service import HttpQueryService, QueryService
from chatsync.core.config import Settings, get_settings
from chatsync.repositories.entity_store import EntityStore
from chatsync.services.connection_service import (
    BackoffStrategy,
    PushTransport,
    SessionConnectionManager,
)
from chatsync.services.sync_coordinator import SyncCoordinator

logger = logging.getLogger(__name__)


class ChatSession:
    """
    Owns every piece of synchronization state for one signed-in user.

    Nothing is module-level: the store, engine, connection manager and
    coordinator are built here and torn down by `close()`.
    """

    def __init__(
        self,
        self_user_id: str,
        query: QueryService,
        transport: PushTransport,
        *,
        delete_confirmation_timeout: float = 3.0,
        pending_match_window: float = 30.0,
        deferred_patch_limit: int = 256,
        backoff: BackoffStrategy | None = None,
    ):
        self.self_user_id = self_user_id
        self.query = query
        self.store = EntityStore()
        self.coordinator = SyncCoordinator(
            query,
            self.store,
            self_user_id,
            delete_confirmation_timeout=delete_confirmation_timeout,
            pending_match_window=pending_match_window,
            deferred_patch_limit=deferred_patch_limit,
        )
        self.connection = SessionConnectionManager(
            transport,
            on_event=self.coordinator.enqueue_event,
            on_resync=self.coordinator.resync,
            backoff=backoff,
        )
        self.coordinator.attach_connection(self.connection)
        self._opened = False

    @classmethod
    def from_settings(cls, self_user_id: str, settings: Settings | None = None) -> "ChatSession":
        settings = settings or get_settings()
        query = HttpQueryService(
            settings.API_BASE_URL,
            token=settings.API_TOKEN,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
        )
        transport = SocketIOPushTransport(
            settings.socket_url,
            self_user_id,
            namespace=settings.SOCKET_NAMESPACE,
            token=settings.API_TOKEN,
            connect_timeout=settings.REQUEST_TIMEOUT_SECONDS,
        )
        return cls(
            self_user_id,
            query,
            transport,
            delete_confirmation_timeout=settings.DELETE_CONFIRMATION_TIMEOUT_SECONDS,
            pending_match_window=settings.PENDING_MATCH_WINDOW_SECONDS,
            deferred_patch_limit=settings.DEFERRED_PATCH_LIMIT,
            backoff=BackoffStrategy(
                settings.RECONNECT_BASE_DELAY_SECONDS, settings.RECONNECT_MAX_DELAY_SECONDS
            ),
        )

    async def open(self) -> bool:
        """
        Starts event processing, connects the push channel and loads the
        conversation list. Returns whether that first load succeeded; the
        session stays usable (pull-only) when the channel is down.
        """
        if self._opened:
            return True
        self._opened = True
        logger.info(f"Opening chat session for user {self.self_user_id}")
        self.coordinator.start()
        await self.connection.connect()
        result = await self.coordinator.load_conversations()
        return result.ok

    async def close(self) -> None:
        if not self._opened:
            return
        self._opened = False
        logger.info(f"Closing chat session for user {self.self_user_id}")
        await self.connection.disconnect()
        await self.coordinator.wait_idle()
        await self.coordinator.stop()
        aclose = getattr(self.query, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> "ChatSession":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
