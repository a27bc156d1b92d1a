from typing import AsyncGenerator

import pytest
from fake_chat_service import FakeChatState, create_app
from httpx import ASGITransport
from test_helpers import SELF_ID, FakePushTransport, ScriptedQueryService

from chatsync.clients.query_service import HttpQueryService
from chatsync.repositories.entity_store import EntityStore
from chatsync.services.connection_service import BackoffStrategy
from chatsync.services.sync_coordinator import SyncCoordinator
from chatsync.session import ChatSession


@pytest.fixture
def store() -> EntityStore:
    return EntityStore()


@pytest.fixture
def query() -> ScriptedQueryService:
    return ScriptedQueryService(SELF_ID)


@pytest.fixture
async def coordinator(
    query: ScriptedQueryService, store: EntityStore
) -> AsyncGenerator[SyncCoordinator, None]:
    coordinator = SyncCoordinator(
        query,
        store,
        SELF_ID,
        delete_confirmation_timeout=0.05,
    )
    coordinator.start()
    yield coordinator
    await coordinator.stop()


@pytest.fixture
def transport() -> FakePushTransport:
    return FakePushTransport()


# Fake chat service with a few users and one conversation already in place
@pytest.fixture
def chat_state() -> FakeChatState:
    state = FakeChatState(SELF_ID)
    state.add_user(SELF_ID, "Sam", "Self")
    state.add_user("u-alice", "Alice", "Adams")
    state.add_user("u-bob", "Bob", "Brown")
    state.add_conversation("c1", [SELF_ID, "u-alice"])
    state.add_message("c1", "u-alice", "Hi Sam")
    return state


@pytest.fixture
async def http_query(chat_state: FakeChatState) -> AsyncGenerator[HttpQueryService, None]:
    async with HttpQueryService(
        "http://test", transport=ASGITransport(app=create_app(chat_state))
    ) as service:
        yield service


@pytest.fixture
async def session(
    http_query: HttpQueryService, transport: FakePushTransport
) -> AsyncGenerator[ChatSession, None]:
    session = ChatSession(
        SELF_ID,
        http_query,
        transport,
        delete_confirmation_timeout=0.05,
        backoff=BackoffStrategy(base_delay=0.001, max_delay=0.01),
    )
    yield session
    await session.close()
