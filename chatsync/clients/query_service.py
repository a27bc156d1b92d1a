import logging
from typing import Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from chatsync.models import Attachment, Conversation, Message, UserSummary
from chatsync.schemas.conversation import (
    ConversationCreateRequest,
    ConversationPayload,
    ConversationUpdateRequest,
    ParticipantsAddRequest,
)
from chatsync.schemas.message import (
    MessageCreateRequest,
    MessagePayload,
    MessageUpdateRequest,
)
from chatsync.schemas.user import UserPayload
from chatsync.services.exceptions import (
    SyncError,
    TransientNetworkError,
    error_for_status,
)

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)


class QueryService(Protocol):
    """Request/response side of the chat service."""

    async def list_conversations(self) -> list[Conversation]: ...

    async def list_messages(self, conversation_id: str) -> list[Message]: ...

    async def create_message(
        self, conversation_id: str, content: str, attachment: Attachment | None = None
    ) -> Message | None: ...

    async def update_message(
        self, message_id: str, content: str, conversation_id: str | None = None
    ) -> Message | None: ...

    async def delete_message(self, message_id: str) -> None: ...

    async def create_conversation(
        self, participant_ids: list[str], name: str | None = None
    ) -> Conversation | None: ...

    async def update_conversation(self, conversation_id: str, name: str) -> Conversation | None: ...

    async def add_participants(self, conversation_id: str, user_ids: list[str]) -> None: ...

    async def remove_participant(self, conversation_id: str, user_id: str) -> None: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...

    async def list_users(self) -> list[UserSummary]: ...


def _unwrap(body: Any) -> Any:
    """Accepts raw payloads as well as `{"status", "message", "data"}` envelopes."""
    if isinstance(body, dict) and "data" in body and "status" in body:
        return body["data"]
    return body


class HttpQueryService:
    """QueryService over the chat REST API."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpQueryService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {path} failed: {e}") from e

        if response.is_error:
            detail = self._error_detail(response)
            logger.info(f"{method} {path} returned {response.status_code}: {detail}")
            raise error_for_status(response.status_code, detail)

        if not response.content:
            return None
        try:
            return _unwrap(response.json())
        except ValueError as e:
            raise SyncError(f"{method} {path} returned invalid JSON") from e

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict):
            return str(body.get("message") or body.get("detail") or body)
        return str(body)

    @staticmethod
    def _parse_list(body: Any, schema: type[P], what: str) -> list[P]:
        if not isinstance(body, list):
            raise SyncError(f"Expected a list of {what}, got {type(body).__name__}")
        items = []
        for raw in body:
            try:
                items.append(schema.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed {what} entry: {e}")
        return items

    def _to_message(self, payload: MessagePayload, conversation_id: str | None) -> Message | None:
        try:
            return payload.to_model(conversation_id=conversation_id)
        except ValueError as e:
            logger.warning(f"Skipping incomplete message: {e}")
            return None

    def _parse_message(self, body: Any, conversation_id: str | None) -> Message | None:
        if not isinstance(body, dict):
            return None
        try:
            payload = MessagePayload.model_validate(body)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed message in response: {e}")
            return None
        return self._to_message(payload, conversation_id)

    def _parse_conversation(self, body: Any) -> Conversation | None:
        if not isinstance(body, dict):
            return None
        try:
            return ConversationPayload.model_validate(body).to_model()
        except ValidationError as e:
            logger.warning(f"Ignoring malformed conversation in response: {e}")
            return None

    # Pulls

    async def list_conversations(self) -> list[Conversation]:
        body = await self._request("GET", "/chat/conversations")
        return [
            p.to_model() for p in self._parse_list(body, ConversationPayload, "conversations")
        ]

    async def list_messages(self, conversation_id: str) -> list[Message]:
        body = await self._request("GET", f"/chat/conversations/{conversation_id}/messages")
        messages = []
        for payload in self._parse_list(body, MessagePayload, "messages"):
            message = self._to_message(payload, conversation_id)
            if message is not None:
                messages.append(message)
        return messages

    async def list_users(self) -> list[UserSummary]:
        body = await self._request("GET", "/users")
        return [p.to_model() for p in self._parse_list(body, UserPayload, "users")]

    # Mutations

    async def create_message(
        self, conversation_id: str, content: str, attachment: Attachment | None = None
    ) -> Message | None:
        request = MessageCreateRequest(
            conversation_id=conversation_id,
            content=content,
            attachment_url=attachment.url if attachment else None,
            attachment_type=attachment.mime_type if attachment else None,
        )
        body = await self._request("POST", "/chat/messages", json=request.to_wire())
        return self._parse_message(body, conversation_id)

    async def update_message(
        self, message_id: str, content: str, conversation_id: str | None = None
    ) -> Message | None:
        request = MessageUpdateRequest(content=content)
        body = await self._request("PATCH", f"/chat/messages/{message_id}", json=request.to_wire())
        return self._parse_message(body, conversation_id)

    async def delete_message(self, message_id: str) -> None:
        await self._request("DELETE", f"/chat/messages/{message_id}")

    async def create_conversation(
        self, participant_ids: list[str], name: str | None = None
    ) -> Conversation | None:
        request = ConversationCreateRequest(
            participant_ids=participant_ids,
            is_group=len(participant_ids) > 1,
            name=name,
        )
        body = await self._request("POST", "/chat/conversations", json=request.to_wire())
        return self._parse_conversation(body)

    async def update_conversation(self, conversation_id: str, name: str) -> Conversation | None:
        request = ConversationUpdateRequest(name=name)
        body = await self._request(
            "PATCH", f"/chat/conversations/{conversation_id}", json=request.to_wire()
        )
        return self._parse_conversation(body)

    async def add_participants(self, conversation_id: str, user_ids: list[str]) -> None:
        request = ParticipantsAddRequest(user_ids=user_ids)
        await self._request(
            "POST",
            f"/chat/conversations/{conversation_id}/participants",
            json=request.to_wire(),
        )

    async def remove_participant(self, conversation_id: str, user_id: str) -> None:
        await self._request(
            "DELETE", f"/chat/conversations/{conversation_id}/participants/{user_id}"
        )

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/chat/conversations/{conversation_id}")
