"""REST store implementation over httpx."""

import asyncio
from typing import Any, Callable, List, Optional

import httpx
import structlog

from ..config import ChatSettings, get_settings
from ..domain.models import Conversation, Message, OutgoingMessage
from ..errors import ConversationUnavailable, CreationConflict, StoreError
from .base import ConversationStore, MessageStore
from .wire import (
    WireConversation,
    WireConversationCreate,
    WireMessage,
    WireMessageEdit,
    WireOutgoing,
    unwrap_list,
)

logger = structlog.get_logger()


class HttpChatStore(ConversationStore, MessageStore):
    """Conversation and message stores backed by the chat REST API.

    Transport failures, non-2xx responses and 2xx bodies that do not
    decode into the expected shape are translated into the ``errors``
    taxonomy, so callers never see httpx or pydantic exceptions.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=self.settings.base_url,
            timeout=self.settings.request_timeout,
        )

    async def __aenter__(self) -> "HttpChatStore":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        conversation_id: Optional[str] = None,
        parse: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        try:
            response = await self.client.request(method, path, json=json)
        except httpx.HTTPError as e:
            logger.warning("store_request_failed", method=method, path=path, error=str(e))
            raise StoreError(f"{method} {path} failed: {e}") from e

        if response.status_code == 409:
            raise CreationConflict(_detail(response))
        if response.status_code == 404 and conversation_id is not None:
            raise ConversationUnavailable(conversation_id)
        if response.is_error:
            logger.warning(
                "store_request_rejected",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise StoreError(_detail(response), status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            payload = None
        else:
            try:
                payload = response.json()
            except ValueError as e:
                logger.warning("store_response_unreadable", method=method, path=path, status_code=response.status_code)
                raise StoreError(f"{method} {path} returned invalid JSON", status_code=response.status_code) from e
        if parse is None:
            return payload

        try:
            return parse(payload)
        except (ValueError, TypeError) as e:
            logger.warning(
                "store_response_invalid",
                method=method,
                path=path,
                status_code=response.status_code,
                error=str(e),
            )
            raise StoreError(
                f"{method} {path} returned an unexpected payload", status_code=response.status_code
            ) from e

    async def list_conversations(self) -> List[Conversation]:
        return await self._request("GET", "/conversations", parse=_conversations)

    async def create_conversation(
        self,
        subject: str,
        counterparty_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> Conversation:
        body = WireConversationCreate(
            subject=subject, counterparty_id=counterparty_id, product_id=product_id
        )
        try:
            return await self._request(
                "POST",
                "/conversations",
                json=body.model_dump(by_alias=True, exclude_none=True),
                parse=_conversation,
            )
        except CreationConflict as e:
            e.product_id = product_id
            raise

    async def mark_read(self, conversation_id: str) -> None:
        await self._request(
            "PATCH", f"/conversations/{conversation_id}/read", conversation_id=conversation_id
        )

    async def list_messages(self, conversation_id: str) -> List[Message]:
        return await self._request(
            "GET",
            f"/conversations/{conversation_id}/messages",
            conversation_id=conversation_id,
            parse=_messages,
        )

    async def send_message(self, conversation_id: str, message: OutgoingMessage) -> Message:
        message = await _read_local_files(message)
        body = WireOutgoing.from_domain(message).model_dump(by_alias=True, exclude_none=True)
        return await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json=body,
            conversation_id=conversation_id,
            parse=_message,
        )

    async def edit_message(self, message_id: str, content: str) -> Message:
        body = WireMessageEdit(content=content).model_dump(by_alias=True)
        return await self._request("PUT", f"/messages/{message_id}", json=body, parse=_message)

    async def delete_message(self, message_id: str) -> None:
        await self._request("DELETE", f"/messages/{message_id}")


async def _read_local_files(message: OutgoingMessage) -> OutgoingMessage:
    """Load path-backed attachments off the event loop before encoding."""
    attachments = []
    for attachment in message.attachments:
        local = attachment.local
        if local is not None and local.data is None:
            data = await asyncio.to_thread(local.path.read_bytes)
            attachment = attachment.model_copy(update={"local": local.model_copy(update={"data": data})})
        attachments.append(attachment)
    return message.model_copy(update={"attachments": attachments})


def _conversations(payload: Any) -> List[Conversation]:
    return [WireConversation.model_validate(item).to_domain() for item in unwrap_list(payload, "conversations")]


def _conversation(payload: Any) -> Conversation:
    return WireConversation.model_validate(payload).to_domain()


def _messages(payload: Any) -> List[Message]:
    return [WireMessage.model_validate(item).to_domain() for item in unwrap_list(payload, "messages")]


def _message(payload: Any) -> Message:
    return WireMessage.model_validate(payload).to_domain()


def _detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"Server error: {response.status_code} {response.reason_phrase}"
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("message") or data.get("error") or data)
    return str(data)
