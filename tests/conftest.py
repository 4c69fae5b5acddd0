"""Shared fixtures: participants, in-memory backend, fakes and a REST stub."""

import asyncio
import base64
from datetime import timedelta
from typing import List, Optional, Union

import pytest
from fastapi import FastAPI, HTTPException, Response

from marketplace_chat.config import ChatSettings
from marketplace_chat.domain.models import (
    Attachment,
    Conversation,
    LocalFile,
    Message,
    OutgoingMessage,
    Participant,
    ProductContext,
    Receipt,
    SenderRole,
    Sent,
    utcnow,
)
from marketplace_chat.errors import ConversationUnavailable, CreationConflict, StoreError
from marketplace_chat.repositories.base import MessageStore
from marketplace_chat.repositories.memory import InMemoryChatStore
from marketplace_chat.repositories.wire import (
    WireAttachment,
    WireConversation,
    WireConversationCreate,
    WireMessage,
    WireMessageEdit,
    WireOutgoing,
    WireParticipant,
    WireProduct,
)
from marketplace_chat.services.audio import AudioDevice, AudioStream

BUYER = Participant(id="buyer-1", role=SenderRole.BUYER, name="Jane Buyer", company="Acme Imports")
SUPPLIER = Participant(id="supplier-1", role=SenderRole.SUPPLIER, name="Li Wei", company="Shenzhen Widgets")
STEEL_BOLTS = ProductContext(id="P1", name="Steel Bolts", thumbnail="https://cdn.example.com/bolts.jpg")
COPPER_WIRE = ProductContext(id="P2", name="Copper Wire")


@pytest.fixture
def buyer() -> Participant:
    return BUYER


@pytest.fixture
def supplier() -> Participant:
    return SUPPLIER


@pytest.fixture
def product() -> ProductContext:
    return STEEL_BOLTS


@pytest.fixture
def other_product() -> ProductContext:
    return COPPER_WIRE


@pytest.fixture
def settings() -> ChatSettings:
    return ChatSettings(
        base_url="http://test",
        message_poll_interval=0.01,
        conversation_poll_interval=0.05,
        send_timeout=2.0,
    )


@pytest.fixture
def store() -> InMemoryChatStore:
    """Backend seen from the buyer, latency-free."""
    return InMemoryChatStore(
        user=BUYER,
        participants=[SUPPLIER],
        products=[STEEL_BOLTS, COPPER_WIRE],
    )


@pytest.fixture
def slow_store() -> InMemoryChatStore:
    """Backend whose calls suspend long enough for callers to overlap."""
    return InMemoryChatStore(
        user=BUYER,
        participants=[SUPPLIER],
        products=[STEEL_BOLTS, COPPER_WIRE],
        delay=0.05,
    )


@pytest.fixture
def make_message():
    """Build a confirmed server message."""

    def _make(
        message_id: str,
        content: str = "",
        conversation_id: str = "conv-1",
        sender: Participant = SUPPLIER,
        offset: float = 0.0,
        **extra,
    ) -> Message:
        return Message(
            id=message_id,
            conversation_id=conversation_id,
            sender_id=sender.id,
            sender_role=sender.role,
            content=content or f"content of {message_id}",
            state=Sent(),
            created_at=utcnow() + timedelta(seconds=offset),
            **extra,
        )

    return _make


class ScriptedMessageStore(MessageStore):
    """Message store answering ``list_messages`` from a script.

    Each script entry is a list of messages or an exception to raise.
    When ``gate`` is set, calls wait for it before answering.
    """

    def __init__(self) -> None:
        self.responses: List[Union[List[Message], Exception]] = []
        self.gate: Optional[asyncio.Event] = None
        self.list_calls = 0
        self.sent: List[OutgoingMessage] = []
        self.send_error: Optional[Exception] = None
        self.send_result: Optional[Message] = None

    async def list_messages(self, conversation_id: str) -> List[Message]:
        self.list_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return list(response)

    async def send_message(self, conversation_id: str, message: OutgoingMessage) -> Message:
        self.sent.append(message)
        if self.send_error is not None:
            raise self.send_error
        return self.send_result

    async def edit_message(self, message_id: str, content: str) -> Message:
        raise StoreError("not scripted")

    async def delete_message(self, message_id: str) -> None:
        raise StoreError("not scripted")


@pytest.fixture
def scripted_store() -> ScriptedMessageStore:
    return ScriptedMessageStore()


class FakeStream(AudioStream):
    def __init__(self, device: "FakeAudioDevice") -> None:
        self.device = device
        self.closed = False

    async def finish(self) -> bytes:
        if self.device.finish_error is not None:
            raise self.device.finish_error
        return self.device.recording

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.device.held -= 1


class FakeAudioDevice(AudioDevice):
    """Microphone double tracking how many handles are held."""

    def __init__(self) -> None:
        self.held = 0
        self.opened = 0
        self.open_error: Optional[Exception] = None
        self.finish_error: Optional[Exception] = None
        self.recording = b"RIFF" + b"\x00" * 60

    async def open(self) -> AudioStream:
        if self.open_error is not None:
            raise self.open_error
        self.opened += 1
        self.held += 1
        return FakeStream(self)


@pytest.fixture
def audio_device() -> FakeAudioDevice:
    return FakeAudioDevice()


def conversation_payload(conversation: Conversation) -> dict:
    product = conversation.product_context
    wire = WireConversation(
        id=conversation.id,
        subject=conversation.subject,
        counterparty=WireParticipant(**conversation.counterparty.model_dump()),
        product_context=WireProduct(id=product.id, name=product.name, image=product.thumbnail) if product else None,
        last_message=conversation.last_message_preview,
        last_message_at=conversation.last_activity_at,
        unread_count=conversation.unread_count,
    )
    return wire.model_dump(by_alias=True, mode="json")


def message_payload(message: Message) -> dict:
    wire = WireMessage(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        sender_role=message.sender_role,
        content=message.content,
        attachments=[
            WireAttachment(name=a.name, size=a.byte_size, type=a.mime_type, url=a.url) for a in message.attachments
        ],
        reply_to=message.reply_to,
        status=message.state.receipt if message.is_sent else Receipt.SENT,
        client_id=message.client_id,
        is_edited=message.edited,
        edited_at=message.edited_at,
        deleted_at=message.deleted_at,
        created_at=message.created_at,
    )
    return wire.model_dump(by_alias=True, mode="json")


def outgoing_from_wire(body: WireOutgoing) -> OutgoingMessage:
    """Decode an upload the way the backend does: inline data becomes a local file."""
    attachments = []
    for item in body.attachments:
        if item.url:
            attachments.append(item.to_domain())
        else:
            local = LocalFile(name=item.name, mime_type=item.type, data=base64.b64decode(item.data or ""))
            attachments.append(Attachment.from_local(local))
    return OutgoingMessage(
        content=body.content,
        attachments=attachments,
        reply_to=body.reply_to,
        message_type=body.message_type,
        client_id=body.client_id,
    )


def build_backend(store: InMemoryChatStore) -> FastAPI:
    """Minimal REST backend over the in-memory store, for contract tests."""
    app = FastAPI()

    @app.get("/conversations")
    async def list_conversations():
        conversations = await store.list_conversations()
        return {"conversations": [conversation_payload(c) for c in conversations]}

    @app.post("/conversations")
    async def create_conversation(body: WireConversationCreate):
        try:
            conversation = await store.create_conversation(
                body.subject, counterparty_id=body.counterparty_id, product_id=body.product_id
            )
        except CreationConflict:
            raise HTTPException(status_code=409, detail="Conversation already exists")
        return conversation_payload(conversation)

    @app.patch("/conversations/{conversation_id}/read")
    async def mark_read(conversation_id: str):
        try:
            await store.mark_read(conversation_id)
        except ConversationUnavailable:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return Response(status_code=204)

    @app.get("/conversations/{conversation_id}/messages")
    async def list_messages(conversation_id: str):
        try:
            messages = await store.list_messages(conversation_id)
        except ConversationUnavailable:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return {"messages": [message_payload(m) for m in messages]}

    @app.post("/conversations/{conversation_id}/messages")
    async def send_message(conversation_id: str, body: WireOutgoing):
        try:
            message = await store.send_message(conversation_id, outgoing_from_wire(body))
        except ConversationUnavailable:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return message_payload(message)

    @app.put("/messages/{message_id}")
    async def edit_message(message_id: str, body: WireMessageEdit):
        try:
            message = await store.edit_message(message_id, body.content)
        except StoreError as e:
            raise HTTPException(status_code=e.status_code or 500, detail=str(e))
        return message_payload(message)

    @app.delete("/messages/{message_id}")
    async def delete_message(message_id: str):
        try:
            await store.delete_message(message_id)
        except StoreError as e:
            raise HTTPException(status_code=e.status_code or 500, detail=str(e))
        return Response(status_code=204)

    return app


@pytest.fixture
def backend(store: InMemoryChatStore) -> FastAPI:
    return build_backend(store)
