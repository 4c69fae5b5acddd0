"""JSON shapes of the chat REST API and their mapping to domain models."""

import base64
from datetime import datetime
from typing import Any, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..domain.models import (
    DEFAULT_COUNTERPARTY,
    Attachment,
    Conversation,
    Message,
    OutgoingMessage,
    Participant,
    ProductContext,
    Receipt,
    SenderRole,
    Sent,
    kind_for_mime,
)

logger = structlog.get_logger()


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class WireParticipant(WireModel):
    id: str
    role: SenderRole = SenderRole.SUPPLIER
    name: Optional[str] = None
    company: Optional[str] = None


class WireProduct(WireModel):
    id: str
    name: Optional[str] = None
    image: Optional[str] = None


class WireConversation(WireModel):
    id: str
    subject: Optional[str] = None
    counterparty: Optional[WireParticipant] = None
    product_context: Optional[WireProduct] = None
    # Older endpoints only return flat product fields
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    product_images: Optional[List[str]] = None
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: Optional[int] = 0

    def to_domain(self) -> Conversation:
        product_context = None
        if self.product_context is not None:
            product_context = ProductContext(
                id=self.product_context.id,
                name=self.product_context.name,
                thumbnail=self.product_context.image,
            )
        elif self.product_id:
            images = [i for i in self.product_images or [] if i.startswith("http")]
            product_context = ProductContext(
                id=self.product_id,
                name=self.product_name,
                thumbnail=images[0] if images else None,
            )
        counterparty = (
            Participant(**self.counterparty.model_dump())
            if self.counterparty is not None
            else DEFAULT_COUNTERPARTY
        )
        return Conversation(
            id=self.id,
            subject=self.subject,
            counterparty=counterparty,
            product_context=product_context,
            last_message_preview=self.last_message,
            last_activity_at=self.last_message_at,
            unread_count=self.unread_count or 0,
        )


class WireAttachment(WireModel):
    name: str
    size: int = 0
    type: str = "application/octet-stream"
    url: Optional[str] = None
    data: Optional[str] = None

    def to_domain(self) -> Attachment:
        return Attachment(
            kind=kind_for_mime(self.type),
            name=self.name,
            byte_size=self.size,
            mime_type=self.type,
            url=self.url,
        )

    @classmethod
    def from_domain(cls, attachment: Attachment) -> "WireAttachment":
        """Remote attachments travel by URL, local ones inline as base64.

        Path-backed files must already be read into ``data``.
        """
        if attachment.is_uploaded:
            return cls(name=attachment.name, size=attachment.byte_size, type=attachment.mime_type, url=attachment.url)
        local = attachment.local
        if local.data is None:
            raise ValueError(f"attachment {attachment.name} has not been read")
        return cls(
            name=attachment.name,
            size=attachment.byte_size,
            type=attachment.mime_type,
            data=base64.b64encode(local.data).decode("ascii"),
        )


class WireMessage(WireModel):
    id: str
    conversation_id: str
    sender_id: str
    sender_role: SenderRole
    content: str = ""
    attachments: List[WireAttachment] = []
    reply_to: Optional[str] = None
    status: Receipt = Receipt.SENT
    client_id: Optional[str] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime

    def to_domain(self) -> Message:
        attachments = []
        for attachment in self.attachments:
            if attachment.url:
                attachments.append(attachment.to_domain())
            else:
                logger.warning("attachment_without_url_dropped", message_id=self.id, name=attachment.name)
        return Message(
            id=self.id,
            conversation_id=self.conversation_id,
            sender_id=self.sender_id,
            sender_role=self.sender_role,
            content=self.content,
            attachments=attachments,
            reply_to=self.reply_to,
            state=Sent(receipt=self.status),
            client_id=self.client_id,
            edited=self.is_edited,
            created_at=self.created_at,
            edited_at=self.edited_at,
            deleted_at=self.deleted_at,
        )


class WireOutgoing(WireModel):
    content: str = ""
    attachments: List[WireAttachment] = []
    reply_to: Optional[str] = None
    message_type: str = "text"
    client_id: Optional[str] = None

    @classmethod
    def from_domain(cls, message: OutgoingMessage) -> "WireOutgoing":
        return cls(
            content=message.content,
            attachments=[WireAttachment.from_domain(a) for a in message.attachments],
            reply_to=message.reply_to,
            message_type=message.message_type.value,
            client_id=message.client_id,
        )


class WireConversationCreate(WireModel):
    subject: str
    counterparty_id: Optional[str] = None
    product_id: Optional[str] = None


class WireMessageEdit(WireModel):
    content: str


def unwrap_list(payload: Any, key: str) -> List[Any]:
    """Accept both bare lists and ``{key: [...]}`` envelopes."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        return payload.get(key) or []
    return []
