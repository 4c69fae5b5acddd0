"""Domain models for conversations, messages and attachments."""

import mimetypes
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_client_id() -> str:
    """Temporary id for a message that the server has not confirmed yet."""
    return f"tmp-{uuid4()}"


class SenderRole(str, Enum):
    """Marketplace role of a message author."""

    BUYER = "buyer"
    SUPPLIER = "supplier"
    ADMIN = "admin"


class Participant(BaseModel):
    """Identity and display fields of a conversation party."""

    id: str
    role: SenderRole = SenderRole.SUPPLIER
    name: Optional[str] = None
    company: Optional[str] = None


# Answers general inquiries when no counterparty is given
DEFAULT_COUNTERPARTY = Participant(id="admin", role=SenderRole.ADMIN, name="Support Team")


class ProductContext(BaseModel):
    """Product that scopes a conversation to a specific inquiry."""

    id: str
    name: Optional[str] = None
    thumbnail: Optional[str] = None


class Conversation(BaseModel):
    """Conversation model.

    A conversation without a product context belongs to the general
    channel.
    """

    id: str
    subject: Optional[str] = None
    counterparty: Participant
    product_context: Optional[ProductContext] = None
    last_message_preview: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    unread_count: int = 0

    @property
    def is_general(self) -> bool:
        return self.product_context is None

    @property
    def product_id(self) -> Optional[str]:
        return self.product_context.id if self.product_context else None


class AttachmentKind(str, Enum):
    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"
    OTHER = "other"


_DOCUMENT_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
    "text/csv",
}


def kind_for_mime(mime_type: str) -> AttachmentKind:
    """Derive the attachment kind from a MIME type."""
    mime_type = (mime_type or "").lower()
    if mime_type.startswith("image/"):
        return AttachmentKind.IMAGE
    if mime_type.startswith("audio/"):
        return AttachmentKind.AUDIO
    if mime_type in _DOCUMENT_TYPES:
        return AttachmentKind.DOCUMENT
    return AttachmentKind.OTHER


class LocalFile(BaseModel):
    """A file selected or recorded on this device, not uploaded yet."""

    name: str
    mime_type: Optional[str] = None
    path: Optional[Path] = None
    data: Optional[bytes] = None

    @model_validator(mode="after")
    def _has_source(self) -> "LocalFile":
        if self.path is None and self.data is None:
            raise ValueError("local file needs a path or in-memory data")
        return self

    def guessed_mime_type(self) -> str:
        if self.mime_type:
            return self.mime_type
        guessed, _ = mimetypes.guess_type(self.name)
        return guessed or "application/octet-stream"

    def size(self) -> int:
        if self.data is not None:
            return len(self.data)
        return self.path.stat().st_size


class Attachment(BaseModel):
    """Attachment owned by exactly one message.

    Before sending the payload is a local file; after sending it is the
    remote URL assigned by the server. Never both.
    """

    kind: AttachmentKind
    name: str
    byte_size: int = Field(ge=0)
    mime_type: str
    local: Optional[LocalFile] = None
    url: Optional[str] = None

    @model_validator(mode="after")
    def _single_payload(self) -> "Attachment":
        if (self.local is None) == (self.url is None):
            raise ValueError("attachment needs exactly one of a local file or a url")
        return self

    @classmethod
    def from_local(cls, local: LocalFile) -> "Attachment":
        mime_type = local.guessed_mime_type()
        return cls(
            kind=kind_for_mime(mime_type),
            name=local.name,
            byte_size=local.size(),
            mime_type=mime_type,
            local=local,
        )

    @property
    def is_uploaded(self) -> bool:
        return self.url is not None


class Receipt(str, Enum):
    """Server-side delivery progress of a confirmed message."""

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class Pending(BaseModel):
    """Shown locally, not yet confirmed by the server."""

    kind: Literal["pending"] = "pending"


class Sent(BaseModel):
    """Confirmed by the server."""

    kind: Literal["sent"] = "sent"
    receipt: Receipt = Receipt.SENT


class Failed(BaseModel):
    """The send request failed; the user may retry or discard."""

    kind: Literal["failed"] = "failed"
    error: str


DeliveryState = Annotated[Union[Pending, Sent, Failed], Field(discriminator="kind")]


class Message(BaseModel):
    """Message model.

    ``id`` is the client temporary id while the message is pending and
    the server id once confirmed. ``client_id`` keeps the temporary id so
    that a server echo can be matched back to the local entry.
    """

    id: str
    conversation_id: str
    sender_id: str
    sender_role: SenderRole
    content: str = ""
    attachments: List[Attachment] = []
    reply_to: Optional[str] = None
    state: DeliveryState = Field(default_factory=Sent)
    client_id: Optional[str] = None
    edited: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    edited_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return isinstance(self.state, Pending)

    @property
    def is_sent(self) -> bool:
        return isinstance(self.state, Sent)

    @property
    def is_failed(self) -> bool:
        return isinstance(self.state, Failed)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    FILE = "file"


def message_type_for(content: str, attachments: List[Attachment]) -> MessageType:
    """Wire message type: text unless the message is attachments only."""
    if content.strip() or not attachments:
        return MessageType.TEXT
    first = attachments[0].kind
    if first == AttachmentKind.IMAGE:
        return MessageType.IMAGE
    if first == AttachmentKind.AUDIO:
        return MessageType.AUDIO
    return MessageType.FILE


class OutgoingMessage(BaseModel):
    """Payload of ``POST /conversations/:id/messages``."""

    content: str
    attachments: List[Attachment] = []
    reply_to: Optional[str] = None
    message_type: MessageType = MessageType.TEXT
    client_id: Optional[str] = None


class ReplyContext(BaseModel):
    """What a message renders above itself when it quotes another."""

    message_id: str
    sender_id: str
    snippet: str
