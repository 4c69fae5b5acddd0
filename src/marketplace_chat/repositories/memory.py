"""In-memory store implementation."""

import asyncio
from collections import Counter
from typing import Dict, List, Optional
from uuid import uuid4

import structlog

from ..domain.models import (
    DEFAULT_COUNTERPARTY,
    Attachment,
    Conversation,
    Message,
    OutgoingMessage,
    Participant,
    ProductContext,
    Sent,
    utcnow,
)
from ..errors import ConversationUnavailable, CreationConflict, StoreError
from .base import ConversationStore, MessageStore

logger = structlog.get_logger()


class InMemoryChatStore(ConversationStore, MessageStore):
    """Both stores over shared in-memory state, seen from one user.

    Creation is unique per (counterparty, product) pair, like the real
    backend: a second create raises ``CreationConflict``. ``delay``
    suspends every call to emulate network latency and ``calls`` counts
    invocations per operation.
    """

    def __init__(
        self,
        user: Participant,
        participants: Optional[List[Participant]] = None,
        products: Optional[List[ProductContext]] = None,
        delay: float = 0.0,
        echo_client_id: bool = True,
    ) -> None:
        self.user = user
        self.delay = delay
        self.echo_client_id = echo_client_id
        self.calls: Counter = Counter()
        self._participants: Dict[str, Participant] = {DEFAULT_COUNTERPARTY.id: DEFAULT_COUNTERPARTY}
        self._participants.update({p.id: p for p in participants or []})
        self._products: Dict[str, ProductContext] = {p.id: p for p in products or []}
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._lock = asyncio.Lock()
        logger.info("memory_store_initialized", user_id=user.id)

    async def _suspend(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.delay:
            await asyncio.sleep(self.delay)

    def _find(self, counterparty_id: str, product_id: Optional[str]) -> Optional[Conversation]:
        for conversation in self._conversations.values():
            if conversation.counterparty.id == counterparty_id and conversation.product_id == product_id:
                return conversation
        return None

    def _locate_message(self, message_id: str) -> Message:
        for messages in self._messages.values():
            for message in messages:
                if message.id == message_id:
                    return message
        raise StoreError(f"Message {message_id} not found", status_code=404)

    async def list_conversations(self) -> List[Conversation]:
        """List conversations, most recent activity first."""
        await self._suspend("list_conversations")
        async with self._lock:
            conversations = sorted(
                self._conversations.values(),
                key=lambda c: c.last_activity_at or utcnow(),
                reverse=True,
            )
            return [c.model_copy(deep=True) for c in conversations]

    async def create_conversation(
        self,
        subject: str,
        counterparty_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> Conversation:
        await self._suspend("create_conversation")
        counterparty_id = counterparty_id or DEFAULT_COUNTERPARTY.id
        async with self._lock:
            if self._find(counterparty_id, product_id) is not None:
                logger.warning(
                    "duplicate_conversation_rejected",
                    counterparty_id=counterparty_id,
                    product_id=product_id,
                )
                raise CreationConflict("Conversation already exists", product_id=product_id)

            counterparty = self._participants.get(counterparty_id) or Participant(id=counterparty_id)
            product_context = None
            if product_id is not None:
                product_context = self._products.get(product_id) or ProductContext(id=product_id)
            conversation = Conversation(
                id=f"conv-{uuid4().hex[:12]}",
                subject=subject,
                counterparty=counterparty,
                product_context=product_context,
                last_activity_at=utcnow(),
            )
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
            logger.info("conversation_created", conversation_id=conversation.id, product_id=product_id)
            return conversation.model_copy(deep=True)

    async def mark_read(self, conversation_id: str) -> None:
        await self._suspend("mark_read")
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise ConversationUnavailable(conversation_id)
            conversation.unread_count = 0

    async def list_messages(self, conversation_id: str) -> List[Message]:
        """Get messages for a conversation in creation order."""
        await self._suspend("list_messages")
        async with self._lock:
            if conversation_id not in self._conversations:
                logger.error("conversation_not_found_for_messages", conversation_id=conversation_id)
                raise ConversationUnavailable(conversation_id)
            return [m.model_copy(deep=True) for m in self._messages[conversation_id]]

    async def send_message(self, conversation_id: str, message: OutgoingMessage) -> Message:
        await self._suspend("send_message")
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.error("conversation_not_found_for_message", conversation_id=conversation_id)
                raise ConversationUnavailable(conversation_id)

            stored = Message(
                id=f"msg-{uuid4().hex[:12]}",
                conversation_id=conversation_id,
                sender_id=self.user.id,
                sender_role=self.user.role,
                content=message.content,
                attachments=[self._upload(a) for a in message.attachments],
                reply_to=message.reply_to,
                state=Sent(),
                client_id=message.client_id if self.echo_client_id else None,
            )
            self._messages[conversation_id].append(stored)
            conversation.last_message_preview = stored.content or (stored.attachments[0].name if stored.attachments else None)
            conversation.last_activity_at = stored.created_at
            logger.info("message_added", conversation_id=conversation_id, message_id=stored.id)
            return stored.model_copy(deep=True)

    def _upload(self, attachment: Attachment) -> Attachment:
        if attachment.is_uploaded:
            return attachment
        return attachment.model_copy(
            update={"local": None, "url": f"memory://attachments/{uuid4().hex}/{attachment.name}"}
        )

    async def edit_message(self, message_id: str, content: str) -> Message:
        await self._suspend("edit_message")
        async with self._lock:
            message = self._locate_message(message_id)
            message.content = content
            message.edited = True
            message.edited_at = utcnow()
            return message.model_copy(deep=True)

    async def delete_message(self, message_id: str) -> None:
        await self._suspend("delete_message")
        async with self._lock:
            message = self._locate_message(message_id)
            message.deleted_at = utcnow()
            logger.info("message_deleted", message_id=message_id)

    async def deliver_incoming(self, conversation_id: str, content: str, sender_id: Optional[str] = None) -> Message:
        """Append a message authored by the counterparty."""
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise ConversationUnavailable(conversation_id)
            sender = self._participants.get(sender_id or "", conversation.counterparty)
            stored = Message(
                id=f"msg-{uuid4().hex[:12]}",
                conversation_id=conversation_id,
                sender_id=sender.id,
                sender_role=sender.role,
                content=content,
            )
            self._messages[conversation_id].append(stored)
            conversation.last_message_preview = content
            conversation.last_activity_at = stored.created_at
            conversation.unread_count += 1
            return stored.model_copy(deep=True)

    async def remove_conversation(self, conversation_id: str) -> None:
        """Drop a conversation server-side, as an archive would."""
        async with self._lock:
            self._conversations.pop(conversation_id, None)
            self._messages.pop(conversation_id, None)
