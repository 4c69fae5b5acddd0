"""Outgoing messages and edit/delete intents."""

import asyncio
from typing import Dict, List, Optional, Set

import structlog

from ..domain.models import (
    Attachment,
    Failed,
    Message,
    OutgoingMessage,
    Participant,
    Pending,
    Sent,
    message_type_for,
    new_client_id,
    utcnow,
)
from ..errors import SendFailure, ValidationError
from ..metrics import MESSAGES_SENT, SEND_FAILURES
from ..repositories.base import MessageStore
from .feed import MessageFeed
from .send_queue import OutboundQueue
from .synchronizer import MessageSynchronizer

logger = structlog.get_logger()


class MessageComposer:
    """Builds optimistic messages and pushes mutations to the message store.

    Composed messages show up in the feed's local suffix as pending right
    away. Sends go through an ordered per-conversation queue. Edits are
    fire-and-forget: the overlay renders immediately and the next sync
    reconciles. Only the author may edit or delete a message.
    """

    def __init__(
        self,
        store: MessageStore,
        synchronizer: MessageSynchronizer,
        author: Participant,
        queue: Optional[OutboundQueue] = None,
    ) -> None:
        self.store = store
        self.synchronizer = synchronizer
        self.author = author
        self.queue = queue or OutboundQueue()
        # Feed each unconfirmed message was composed into
        self._outbox: Dict[str, MessageFeed] = {}
        self._background: Set[asyncio.Task] = set()

    def _active_feed(self) -> MessageFeed:
        feed = self.synchronizer.feed
        if feed is None:
            raise ValidationError("No conversation is active")
        return feed

    def compose(
        self,
        content: str,
        attachments: Optional[List[Attachment]] = None,
        reply_to: Optional[str] = None,
    ) -> Message:
        """Validate and show a pending message in the active conversation."""
        attachments = list(attachments or [])
        if not content.strip() and not attachments:
            raise ValidationError("A message needs text or at least one attachment")
        feed = self._active_feed()

        client_id = new_client_id()
        pending = Message(
            id=client_id,
            client_id=client_id,
            conversation_id=feed.conversation_id,
            sender_id=self.author.id,
            sender_role=self.author.role,
            content=content,
            attachments=attachments,
            reply_to=reply_to,
            state=Pending(),
        )
        feed.append_local(pending)
        self._outbox[client_id] = feed
        logger.debug("message_composed", client_id=client_id, conversation_id=feed.conversation_id)
        return pending

    async def deliver(self, pending: Message) -> Message:
        """Send a composed message and confirm it, or mark it failed."""
        outgoing = OutgoingMessage(
            content=pending.content,
            attachments=pending.attachments,
            reply_to=pending.reply_to,
            message_type=message_type_for(pending.content, pending.attachments),
            client_id=pending.client_id,
        )
        try:
            server_message = await self.queue.enqueue(
                pending.conversation_id,
                self.store.send_message,
                pending.conversation_id,
                outgoing,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            SEND_FAILURES.inc()
            self._mark_failed(pending, e)
            raise SendFailure(pending.client_id, e) from e

        MESSAGES_SENT.inc()
        return self.confirm(pending.client_id, server_message)

    async def send(
        self,
        content: str,
        attachments: Optional[List[Attachment]] = None,
        reply_to: Optional[str] = None,
    ) -> Message:
        pending = self.compose(content, attachments, reply_to)
        return await self.deliver(pending)

    def confirm(self, pending_id: str, server_message: Message) -> Message:
        """Give a pending entry its server identity and status."""
        state = server_message.state if isinstance(server_message.state, Sent) else Sent()
        confirmed = server_message.model_copy(update={"client_id": pending_id, "state": state})
        feed = self._outbox.pop(pending_id, None)
        if feed is not None:
            feed.confirm_local(pending_id, confirmed)
        logger.info("message_confirmed", client_id=pending_id, message_id=confirmed.id)
        return confirmed

    def _mark_failed(self, pending: Message, error: Exception) -> None:
        feed = self._outbox.get(pending.client_id)
        logger.warning("message_send_failed", client_id=pending.client_id, error=str(error))
        if feed is not None:
            feed.replace_local(
                pending.client_id,
                pending.model_copy(update={"state": Failed(error=str(error) or type(error).__name__)}),
            )

    async def retry(self, client_id: str) -> Message:
        """Send a failed message again under the same client id."""
        feed = self._outbox.get(client_id)
        entry = feed.local_entry(client_id) if feed else None
        if entry is None or not entry.is_failed:
            raise ValidationError(f"Message {client_id} has not failed")
        pending = entry.model_copy(update={"state": Pending()})
        feed.replace_local(client_id, pending)
        return await self.deliver(pending)

    def discard(self, client_id: str) -> None:
        """Drop a failed message from the feed."""
        feed = self._outbox.get(client_id)
        entry = feed.local_entry(client_id) if feed else None
        if entry is None or not entry.is_failed:
            raise ValidationError(f"Message {client_id} has not failed")
        feed.remove_local(client_id)
        del self._outbox[client_id]
        logger.info("message_discarded", client_id=client_id)

    def _authored_message(self, message_id: str) -> Message:
        message = self._active_feed().get(message_id)
        if message is None:
            raise ValidationError(f"Message {message_id} is not in the active conversation")
        if message.sender_id != self.author.id:
            raise ValidationError("Only the author can change a message")
        if not message.is_sent:
            raise ValidationError("The message has not been delivered yet")
        if message.is_deleted:
            raise ValidationError("The message was deleted")
        return message

    def edit_content(self, message_id: str, new_content: str) -> Message:
        """Edit optimistically and push the change in the background."""
        message = self._authored_message(message_id)
        if not new_content.strip() and not message.attachments:
            raise ValidationError("A message needs text or at least one attachment")
        feed = self._active_feed()
        feed.apply_edit(message.id, new_content, utcnow())

        task = asyncio.create_task(self._push_edit(feed, message.id, new_content))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return feed.get(message.id)

    async def _push_edit(self, feed: MessageFeed, message_id: str, content: str) -> None:
        try:
            await self.store.edit_message(message_id, content)
        except Exception as e:
            # The next sync shows the server's content again
            logger.warning("message_edit_failed", message_id=message_id, error=str(e))
            feed.clear_edit(message_id, content)
            return
        logger.info("message_edited", message_id=message_id)

    async def delete(self, message_id: str) -> Message:
        """Tombstone a message locally and delete it on the server.

        Confirmation from the user happens before this is called.
        """
        message = self._authored_message(message_id)
        feed = self._active_feed()
        feed.apply_deletion(message.id, utcnow())
        try:
            await self.store.delete_message(message.id)
        except Exception:
            feed.clear_deletion(message.id)
            logger.warning("message_delete_failed", message_id=message.id)
            raise
        logger.info("message_deleted", message_id=message.id)
        return feed.get(message.id)

    async def wait_background(self) -> None:
        """Wait for in-flight edits to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self.wait_background()
        await self.queue.cleanup()
