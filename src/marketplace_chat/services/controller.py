"""Single owner of the messaging view state and its intents."""

import asyncio
from typing import Any, Iterable, List, Optional

import structlog

from ..config import ChatSettings, get_settings
from ..domain.models import (
    Attachment,
    Conversation,
    Message,
    Participant,
    ProductContext,
    ReplyContext,
)
from ..errors import ResourceAcquisitionError, StoreError
from ..repositories.base import ConversationStore, MessageStore
from .attachments import AttachmentComposer, FileInput
from .audio import AudioCaptureController, AudioDevice
from .composer import MessageComposer
from .feed import MessageFeed
from .resolver import ConversationResolver
from .selector import Channel, ConversationSelector
from .send_queue import OutboundQueue
from .sync_health import FailureWindow
from .synchronizer import MessageSynchronizer

logger = structlog.get_logger()


class ChatController:
    """Mounted messaging view for one signed-in user.

    Use as an async context manager: entering loads the conversation list
    and starts its refresh loop, leaving cancels polling, abandons
    in-flight responses and releases the audio device.
    """

    def __init__(
        self,
        user: Participant,
        conversation_store: ConversationStore,
        message_store: MessageStore,
        audio_device: Optional[AudioDevice] = None,
        settings: Optional[ChatSettings] = None,
        poll: bool = True,
    ) -> None:
        self.user = user
        self.settings = settings or get_settings()
        self.poll = poll
        self.conversation_store = conversation_store

        self.selector = ConversationSelector()
        self.resolver = ConversationResolver(conversation_store, self.selector)
        self.synchronizer = MessageSynchronizer(
            message_store,
            poll_interval=self.settings.message_poll_interval,
            reconcile_window=self.settings.reconcile_window,
            health=FailureWindow(
                threshold=self.settings.sync_failure_threshold,
                window_size=self.settings.sync_failure_window,
            ),
            on_unavailable=self._conversation_unavailable,
        )
        self.composer = MessageComposer(
            message_store,
            self.synchronizer,
            author=user,
            queue=OutboundQueue(send_timeout=self.settings.send_timeout),
        )
        self.attachments = AttachmentComposer(self.settings.max_attachment_bytes)
        self.audio = AudioCaptureController(audio_device, self.attachments) if audio_device else None
        self._list_task: Optional[asyncio.Task] = None
        self._mounted = False

    async def __aenter__(self) -> "ChatController":
        await self.mount()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.unmount()

    async def mount(self) -> None:
        try:
            await self.resolver.refresh()
        except StoreError as e:
            logger.warning("conversation_list_load_failed", error=str(e))
        if self.poll:
            self._list_task = asyncio.create_task(self._refresh_conversations())
        self._mounted = True
        logger.info("chat_mounted", user_id=self.user.id)

    async def unmount(self) -> None:
        """Tear down; safe to call more than once."""
        if self.audio is not None:
            await self.audio.cancel()
        task, self._list_task = self._list_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.synchronizer.close()
        await self.resolver.close()
        await self.composer.close()
        self.attachments.clear()
        if self._mounted:
            logger.info("chat_unmounted", user_id=self.user.id)
        self._mounted = False

    async def _refresh_conversations(self) -> None:
        while True:
            await asyncio.sleep(self.settings.conversation_poll_interval)
            try:
                await self.resolver.refresh()
            except StoreError as e:
                logger.warning("conversation_list_refresh_failed", error=str(e))

    def _conversation_unavailable(self, conversation_id: str) -> None:
        if self.selector.active_id == conversation_id:
            self.selector.clear_selection()

    # Reactive state

    @property
    def conversations(self) -> List[Conversation]:
        return self.selector.visible()

    @property
    def active_conversation(self) -> Optional[Conversation]:
        return self.selector.active

    @property
    def feed(self) -> Optional[MessageFeed]:
        return self.synchronizer.feed

    @property
    def messages(self) -> List[Message]:
        return self.feed.messages if self.feed else []

    @property
    def sync_degraded(self) -> bool:
        return self.synchronizer.health.degraded

    def reply_context(self, message: Message) -> Optional[ReplyContext]:
        return self.feed.reply_context(message) if self.feed else None

    def set_channel(self, channel: Channel) -> None:
        self.selector.set_channel(channel)

    def search(self, query: str) -> List[Conversation]:
        self.selector.set_query(query)
        return self.selector.visible()

    # Intents

    async def select_conversation(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        conversation = self.selector.select(conversation_id)
        await self._activate(conversation)
        return conversation

    async def create_or_select_product_conversation(
        self,
        product: Optional[ProductContext] = None,
        counterparty: Optional[Participant] = None,
    ) -> Conversation:
        """Open the conversation for a product, or the general one."""
        conversation = await self.resolver.resolve(counterparty, product)
        await self._activate(conversation)
        return conversation

    async def _activate(self, conversation: Optional[Conversation]) -> None:
        if conversation is None:
            self.synchronizer.deactivate()
            return
        self.synchronizer.activate(conversation.id, poll=self.poll)
        if conversation.unread_count:
            try:
                await self.conversation_store.mark_read(conversation.id)
            except StoreError as e:
                logger.warning("mark_read_failed", conversation_id=conversation.id, error=str(e))
            else:
                self.selector.mark_read_locally(conversation.id)

    async def sync_now(self) -> bool:
        return await self.synchronizer.tick()

    async def send_message(self, content: str, reply_to: Optional[str] = None) -> Message:
        """Send text plus every pending attachment.

        Attachments are cleared once the message is composed; a failed
        send keeps them on the failed message for retry.
        """
        attachments = self.attachments.pending
        pending = self.composer.compose(content, attachments, reply_to)
        self.attachments.drain()
        return await self.composer.deliver(pending)

    async def retry_message(self, client_id: str) -> Message:
        return await self.composer.retry(client_id)

    def discard_message(self, client_id: str) -> None:
        self.composer.discard(client_id)

    def edit_message(self, message_id: str, content: str) -> Message:
        return self.composer.edit_content(message_id, content)

    async def delete_message(self, message_id: str) -> Message:
        return await self.composer.delete(message_id)

    def attach_files(self, files: Iterable[FileInput]) -> List[Attachment]:
        return self.attachments.attach_files(files)

    def remove_attachment(self, index: int) -> Attachment:
        return self.attachments.remove(index)

    async def start_recording(self) -> None:
        await self._audio().start()

    async def stop_recording(self) -> Attachment:
        return await self._audio().stop()

    async def cancel_recording(self) -> None:
        await self._audio().cancel()

    def _audio(self) -> AudioCaptureController:
        if self.audio is None:
            raise ResourceAcquisitionError("No audio input device is configured")
        return self.audio
