"""Polls the active conversation's messages into its feed."""

import asyncio
from typing import Callable, Dict, Optional

import structlog

from ..errors import ConversationUnavailable, TransientSyncFailure
from ..metrics import SYNC_FAILURES, SYNC_TICKS
from ..repositories.base import MessageStore
from .feed import MessageFeed
from .sync_health import FailureWindow

logger = structlog.get_logger()


class MessageSynchronizer:
    """Keeps one feed in step with the server while a conversation is active.

    Every activation gets a new generation number. A response is merged
    only if its tick started in the current generation, so a poll that
    completes after ``deactivate`` or a switch to another conversation
    never touches state. Ticks are also numbered: when ticks overlap, a
    response older than the last merged one is dropped. Failed ticks are
    recorded on ``health`` and retried by the next tick.

    Feeds are kept per conversation until ``close``, so messages composed
    on this device (failed ones included) are still there when the user
    switches back.
    """

    def __init__(
        self,
        store: MessageStore,
        poll_interval: float = 5.0,
        reconcile_window: float = 30.0,
        health: Optional[FailureWindow] = None,
        on_unavailable: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.store = store
        self.poll_interval = poll_interval
        self.reconcile_window = reconcile_window
        self.health = health or FailureWindow()
        self.on_unavailable = on_unavailable
        self.feed: Optional[MessageFeed] = None
        self._feeds: Dict[str, MessageFeed] = {}
        self.last_failure: Optional[TransientSyncFailure] = None
        self._generation = 0
        self._tick_sequence = 0
        self._merged_sequence = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self.feed.conversation_id if self.feed else None

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    def activate(self, conversation_id: str, poll: bool = True) -> MessageFeed:
        """Start syncing a conversation, replacing any previous one."""
        if self.feed is not None and self.feed.conversation_id == conversation_id:
            return self.feed
        self.deactivate()
        feed = self._feeds.get(conversation_id)
        if feed is None:
            feed = MessageFeed(conversation_id, reconcile_window=self.reconcile_window)
            self._feeds[conversation_id] = feed
        self.feed = feed
        self.health.record_success()
        self.last_failure = None
        if poll:
            self._task = asyncio.create_task(self._poll(self._generation))
        logger.info("sync_activated", conversation_id=conversation_id)
        return self.feed

    def deactivate(self) -> Optional[asyncio.Task]:
        """Stop syncing; in-flight responses are discarded."""
        self._generation += 1
        if self.feed is not None:
            logger.info("sync_deactivated", conversation_id=self.feed.conversation_id)
        self.feed = None
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        return task

    def feed_for(self, conversation_id: str) -> Optional[MessageFeed]:
        return self._feeds.get(conversation_id)

    async def close(self) -> None:
        task = self.deactivate()
        self._feeds.clear()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _poll(self, generation: int) -> None:
        while generation == self._generation:
            await self.tick()
            await asyncio.sleep(self.poll_interval)

    async def tick(self) -> bool:
        """Run one poll; returns whether a response was merged."""
        feed = self.feed
        if feed is None:
            return False
        generation = self._generation
        conversation_id = feed.conversation_id
        self._tick_sequence += 1
        sequence = self._tick_sequence
        SYNC_TICKS.inc()

        try:
            messages = await self.store.list_messages(conversation_id)
        except ConversationUnavailable:
            if generation != self._generation:
                return False
            logger.error("conversation_unavailable", conversation_id=conversation_id)
            # The poll loop sees the new generation and exits on its own
            self._generation += 1
            self.feed = None
            self._feeds.pop(conversation_id, None)
            self._task = None
            if self.on_unavailable is not None:
                self.on_unavailable(conversation_id)
            return False
        except Exception as e:
            if generation != self._generation or sequence < self._merged_sequence:
                return False
            SYNC_FAILURES.inc()
            self.last_failure = TransientSyncFailure(conversation_id, e)
            self.health.record_failure()
            logger.warning("sync_tick_failed", conversation_id=conversation_id, error=str(e))
            return False

        if generation != self._generation or self.feed is not feed:
            logger.debug("stale_sync_response_ignored", conversation_id=conversation_id)
            return False
        if sequence < self._merged_sequence:
            logger.debug("overtaken_sync_response_ignored", conversation_id=conversation_id, sequence=sequence)
            return False

        self._merged_sequence = sequence
        feed.merge(messages)
        self.health.record_success()
        self.last_failure = None
        return True
