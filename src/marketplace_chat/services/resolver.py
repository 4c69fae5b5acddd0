"""Resolves a counterparty and product context to exactly one conversation."""

import asyncio
from enum import Enum
from typing import Dict, Optional, Tuple

import structlog

from ..domain.models import Conversation, Participant, ProductContext
from ..errors import ConversationUnavailable, CreationConflict, StoreError
from ..metrics import CONVERSATIONS_CREATED, CREATION_CONFLICTS
from ..repositories.base import ConversationStore
from .selector import ConversationSelector

logger = structlog.get_logger()

GENERAL_SUBJECT = "General Support Inquiry"

# (counterparty id, product id); None product id is the general channel
CreationKey = Tuple[Optional[str], Optional[str]]


class CreationState(str, Enum):
    """Lifecycle of a create-conversation request for one key."""

    NONE = "none"
    IN_FLIGHT = "in-flight"
    ATTEMPTED = "attempted"


def subject_for(product: Optional[ProductContext]) -> str:
    if product is None:
        return GENERAL_SUBJECT
    return f"Inquiry about {product.name or 'Product'}"


def _consume_result(task: asyncio.Task) -> None:
    # Failures are delivered to the awaiting callers; this only keeps
    # asyncio from reporting them as never retrieved.
    if not task.cancelled():
        task.exception()


class ConversationResolver:
    """Returns the existing conversation for a context or creates one.

    Per key at most one create request is in flight; concurrent callers
    join it and receive the same conversation. After a successful
    creation the key is ``ATTEMPTED`` and no create request is ever issued
    for it again while this resolver lives. A failed creation resets the
    key to ``NONE`` so that the next explicit user action can retry.
    """

    def __init__(self, store: ConversationStore, selector: ConversationSelector) -> None:
        self.store = store
        self.selector = selector
        self._states: Dict[CreationKey, CreationState] = {}
        self._in_flight: Dict[CreationKey, asyncio.Task] = {}

    def state_for(self, product_id: Optional[str], counterparty_id: Optional[str] = None) -> CreationState:
        return self._states.get((counterparty_id, product_id), CreationState.NONE)

    async def refresh(self) -> None:
        """Reload the conversation list into the selector."""
        self.selector.replace(await self.store.list_conversations())

    async def resolve(
        self,
        counterparty: Optional[Participant] = None,
        product: Optional[ProductContext] = None,
    ) -> Conversation:
        """Get or create the conversation and make it active.

        Without ``product`` this is the general conversation with the
        counterparty; without ``counterparty`` any counterparty matches and
        the server picks the default one when creating.
        """
        counterparty_id = counterparty.id if counterparty else None
        product_id = product.id if product else None
        key = (counterparty_id, product_id)

        existing = self.selector.find(counterparty_id, product_id)
        if existing is not None:
            self.selector.select(existing.id)
            return existing

        task = self._in_flight.get(key)
        if task is None:
            if self._states.get(key) == CreationState.ATTEMPTED:
                return await self._recover_attempted(key)
            self._states[key] = CreationState.IN_FLIGHT
            task = asyncio.create_task(self._create(key, product))
            task.add_done_callback(_consume_result)
            self._in_flight[key] = task
        else:
            logger.debug("conversation_creation_joined", counterparty_id=counterparty_id, product_id=product_id)

        # A cancelled caller must not cancel the shared creation
        return await asyncio.shield(task)

    async def _create(self, key: CreationKey, product: Optional[ProductContext]) -> Conversation:
        counterparty_id, product_id = key
        succeeded = False
        try:
            conversation = await self._create_once(key, product)
            succeeded = True
        finally:
            self._in_flight.pop(key, None)
            self._states[key] = CreationState.ATTEMPTED if succeeded else CreationState.NONE
            if not succeeded:
                logger.warning(
                    "conversation_creation_failed",
                    counterparty_id=counterparty_id,
                    product_id=product_id,
                )
        self.selector.select(conversation.id)
        return conversation

    async def _create_once(self, key: CreationKey, product: Optional[ProductContext]) -> Conversation:
        counterparty_id, product_id = key

        # Double-check against the server list right before creating
        try:
            await self.refresh()
        except StoreError as e:
            logger.warning("conversation_precheck_failed", product_id=product_id, error=str(e))
        existing = self.selector.find(counterparty_id, product_id)
        if existing is not None:
            logger.info("conversation_found_on_precheck", conversation_id=existing.id, product_id=product_id)
            return existing

        try:
            conversation = await self.store.create_conversation(
                subject_for(product),
                counterparty_id=counterparty_id,
                product_id=product_id,
            )
        except CreationConflict:
            CREATION_CONFLICTS.inc()
            logger.info("conversation_creation_conflict", product_id=product_id)
            await self.refresh()
            existing = self.selector.find(counterparty_id, product_id)
            if existing is None:
                raise
            return existing

        CONVERSATIONS_CREATED.inc()
        logger.info("conversation_created", conversation_id=conversation.id, product_id=product_id)
        try:
            await self.refresh()
        except StoreError as e:
            logger.warning("conversation_list_refresh_failed", error=str(e))
        if self.selector.get(conversation.id) is None:
            self.selector.upsert(conversation)
        return self.selector.get(conversation.id)

    async def _recover_attempted(self, key: CreationKey) -> Conversation:
        """A created conversation went missing from the list; never recreate it."""
        counterparty_id, product_id = key
        await self.refresh()
        existing = self.selector.find(counterparty_id, product_id)
        if existing is None:
            logger.error("attempted_conversation_missing", counterparty_id=counterparty_id, product_id=product_id)
            raise ConversationUnavailable(product_id or "general")
        self.selector.select(existing.id)
        return existing

    async def close(self) -> None:
        """Abandon in-flight creations; their results are ignored."""
        in_flight = list(self._in_flight.items())
        for _, task in in_flight:
            task.cancel()
        if in_flight:
            await asyncio.gather(*[task for _, task in in_flight], return_exceptions=True)
        # A task cancelled before it started never ran its own cleanup
        for key, _ in in_flight:
            self._in_flight.pop(key, None)
            if self._states.get(key) == CreationState.IN_FLIGHT:
                self._states[key] = CreationState.NONE
