"""Conversation list and active-selection state."""

from enum import Enum
from typing import Callable, List, Optional

import structlog

from ..domain.models import Conversation

logger = structlog.get_logger()

Listener = Callable[["ConversationSelector"], None]


class Channel(str, Enum):
    ALL = "all"
    GENERAL = "general"
    PRODUCT = "product"


def matches_query(conversation: Conversation, query: str) -> bool:
    """Case-insensitive search over the fields shown in the list."""
    query = query.strip().lower()
    if not query:
        return True
    product = conversation.product_context
    fields = [
        conversation.subject,
        conversation.last_message_preview,
        conversation.counterparty.name,
        conversation.counterparty.company,
        product.id if product else None,
        product.name if product else None,
    ]
    return any(query in value.lower() for value in fields if value)


class ConversationSelector:
    """Single owner of the loaded conversations and the active one.

    Only the resolver and the controller mutate it. Listeners are called
    synchronously after every change.
    """

    def __init__(self) -> None:
        self._conversations: List[Conversation] = []
        self._active_id: Optional[str] = None
        self.channel = Channel.ALL
        self.query = ""
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns the unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    @property
    def conversations(self) -> List[Conversation]:
        return list(self._conversations)

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    @property
    def active(self) -> Optional[Conversation]:
        return self.get(self._active_id) if self._active_id else None

    def get(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def find(self, counterparty_id: Optional[str], product_id: Optional[str]) -> Optional[Conversation]:
        """Conversation for a counterparty and product, or general if no product.

        ``counterparty_id=None`` matches any counterparty.
        """
        for conversation in self._conversations:
            if conversation.product_id != product_id:
                continue
            if counterparty_id is None or conversation.counterparty.id == counterparty_id:
                return conversation
        return None

    def replace(self, conversations: List[Conversation]) -> None:
        """Adopt a freshly fetched list.

        If the active conversation is gone from the server, the selection
        falls back to nothing selected.
        """
        self._conversations = list(conversations)
        if self._active_id is not None and self.get(self._active_id) is None:
            logger.warning("active_conversation_vanished", conversation_id=self._active_id)
            self._active_id = None
        self._notify()

    def upsert(self, conversation: Conversation) -> None:
        for index, existing in enumerate(self._conversations):
            if existing.id == conversation.id:
                self._conversations[index] = conversation
                break
        else:
            self._conversations.insert(0, conversation)
        self._notify()

    def select(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        if conversation_id is not None and self.get(conversation_id) is None:
            raise KeyError(conversation_id)
        if conversation_id != self._active_id:
            self._active_id = conversation_id
            logger.info("conversation_selected", conversation_id=conversation_id)
            self._notify()
        return self.active

    def clear_selection(self) -> None:
        self.select(None)

    def mark_read_locally(self, conversation_id: str) -> None:
        conversation = self.get(conversation_id)
        if conversation is not None and conversation.unread_count:
            self.upsert(conversation.model_copy(update={"unread_count": 0}))

    def set_channel(self, channel: Channel) -> None:
        self.channel = Channel(channel)
        self._notify()

    def set_query(self, query: str) -> None:
        self.query = query
        self._notify()

    def general(self) -> List[Conversation]:
        return [c for c in self._conversations if c.is_general]

    def product_scoped(self) -> List[Conversation]:
        return [c for c in self._conversations if not c.is_general]

    def visible(self) -> List[Conversation]:
        """Conversations passing the channel and search filters."""
        if self.channel == Channel.GENERAL:
            candidates = self.general()
        elif self.channel == Channel.PRODUCT:
            candidates = self.product_scoped()
        else:
            candidates = self.conversations
        return [c for c in candidates if matches_query(c, self.query)]

    @property
    def unread_total(self) -> int:
        return sum(c.unread_count for c in self._conversations)
