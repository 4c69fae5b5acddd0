"""Store interfaces consumed by the conversation core."""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..domain.models import Conversation, Message, OutgoingMessage


class ConversationStore(ABC):
    """Abstract conversation service (``/conversations``)."""

    @abstractmethod
    async def list_conversations(self) -> List[Conversation]:
        """List the current user's conversations."""
        pass

    @abstractmethod
    async def create_conversation(
        self,
        subject: str,
        counterparty_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> Conversation:
        """Create a conversation, optionally scoped to a product."""
        pass

    @abstractmethod
    async def mark_read(self, conversation_id: str) -> None:
        """Clear the unread counter of a conversation."""
        pass


class MessageStore(ABC):
    """Abstract message service."""

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> List[Message]:
        """Get the ordered message history of a conversation."""
        pass

    @abstractmethod
    async def send_message(self, conversation_id: str, message: OutgoingMessage) -> Message:
        """Append a message to a conversation."""
        pass

    @abstractmethod
    async def edit_message(self, message_id: str, content: str) -> Message:
        """Replace the content of a message."""
        pass

    @abstractmethod
    async def delete_message(self, message_id: str) -> None:
        """Delete a message."""
        pass
