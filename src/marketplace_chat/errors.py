"""Error taxonomy for the conversation core."""

from typing import Optional


class ChatError(Exception):
    """Base class for every error raised by the conversation core."""
    pass


class StoreError(ChatError):
    """A store call failed for a reason the core cannot classify."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CreationConflict(StoreError):
    """A create-conversation call raced with an existing conversation."""

    def __init__(self, message: str, product_id: Optional[str] = None):
        super().__init__(message, status_code=409)
        self.product_id = product_id


class ConversationUnavailable(StoreError):
    """The conversation can no longer be resolved on the server."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} not found", status_code=404)
        self.conversation_id = conversation_id


class TransientSyncFailure(ChatError):
    """A poll tick failed; the next tick retries."""

    def __init__(self, conversation_id: str, cause: Exception):
        super().__init__(f"Sync of {conversation_id} failed: {cause}")
        self.conversation_id = conversation_id
        self.cause = cause


class SendFailure(ChatError):
    """A composed message did not reach the server."""

    def __init__(self, client_id: str, cause: Exception):
        super().__init__(f"Message {client_id} could not be sent: {cause}")
        self.client_id = client_id
        self.cause = cause


class ValidationError(ChatError, ValueError):
    """A user intent was rejected before any network call."""
    pass


class ResourceAcquisitionError(ChatError):
    """The audio input device could not be acquired."""
    pass
