"""
Error taxonomy for the streaming chat toolkit.

Every error raised on purpose by the toolkit derives from 'ChatError' so that
callers can catch the whole family at one seam. 'InvariantViolation' is the odd
one out: it signals a programming error and is never caught by library code.
"""


class ChatError(Exception):
    """Base class for all toolkit errors."""


class TransportError(ChatError):
    """The upstream stream could not be opened or broke while being read.

    'status_code' is set when the failure was a non-success HTTP response.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedFrameError(ChatError):
    """A single SSE frame carried a payload that could not be decoded."""


class InvariantViolation(ChatError):
    """An internal transcript invariant was broken. Always a defect."""


class PersistenceError(ChatError):
    """A repository call failed."""


class ConversationNotFoundError(PersistenceError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation with id {conversation_id} not found")
        self.conversation_id = conversation_id


class TitleGenerationError(ChatError):
    """The title generator failed or produced nothing usable."""


class ConversationBusyError(ChatError):
    """A send is already in flight for this conversation."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"A message is already being processed for conversation {conversation_id}")
        self.conversation_id = conversation_id


class AttachmentError(ChatError):
    """An attachment could not be found or its content could not be read."""
