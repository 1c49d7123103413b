"""
Message data model and storage interface.

Messages are stored flat and in creation order within a conversation. The
assistant's 'content' is the raw model output, thinking tags included: the
split into thinking and answer is recomputed whenever a transcript is loaded.

The 'MessageDatabase' ABC is the pluggable storage backend. 'InMemoryMessageDatabase'
is the bundled implementation.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from streaming_chat.llms.base import Roles


class Message(BaseModel):
    """
    A single persisted message within a conversation.

    'user_id' is the conversation owner for both sides of the exchange; 'model'
    records which model the message was sent to or produced by.
    """

    id: str
    user_id: str
    conversation_id: str
    content: str
    role: Roles
    model: str
    create_timestamp: int
    attachment_ids: list[str] = []


class MessageDatabase(ABC):
    """Abstract repository for 'Message' records."""

    @abstractmethod
    async def create_message(self, message: Message) -> Message:
        pass

    @abstractmethod
    async def get_messages_by_conversation_id(self, conversation_id: str) -> list[Message]:
        """Return the conversation's messages ordered by creation."""
        pass

    @abstractmethod
    async def delete_messages_by_conversation_id(self, conversation_id: str) -> int:
        pass
