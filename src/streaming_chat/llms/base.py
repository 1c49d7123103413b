"""
Core LLM abstractions and message data models.

Concrete backends ('OpenAICompatibleLLM') implement the 'LLM' ABC. The shared
message format ('LLMMessage') is backend-agnostic so the controller and the
title generator never need to know which upstream is in use.

Streaming is split in two steps: 'generate_stream' opens the upstream stream
(and fails with 'TransportError' if it cannot), returning a 'ChatStream' whose
iteration yields raw content deltas. Keeping the open stream as an object lets
the reconciler release it on cancellation without waiting for the next delta.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from enum import StrEnum

from pydantic import BaseModel


class Roles(StrEnum):
    """Conversation roles as used by the OpenAI chat completions API."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class LLMMessage(BaseModel):
    """A single message in a conversation sent to or received from an LLM."""

    content: str = ""
    role: Roles = Roles.ASSISTANT


class ChatStream(ABC):
    """
    An open upstream stream of content deltas.

    Iterating yields delta strings in arrival order. 'aclose' releases the
    underlying transport and must be safe to call more than once.
    """

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[str]:
        pass

    @abstractmethod
    async def aclose(self) -> None:
        pass


class LLM(ABC):
    """
    Abstract base class for language model backends.

    Concrete implementations adapt a specific API (an OpenAI-compatible HTTP
    server) to a common interface.
    """

    @abstractmethod
    async def generate(self, conversation: list[LLMMessage], max_tokens: int | None = None) -> LLMMessage:
        """Return a single complete response for the given conversation."""
        pass

    @abstractmethod
    async def generate_stream(self, conversation: list[LLMMessage]) -> ChatStream:
        """Open a streamed response for the given conversation."""
        pass

    @abstractmethod
    async def list_models(self) -> list[str]:
        """Return the identifiers of the models the backend serves."""
        pass
