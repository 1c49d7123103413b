"""
Title generation for new conversations.

After the first exchange of a new chat the controller asks a 'TitleGenerator'
for a short title. Generation is allowed to fail: 'fallback_title' gives the
date-based title used whenever it does or returns nothing usable.
"""

import re
from abc import ABC, abstractmethod
from collections.abc import Callable

from streaming_chat.catalog import ModelCatalog, ModelEndpoint
from streaming_chat.errors import TitleGenerationError, TransportError
from streaming_chat.llms.base import LLM, LLMMessage, Roles
from streaming_chat.streaming.thinking import split_thinking
from streaming_chat.utils.time import today_label

TITLE_SYSTEM_PROMPT = (
    "You are a helpful assistant that generates concise, descriptive titles based on user messages. "
    "Keep titles under 6 words."
)
TITLE_MAX_TOKENS = 20
MAX_TITLE_LENGTH = 256

_QUOTES = re.compile(r"[\"']")


def fallback_title() -> str:
    return f"Chat - {today_label()}"


def clean_title(raw: str) -> str:
    """Drop thinking regions and quotes from a generated title. May return ''."""
    title = split_thinking(raw, final=True).answer
    title = _QUOTES.sub("", title).strip()
    return title[:MAX_TITLE_LENGTH]


class TitleGenerator(ABC):
    @abstractmethod
    async def generate_title(self, first_user_message: str, model_identifier: str) -> str:
        """Return a title, or raise 'TitleGenerationError'."""
        pass


class LLMTitleGenerator(TitleGenerator):
    """Asks the conversation's own model for a title."""

    def __init__(self, catalog: ModelCatalog, llm_factory: Callable[[ModelEndpoint], LLM]) -> None:
        self.catalog = catalog
        self.llm_factory = llm_factory

    async def generate_title(self, first_user_message: str, model_identifier: str) -> str:
        llm = self.llm_factory(await self.catalog.resolve(model_identifier))
        conversation = [
            LLMMessage(role=Roles.SYSTEM, content=TITLE_SYSTEM_PROMPT),
            LLMMessage(
                role=Roles.USER,
                content=f'Generate a short, descriptive title for a chat that starts with this message: "{first_user_message}"',
            ),
        ]
        try:
            response = await llm.generate(conversation, max_tokens=TITLE_MAX_TOKENS)
        except TransportError as exc:
            raise TitleGenerationError(f"Title request failed: {exc}") from exc
        title = clean_title(response.content)
        if not title:
            raise TitleGenerationError("Model returned an empty title")
        return title
