"""
Shared fakes and fixtures for the streaming chat test suite.

No test talks to a real upstream: 'FakeChatStream' replays a fixed list of
deltas (optionally failing or stalling afterwards) and 'FakeLLM' hands those
streams out while recording every payload it was asked to send.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from unittest.mock import AsyncMock

import pytest

from streaming_chat.attachments import LocalAttachmentService
from streaming_chat.catalog import ModelEndpoint, StaticModelCatalog
from streaming_chat.config import ChatSettings
from streaming_chat.controller import ChatController
from streaming_chat.conversation_database.in_memory import InMemoryConversationDatabase, InMemoryMessageDatabase
from streaming_chat.llms.base import LLM, ChatStream, LLMMessage, Roles
from streaming_chat.titles import TitleGenerator

SYSTEM_PROMPT = "You are a test assistant."


class FakeChatStream(ChatStream):
    """Replays 'deltas', then raises 'error' or stalls forever if asked to."""

    def __init__(self, deltas: list[str], error: Exception | None = None, stall: bool = False) -> None:
        self.deltas = list(deltas)
        self.error = error
        self.stall = stall
        self.yielded = 0
        self.close_calls = 0

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        for delta in self.deltas:
            await asyncio.sleep(0)
            if self.closed:
                return
            self.yielded += 1
            yield delta
        if self.error is not None:
            raise self.error
        if self.stall:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.close_calls += 1


class FakeLLM(LLM):
    def __init__(
        self,
        make_stream: Callable[[], ChatStream] | None = None,
        reply: str = "",
        models: list[str] | None = None,
        models_error: Exception | None = None,
    ) -> None:
        self.make_stream = make_stream or (lambda: FakeChatStream(["Hi", " there", "!"]))
        self.reply = reply
        self.models = ["test-model", "other-model"] if models is None else models
        self.models_error = models_error
        self.stream_payloads: list[list[LLMMessage]] = []
        self.streams: list[ChatStream] = []

    async def generate(self, conversation: list[LLMMessage], max_tokens: int | None = None) -> LLMMessage:
        return LLMMessage(role=Roles.ASSISTANT, content=self.reply)

    async def generate_stream(self, conversation: list[LLMMessage]) -> ChatStream:
        self.stream_payloads.append([message.model_copy() for message in conversation])
        stream = self.make_stream()
        self.streams.append(stream)
        return stream

    async def list_models(self) -> list[str]:
        if self.models_error is not None:
            raise self.models_error
        return list(self.models)


async def wait_for(predicate: Callable[[], bool], attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def conversation_db() -> InMemoryConversationDatabase:
    return InMemoryConversationDatabase()


@pytest.fixture
def message_db() -> InMemoryMessageDatabase:
    return InMemoryMessageDatabase()


@pytest.fixture
def title_generator() -> AsyncMock:
    generator = AsyncMock(spec=TitleGenerator)
    generator.generate_title.return_value = "Friendly Greeting"
    return generator


@pytest.fixture
def attachment_service(tmp_path) -> LocalAttachmentService:
    return LocalAttachmentService(root=tmp_path)


@pytest.fixture
def catalog() -> StaticModelCatalog:
    return StaticModelCatalog(default_url="https://llm.example.com/v1", default_key="test-key")


@pytest.fixture
def make_controller(conversation_db, message_db, catalog, title_generator, attachment_service, fake_llm):
    def _make(**overrides) -> ChatController:
        endpoints: list[ModelEndpoint] = []

        def llm_factory(endpoint: ModelEndpoint) -> LLM:
            endpoints.append(endpoint)
            return fake_llm

        kwargs = {
            "conversation_db": conversation_db,
            "message_db": message_db,
            "catalog": catalog,
            "title_generator": title_generator,
            "attachment_service": attachment_service,
            "settings": ChatSettings(default_model="test-model", system_prompt=SYSTEM_PROMPT),
            "llm_factory": llm_factory,
        }
        kwargs.update(overrides)
        controller = ChatController(**kwargs)
        controller.resolved_endpoints = endpoints
        return controller

    return _make


@pytest.fixture
def controller(make_controller) -> ChatController:
    return make_controller()
