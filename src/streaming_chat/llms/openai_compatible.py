"""
OpenAI-compatible chat completions backend over httpx.

'generate_stream' posts a streaming request and returns as soon as the response
headers are in: connection failures and non-2xx statuses surface there as
'TransportError'. The body is read lazily by iterating the returned
'HTTPChatStream', which runs the raw bytes through the SSE decoder.

'list_models' reads the upstream's 'GET /models' listing.

Only the connect phase of a stream has a timeout. A stream that stalls while reading stays
open until it is cancelled.
"""

from collections.abc import AsyncGenerator, AsyncIterator

import httpx
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from streaming_chat.catalog import ModelEndpoint
from streaming_chat.config import REQUEST_TIMEOUT
from streaming_chat.errors import TransportError
from streaming_chat.llms.base import LLM, ChatStream, LLMMessage, Roles
from streaming_chat.streaming.decoder import decode_sse_stream

COMPLETIONS_PATH = "chat/completions"
MODELS_PATH = "models"


class CompletionMessage(BaseModel):
    content: str | None = None


class CompletionChoice(BaseModel):
    message: CompletionMessage


class ChatCompletion(BaseModel):
    choices: list[CompletionChoice]


class UpstreamModel(BaseModel):
    id: str = Field(min_length=1)
    owned_by: str | None = None


class ModelList(BaseModel):
    """Body of 'GET /models'."""

    data: list[UpstreamModel]


class HTTPChatStream(ChatStream):
    """An open streaming response. Owns its client and closes both together."""

    def __init__(self, response: httpx.Response, client: httpx.AsyncClient) -> None:
        self._response = response
        self._client = client
        self._deltas: AsyncGenerator[str, None] | None = None
        self.closed = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._deltas is None:
            self._deltas = self._read()
        return self._deltas

    async def _read(self) -> AsyncGenerator[str, None]:
        try:
            async for delta in decode_sse_stream(self._response.aiter_bytes()):
                yield delta
        except httpx.HTTPError as exc:
            raise TransportError(f"Reading the stream failed: {exc}") from exc

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._deltas is not None:
            await self._deltas.aclose()
        await self._response.aclose()
        await self._client.aclose()
        logger.debug("Upstream stream released")


class OpenAICompatibleLLM(LLM):
    def __init__(
        self,
        model_name: str,
        base_url: str,
        api_key: str,
        temperature: float | None = None,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model_name = model_name
        self.base_url = base_url
        self.api_key = api_key
        self.temperature = temperature
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_endpoint(cls, endpoint: ModelEndpoint, **kwargs) -> "OpenAICompatibleLLM":
        return cls(
            model_name=endpoint.upstream_model_id,
            base_url=str(endpoint.endpoint_url),
            api_key=endpoint.credential,
            **kwargs,
        )

    def _client(self, read_timeout: float | None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=httpx.Timeout(self.timeout, read=read_timeout),
            transport=self._transport,
        )

    def _payload(self, conversation: list[LLMMessage], stream: bool, max_tokens: int | None = None) -> dict:
        payload: dict = {
            "model": self.model_name,
            "messages": [{"role": str(message.role), "content": message.content} for message in conversation],
            "stream": stream,
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return payload

    async def generate(self, conversation: list[LLMMessage], max_tokens: int | None = None) -> LLMMessage:
        async with self._client(read_timeout=self.timeout) as client:
            try:
                response = await client.post(COMPLETIONS_PATH, json=self._payload(conversation, False, max_tokens))
            except httpx.HTTPError as exc:
                raise TransportError(f"Request to {self.base_url} failed: {exc}") from exc
        if response.is_error:
            raise TransportError(
                f"Upstream returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            completion = ChatCompletion.model_validate_json(response.content)
        except ValidationError as exc:
            raise TransportError(f"Malformed completion from {self.base_url}: {exc}") from exc
        content = completion.choices[0].message.content if completion.choices else None
        return LLMMessage(role=Roles.ASSISTANT, content=content or "")

    async def list_models(self) -> list[str]:
        async with self._client(read_timeout=self.timeout) as client:
            try:
                response = await client.get(MODELS_PATH)
            except httpx.HTTPError as exc:
                raise TransportError(f"Listing models at {self.base_url} failed: {exc}") from exc
        if response.is_error:
            raise TransportError(
                f"Upstream returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            models = ModelList.model_validate_json(response.content)
        except ValidationError as exc:
            raise TransportError(f"Malformed model list from {self.base_url}: {exc}") from exc
        logger.debug(f"{len(models.data)} models available at {self.base_url}")
        return [model.id for model in models.data]

    async def generate_stream(self, conversation: list[LLMMessage]) -> HTTPChatStream:
        client = self._client(read_timeout=None)
        request = client.build_request("POST", COMPLETIONS_PATH, json=self._payload(conversation, True))
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            raise TransportError(f"Opening the stream to {self.base_url} failed: {exc}") from exc

        if response.is_error:
            body = await response.aread()
            await response.aclose()
            await client.aclose()
            raise TransportError(
                f"Upstream returned HTTP {response.status_code}: {body[:200].decode(errors='replace')}",
                status_code=response.status_code,
            )

        logger.info(f"Streaming {self.model_name!r} from {self.base_url}")
        return HTTPChatStream(response, client)
