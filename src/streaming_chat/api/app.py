"""
HTTP surface for the chat controller.

'create_app' binds a 'ChatController' and an 'AuthProvider' to a FastAPI
application. 'POST /chat' relays the controller's event stream to the browser as
server-sent events: one 'data:' frame per transcript update, an 'event: error'
frame if the send could not start, and a closing 'data: [DONE]'.
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel

from streaming_chat.attachments import LocalAttachmentService
from streaming_chat.api.auth.base import AuthProvider, HeaderAuthProvider
from streaming_chat.catalog import RegisteredModel, StaticModelCatalog
from streaming_chat.config import ChatSettings
from streaming_chat.controller import ChatController, ConversationInput, MessageInput, SendResult
from streaming_chat.conversation_database.data_models.conversation import Conversation
from streaming_chat.conversation_database.in_memory import InMemoryConversationDatabase, InMemoryMessageDatabase
from streaming_chat.errors import ChatError, ConversationBusyError, ConversationNotFoundError, TransportError
from streaming_chat.llms.openai_compatible import OpenAICompatibleLLM
from streaming_chat.titles import LLMTitleGenerator
from streaming_chat.transcript import Turn

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


class ErrorBody(BaseModel):
    error: str


def create_default_controller(settings: ChatSettings | None = None) -> ChatController:
    """Controller wired to in-memory storage and the configured default upstream."""
    catalog = StaticModelCatalog()
    return ChatController(
        conversation_db=InMemoryConversationDatabase(),
        message_db=InMemoryMessageDatabase(),
        catalog=catalog,
        title_generator=LLMTitleGenerator(catalog, OpenAICompatibleLLM.from_endpoint),
        attachment_service=LocalAttachmentService(),
        settings=settings or ChatSettings.from_env(),
    )


def create_app(controller: ChatController, auth_provider: AuthProvider | None = None) -> FastAPI:
    auth = auth_provider or HeaderAuthProvider()
    app = FastAPI(title="streaming-chat")
    auth.bind_to_app(app)

    UserId = Annotated[str, Depends(auth.get_current_user_id)]

    async def owned_conversation(conversation_id: str, user_id: str) -> Conversation:
        try:
            conversation = await controller.conversation_db.get_conversation_by_id(conversation_id)
        except ConversationNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        if conversation.user_id != user_id:
            raise HTTPException(status_code=403, detail="Forbidden")
        return conversation

    async def event_frames(user_input: MessageInput, user_id: str) -> AsyncGenerator[str, None]:
        try:
            async for event in controller.process_new_message_stream(user_input, user_id):
                yield f"data: {event.model_dump_json(exclude_none=True)}\n\n"
        except ChatError as exc:
            logger.error(f"Send for user {user_id} failed: {exc}")
            yield f"event: error\ndata: {ErrorBody(error=str(exc)).model_dump_json()}\n\n"
        yield "data: [DONE]\n\n"

    @app.post("/chat")
    async def chat(user_input: MessageInput, user_id: UserId) -> StreamingResponse:
        if user_input.conversation_id is not None:
            await owned_conversation(user_input.conversation_id, user_id)
            if controller.is_busy(user_input.conversation_id):
                raise HTTPException(status_code=409, detail=str(ConversationBusyError(user_input.conversation_id)))
        return StreamingResponse(
            event_frames(user_input, user_id), media_type="text/event-stream", headers=SSE_HEADERS
        )

    @app.post("/chat/complete")
    async def chat_complete(user_input: MessageInput, user_id: UserId) -> SendResult:
        if user_input.conversation_id is not None:
            await owned_conversation(user_input.conversation_id, user_id)
        try:
            return await controller.send_message(user_input, user_id)
        except ConversationBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ChatError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.get("/conversations")
    async def list_conversations(user_id: UserId) -> list[Conversation]:
        return await controller.get_conversations_by_user_id(user_id)

    @app.get("/conversations/{conversation_id}/messages")
    async def list_messages(conversation_id: str, user_id: UserId) -> list[Turn]:
        await owned_conversation(conversation_id, user_id)
        return await controller.get_visible_turns(conversation_id)

    @app.patch("/conversations/{conversation_id}")
    async def rename_conversation(
        conversation_id: str, conversation_updates: ConversationInput, user_id: UserId
    ) -> Conversation:
        await owned_conversation(conversation_id, user_id)
        return await controller.update_conversation(conversation_id, conversation_updates)

    @app.delete("/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str, user_id: UserId) -> dict[str, bool]:
        await owned_conversation(conversation_id, user_id)
        try:
            return {"deleted": await controller.delete_conversation(conversation_id)}
        except ConversationBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.post("/conversations/{conversation_id}/cancel")
    async def cancel(conversation_id: str, user_id: UserId) -> dict[str, bool]:
        await owned_conversation(conversation_id, user_id)
        return {"cancelled": controller.cancel(conversation_id)}

    @app.get("/models")
    async def list_models(user_id: UserId) -> list[RegisteredModel]:
        try:
            return await controller.list_models(user_id)
        except TransportError as exc:
            logger.error(f"Listing models for user {user_id} failed: {exc}")
            raise HTTPException(status_code=502, detail="Failed to fetch models") from exc

    return app
