"""
Chat controller (Facade).

'ChatController' is the single entry point for application logic. It owns the
in-memory transcripts, coordinates the repositories, the model catalog, the
attachment service and the title generator, and drives one
'StreamReconciler' per send.

A send runs these steps in order:

    1. create the conversation if the message starts a new chat;
    2. append the user turn, inlining attachment text into the outgoing copy;
    3. start persisting the user turn (awaited later, failure is a warning);
    4. resolve the model's upstream through the catalog;
    5. open the stream and reconcile it into the transcript;
    6. persist the assistant turn (retried once);
    7. for a new chat, generate and store a title (failure falls back).

Failures in steps 1-2 raise. Failures in steps 4-5 end the send in the
'FAILED' state with an error annotation on the transcript; the caller gets a
'SendResult' either way, and the conversation is released for the next send.
Only one send may be in flight per conversation, a second one raises
'ConversationBusyError'.

The two public entry points for sending are:

    'send_message'               - returns the final 'SendResult'.
    'process_new_message_stream' - async generator of 'ChatEvent' snapshots,
                                   one per transcript update, then the result.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from typing import Literal

from loguru import logger
from pydantic import BaseModel, Field

from streaming_chat.attachments import AttachmentService, build_attachment_block
from streaming_chat.catalog import ModelCatalog, ModelEndpoint, RegisteredModel
from streaming_chat.config import RESPONSE_STYLES, ChatSettings
from streaming_chat.conversation_database.data_models.conversation import Conversation, ConversationDatabase
from streaming_chat.conversation_database.data_models.message import Message, MessageDatabase
from streaming_chat.errors import AttachmentError, ConversationBusyError
from streaming_chat.llms.base import LLM, LLMMessage, Roles
from streaming_chat.llms.openai_compatible import OpenAICompatibleLLM
from streaming_chat.streaming.reconciler import ReconcilerState, StreamReconciler
from streaming_chat.streaming.thinking import split_thinking
from streaming_chat.titles import TitleGenerator, fallback_title
from streaming_chat.transcript import Attachment, ErrorAnnotation, Transcript, Turn
from streaming_chat.utils.database import generate_uid
from streaming_chat.utils.result import Err, Ok, capture
from streaming_chat.utils.time import get_current_timestamp


class MessageInput(BaseModel):
    content: str = Field(min_length=1)
    model: str | None = None
    conversation_id: str | None = None
    attachment_ids: list[str] = []
    style: str = "Normal"


class ConversationInput(BaseModel):
    title: str = Field(min_length=1)


class SendResult(BaseModel):
    conversation: Conversation
    state: ReconcilerState
    assistant_turn: Turn | None
    text: str
    error: str | None = None
    warnings: list[str] = []
    title: str | None = None


class ChatEvent(BaseModel):
    """One update pushed to observers while a send is running. 'turn' is a snapshot copy."""

    type: Literal["conversation", "turn", "error", "result"]
    conversation_id: str
    state: ReconcilerState | None = None
    turn: Turn | None = None
    annotation: ErrorAnnotation | None = None
    result: SendResult | None = None


Listener = Callable[[ChatEvent], None]


def _snapshot(transcript: Transcript) -> Turn | None:
    turn = transcript.last_turn
    return turn.model_copy() if turn is not None else None


def style_hint(style: str) -> str:
    if not style or style == "Normal":
        return ""
    description = RESPONSE_STYLES.get(style, style)
    return f"\n\n Please respond in a {style.lower()} style. ({description})"


class ChatController:
    def __init__(
        self,
        conversation_db: ConversationDatabase,
        message_db: MessageDatabase,
        catalog: ModelCatalog,
        title_generator: TitleGenerator,
        attachment_service: AttachmentService,
        settings: ChatSettings | None = None,
        llm_factory: Callable[[ModelEndpoint], LLM] = OpenAICompatibleLLM.from_endpoint,
    ):
        self.conversation_db = conversation_db
        self.message_db = message_db
        self.catalog = catalog
        self.title_generator = title_generator
        self.attachment_service = attachment_service
        self.settings = settings or ChatSettings()
        self.llm_factory = llm_factory
        self._transcripts: dict[str, Transcript] = {}
        # conversation id -> reconciler of the send in flight (None until the stream is open)
        self._in_flight: dict[str, StreamReconciler | None] = {}
        self._pending_cancel: set[str] = set()

    def new_transcript(self) -> Transcript:
        transcript = Transcript(hide_system_turn=self.settings.hide_system_turn)
        if self.settings.system_prompt:
            transcript.append_turn(Turn(role=Roles.SYSTEM, content=self.settings.system_prompt))
        return transcript

    def is_busy(self, conversation_id: str) -> bool:
        return conversation_id in self._in_flight

    def _claim(self, conversation_id: str) -> None:
        if conversation_id in self._in_flight:
            raise ConversationBusyError(conversation_id)
        self._in_flight[conversation_id] = None

    def _release(self, conversation_id: str) -> None:
        self._in_flight.pop(conversation_id, None)
        self._pending_cancel.discard(conversation_id)

    async def load_transcript(self, conversation_id: str) -> Transcript:
        """Rebuild a transcript from persisted messages, re-splitting assistant replies."""
        messages = await self.message_db.get_messages_by_conversation_id(conversation_id)
        transcript = self.new_transcript()
        for message in sorted(messages, key=lambda m: m.create_timestamp):
            if message.role is Roles.SYSTEM:
                continue
            thinking, content = None, message.content
            if message.role is Roles.ASSISTANT:
                thinking, content = split_thinking(message.content, final=True)
            transcript.append_turn(
                Turn(
                    role=message.role,
                    content=content,
                    thinking=thinking,
                    attachments=tuple(await self._load_attachments(message.attachment_ids, strict=False)),
                    create_timestamp=message.create_timestamp,
                )
            )
        self._transcripts[conversation_id] = transcript
        return transcript

    async def get_transcript(self, conversation_id: str) -> Transcript:
        if conversation_id in self._transcripts:
            return self._transcripts[conversation_id]
        return await self.load_transcript(conversation_id)

    async def _load_attachments(self, attachment_ids: list[str], strict: bool = True) -> list[Attachment]:
        attachments = []
        for attachment_id in attachment_ids:
            try:
                attachments.append(await self.attachment_service.get_attachment(attachment_id))
            except AttachmentError as exc:
                if strict:
                    raise
                logger.warning(f"Skipping attachment {attachment_id} while loading history: {exc}")
        return attachments

    async def _setup_conversation(self, user_input: MessageInput, user_id: str) -> tuple[Conversation, Transcript]:
        if user_input.conversation_id is None:
            create_time = get_current_timestamp()
            conversation = await self.conversation_db.create_conversation(
                Conversation(
                    id=generate_uid(),
                    user_id=user_id,
                    create_timestamp=create_time,
                    update_timestamp=create_time,
                    title=self.settings.default_title,
                )
            )
            logger.info(f"Created conversation {conversation.id} for user {user_id}")
            transcript = self.new_transcript()
            self._transcripts[conversation.id] = transcript
            return conversation, transcript

        conversation = await self.conversation_db.get_conversation_by_id(user_input.conversation_id)
        return conversation, await self.get_transcript(conversation.id)

    async def send_message(
        self, user_input: MessageInput, user_id: str, listener: Listener | None = None
    ) -> SendResult:
        claimed = user_input.conversation_id
        if claimed is not None:
            self._claim(claimed)
        try:
            conversation, transcript = await self._setup_conversation(user_input, user_id)
            if claimed is None:
                claimed = conversation.id
                self._claim(claimed)
            return await self._send(conversation, transcript, user_input, user_id, listener)
        finally:
            if claimed is not None:
                self._release(claimed)

    async def _send(
        self,
        conversation: Conversation,
        transcript: Transcript,
        user_input: MessageInput,
        user_id: str,
        listener: Listener | None,
    ) -> SendResult:
        is_new = user_input.conversation_id is None
        model = user_input.model or self.settings.default_model
        warnings: list[str] = []

        def emit(event: ChatEvent) -> None:
            if listener is not None:
                listener(event)

        emit(ChatEvent(type="conversation", conversation_id=conversation.id))

        attachments = await self._load_attachments(user_input.attachment_ids)
        user_turn = transcript.append_turn(
            Turn(role=Roles.USER, content=user_input.content, attachments=tuple(attachments))
        )
        emit(ChatEvent(type="turn", conversation_id=conversation.id, turn=user_turn.model_copy()))

        payload = transcript.for_api_payload()
        payload[-1].content += style_hint(user_input.style)
        payload[-1].content += await build_attachment_block(self.attachment_service, attachments)

        user_write = asyncio.ensure_future(
            capture(
                self.message_db.create_message(
                    Message(
                        id=generate_uid(),
                        user_id=user_id,
                        conversation_id=conversation.id,
                        content=user_input.content,
                        role=Roles.USER,
                        model=model,
                        create_timestamp=user_turn.create_timestamp,
                        attachment_ids=[a.id for a in attachments],
                    )
                )
            )
        )

        reconciler = StreamReconciler(transcript)
        reconciler.subscribe(
            lambda r: emit(
                ChatEvent(type="turn", conversation_id=conversation.id, state=r.state, turn=_snapshot(transcript))
            )
        )
        try:
            outcome_state, outcome_text, assistant_turn, error = await self._stream_reply(
                conversation.id, transcript, reconciler, model, payload
            )
        finally:
            written = await user_write
        if isinstance(written, Err):
            logger.warning(f"User message for {conversation.id} was not saved: {written.error}")
            warnings.append(f"Your message could not be saved: {written.error}")

        if error is not None:
            emit(
                ChatEvent(
                    type="error",
                    conversation_id=conversation.id,
                    state=outcome_state,
                    annotation=transcript.annotations[-1] if transcript.annotations else None,
                )
            )
        elif assistant_turn is not None:
            warning = await self._persist_assistant(conversation.id, user_id, model, outcome_text)
            if warning:
                warnings.append(warning)

        title = None
        if is_new:
            conversation, title, warning = await self._name_conversation(conversation, user_input.content, model)
            if warning:
                warnings.append(warning)

        result = SendResult(
            conversation=conversation,
            state=outcome_state,
            assistant_turn=assistant_turn,
            text=outcome_text,
            error=error,
            warnings=warnings,
            title=title,
        )
        emit(ChatEvent(type="result", conversation_id=conversation.id, state=outcome_state, result=result))
        return result

    async def _stream_reply(
        self,
        conversation_id: str,
        transcript: Transcript,
        reconciler: StreamReconciler,
        model: str,
        payload: list[LLMMessage],
    ) -> tuple[ReconcilerState, str, Turn | None, str | None]:
        resolved = await capture(self.catalog.resolve(model))
        if isinstance(resolved, Err):
            message = f"Model {model!r} could not be resolved: {resolved.error}"
            logger.error(message)
            transcript.annotate_error(message)
            return ReconcilerState.FAILED, "", None, message

        if conversation_id in self._pending_cancel:
            return ReconcilerState.CANCELLED, "", None, None

        opened = await capture(self.llm_factory(resolved.value).generate_stream(payload))
        if isinstance(opened, Err):
            message = str(opened.error)
            logger.error(f"Could not open stream for {conversation_id}: {message}")
            transcript.annotate_error(message)
            return ReconcilerState.FAILED, "", None, message

        stream = opened.value
        if conversation_id in self._pending_cancel:
            await stream.aclose()
            return ReconcilerState.CANCELLED, "", None, None

        self._in_flight[conversation_id] = reconciler
        outcome = await reconciler.run(stream)
        error = str(outcome.error) if outcome.error is not None else None
        return outcome.state, outcome.text, outcome.turn, error

    async def _persist_assistant(self, conversation_id: str, user_id: str, model: str, text: str) -> str | None:
        message = Message(
            id=generate_uid(),
            user_id=user_id,
            conversation_id=conversation_id,
            content=text,
            role=Roles.ASSISTANT,
            model=model,
            create_timestamp=get_current_timestamp(),
        )
        written = await capture(self.message_db.create_message(message))
        if isinstance(written, Err):
            logger.warning(f"Saving the reply for {conversation_id} failed, retrying once: {written.error}")
            written = await capture(self.message_db.create_message(message))
        if isinstance(written, Err):
            logger.error(f"Reply for {conversation_id} was not saved: {written.error}")
            return f"The assistant's reply could not be saved: {written.error}"
        return None

    async def _name_conversation(
        self, conversation: Conversation, first_message: str, model: str
    ) -> tuple[Conversation, str, str | None]:
        generated = await capture(self.title_generator.generate_title(first_message, model))
        if isinstance(generated, Ok) and generated.value.strip():
            title = generated.value.strip()
        else:
            reason = generated.error if isinstance(generated, Err) else "empty title"
            logger.warning(f"Title generation for {conversation.id} fell back to default: {reason}")
            title = fallback_title()

        updated = await capture(
            self.conversation_db.update_conversation(
                conversation.model_copy(update={"title": title, "update_timestamp": get_current_timestamp()})
            )
        )
        if isinstance(updated, Err):
            logger.warning(f"Title for {conversation.id} was not saved: {updated.error}")
            return conversation, title, f"The conversation title could not be saved: {updated.error}"
        logger.info(f"Conversation {conversation.id} titled {title!r}")
        return updated.value, title, None

    def cancel(self, conversation_id: str) -> bool:
        """Stop the send in flight for 'conversation_id'. Returns False if there is none."""
        if conversation_id not in self._in_flight:
            return False
        reconciler = self._in_flight[conversation_id]
        if reconciler is None:
            self._pending_cancel.add(conversation_id)
        else:
            reconciler.cancel()
        return True

    async def process_new_message_stream(
        self, user_input: MessageInput, user_id: str
    ) -> AsyncGenerator[ChatEvent, None]:
        queue: asyncio.Queue[ChatEvent] = asyncio.Queue()
        task = asyncio.ensure_future(self.send_message(user_input, user_id, listener=queue.put_nowait))
        getter: asyncio.Future[ChatEvent] | None = None
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    event = getter.result()
                    yield event
                    if event.type == "result":
                        break
                    continue
                while not queue.empty():
                    yield queue.get_nowait()
                break
            # Raises whatever ended the send before a result was emitted
            await task
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            if not task.done():
                # Consumer went away mid-stream: tear the send down, which cancels the reply
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def get_conversations_by_user_id(self, user_id: str) -> list[Conversation]:
        return await self.conversation_db.get_conversations_by_user_id(user_id)

    async def get_visible_turns(self, conversation_id: str) -> list[Turn]:
        await self.conversation_db.get_conversation_by_id(conversation_id)
        transcript = await self.get_transcript(conversation_id)
        return transcript.visible_turns()

    async def update_conversation(self, conversation_id: str, conversation_updates: ConversationInput) -> Conversation:
        conversation = await self.conversation_db.get_conversation_by_id(conversation_id)
        return await self.conversation_db.update_conversation(
            conversation.model_copy(
                update={"title": conversation_updates.title, "update_timestamp": get_current_timestamp()}
            )
        )

    async def delete_conversation(self, conversation_id: str) -> bool:
        if self.is_busy(conversation_id):
            raise ConversationBusyError(conversation_id)
        await self.message_db.delete_messages_by_conversation_id(conversation_id)
        self._transcripts.pop(conversation_id, None)
        return await self.conversation_db.delete_conversation(conversation_id)

    async def list_models(self, user_id: str) -> list[RegisteredModel]:
        """
        Models the user can pick from: what the default upstream serves plus the user's registrations.

        A registered model shadows the upstream entry of the same name. Raises 'TransportError' if the
        upstream listing fails.
        """
        endpoint = await self.catalog.resolve(self.settings.default_model)
        upstream = await self.llm_factory(endpoint).list_models()
        models = {name: RegisteredModel(name=name, display_name=name) for name in upstream}
        models.update({model.name: model for model in await self.catalog.list_models(user_id)})
        return list(models.values())
