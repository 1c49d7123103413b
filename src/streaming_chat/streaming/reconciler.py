"""
Stream reconciler: folds content deltas into a transcript.

'StreamReconciler' owns one send operation's worth of streaming state (a
'StreamSession') and is the only code path that mutates the transcript while a
reply is streaming. Each delta goes through 'apply', which appends to the raw
buffer, re-runs the thinking splitter over the whole buffer, recomputes the
throughput estimate and either updates the trailing in-progress assistant turn
or appends one.

States::

    IDLE -> STREAMING -> FINALIZED   stream ended ('[DONE]' or end of input)
                      -> CANCELLED   'cancel()' or the awaiting task was cancelled
                      -> FAILED      transport error, error frame, non-2xx

Every terminal state settles the transcript the same way: the in-progress turn
(if any) gets a last non-streaming split of the buffer and is marked final, so
a partial reply is kept. FAILED additionally records an 'ErrorAnnotation'.
'run' never raises for stream failures; it reports them on the returned
'ReconcileOutcome' and leaves the messaging to the controller.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from loguru import logger
from pydantic import BaseModel, ConfigDict

from streaming_chat.errors import InvariantViolation
from streaming_chat.llms.base import ChatStream, Roles
from streaming_chat.streaming.thinking import split_thinking
from streaming_chat.transcript import Transcript, Turn, TurnPatch, TurnStatus
from streaming_chat.utils.time import monotonic_seconds


class ReconcilerState(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ReconcilerState.FINALIZED, ReconcilerState.CANCELLED, ReconcilerState.FAILED})


@dataclass
class StreamSession:
    """Ephemeral state for one in-flight request."""

    stream: ChatStream | None
    opened_at: float
    buffer: str = ""
    first_delta_at: float | None = None
    delta_count: int = 0
    tokens_per_second: float | None = None
    cancel_requested: bool = False

    def record_delta(self, delta: str, now: float) -> None:
        self.buffer += delta
        self.delta_count += 1
        if self.first_delta_at is None:
            self.first_delta_at = now
        elapsed = now - self.first_delta_at
        if elapsed > 0:
            self.tokens_per_second = self.delta_count / elapsed


class ReconcileOutcome(BaseModel):
    """
    Terminal result of one reconciler run.

    'text' is the raw accumulated reply, thinking tags included, which is what
    gets persisted. 'answer' / 'thinking' are its final split.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    state: ReconcilerState
    text: str
    answer: str
    thinking: str | None
    turn: Turn | None
    delta_count: int
    error: Exception | None = None


Listener = Callable[["StreamReconciler"], None]


class StreamReconciler:
    def __init__(self, transcript: Transcript, clock: Callable[[], float] = monotonic_seconds) -> None:
        self.transcript = transcript
        self.session: StreamSession | None = None
        self._clock = clock
        self._state = ReconcilerState.IDLE
        self._listeners: list[Listener] = []
        self._pump: asyncio.Task[None] | None = None

    @property
    def state(self) -> ReconcilerState:
        return self._state

    @property
    def done(self) -> bool:
        return self._state in TERMINAL_STATES

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call 'listener' after every transcript mutation. Returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def _begin(self, stream: ChatStream | None) -> StreamSession:
        if self._state is not ReconcilerState.IDLE:
            raise InvariantViolation(f"Reconciler cannot start a session from state {self._state}")
        self.session = StreamSession(stream=stream, opened_at=self._clock())
        self._state = ReconcilerState.STREAMING
        return self.session

    def apply(self, delta: str) -> Turn:
        """Fold one content delta into the transcript."""
        if self._state is ReconcilerState.IDLE:
            self._begin(stream=None)
        if self._state is not ReconcilerState.STREAMING or self.session is None:
            raise InvariantViolation(f"Cannot apply a delta in state {self._state}")

        session = self.session
        session.record_delta(delta, self._clock())
        thinking, answer = split_thinking(session.buffer, final=False)

        turn = self.transcript.in_progress_turn
        if turn is not None and turn.role is Roles.ASSISTANT:
            patch = TurnPatch(content=answer, thinking=thinking)
            if session.tokens_per_second is not None:
                patch.tokens_per_second = session.tokens_per_second
            turn = self.transcript.update_last_turn(patch)
        else:
            turn = self.transcript.append_turn(
                Turn(
                    role=Roles.ASSISTANT,
                    content=answer,
                    thinking=thinking,
                    status=TurnStatus.IN_PROGRESS,
                    tokens_per_second=session.tokens_per_second,
                )
            )
        self._notify()
        return turn

    async def run(self, stream: ChatStream) -> ReconcileOutcome:
        """Drive 'stream' to a terminal state and report how it ended."""
        session = self._begin(stream)
        logger.debug("Reconciler streaming")
        self._pump = asyncio.ensure_future(self._pump_deltas(stream))
        try:
            await self._pump
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                session.cancel_requested = True
                self._settle(ReconcilerState.CANCELLED)
                raise
        except InvariantViolation:
            raise
        except Exception as exc:
            return self._settle(ReconcilerState.FAILED, exc)

        if session.cancel_requested:
            return self._settle(ReconcilerState.CANCELLED)
        return self._settle(ReconcilerState.FINALIZED)

    async def _pump_deltas(self, stream: ChatStream) -> None:
        session = self.session
        assert session is not None
        try:
            async for delta in stream:
                if session.cancel_requested:
                    break
                self.apply(delta)
                if session.cancel_requested:
                    break
        finally:
            await stream.aclose()

    def cancel(self) -> None:
        """
        Request that the stream stop. Idempotent, and a no-op once the reconciler has settled.

        This only requests the stop. The pump task is cancelled, and the transport is released
        asynchronously when that task unwinds through 'stream.aclose()'. Await 'run' to know it
        has been released. A manual session without a stream settles right away.
        """
        if self._state is not ReconcilerState.STREAMING or self.session is None:
            return
        if self.session.cancel_requested:
            return
        logger.info("Cancelling stream")
        self.session.cancel_requested = True
        # From inside the pump (a listener) the loop sees the flag and closes the stream itself
        if self._pump is not None and not self._pump.done() and self._pump is not asyncio.current_task():
            self._pump.cancel()
        if self.session.stream is None:
            self._settle(ReconcilerState.CANCELLED)

    def finish(self) -> ReconcileOutcome:
        """Settle a session driven manually through 'apply' (no 'run')."""
        if self._state is ReconcilerState.IDLE:
            self._begin(stream=None)
        if self._state is not ReconcilerState.STREAMING:
            raise InvariantViolation(f"Cannot finish from state {self._state}")
        return self._settle(ReconcilerState.FINALIZED)

    def _settle(self, state: ReconcilerState, error: Exception | None = None) -> ReconcileOutcome:
        session = self.session
        assert session is not None
        thinking, answer = split_thinking(session.buffer, final=True)

        turn = self.transcript.in_progress_turn
        if turn is not None and turn.role is Roles.ASSISTANT:
            self.transcript.update_last_turn(TurnPatch(content=answer, thinking=thinking))
            turn = self.transcript.finalize_last_turn()
        else:
            turn = None

        if error is not None:
            logger.error(f"Stream failed after {session.delta_count} deltas: {error}")
            self.transcript.annotate_error(str(error) or type(error).__name__)
        else:
            logger.info(f"Stream {state} after {session.delta_count} deltas")

        self._state = state
        self._notify()
        return ReconcileOutcome(
            state=state,
            text=session.buffer,
            answer=answer,
            thinking=thinking,
            turn=turn,
            delta_count=session.delta_count,
            error=error,
        )
