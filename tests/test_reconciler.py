"""
Tests for streaming_chat.streaming.reconciler (StreamReconciler).

Covers:
  - a single in-progress assistant turn while streaming, none once settled
  - throughput estimate driven by an injected clock
  - thinking regions split out of the reply, also when a tag straddles deltas
  - failure mid-stream keeps the partial reply and records an annotation
  - cancellation from a listener, from another task, and of the awaiting task
  - cancel idempotence and no mutation after a terminal state
"""

import asyncio

import pytest

from conftest import FakeChatStream, wait_for
from streaming_chat.errors import InvariantViolation, TransportError
from streaming_chat.llms.base import Roles
from streaming_chat.streaming.reconciler import ReconcilerState, StreamReconciler, StreamSession
from streaming_chat.transcript import Transcript, Turn, TurnStatus


class FakeClock:
    def __init__(self, *readings: float) -> None:
        self.readings = list(readings)

    def __call__(self) -> float:
        return self.readings.pop(0)


@pytest.fixture
def transcript() -> Transcript:
    return Transcript([Turn(role=Roles.USER, content="Hello")])


@pytest.fixture
def reconciler(transcript) -> StreamReconciler:
    return StreamReconciler(transcript)


def in_progress_count(transcript: Transcript) -> int:
    return sum(1 for turn in transcript if turn.status is TurnStatus.IN_PROGRESS)


class TestStreamSession:

    def test_no_rate_before_time_has_passed(self):
        session = StreamSession(stream=None, opened_at=0.0)
        session.record_delta("a", now=5.0)
        session.record_delta("b", now=5.0)
        assert session.tokens_per_second is None
        assert session.first_delta_at == 5.0

    def test_rate_counts_deltas_since_first(self):
        session = StreamSession(stream=None, opened_at=0.0)
        for now in (1.0, 1.5, 2.0, 3.0):
            session.record_delta("x", now=now)
        assert session.buffer == "xxxx"
        assert session.tokens_per_second == pytest.approx(2.0)

    def test_clock_going_backwards_is_ignored(self):
        session = StreamSession(stream=None, opened_at=0.0)
        session.record_delta("a", now=3.0)
        session.record_delta("b", now=2.0)
        assert session.tokens_per_second is None


class TestApply:

    def test_first_delta_appends_in_progress_turn(self, reconciler, transcript):
        turn = reconciler.apply("Hi")
        assert reconciler.state is ReconcilerState.STREAMING
        assert transcript.last_turn is turn
        assert turn.role is Roles.ASSISTANT
        assert turn.status is TurnStatus.IN_PROGRESS
        assert turn.content == "Hi"

    def test_single_in_progress_turn_across_deltas(self, reconciler, transcript):
        for delta in ["Hi", " there", "!"]:
            reconciler.apply(delta)
            assert in_progress_count(transcript) == 1
            assert transcript.last_turn.in_progress
        assert len(transcript) == 2

        outcome = reconciler.finish()
        assert outcome.state is ReconcilerState.FINALIZED
        assert in_progress_count(transcript) == 0
        assert transcript.last_turn.content == "Hi there!"

    def test_tokens_per_second_from_clock(self, transcript):
        reconciler = StreamReconciler(transcript, clock=FakeClock(0.0, 1.0, 1.0, 2.0))
        assert reconciler.apply("a").tokens_per_second is None
        assert reconciler.apply("b").tokens_per_second is None
        assert reconciler.apply("c").tokens_per_second == pytest.approx(3.0)

    def test_apply_after_settle_is_a_violation(self, reconciler, transcript):
        reconciler.apply("Hi")
        reconciler.finish()
        with pytest.raises(InvariantViolation):
            reconciler.apply("late")
        assert transcript.last_turn.content == "Hi"

    def test_listeners_notified_and_unsubscribed(self, reconciler):
        seen = []
        unsubscribe = reconciler.subscribe(lambda r: seen.append(r.session.buffer))
        reconciler.apply("a")
        unsubscribe()
        reconciler.apply("b")
        assert seen == ["a"]


class TestRun:

    @pytest.mark.asyncio
    async def test_three_deltas_finalize(self, reconciler, transcript):
        stream = FakeChatStream(["Hi", " there", "!"])
        outcome = await reconciler.run(stream)

        assert outcome.state is ReconcilerState.FINALIZED
        assert outcome.text == "Hi there!"
        assert outcome.delta_count == 3
        assert outcome.turn is transcript.last_turn
        assert outcome.turn.content == "Hi there!"
        assert outcome.turn.thinking is None
        assert outcome.turn.status is TurnStatus.FINAL
        assert stream.closed

    @pytest.mark.asyncio
    async def test_thinking_tag_split_mid_delta(self, reconciler, transcript):
        snapshots = []
        reconciler.subscribe(lambda r: snapshots.append(transcript.last_turn.content))
        outcome = await reconciler.run(FakeChatStream(["<think>reasoning</th", "ink>The answer is 4."]))

        assert snapshots[0] == ""
        assert outcome.thinking == "reasoning"
        assert outcome.answer == "The answer is 4."
        assert outcome.text == "<think>reasoning</think>The answer is 4."
        assert transcript.last_turn.thinking == "reasoning"
        assert transcript.last_turn.content == "The answer is 4."

    @pytest.mark.asyncio
    async def test_unterminated_thinking_flushed_on_finish(self, reconciler, transcript):
        snapshots = []
        reconciler.subscribe(lambda r: snapshots.append(transcript.last_turn.content))
        await reconciler.run(FakeChatStream(["Hello ", "<think>never closed"]))

        assert snapshots[:2] == ["Hello", "Hello"]
        assert transcript.last_turn.content == "Hello <think>never closed"

    @pytest.mark.asyncio
    async def test_failure_keeps_partial_reply(self, reconciler, transcript):
        stream = FakeChatStream(["Partial ", "resul"], error=TransportError("connection reset"))
        outcome = await reconciler.run(stream)

        assert outcome.state is ReconcilerState.FAILED
        assert isinstance(outcome.error, TransportError)
        assert transcript.last_turn.content == "Partial resul"
        assert transcript.last_turn.status is TurnStatus.FINAL
        assert [a.message for a in transcript.annotations] == ["connection reset"]
        assert transcript.annotations[0].after_turn == 2
        assert stream.closed

    @pytest.mark.asyncio
    async def test_failure_before_first_delta(self, reconciler, transcript):
        outcome = await reconciler.run(FakeChatStream([], error=TransportError("reset")))
        assert outcome.state is ReconcilerState.FAILED
        assert outcome.turn is None
        assert len(transcript) == 1
        assert len(transcript.annotations) == 1

    @pytest.mark.asyncio
    async def test_empty_stream_finalizes_without_turn(self, reconciler, transcript):
        outcome = await reconciler.run(FakeChatStream([]))
        assert outcome.state is ReconcilerState.FINALIZED
        assert outcome.turn is None
        assert len(transcript) == 1

    @pytest.mark.asyncio
    async def test_run_twice_is_a_violation(self, reconciler):
        await reconciler.run(FakeChatStream(["a"]))
        with pytest.raises(InvariantViolation):
            await reconciler.run(FakeChatStream(["b"]))


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_after_first_delta_releases_stream(self, reconciler, transcript):
        stream = FakeChatStream(["Hi", " there", "!"])
        reconciler.subscribe(lambda r: r.cancel() if r.session.delta_count == 1 else None)
        outcome = await reconciler.run(stream)

        assert outcome.state is ReconcilerState.CANCELLED
        assert stream.yielded == 1
        assert stream.close_calls == 1
        assert transcript.last_turn.content == "Hi"
        assert transcript.last_turn.status is TurnStatus.FINAL
        assert transcript.annotations == []

    @pytest.mark.asyncio
    async def test_cancel_from_another_task_while_stalled(self, reconciler, transcript):
        stream = FakeChatStream(["Hi"], stall=True)
        task = asyncio.ensure_future(reconciler.run(stream))
        await wait_for(lambda: reconciler.session is not None and reconciler.session.delta_count == 1)

        reconciler.cancel()
        outcome = await task

        assert outcome.state is ReconcilerState.CANCELLED
        assert stream.closed
        assert transcript.last_turn.content == "Hi"
        assert transcript.in_progress_turn is None

    @pytest.mark.asyncio
    async def test_cancel_releases_stream_once_pump_unwinds(self, reconciler):
        stream = FakeChatStream(["Hi"], stall=True)
        task = asyncio.ensure_future(reconciler.run(stream))
        await wait_for(lambda: reconciler.session is not None and reconciler.session.delta_count == 1)

        reconciler.cancel()
        assert reconciler.session.cancel_requested
        assert not stream.closed
        assert reconciler.state is ReconcilerState.STREAMING

        await task
        assert stream.close_calls == 1
        assert reconciler.state is ReconcilerState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancelling_awaiting_task_settles_and_propagates(self, reconciler, transcript):
        stream = FakeChatStream(["Hi"], stall=True)
        task = asyncio.ensure_future(reconciler.run(stream))
        await wait_for(lambda: reconciler.session is not None and reconciler.session.delta_count == 1)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert reconciler.state is ReconcilerState.CANCELLED
        assert stream.closed
        assert transcript.last_turn.status is TurnStatus.FINAL

    @pytest.mark.asyncio
    async def test_cancel_twice_and_after_completion_is_noop(self, reconciler, transcript):
        stream = FakeChatStream(["Hi"])
        outcome = await reconciler.run(stream)
        snapshot = transcript.last_turn.model_copy()

        reconciler.cancel()
        reconciler.cancel()

        assert reconciler.state is ReconcilerState.FINALIZED
        assert outcome.state is ReconcilerState.FINALIZED
        assert transcript.last_turn == snapshot
        assert stream.close_calls == 1

    def test_cancel_manual_session_settles(self, reconciler, transcript):
        reconciler.apply("Par")
        reconciler.cancel()
        reconciler.cancel()
        assert reconciler.state is ReconcilerState.CANCELLED
        assert transcript.last_turn.content == "Par"
        assert transcript.in_progress_turn is None

    def test_cancel_before_start_is_noop(self, reconciler, transcript):
        reconciler.cancel()
        assert reconciler.state is ReconcilerState.IDLE
        assert len(transcript) == 1
