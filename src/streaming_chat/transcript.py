"""
In-memory transcript of one conversation.

A 'Transcript' is the ordered list of 'Turn' objects the presentation layer
renders, plus the error annotations that are shown between turns but are never
part of a turn's model-authored content. It performs no I/O.

Invariants enforced here:
    - at most one turn is 'IN_PROGRESS' and, if present, it is the last turn;
    - a 'SYSTEM' turn can only be the first turn;
    - a turn's 'role' and 'attachments' never change, its 'content' only changes
      while it is in progress.

Every breach raises 'InvariantViolation'.
"""

from collections.abc import Iterator
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from streaming_chat.errors import InvariantViolation
from streaming_chat.llms.base import LLMMessage, Roles
from streaming_chat.utils.time import get_current_timestamp


class TurnStatus(StrEnum):
    IN_PROGRESS = "in-progress"
    FINAL = "final"


class Attachment(BaseModel):
    """Reference to a file stored by the attachment service."""

    model_config = ConfigDict(frozen=True)

    id: str
    file_name: str
    file_type: str
    file_size: int
    url: str
    content: str | None = None


class Turn(BaseModel):
    """
    One message in the transcript.

    'tokens_per_second' is an approximation: it counts provider deltas, not
    tokenizer tokens, divided by the seconds elapsed since the first delta.
    """

    role: Roles
    content: str = ""
    thinking: str | None = None
    status: TurnStatus = TurnStatus.FINAL
    tokens_per_second: float | None = None
    attachments: tuple[Attachment, ...] = ()
    create_timestamp: int = Field(default_factory=get_current_timestamp)

    @property
    def in_progress(self) -> bool:
        return self.status is TurnStatus.IN_PROGRESS


class TurnPatch(BaseModel):
    """Fields of an in-progress turn the reconciler may overwrite. Unset fields are left alone."""

    content: str | None = None
    thinking: str | None = None
    tokens_per_second: float | None = None


class ErrorAnnotation(BaseModel):
    """A failure shown in the conversation view, positioned after 'after_turn' turns."""

    message: str
    after_turn: int
    create_timestamp: int = Field(default_factory=get_current_timestamp)


class Transcript:
    def __init__(self, turns: list[Turn] | None = None, hide_system_turn: bool = True) -> None:
        self._turns: list[Turn] = []
        self.annotations: list[ErrorAnnotation] = []
        self.hide_system_turn = hide_system_turn
        for turn in turns or []:
            self.append_turn(turn)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self._turns)

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    @property
    def last_turn(self) -> Turn | None:
        return self._turns[-1] if self._turns else None

    @property
    def in_progress_turn(self) -> Turn | None:
        last = self.last_turn
        return last if last is not None and last.in_progress else None

    def append_turn(self, turn: Turn) -> Turn:
        if self.in_progress_turn is not None:
            raise InvariantViolation("Cannot append a turn while the last turn is still in progress")
        if turn.role is Roles.SYSTEM and self._turns:
            raise InvariantViolation("A system turn can only be the first turn of a transcript")
        self._turns.append(turn)
        return turn

    def update_last_turn(self, patch: TurnPatch) -> Turn:
        turn = self.in_progress_turn
        if turn is None:
            raise InvariantViolation("update_last_turn requires an in-progress last turn")
        for field, value in patch.model_dump(exclude_unset=True).items():
            setattr(turn, field, value)
        return turn

    def finalize_last_turn(self) -> Turn:
        turn = self.in_progress_turn
        if turn is None:
            raise InvariantViolation("finalize_last_turn requires an in-progress last turn")
        turn.status = TurnStatus.FINAL
        return turn

    def annotate_error(self, message: str) -> ErrorAnnotation:
        annotation = ErrorAnnotation(message=message, after_turn=len(self._turns))
        self.annotations.append(annotation)
        return annotation

    def visible_turns(self) -> list[Turn]:
        if self.hide_system_turn and self._turns and self._turns[0].role is Roles.SYSTEM:
            return self._turns[1:]
        return list(self._turns)

    def for_api_payload(self) -> list[LLMMessage]:
        """Role/content pairs to send upstream. Thinking and attachments are left out."""
        return [LLMMessage(role=turn.role, content=turn.content) for turn in self._turns]
