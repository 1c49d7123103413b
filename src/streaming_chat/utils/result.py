"""
Tagged results for calls that cross an external boundary.

Collaborators (repositories, the model catalog, the title generator) are
wrapped with 'capture' so the controller branches on 'Ok' / 'Err' instead of
scattering try/except blocks around every optional side effect.
"""

from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Generic, TypeVar

from pydantic import ValidationError

from streaming_chat.errors import ChatError, InvariantViolation

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: Exception

    @property
    def ok(self) -> bool:
        return False


Result = Ok[T] | Err


async def capture(awaitable: Awaitable[T]) -> Ok[T] | Err:
    """Await 'awaitable' and fold a 'ChatError' or validation failure into 'Err'.

    'InvariantViolation' is a defect rather than a boundary failure and always
    propagates, as does anything outside the toolkit's error family.
    """
    try:
        return Ok(await awaitable)
    except InvariantViolation:
        raise
    except (ChatError, ValidationError) as exc:
        return Err(exc)
