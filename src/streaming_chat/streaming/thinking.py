"""
Separation of hidden "thinking" regions from the visible answer.

Reasoning models wrap their chain of thought in '<think>...</think>' (or the
'thought' / 'thinking' synonyms). 'split_thinking' is a pure function over the
whole accumulated buffer: the reconciler calls it once per delta and simply
re-scans everything, which keeps it stateless at the cost of quadratic work
over a single reply.

While a reply is still streaming, a region whose closing tag has not arrived
yet is held back from the answer (it is neither answer nor finished thinking).
The final split flushes such a region back into the answer verbatim, so a
model that never closes its tag does not lose text.
"""

import re
from typing import NamedTuple

THINKING_TAGS = ("think", "thought", "thinking")

_TAG_ALTERNATION = "|".join(THINKING_TAGS)
_CLOSED_REGION = re.compile(rf"<({_TAG_ALTERNATION})>(.*?)</\1>", re.IGNORECASE | re.DOTALL)
_OPEN_TAG = re.compile(rf"<(?:{_TAG_ALTERNATION})>", re.IGNORECASE)
_OPEN_TAG_LITERALS = tuple(f"<{tag}>" for tag in THINKING_TAGS)


class ThinkingSplit(NamedTuple):
    thinking: str | None
    answer: str


def _strip_partial_open_tag(text: str) -> str:
    """Drop a trailing fragment that may still grow into an opening tag, e.g. '<thi'."""
    lowered = text.lower()
    for size in range(min(len(text), max(map(len, _OPEN_TAG_LITERALS)) - 1), 0, -1):
        tail = lowered[-size:]
        if any(literal.startswith(tail) for literal in _OPEN_TAG_LITERALS):
            return text[:-size]
    return text


def split_thinking(buffer: str, final: bool = True) -> ThinkingSplit:
    """Split 'buffer' into its thinking trace and its visible answer.

    Args:
        buffer: The full text accumulated so far.
        final: False while the buffer may still grow. Unterminated regions and
            trailing tag fragments are then withheld from the answer.

    Returns:
        'thinking' is the inner text of every closed region joined by newlines,
        or None when there is no closed region. 'answer' is the buffer with
        those regions removed and surrounding whitespace trimmed.
    """
    thinking_parts = [match.group(2) for match in _CLOSED_REGION.finditer(buffer)]
    answer = _CLOSED_REGION.sub("", buffer)

    if not final:
        unterminated = _OPEN_TAG.search(answer)
        if unterminated:
            answer = answer[: unterminated.start()]
        else:
            answer = _strip_partial_open_tag(answer)

    thinking = "\n".join(thinking_parts)
    return ThinkingSplit(thinking=thinking or None, answer=answer.strip())
