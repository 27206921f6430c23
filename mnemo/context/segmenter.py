"""Turn segmentation for conversation compaction.

A turn is one assistant "think, act, reply" unit: a contiguous run of
assistant and tool messages between user/system boundaries. Compaction
summarizes whole turns so that a tool result is never separated from the
assistant message that requested it.

Rules, applied left to right with an open-turn marker:
    - user/system messages close any open turn at the previous index and
      never belong to a turn
    - assistant/tool messages open a turn when none is open
    - an assistant message without tool calls closes the open turn
    - a turn still open at the end closes at the last index

Example:
    >>> turns = identify_turns(messages)
    >>> [(t.start, t.end) for t in turns]
    [(2, 4)]
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from mnemo.state.conversation import Message


@dataclass(frozen=True)
class TurnBoundary:
    """Inclusive index range of one turn."""

    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start + 1

    def as_tuple(self) -> tuple[int, int]:
        return (self.start, self.end)


def identify_turns(messages: Sequence[Message]) -> list[TurnBoundary]:
    """Group a flat message sequence into turns.

    The function is pure and deterministic; orphaned tool messages simply
    open a turn. Roles other than system/user/assistant/tool are ignored.

    Args:
        messages: Conversation messages in order.

    Returns:
        Non-overlapping, increasing turn boundaries.
    """
    turns: list[TurnBoundary] = []
    open_start = -1

    for i, msg in enumerate(messages):
        role = msg.role.lower()

        if role in ("user", "system"):
            if open_start >= 0:
                turns.append(TurnBoundary(open_start, i - 1))
                open_start = -1
            continue

        if role not in ("assistant", "tool"):
            continue

        if open_start < 0:
            open_start = i

        if role == "assistant" and not msg.tool_calls:
            turns.append(TurnBoundary(open_start, i))
            open_start = -1

    if open_start >= 0:
        turns.append(TurnBoundary(open_start, len(messages) - 1))

    return turns


__all__ = ["TurnBoundary", "identify_turns"]
