"""Compaction audit events.

A CompactionEvent is an immutable record of one compaction pass. Events are
kept in a capped in-memory history by the profile and appended to the
memory store so that the history survives restarts.

Example:
    >>> event = CompactionEvent(
    ...     timestamp=datetime.now(timezone.utc),
    ...     chars_before=120_000,
    ...     chars_after=60_000,
    ...     messages_compacted=3,
    ...     messages_considered=5,
    ...     duration_ms=812,
    ... )
    >>> event.to_dict()["chars_after"]
    60000
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    """Get the current UTC timestamp."""
    return datetime.now(timezone.utc)


def datetime_to_iso(dt: datetime) -> str:
    """Convert a datetime to a fixed-width ISO string in UTC.

    Naive datetimes are assumed to be UTC. Microseconds are always written
    so stored strings sort in chronological order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def datetime_from_iso(iso_str: str) -> datetime:
    """Parse an ISO string written by datetime_to_iso."""
    dt = datetime.fromisoformat(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class CompactionEvent:
    """Audit record of one compaction pass.

    Attributes:
        timestamp: When the pass started (UTC).
        chars_before: Conversation size before the pass.
        chars_after: Conversation size after the pass.
        messages_compacted: Turns folded into a placeholder message.
        messages_considered: Turns eligible for compaction.
        duration_ms: Wall time of the pass.
    """

    timestamp: datetime
    chars_before: int
    chars_after: int
    messages_compacted: int
    messages_considered: int
    duration_ms: int

    @property
    def chars_saved(self) -> int:
        return self.chars_before - self.chars_after

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-friendly dictionary."""
        return {
            "timestamp": datetime_to_iso(self.timestamp),
            "chars_before": self.chars_before,
            "chars_after": self.chars_after,
            "messages_compacted": self.messages_compacted,
            "messages_considered": self.messages_considered,
            "duration_ms": self.duration_ms,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompactionEvent":
        """Create an event from a dictionary produced by to_dict."""
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime_from_iso(timestamp)
        return cls(
            timestamp=timestamp,
            chars_before=int(data.get("chars_before", 0)),
            chars_after=int(data.get("chars_after", 0)),
            messages_compacted=int(data.get("messages_compacted", 0)),
            messages_considered=int(data.get("messages_considered", 0)),
            duration_ms=int(data.get("duration_ms", 0)),
        )


__all__ = [
    "CompactionEvent",
    "utc_now",
    "datetime_to_iso",
    "datetime_from_iso",
]
