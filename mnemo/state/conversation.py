"""Conversation state for mnemo.

This module defines the chat message schema and the live Conversation
container that compaction mutates and recall splices into.

Message mirrors the OpenAI chat schema so stored history can be replayed
verbatim in requests. Empty optional fields are omitted on serialization,
which also keeps the size measurement used for compaction honest.

Classes:
    FunctionCall: Name and JSON arguments of a requested function.
    ToolCall: A tool invocation requested by the assistant.
    Message: One chat message.
    Conversation: Ordered, thread-safe list of messages for one session.

Example:
    >>> conv = Conversation(key="sess-1")
    >>> conv.append(Message(role="user", content="hello"))
    >>> [m.role for m in conv.messages()]
    ['user']
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Message Schema
# =============================================================================


class FunctionCall(BaseModel):
    """Function name and raw JSON arguments."""

    name: str
    arguments: str = ""


class ToolCall(BaseModel):
    """A tool invocation requested by the assistant."""

    id: str
    type: str = "function"
    function: FunctionCall


class Message(BaseModel):
    """One chat message.

    Attributes:
        role: system, user, assistant or tool.
        content: Message text.
        name: Tool name for tool results.
        tool_call_id: Id of the tool call a tool result answers.
        tool_calls: Tool invocations requested by an assistant message.
        thinking: Reasoning text emitted alongside the content.
    """

    role: str
    content: str = ""
    name: str = ""
    tool_call_id: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    thinking: str = ""

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    def is_empty(self) -> bool:
        """True when the message carries no content, thinking or tool calls."""
        return not self.content and not self.thinking and not self.tool_calls

    def clear(self) -> None:
        """Drop content, thinking and tool calls, leaving an empty shell."""
        self.content = ""
        self.thinking = ""
        self.tool_calls = []

    def to_dict(self) -> dict[str, Any]:
        """Serialize in the OpenAI chat shape, omitting empty fields."""
        data: dict[str, Any] = {"role": self.role}
        if self.content:
            data["content"] = self.content
        if self.name:
            data["name"] = self.name
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            data["tool_calls"] = [tc.model_dump() for tc in self.tool_calls]
        if self.thinking:
            data["thinking"] = self.thinking
        return data


def messages_to_json(messages: Iterable[Message]) -> str:
    """Serialize messages to a compact JSON array."""
    return json.dumps(
        [m.to_dict() for m in messages],
        ensure_ascii=False,
        separators=(",", ":"),
    )


def messages_from_json(data: str) -> list[Message]:
    """Decode a JSON array produced by messages_to_json.

    Raises:
        ValueError: If the payload is not a JSON array of messages.
            pydantic.ValidationError is a ValueError subclass.
    """
    raw = json.loads(data)
    if not isinstance(raw, list):
        raise ValueError(f"expected a JSON array of messages, got {type(raw).__name__}")
    return [Message.model_validate(item) for item in raw]


def copy_messages(messages: Iterable[Message]) -> list[Message]:
    """Deep-copy a message sequence."""
    return [m.model_copy(deep=True) for m in messages]


# =============================================================================
# Conversation
# =============================================================================


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Conversation:
    """Ordered list of messages for one agent session.

    Reads return deep copies; writers either append or atomically replace
    the whole list. A single RLock guards the list so the agent loop and
    tool calls running on other request threads see consistent snapshots.

    Attributes:
        key: Session identifier.
        created_at: When the first message was added.
        updated_at: When the list last changed.
        version: Counter bumped on every change; pairs with
            replace_messages_if() for optimistic rewrites.
    """

    def __init__(
        self,
        key: str = "",
        messages: Optional[Iterable[Message]] = None,
    ) -> None:
        self.key = key
        self._messages: list[Message] = copy_messages(messages or [])
        self._lock = threading.RLock()
        self.created_at: Optional[datetime] = _utc_now() if self._messages else None
        self.updated_at: Optional[datetime] = self.created_at
        self.version = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    def messages(self) -> list[Message]:
        """Return a deep copy of the current history."""
        with self._lock:
            return copy_messages(self._messages)

    def snapshot(self) -> tuple[list[Message], int]:
        """Return a deep copy of the history together with its version."""
        with self._lock:
            return copy_messages(self._messages), self.version

    def append(self, message: Message) -> None:
        """Add a message at the end of the history."""
        with self._lock:
            self._messages.append(message.model_copy(deep=True))
            self._touch()

    def replace_messages(self, messages: Iterable[Message]) -> None:
        """Swap the whole history for the provided sequence."""
        replacement = copy_messages(messages)
        with self._lock:
            self._messages = replacement
            self._touch()

    def replace_messages_if(self, expected_version: int, messages: Iterable[Message]) -> bool:
        """Swap the history only if it has not changed since expected_version.

        Returns:
            True if the history was replaced.
        """
        replacement = copy_messages(messages)
        with self._lock:
            if self.version != expected_version:
                return False
            self._messages = replacement
            self._touch()
            return True

    def clear(self, system_prompt: str = "") -> None:
        """Remove all history, reinstating the system prompt when given."""
        with self._lock:
            self._messages = []
            if system_prompt:
                self._messages.append(Message(role="system", content=system_prompt))
            self._touch()

    def _touch(self) -> None:
        now = _utc_now()
        if self.created_at is None:
            self.created_at = now
        self.updated_at = now
        self.version += 1


__all__ = [
    "FunctionCall",
    "ToolCall",
    "Message",
    "Conversation",
    "messages_to_json",
    "messages_from_json",
    "copy_messages",
]
