"""Memory tools for agents running with compaction.

Compacted turns leave a placeholder that names a memory id. These tools let
the model bring such a turn back into the conversation, or pin an entry it
expects to need again.

Tools:
    recall_memory: Restore a compacted turn in place and return its summary.
    pin_memory: Pin or unpin a memory, subject to the pin ceiling.

Both tools return JSON strings. NotFound and pin-limit errors propagate so
the agent loop can turn them into tool results the model can react to.

Example:
    >>> from mnemo.tools.builtin.memory_tools import create_memory_tools, ToolScope
    >>> recall_memory, pin_memory = create_memory_tools(store, max_pins=5)
    >>> result = await recall_memory("mem-123", scope=ToolScope(conversation))
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from mnemo.core.exceptions import DeserializationError
from mnemo.memory.store import MemoryEntry, MemoryStore
from mnemo.state.conversation import Conversation, messages_from_json
from mnemo.state.events import datetime_to_iso, utc_now

logger = logging.getLogger(__name__)


RECALL_MEMORY = "recall_memory"
PIN_MEMORY = "pin_memory"


# =============================================================================
# Tool Input Schemas
# =============================================================================


class RecallMemoryInput(BaseModel):
    """Input schema for the recall_memory tool."""

    memory_id: str = Field(
        description="Identifier returned in the memory placeholder (e.g., mem-123)."
    )


class PinMemoryInput(BaseModel):
    """Input schema for the pin_memory tool."""

    memory_id: str = Field(
        description="Identifier of the memory to pin or unpin."
    )
    pin: bool = Field(
        default=True,
        description="True to pin (default), false to unpin."
    )


@dataclass
class ToolScope:
    """Per-call context handed to tools by the agent loop.

    Attributes:
        conversation: Live conversation the tool call belongs to.
    """

    conversation: Optional[Conversation] = None


# =============================================================================
# Tool Definitions
# =============================================================================


def _function_definition(name: str, description: str, schema: type[BaseModel]) -> dict[str, Any]:
    parameters = schema.model_json_schema()
    parameters.pop("title", None)
    for prop in parameters.get("properties", {}).values():
        prop.pop("title", None)
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": parameters,
        },
    }


def recall_memory_definition() -> dict[str, Any]:
    return _function_definition(
        RECALL_MEMORY,
        "Retrieve the full text for a previously summarized memory by ID.",
        RecallMemoryInput,
    )


def pin_memory_definition(max_pins: int) -> dict[str, Any]:
    return _function_definition(
        PIN_MEMORY,
        f"Protect a memory from compaction. Up to {max_pins} memories can be "
        f"pinned simultaneously.",
        PinMemoryInput,
    )


def tool_definitions(max_pins: int) -> list[dict[str, Any]]:
    """OpenAI-style function definitions for both memory tools."""
    return [recall_memory_definition(), pin_memory_definition(max_pins)]


# =============================================================================
# Tool Implementations
# =============================================================================


def _require_id(memory_id: Optional[str]) -> str:
    memory_id = (memory_id or "").strip()
    if not memory_id:
        raise ValueError("memory_id is required")
    return memory_id


def _expand_in_place(conversation: Conversation, entry: MemoryEntry) -> int:
    """Swap the placeholder message for the entry's original messages.

    The most recent message whose content mentions recall_memory(<id> is
    replaced. Returns the number of messages restored (0 if no placeholder
    is present).

    Raises:
        DeserializationError: If the stored messages cannot be decoded.
    """
    messages = conversation.messages()
    target = f"recall_memory({entry.id}".lower()
    index = -1
    for i in range(len(messages) - 1, -1, -1):
        if target in messages[i].content.lower():
            index = i
            break
    if index < 0:
        return 0

    try:
        originals = messages_from_json(entry.original_messages or "")
    except ValueError as e:
        raise DeserializationError(
            f"failed to decode original messages: {e}", memory_id=entry.id
        ) from e

    conversation.replace_messages(messages[:index] + originals + messages[index + 1:])
    return len(originals)


def create_recall_memory_tool(
    store: MemoryStore,
    on_expand: Optional[Callable[[str, int], None]] = None,
) -> Callable:
    """Create the recall_memory function.

    Args:
        store: Memory store holding the entries.
        on_expand: Called with (memory_id, messages_restored) after a
            successful in-place expansion.

    Returns:
        An async recall_memory function.
    """

    async def recall_memory(memory_id: str, scope: Optional[ToolScope] = None) -> str:
        """Recall a compacted conversation segment.

        Refreshes the entry's last access time. When a scope with a live
        conversation is given, the placeholder is replaced by the original
        messages so the next model call sees them verbatim.

        Args:
            memory_id: Id from a [COMPACTED THREAD: ...] placeholder.
            scope: Per-call scope carrying the conversation.

        Returns:
            JSON string with status, summary and messages_restored.

        Raises:
            ValueError: If memory_id is empty.
            MemoryNotFoundError: If the id does not exist.
        """
        memory_id = _require_id(memory_id)
        logger.debug(f"Recalling memory {memory_id}")

        def touch(entry: MemoryEntry) -> None:
            entry.last_access = utc_now()

        entry = store.access(memory_id, touch)

        restored = 0
        expand_error = ""
        conversation = scope.conversation if scope is not None else None
        if conversation is not None and entry.original_messages:
            try:
                restored = _expand_in_place(conversation, entry)
            except DeserializationError as e:
                logger.error(f"Memory {memory_id}: {e.message}")
                expand_error = e.message
            else:
                if restored:
                    logger.info(f"Expanded memory {memory_id} with {restored} original messages")
                    if on_expand is not None:
                        on_expand(memory_id, restored)

        payload: dict[str, Any] = {
            "status": "success",
            "memory_id": entry.id,
            "summary": entry.summary,
            "messages_restored": restored,
            "pinned": entry.pinned,
            "last_access": datetime_to_iso(entry.last_access),
        }
        if expand_error:
            payload["expand_error"] = expand_error
        return json.dumps(payload)

    return recall_memory


def create_pin_memory_tool(store: MemoryStore, max_pins: int) -> Callable:
    """Create the pin_memory function.

    Args:
        store: Memory store holding the entries.
        max_pins: Pin ceiling.

    Returns:
        An async pin_memory function.
    """

    async def pin_memory(memory_id: str, pin: bool = True) -> str:
        """Pin or unpin a memory.

        Args:
            memory_id: Memory to change.
            pin: True to pin, False to unpin.

        Returns:
            JSON string with memory_id, pinned and pinned_count.

        Raises:
            ValueError: If memory_id is empty.
            MemoryNotFoundError: If the id does not exist.
            PinLimitExceededError: If the pin ceiling is reached.
        """
        memory_id = _require_id(memory_id)
        entry = store.pin(memory_id, pin, max_pins)
        pinned_count = store.pinned_count()
        logger.info(
            f"Memory {memory_id} {'pinned' if entry.pinned else 'unpinned'} "
            f"(pinned count: {pinned_count})"
        )
        return json.dumps({
            "memory_id": entry.id,
            "pinned": entry.pinned,
            "pinned_count": pinned_count,
        })

    return pin_memory


# =============================================================================
# Factory Functions
# =============================================================================


def create_memory_tools(
    store: MemoryStore,
    max_pins: int,
    on_expand: Optional[Callable[[str, int], None]] = None,
) -> list[Callable]:
    """Create both memory tools.

    Args:
        store: Memory store holding the entries.
        max_pins: Pin ceiling for pin_memory.
        on_expand: Forwarded to recall_memory.

    Returns:
        [recall_memory, pin_memory]
    """
    return [
        create_recall_memory_tool(store, on_expand=on_expand),
        create_pin_memory_tool(store, max_pins),
    ]


__all__ = [
    "RECALL_MEMORY",
    "PIN_MEMORY",
    "RecallMemoryInput",
    "PinMemoryInput",
    "ToolScope",
    "recall_memory_definition",
    "pin_memory_definition",
    "tool_definitions",
    "create_recall_memory_tool",
    "create_pin_memory_tool",
    "create_memory_tools",
]
