"""Built-in memory tools.

Key Components:
    - create_memory_tools: Build recall_memory and pin_memory
    - tool_definitions: OpenAI-style schemas for both tools
    - ToolScope: Per-call context carrying the live conversation
"""

from mnemo.tools.builtin.memory_tools import (
    PinMemoryInput,
    RecallMemoryInput,
    ToolScope,
    create_memory_tools,
    tool_definitions,
)

__all__ = [
    "PinMemoryInput",
    "RecallMemoryInput",
    "ToolScope",
    "create_memory_tools",
    "tool_definitions",
]
