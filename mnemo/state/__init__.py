"""Conversation state and audit events for mnemo."""

from mnemo.state.conversation import (
    FunctionCall,
    ToolCall,
    Message,
    Conversation,
    messages_to_json,
    messages_from_json,
    copy_messages,
)
from mnemo.state.events import (
    CompactionEvent,
    utc_now,
    datetime_to_iso,
    datetime_from_iso,
)

__all__ = [
    "FunctionCall",
    "ToolCall",
    "Message",
    "Conversation",
    "messages_to_json",
    "messages_from_json",
    "copy_messages",
    "CompactionEvent",
    "utc_now",
    "datetime_to_iso",
    "datetime_from_iso",
]
