"""mnemo - context compaction and recallable memory for coding agents.

Keeps a growing agent conversation inside the model's context budget:
- Groups messages into assistant turns
- Summarizes and evicts the oldest turns when over budget
- Files the originals in a durable SQLite memory store
- Restores a compacted turn in place when the model calls recall_memory
"""

__version__ = "0.1.0"

from mnemo.context.profile import (
    MemoryProfile,
    NoopProfile,
    Prepared,
    ProfileDependencies,
    ProfileKind,
    create_profile,
)
from mnemo.memory.store import MemoryEntry, MemoryStore
from mnemo.state.conversation import Conversation, Message

__all__ = [
    "__version__",
    "MemoryProfile",
    "NoopProfile",
    "Prepared",
    "ProfileDependencies",
    "ProfileKind",
    "create_profile",
    "MemoryEntry",
    "MemoryStore",
    "Conversation",
    "Message",
]
