"""Context management for mnemo.

This module keeps conversations within the model's context budget:
- Turn segmentation of flat message lists
- Threshold-driven compaction into the memory store
- Context profiles wiring compaction into the agent loop

Key Components:
    - identify_turns: Group messages into assistant turns
    - CompactionEngine: Summarize and evict old turns
    - MemoryProfile: prepare/after_response hooks with recall tools
"""

from mnemo.context.segmenter import TurnBoundary, identify_turns
from mnemo.context.compaction import (
    CompactionEngine,
    CompactionParams,
    CompactionStats,
    FactsExtractor,
    Summarizer,
    is_placeholder,
    remove_empty_messages,
)
from mnemo.context.profile import (
    ContextProfile,
    MemoryProfile,
    MemorySummary,
    MemorySummaryEntry,
    NoopProfile,
    Prepared,
    ProfileDependencies,
    ProfileKind,
    create_profile,
)

__all__ = [
    "TurnBoundary",
    "identify_turns",
    "CompactionEngine",
    "CompactionParams",
    "CompactionStats",
    "FactsExtractor",
    "Summarizer",
    "is_placeholder",
    "remove_empty_messages",
    "ContextProfile",
    "MemoryProfile",
    "MemorySummary",
    "MemorySummaryEntry",
    "NoopProfile",
    "Prepared",
    "ProfileDependencies",
    "ProfileKind",
    "create_profile",
]
