"""Compaction engine for long-running agent conversations.

When a conversation outgrows the active model's context budget, the engine
folds the oldest whole turns into short placeholders. Each folded turn is
summarized by an LLM, filed in the MemoryStore together with the exact
original messages, and replaced in the conversation by a placeholder that
tells the model how to recall it.

Pass Rules:
    - Size is measured as serialized JSON (messages plus tool schemas)
    - The last protected_recent messages are never touched
    - Turns are processed oldest first; the pass stops once the size is
      back under the threshold, unless the pass is forced
    - A turn that fails to summarize is skipped, the pass continues
    - The first message of a compacted turn carries the placeholder, the
      rest become empty shells for the caller to remove in one pass

Example:
    >>> engine = CompactionEngine(store=store, summarizer=summarizer)
    >>> params = CompactionParams(conversation_threshold=80_000, message_threshold=1_000)
    >>> total = engine.total_actual_size(messages, params.tool_definitions)
    >>> stats = await engine.compact_overflow(messages, total, params)
    >>> messages = remove_empty_messages(messages)
"""

from __future__ import annotations

import json
import logging
import random
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Sequence, runtime_checkable

from mnemo.config.settings import DEFAULT_COMPACTION_PROMPT
from mnemo.context.segmenter import TurnBoundary, identify_turns
from mnemo.core.exceptions import MemoryStoreError, MnemoError, SummarizationError
from mnemo.memory.store import MemoryEntry, MemoryStore
from mnemo.state.conversation import Message, copy_messages, messages_to_json
from mnemo.state.events import CompactionEvent, utc_now


# =============================================================================
# Module Logger
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

PLACEHOLDER_INDICATOR = "[compacted thread:"
"""Lower-case marker identifying a placeholder message."""

TOOL_SCHEMA_PADDING = 10_000
"""Size added for tool schemas when none are registered yet."""

MAX_SUMMARY_WORDS = 20

HISTORY_LIMIT = 50
"""Compaction events kept in memory and loaded at startup."""

PLACEHOLDER_TEMPLATE = (
    "[COMPACTED THREAD: {id}]\n"
    "I've summarized this thread segment. Summary: {summary}\n"
    "I can recall with recall_memory({id}) if details are needed."
)


# =============================================================================
# Collaborator Protocols
# =============================================================================


@runtime_checkable
class Summarizer(Protocol):
    """Produces short summaries with an LLM."""

    async def summarize(self, model: str, system_instruction: str, content: str) -> str:
        ...


@runtime_checkable
class FactsExtractor(Protocol):
    """Extracts durable project facts before context is compacted."""

    async def extract_facts(self, messages: Sequence[Message]) -> None:
        ...


EventCallback = Callable[[str, Any], None]


# =============================================================================
# Helpers
# =============================================================================


def is_placeholder(content: str) -> bool:
    """True if content contains the placeholder marker (case-insensitive)."""
    return PLACEHOLDER_INDICATOR in content.lower()


def word_count(text: str) -> int:
    return len(text.split())


def truncate_words(text: str, limit: int) -> str:
    """Keep the first limit whitespace-separated words."""
    words = text.split()
    if len(words) <= limit:
        return text
    return " ".join(words[:limit])


def build_placeholder(memory_id: str, summary: str) -> str:
    return PLACEHOLDER_TEMPLATE.format(id=memory_id, summary=summary)


def remove_empty_messages(messages: Sequence[Message]) -> list[Message]:
    """Drop messages with no content, thinking or tool calls."""
    return [m for m in messages if not m.is_empty()]


def aggregate_turn_content(messages: Sequence[Message]) -> str:
    """Flatten a turn into labelled text for the summarizer.

    Each message contributes "[role]: content" (or "[role name]: content")
    followed by "[thinking]: ..." when present, separated by blank lines.
    """
    parts: list[str] = []
    for msg in messages:
        if msg.content:
            label = f"{msg.role} {msg.name}" if msg.name else msg.role
            parts.append(f"[{label}]: {msg.content}\n\n")
        if msg.thinking:
            parts.append(f"[thinking]: {msg.thinking}\n\n")
    return "".join(parts)


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class CompactionParams:
    """Snapshot of the settings one compaction pass runs with.

    Attributes:
        conversation_threshold: Size above which compaction fires.
        message_threshold: Content length above which a single message
            is compacted by compact_message().
        protected_recent: Trailing messages that are never compacted.
        summary_model: Model passed to the summarizer.
        summary_prompt: System instruction passed to the summarizer.
        tool_definitions: Registered tool schemas, used for sizing.
    """

    conversation_threshold: int
    message_threshold: int
    protected_recent: int = 2
    summary_model: str = ""
    summary_prompt: str = DEFAULT_COMPACTION_PROMPT
    tool_definitions: tuple[dict[str, Any], ...] = ()


@dataclass
class CompactionStats:
    """Outcome of one compact_overflow() pass."""

    before: int
    after: int = 0
    compacted: int = 0
    considered: int = 0
    compacted_turns: list[TurnBoundary] = field(default_factory=list)
    event: Optional[CompactionEvent] = None


# =============================================================================
# Compaction Engine
# =============================================================================


class CompactionEngine:
    """Summarizes and evicts old turns into the memory store.

    The engine holds no per-conversation state. Thresholds and the summary
    model arrive with each call as a CompactionParams snapshot, so the
    owner can reconfigure between passes without touching the engine.

    Example:
        >>> engine = CompactionEngine(store, summarizer, on_event=print)
        >>> stats = await engine.compact_overflow(messages, total, params, forced=True)
        >>> stats.compacted
        2
    """

    def __init__(
        self,
        store: MemoryStore,
        summarizer: Summarizer,
        rng: Optional[random.Random] = None,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Where memory entries are filed.
            summarizer: LLM summarizer.
            rng: Random source for memory ids. A fresh one is created
                when omitted.
            on_event: Called with ("compaction_start", {"chars_before": n})
                and ("compaction_complete", CompactionEvent) for every pass.
        """
        self.store = store
        self.summarizer = summarizer
        self._rng = rng or random.Random(time.time_ns())
        self._rng_lock = threading.Lock()
        self._on_event = on_event

    # -------------------------------------------------------------------------
    # Sizing
    # -------------------------------------------------------------------------

    @staticmethod
    def total_actual_size(
        messages: Sequence[Message],
        tool_definitions: Sequence[dict[str, Any]] = (),
    ) -> int:
        """Size of the request payload in bytes of serialized JSON.

        Adds TOOL_SCHEMA_PADDING when no tool schemas are registered.
        """
        size = len(messages_to_json(messages).encode("utf-8"))
        if not tool_definitions:
            return size + TOOL_SCHEMA_PADDING
        tool_json = json.dumps(list(tool_definitions), ensure_ascii=False, separators=(",", ":"))
        return size + len(tool_json.encode("utf-8"))

    # -------------------------------------------------------------------------
    # Memory creation
    # -------------------------------------------------------------------------

    def generate_id(self) -> str:
        """Return a new id of the form mem-<unix-nanos>-<4 hex>."""
        with self._rng_lock:
            suffix = self._rng.randrange(0xFFFF)
        return f"mem-{time.time_ns()}-{suffix:04x}"

    async def summarize(self, content: str, params: CompactionParams) -> str:
        """Summarize content in at most MAX_SUMMARY_WORDS words.

        Raises:
            SummarizationError: If the summarizer fails or returns blank text.
        """
        try:
            summary = await self.summarizer.summarize(
                params.summary_model, params.summary_prompt, content
            )
        except SummarizationError:
            raise
        except Exception as e:
            raise SummarizationError(f"summarizer call failed: {e}") from e

        summary = (summary or "").strip()
        if not summary:
            raise SummarizationError("empty summary")
        if word_count(summary) > MAX_SUMMARY_WORDS:
            summary = truncate_words(summary, MAX_SUMMARY_WORDS)
        return summary

    async def create_memory(
        self,
        content: str,
        original_messages: Sequence[Message],
        params: CompactionParams,
    ) -> MemoryEntry:
        """Summarize content and file it with its original messages.

        Raises:
            SummarizationError: If summarization fails.
            MemoryStoreError: If the entry cannot be written.
        """
        summary = await self.summarize(content, params)
        memory_id = self.generate_id()
        now = utc_now()
        entry = MemoryEntry(
            id=memory_id,
            content=content,
            summary=summary,
            placeholder=build_placeholder(memory_id, summary),
            original_messages=messages_to_json(original_messages) if original_messages else None,
            created_at=now,
            last_access=now,
        )
        try:
            self.store.put(entry)
        except sqlite3.Error as e:
            raise MemoryStoreError(f"failed to store memory: {e}", memory_id=memory_id) from e
        return entry

    # -------------------------------------------------------------------------
    # Compaction
    # -------------------------------------------------------------------------

    async def compact_turn(
        self,
        messages: list[Message],
        turn: TurnBoundary,
        params: CompactionParams,
    ) -> tuple[int, bool]:
        """Fold one turn into a placeholder, mutating messages in place.

        Returns:
            (chars saved, whether the turn was compacted)

        Raises:
            SummarizationError: If the summary could not be produced.
            MemoryStoreError: If the entry could not be stored.
        """
        if turn.start < 0 or turn.end >= len(messages) or turn.start > turn.end:
            logger.debug(f"SKIP turn[{turn.start}:{turn.end}]: invalid indices (len={len(messages)})")
            return 0, False

        span = messages[turn.start:turn.end + 1]

        has_placeholder = False
        all_placeholders = True
        for msg in span:
            if is_placeholder(msg.content):
                has_placeholder = True
            elif msg.content or msg.thinking:
                all_placeholders = False

        if has_placeholder and all_placeholders:
            logger.debug(f"SKIP turn[{turn.start}:{turn.end}]: already compacted")
            return 0, False
        if has_placeholder:
            logger.warning(
                f"SKIP turn[{turn.start}:{turn.end}]: mixed state "
                f"(some placeholders, some content), leaving it untouched"
            )
            return 0, False

        if not any(msg.content or msg.thinking for msg in span):
            logger.debug(f"SKIP turn[{turn.start}:{turn.end}]: no content to summarize")
            return 0, False

        original_size = sum(len(m.content) + len(m.thinking) for m in span)
        originals = copy_messages(span)
        try:
            entry = await self.create_memory(aggregate_turn_content(span), originals, params)
        except SummarizationError as e:
            raise SummarizationError(
                e.message, turn_range=turn.as_tuple(), context=dict(e.context)
            ) from e

        first = messages[turn.start]
        first.content = entry.placeholder
        first.thinking = ""
        first.tool_calls = []
        for msg in messages[turn.start + 1:turn.end + 1]:
            msg.clear()

        logger.debug(f"Compacted turn[{turn.start}:{turn.end}] into {entry.id}")
        return max(0, original_size - len(entry.placeholder)), True

    async def compact_overflow(
        self,
        messages: list[Message],
        total: int,
        params: CompactionParams,
        forced: bool = False,
    ) -> CompactionStats:
        """Compact eligible turns oldest first until under the threshold.

        Messages are mutated in place; empty shells are left for the caller
        to remove with remove_empty_messages(). Every call produces exactly
        one CompactionEvent, also when nothing was eligible.

        Args:
            messages: Conversation messages (mutated).
            total: Current size from total_actual_size().
            params: Threshold and summarizer settings.
            forced: Compact every eligible turn regardless of size.

        Returns:
            CompactionStats including the pass event.
        """
        start = time.perf_counter()
        started_at = utc_now()
        stats = CompactionStats(before=total)
        self._emit("compaction_start", {"chars_before": total})

        current = total
        protect = max(0, params.protected_recent)
        protected_boundary = max(0, len(messages) - protect)
        logger.debug(
            f"compaction: messages={len(messages)} protect={protect} "
            f"protected_boundary={protected_boundary} forced={forced}"
        )

        turns = identify_turns(messages)
        eligible = [t for t in turns if t.end < protected_boundary]
        stats.considered = len(eligible)
        logger.debug(f"compaction: {len(turns)} turns, {len(eligible)} eligible")

        for i, turn in enumerate(eligible, start=1):
            if not forced and current <= params.conversation_threshold:
                logger.debug(
                    f"compaction: stopped before turn {i}/{len(eligible)} "
                    f"(current={current} <= threshold={params.conversation_threshold})"
                )
                break
            try:
                _, changed = await self.compact_turn(messages, turn, params)
            except MnemoError as e:
                logger.warning(f"compaction: turn[{turn.start}:{turn.end}] failed: {e}")
                continue
            if changed:
                new_size = self.total_actual_size(messages, params.tool_definitions)
                logger.debug(
                    f"compaction: turn[{turn.start}:{turn.end}] {current} -> {new_size} chars"
                )
                current = new_size
                stats.compacted += 1
                stats.compacted_turns.append(turn)

        stats.after = current
        stats.event = CompactionEvent(
            timestamp=started_at,
            chars_before=stats.before,
            chars_after=stats.after,
            messages_compacted=stats.compacted,
            messages_considered=stats.considered,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        logger.info(
            f"compaction{' (forced)' if forced else ''}: {stats.before} -> {stats.after} chars, "
            f"{stats.compacted}/{stats.considered} turns compacted"
        )
        self._emit("compaction_complete", stats.event)
        return stats

    async def compact_message(
        self,
        message: Message,
        params: CompactionParams,
    ) -> tuple[int, bool]:
        """Replace one oversized message's content with a placeholder.

        System messages, placeholders and messages at or under
        params.message_threshold are left alone.

        Returns:
            (chars saved, whether the message was compacted)

        Raises:
            SummarizationError: If summarization fails.
            MemoryStoreError: If the entry cannot be stored.
        """
        if message is None or not message.content:
            return 0, False
        if message.role.lower() == "system":
            return 0, False
        if is_placeholder(message.content):
            return 0, False
        if len(message.content) <= params.message_threshold:
            return 0, False

        original = len(message.content)
        entry = await self.create_memory(message.content, [message.model_copy(deep=True)], params)
        message.content = entry.placeholder
        return max(0, original - len(message.content)), True

    def _emit(self, event_type: str, data: Any) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event_type, data)
        except Exception as e:
            logger.warning(f"compaction event '{event_type}' handler failed: {e}")


__all__ = [
    "CompactionEngine",
    "CompactionParams",
    "CompactionStats",
    "CompactionEvent",
    "Summarizer",
    "FactsExtractor",
    "EventCallback",
    "PLACEHOLDER_INDICATOR",
    "TOOL_SCHEMA_PADDING",
    "MAX_SUMMARY_WORDS",
    "HISTORY_LIMIT",
    "is_placeholder",
    "word_count",
    "truncate_words",
    "build_placeholder",
    "remove_empty_messages",
    "aggregate_turn_content",
]
