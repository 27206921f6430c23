"""Context profiles: per-turn hooks that keep a conversation within budget.

The agent loop calls prepare() before every model call and
after_response() once the reply has been handled. The default profile
passes the conversation through untouched; the memory profile compacts old
turns into the memory store and exposes the recall/pin tools.

Profiles:
    - DEFAULT: NoopProfile, no compaction and no tools
    - MEMORY: MemoryProfile, threshold-driven compaction with recall

One-shot flags on the memory profile:
    - skip: set after a recall expands a placeholder so the restored
      messages survive the next model call; cleared by after_response()
      or reload_config()
    - force: set by force_compaction(); consumed by the next prepare(),
      which then compacts every eligible turn regardless of size

Example:
    >>> profile = create_profile("memory", ProfileDependencies(summarizer=llm))
    >>> prepared = await profile.prepare(conversation)
    >>> response = await llm.chat(prepared.messages, tools=...)
    >>> await profile.after_response(conversation)
"""

from __future__ import annotations

import json
import logging
import random
import sqlite3
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Sequence, Union, runtime_checkable

from mnemo.config.settings import MnemoSettings, get_settings
from mnemo.context.compaction import (
    HISTORY_LIMIT,
    CompactionEngine,
    CompactionParams,
    EventCallback,
    FactsExtractor,
    Summarizer,
    remove_empty_messages,
)
from mnemo.core.exceptions import ConfigurationError, MnemoError
from mnemo.memory.store import MemoryStore
from mnemo.state.conversation import Conversation, Message, copy_messages
from mnemo.state.events import CompactionEvent
from mnemo.tools.builtin.memory_tools import (
    PIN_MEMORY,
    RECALL_MEMORY,
    PinMemoryInput,
    RecallMemoryInput,
    ToolScope,
    create_memory_tools,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Profile Types
# =============================================================================


class ProfileKind(str, Enum):
    """Available context profiles."""

    DEFAULT = "default"
    MEMORY = "memory"

    @classmethod
    def parse(cls, name: Union[str, "ProfileKind", None]) -> "ProfileKind":
        """Resolve a profile name; empty means DEFAULT.

        Raises:
            ConfigurationError: If the name is unknown.
        """
        if isinstance(name, ProfileKind):
            return name
        key = (name or "").strip().lower()
        if not key:
            return cls.DEFAULT
        try:
            return cls(key)
        except ValueError:
            raise ConfigurationError(
                f"unknown context profile {name}",
                config_key="context_profile",
                validation_details=f"expected one of: {', '.join(k.value for k in cls)}",
            )


@dataclass
class Prepared:
    """Conversation snapshot returned by prepare().

    Attributes:
        messages: Messages to send to the model.
        mutated: True if the conversation itself was rewritten.
    """

    messages: list[Message]
    mutated: bool = False


@dataclass
class ProfileDependencies:
    """Resources a profile may need.

    Attributes:
        summarizer: LLM summarizer (required by the memory profile).
        settings: Settings to use; the cached settings when omitted.
        provider: Active provider; settings.provider when empty.
        model: Active model; settings.model when empty.
        store: Pre-opened memory store; opened from settings when omitted.
        rng: Random source for memory ids.
    """

    summarizer: Optional[Summarizer] = None
    settings: Optional[MnemoSettings] = None
    provider: str = ""
    model: str = ""
    store: Optional[MemoryStore] = None
    rng: Optional[random.Random] = None


@dataclass
class MemorySummaryEntry:
    id: str
    summary: str
    pinned: bool
    last_access: datetime


@dataclass
class MemorySummary:
    """Store totals and recently accessed entries for display."""

    total: int
    pinned: int
    entries: list[MemorySummaryEntry] = field(default_factory=list)


@runtime_checkable
class ContextProfile(Protocol):
    """Hooks the agent loop calls around every model request."""

    async def prepare(self, conversation: Conversation) -> Prepared:
        ...

    async def after_response(self, conversation: Conversation) -> bool:
        ...

    def tools(self) -> list[Callable]:
        ...

    def set_tool_definitions(self, definitions: Sequence[dict[str, Any]]) -> None:
        ...


# =============================================================================
# Default Profile
# =============================================================================


class NoopProfile:
    """Profile that leaves the conversation alone."""

    async def prepare(self, conversation: Conversation) -> Prepared:
        return Prepared(messages=conversation.messages())

    async def after_response(self, conversation: Conversation) -> bool:
        return False

    def tools(self) -> list[Callable]:
        return []

    def set_tool_definitions(self, definitions: Sequence[dict[str, Any]]) -> None:
        pass


# =============================================================================
# Memory Profile
# =============================================================================


@dataclass
class _ProfileState:
    provider: str
    model: str
    summary_model: str
    summary_prompt: str
    message_threshold: int
    conversation_threshold: int
    protected_recent: int
    skip_compaction: bool = False
    force_compaction: bool = False
    tool_definitions: tuple[dict[str, Any], ...] = ()
    callback: Optional[EventCallback] = None
    facts_extractor: Optional[FactsExtractor] = None
    history: deque = field(default_factory=lambda: deque(maxlen=HISTORY_LIMIT))


class MemoryProfile:
    """Profile that compacts old turns and offers recall/pin tools.

    All mutable scalars live in one _ProfileState guarded by an RLock.
    Compaction runs inside prepare() and the caller waits for it.

    Example:
        >>> profile = MemoryProfile(ProfileDependencies(summarizer=llm, settings=settings))
        >>> profile.set_tool_definitions(agent_tool_schemas)
        >>> prepared = await profile.prepare(conversation)
    """

    def __init__(self, deps: ProfileDependencies) -> None:
        """Initialize the profile.

        Args:
            deps: Profile dependencies. A summarizer is required.

        Raises:
            ConfigurationError: If no summarizer is provided.
            MemoryStoreError: If the memory store cannot be opened.
        """
        if deps.summarizer is None:
            raise ConfigurationError("memory profile requires a summarizer")

        settings = deps.settings or get_settings()
        compaction = settings.compaction
        provider = (deps.provider or settings.provider).strip().lower()
        model = deps.model or settings.model

        self._settings = settings
        self._owns_store = deps.store is None
        self._store = deps.store or MemoryStore(compaction.memory_store_path)
        self._max_pins = compaction.max_pins
        self._lock = threading.RLock()
        self._state = _ProfileState(
            provider=provider,
            model=model,
            summary_model=compaction.summary_model_for(provider),
            summary_prompt=compaction.summary_prompt,
            message_threshold=compaction.message_threshold(provider, model),
            conversation_threshold=compaction.conversation_threshold(provider, model),
            protected_recent=max(0, compaction.protect_recent),
        )

        try:
            persisted = self._store.load_compaction_events(HISTORY_LIMIT)
        except (MnemoError, sqlite3.Error) as e:
            logger.warning(f"Failed to load compaction history: {e}")
            persisted = []
        # Stored newest first; history is kept oldest first.
        self._state.history.extend(reversed(persisted))

        self._engine = CompactionEngine(
            self._store,
            deps.summarizer,
            rng=deps.rng or random.Random(time.time_ns()),
            on_event=self._handle_engine_event,
        )
        self._tools = create_memory_tools(self._store, self._max_pins, on_expand=self._on_expand)

        logger.info(
            f"Memory profile ready for {provider}/{model}: "
            f"message_threshold={self._state.message_threshold} "
            f"conversation_threshold={self._state.conversation_threshold} "
            f"protect_recent={self._state.protected_recent}"
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def store(self) -> MemoryStore:
        return self._store

    @property
    def engine(self) -> CompactionEngine:
        return self._engine

    @property
    def protected_recent(self) -> int:
        with self._lock:
            return self._state.protected_recent

    def compaction_params(self) -> CompactionParams:
        """Snapshot of the settings the next pass would run with."""
        with self._lock:
            return self._params_locked()

    def _params_locked(self) -> CompactionParams:
        s = self._state
        return CompactionParams(
            conversation_threshold=s.conversation_threshold,
            message_threshold=s.message_threshold,
            protected_recent=s.protected_recent,
            summary_model=s.summary_model,
            summary_prompt=s.summary_prompt,
            tool_definitions=s.tool_definitions,
        )

    # -------------------------------------------------------------------------
    # Turn hooks
    # -------------------------------------------------------------------------

    async def prepare(self, conversation: Conversation) -> Prepared:
        """Compact the conversation if it is over budget or a pass is forced.

        Returns:
            Prepared with the messages to send; mutated is True when the
            conversation was rewritten.
        """
        messages, version = conversation.snapshot()

        with self._lock:
            if self._state.skip_compaction:
                return Prepared(messages=messages)
            forced = self._state.force_compaction
            self._state.force_compaction = False
            params = self._params_locked()
            extractor = self._state.facts_extractor

        total = self._engine.total_actual_size(messages, params.tool_definitions)
        if not forced and total <= params.conversation_threshold:
            return Prepared(messages=messages)

        if extractor is not None:
            try:
                await extractor.extract_facts(copy_messages(messages))
            except Exception as e:
                logger.warning(f"Facts extraction failed: {e}")

        stats = await self._engine.compact_overflow(messages, total, params, forced=forced)
        if stats.compacted == 0:
            logger.info(
                f"Compaction{' (forced)' if forced else ''} found no eligible turns "
                f"(total={stats.before} limit={params.conversation_threshold} "
                f"considered={stats.considered})"
            )
            return Prepared(messages=messages)

        # A recall or append during the summarizer awaits wins; the entries
        # already filed stay in the store and the next pass retries.
        if not conversation.replace_messages_if(version, remove_empty_messages(messages)):
            logger.warning(
                f"Conversation {conversation.key or '<unnamed>'} changed during compaction; "
                f"discarding {stats.compacted} compacted turn(s)"
            )
            return Prepared(messages=conversation.messages())
        return Prepared(messages=conversation.messages(), mutated=True)

    async def after_response(self, conversation: Conversation) -> bool:
        """Clear the skip flag set by a recall expansion."""
        with self._lock:
            self._state.skip_compaction = False
        return False

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    def tools(self) -> list[Callable]:
        return list(self._tools)

    def set_tool_definitions(self, definitions: Sequence[dict[str, Any]]) -> None:
        """Register the tool schemas sent with each request (used for sizing)."""
        with self._lock:
            self._state.tool_definitions = tuple(definitions or ())

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any],
        scope: Optional[ToolScope] = None,
    ) -> str:
        """Invoke a memory tool, reporting failures as JSON tool results.

        Args:
            name: recall_memory or pin_memory.
            arguments: Raw tool-call arguments.
            scope: Per-call scope carrying the conversation.

        Returns:
            The tool's JSON result, or {"status": "error", ...}.
        """
        recall_memory, pin_memory = self._tools
        try:
            if name == RECALL_MEMORY:
                args = RecallMemoryInput.model_validate(arguments or {})
                return await recall_memory(args.memory_id, scope=scope)
            if name == PIN_MEMORY:
                args = PinMemoryInput.model_validate(arguments or {})
                return await pin_memory(args.memory_id, args.pin)
        except MnemoError as e:
            logger.warning(f"Tool {name} failed: {e}")
            return json.dumps({"status": "error", "error_code": e.code, "error": e.message})
        except ValueError as e:
            return json.dumps({"status": "error", "error_code": "INVALID_ARGUMENTS", "error": str(e)})

        return json.dumps({
            "status": "error",
            "error_code": "UNKNOWN_TOOL",
            "error": f"unknown tool: {name}",
        })

    def _on_expand(self, memory_id: str, restored: int) -> None:
        with self._lock:
            self._state.skip_compaction = True
        logger.debug(f"Deferring compaction after expanding {memory_id} ({restored} messages)")

    # -------------------------------------------------------------------------
    # Runtime configuration
    # -------------------------------------------------------------------------

    def set_protected_recent(self, n: int) -> None:
        with self._lock:
            self._state.protected_recent = max(0, n)

    def force_compaction(self) -> None:
        """Make the next prepare() compact every eligible turn."""
        with self._lock:
            self._state.force_compaction = True

    def set_facts_extractor(self, extractor: Optional[FactsExtractor]) -> None:
        with self._lock:
            self._state.facts_extractor = extractor

    def reload_config(self, settings: MnemoSettings) -> None:
        """Apply new compaction settings without restarting.

        Raises:
            ConfigurationError: If the store path changed or a threshold
                fraction is not positive. Nothing is applied in that case.
        """
        compaction = settings.compaction
        new_path = str(compaction.memory_store_path).strip()
        if new_path and Path(new_path).resolve() != self._store.path.resolve():
            raise ConfigurationError(
                "changing memory_store_path requires restart",
                config_key="compaction.memory_store_path",
            )
        if compaction.message_percent <= 0 or compaction.conversation_percent <= 0:
            raise ConfigurationError(
                "invalid compaction thresholds",
                config_key="compaction",
                validation_details="message_percent and conversation_percent must be positive",
            )

        with self._lock:
            s = self._state
            self._settings = settings
            s.message_threshold = compaction.message_threshold(s.provider, s.model)
            s.conversation_threshold = compaction.conversation_threshold(s.provider, s.model)
            if compaction.protect_recent >= 0:
                s.protected_recent = compaction.protect_recent
            if compaction.summary_prompt.strip():
                s.summary_prompt = compaction.summary_prompt
            summary_model = compaction.summary_model_for(s.provider)
            if summary_model:
                s.summary_model = summary_model
            s.skip_compaction = False

        logger.info("Reloaded compaction settings")

    def update_provider_model(self, provider: str, model: str) -> None:
        """Switch the active provider/model and recompute thresholds."""
        compaction = self._settings.compaction
        with self._lock:
            s = self._state
            s.provider = provider.strip().lower()
            s.model = model
            s.message_threshold = compaction.message_threshold(s.provider, model)
            s.conversation_threshold = compaction.conversation_threshold(s.provider, model)
            summary_model = compaction.summary_model_for(s.provider)
            if summary_model:
                s.summary_model = summary_model
            logger.info(
                f"Updated compaction thresholds for {s.provider}/{model}: "
                f"message={s.message_threshold}, conversation={s.conversation_threshold}, "
                f"summary_model={s.summary_model}"
            )

    # -------------------------------------------------------------------------
    # Compaction events
    # -------------------------------------------------------------------------

    def set_compaction_callback(self, callback: Optional[EventCallback]) -> None:
        with self._lock:
            self._state.callback = callback

    def get_compaction_history(self) -> list[CompactionEvent]:
        """Return recent compaction events, oldest first."""
        with self._lock:
            return list(self._state.history)

    def _handle_engine_event(self, event_type: str, data: Any) -> None:
        if event_type == "compaction_complete" and isinstance(data, CompactionEvent):
            self._add_compaction_event(data)

        with self._lock:
            callback = self._state.callback
        if callback is None:
            return
        try:
            callback(event_type, data)
        except Exception as e:
            logger.warning(f"Compaction callback failed for '{event_type}': {e}")

    def _add_compaction_event(self, event: CompactionEvent) -> None:
        with self._lock:
            self._state.history.append(event)
        try:
            self._store.save_compaction_event(event)
        except (MnemoError, sqlite3.Error) as e:
            logger.warning(f"Failed to save compaction event: {e}")

    # -------------------------------------------------------------------------
    # Inspection and lifecycle
    # -------------------------------------------------------------------------

    def memory_summary(self, limit: int = 5) -> MemorySummary:
        """Totals plus the most recently accessed entries."""
        stats = self._store.stats(limit)
        return MemorySummary(
            total=stats.total,
            pinned=stats.pinned,
            entries=[
                MemorySummaryEntry(
                    id=entry.id,
                    summary=entry.summary,
                    pinned=entry.pinned,
                    last_access=entry.last_access,
                )
                for entry in stats.entries
            ],
        )

    def close(self) -> None:
        """Close the memory store if this profile opened it."""
        if self._owns_store:
            self._store.close()


# =============================================================================
# Factory
# =============================================================================


def create_profile(
    kind: Union[str, ProfileKind, None],
    deps: Optional[ProfileDependencies] = None,
) -> Union[NoopProfile, MemoryProfile]:
    """Create a context profile by kind or name.

    Args:
        kind: ProfileKind or its name ("", "default", "memory").
        deps: Dependencies for the memory profile.

    Returns:
        The requested profile.

    Raises:
        ConfigurationError: If the kind is unknown or dependencies are missing.
    """
    resolved = ProfileKind.parse(kind)
    if resolved is ProfileKind.MEMORY:
        return MemoryProfile(deps or ProfileDependencies())
    return NoopProfile()


__all__ = [
    "ProfileKind",
    "Prepared",
    "ProfileDependencies",
    "MemorySummary",
    "MemorySummaryEntry",
    "ContextProfile",
    "NoopProfile",
    "MemoryProfile",
    "create_profile",
]
