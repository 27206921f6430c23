"""Tests for context profiles.

This module tests:
- Profile selection by kind/name
- prepare() triggering, forcing and skipping compaction
- Recall round-trip through the live conversation
- Facts extraction hook
- Compaction history, callbacks and persistence
- Runtime reconfiguration

Test Categories:
    - TestCreateProfile: factory and NoopProfile
    - TestPrepare: compaction trigger and flags
    - TestRecallRoundTrip: compaction followed by recall
    - TestFactsExtraction: pre-compaction hook
    - TestCompactionHistory: events, callbacks, persistence
    - TestReconfiguration: reload_config and update_provider_model
    - TestCallTool: JSON error payloads
"""

import json
import re
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from mnemo.config.settings import CompactionSettings, MnemoSettings
from mnemo.context.compaction import is_placeholder
from mnemo.context.profile import (
    ContextProfile,
    MemoryProfile,
    NoopProfile,
    ProfileDependencies,
    ProfileKind,
    create_profile,
)
from mnemo.core.exceptions import ConfigurationError
from mnemo.memory.store import MemoryEntry, MemoryStore
from mnemo.state.conversation import Conversation
from mnemo.state.events import CompactionEvent
from mnemo.tools.builtin.memory_tools import ToolScope

from tests.conftest import assistant, system, user


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def profile(settings, summarizer):
    memory_profile = MemoryProfile(ProfileDependencies(summarizer=summarizer, settings=settings))
    yield memory_profile
    memory_profile.close()


@pytest.fixture
def conversation(tool_turn_messages):
    return Conversation(key="sess-1", messages=tool_turn_messages)


def placeholder_id(content: str) -> str:
    return re.search(r"\[COMPACTED THREAD: (mem-[^\]]+)\]", content).group(1)


def oversized_conversation() -> Conversation:
    """Two big single-message turns followed by a protected exchange."""
    return Conversation(messages=[
        system(),
        user("first"),
        assistant("a" * 50_000),
        user("second"),
        assistant("b" * 40_000),
        user("third"),
        assistant("ok"),
    ])


# =============================================================================
# Factory
# =============================================================================


class TestCreateProfile:
    """Tests for create_profile() and NoopProfile."""

    @pytest.mark.parametrize("name", ["", None, "default", "DEFAULT", ProfileKind.DEFAULT])
    def test_default(self, name):
        assert isinstance(create_profile(name), NoopProfile)

    def test_memory(self, settings, summarizer):
        profile = create_profile("Memory", ProfileDependencies(summarizer=summarizer, settings=settings))
        try:
            assert isinstance(profile, MemoryProfile)
            assert isinstance(profile, ContextProfile)
        finally:
            profile.close()

    def test_unknown_name(self):
        with pytest.raises(ConfigurationError, match="unknown context profile"):
            create_profile("vector")

    def test_memory_requires_summarizer(self, settings):
        with pytest.raises(ConfigurationError):
            create_profile(ProfileKind.MEMORY, ProfileDependencies(settings=settings))

    @pytest.mark.asyncio
    async def test_noop_profile(self, conversation, tool_turn_messages):
        profile = NoopProfile()

        prepared = await profile.prepare(conversation)

        assert prepared.messages == tool_turn_messages
        assert prepared.mutated is False
        assert await profile.after_response(conversation) is False
        assert profile.tools() == []
        profile.set_tool_definitions([{"type": "function"}])


# =============================================================================
# prepare()
# =============================================================================


class TestPrepare:
    """Tests for MemoryProfile.prepare()."""

    def test_thresholds_from_settings(self, profile):
        params = profile.compaction_params()
        # mock/mock-model has 32,768 tokens; 3 chars per token
        assert params.conversation_threshold == int(32_768 * 3 * 0.80)
        assert params.message_threshold == int(32_768 * 3 * 0.02)
        assert params.protected_recent == 2
        assert params.summary_model == "mock-summary-model"

    @pytest.mark.asyncio
    async def test_under_threshold_is_untouched(self, profile, conversation, summarizer, tool_turn_messages):
        prepared = await profile.prepare(conversation)

        assert prepared.mutated is False
        assert prepared.messages == tool_turn_messages
        summarizer.summarize.assert_not_awaited()
        assert profile.get_compaction_history() == []

    @pytest.mark.asyncio
    async def test_over_threshold_compacts(self, profile, summarizer):
        conversation = oversized_conversation()

        prepared = await profile.prepare(conversation)

        assert prepared.mutated is True
        assert is_placeholder(prepared.messages[2].content)
        # Back under budget after the first turn, the second is kept.
        assert prepared.messages[4].content == "b" * 40_000
        assert conversation.messages() == prepared.messages
        assert summarizer.summarize.await_count == 1

    @pytest.mark.asyncio
    async def test_prepare_is_idempotent(self, profile, summarizer):
        conversation = oversized_conversation()
        first = await profile.prepare(conversation)
        entries = profile.store.stats().total

        second = await profile.prepare(conversation)

        assert second.mutated is False
        assert second.messages == first.messages
        assert profile.store.stats().total == entries

    @pytest.mark.asyncio
    async def test_forced_compaction_removes_shells(self, profile, conversation, tool_turn_messages):
        profile.force_compaction()

        prepared = await profile.prepare(conversation)

        assert prepared.mutated is True
        # turn [2,4] folded into one message; protected tail intact
        assert len(prepared.messages) == len(tool_turn_messages) - 2
        assert is_placeholder(prepared.messages[2].content)
        assert prepared.messages[-2:] == tool_turn_messages[-2:]
        assert all(not m.is_empty() for m in prepared.messages)

    @pytest.mark.asyncio
    async def test_force_flag_is_one_shot(self, profile, conversation, summarizer):
        profile.force_compaction()
        await profile.prepare(conversation)
        conversation.append(user("and another thing"))
        conversation.append(assistant("sure"))

        prepared = await profile.prepare(conversation)

        assert prepared.mutated is False
        assert summarizer.summarize.await_count == 1

    @pytest.mark.asyncio
    async def test_change_during_summarization_is_kept(
        self, profile, conversation, summarizer, tool_turn_messages, caplog
    ):
        late = user("sent while the summary was being written")

        async def summarize_and_append(model, instruction, content):
            conversation.append(late)
            return "Read main.py and fixed it."

        summarizer.summarize.side_effect = summarize_and_append
        profile.force_compaction()

        with caplog.at_level("WARNING", logger="mnemo.context.profile"):
            prepared = await profile.prepare(conversation)

        assert prepared.mutated is False
        assert conversation.messages() == tool_turn_messages + [late]
        assert prepared.messages == conversation.messages()
        assert not any(is_placeholder(m.content) for m in prepared.messages)
        assert "changed during compaction" in caplog.text

    @pytest.mark.asyncio
    async def test_set_protected_recent(self, profile, conversation, tool_turn_messages):
        profile.set_protected_recent(-5)
        assert profile.protected_recent == 0

        profile.set_protected_recent(len(tool_turn_messages))
        profile.force_compaction()
        prepared = await profile.prepare(conversation)

        assert prepared.mutated is False
        assert prepared.messages == tool_turn_messages

    @pytest.mark.asyncio
    async def test_tool_definitions_count_toward_size(self, profile, conversation):
        tools = [{"type": "function", "function": {"name": "x", "description": "d" * 200_000}}]
        profile.set_tool_definitions(tools)

        prepared = await profile.prepare(conversation)

        assert profile.compaction_params().tool_definitions == tuple(tools)
        assert prepared.mutated is True


# =============================================================================
# Recall round-trip
# =============================================================================


class TestRecallRoundTrip:
    """Compaction followed by recall restores the original turn."""

    @pytest.mark.asyncio
    async def test_round_trip(self, profile, conversation, tool_turn_messages):
        profile.force_compaction()
        prepared = await profile.prepare(conversation)
        memory_id = placeholder_id(prepared.messages[2].content)
        recall_memory, _ = profile.tools()

        payload = json.loads(await recall_memory(memory_id, scope=ToolScope(conversation)))

        assert payload["messages_restored"] == 3
        assert conversation.messages() == tool_turn_messages

    @pytest.mark.asyncio
    async def test_expansion_defers_next_compaction(self, profile, conversation, summarizer, tool_turn_messages):
        profile.force_compaction()
        prepared = await profile.prepare(conversation)
        memory_id = placeholder_id(prepared.messages[2].content)
        await profile.call_tool("recall_memory", {"memory_id": memory_id}, scope=ToolScope(conversation))

        profile.force_compaction()
        skipped = await profile.prepare(conversation)

        assert skipped.mutated is False
        assert skipped.messages == tool_turn_messages
        assert summarizer.summarize.await_count == 1

        assert await profile.after_response(conversation) is False
        resumed = await profile.prepare(conversation)

        assert resumed.mutated is True
        assert summarizer.summarize.await_count == 2


# =============================================================================
# Facts extraction
# =============================================================================


class TestFactsExtraction:
    """Tests for the pre-compaction facts hook."""

    @pytest.mark.asyncio
    async def test_called_with_full_history(self, profile, conversation, tool_turn_messages):
        extractor = MagicMock()
        extractor.extract_facts = AsyncMock()
        profile.set_facts_extractor(extractor)
        profile.force_compaction()

        await profile.prepare(conversation)

        extractor.extract_facts.assert_awaited_once()
        assert extractor.extract_facts.await_args.args[0] == tool_turn_messages

    @pytest.mark.asyncio
    async def test_not_called_without_compaction(self, profile, conversation):
        extractor = MagicMock()
        extractor.extract_facts = AsyncMock()
        profile.set_facts_extractor(extractor)

        await profile.prepare(conversation)

        extractor.extract_facts.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_does_not_block_compaction(self, profile, conversation, caplog):
        extractor = MagicMock()
        extractor.extract_facts = AsyncMock(side_effect=RuntimeError("facts store offline"))
        profile.set_facts_extractor(extractor)
        profile.force_compaction()

        with caplog.at_level("WARNING", logger="mnemo.context.profile"):
            prepared = await profile.prepare(conversation)

        assert prepared.mutated is True
        assert "facts store offline" in caplog.text


# =============================================================================
# Compaction history
# =============================================================================


class TestCompactionHistory:
    """Tests for events, callbacks and persisted history."""

    @pytest.mark.asyncio
    async def test_callback_and_history(self, profile, conversation):
        received = []
        profile.set_compaction_callback(lambda kind, data: received.append((kind, data)))
        profile.force_compaction()

        await profile.prepare(conversation)

        assert [kind for kind, _ in received] == ["compaction_start", "compaction_complete"]
        assert "chars_before" in received[0][1]
        history = profile.get_compaction_history()
        assert history == [received[1][1]]
        assert profile.store.load_compaction_events() == history

    @pytest.mark.asyncio
    async def test_callback_errors_are_swallowed(self, profile, conversation):
        profile.set_compaction_callback(MagicMock(side_effect=RuntimeError("socket closed")))
        profile.force_compaction()

        prepared = await profile.prepare(conversation)

        assert prepared.mutated is True
        assert len(profile.get_compaction_history()) == 1

    def test_history_loaded_at_startup(self, settings, summarizer, store_path):
        base = datetime(2024, 6, 1, tzinfo=timezone.utc)
        with MemoryStore(store_path) as seeded:
            for i in range(60):
                seeded.save_compaction_event(
                    CompactionEvent(base + timedelta(seconds=i), 100 + i, 50, 1, 1, 1)
                )

        profile = MemoryProfile(ProfileDependencies(summarizer=summarizer, settings=settings))
        try:
            history = profile.get_compaction_history()
        finally:
            profile.close()

        assert len(history) == 50
        assert history[0].chars_before == 110
        assert history[-1].chars_before == 159

    @pytest.mark.asyncio
    async def test_memory_summary(self, profile, conversation):
        profile.force_compaction()
        await profile.prepare(conversation)

        summary = profile.memory_summary()

        assert summary.total == 1
        assert summary.pinned == 0
        assert summary.entries[0].summary == "Assistant inspected files and fixed the failing test."


# =============================================================================
# Reconfiguration
# =============================================================================


class TestReconfiguration:
    """Tests for reload_config() and update_provider_model()."""

    def test_reload_applies_settings(self, profile, store_path):
        profile.reload_config(MnemoSettings(
            provider="mock",
            model="mock-model",
            compaction=CompactionSettings(
                memory_store_path=store_path,
                conversation_percent=0.5,
                protect_recent=4,
                summary_prompt="Be terse.",
                provider_summary_models={"mock": "custom-summary"},
            ),
        ))

        params = profile.compaction_params()
        assert params.conversation_threshold == int(32_768 * 3 * 0.5)
        assert params.protected_recent == 4
        assert params.summary_prompt == "Be terse."
        assert params.summary_model == "custom-summary"

    def test_reload_rejects_store_path_change(self, profile, tmp_path):
        before = profile.compaction_params()

        with pytest.raises(ConfigurationError, match="requires restart"):
            profile.reload_config(MnemoSettings(
                compaction=CompactionSettings(memory_store_path=tmp_path / "other.db", protect_recent=9),
            ))
        assert profile.compaction_params() == before

    def test_reload_rejects_non_positive_percent(self, profile, store_path):
        invalid = CompactionSettings.model_construct(
            memory_store_path=store_path,
            message_percent=0.0,
            conversation_percent=0.5,
        )
        with pytest.raises(ConfigurationError, match="invalid compaction thresholds"):
            profile.reload_config(MnemoSettings(compaction=invalid))

    @pytest.mark.asyncio
    async def test_reload_clears_skip(self, profile, conversation, settings):
        profile.force_compaction()
        prepared = await profile.prepare(conversation)
        memory_id = placeholder_id(prepared.messages[2].content)
        await profile.call_tool("recall_memory", {"memory_id": memory_id}, scope=ToolScope(conversation))

        profile.reload_config(settings)
        profile.force_compaction()

        assert (await profile.prepare(conversation)).mutated is True

    def test_update_provider_model(self, profile):
        profile.update_provider_model("ZAI", "glm-4.6")

        params = profile.compaction_params()
        assert params.conversation_threshold == int(200_000 * 3 * 0.80)
        assert params.message_threshold == int(200_000 * 3 * 0.02)
        assert params.summary_model == "glm-4.5-air"


# =============================================================================
# call_tool
# =============================================================================


class TestCallTool:
    """Tests for MemoryProfile.call_tool()."""

    @pytest.mark.asyncio
    async def test_not_found(self, profile):
        payload = json.loads(await profile.call_tool("recall_memory", {"memory_id": "mem-nope"}))
        assert payload["status"] == "error"
        assert payload["error_code"] == "MEMORY_NOT_FOUND"
        assert "mem-nope" in payload["error"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("arguments", [{}, {"memory_id": ""}])
    async def test_invalid_arguments(self, profile, arguments):
        payload = json.loads(await profile.call_tool("pin_memory", arguments))
        assert payload["error_code"] == "INVALID_ARGUMENTS"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, profile):
        payload = json.loads(await profile.call_tool("forget_memory", {"memory_id": "x"}))
        assert payload["error_code"] == "UNKNOWN_TOOL"

    @pytest.mark.asyncio
    async def test_pin_limit(self, profile):
        for i in range(6):
            profile.store.put(MemoryEntry(id=f"mem-{i}", summary="s"))
        for i in range(5):
            ok = json.loads(await profile.call_tool("pin_memory", {"memory_id": f"mem-{i}"}))
            assert ok["pinned"] is True

        payload = json.loads(await profile.call_tool("pin_memory", {"memory_id": "mem-5", "pin": True}))

        assert payload["error_code"] == "PIN_LIMIT_EXCEEDED"
        assert profile.store.pinned_count() == 5
