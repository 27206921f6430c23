"""Shared pytest fixtures for mnemo tests.

This module provides common fixtures used across all test modules:
- Temporary memory stores
- Mock summarizers that never call an LLM
- Message builders for typical agent conversations
- Settings isolated from the developer's environment
"""

from __future__ import annotations

from pathlib import Path
from typing import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest

from mnemo.config.settings import CompactionSettings, MnemoSettings, clear_settings_cache
from mnemo.memory.store import MemoryStore
from mnemo.state.conversation import FunctionCall, Message, ToolCall


# -----------------------------------------------------------------------------
# Isolation
# -----------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch, tmp_path):
    """Keep MNEMO_ environment variables and .env files out of tests."""
    import os

    for key in list(os.environ):
        if key.startswith("MNEMO_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    yield
    clear_settings_cache()


# -----------------------------------------------------------------------------
# Store Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def store_path(tmp_path) -> Path:
    return tmp_path / "memory" / "memory.db"


@pytest.fixture
def store(store_path) -> Generator[MemoryStore, None, None]:
    """Provide an open MemoryStore on a temporary file."""
    memory_store = MemoryStore(store_path)
    yield memory_store
    memory_store.close()


# -----------------------------------------------------------------------------
# Summarizer Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def summarizer() -> MagicMock:
    """Summarizer whose summarize() coroutine returns a fixed summary."""
    mock = MagicMock()
    mock.summarize = AsyncMock(return_value="Assistant inspected files and fixed the failing test.")
    return mock


@pytest.fixture
def settings(store_path) -> MnemoSettings:
    """Settings for the mock provider with the store under tmp_path."""
    return MnemoSettings(
        provider="mock",
        model="mock-model",
        compaction=CompactionSettings(memory_store_path=store_path),
    )


# -----------------------------------------------------------------------------
# Message Builders
# -----------------------------------------------------------------------------


def tool_call(call_id: str = "call_1", name: str = "read_file", arguments: str = '{"path": "main.py"}') -> ToolCall:
    return ToolCall(id=call_id, function=FunctionCall(name=name, arguments=arguments))


def system(content: str = "You are a coding agent.") -> Message:
    return Message(role="system", content=content)


def user(content: str) -> Message:
    return Message(role="user", content=content)


def assistant(content: str = "", tool_calls: list[ToolCall] | None = None, thinking: str = "") -> Message:
    return Message(role="assistant", content=content, tool_calls=tool_calls or [], thinking=thinking)


def tool_result(content: str, call_id: str = "call_1", name: str = "read_file") -> Message:
    return Message(role="tool", content=content, tool_call_id=call_id, name=name)


@pytest.fixture
def tool_turn_messages() -> list[Message]:
    """[system, user, assistant(tool call), tool, assistant, user, assistant]."""
    return [
        system(),
        user("Fix the failing test in main.py"),
        assistant("Let me look at the file.", tool_calls=[tool_call()], thinking="Need to read it first."),
        tool_result("def main():\n    return 1\n"),
        assistant("The function returned the wrong value; fixed."),
        user("Thanks, now run the linter"),
        assistant("Linter passes."),
    ]
