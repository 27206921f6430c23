"""Tests for turn segmentation.

Test Categories:
    - TestIdentifyTurns: boundary rules over typical and odd sequences
    - TestTurnBoundary: dataclass helpers
"""

import pytest

from mnemo.context.segmenter import TurnBoundary, identify_turns
from mnemo.state.conversation import Message

from tests.conftest import assistant, system, tool_call, tool_result, user


class TestIdentifyTurns:
    """Tests for identify_turns()."""

    def test_tool_turn_is_one_unit(self):
        """Assistant tool call, tool result and final reply form one turn."""
        messages = [
            system(),
            user("hi"),
            assistant(tool_calls=[tool_call()]),
            tool_result("ok"),
            assistant("done"),
        ]
        assert [t.as_tuple() for t in identify_turns(messages)] == [(2, 4)]

    def test_empty_sequence(self):
        assert identify_turns([]) == []

    def test_multiple_turns(self):
        messages = [
            user("a"),
            assistant("reply a"),
            user("b"),
            assistant(tool_calls=[tool_call()]),
            tool_result("result"),
            assistant("reply b"),
        ]
        assert [t.as_tuple() for t in identify_turns(messages)] == [(1, 1), (3, 5)]

    def test_user_closes_open_turn(self):
        """A turn interrupted by a user message ends at the previous index."""
        messages = [
            user("a"),
            assistant(tool_calls=[tool_call()]),
            tool_result("partial"),
            user("stop"),
            assistant("stopped"),
        ]
        assert [t.as_tuple() for t in identify_turns(messages)] == [(1, 2), (4, 4)]

    def test_open_turn_closes_at_end(self):
        messages = [user("a"), assistant(tool_calls=[tool_call()]), tool_result("r")]
        assert [t.as_tuple() for t in identify_turns(messages)] == [(1, 2)]

    def test_orphaned_tool_opens_turn(self):
        messages = [tool_result("orphan"), assistant("after")]
        assert [t.as_tuple() for t in identify_turns(messages)] == [(0, 1)]

    def test_roles_are_case_insensitive(self):
        messages = [
            Message(role="USER", content="a"),
            Message(role="Assistant", content="b"),
            Message(role="System", content="c"),
        ]
        assert [t.as_tuple() for t in identify_turns(messages)] == [(1, 1)]

    def test_unknown_roles_are_ignored(self):
        """Other roles neither open nor close a turn."""
        messages = [
            user("a"),
            Message(role="developer", content="note"),
            assistant(tool_calls=[tool_call()]),
            Message(role="developer", content="note"),
            assistant("done"),
        ]
        assert [t.as_tuple() for t in identify_turns(messages)] == [(2, 4)]

    def test_deterministic(self, tool_turn_messages):
        assert identify_turns(tool_turn_messages) == identify_turns(tool_turn_messages)

    def test_turns_do_not_overlap(self, tool_turn_messages):
        turns = identify_turns(tool_turn_messages)
        for earlier, later in zip(turns, turns[1:]):
            assert earlier.end < later.start


class TestTurnBoundary:
    """Tests for the TurnBoundary dataclass."""

    def test_len_is_inclusive(self):
        assert len(TurnBoundary(2, 4)) == 3

    def test_frozen(self):
        boundary = TurnBoundary(0, 1)
        with pytest.raises(AttributeError):
            boundary.start = 5
