"""Tests for the universal conversation history."""

import pytest

from multi_llm_agent.history import ConversationHistory, validate_history_entry
from multi_llm_agent.providers.base import ToolCallRequest


def test_append_sequence_and_copy_semantics():
    """履歴は検証付きで追加され、取得時はコピーが返される"""
    history = ConversationHistory(system_prompt="Be brief.")
    history.append_user("time?")
    history.append_assistant("", [ToolCallRequest(id="c1", name="get_time", arguments={})])
    history.append_tool_result("c1", "get_time", "14:32")
    history.append_assistant("It is 14:32.")

    entries = history.entries()
    assert [e["role"] for e in entries] == ["system", "user", "assistant", "tool", "assistant"]
    assert entries[2]["content"] == [
        {"type": "tool_call", "tool_call_id": "c1", "name": "get_time", "arguments": {}}
    ]
    assert entries[3]["content"][0]["is_error"] is False

    entries[1]["content"] = "mutated"
    assert history.entries()[1]["content"] == "time?"
    assert len(history) == 5


def test_reset_keeps_system_prompt():
    history = ConversationHistory(system_prompt="sys")
    history.append_user("hi")
    history.reset()
    history.reset()
    assert history.entries() == [{"role": "system", "content": "sys"}]

    empty = ConversationHistory()
    empty.reset()
    assert empty.entries() == []


@pytest.mark.parametrize(
    "entry",
    [
        {"role": "gemini", "content": "legacy role"},
        {"role": "user"},
        {"role": "user", "content": ["not", "text"]},
        {"role": "assistant", "content": [{"type": "tool_call", "name": "x"}]},
        {"role": "tool", "content": [{"type": "text", "content": "x"}]},
        {"role": "tool", "content": []},
        {
            "role": "tool",
            "content": [
                {"type": "tool_result", "tool_call_id": "a", "content": "1"},
                {"type": "tool_result", "tool_call_id": "b", "content": "2"},
            ],
        },
    ],
)
def test_invalid_entries_are_rejected(entry):
    """不正な履歴エントリはValueErrorとなる"""
    with pytest.raises(ValueError):
        validate_history_entry(entry)
