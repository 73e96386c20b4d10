"""Tests for agent.history -- MessageHistory linkage rules."""

import pytest

from agent.history import HistoryError, MessageHistory, Role, ToolCall, Turn


def _history_with_calls(*ids):
    history = MessageHistory("sys")
    history.add_user("task")
    history.add_assistant("", tool_calls=[ToolCall(id=i, name="t") for i in ids])
    return history


class TestMessageHistory:
    def test_starts_with_system_turn(self):
        history = MessageHistory("be helpful")
        assert len(history) == 1
        assert history[0].role is Role.SYSTEM
        assert history.system_turn.content == "be helpful"

    def test_turns_returns_a_copy(self):
        history = MessageHistory("sys")
        history.turns.append(Turn(role=Role.USER, content="sneaky"))
        assert len(history) == 1

    def test_result_must_answer_pending_call(self):
        history = _history_with_calls("c1")
        with pytest.raises(HistoryError):
            history.add_tool_result("nope", "x")

    def test_result_cannot_answer_twice(self):
        history = _history_with_calls("c1")
        history.add_tool_result("c1", "first")
        with pytest.raises(HistoryError):
            history.add_tool_result("c1", "second")

    def test_pending_ids_follow_request_order(self):
        history = _history_with_calls("c1", "c2", "c3")
        history.add_tool_result("c2", "done")
        assert history.pending_call_ids() == ["c1", "c3"]

    def test_duplicate_ids_in_one_turn_rejected(self):
        history = MessageHistory("sys")
        with pytest.raises(HistoryError):
            history.add_assistant(tool_calls=[ToolCall("d", "t"), ToolCall("d", "t")])

    def test_reused_id_across_turns_rejected(self):
        history = _history_with_calls("c1")
        history.add_tool_result("c1", "ok")
        with pytest.raises(HistoryError):
            history.add_assistant(tool_calls=[ToolCall("c1", "t")])

    def test_tool_result_records_name(self):
        history = _history_with_calls("c1")
        turn = history.add_tool_result("c1", "ok", name="bash")
        assert turn.role is Role.TOOL
        assert turn.tool_call_id == "c1"
        assert turn.name == "bash"

    def test_replace_requires_original_system_turn(self):
        history = _history_with_calls("c1")
        with pytest.raises(HistoryError):
            history.replace([Turn(role=Role.SYSTEM, content="sys")])
        history.replace([history.system_turn])
        assert len(history) == 1

    def test_user_turns(self):
        history = MessageHistory("sys")
        history.add_user("one")
        history.add_assistant("reply")
        history.add_user("two")
        assert [t.content for t in history.user_turns()] == ["one", "two"]

    def test_to_dicts_includes_tool_fields(self):
        history = _history_with_calls("c1")
        history.add_tool_result("c1", "out", name="t")
        dicts = history.to_dicts()
        assert dicts[2]["tool_calls"] == [{"id": "c1", "name": "t", "arguments": {}}]
        assert dicts[3] == {"role": "tool", "content": "out", "tool_call_id": "c1", "name": "t"}

    def test_char_count_includes_reasoning_and_calls(self):
        plain = Turn(role=Role.ASSISTANT, content="abcd")
        rich = Turn(role=Role.ASSISTANT, content="abcd", reasoning="xyz",
                    tool_calls=[ToolCall("c", "t", {"k": "v"})])
        assert plain.char_count() == 4
        assert rich.char_count() > plain.char_count() + 3
