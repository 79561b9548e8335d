"""Tests for history items, token estimates, checkpoints and .cairn/HISTORY.md."""

import json
import re

import pytest

from cairn import fmt
from cairn.events import ToolCallRequest
from cairn.history import (
    MAX_HISTORY_SIZE,
    HistoryItem,
    append_history,
    estimate_tokens,
    group_into_turns,
    last_model_text,
    list_checkpoints,
    load_checkpoint,
    render_transcript,
    save_checkpoint,
    to_messages,
)
from cairn.report import AgentError


@pytest.fixture(autouse=True)
def _init_fmt():
    fmt.init(color=False, no_color=False)


def _tool_exchange():
    req = ToolCallRequest(id="t1", name="read_file", arguments={"file_path": "a.py"})
    return [
        HistoryItem(role="system", content="sys"),
        HistoryItem(role="user", content="read a.py"),
        HistoryItem(role="model", content="", tool_requests=[req]),
        HistoryItem(role="tool", content="1: print()", call_id="t1", name="read_file"),
        HistoryItem(role="model", content="It prints."),
    ]


# ---------------------------------------------------------------------------
# Items and messages
# ---------------------------------------------------------------------------


class TestHistoryItem:
    def test_unknown_role_rejected(self):
        with pytest.raises(ValueError):
            HistoryItem(role="assistant")

    def test_model_message_with_tool_calls(self):
        msg = _tool_exchange()[2].to_message()
        assert msg["role"] == "assistant"
        assert msg["content"] is None
        [call] = msg["tool_calls"]
        assert call["id"] == "t1"
        assert json.loads(call["function"]["arguments"]) == {"file_path": "a.py"}

    def test_raw_arguments_sent_verbatim(self):
        req = ToolCallRequest(id="t1", name="x", raw_arguments="{broken")
        msg = HistoryItem(role="model", tool_requests=[req]).to_message()
        assert msg["tool_calls"][0]["function"]["arguments"] == "{broken"

    def test_tool_and_error_messages(self):
        messages = to_messages(
            [
                HistoryItem(role="tool", content="ok", call_id="t1", name="x"),
                HistoryItem(role="error", content="boom"),
            ]
        )
        assert messages[0] == {"role": "tool", "tool_call_id": "t1", "content": "ok"}
        assert messages[1] == {"role": "user", "content": "[error] boom"}

    def test_dict_round_trip_keeps_flags(self):
        item = HistoryItem(
            role="tool", content="x", call_id="c", name="n", is_error=True, synthetic=True
        )
        assert HistoryItem.from_dict(item.to_dict()) == item


class TestTurnsAndTranscript:
    def test_tool_results_grouped_with_request(self):
        turns = group_into_turns(_tool_exchange())
        assert [len(t) for t in turns] == [1, 1, 2, 1]
        assert turns[2][1].role == "tool"

    def test_transcript(self):
        text = render_transcript(_tool_exchange()[1:])
        assert "USER: read a.py" in text
        assert 'ASSISTANT called read_file({"file_path": "a.py"})' in text
        assert "TOOL read_file result: 1: print()" in text
        assert "ASSISTANT: It prints." in text

    def test_last_model_text(self):
        assert last_model_text(_tool_exchange()) == "It prints."
        assert last_model_text(_tool_exchange()[:4]) is None

    def test_estimate_grows_with_content(self):
        short = [HistoryItem(role="user", content="hi")]
        long = [HistoryItem(role="user", content="hi " * 100)]
        assert 0 < estimate_tokens(short) < estimate_tokens(long)

    def test_estimate_counts_tool_schemas(self):
        items = [HistoryItem(role="user", content="hi")]
        tools = [{"type": "function", "function": {"name": "x", "parameters": {}}}]
        assert estimate_tokens(items, tools) > estimate_tokens(items)


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------


class TestCheckpoints:
    def test_save_and_load(self, tmp_path):
        history = _tool_exchange()
        path = save_checkpoint(str(tmp_path), "before-refactor", history, {"model": "m"})
        assert path == tmp_path / ".cairn" / "checkpoints" / "before-refactor.json"
        loaded, metadata = load_checkpoint(str(tmp_path), "before-refactor")
        assert loaded == history
        assert metadata == {"model": "m"}

    def test_overwrite(self, tmp_path):
        save_checkpoint(str(tmp_path), "t", _tool_exchange())
        save_checkpoint(str(tmp_path), "t", _tool_exchange()[:1])
        loaded, _ = load_checkpoint(str(tmp_path), "t")
        assert len(loaded) == 1

    @pytest.mark.parametrize("tag", ["", "../escape", "a/b", "with space"])
    def test_invalid_tag(self, tmp_path, tag):
        with pytest.raises(AgentError, match="invalid checkpoint tag"):
            save_checkpoint(str(tmp_path), tag, [])

    def test_missing(self, tmp_path):
        with pytest.raises(AgentError, match="no checkpoint named"):
            load_checkpoint(str(tmp_path), "ghost")

    def test_corrupt(self, tmp_path):
        path = tmp_path / ".cairn" / "checkpoints" / "bad.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        with pytest.raises(AgentError, match="unreadable"):
            load_checkpoint(str(tmp_path), "bad")

    def test_list(self, tmp_path):
        assert list_checkpoints(str(tmp_path)) == []
        save_checkpoint(str(tmp_path), "one", _tool_exchange())
        save_checkpoint(str(tmp_path), "two", _tool_exchange()[:2])
        listed = {c["tag"]: c["items"] for c in list_checkpoints(str(tmp_path))}
        assert listed == {"one": 5, "two": 2}


# ---------------------------------------------------------------------------
# Answer log
# ---------------------------------------------------------------------------


class TestAppendHistory:
    def test_append_creates_file(self, tmp_path):
        append_history(str(tmp_path), "What is 2+2?", "4")
        content = (tmp_path / ".cairn" / "HISTORY.md").read_text(encoding="utf-8")
        assert "What is 2+2?" in content
        assert content.startswith("---\n\n")
        assert re.search(r"\*\*\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\*\*", content)

    def test_entries_in_order(self, tmp_path):
        for i in range(3):
            append_history(str(tmp_path), f"Q{i}", f"A{i}")
        content = (tmp_path / ".cairn" / "HISTORY.md").read_text(encoding="utf-8")
        assert content.count("---") == 3
        assert content.index("A0") < content.index("A1") < content.index("A2")

    def test_long_question_truncated(self, tmp_path):
        append_history(str(tmp_path), "x" * 250, "answer")
        content = (tmp_path / ".cairn" / "HISTORY.md").read_text(encoding="utf-8")
        assert "x" * 200 + "..." in content
        assert "x" * 201 not in content

    def test_blank_answer_skipped(self, tmp_path):
        append_history(str(tmp_path), "q", "   ")
        assert not (tmp_path / ".cairn" / "HISTORY.md").exists()

    def test_size_cap(self, tmp_path):
        path = tmp_path / ".cairn" / "HISTORY.md"
        path.parent.mkdir()
        path.write_text("x" * MAX_HISTORY_SIZE)
        append_history(str(tmp_path), "q", "a")
        assert path.stat().st_size == MAX_HISTORY_SIZE
