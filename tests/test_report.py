"""Tests for the JSON report feature (--report)."""

import json
import sys

import pytest

from cairn import agent
from cairn.events import Content, Finished
from cairn.report import AgentError, AuthenticationError, ReportCollector


# ---------------------------------------------------------------------------
# ReportCollector unit tests
# ---------------------------------------------------------------------------


class TestReportCollector:
    def test_empty_report(self):
        rc = ReportCollector()
        r = rc.build_report(
            task="hello",
            model="m",
            provider="lmstudio",
            settings={},
            outcome="success",
            answer="done",
            exit_code=0,
            turns=0,
        )
        assert r["version"] == 1
        assert r["task"] == "hello"
        assert r["result"] == {"outcome": "success", "answer": "done", "exit_code": 0}
        assert r["stats"]["turns"] == 0
        assert r["stats"]["tool_calls_total"] == 0
        assert r["stats"]["llm_calls"] == 0
        assert r["timeline"] == []

    def test_llm_call_tracking(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 2.5, 1000, "tool_calls", model="m")
        rc.record_llm_call(2, 1.3, 1500, "stop")
        assert rc.llm_calls == 2
        assert rc.total_llm_time == pytest.approx(3.8)
        assert rc.max_turn_seen == 2
        assert rc.events[0]["outcome"] == "tool_calls"
        assert rc.events[0]["model"] == "m"
        assert rc.events[0]["is_retry"] is False
        assert "model" not in rc.events[1]

    def test_llm_call_retry(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 0.5, 5000, "quota")
        rc.record_llm_call(1, 1.0, 5000, "stop", is_retry=True, retry_reason="fallback")
        assert rc.events[1]["is_retry"] is True
        assert rc.events[1]["retry_reason"] == "fallback"
        assert "retry_reason" not in rc.events[0]

    def test_tool_call_states(self):
        rc = ReportCollector()
        rc.record_tool_call(1, "read_file", {"file_path": "a"}, "success", 0.1, 10)
        rc.record_tool_call(1, "read_file", {"file_path": "b"}, "error", 0.1, 20, error="error: x")
        rc.record_tool_call(1, "write_file", None, "cancelled", 0.0, 5, error="error: rejected")
        r = rc.build_report(
            task="t",
            model="m",
            provider="p",
            settings={},
            outcome="success",
            answer=None,
            exit_code=0,
            turns=1,
        )
        stats = r["stats"]
        assert stats["tool_calls_total"] == 3
        assert stats["tool_calls_succeeded"] == 1
        assert stats["tool_calls_failed"] == 1
        assert stats["tool_calls_cancelled"] == 1
        assert stats["tool_calls_by_name"]["read_file"] == {
            "succeeded": 1,
            "failed": 1,
            "cancelled": 0,
        }
        assert r["timeline"][1]["error"] == "error: x"
        assert "error" not in r["timeline"][0]

    def test_control_events(self):
        rc = ReportCollector()
        rc.record_compaction(2, 9000, 3000)
        rc.record_guardrail(3, "grep", "nudge")
        rc.record_fallback(3, "big", "small")
        rc.record_loop_detected(4, "grep was called 3 times in a row")
        assert (rc.compactions, rc.guardrail_interventions, rc.fallbacks, rc.loop_detections) == (
            1,
            1,
            1,
            1,
        )
        assert [e["type"] for e in rc.events] == [
            "compaction",
            "guardrail",
            "fallback",
            "loop_detected",
        ]
        assert rc.events[2] == {"turn": 3, "type": "fallback", "from": "big", "to": "small"}

    def test_error_message(self):
        rc = ReportCollector()
        r = rc.build_report(
            task="t",
            model="m",
            provider="p",
            settings={},
            outcome="error",
            answer=None,
            exit_code=1,
            turns=0,
            error_message="boom",
        )
        assert r["result"]["error_message"] == "boom"

    def test_write(self, tmp_path):
        rc = ReportCollector()
        path = tmp_path / "report.json"
        rc.write(str(path), {"version": 1})
        assert json.loads(path.read_text()) == {"version": 1}


# ---------------------------------------------------------------------------
# CLI integration
# ---------------------------------------------------------------------------


class FakeChannel:
    """Stands in for LiteLLMChannel inside main()."""

    script: list = []

    def __init__(self, *args, **kwargs):
        pass

    async def stream_turn(self, history, new_input, token, *, model=None):
        item = FakeChannel.script.pop(0)
        if isinstance(item, Exception):
            raise item
        for event in item:
            yield event

    async def summarize(self, text):
        return "summary"


@pytest.fixture
def cli(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setattr(agent, "LiteLLMChannel", FakeChannel)

    def run(*argv, script):
        FakeChannel.script = list(script)
        report = tmp_path / "report.json"
        monkeypatch.setattr(
            sys,
            "argv",
            [
                "cairn",
                "--model",
                "m",
                "--base-dir",
                str(tmp_path),
                "--report",
                str(report),
                "-q",
                "--no-history",
                *argv,
            ],
        )
        code = 0
        try:
            agent.main()
        except SystemExit as e:
            code = e.code
        return code, json.loads(report.read_text())

    return run


class TestCLIReport:
    def test_success(self, cli, capsys):
        code, report = cli("say hi", script=[[Content("hi"), Finished("stop")]])
        assert code == 0
        assert capsys.readouterr().out.strip() == "hi"
        assert report["result"]["outcome"] == "success"
        assert report["task"] == "say hi"
        assert report["model"] == "m"
        assert report["settings"]["approval_mode"] == "auto_approve_safe"

    def test_error_exit_code(self, cli):
        code, report = cli("q", script=[AgentError("server exploded")])
        assert code == 1
        assert report["result"]["outcome"] == "error"
        assert report["result"]["exit_code"] == 1

    def test_authentication_exit_code(self, cli):
        code, report = cli("q", script=[AuthenticationError("bad key")])
        assert code == 3
        assert report["result"]["outcome"] == "auth_error"
        assert "bad key" in report["result"]["error_message"]

    def test_report_incompatible_with_repl(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(
            sys, "argv", ["cairn", "--repl", "--report", str(tmp_path / "r.json")]
        )
        with pytest.raises(SystemExit) as exc:
            agent.main()
        assert exc.value.code == 2
