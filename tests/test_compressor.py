"""Tests for history compression."""

import asyncio

import pytest

from cairn.compressor import HistoryCompressor, find_split_point
from cairn.events import ToolCallRequest
from cairn.history import SUMMARY_PREFIX, HistoryItem, estimate_tokens
from cairn.report import AuthenticationError


class FakeChannel:
    def __init__(self, summary="The user asked about files; the model read them.", exc=None):
        self.summary = summary
        self.exc = exc
        self.calls = []

    async def summarize(self, text):
        self.calls.append(text)
        if self.exc is not None:
            raise self.exc
        return self.summary


def _long_history(n=20):
    history = [HistoryItem(role="system", content="You are a helpful agent.")]
    for i in range(n):
        role = "user" if i % 2 == 0 else "model"
        history.append(
            HistoryItem(role=role, content=f"message {i} " + "lorem ipsum dolor " * 15)
        )
    return history


def _compress(compressor, history, limit=1000, force=False):
    return asyncio.run(
        compressor.maybe_compress(history, estimate_tokens(history), limit, force)
    )


class TestThreshold:
    def test_below_threshold_untouched(self):
        channel = FakeChannel()
        history = _long_history(2)
        new, snapshot = _compress(HistoryCompressor(channel), history)
        assert new is history
        assert snapshot is None
        assert channel.calls == []

    def test_no_limit_never_compresses(self):
        assert HistoryCompressor(FakeChannel()).should_compress(10**9, None) is False

    def test_threshold_is_strict(self):
        compressor = HistoryCompressor(FakeChannel(), threshold=0.5)
        assert compressor.should_compress(500, 1000) is False
        assert compressor.should_compress(501, 1000) is True

    @pytest.mark.parametrize("kwargs", [{"threshold": 0}, {"preserve_fraction": 1}])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            HistoryCompressor(FakeChannel(), **kwargs)


class TestCompression:
    def test_prefix_replaced_by_summary(self):
        channel = FakeChannel()
        history = _long_history()
        before = estimate_tokens(history)
        assert before > 700

        new, snapshot = _compress(HistoryCompressor(channel), history)

        assert snapshot is not None
        assert new[0].role == "system"
        assert new[1].synthetic
        assert new[1].content.startswith(SUMMARY_PREFIX)
        assert channel.summary in new[1].content
        assert snapshot.original_token_count == before
        assert snapshot.new_token_count == estimate_tokens(new)
        assert snapshot.new_token_count < before
        # Tail kept verbatim
        tail = history[snapshot.retained_tail_start_index:]
        assert new[2:] == tail
        assert len(tail) >= 1

    def test_input_list_not_mutated(self):
        history = _long_history()
        copy = list(history)
        _compress(HistoryCompressor(FakeChannel()), history)
        assert history == copy

    def test_transcript_sent_to_model(self):
        channel = FakeChannel()
        _compress(HistoryCompressor(channel), _long_history())
        [transcript] = channel.calls
        assert "USER: message 0" in transcript
        assert "SYSTEM:" not in transcript

    def test_second_call_is_noop(self):
        channel = FakeChannel()
        compressor = HistoryCompressor(channel)
        new, snapshot = _compress(compressor, _long_history())
        assert snapshot is not None
        again, snapshot2 = asyncio.run(
            compressor.maybe_compress(new, snapshot.new_token_count, 1000, force=True)
        )
        assert again is new
        assert snapshot2 is None
        assert len(channel.calls) == 1

    def test_force_ignores_threshold(self):
        channel = FakeChannel(summary="short")
        new, snapshot = _compress(
            HistoryCompressor(channel), _long_history(6), limit=10**6, force=True
        )
        assert snapshot is not None
        assert len(new) < 7

    def test_too_few_items_to_compress(self):
        history = [
            HistoryItem(role="system", content="sys"),
            HistoryItem(role="user", content="only question " * 200),
        ]
        new, snapshot = _compress(HistoryCompressor(FakeChannel()), history, limit=100)
        assert new is history
        assert snapshot is None

    def test_synthetic_only_prefix_skipped(self):
        channel = FakeChannel()
        history = [HistoryItem(role="system", content="sys")]
        history += [
            HistoryItem(role="user", content=f"{SUMMARY_PREFIX}\n" + "x " * 300, synthetic=True)
            for _ in range(3)
        ]
        history.append(HistoryItem(role="user", content="current " * 10))
        new, snapshot = _compress(HistoryCompressor(channel), history, limit=100)
        assert snapshot is None
        assert channel.calls == []


class TestFailures:
    def test_model_error_leaves_history_unchanged(self):
        history = _long_history()
        new, snapshot = _compress(
            HistoryCompressor(FakeChannel(exc=RuntimeError("server down"))), history
        )
        assert new is history
        assert snapshot is None

    def test_empty_summary_rejected(self):
        history = _long_history()
        new, snapshot = _compress(HistoryCompressor(FakeChannel(summary="  ")), history)
        assert new is history
        assert snapshot is None

    def test_summary_that_does_not_shrink_rejected(self):
        history = _long_history()
        huge = "very long summary " * 2000
        new, snapshot = _compress(HistoryCompressor(FakeChannel(summary=huge)), history)
        assert new is history
        assert snapshot is None

    def test_failure_can_be_retried(self):
        channel = FakeChannel(exc=RuntimeError("flaky"))
        compressor = HistoryCompressor(channel)
        history = _long_history()
        _compress(compressor, history)
        channel.exc = None
        _, snapshot = _compress(compressor, history)
        assert snapshot is not None

    def test_authentication_error_propagates(self):
        channel = FakeChannel(exc=AuthenticationError("bad key"))
        with pytest.raises(AuthenticationError):
            _compress(HistoryCompressor(channel), _long_history())


class TestSplitPoint:
    def test_tail_never_starts_on_tool_result(self):
        req = ToolCallRequest(id="t1", name="read_file", arguments={"path": "a"})
        history = [
            HistoryItem(role="system", content="sys"),
            HistoryItem(role="user", content="question " * 50),
            HistoryItem(role="model", content="", tool_requests=[req]),
            HistoryItem(role="tool", content="data " * 30, call_id="t1", name="read_file"),
            HistoryItem(role="model", content="answer"),
        ]
        for fraction in (0.05, 0.2, 0.4, 0.6, 0.9):
            split = find_split_point(history, 1, fraction)
            assert 1 <= split <= len(history)
            if split < len(history):
                assert history[split].role != "tool"

    def test_tail_holds_preserve_fraction(self):
        history = _long_history()
        split = find_split_point(history, 1, 0.3)
        tail = estimate_tokens(history[split:])
        assert tail >= 0.3 * estimate_tokens(history[1:]) - 1

    def test_multi_call_turn_kept_whole(self):
        reqs = [
            ToolCallRequest(id="t1", name="read_file", arguments={"path": "a"}),
            ToolCallRequest(id="t2", name="read_file", arguments={"path": "b"}),
        ]
        history = [
            HistoryItem(role="system", content="sys"),
            HistoryItem(role="user", content="question " * 40),
            HistoryItem(role="model", content="", tool_requests=reqs),
            HistoryItem(role="tool", content="alpha " * 30, call_id="t1", name="read_file"),
            HistoryItem(role="tool", content="beta " * 30, call_id="t2", name="read_file"),
            HistoryItem(role="model", content="done"),
        ]
        for fraction in (0.1, 0.3, 0.5, 0.7):
            split = find_split_point(history, 1, fraction)
            assert split not in (3, 4)
