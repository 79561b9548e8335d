"""Tests for provider resolution, error mapping and the LiteLLM channel."""

import asyncio
import types

import litellm
import pytest

from cairn.cancel import CancellationToken
from cairn.events import Content, Finished, Thought, ToolCallRequest
from cairn.history import HistoryItem
from cairn.model import (
    LiteLLMChannel,
    map_llm_error,
    parse_tool_call,
    resolve_provider,
)
from cairn.report import (
    AgentError,
    AuthenticationError,
    ConfigError,
    ContextOverflowError,
    QuotaError,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _chunk(content=None, reasoning=None, tool_calls=None, finish_reason=None):
    delta = types.SimpleNamespace(
        content=content, reasoning_content=reasoning, tool_calls=tool_calls
    )
    return types.SimpleNamespace(
        choices=[types.SimpleNamespace(delta=delta, finish_reason=finish_reason)]
    )


def _tc(index, id=None, name=None, arguments=None):
    return types.SimpleNamespace(
        index=index,
        id=id,
        function=types.SimpleNamespace(name=name, arguments=arguments),
    )


def _fake_stream(monkeypatch, chunks, captured=None):
    async def gen():
        for chunk in chunks:
            yield chunk

    async def fake_acompletion(**kwargs):
        if captured is not None:
            captured.append(kwargs)
        return gen()

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)


def _collect(channel, history=None, new_input="hi", token=None, **kwargs):
    async def go():
        return [
            e
            async for e in channel.stream_turn(
                history or [], new_input, token or CancellationToken(), **kwargs
            )
        ]

    return asyncio.run(go())


# ---------------------------------------------------------------------------
# resolve_provider
# ---------------------------------------------------------------------------


class TestResolveProvider:
    def test_lmstudio_defaults(self):
        r = resolve_provider("lmstudio", "qwen", None, None)
        assert r == {
            "model_id": "qwen",
            "api_base": "http://127.0.0.1:1234/v1",
            "api_key": "lm-studio",
        }

    def test_lmstudio_custom_url(self):
        r = resolve_provider("lmstudio", "qwen", None, "http://box:9000/")
        assert r["api_base"] == "http://box:9000/v1"

    def test_model_required(self):
        with pytest.raises(ConfigError, match="--model is required"):
            resolve_provider("lmstudio", None, None, None)

    def test_unknown_provider(self):
        with pytest.raises(ConfigError, match="unknown provider"):
            resolve_provider("carrier-pigeon", "m", None, None)

    def test_openrouter_needs_key(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        with pytest.raises(ConfigError, match="OPENROUTER_API_KEY"):
            resolve_provider("openrouter", "m", None, None)

    def test_openrouter_key_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-env")
        assert resolve_provider("openrouter", "m", None, None)["api_key"] == "sk-env"

    def test_generic_needs_base_url(self):
        with pytest.raises(ConfigError, match="--base-url"):
            resolve_provider("generic", "m", None, None)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestMapLLMError:
    def test_authentication(self):
        e = litellm.AuthenticationError(
            message="bad key", llm_provider="openai", model="m"
        )
        assert isinstance(map_llm_error(e), AuthenticationError)

    def test_rate_limit(self):
        e = litellm.RateLimitError(message="slow down", llm_provider="openai", model="m")
        assert isinstance(map_llm_error(e), QuotaError)

    def test_typed_context_window(self):
        e = litellm.ContextWindowExceededError(
            message="context length exceeded", model="m", llm_provider="openai"
        )
        assert isinstance(map_llm_error(e), ContextOverflowError)

    def test_inferred_context_window(self):
        e = litellm.BadRequestError(
            message="maximum context length is 8192 tokens", model="m", llm_provider="openai"
        )
        assert isinstance(map_llm_error(e), ContextOverflowError)

    def test_inferred_quota(self):
        e = litellm.BadRequestError(
            message="insufficient credits on account", model="m", llm_provider="openrouter"
        )
        assert isinstance(map_llm_error(e), QuotaError)

    def test_other_bad_request(self):
        e = litellm.BadRequestError(
            message="invalid request format", model="m", llm_provider="openai"
        )
        mapped = map_llm_error(e)
        assert type(mapped) is AgentError
        assert "LLM call failed" in str(mapped)

    def test_agent_error_passes_through(self):
        e = QuotaError("already mapped")
        assert map_llm_error(e) is e


# ---------------------------------------------------------------------------
# Tool call parsing
# ---------------------------------------------------------------------------


class TestParseToolCall:
    def test_json_object(self):
        req = parse_tool_call("c1", "read_file", '{"file_path": "a"}')
        assert req == ToolCallRequest(id="c1", name="read_file", arguments={"file_path": "a"})

    def test_empty_arguments(self):
        assert parse_tool_call("c1", "list", "").arguments == {}

    def test_invalid_json_kept_raw(self):
        req = parse_tool_call("c1", "x", "{oops")
        assert req.arguments == {}
        assert req.raw_arguments == "{oops"

    def test_non_object_kept_raw(self):
        assert parse_tool_call("c1", "x", "[1, 2]").raw_arguments == "[1, 2]"

    def test_missing_id_generated(self):
        req = parse_tool_call(None, "x", "{}")
        assert req.id.startswith("call_")


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestStreamTurn:
    def test_text_and_thoughts(self, monkeypatch):
        _fake_stream(
            monkeypatch,
            [
                _chunk(reasoning="thinking"),
                _chunk(content="Hel"),
                _chunk(content="lo", finish_reason="stop"),
            ],
        )
        events = _collect(LiteLLMChannel("lmstudio", "m"))
        assert events == [Thought("thinking"), Content("Hel"), Content("lo"), Finished("stop")]

    def test_tool_call_deltas_assembled_in_index_order(self, monkeypatch):
        _fake_stream(
            monkeypatch,
            [
                _chunk(tool_calls=[_tc(1, id="b", name="grep", arguments='{"pattern"')]),
                _chunk(tool_calls=[_tc(0, id="a", name="read_file", arguments="{")]),
                _chunk(tool_calls=[_tc(0, arguments='"file_path": "x"}')]),
                _chunk(tool_calls=[_tc(1, arguments=': "y"}')], finish_reason="tool_calls"),
            ],
        )
        events = _collect(LiteLLMChannel("lmstudio", "m"))
        assert events == [
            ToolCallRequest(id="a", name="read_file", arguments={"file_path": "x"}),
            ToolCallRequest(id="b", name="grep", arguments={"pattern": "y"}),
            Finished("tool_calls"),
        ]

    def test_duplicate_ids_made_unique(self, monkeypatch):
        _fake_stream(
            monkeypatch,
            [
                _chunk(tool_calls=[_tc(0, id="same", name="ls", arguments="{}")]),
                _chunk(tool_calls=[_tc(1, id="same", name="ls", arguments="{}")]),
            ],
        )
        events = _collect(LiteLLMChannel("lmstudio", "m"))
        ids = [e.id for e in events if isinstance(e, ToolCallRequest)]
        assert len(ids) == 2
        assert len(set(ids)) == 2

    def test_request_kwargs(self, monkeypatch):
        captured = []
        _fake_stream(monkeypatch, [_chunk(content="ok")], captured)
        tools = [{"type": "function", "function": {"name": "x", "parameters": {}}}]
        channel = LiteLLMChannel(
            "lmstudio",
            "qwen",
            api_base="http://127.0.0.1:1234/v1",
            api_key="lm-studio",
            tools=tools,
            max_output_tokens=123,
            temperature=0.2,
        )
        history = [HistoryItem(role="system", content="sys")]
        _collect(channel, history, "question", model="other")
        [kwargs] = captured
        assert kwargs["model"] == "openai/other"
        assert kwargs["stream"] is True
        assert kwargs["max_tokens"] == 123
        assert kwargs["temperature"] == 0.2
        assert kwargs["tools"] == tools
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "question"},
        ]

    def test_no_tools_no_tool_choice(self, monkeypatch):
        captured = []
        _fake_stream(monkeypatch, [_chunk(content="ok")], captured)
        _collect(LiteLLMChannel("litellm", "anthropic/claude"))
        assert "tool_choice" not in captured[0]
        assert captured[0]["model"] == "anthropic/claude"

    def test_openrouter_prefix(self):
        channel = LiteLLMChannel("openrouter", "x")
        assert channel.model_string("meta/llama") == "openrouter/meta/llama"
        assert (
            channel.model_string("openrouter/openrouter/free") == "openrouter/openrouter/free"
        )

    def test_request_error_mapped(self, monkeypatch):
        async def fake_acompletion(**kwargs):
            raise litellm.RateLimitError(message="429", llm_provider="openai", model="m")

        monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
        with pytest.raises(QuotaError):
            _collect(LiteLLMChannel("lmstudio", "m"))

    def test_cancel_mid_stream_ends_silently(self, monkeypatch):
        async def gen():
            yield _chunk(content="partial")
            await asyncio.sleep(10)
            yield _chunk(content="never")

        async def fake_acompletion(**kwargs):
            return gen()

        monkeypatch.setattr(litellm, "acompletion", fake_acompletion)

        async def go():
            token = CancellationToken()
            events = []
            async for event in LiteLLMChannel("lmstudio", "m").stream_turn([], "hi", token):
                events.append(event)
                token.cancel()
            return events

        assert asyncio.run(go()) == [Content("partial")]


class TestSummarize:
    def test_summary_request(self, monkeypatch):
        captured = []

        async def fake_acompletion(**kwargs):
            captured.append(kwargs)
            message = types.SimpleNamespace(content="the summary")
            return types.SimpleNamespace(choices=[types.SimpleNamespace(message=message)])

        monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
        channel = LiteLLMChannel("lmstudio", "m", max_output_tokens=8192)
        assert asyncio.run(channel.summarize("USER: hi")) == "the summary"
        [kwargs] = captured
        assert kwargs["max_tokens"] == 4096
        assert "stream" not in kwargs
        assert kwargs["messages"][1] == {"role": "user", "content": "USER: hi"}

    def test_summary_auth_error(self, monkeypatch):
        async def fake_acompletion(**kwargs):
            raise litellm.AuthenticationError(
                message="nope", llm_provider="openai", model="m"
            )

        monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
        with pytest.raises(AuthenticationError):
            asyncio.run(LiteLLMChannel("lmstudio", "m").summarize("x"))
