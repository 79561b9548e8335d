"""Model channel: streamed turns and summaries through LiteLLM."""

import json
import logging
import os
import re
import uuid
from typing import AsyncIterator, Protocol

from . import fmt
from .cancel import CancellationToken, until_cancelled
from .events import Content, Finished, Thought, ToolCallRequest
from .history import HistoryItem, to_messages
from .report import (
    AgentError,
    AuthenticationError,
    CancellationError,
    ConfigError,
    ContextOverflowError,
    QuotaError,
)

logger = logging.getLogger(__name__)

PROVIDERS = ("lmstudio", "openrouter", "generic", "litellm")

SUMMARY_SYSTEM_PROMPT = (
    "You compress the early part of a coding-assistant conversation so the "
    "session can continue in a smaller context window. Write a structured "
    "snapshot with these sections:\n"
    "1. Goal: what the user is trying to achieve.\n"
    "2. Key facts: files, commands, names and decisions discovered so far.\n"
    "3. Progress: what has been done, including file changes.\n"
    "4. Open items: what remains, errors still unresolved.\n"
    "Be terse. Do not invent anything that is not in the transcript."
)

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)

_QUOTA_RE = re.compile(
    r"quota|rate.?limit|too many requests|resource.?exhausted|insufficient.?credits",
    re.IGNORECASE,
)


class ModelChannel(Protocol):
    def stream_turn(
        self,
        history: list[HistoryItem],
        new_input: str,
        token: CancellationToken,
        *,
        model: str | None = None,
    ) -> AsyncIterator: ...

    async def summarize(self, text: str) -> str: ...


def resolve_provider(
    provider: str,
    model: str | None,
    api_key: str | None,
    base_url: str | None,
) -> dict:
    """Validate provider settings. Returns {model_id, api_base, api_key}."""
    if provider not in PROVIDERS:
        raise ConfigError(
            f"unknown provider {provider!r}, expected one of: {', '.join(PROVIDERS)}"
        )
    if not model:
        raise ConfigError(f"--model is required for provider {provider!r}")

    if provider == "lmstudio":
        return {
            "model_id": model,
            "api_base": f"{(base_url or 'http://127.0.0.1:1234').rstrip('/')}/v1",
            "api_key": "lm-studio",
        }
    if provider == "openrouter":
        key = api_key or os.environ.get("OPENROUTER_API_KEY")
        if not key:
            raise ConfigError(
                "--api-key or OPENROUTER_API_KEY env var required for openrouter provider"
            )
        return {"model_id": model, "api_base": base_url, "api_key": key}
    if provider == "generic":
        if not base_url:
            raise ConfigError("--base-url is required for the generic provider")
        return {
            "model_id": model,
            "api_base": base_url,
            "api_key": api_key or os.environ.get("OPENAI_API_KEY") or "none",
        }
    # litellm: pass the model string through, credentials come from env
    return {"model_id": model, "api_base": base_url, "api_key": api_key}


def map_llm_error(e: Exception) -> AgentError:
    """Translate a LiteLLM exception into the agent's error taxonomy."""
    import litellm

    if isinstance(e, AgentError):
        return e
    if isinstance(e, litellm.AuthenticationError):
        return AuthenticationError(f"authentication failed: {e}")
    if isinstance(e, litellm.RateLimitError):
        return QuotaError(f"rate limit or quota exceeded: {e}")
    if isinstance(e, litellm.ContextWindowExceededError):
        return ContextOverflowError("context window exceeded (typed)")
    msg_text = str(e)
    if isinstance(e, litellm.BadRequestError):
        if _CONTEXT_OVERFLOW_RE.search(msg_text):
            return ContextOverflowError(f"context window exceeded (inferred): {e}")
        if _QUOTA_RE.search(msg_text):
            return QuotaError(f"quota exceeded (inferred): {e}")
    return AgentError(f"LLM call failed: {e}")


def parse_tool_call(call_id: str | None, name: str, raw_args: str) -> ToolCallRequest:
    call_id = call_id or f"call_{uuid.uuid4().hex[:12]}"
    raw_args = raw_args or "{}"
    try:
        parsed = json.loads(raw_args)
    except json.JSONDecodeError:
        return ToolCallRequest(id=call_id, name=name, raw_arguments=raw_args)
    if not isinstance(parsed, dict):
        return ToolCallRequest(id=call_id, name=name, raw_arguments=raw_args)
    return ToolCallRequest(id=call_id, name=name, arguments=parsed)


class LiteLLMChannel:
    """Streams one turn at a time through ``litellm.acompletion``.

    Text and reasoning deltas are yielded as they arrive. Tool-call deltas
    are accumulated per index and yielded, in index order, once the stream
    ends, followed by ``Finished``.
    """

    def __init__(
        self,
        provider: str,
        model_id: str,
        *,
        api_base: str | None = None,
        api_key: str | None = None,
        tools: list[dict] | None = None,
        max_output_tokens: int = 8192,
        temperature: float | None = None,
        verbose: bool = False,
    ):
        self.provider = provider
        self.model_id = model_id
        self.api_base = api_base
        self.api_key = api_key
        self.tools = tools or []
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.verbose = verbose

    def model_string(self, model_id: str) -> str:
        if self.provider in ("lmstudio", "generic"):
            return f"openai/{model_id}"
        if self.provider == "openrouter":
            # Only strip the prefix if the user already included the LiteLLM
            # "openrouter/" prefix. Don't strip org names like "openrouter/free".
            bare_id = (
                model_id[len("openrouter/") :]
                if model_id.startswith("openrouter/openrouter/")
                else model_id
            )
            return f"openrouter/{bare_id}"
        return model_id

    def _base_kwargs(self, model_id: str) -> dict:
        kwargs: dict = {"model": self.model_string(model_id)}
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        return kwargs

    def build_messages(self, history: list[HistoryItem], new_input: str) -> list[dict]:
        messages = to_messages(history)
        if new_input:
            messages.append({"role": "user", "content": new_input})
        return messages

    async def stream_turn(self, history, new_input, token, *, model=None):
        import litellm

        litellm.suppress_debug_info = True
        model_id = model or self.model_id
        kwargs = self._base_kwargs(model_id)
        kwargs.update(
            messages=self.build_messages(history, new_input),
            max_tokens=self.max_output_tokens,
            stream=True,
        )
        if self.tools:
            kwargs["tools"] = self.tools
            kwargs["tool_choice"] = "auto"
        if self.verbose:
            fmt.model_info(
                f"Calling model {kwargs['model']} with max_tokens={self.max_output_tokens}"
            )

        try:
            response = await until_cancelled(litellm.acompletion(**kwargs), token)
        except CancellationError:
            return
        except Exception as e:
            raise map_llm_error(e) from e

        pending: dict[int, dict] = {}
        finish_reason = "stop"
        iterator = response.__aiter__()
        while True:
            try:
                chunk = await until_cancelled(iterator.__anext__(), token)
            except StopAsyncIteration:
                break
            except CancellationError:
                return
            except Exception as e:
                raise map_llm_error(e) from e

            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            reasoning = getattr(delta, "reasoning_content", None)
            if reasoning:
                yield Thought(reasoning)
            if getattr(delta, "content", None):
                yield Content(delta.content)
            for tc in getattr(delta, "tool_calls", None) or []:
                index = getattr(tc, "index", None)
                if index is None:
                    index = len(pending)
                slot = pending.setdefault(index, {"id": None, "name": "", "arguments": ""})
                if getattr(tc, "id", None):
                    slot["id"] = tc.id
                fn = getattr(tc, "function", None)
                if fn is not None:
                    if getattr(fn, "name", None):
                        slot["name"] += fn.name
                    if getattr(fn, "arguments", None):
                        slot["arguments"] += fn.arguments
            if choice.finish_reason:
                finish_reason = choice.finish_reason

        seen: set[str] = set()
        for index in sorted(pending):
            slot = pending[index]
            request = parse_tool_call(slot["id"], slot["name"], slot["arguments"])
            if request.id in seen:
                logger.debug("duplicate tool call id %s, assigning a new one", request.id)
                request = parse_tool_call(None, slot["name"], slot["arguments"])
            seen.add(request.id)
            yield request
        yield Finished(finish_reason)

    async def summarize(self, text: str) -> str:
        import litellm

        litellm.suppress_debug_info = True
        kwargs = self._base_kwargs(self.model_id)
        kwargs.update(
            messages=[
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": text},
            ],
            max_tokens=min(self.max_output_tokens, 4096),
        )
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise map_llm_error(e) from e
        return response.choices[0].message.content or ""
