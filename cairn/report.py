"""Error taxonomy and JSON report generation for agent runs."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class ValidationError(AgentError):
    """Tool arguments did not match the tool's declared schema."""


class ExecutionError(AgentError):
    """A tool ran and failed."""


class CancellationError(AgentError):
    """A call or request was aborted by the user or a timeout."""


class AuthenticationError(AgentError):
    """The model channel rejected our credentials. Never retried."""


UnauthorizedError = AuthenticationError


class QuotaError(AgentError):
    """Quota or rate limit reported by the model channel."""


class ContextOverflowError(AgentError):
    """Raised when the LLM call fails due to context window overflow."""


class LoopDetectedError(AgentError):
    """The loop detector stopped the current request."""


class CompressionFailure(AgentError):
    """History summarization failed; history is left unchanged."""


class InvalidTransition(AgentError):
    """A tool call was asked to move backwards or out of a terminal state."""


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.compactions = 0
        self.guardrail_interventions = 0
        self.fallbacks = 0
        self.loop_detections = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_turn_seen = 0

    def record_llm_call(
        self,
        turn: int,
        duration: float,
        token_est: int,
        outcome: str,
        *,
        model: str | None = None,
        is_retry: bool = False,
        retry_reason: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn
        event = {
            "turn": turn,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "prompt_tokens_est": token_est,
            "outcome": outcome,
            "is_retry": is_retry,
        }
        if model is not None:
            event["model"] = model
        if retry_reason is not None:
            event["retry_reason"] = retry_reason
        self.events.append(event)

    def record_tool_call(
        self,
        turn: int,
        name: str,
        arguments: dict | None,
        state: str,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(
            name, {"succeeded": 0, "failed": 0, "cancelled": 0}
        )
        if state == "success":
            stats["succeeded"] += 1
        elif state == "cancelled":
            stats["cancelled"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "turn": turn,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "state": state,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_compaction(self, turn: int, tokens_before: int, tokens_after: int):
        self.compactions += 1
        self.events.append(
            {
                "turn": turn,
                "type": "compaction",
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def record_guardrail(self, turn: int, tool: str, level: str):
        self.guardrail_interventions += 1
        self.events.append(
            {"turn": turn, "type": "guardrail", "tool": tool, "level": level}
        )

    def record_fallback(self, turn: int, from_model: str, to_model: str):
        self.fallbacks += 1
        self.events.append(
            {"turn": turn, "type": "fallback", "from": from_model, "to": to_model}
        )

    def record_loop_detected(self, turn: int, reason: str):
        self.loop_detections += 1
        self.events.append({"turn": turn, "type": "loop_detected", "reason": reason})

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        turns: int,
        error_message: str | None = None,
    ) -> dict:
        def _total(key):
            return sum(s[key] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "tool_calls_total": _total("succeeded")
                + _total("failed")
                + _total("cancelled"),
                "tool_calls_succeeded": _total("succeeded"),
                "tool_calls_failed": _total("failed"),
                "tool_calls_cancelled": _total("cancelled"),
                "tool_calls_by_name": dict(self.tool_stats),
                "compactions": self.compactions,
                "guardrail_interventions": self.guardrail_interventions,
                "fallbacks": self.fallbacks,
                "loop_detections": self.loop_detections,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def write(self, path: str, report: dict):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
            f.write("\n")
