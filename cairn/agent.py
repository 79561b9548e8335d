import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from datetime import datetime
from pathlib import Path

from importlib import metadata

from . import fmt
from .approval import ApprovalPolicy, ConsoleApprover
from .cancel import CancellationToken
from .compressor import HistoryCompressor
from .config import _UNSET, apply_config_to_args, generate_config, load_config
from .events import (
    ChatCompressed,
    Content,
    ConversationTurn,
    Error,
    Finished,
    LoopDetected,
    Thought,
    ToolCallRequest,
    ToolResult,
    TurnSummary,
    UserCancelled,
)
from .history import (
    HistoryItem,
    append_history,
    estimate_tokens,
    last_model_text,
    list_checkpoints,
    load_checkpoint,
    save_checkpoint,
)
from .loop_detector import LoopDetector
from .model import PROVIDERS, LiteLLMChannel, resolve_provider
from .report import (
    AgentError,
    AuthenticationError,
    ContextOverflowError,
    QuotaError,
    ReportCollector,
)
from .scheduler import CANCELLED, ERROR, OUTPUT, Scheduler, ToolResponse
from .tools import builtin_tools, resolve_commands

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"

SETTLED = "settled"
EXHAUSTED = "exhausted"
LOOP_DETECTED = "loop_detected"
CANCELLED_OUTCOME = "cancelled"
ERROR_OUTCOME = "error"

# TurnSummary outcome -> (report outcome, exit code)
EXIT_CODES = {
    SETTLED: ("success", 0),
    EXHAUSTED: ("exhausted", 2),
    LOOP_DETECTED: ("loop_detected", 4),
    CANCELLED_OUTCOME: ("cancelled", 130),
    ERROR_OUTCOME: ("error", 1),
}

TRUNCATED_NUDGE = (
    "Your response was cut off. Please use the provided tools to complete "
    "the task step by step."
)


def _canonical_error(error: str) -> str:
    """Extract a stable error fingerprint for repeat detection."""
    return error.split("\n", 1)[0]


class ConversationLoop:
    """Drives one user request through as many model turns as it needs.

    The loop is the only owner of ``history``: it appends the user input,
    each model item and each tool response, and applies the compressor's
    prefix replacement. ``history`` is mutated in place so callers holding a
    reference see every change.
    """

    def __init__(
        self,
        channel,
        scheduler: Scheduler,
        *,
        policy: ApprovalPolicy,
        model_id: str,
        history: list[HistoryItem] | None = None,
        fallback_model: str | None = None,
        max_turns: int = 50,
        token_limit: int | None = None,
        compressor: HistoryCompressor | None = None,
        detector: LoopDetector | None = None,
        report: ReportCollector | None = None,
        verbose: bool = False,
    ):
        self.channel = channel
        self.scheduler = scheduler
        self.policy = policy
        self.model = model_id
        self.primary_model = model_id
        self.fallback_model = fallback_model
        self.fallback_active = False
        self.history = history if history is not None else []
        self.max_turns = max_turns
        self.token_limit = token_limit
        self.compressor = compressor
        self.detector = detector or LoopDetector()
        self.report = report
        self.verbose = verbose
        self.total_turns = 0
        self._consecutive_errors: dict[str, tuple[str, int]] = {}
        self._cutoff: int | None = None

    # -- public ------------------------------------------------------------

    async def run(
        self,
        user_input: str,
        token: CancellationToken,
        turn_budget: int | None = None,
    ):
        """Async generator of stream events, always ending with a TurnSummary.

        Non-empty ``user_input`` starts a new top-level request and resets
        the loop detector; an empty one continues the current conversation.
        At most ``turn_budget`` model calls are made; a fallback or overflow
        retry is a call like any other. Events of an attempt that gets retried
        have already been forwarded, but the loop detector forgets them.
        """
        budget = self.max_turns if turn_budget is None else turn_budget
        if user_input:
            self.detector.reset()
            self._consecutive_errors.clear()
        new_input = user_input
        turns = 0

        while True:
            if token.cancelled:
                self._commit_input(new_input)
                yield UserCancelled(token.reason or "cancelled")
                yield self._summary(turns, CANCELLED_OUTCOME)
                return
            if turns >= budget:
                self._commit_input(new_input)
                yield self._summary(turns, EXHAUSTED, last_model_text(self.history))
                return
            turns += 1
            self.total_turns += 1

            snapshot = await self.compress()
            if snapshot is not None:
                yield ChatCompressed(snapshot)

            if self.verbose:
                token_est = estimate_tokens(self.history) + (
                    estimate_tokens([HistoryItem(role="user", content=new_input)])
                    if new_input
                    else 0
                )
                fmt.turn_header(turns, budget, token_est, self.model)

            turn = None
            failure: AgentError | None = None
            quota_retried = False
            overflow_retried = False
            retry_reason = None
            while turn is None and failure is None:
                candidate = ConversationTurn(
                    self.total_turns, self.model, len(self.history), new_input
                )
                detector_state = self.detector.checkpoint()
                token_est = estimate_tokens(self.history)
                t0 = time.monotonic()
                try:
                    async for event in self._stream(candidate, token):
                        yield event
                except AuthenticationError:
                    self._record_llm_call(t0, token_est, "auth_error", retry_reason)
                    raise
                except QuotaError as e:
                    self._record_llm_call(t0, token_est, "quota", retry_reason)
                    if (
                        not quota_retried
                        and turns < budget
                        and self._switch_to_fallback()
                    ):
                        quota_retried = True
                        retry_reason = "fallback"
                        turns += 1
                        self.total_turns += 1
                        self.detector.rollback(detector_state)
                        continue
                    failure = e
                except ContextOverflowError as e:
                    self._record_llm_call(t0, token_est, "context_overflow", retry_reason)
                    if not overflow_retried and turns < budget:
                        overflow_retried = True
                        fmt.warning("context window exceeded, compressing history...")
                        snapshot = await self.compress(force=True)
                        if snapshot is not None:
                            yield ChatCompressed(snapshot)
                            retry_reason = "compression"
                            turns += 1
                            self.total_turns += 1
                            self.detector.rollback(detector_state)
                            continue
                    failure = e
                except AgentError as e:
                    self._record_llm_call(t0, token_est, "error", retry_reason)
                    failure = e
                else:
                    turn = candidate
                    self._record_llm_call(
                        t0, token_est, turn.finish_reason, retry_reason
                    )

            if failure is not None:
                self._commit_input(new_input)
                self.history.append(HistoryItem(role="error", content=str(failure)))
                yield Error(str(failure), failure)
                yield self._summary(turns, ERROR_OUTCOME)
                return

            self._commit_input(new_input)
            new_input = ""
            requests = list(turn.tool_requests)
            if turn.content or requests:
                self.history.append(
                    HistoryItem(
                        role="model", content=turn.content, tool_requests=requests
                    )
                )

            cutoff = self._cutoff if self.detector.fired else len(requests)
            responses: list[ToolResponse] = []
            if cutoff:
                responses = await self.scheduler.schedule_tools(
                    requests[:cutoff], token, self.policy
                )
            for req in requests[cutoff:]:
                responses.append(
                    ToolResponse(
                        call_id=req.id,
                        name=req.name,
                        content=(
                            "error: tool call not run, the request was stopped "
                            "because the model is repeating itself"
                        ),
                        state=CANCELLED,
                        arguments=req.arguments,
                    )
                )
            for response in responses:
                self.history.append(
                    HistoryItem(
                        role="tool",
                        content=response.content,
                        call_id=response.call_id,
                        name=response.name,
                        is_error=response.is_error,
                    )
                )
                self._record_tool_call(response)
                yield ToolResult(response)

            if self.detector.fired:
                reason = self.detector.reason or "repetition detected"
                if self.report:
                    self.report.record_loop_detected(self.total_turns, reason)
                yield LoopDetected(reason)
                yield self._summary(turns, LOOP_DETECTED)
                return
            if token.cancelled:
                yield UserCancelled(token.reason or "cancelled")
                yield self._summary(turns, CANCELLED_OUTCOME)
                return

            if not requests:
                if turn.finish_reason == "length":
                    # Output was truncated before the model could finish;
                    # nudge it to continue instead of quitting.
                    if self.verbose:
                        fmt.info(
                            "Response truncated (finish_reason=length), prompting continuation."
                        )
                    new_input = TRUNCATED_NUDGE
                    continue
                yield self._summary(turns, SETTLED, turn.content)
                return

            interventions = self._guardrails(responses)
            if interventions:
                self.history.append(
                    HistoryItem(role="user", content="\n\n".join(interventions))
                )
            if self.verbose:
                fmt.context_stats(
                    f"Context after turn {turns}", estimate_tokens(self.history)
                )

    async def compress(self, force: bool = False):
        """Run the compressor over history; apply and return its snapshot, if any."""
        if self.compressor is None:
            return None
        estimate = estimate_tokens(self.history)
        new_history, snapshot = await self.compressor.maybe_compress(
            self.history, estimate, self.token_limit, force=force
        )
        if snapshot is None:
            return None
        self.history[:] = new_history
        if self.report:
            self.report.record_compaction(
                self.total_turns,
                snapshot.original_token_count,
                snapshot.new_token_count,
            )
        return snapshot

    def reset(self) -> None:
        """Forget per-conversation state, keeping leading system items."""
        leading = []
        for item in self.history:
            if item.role != "system":
                break
            leading.append(item)
        self.history[:] = leading
        self.detector.reset()
        self._consecutive_errors.clear()
        if self.compressor is not None:
            self.compressor.reset()

    # -- internals ---------------------------------------------------------

    async def _stream(self, turn: ConversationTurn, token: CancellationToken):
        """Consume one model stream into ``turn``, forwarding displayable events.

        Stops early when the loop detector fires; ``self._cutoff`` is then
        the number of requests that arrived before the firing one.
        """
        self._cutoff = None
        stream = self.channel.stream_turn(
            self.history, turn.new_input, token, model=self.model
        )
        finish_reason = None
        try:
            async for event in stream:
                if isinstance(event, Finished):
                    finish_reason = event.finish_reason
                    break
                if isinstance(event, Error):
                    if isinstance(event.error, AgentError):
                        raise event.error
                    raise AgentError(event.message)
                turn.add(event)
                if isinstance(event, ToolCallRequest):
                    yield event
                    if self.detector.observe(event):
                        self._cutoff = len(turn.tool_requests) - 1
                        finish_reason = LOOP_DETECTED
                        break
                elif isinstance(event, Content):
                    yield event
                    if self.detector.observe(event):
                        self._cutoff = len(turn.tool_requests)
                        finish_reason = LOOP_DETECTED
                        break
                elif isinstance(event, Thought):
                    yield event
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        if finish_reason is None:
            finish_reason = "cancelled" if token.cancelled else "stop"
        turn.finish(finish_reason)

    def _commit_input(self, new_input: str) -> None:
        if new_input:
            self.history.append(HistoryItem(role="user", content=new_input))

    def _switch_to_fallback(self) -> bool:
        if (
            not self.fallback_model
            or self.fallback_active
            or self.fallback_model == self.model
        ):
            return False
        previous = self.model
        self.model = self.fallback_model
        self.fallback_active = True
        fmt.fallback(previous, self.model)
        if self.report:
            self.report.record_fallback(self.total_turns, previous, self.model)
        return True

    def _record_llm_call(self, t0, token_est, outcome, retry_reason) -> None:
        elapsed = time.monotonic() - t0
        if self.verbose and outcome in ("stop", "tool_calls", "length", LOOP_DETECTED):
            fmt.llm_timing(elapsed, outcome)
        if self.report:
            self.report.record_llm_call(
                self.total_turns,
                elapsed,
                token_est,
                outcome,
                model=self.model,
                is_retry=retry_reason is not None,
                retry_reason=retry_reason,
            )

    def _record_tool_call(self, response: ToolResponse) -> None:
        if self.report:
            self.report.record_tool_call(
                self.total_turns,
                response.name,
                response.arguments,
                response.state,
                response.elapsed,
                len(response.content),
                error=response.content if response.is_error else None,
            )

    def _guardrails(self, responses: list[ToolResponse]) -> list[str]:
        """Nudge, then stop, a model that keeps repeating the same failing call."""
        interventions: list[str] = []
        for response in responses:
            tool_name = response.name
            if response.state == ERROR:
                canonical_error = _canonical_error(response.content)
                prev_error, prev_count = self._consecutive_errors.get(
                    tool_name, ("", 0)
                )
                if canonical_error == prev_error:
                    count = prev_count + 1
                else:
                    count = 1
                self._consecutive_errors[tool_name] = (canonical_error, count)

                if count >= 2:
                    if count >= 3:
                        level = "stop"
                        interventions.append(
                            f"STOP: You have failed to use `{tool_name}` correctly {count} times in a row "
                            "with the same error. Do NOT call "
                            f"`{tool_name}` again with the same arguments. "
                            "Either fix the arguments or use a completely different approach to accomplish your task."
                        )
                    else:
                        level = "nudge"
                        interventions.append(
                            f"IMPORTANT: You have called `{tool_name}` {count} times with the same error. "
                            f"The error is: {canonical_error}\n"
                            "Please carefully re-read the error message and fix your tool call. "
                            "If you cannot use this tool correctly, use a different approach."
                        )
                    if self.report:
                        self.report.record_guardrail(self.total_turns, tool_name, level)
                    if self.verbose:
                        fmt.guardrail(tool_name, count, canonical_error)
            elif response.state != CANCELLED:
                self._consecutive_errors.pop(tool_name, None)
        return interventions

    def _summary(self, turns: int, outcome: str, answer: str | None = None):
        if self.verbose:
            fmt.completion(turns, outcome)
        return TurnSummary(turns=turns, outcome=outcome, answer=answer, model=self.model)


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def build_system_prompt(
    system_prompt: str | None, resolved_commands: dict[str, str]
) -> str:
    """Default (or user-supplied) system prompt plus date and command notes."""
    if system_prompt:
        content = system_prompt
    else:
        content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
        if resolved_commands:
            cmd_list = ", ".join(sorted(resolved_commands))
            content += (
                "\n\n**Command execution tool:**\n"
                f"- `run_command`: Run a whitelisted command and return its output. "
                f'Pass the command and arguments as a list (e.g. `["ls", "-la"]`). '
                f"Optional `timeout` (1-120s, default 30). "
                f"Allowed commands: {cmd_list}."
            )
    now = datetime.now().astimezone()
    content += f"\n\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    return content


def build_conversation(
    channel,
    registry,
    *,
    model_id: str,
    history: list[HistoryItem] | None = None,
    fallback_model: str | None = None,
    max_turns: int = 50,
    token_limit: int | None = None,
    compression_threshold: float = 0.7,
    preserve_fraction: float = 0.3,
    loop_window: int = 20,
    loop_repeat_threshold: int = 3,
    content_repeat_threshold: int = 10,
    approval_mode: str = "auto_approve_safe",
    approver=None,
    max_concurrency: int = 4,
    cancel_grace_period: float = 2.0,
    report: ReportCollector | None = None,
    verbose: bool = False,
) -> ConversationLoop:
    """Wire a channel and a tool registry into a ready ConversationLoop."""
    try:
        detector = LoopDetector(
            window=loop_window,
            tool_repeat_threshold=loop_repeat_threshold,
            content_repeat_threshold=content_repeat_threshold,
        )
        compressor = HistoryCompressor(
            channel,
            threshold=compression_threshold,
            preserve_fraction=preserve_fraction,
        )
        scheduler = Scheduler(
            registry,
            max_concurrency=max_concurrency,
            cancel_grace_period=cancel_grace_period,
        )
    except ValueError as e:
        raise AgentError(f"invalid setting: {e}") from e
    return ConversationLoop(
        channel,
        scheduler,
        policy=ApprovalPolicy(approval_mode, approver),
        model_id=model_id,
        history=history,
        fallback_model=fallback_model,
        max_turns=max_turns,
        token_limit=token_limit,
        compressor=compressor,
        detector=detector,
        report=report,
        verbose=verbose,
    )


async def run_request(
    loop: ConversationLoop,
    user_input: str,
    token: CancellationToken,
    turn_budget: int | None = None,
    *,
    verbose: bool = False,
) -> TurnSummary:
    """Drain ``loop.run`` and render its events on stderr. Returns the summary."""
    summary = None
    pending_text: list[str] = []

    def _flush_text():
        text = "".join(pending_text).strip()
        pending_text.clear()
        if text and verbose:
            fmt.assistant_text(text)

    async for event in loop.run(user_input, token, turn_budget):
        if isinstance(event, Content):
            pending_text.append(event.text)
        elif isinstance(event, Thought):
            if verbose:
                fmt.thought(event.text)
        elif isinstance(event, ToolCallRequest):
            _flush_text()
            if verbose:
                args_json = event.raw_arguments or json.dumps(event.arguments, indent=2)
                fmt.tool_call(event.name, args_json)
        elif isinstance(event, ToolResult):
            if verbose:
                _render_response(event.response)
        elif isinstance(event, ChatCompressed):
            if verbose:
                snap = event.snapshot
                fmt.compressed(
                    snap.original_token_count,
                    snap.new_token_count,
                    snap.retained_tail_start_index,
                )
        elif isinstance(event, LoopDetected):
            _flush_text()
            fmt.loop_detected(event.reason)
        elif isinstance(event, UserCancelled):
            _flush_text()
            fmt.warning(f"request cancelled ({event.reason})")
        elif isinstance(event, Error):
            fmt.error(event.message)
        elif isinstance(event, TurnSummary):
            summary = event
    return summary


def _render_response(response: ToolResponse) -> None:
    first_line = response.content.split("\n", 1)[0]
    if response.state == CANCELLED:
        fmt.tool_cancelled(response.name, first_line)
    elif response.is_error:
        fmt.tool_error(response.name, first_line)
    else:
        fmt.tool_result(response.name, response.elapsed, first_line[:120])


def _observe_calls(call, event: str) -> None:
    if event == OUTPUT:
        fmt.tool_output(call.name, call.live_output[-1])
    elif event in ("awaiting_approval", "executing"):
        fmt.tool_state(call.name, call.id, event)


async def run_interruptible(
    loop: ConversationLoop,
    user_input: str,
    turn_budget: int | None = None,
    *,
    verbose: bool = False,
) -> TurnSummary:
    """run_request with Ctrl-C mapped to cancelling the request's token."""
    token = CancellationToken()
    event_loop = asyncio.get_running_loop()
    installed = False
    try:
        event_loop.add_signal_handler(signal.SIGINT, token.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        pass
    try:
        return await run_request(
            loop, user_input, token, turn_budget, verbose=verbose
        )
    finally:
        if installed:
            event_loop.remove_signal_handler(signal.SIGINT)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="cairn",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A terminal coding assistant with concurrent tool calls, approvals, "
        "loop detection and history compression.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented configuration template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (cairn.toml) variant.",
    )

    model_group = parser.add_argument_group("model")
    model_group.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider: lmstudio (local), openrouter, generic (OpenAI-compatible "
        "server), litellm (any LiteLLM model string). Default: lmstudio.",
    )
    model_group.add_argument(
        "--model", default=_UNSET, help="Model identifier for the provider."
    )
    model_group.add_argument(
        "--fallback-model",
        default=_UNSET,
        help="Model to switch to, once per session, after a quota or rate-limit error.",
    )
    model_group.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    model_group.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    model_group.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per model turn (default: 8192).",
    )
    model_group.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    model_group.add_argument(
        "--system-prompt",
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )

    loop_group = parser.add_argument_group("conversation loop")
    loop_group.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum model turns per request (default: 50).",
    )
    loop_group.add_argument(
        "--token-limit",
        type=int,
        default=_UNSET,
        help="Context size used for compression decisions (default: 128000).",
    )
    loop_group.add_argument(
        "--compression-threshold",
        type=float,
        default=_UNSET,
        help="Compress history above this fraction of --token-limit (default: 0.7).",
    )
    loop_group.add_argument(
        "--preserve-fraction",
        type=float,
        default=_UNSET,
        help="Fraction of history kept verbatim when compressing (default: 0.3).",
    )
    loop_group.add_argument(
        "--loop-window",
        type=int,
        default=_UNSET,
        help="Loop detector window size (default: 20).",
    )
    loop_group.add_argument(
        "--loop-repeat-threshold",
        type=int,
        default=_UNSET,
        help="Identical consecutive tool calls that count as a loop (default: 3).",
    )
    loop_group.add_argument(
        "--content-repeat-threshold",
        type=int,
        default=_UNSET,
        help="Near-identical consecutive lines of text that count as a loop (default: 10).",
    )

    tool_group = parser.add_argument_group("tools")
    tool_group.add_argument(
        "--approval-mode",
        choices=["manual", "auto_approve_all", "auto_approve_safe"],
        default=_UNSET,
        help="Which tool calls need confirmation (default: auto_approve_safe, "
        "i.e. only destructive tools ask).",
    )
    tool_group.add_argument(
        "--max-concurrency",
        type=int,
        default=_UNSET,
        help="Tool calls allowed to execute at once (default: 4).",
    )
    tool_group.add_argument(
        "--cancel-grace-period",
        type=float,
        default=_UNSET,
        help="Seconds to wait for a cancelled tool to stop (default: 2.0).",
    )
    tool_group.add_argument(
        "--allowed-commands",
        default=_UNSET,
        help='Comma-separated list of allowed command basenames (e.g. "ls,git,python3").',
    )
    tool_group.add_argument(
        "--base-dir",
        default=".",
        help="Base directory for file tools (default: current directory).",
    )

    out_group = parser.add_argument_group("output")
    out_group.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    out_group.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON evaluation report to FILE. Incompatible with --repl.",
    )
    out_group.add_argument(
        "--no-history",
        action="store_true",
        default=_UNSET,
        help="Don't write responses to .cairn/HISTORY.md",
    )
    color_group = out_group.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("cairn")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    fmt.init(color=args.color, no_color=args.no_color)
    logging.basicConfig(
        level=logging.WARNING if args.verbose else logging.ERROR,
        format="%(message)s",
        handlers=[fmt.log_handler()],
    )

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, turns=None, error_message=None):
        if not report:
            return
        effective_turns = turns if turns is not None else report.max_turn_seen
        data = report.build_report(
            task=args.question or "",
            model=getattr(args, "_resolved_model_id", args.model or "unknown"),
            provider=args.provider,
            settings={
                "temperature": args.temperature,
                "max_turns": args.max_turns,
                "max_output_tokens": args.max_output_tokens,
                "token_limit": args.token_limit,
                "compression_threshold": args.compression_threshold,
                "approval_mode": args.approval_mode,
                "max_concurrency": args.max_concurrency,
                "fallback_model": args.fallback_model,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            turns=effective_turns,
            error_message=error_message,
        )
        try:
            report.write(args.report, data)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        exit_code = asyncio.run(_run_main(args, report, _write_report))
    except AuthenticationError as e:
        fmt.error(str(e))
        fmt.info("Check your API key or re-authenticate with the provider, then retry.")
        _write_report("auth_error", exit_code=3, error_message=str(e))
        sys.exit(3)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)
    if exit_code:
        sys.exit(exit_code)


async def _run_main(args, report, _write_report) -> int:
    resolved = resolve_provider(args.provider, args.model, args.api_key, args.base_url)
    model_id = resolved["model_id"]
    args._resolved_model_id = model_id
    if args.verbose:
        fmt.model_info(f"Using model: {model_id} ({args.provider})")

    allowed = [c.strip() for c in (args.allowed_commands or "").split(",") if c.strip()]
    resolved_commands = resolve_commands(allowed, args.base_dir)
    registry = builtin_tools(args.base_dir, resolved_commands)

    channel = LiteLLMChannel(
        args.provider,
        model_id,
        api_base=resolved["api_base"],
        api_key=resolved["api_key"],
        tools=registry.schemas(),
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
        verbose=args.verbose,
    )
    history = [
        HistoryItem(
            role="system",
            content=build_system_prompt(args.system_prompt, resolved_commands),
        )
    ]
    loop = build_conversation(
        channel,
        registry,
        model_id=model_id,
        history=history,
        fallback_model=args.fallback_model,
        max_turns=args.max_turns,
        token_limit=args.token_limit,
        compression_threshold=args.compression_threshold,
        preserve_fraction=args.preserve_fraction,
        loop_window=args.loop_window,
        loop_repeat_threshold=args.loop_repeat_threshold,
        content_repeat_threshold=args.content_repeat_threshold,
        approval_mode=args.approval_mode,
        approver=ConsoleApprover(),
        max_concurrency=args.max_concurrency,
        cancel_grace_period=args.cancel_grace_period,
        report=report,
        verbose=args.verbose,
    )
    if args.verbose:
        loop.scheduler.subscribe(_observe_calls)

    if not args.repl:
        summary = await run_interruptible(loop, args.question, verbose=args.verbose)
        answer = summary.answer
        if not args.no_history and answer:
            append_history(args.base_dir, args.question, answer)
        if answer is not None:
            print(answer)
        outcome, exit_code = EXIT_CODES[summary.outcome]
        if summary.outcome == EXHAUSTED:
            fmt.warning("max turns reached, agent stopped.")
        _write_report(
            outcome,
            answer=answer,
            exit_code=exit_code,
            turns=summary.turns,
        )
        return exit_code

    if args.question:
        await _repl_ask(loop, args.question, args.max_turns, args)
    await repl_loop(loop, args)
    return 0


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                      Show this help message\n"
        "  /clear                     Reset conversation to initial state\n"
        "  /compress                  Summarize older history now\n"
        "  /checkpoint save <tag>     Save the conversation under a tag\n"
        "  /checkpoint load <tag>     Restore a saved conversation\n"
        "  /checkpoint list           List saved conversations\n"
        "  /extend [N]                Double max turns, or set to N\n"
        "  /continue                  Continue the agent loop without new input\n"
        "  /exit, /quit               Exit the REPL\n"
        "Press Ctrl-C while the agent is working to cancel the current request."
    )


def _repl_clear(loop: ConversationLoop) -> None:
    """Clear conversation history, keeping only the leading system items."""
    before = len(loop.history)
    loop.reset()
    loop.policy.reset()
    fmt.info(f"context cleared ({before - len(loop.history)} items removed)")


async def _repl_compress(loop: ConversationLoop) -> None:
    """Manually compress conversation history."""
    before = estimate_tokens(loop.history)
    snapshot = await loop.compress(force=True)
    if snapshot is None:
        fmt.info(f"nothing to compress (~{before} tokens)")
        return
    saved = snapshot.original_token_count - snapshot.new_token_count
    fmt.info(
        f"compressed: {snapshot.original_token_count} -> "
        f"{snapshot.new_token_count} tokens ({saved} saved)"
    )


def _repl_checkpoint(loop: ConversationLoop, arg: str, base_dir: str) -> None:
    parts = arg.split()
    action = parts[0].lower() if parts else ""
    if action == "list":
        checkpoints = list_checkpoints(base_dir)
        if not checkpoints:
            fmt.info("no checkpoints")
        for cp in checkpoints:
            fmt.info(f"{cp['tag']}  {cp['timestamp']}  ({cp['items']} items)")
        return
    if action not in ("save", "load") or len(parts) != 2:
        fmt.warning("usage: /checkpoint save|load <tag>, or /checkpoint list")
        return
    tag = parts[1]
    try:
        if action == "save":
            path = save_checkpoint(
                base_dir,
                tag,
                loop.history,
                {"model": loop.model, "turns": loop.total_turns},
            )
            fmt.info(f"checkpoint saved: {path}")
        else:
            history, metadata = load_checkpoint(base_dir, tag)
            loop.reset()
            loop.history[:] = history
            fmt.info(
                f"checkpoint {tag!r} loaded ({len(history)} items"
                + (f", model {metadata['model']}" if metadata.get("model") else "")
                + ")"
            )
    except AgentError as e:
        fmt.warning(str(e))


def _repl_extend(arg: str, state: dict) -> None:
    """Double max turns (default) or set to a specific value."""
    arg = arg.strip()
    if arg:
        try:
            n = int(arg)
        except ValueError:
            fmt.warning(f"invalid number: {arg}")
            return
        if n < 1:
            fmt.warning("max turns must be at least 1")
            return
        state["max_turns"] = n
        fmt.info(f"max turns set to {n}")
    else:
        old = state["max_turns"]
        state["max_turns"] = old * 2
        fmt.info(f"max turns doubled: {old} -> {old * 2}")


async def _repl_ask(loop: ConversationLoop, line: str, max_turns: int, args) -> None:
    summary = await run_interruptible(loop, line, max_turns, verbose=args.verbose)
    answer = summary.answer
    if not args.no_history and answer:
        append_history(args.base_dir, line or "(continued)", answer)
    if answer is not None and summary.outcome in (SETTLED, EXHAUSTED):
        print(answer)
    if summary.outcome == EXHAUSTED:
        fmt.warning("max turns reached for this question.")


async def repl_loop(loop: ConversationLoop, args) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = Path(args.base_dir) / ".cairn" / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "cairn> ")])

    if args.verbose:
        fmt.repl_banner()

    turn_state = {"max_turns": args.max_turns}

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = await session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        # REPL commands: only intercept known commands; unknown /foo passes through
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        try:
            if cmd == "/help":
                _repl_help()
            elif cmd == "/clear":
                _repl_clear(loop)
            elif cmd == "/compress":
                await _repl_compress(loop)
            elif cmd == "/checkpoint":
                _repl_checkpoint(loop, cmd_arg, args.base_dir)
            elif cmd == "/extend":
                _repl_extend(cmd_arg, turn_state)
            elif cmd == "/continue":
                fmt.info("continuing agent loop...")
                await _repl_ask(loop, "", turn_state["max_turns"], args)
            else:
                await _repl_ask(loop, line, turn_state["max_turns"], args)
        except AuthenticationError:
            raise
        except AgentError as e:
            fmt.error(str(e))


if __name__ == "__main__":
    main()
