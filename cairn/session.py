"""Public library API for cairn: Session class and Result dataclass."""

import asyncio
from dataclasses import dataclass

from .cancel import CancellationToken
from .events import Error, LoopDetected, TurnSummary
from .history import HistoryItem, append_history
from .history import load_checkpoint as _load_checkpoint
from .history import save_checkpoint as _save_checkpoint
from .report import LoopDetectedError, ReportCollector


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    outcome: str
    turns: int
    history: list[dict]
    report: dict | None = None
    error: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.outcome == "exhausted"


class Session:
    """Programmatic interface to the cairn conversation loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations. ``channel`` and
    ``registry`` replace the LiteLLM channel and the built-in tools.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "lmstudio",
        model: str | None = None,
        fallback_model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_turns: int = 50,
        max_output_tokens: int = 8192,
        temperature: float | None = None,
        token_limit: int | None = 128_000,
        compression_threshold: float = 0.7,
        preserve_fraction: float = 0.3,
        loop_window: int = 20,
        loop_repeat_threshold: int = 3,
        content_repeat_threshold: int = 10,
        approval_mode: str = "auto_approve_safe",
        approver=None,
        max_concurrency: int = 4,
        cancel_grace_period: float = 2.0,
        allowed_commands: list[str] | None = None,
        system_prompt: str | None = None,
        verbose: bool = False,
        history: bool = True,
        channel=None,
        registry=None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.fallback_model = fallback_model
        self.api_key = api_key
        self.base_url = base_url
        self.max_turns = max_turns
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.token_limit = token_limit
        self.compression_threshold = compression_threshold
        self.preserve_fraction = preserve_fraction
        self.loop_window = loop_window
        self.loop_repeat_threshold = loop_repeat_threshold
        self.content_repeat_threshold = content_repeat_threshold
        self.approval_mode = approval_mode
        self.approver = approver
        self.max_concurrency = max_concurrency
        self.cancel_grace_period = cancel_grace_period
        self.allowed_commands = allowed_commands
        self.system_prompt = system_prompt
        self.verbose = verbose
        self.history = history

        self._channel = channel
        self._registry = registry

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._model_id: str | None = None
        self._system_content: str | None = None

        # Per-conversation state (for ask() mode)
        self._loop = None
        self._token: CancellationToken | None = None

    def _setup(self) -> None:
        """Perform one-time setup: resolve provider, commands, tools, system prompt."""
        if self._setup_done:
            return

        from .agent import build_system_prompt
        from .model import LiteLLMChannel, resolve_provider
        from .tools import builtin_tools, resolve_commands

        resolved_commands = resolve_commands(self.allowed_commands, self.base_dir)
        if self._registry is None:
            self._registry = builtin_tools(self.base_dir, resolved_commands)

        if self._channel is None:
            resolved = resolve_provider(
                self.provider, self.model, self.api_key, self.base_url
            )
            self._model_id = resolved["model_id"]
            self._channel = LiteLLMChannel(
                self.provider,
                self._model_id,
                api_base=resolved["api_base"],
                api_key=resolved["api_key"],
                tools=self._registry.schemas(),
                max_output_tokens=self.max_output_tokens,
                temperature=self.temperature,
                verbose=self.verbose,
            )
        else:
            self._model_id = self.model or "unknown"

        self._system_content = build_system_prompt(
            self.system_prompt, resolved_commands
        )

        if self.verbose:
            from . import fmt

            fmt.init()

        self._setup_done = True

    def _new_loop(self, report: ReportCollector | None = None):
        from .agent import build_conversation

        return build_conversation(
            self._channel,
            self._registry,
            model_id=self._model_id,
            history=[HistoryItem(role="system", content=self._system_content)],
            fallback_model=self.fallback_model,
            max_turns=self.max_turns,
            token_limit=self.token_limit,
            compression_threshold=self.compression_threshold,
            preserve_fraction=self.preserve_fraction,
            loop_window=self.loop_window,
            loop_repeat_threshold=self.loop_repeat_threshold,
            content_repeat_threshold=self.content_repeat_threshold,
            approval_mode=self.approval_mode,
            approver=self.approver,
            max_concurrency=self.max_concurrency,
            cancel_grace_period=self.cancel_grace_period,
            report=report,
            verbose=self.verbose,
        )

    async def _drain(self, loop, question: str, turn_budget: int | None):
        token = self._token = CancellationToken()
        summary = None
        error = None
        try:
            async for event in loop.run(question, token, turn_budget):
                if isinstance(event, Error):
                    error = event.message
                elif isinstance(event, LoopDetected):
                    error = str(LoopDetectedError(f"loop detected: {event.reason}"))
                elif isinstance(event, TurnSummary):
                    summary = event
        finally:
            self._token = None
        return summary, error

    def _finish(self, loop, question, summary, error, report_dict=None) -> Result:
        if self.history and question and summary.answer:
            append_history(self.base_dir, question, summary.answer)
        return Result(
            answer=summary.answer,
            outcome=summary.outcome,
            turns=summary.turns,
            history=[item.to_dict() for item in loop.history],
            report=report_dict,
            error=error,
        )

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with fresh state. Each call is independent."""
        self._setup()

        collector = ReportCollector() if report else None
        loop = self._new_loop(collector)
        summary, error = asyncio.run(self._drain(loop, question, None))

        report_dict = None
        if collector:
            from .agent import EXIT_CODES

            outcome, exit_code = EXIT_CODES[summary.outcome]
            report_dict = collector.build_report(
                task=question,
                model=summary.model,
                provider=self.provider,
                settings={
                    "max_turns": self.max_turns,
                    "max_output_tokens": self.max_output_tokens,
                    "temperature": self.temperature,
                    "token_limit": self.token_limit,
                    "approval_mode": self.approval_mode,
                    "fallback_model": self.fallback_model,
                },
                outcome=outcome,
                answer=summary.answer,
                exit_code=exit_code,
                turns=summary.turns,
                error_message=error,
            )

        return self._finish(loop, question, summary, error, report_dict)

    def ask(self, question: str, *, turn_budget: int | None = None) -> Result:
        """Conversational: share context across questions (like the REPL).

        An empty question continues the current request.
        """
        self._setup()
        if self._loop is None:
            self._loop = self._new_loop()
        summary, error = asyncio.run(self._drain(self._loop, question, turn_budget))
        return self._finish(self._loop, question, summary, error)

    def cancel(self, reason: str = "cancelled by user") -> None:
        """Cancel the request in flight, if any. Safe to call from another thread."""
        token = self._token
        if token is not None:
            token.cancel(reason)

    def compress(self) -> bool:
        """Force a compression of the conversation history. True if it shrank."""
        if self._loop is None:
            return False
        return asyncio.run(self._loop.compress(force=True)) is not None

    def save_checkpoint(self, tag: str, metadata: dict | None = None):
        """Write the conversation under ``tag``. Returns the checkpoint path."""
        self._setup()
        if self._loop is None:
            self._loop = self._new_loop()
        meta = {"model": self._loop.model, "turns": self._loop.total_turns}
        meta.update(metadata or {})
        return _save_checkpoint(self.base_dir, tag, self._loop.history, meta)

    def load_checkpoint(self, tag: str) -> dict:
        """Replace the conversation with a saved one. Returns its metadata."""
        self._setup()
        history, metadata = _load_checkpoint(self.base_dir, tag)
        if self._loop is None:
            self._loop = self._new_loop()
        self._loop.reset()
        self._loop.history[:] = history
        return metadata

    def reset(self) -> None:
        """Clear conversation state without invalidating setup. Next ask() starts fresh."""
        self._loop = None
