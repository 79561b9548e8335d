"""Tool call lifecycle: validation, approval, execution and cancellation.

Each requested call becomes a ``ToolCall`` that walks a one-way state
machine::

    validating -> (awaiting_approval ->) scheduled -> executing -> success | error | cancelled

Validation failures go straight to ``error``; rejections and cancellations
before execution go straight to ``cancelled`` without touching the tool.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable

from .approval import REJECTED, ApprovalPolicy
from .cancel import CancellationToken, until_cancelled
from .events import ToolCallRequest
from .report import (
    AgentError,
    CancellationError,
    ExecutionError,
    InvalidTransition,
    ValidationError,
)
from .tools import Tool, ToolRegistry

logger = logging.getLogger(__name__)

VALIDATING = "validating"
AWAITING_APPROVAL = "awaiting_approval"
SCHEDULED = "scheduled"
EXECUTING = "executing"
SUCCESS = "success"
ERROR = "error"
CANCELLED = "cancelled"

TERMINAL_STATES = frozenset({SUCCESS, ERROR, CANCELLED})

_RANK = {
    VALIDATING: 0,
    AWAITING_APPROVAL: 1,
    SCHEDULED: 2,
    EXECUTING: 3,
    SUCCESS: 4,
    ERROR: 4,
    CANCELLED: 4,
}

OUTPUT = "output"

DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_CANCEL_GRACE_PERIOD = 2.0


@dataclass
class ToolResponse:
    """Structured result of one call, fed back to the model."""

    call_id: str
    name: str
    content: str
    state: str
    arguments: dict | None = None
    elapsed: float = 0.0

    @property
    def is_error(self) -> bool:
        return self.state != SUCCESS


class ToolCall:
    """Mutable record of one call's progress through the state machine."""

    def __init__(self, request: ToolCallRequest, tool: Tool | None):
        self.request = request
        self.tool = tool
        self.state = VALIDATING
        self.timestamps: dict[str, float] = {VALIDATING: time.monotonic()}
        self.live_output: list[str] = []
        self.response: ToolResponse | None = None
        self.error: BaseException | None = None

    @property
    def id(self) -> str:
        return self.request.id

    @property
    def name(self) -> str:
        return self.request.name

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, state: str) -> None:
        if self.is_terminal:
            raise InvalidTransition(
                f"call {self.id} is already {self.state}, cannot move to {state}"
            )
        if _RANK[state] <= _RANK[self.state]:
            raise InvalidTransition(
                f"call {self.id} cannot move from {self.state} back to {state}"
            )
        self.state = state
        self.timestamps[state] = time.monotonic()

    def elapsed(self) -> float:
        start = self.timestamps.get(EXECUTING)
        if start is None:
            return 0.0
        end = max(self.timestamps.values())
        return end - start


Observer = Callable[[ToolCall, str], None]


class Scheduler:
    """Runs batches of tool calls requested in one model turn.

    Calls are independent tasks: one call waiting for approval never holds
    up the others. Up to ``max_concurrency`` calls execute at once, and
    calls to exclusive tools additionally hold a batch-wide lock so they run
    one at a time relative to each other.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        cancel_grace_period: float = DEFAULT_CANCEL_GRACE_PERIOD,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.registry = registry
        self.max_concurrency = max_concurrency
        self.cancel_grace_period = cancel_grace_period
        self._observers: list[Observer] = []

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Call observer(call, event) on every transition and live output chunk.

        event is the new state name, or "output" for live output (the chunk
        is ``call.live_output[-1]``). Returns an unsubscribe function.
        """
        self._observers.append(observer)
        return lambda: self._observers.remove(observer)

    def _notify(self, call: ToolCall, event: str) -> None:
        for observer in list(self._observers):
            try:
                observer(call, event)
            except Exception:
                logger.exception("tool call observer failed")

    def _move(self, call: ToolCall, state: str) -> None:
        call.transition(state)
        self._notify(call, state)

    def _finish(self, call: ToolCall, state: str, content: str) -> None:
        self._move(call, state)
        call.response = ToolResponse(
            call_id=call.id,
            name=call.name,
            content=content,
            state=state,
            arguments=call.request.arguments if call.request.raw_arguments is None else None,
            elapsed=call.elapsed(),
        )

    def _emit_output(self, call: ToolCall, chunk: str) -> None:
        call.live_output.append(chunk)
        self._notify(call, OUTPUT)

    async def schedule_tools(
        self,
        requests: list[ToolCallRequest],
        token: CancellationToken,
        policy: ApprovalPolicy,
    ) -> list[ToolResponse]:
        """Drive every request to a terminal state.

        Returns one response per request, in request order.
        """
        calls = [ToolCall(req, self.registry.get(req.name)) for req in requests]
        for call in calls:
            self._notify(call, VALIDATING)

        semaphore = asyncio.Semaphore(self.max_concurrency)
        exclusive_lock = asyncio.Lock()
        tasks = [
            asyncio.create_task(
                self._run_call(call, token, policy, semaphore, exclusive_lock),
                name=f"tool-{call.id}",
            )
            for call in calls
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            for call in calls:
                if not call.is_terminal:
                    self._finish(
                        call, CANCELLED, "error: tool call cancelled (request aborted)"
                    )
        return [call.response for call in calls]

    async def _run_call(
        self,
        call: ToolCall,
        token: CancellationToken,
        policy: ApprovalPolicy,
        semaphore: asyncio.Semaphore,
        exclusive_lock: asyncio.Lock,
    ) -> None:
        try:
            await self._drive(call, token, policy, semaphore, exclusive_lock)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("unexpected failure while running %s", call.name)
            call.error = e
            if not call.is_terminal:
                self._finish(call, ERROR, f"error: {_describe(e)}")

    async def _drive(self, call, token, policy, semaphore, exclusive_lock) -> None:
        request = call.request
        tool = call.tool

        # validating
        if token.cancelled:
            self._finish(call, CANCELLED, _cancel_text(token))
            return
        try:
            if tool is None:
                known = ", ".join(self.registry.names())
                raise ValidationError(f"unknown tool {request.name!r}. Available: {known}")
            if request.raw_arguments is not None:
                raise ValidationError(
                    f"arguments are not a JSON object: {request.raw_arguments[:200]!r}"
                )
            tool.validate(request.arguments)
        except ValidationError as e:
            call.error = e
            self._finish(
                call, ERROR, f"error: invalid arguments for {request.name}: {e}"
            )
            return

        # awaiting_approval
        if policy.needs_approval(tool):
            self._move(call, AWAITING_APPROVAL)
            try:
                decision = await until_cancelled(policy.request(request), token)
            except CancellationError:
                self._finish(call, CANCELLED, _cancel_text(token))
                return
            if decision == REJECTED:
                self._finish(
                    call, CANCELLED, "error: tool call rejected by user; it was not run"
                )
                return

        # scheduled
        self._move(call, SCHEDULED)
        # Exclusive calls queue on the lock before taking a fan-out slot; a
        # call waiting for the lock holds no slot.
        locked = False
        try:
            if tool.exclusive:
                await until_cancelled(exclusive_lock.acquire(), token)
                locked = True
            await until_cancelled(semaphore.acquire(), token)
            try:
                token.raise_if_cancelled()
                await self._execute(call, token)
            finally:
                semaphore.release()
        except CancellationError:
            self._finish(call, CANCELLED, _cancel_text(token))
        finally:
            if locked:
                exclusive_lock.release()

    async def _execute(self, call: ToolCall, token: CancellationToken) -> None:
        tool = call.tool
        args = call.request.arguments
        self._move(call, EXECUTING)

        if tool.is_async:
            run = asyncio.ensure_future(
                tool.execute(args, token, lambda chunk: self._emit_output(call, chunk))
            )
        else:
            loop = asyncio.get_running_loop()

            def on_output(chunk: str) -> None:
                loop.call_soon_threadsafe(self._emit_output, call, chunk)

            run = asyncio.ensure_future(
                asyncio.to_thread(tool.execute, args, token, on_output)
            )

        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({run, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if not run.done():
            await self._abort(call, run, token)
            return

        try:
            result = run.result()
        except (asyncio.CancelledError, CancellationError) as e:
            call.error = e
            self._finish(
                call, CANCELLED, f"error: tool call cancelled during execution ({e})"
            )
            return
        except AgentError as e:
            call.error = e
            self._finish(call, ERROR, f"error: {_describe(e)}")
            return
        except Exception as e:
            call.error = ExecutionError(f"{call.name} failed: {_describe(e)}")
            call.error.__cause__ = e
            self._finish(call, ERROR, f"error: {_describe(e)}")
            return

        content = result if isinstance(result, str) else json.dumps(result, default=str)
        state = ERROR if content.startswith("error:") else SUCCESS
        self._finish(call, state, content)

    async def _abort(self, call: ToolCall, run: asyncio.Future, token) -> None:
        """Ask a running tool to stop; mark the call cancelled either way."""
        if call.tool.is_async:
            run.cancel()
        # Sync tools stop cooperatively through the token's callbacks; the
        # worker thread cannot be interrupted.
        done, _ = await asyncio.wait({run}, timeout=self.cancel_grace_period)
        if done:
            text = (
                f"error: tool call cancelled during execution ({token.reason}); "
                "side effects may already have been applied"
            )
        else:
            logger.warning(
                "%s did not stop within %.1fs of cancellation",
                call.name,
                self.cancel_grace_period,
            )
            text = (
                f"error: tool call cancelled during execution ({token.reason}); "
                f"the tool did not stop within {self.cancel_grace_period:g}s and "
                "its side effects are not guaranteed to be reversed"
            )
            run.add_done_callback(_consume_result)
        self._finish(call, CANCELLED, text)


def _consume_result(fut: asyncio.Future) -> None:
    if not fut.cancelled():
        fut.exception()


def _cancel_text(token: CancellationToken) -> str:
    return f"error: tool call cancelled before it ran ({token.reason or 'cancelled'})"


def _describe(e: BaseException) -> str:
    return str(e) or type(e).__name__
