"""Human-in-the-loop approval of tool calls."""

import asyncio
import json
from typing import Protocol

from . import fmt
from .events import ToolCallRequest
from .report import ConfigError

MANUAL = "manual"
AUTO_APPROVE_ALL = "auto_approve_all"
AUTO_APPROVE_SAFE = "auto_approve_safe"
APPROVAL_MODES = (MANUAL, AUTO_APPROVE_ALL, AUTO_APPROVE_SAFE)

APPROVED = "approved"
REJECTED = "rejected"
APPROVED_FOR_SESSION = "approved_for_session"
DECISIONS = (APPROVED, REJECTED, APPROVED_FOR_SESSION)


class Approver(Protocol):
    async def request_approval(self, request: ToolCallRequest) -> str: ...


class ApprovalPolicy:
    """Decides which calls need a human decision and remembers session grants.

    manual:            every call asks, unless its tool was approved for the session
    auto_approve_safe: only destructive tools ask
    auto_approve_all:  nothing asks

    With no approver attached, calls that need approval are rejected.
    """

    def __init__(self, mode: str = AUTO_APPROVE_SAFE, approver: Approver | None = None):
        if mode not in APPROVAL_MODES:
            raise ConfigError(
                f"invalid approval mode {mode!r}, expected one of: "
                f"{', '.join(APPROVAL_MODES)}"
            )
        self.mode = mode
        self.approver = approver
        self.session_approved: set[str] = set()

    def needs_approval(self, tool) -> bool:
        if self.mode == AUTO_APPROVE_ALL:
            return False
        if tool.name in self.session_approved:
            return False
        if self.mode == AUTO_APPROVE_SAFE:
            return tool.destructive
        return True

    async def request(self, request: ToolCallRequest) -> str:
        if self.approver is None:
            return REJECTED
        decision = await self.approver.request_approval(request)
        if decision not in DECISIONS:
            raise ValueError(f"approver returned unknown decision {decision!r}")
        if decision == APPROVED_FOR_SESSION:
            self.session_approved.add(request.name)
        return decision

    def reset(self) -> None:
        self.session_approved.clear()


class ConsoleApprover:
    """Ask on the terminal via prompt_toolkit.

    Prompts are serialized: a human answers one question at a time, while
    calls that need no approval keep running.
    """

    _ANSWERS = {
        "y": APPROVED,
        "yes": APPROVED,
        "n": REJECTED,
        "no": REJECTED,
        "a": APPROVED_FOR_SESSION,
        "always": APPROVED_FOR_SESSION,
    }

    def __init__(self, session=None):
        self._session = session
        self._lock = asyncio.Lock()

    def _get_session(self):
        if self._session is None:
            from prompt_toolkit import PromptSession

            self._session = PromptSession()
        return self._session

    async def request_approval(self, request: ToolCallRequest) -> str:
        async with self._lock:
            args_json = request.raw_arguments or json.dumps(request.arguments, indent=2)
            fmt.approval_request(request.name, args_json)
            session = self._get_session()
            while True:
                try:
                    answer = await session.prompt_async(
                        "  Allow? [y]es / [n]o / [a]lways for this session: "
                    )
                except (EOFError, KeyboardInterrupt):
                    return REJECTED
                decision = self._ANSWERS.get(answer.strip().lower())
                if decision is not None:
                    return decision
                fmt.warning("please answer y, n or a")
