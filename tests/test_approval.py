"""Tests for approval policies and the console approver."""

import asyncio
import types

import pytest

from cairn.approval import (
    APPROVED,
    APPROVED_FOR_SESSION,
    AUTO_APPROVE_ALL,
    AUTO_APPROVE_SAFE,
    MANUAL,
    REJECTED,
    ApprovalPolicy,
    ConsoleApprover,
)
from cairn.events import ToolCallRequest
from cairn.report import ConfigError

SAFE = types.SimpleNamespace(name="read_file", destructive=False)
RISKY = types.SimpleNamespace(name="write_file", destructive=True)


def _request(name="write_file"):
    return ToolCallRequest(id="c1", name=name, arguments={"file_path": "a"})


class _Approver:
    def __init__(self, decision):
        self.decision = decision
        self.calls = 0

    async def request_approval(self, request):
        self.calls += 1
        return self.decision


class TestPolicy:
    def test_unknown_mode(self):
        with pytest.raises(ConfigError, match="invalid approval mode"):
            ApprovalPolicy("yolo")

    def test_manual_asks_for_everything(self):
        policy = ApprovalPolicy(MANUAL)
        assert policy.needs_approval(SAFE)
        assert policy.needs_approval(RISKY)

    def test_auto_approve_safe(self):
        policy = ApprovalPolicy(AUTO_APPROVE_SAFE)
        assert not policy.needs_approval(SAFE)
        assert policy.needs_approval(RISKY)

    def test_auto_approve_all(self):
        policy = ApprovalPolicy(AUTO_APPROVE_ALL)
        assert not policy.needs_approval(RISKY)

    def test_no_approver_rejects(self):
        assert asyncio.run(ApprovalPolicy(MANUAL).request(_request())) == REJECTED

    def test_session_grant_remembered_until_reset(self):
        approver = _Approver(APPROVED_FOR_SESSION)
        policy = ApprovalPolicy(MANUAL, approver)
        assert asyncio.run(policy.request(_request())) == APPROVED_FOR_SESSION
        assert not policy.needs_approval(RISKY)
        assert policy.needs_approval(SAFE)
        policy.reset()
        assert policy.needs_approval(RISKY)

    def test_plain_approval_not_remembered(self):
        policy = ApprovalPolicy(MANUAL, _Approver(APPROVED))
        asyncio.run(policy.request(_request()))
        assert policy.needs_approval(RISKY)

    def test_unknown_decision_rejected(self):
        policy = ApprovalPolicy(MANUAL, _Approver("maybe"))
        with pytest.raises(ValueError):
            asyncio.run(policy.request(_request()))


class _FakePromptSession:
    def __init__(self, *answers):
        self.answers = list(answers)
        self.prompts = 0

    async def prompt_async(self, message):
        self.prompts += 1
        answer = self.answers.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return answer


class TestConsoleApprover:
    @pytest.mark.parametrize(
        "answer, decision",
        [("y", APPROVED), ("No", REJECTED), (" always ", APPROVED_FOR_SESSION)],
    )
    def test_answers(self, answer, decision):
        approver = ConsoleApprover(_FakePromptSession(answer))
        assert asyncio.run(approver.request_approval(_request())) == decision

    def test_reprompts_on_garbage(self):
        session = _FakePromptSession("perhaps", "", "y")
        approver = ConsoleApprover(session)
        assert asyncio.run(approver.request_approval(_request())) == APPROVED
        assert session.prompts == 3

    def test_eof_rejects(self):
        approver = ConsoleApprover(_FakePromptSession(EOFError()))
        assert asyncio.run(approver.request_approval(_request())) == REJECTED
