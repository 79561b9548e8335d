"""Stream events exchanged between the model channel, the loop and the UI."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Content:
    text: str


@dataclass(frozen=True)
class Thought:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool invocation requested by the model.

    ``raw_arguments`` keeps the undecoded argument text when the model sent
    something that was not a JSON object; ``arguments`` is then empty and
    validation rejects the call.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: str | None = None


@dataclass(frozen=True)
class Error:
    message: str
    error: Exception | None = None


@dataclass(frozen=True)
class UserCancelled:
    reason: str = "cancelled by user"


@dataclass(frozen=True)
class ChatCompressed:
    snapshot: Any  # CompressionSnapshot


@dataclass(frozen=True)
class LoopDetected:
    reason: str


@dataclass(frozen=True)
class Finished:
    """End-of-turn marker emitted by the model channel."""

    finish_reason: str = "stop"


@dataclass(frozen=True)
class ToolResult:
    """A tool response, emitted by the loop once a batch has been scheduled."""

    response: Any  # ToolResponse


@dataclass(frozen=True)
class TurnSummary:
    """Last event of every ``ConversationLoop.run``."""

    turns: int
    outcome: str  # settled | exhausted | loop_detected | cancelled | error
    answer: str | None
    model: str


StreamEvent = (
    Content
    | ToolCallRequest
    | Thought
    | Error
    | UserCancelled
    | ChatCompressed
    | LoopDetected
)


class ConversationTurn:
    """One model invocation: the request sent and everything streamed back.

    Mutable while the stream is open, frozen by ``finish()``.
    """

    def __init__(self, index: int, model: str, request_items: int, new_input: str):
        self.index = index
        self.model = model
        self.request_items = request_items
        self.new_input = new_input
        self.content_parts: list[str] = []
        self.thoughts: list[str] = []
        self.tool_requests: list[ToolCallRequest] = []
        self.finish_reason: str | None = None
        self.finished = False

    def _check_open(self):
        if self.finished:
            raise RuntimeError(f"turn {self.index} is already complete")

    def add(self, event) -> None:
        self._check_open()
        if isinstance(event, Content):
            self.content_parts.append(event.text)
        elif isinstance(event, Thought):
            self.thoughts.append(event.text)
        elif isinstance(event, ToolCallRequest):
            self.tool_requests.append(event)

    def finish(self, finish_reason: str = "stop") -> None:
        self._check_open()
        self.finish_reason = finish_reason
        self.tool_requests = list(self.tool_requests)
        self.finished = True

    @property
    def content(self) -> str:
        return "".join(self.content_parts)
