"""Detection of a model stuck repeating the same tool call or the same text."""

import difflib
import json
import re
from collections import deque

from .events import Content, ToolCallRequest

DEFAULT_WINDOW = 20
DEFAULT_TOOL_REPEAT_THRESHOLD = 3
DEFAULT_CONTENT_REPEAT_THRESHOLD = 10
DEFAULT_CONTENT_MIN_LENGTH = 8
DEFAULT_CONTENT_SIMILARITY = 0.95
MAX_CONTENT_UNIT = 200

_WS_RE = re.compile(r"\s+")


def tool_signature(request: ToolCallRequest) -> str:
    """name + arguments serialized with sorted keys."""
    if request.raw_arguments is not None:
        args = request.raw_arguments.strip()
    else:
        args = json.dumps(request.arguments, sort_keys=True, separators=(",", ":"))
    return f"{request.name}:{args}"


def normalize_content(text: str) -> str:
    return _WS_RE.sub(" ", text).strip().casefold()


class LoopDetector:
    """Watches the event stream of one user request.

    Two rules, both evaluated on every ``observe`` call:

    - tool calls: the same signature ``tool_repeat_threshold`` times in a
      row (any different signature in between restarts the count);
    - content: ``content_repeat_threshold`` consecutive near-identical lines
      of model text. Streamed text is reassembled into lines first; lines
      shorter than ``content_min_length`` are ignored.

    Once fired, ``observe`` keeps returning True until ``reset()``.
    """

    def __init__(
        self,
        *,
        window: int = DEFAULT_WINDOW,
        tool_repeat_threshold: int = DEFAULT_TOOL_REPEAT_THRESHOLD,
        content_repeat_threshold: int = DEFAULT_CONTENT_REPEAT_THRESHOLD,
        content_min_length: int = DEFAULT_CONTENT_MIN_LENGTH,
        content_similarity: float = DEFAULT_CONTENT_SIMILARITY,
    ):
        if tool_repeat_threshold < 2:
            raise ValueError("tool_repeat_threshold must be at least 2")
        if content_repeat_threshold < 2:
            raise ValueError("content_repeat_threshold must be at least 2")
        if window < max(tool_repeat_threshold, content_repeat_threshold):
            raise ValueError("window must be at least as large as the repeat thresholds")
        self.window = window
        self.tool_repeat_threshold = tool_repeat_threshold
        self.content_repeat_threshold = content_repeat_threshold
        self.content_min_length = content_min_length
        self.content_similarity = content_similarity
        self.reset()

    def reset(self) -> None:
        self._signatures: deque[str] = deque(maxlen=self.window)
        self._lines: deque[str] = deque(maxlen=self.window)
        self._buffer = ""
        self.fired = False
        self.reason: str | None = None

    def checkpoint(self) -> tuple:
        """Opaque copy of the current state, for ``rollback``."""
        return (
            tuple(self._signatures),
            tuple(self._lines),
            self._buffer,
            self.fired,
            self.reason,
        )

    def rollback(self, state: tuple) -> None:
        """Forget everything observed since ``state`` was taken."""
        signatures, lines, self._buffer, self.fired, self.reason = state
        self._signatures = deque(signatures, maxlen=self.window)
        self._lines = deque(lines, maxlen=self.window)

    def observe(self, item) -> bool:
        """Feed one event or tool call. True means stop the request now."""
        if self.fired:
            return True
        request = getattr(item, "request", item)
        if isinstance(request, ToolCallRequest):
            return self._observe_tool(request)
        if isinstance(item, Content):
            return self._observe_content(item.text)
        return False

    def _fire(self, reason: str) -> bool:
        self.fired = True
        self.reason = reason
        return True

    def _observe_tool(self, request: ToolCallRequest) -> bool:
        sig = tool_signature(request)
        self._signatures.append(sig)
        run = 0
        for prev in reversed(self._signatures):
            if prev != sig:
                break
            run += 1
        if run >= self.tool_repeat_threshold:
            return self._fire(
                f"{request.name} was called {run} times in a row with identical arguments"
            )
        return False

    def _observe_content(self, text: str) -> bool:
        self._buffer += text
        *complete, self._buffer = self._buffer.split("\n")
        if len(self._buffer) > MAX_CONTENT_UNIT:
            complete.append(self._buffer)
            self._buffer = ""
        for line in complete:
            if self._observe_line(line):
                return True
        return False

    def _similar(self, a: str, b: str) -> bool:
        if a == b:
            return True
        if self.content_similarity >= 1.0:
            return False
        return difflib.SequenceMatcher(None, a, b).ratio() >= self.content_similarity

    def _observe_line(self, line: str) -> bool:
        norm = normalize_content(line)
        if len(norm) < self.content_min_length:
            return False
        if self._lines and not self._similar(self._lines[-1], norm):
            self._lines.clear()
        self._lines.append(norm)
        if len(self._lines) >= self.content_repeat_threshold:
            preview = norm[:60]
            return self._fire(
                f"the model repeated the same text {len(self._lines)} times: {preview!r}"
            )
        return False
