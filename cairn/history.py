"""Conversation history items, token estimation and checkpoint persistence."""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import tiktoken

from . import fmt
from .events import ToolCallRequest
from .report import AgentError

logger = logging.getLogger(__name__)

_encoder = tiktoken.get_encoding("cl100k_base")

STATE_DIR = ".cairn"
MAX_HISTORY_SIZE = 500 * 1024  # 500KB
SUMMARY_PREFIX = "[conversation summary]"

ROLES = ("user", "model", "tool", "system", "error")

_TAG_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass
class HistoryItem:
    """One role-tagged entry of the persisted conversation."""

    role: str
    content: str = ""
    tool_requests: list[ToolCallRequest] = field(default_factory=list)
    call_id: str | None = None
    name: str | None = None
    is_error: bool = False
    synthetic: bool = False

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown history role {self.role!r}")

    def to_message(self) -> dict:
        """Render as an OpenAI-style chat message."""
        if self.role == "model":
            msg: dict = {"role": "assistant", "content": self.content or None}
            if self.tool_requests:
                msg["tool_calls"] = [
                    {
                        "id": req.id,
                        "type": "function",
                        "function": {
                            "name": req.name,
                            "arguments": _request_arguments(req),
                        },
                    }
                    for req in self.tool_requests
                ]
            return msg
        if self.role == "tool":
            return {
                "role": "tool",
                "tool_call_id": self.call_id,
                "content": self.content,
            }
        if self.role == "error":
            return {"role": "user", "content": f"[error] {self.content}"}
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict:
        d: dict = {"role": self.role, "content": self.content}
        if self.tool_requests:
            d["tool_requests"] = [
                {
                    "id": r.id,
                    "name": r.name,
                    "arguments": r.arguments,
                    "raw_arguments": r.raw_arguments,
                }
                for r in self.tool_requests
            ]
        if self.call_id is not None:
            d["call_id"] = self.call_id
        if self.name is not None:
            d["name"] = self.name
        if self.is_error:
            d["is_error"] = True
        if self.synthetic:
            d["synthetic"] = True
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "HistoryItem":
        requests = [
            ToolCallRequest(
                id=r["id"],
                name=r["name"],
                arguments=r.get("arguments") or {},
                raw_arguments=r.get("raw_arguments"),
            )
            for r in d.get("tool_requests", [])
        ]
        return cls(
            role=d["role"],
            content=d.get("content", ""),
            tool_requests=requests,
            call_id=d.get("call_id"),
            name=d.get("name"),
            is_error=d.get("is_error", False),
            synthetic=d.get("synthetic", False),
        )


def _request_arguments(req: ToolCallRequest) -> str:
    if req.raw_arguments is not None:
        return req.raw_arguments
    return json.dumps(req.arguments)


def to_messages(history: list[HistoryItem]) -> list[dict]:
    return [item.to_message() for item in history]


def estimate_item_tokens(item: HistoryItem) -> int:
    text = item.content or ""
    for req in item.tool_requests:
        text += req.name + _request_arguments(req)
    # Per-message overhead (role, separators) - ~4 tokens each
    return len(_encoder.encode(text)) + 4


def estimate_tokens(history: list[HistoryItem], tools: list | None = None) -> int:
    """Count tokens across all history items using tiktoken."""
    total = sum(estimate_item_tokens(item) for item in history)
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    return total


def group_into_turns(history: list[HistoryItem]) -> list[list[HistoryItem]]:
    """Group items into atomic turns.

    A turn is one of:
    - A single item (system, user, error, or model without tool requests)
    - A model item with tool requests + all its matching tool results
    """
    turns = []
    i = 0
    while i < len(history):
        item = history[i]
        if item.role == "model" and item.tool_requests:
            turn = [item]
            ids = {req.id for req in item.tool_requests}
            j = i + 1
            while j < len(history):
                nxt = history[j]
                if nxt.role == "tool" and nxt.call_id in ids:
                    turn.append(nxt)
                    j += 1
                else:
                    break
            turns.append(turn)
            i = j
        else:
            turns.append([item])
            i += 1
    return turns


def render_transcript(history: list[HistoryItem]) -> str:
    """Plain-text transcript used as input for summarization."""
    lines = []
    for item in history:
        if item.role == "model":
            if item.content:
                lines.append(f"ASSISTANT: {item.content}")
            for req in item.tool_requests:
                lines.append(f"ASSISTANT called {req.name}({_request_arguments(req)})")
        elif item.role == "tool":
            status = "error" if item.is_error else "result"
            lines.append(f"TOOL {item.name} {status}: {item.content}")
        else:
            lines.append(f"{item.role.upper()}: {item.content}")
    return "\n".join(lines)


def last_model_text(history: list[HistoryItem]) -> str | None:
    for item in reversed(history):
        if item.role == "model" and item.content:
            return item.content
    return None


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------


def _safe_state_path(base_dir: str, *parts: str) -> Path:
    """Build a path under <base_dir>/.cairn and verify it stays inside base_dir."""
    base = Path(base_dir).resolve()
    path = Path(base_dir, STATE_DIR, *parts).resolve()
    if not path.is_relative_to(base):
        raise ValueError(f"state path {path} escapes base directory {base}")
    return path


def _checkpoint_path(base_dir: str, tag: str) -> Path:
    if not _TAG_RE.match(tag or ""):
        raise AgentError(
            f"invalid checkpoint tag {tag!r}: use letters, digits, '.', '_' or '-'"
        )
    return _safe_state_path(base_dir, "checkpoints", f"{tag}.json")


def save_checkpoint(
    base_dir: str,
    tag: str,
    history: list[HistoryItem],
    metadata: dict | None = None,
) -> Path:
    """Write a tagged snapshot of the conversation. Overwrites an existing tag."""
    path = _checkpoint_path(base_dir, tag)
    data = {
        "tag": tag,
        "timestamp": datetime.now().astimezone().isoformat(),
        "metadata": metadata or {},
        "history": [item.to_dict() for item in history],
    }
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        tmp.replace(path)
    except OSError as e:
        raise AgentError(f"failed to write checkpoint {tag!r}: {e}") from e
    return path


def load_checkpoint(base_dir: str, tag: str) -> tuple[list[HistoryItem], dict]:
    """Load a checkpoint by tag. Returns (history, metadata)."""
    path = _checkpoint_path(base_dir, tag)
    if not path.is_file():
        raise AgentError(f"no checkpoint named {tag!r}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        history = [HistoryItem.from_dict(d) for d in data["history"]]
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise AgentError(f"checkpoint {tag!r} is unreadable: {e}") from e
    return history, data.get("metadata", {})


def list_checkpoints(base_dir: str) -> list[dict]:
    """Return [{tag, timestamp, items}] for every readable checkpoint, newest first."""
    try:
        directory = _safe_state_path(base_dir, "checkpoints")
    except ValueError:
        return []
    if not directory.is_dir():
        return []
    out = []
    for path in directory.glob("*.json"):
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("skipping unreadable checkpoint %s: %s", path, e)
            continue
        out.append(
            {
                "tag": data.get("tag", path.stem),
                "timestamp": data.get("timestamp", ""),
                "items": len(data.get("history", [])),
            }
        )
    out.sort(key=lambda c: c["timestamp"], reverse=True)
    return out


# ---------------------------------------------------------------------------
# Answer log
# ---------------------------------------------------------------------------


def append_history(base_dir: str, question: str, answer: str) -> None:
    """Append a timestamped Q&A entry to .cairn/HISTORY.md."""
    if not answer or not answer.strip():
        return

    try:
        history_path = _safe_state_path(base_dir, "HISTORY.md")
    except ValueError:
        fmt.warning("history path escapes base directory, skipping write")
        return

    try:
        history_path.parent.mkdir(parents=True, exist_ok=True)

        current_size = history_path.stat().st_size if history_path.exists() else 0
        if current_size >= MAX_HISTORY_SIZE:
            fmt.warning("history file at capacity, skipping write")
            return

        q_display = question[:200] + "..." if len(question) > 200 else question
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        entry = f"---\n\n**{timestamp}** — *{q_display}*\n\n{answer}\n\n"

        with history_path.open("a", encoding="utf-8") as f:
            f.write(entry)
    except OSError:
        fmt.warning("failed to write history entry")
