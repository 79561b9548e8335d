"""Tool contract, argument validation, registry and built-in tools.

Every capability the model can invoke is a ``Tool``: a name, a JSON schema
for its arguments, two capability flags and an ``execute`` method. The
scheduler dispatches purely through this interface.

``exclusive`` tools touch shared mutable state (the working tree) and are
serialized against each other. ``destructive`` tools need approval unless
the approval policy says otherwise.
"""

import fnmatch
import inspect
import json
import os
import re
import shutil
import subprocess
import sys
import threading
from functools import cached_property
from pathlib import Path
from typing import Annotated, Any, Callable, Literal, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, create_model

from .report import ConfigError, ValidationError

OutputCallback = Callable[[str], None]

_JSON_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
    "null": None,
}

# pydantic error type -> JSON schema type name
_TYPE_ERRORS = {
    "string_type": "string",
    "int_type": "integer",
    "float_type": "number",
    "bool_type": "boolean",
    "list_type": "array",
    "dict_type": "object",
    "model_type": "object",
    "none_required": "null",
}


def _python_type(name: str, spec: dict, model_name: str) -> Any:
    if name == "array" and "items" in spec:
        return list[_annotated(spec["items"], model_name)]
    if name == "object" and "properties" in spec:
        return schema_to_model(model_name, spec)
    return _JSON_TYPES.get(name, Any)


def _annotated(spec: dict, model_name: str) -> Any:
    if "enum" in spec:
        return Literal[tuple(spec["enum"])]
    type_spec = spec.get("type")
    if type_spec is None:
        return Any
    if isinstance(type_spec, list):
        members = tuple(_python_type(n, spec, model_name) for n in type_spec)
        return Union[members] if len(members) > 1 else members[0]

    constraints = {}
    if "minimum" in spec:
        constraints["ge"] = spec["minimum"]
    if "maximum" in spec:
        constraints["le"] = spec["maximum"]
    if "minLength" in spec:
        constraints["min_length"] = spec["minLength"]
    if "maxLength" in spec:
        constraints["max_length"] = spec["maxLength"]
    base = _python_type(type_spec, spec, model_name)
    if constraints:
        return Annotated[base, Field(**constraints)]
    return base


def schema_to_model(name: str, schema: dict) -> type[BaseModel]:
    """Build a strict pydantic model from a tool's JSON argument schema.

    Covers type (incl. type lists), required, properties, enum,
    minimum/maximum, minLength/maxLength, items, nested objects and
    additionalProperties=false. Strict mode keeps JSON's type distinctions:
    no bool for integer and no string-to-number coercion.
    """
    required = set(schema.get("required", []))
    fields = {}
    for prop, spec in schema.get("properties", {}).items():
        annotation = _annotated(spec, f"{name}_{prop}")
        description = spec.get("description")
        if prop in required:
            fields[prop] = (annotation, Field(description=description))
        else:
            fields[prop] = (annotation, Field(default=None, description=description))
    extra = "forbid" if schema.get("additionalProperties") is False else "ignore"
    config = ConfigDict(strict=True, extra=extra, protected_namespaces=())
    return create_model(f"{name}Args", __config__=config, **fields)


def _format_loc(loc: tuple) -> str:
    parts = []
    for part in loc:
        if isinstance(part, int):
            parts.append(f"[{part}]")
        else:
            parts.append(f".{part}" if parts else str(part))
    return "".join(parts)


def _format_error(err: dict) -> str:
    path = _format_loc(err["loc"])
    kind = err["type"]
    ctx = err.get("ctx", {})
    if kind == "missing":
        return f"{path}: required"
    if kind == "extra_forbidden":
        return f"{path}: unexpected argument"
    if kind in _TYPE_ERRORS:
        got = type(err["input"]).__name__
        return f"{path}: expected {_TYPE_ERRORS[kind]}, got {got}"
    if kind == "literal_error":
        return f"{path}: must be one of {ctx['expected']}"
    if kind == "greater_than_equal":
        return f"{path}: must be >= {ctx['ge']}"
    if kind == "less_than_equal":
        return f"{path}: must be <= {ctx['le']}"
    if kind == "string_too_short":
        return f"{path}: must be at least {ctx['min_length']} characters"
    if kind == "string_too_long":
        return f"{path}: must be at most {ctx['max_length']} characters"
    return f"{path}: {err['msg']}"


def validate_arguments(model: type[BaseModel], args: Any) -> None:
    """Check args against a model built by ``schema_to_model``.

    Raises:
        ValidationError: listing every problem found.
    """
    if not isinstance(args, dict):
        raise ValidationError(
            f"arguments must be a JSON object, got {type(args).__name__}"
        )
    try:
        payload = json.dumps(args)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"arguments are not JSON-serializable: {exc}") from exc
    try:
        model.model_validate_json(payload)
    except pydantic.ValidationError as exc:
        problems = list(dict.fromkeys(_format_error(e) for e in exc.errors()))
        raise ValidationError("; ".join(problems)) from exc


class Tool:
    """Base class for everything the model can call."""

    name: str = ""
    description: str = ""
    schema: dict = {"type": "object", "properties": {}}
    exclusive: bool = False
    destructive: bool = False

    @cached_property
    def args_model(self) -> type[BaseModel]:
        return schema_to_model(self.name, self.schema)

    def validate(self, args: dict) -> None:
        """Raise ValidationError if args are unusable. Override to add checks."""
        validate_arguments(self.args_model, args)

    def execute(self, args: dict, token, on_output: OutputCallback | None = None):
        """Run the tool. May be a coroutine function. Returns the result text."""
        raise NotImplementedError

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.execute)

    def to_openai(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.schema,
            },
        }


class FunctionTool(Tool):
    """Adapt a plain callable ``fn(args, token, on_output)`` to the Tool contract."""

    def __init__(
        self,
        name: str,
        fn: Callable,
        *,
        description: str = "",
        schema: dict | None = None,
        exclusive: bool = False,
        destructive: bool = False,
    ):
        self.name = name
        self.description = description
        self.schema = schema or {"type": "object", "properties": {}}
        self.exclusive = exclusive
        self.destructive = destructive
        self._fn = fn

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self._fn)

    def execute(self, args, token, on_output=None):
        return self._fn(args, token, on_output)


class ToolRegistry:
    """Name -> Tool lookup, in registration order."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ConfigError("tool has no name")
        if tool.name in self._tools:
            raise ConfigError(f"tool {tool.name!r} registered twice")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict]:
        """All tools in OpenAI function-calling format."""
        return [tool.to_openai() for tool in self._tools.values()]


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 100
MAX_GREP_MATCHES = 100
MAX_TIMEOUT = 120


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a path and make sure it stays inside base_dir.

    Raises:
        ValueError: If the resolved path escapes the base directory.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(
            f"Path {file_path!r} resolves to {resolved}, "
            f"which is outside base directory {base}"
        )
    return resolved


def _truncate(text: str, limit: int = MAX_OUTPUT_BYTES) -> str:
    data = text.encode("utf-8")
    if len(data) <= limit:
        return text
    return data[:limit].decode("utf-8", errors="ignore") + "\n[truncated at 50KB]"


class _FileTool(Tool):
    def __init__(self, base_dir: str):
        self.base_dir = base_dir


class ReadFileTool(_FileTool):
    name = "read_file"
    description = (
        "Read the contents of a file or list a directory. "
        "For files, returns lines prefixed with line numbers. "
        "Use offset/limit to paginate."
    )
    schema = {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": "Path to the file or directory to read.",
            },
            "offset": {
                "type": "integer",
                "minimum": 1,
                "description": "1-based line number to start reading from.",
            },
            "limit": {
                "type": "integer",
                "minimum": 1,
                "description": "Maximum number of lines to return.",
            },
        },
        "required": ["file_path"],
        "additionalProperties": False,
    }

    def execute(self, args, token, on_output=None):
        file_path = args["file_path"]
        offset = args.get("offset", 1)
        limit = args.get("limit", 2000)
        try:
            resolved = safe_resolve(file_path, self.base_dir)
        except ValueError as exc:
            return f"error: {exc}"
        if not resolved.exists():
            return f"error: path does not exist: {file_path}"

        if resolved.is_dir():
            names = [
                child.name + ("/" if child.is_dir() else "")
                for child in sorted(resolved.iterdir())
            ]
            return _truncate("\n".join(names))

        with open(resolved, "rb") as f:
            if b"\x00" in f.read(BINARY_CHECK_BYTES):
                return f"error: binary file detected: {file_path}"
        try:
            lines = resolved.read_text(encoding="utf-8").splitlines()
        except UnicodeDecodeError as exc:
            return f"error: failed to decode {file_path} as UTF-8: {exc}"

        start = offset - 1
        selected = lines[start : start + limit]
        out = [
            f"{i}: {line[:MAX_LINE_LENGTH]}"
            for i, line in enumerate(selected, start=offset)
        ]
        result = _truncate("\n".join(out))
        remaining = len(lines) - (start + len(selected))
        if remaining > 0:
            result += (
                f"\n[{remaining} more lines, use offset={start + len(selected) + 1} "
                "to continue]"
            )
        return result


class ListFilesTool(_FileTool):
    name = "list_files"
    description = (
        "Recursively list files matching a glob pattern, newest first, "
        "relative to the base directory."
    )
    schema = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": 'Glob pattern, e.g. "**/*.py".',
            },
            "path": {
                "type": "string",
                "description": 'Directory to search in. Defaults to ".".',
            },
        },
        "required": ["pattern"],
        "additionalProperties": False,
    }

    def validate(self, args):
        super().validate(args)
        if ".." in Path(args["pattern"]).parts:
            raise ValidationError("pattern must not contain '..'")

    def execute(self, args, token, on_output=None):
        try:
            root = safe_resolve(args.get("path", "."), self.base_dir)
        except ValueError as exc:
            return f"error: {exc}"
        if not root.is_dir():
            return f"error: not a directory: {args.get('path', '.')}"
        base = Path(self.base_dir).resolve()
        matches = []
        for p in root.glob(args["pattern"]):
            if token is not None and token.cancelled:
                return "error: cancelled"
            if p.is_file() and p.resolve().is_relative_to(base):
                matches.append(p)
        matches.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        shown = [str(p.relative_to(base)) for p in matches[:MAX_LIST_RESULTS]]
        if not shown:
            return "No files found."
        result = "\n".join(shown)
        if len(matches) > MAX_LIST_RESULTS:
            result += f"\n[{len(matches) - MAX_LIST_RESULTS} more files not shown]"
        return result


class GrepTool(_FileTool):
    name = "grep"
    description = "Search file contents with a regular expression."
    schema = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Regular expression."},
            "path": {
                "type": "string",
                "description": 'File or directory to search. Defaults to ".".',
            },
            "include": {
                "type": "string",
                "description": 'Only search files matching this glob, e.g. "*.py".',
            },
        },
        "required": ["pattern"],
        "additionalProperties": False,
    }

    def validate(self, args):
        super().validate(args)
        try:
            re.compile(args["pattern"])
        except re.error as exc:
            raise ValidationError(f"pattern: invalid regex: {exc}") from exc

    def execute(self, args, token, on_output=None):
        regex = re.compile(args["pattern"])
        include = args.get("include")
        try:
            root = safe_resolve(args.get("path", "."), self.base_dir)
        except ValueError as exc:
            return f"error: {exc}"
        base = Path(self.base_dir).resolve()
        files = [root] if root.is_file() else sorted(root.rglob("*"))
        hits = []
        for path in files:
            if token is not None and token.cancelled:
                return "error: cancelled"
            if not path.is_file() or any(part.startswith(".") for part in path.relative_to(base).parts):
                continue
            if include and not fnmatch.fnmatch(path.name, include):
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for lineno, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    hits.append(f"{path.relative_to(base)}:{lineno}: {line[:MAX_LINE_LENGTH]}")
                    if len(hits) >= MAX_GREP_MATCHES:
                        hits.append(f"[stopped after {MAX_GREP_MATCHES} matches]")
                        return _truncate("\n".join(hits))
        return _truncate("\n".join(hits)) if hits else "No matches found."


class WriteFileTool(_FileTool):
    name = "write_file"
    description = (
        "Create or overwrite a file with the given content, creating parent "
        "directories as needed."
    )
    schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file to write."},
            "content": {"type": "string", "description": "The content to write."},
        },
        "required": ["file_path", "content"],
        "additionalProperties": False,
    }
    exclusive = True
    destructive = True

    def execute(self, args, token, on_output=None):
        try:
            resolved = safe_resolve(args["file_path"], self.base_dir)
        except ValueError as exc:
            return f"error: {exc}"
        resolved.parent.mkdir(parents=True, exist_ok=True)
        data = args["content"].encode("utf-8")
        resolved.write_bytes(data)
        return f"Wrote {len(data)} bytes to {args['file_path']}"


class EditFileTool(_FileTool):
    name = "edit_file"
    description = (
        "Make a targeted edit to an existing file by replacing old_string with "
        "new_string. old_string must match exactly once unless replace_all is set."
    )
    schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file to edit."},
            "old_string": {
                "type": "string",
                "minLength": 1,
                "description": "The exact text to find and replace.",
            },
            "new_string": {"type": "string", "description": "The replacement text."},
            "replace_all": {"type": "boolean", "description": "Replace all occurrences."},
        },
        "required": ["file_path", "old_string", "new_string"],
        "additionalProperties": False,
    }
    exclusive = True
    destructive = True

    def execute(self, args, token, on_output=None):
        file_path = args["file_path"]
        try:
            resolved = safe_resolve(file_path, self.base_dir)
        except ValueError as exc:
            return f"error: {exc}"
        if not resolved.is_file():
            return f"error: file does not exist: {file_path}"
        content = resolved.read_text(encoding="utf-8")
        old, new = args["old_string"], args["new_string"]
        count = content.count(old)
        if count == 0:
            return f"error: old_string not found in {file_path}"
        if count > 1 and not args.get("replace_all", False):
            return (
                f"error: old_string occurs {count} times in {file_path}; "
                "add context or set replace_all"
            )
        resolved.write_text(content.replace(old, new), encoding="utf-8")
        return f"Edited {file_path}"


class RunCommandTool(Tool):
    """Run a whitelisted executable, streaming its output line by line."""

    name = "run_command"
    schema = {
        "type": "object",
        "properties": {
            "command": {
                "type": "array",
                "items": {"type": "string"},
                "description": 'Command as array of strings, e.g. ["ls", "-la"].',
            },
            "timeout": {
                "type": "integer",
                "minimum": 1,
                "maximum": MAX_TIMEOUT,
                "description": "Timeout in seconds (default 30).",
            },
        },
        "required": ["command"],
        "additionalProperties": False,
    }
    exclusive = True
    destructive = True

    def __init__(self, base_dir: str, resolved_commands: dict[str, str]):
        self.base_dir = base_dir
        self.resolved_commands = resolved_commands
        self.description = (
            "Run a command and return its output. Allowed commands: "
            f"{', '.join(sorted(resolved_commands))}."
        )

    def validate(self, args):
        super().validate(args)
        command = args["command"]
        if not command:
            raise ValidationError("command: must not be empty")
        if os.path.basename(command[0]) not in self.resolved_commands:
            raise ValidationError(
                f"command: {command[0]!r} is not allowed. Allowed: "
                f"{', '.join(sorted(self.resolved_commands))}"
            )

    def execute(self, args, token, on_output=None):
        command = args["command"]
        timeout = args.get("timeout", 30)
        exe = self.resolved_commands[os.path.basename(command[0])]
        popen_kwargs: dict = dict(
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            cwd=self.base_dir,
            text=True,
            errors="replace",
        )
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True
        try:
            proc = subprocess.Popen([exe] + command[1:], **popen_kwargs)
        except OSError as e:
            return f"error: failed to start command: {e}"

        killed = []

        def _kill():
            killed.append(True)
            proc.kill()

        if token is not None:
            token.add_callback(_kill)
        try:
            timer = threading.Timer(timeout, _kill)
            timer.start()
            lines = []
            for line in proc.stdout:
                lines.append(line)
                if on_output is not None:
                    on_output(line.rstrip("\n"))
            proc.wait()
            timer.cancel()
        finally:
            if token is not None:
                token.remove_callback(_kill)

        output = _truncate("".join(lines))
        if killed:
            if token is not None and token.cancelled:
                return f"error: command cancelled\n{output}"
            return f"error: command timed out after {timeout}s\n{output}"
        if proc.returncode != 0:
            return f"error: exit code {proc.returncode}\n{output}"
        return output or "(no output)"


def resolve_commands(allowed: list[str] | None, base_dir: str) -> dict[str, str]:
    """Map each allowed command basename to an absolute path outside base_dir."""
    resolved: dict[str, str] = {}
    base_resolved = Path(base_dir).resolve()
    for name in sorted(set(allowed or [])):
        cmd_path = shutil.which(name)
        if cmd_path is None:
            raise ConfigError(f"allowed command {name!r} not found on PATH")
        abs_path = Path(cmd_path).resolve()
        if abs_path.is_relative_to(base_resolved):
            raise ConfigError(
                f"allowed command {name!r} resolves to {abs_path}, "
                f"which is inside base directory {base_resolved}. "
                f"Commands inside the workspace can be modified by the model."
            )
        resolved[name] = str(abs_path)
    return resolved


def builtin_tools(
    base_dir: str, resolved_commands: dict[str, str] | None = None
) -> ToolRegistry:
    """Registry with the file tools, plus run_command when commands are allowed."""
    registry = ToolRegistry(
        [
            ReadFileTool(base_dir),
            ListFilesTool(base_dir),
            GrepTool(base_dir),
            WriteFileTool(base_dir),
            EditFileTool(base_dir),
        ]
    )
    if resolved_commands:
        registry.register(RunCommandTool(base_dir, resolved_commands))
    return registry
