"""Configuration file loading and merging for cairn.

Reads TOML config from ~/.config/cairn/config.toml (global) and
<base_dir>/cairn.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .approval import APPROVAL_MODES
from .model import PROVIDERS
from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "fallback_model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "max_turns": int,
    "token_limit": int,
    "compression_threshold": (int, float),
    "preserve_fraction": (int, float),
    "loop_window": int,
    "loop_repeat_threshold": int,
    "content_repeat_threshold": int,
    "approval_mode": str,
    "max_concurrency": int,
    "cancel_grace_period": (int, float),
    "allowed_commands": list,
    "system_prompt": str,
    "no_history": bool,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"allowed_commands"}

_CHOICES: dict[str, tuple[str, ...]] = {
    "provider": PROVIDERS,
    "approval_mode": APPROVAL_MODES,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "lmstudio",
    "model": None,
    "fallback_model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 8192,
    "temperature": None,
    "max_turns": 50,
    "token_limit": 128_000,
    "compression_threshold": 0.7,
    "preserve_fraction": 0.3,
    "loop_window": 20,
    "loop_repeat_threshold": 3,
    "content_repeat_threshold": 10,
    "approval_mode": "auto_approve_safe",
    "max_concurrency": 4,
    "cancel_grace_period": 2.0,
    "allowed_commands": None,
    "system_prompt": None,
    "no_history": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "cairn"
    return Path.home() / ".config" / "cairn"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value ranges in a parsed config dict.

    Raises ConfigError for type mismatches or invalid values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

        if key in _CHOICES and value not in _CHOICES[key]:
            raise ConfigError(
                f"{source}: {key!r} must be one of {', '.join(_CHOICES[key])}, got {value!r}"
            )

    for key in ("compression_threshold", "preserve_fraction"):
        if key in config and not 0 < config[key] < 1:
            raise ConfigError(f"{source}: {key!r} must be between 0 and 1")
    for key in ("max_turns", "token_limit", "max_concurrency", "max_output_tokens"):
        if key in config and config[key] < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1")
    for key in ("loop_repeat_threshold", "content_repeat_threshold"):
        if key in config and config[key] < 2:
            raise ConfigError(f"{source}: {key!r} must be at least 2")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    # Walk up from config file looking for .git
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "cairn.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        if key == "allowed_commands":
            value = ",".join(value)
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    no_history -> history (inverted), quiet -> verbose (inverted).
    Drops keys that aren't Session concerns (color).
    """
    kwargs = {}
    _INVERT_KEYS = {
        "no_history": "history",
        "quiet": "verbose",
    }

    for key, value in config.items():
        if key == "color":
            continue
        if key in _INVERT_KEYS:
            kwargs[_INVERT_KEYS[key]] = not value
        else:
            kwargs[key] = value

    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# cairn configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/cairn.toml' if project else '~/.config/cairn/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "lmstudio"          # "lmstudio" | "openrouter" | "generic" | "litellm"',
        '# model = "qwen/qwen3-coder-30b"',
        '# fallback_model = "qwen/qwen3-8b"   # used once after a quota error',
        '# api_key = "sk-or-..."            # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 8192",
        "# temperature = 0.7",
        "",
        "# --- Conversation loop ---",
        "# max_turns = 50",
        "# token_limit = 128000",
        "# compression_threshold = 0.7",
        "# preserve_fraction = 0.3",
        '# system_prompt = "You are a helpful assistant."',
        "",
        "# --- Loop detection ---",
        "# loop_window = 20",
        "# loop_repeat_threshold = 3",
        "# content_repeat_threshold = 10",
        "",
        "# --- Tools ---",
        '# approval_mode = "auto_approve_safe"   # "manual" | "auto_approve_all" | "auto_approve_safe"',
        "# max_concurrency = 4",
        "# cancel_grace_period = 2.0",
        '# allowed_commands = ["ls", "git", "python3"]',
        "",
        "# --- Output ---",
        "# no_history = false",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
