"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int, model: str) -> None:
    title = f"Turn {n}/{max_n} (~{token_est} tokens, {model})"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def completion(turns: int, outcome: str) -> None:
    if outcome == "settled":
        _console.print(
            Text(f"  \u2713 Agent finished: {turns} turns", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {turns} turns, outcome={outcome}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


_STATE_STYLES = {
    "validating": "dim",
    "awaiting_approval": "yellow",
    "scheduled": "dim",
    "executing": "cyan",
}


def tool_state(name: str, call_id: str, state: str) -> None:
    line = Text()
    line.append(f"  \u00b7 {name} ", style="dim")
    line.append(f"[{call_id}] ", style="dim")
    line.append(state, style=_STATE_STYLES.get(state, "dim"))
    _console.print(line)


def tool_output(name: str, chunk: str) -> None:
    for line in chunk.splitlines():
        _console.print(Text(f"    \u2502 {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def tool_cancelled(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2298 {name}", style="yellow")
    header.append(f"  {msg}", style="yellow")
    _console.print(header)


def guardrail(tool_name: str, count: int, error: str) -> None:
    line = Text()
    line.append("  \u26a0 Guardrail: ", style="bold yellow")
    line.append(
        f"{tool_name} repeated the same error {count} times. Last error: {error}",
        style="yellow",
    )
    _console.print(line)


# -- Model output ------------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


def thought(text: str) -> None:
    line = Text()
    line.append("  [thought]", style="yellow")
    line.append(f" {text}", style="dim italic")
    _console.print(line)


# -- Loop control ------------------------------------------------------------


def compressed(tokens_before: int, tokens_after: int, tail_start: int) -> None:
    _console.print(
        Text(
            f"  History compressed: ~{tokens_before} -> ~{tokens_after} tokens "
            f"(items before #{tail_start} summarized)",
            style="dim",
        )
    )


def fallback(from_model: str, to_model: str) -> None:
    warning(f"quota exceeded on {from_model}, falling back to {to_model}")


def loop_detected(reason: str) -> None:
    line = Text()
    line.append("  \u26a0 Loop detected: ", style="bold yellow")
    line.append(reason, style="yellow")
    _console.print(line)


def approval_request(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ? ", style="bold yellow")
    header.append(f"{name} wants to run with:", style="bold yellow")
    _console.print(header)
    for line in args_json.splitlines():
        _console.print(Text(f"    {line}", style="dim"))


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text(
            "Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )


def log_handler() -> RichHandler:
    """Logging handler that writes through the same stderr console."""
    return RichHandler(console=_console, show_time=False, show_path=False)
