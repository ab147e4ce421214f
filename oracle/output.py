"""Rich console output for answers, multi-model sections and session status."""

import logging

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from oracle.format import format_elapsed, format_usd, format_usage_line
from oracle.models import Fulfilled, ModelExecutionOutcome, MultiModelRunSummary, RunState
from oracle.session_store import SessionMetadata

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STATE_STYLES = {
    RunState.PENDING: "dim",
    RunState.RUNNING: "cyan",
    RunState.COMPLETED: "green",
    RunState.ERROR: "red",
    RunState.CANCELLED: "yellow",
}


def stream_chunk(chunk: str) -> bool:
    """Write raw streamed text straight to the console."""
    console.file.write(chunk)
    console.file.flush()
    return True


def print_answer(text: str, plain: bool = False) -> None:
    console.print(Rule("[bold]Answer[/bold]"))
    if not text:
        console.print(Text("(no text output)", style="dim"))
    elif plain:
        console.print(text, markup=False, highlight=False)
    else:
        console.print(Markdown(text))


def print_model_outcome(outcome: ModelExecutionOutcome, body: str | None = None, plain: bool = False) -> None:
    """Print one model's section as soon as it settles."""
    if isinstance(outcome, Fulfilled):
        content = body or outcome.answer_text
        console.print(Rule(f"[bold cyan]{outcome.model}[/bold cyan]"))
        if not content:
            console.print(Text(f"{outcome.model}: (no output recorded)", style="dim"))
        elif plain:
            console.print(content, markup=False, highlight=False)
        else:
            console.print(Markdown(content))
        return
    console.print(
        Panel(
            str(outcome.reason) or type(outcome.reason).__name__,
            title=f"[bold red]{outcome.model}[/bold red] failed",
            border_style="red",
        )
    )


def print_run_summary(summary: MultiModelRunSummary, requested: int) -> None:
    if not summary.rejected:
        style = "green"
    elif summary.fulfilled:
        style = "yellow"
    else:
        style = "red"
    usage = summary.aggregate_usage()
    line = format_usage_line(f"{len(summary.fulfilled)}/{requested} models", usage)
    console.print(Text(f"Finished in {format_elapsed(summary.elapsed_ms / 1000)} ({line})", style=style))


def print_session(meta: SessionMetadata, logs: dict[str, str] | None = None) -> None:
    style = _STATE_STYLES.get(meta.status, "")
    console.print(Rule(f"[bold]Session {meta.id}[/bold]"))
    console.print(Text(f"Status: {meta.status.value} | Created: {meta.created_at}", style=style))
    if meta.prompt_preview:
        console.print(Text(f"Prompt: {meta.prompt_preview[:120]}", style="italic"))
    if meta.error_message:
        console.print(Text(f"Error: {meta.error_message}", style="red"))

    table = Table(show_header=True, header_style="bold")
    table.add_column("Model")
    table.add_column("Status")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for name, run in meta.model_runs.items():
        usage = run.usage or {}
        table.add_row(
            name,
            Text(run.status.value, style=_STATE_STYLES.get(run.status, "")),
            f"{usage.get('total_tokens', 0):,}" if usage else "-",
            format_usd(usage.get("cost")) if usage else "-",
        )
    console.print(table)

    for name, body in (logs or {}).items():
        if body:
            console.print(Rule(f"[bold cyan]{name}[/bold cyan]"))
            console.print(body, markup=False, highlight=False)


def print_session_list(sessions: list[SessionMetadata]) -> None:
    if not sessions:
        console.print("No sessions recorded.")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Session")
    table.add_column("Status")
    table.add_column("Models")
    table.add_column("Created")
    for meta in sessions:
        table.add_row(
            meta.id,
            Text(meta.status.value, style=_STATE_STYLES.get(meta.status, "")),
            ", ".join(meta.models),
            meta.created_at,
        )
    console.print(table)
