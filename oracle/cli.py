"""Click CLI — loads config, builds requests, runs one or many models, prints results."""

import asyncio
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.logging import RichHandler

from config.config_loader import AppConfig, load_config
from oracle.errors import OracleError
from oracle.models import FileContent, ModelExecutionOutcome
from oracle.multi_model import dedupe_models, run_multi_model
from oracle.output import (
    console,
    print_answer,
    print_model_outcome,
    print_run_summary,
    print_session,
    print_session_list,
    stream_chunk,
)
from oracle.prompt_file import parse_prompt_file
from oracle.request import build_model_request, get_model_config, read_attachments, resolve_background
from oracle.runner import RunDeps, run_single_model
from oracle.session_store import FileSessionStore

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )
    # SDK transport chatter is only useful when debugging
    for name in ("httpx", "httpcore", "openai", "anthropic", "google_genai"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _load_config_or_exit() -> AppConfig:
    try:
        return load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)


async def _run_single(
    config: AppConfig,
    store: FileSessionStore,
    model: str,
    prompt: str,
    files: list[FileContent],
    *,
    system: str | None,
    max_output: int | None,
    search: bool,
    timeout: float | None,
    background: bool | None,
    silent: bool,
    plain: bool,
) -> None:
    request = build_model_request(
        config,
        model,
        prompt,
        files=files,
        system_prompt=system,
        max_output_tokens=max_output,
        search=search,
        timeout_sec=timeout,
        background=background,
        silent=silent,
    )
    # A background answer arrives in one piece, so it is rendered instead of streamed
    backgrounded = resolve_background(request, get_model_config(config, model))
    session = store.create_session(prompt, [model], {"search": search, "background": background})
    deps = RunDeps(config=config, store=store, write=None if silent or backgrounded else stream_chunk)
    result = await run_single_model(request, deps, session_id=session.id)
    if backgrounded and not silent:
        print_answer(result.answer_text, plain=plain)
    console.print(f"[dim]Session: {session.id}[/dim]")


async def _run_multi(
    config: AppConfig,
    store: FileSessionStore,
    models: list[str],
    prompt: str,
    files: list[FileContent],
    *,
    system: str | None,
    max_output: int | None,
    search: bool,
    timeout: float | None,
    background: bool | None,
    silent: bool,
    plain: bool,
) -> bool:
    """Returns True when every model succeeded."""
    session = store.create_session(prompt, models, {"search": search, "background": background})
    deps = RunDeps(config=config, store=store)

    def on_model_done(outcome: ModelExecutionOutcome) -> None:
        if not silent:
            body = store.read_model_log(session.id, outcome.model)
            print_model_outcome(outcome, body=body, plain=plain)

    summary = await run_multi_model(
        prompt,
        models,
        deps,
        files=files,
        system_prompt=system,
        max_output_tokens=max_output,
        search=search,
        timeout_sec=timeout,
        background=background,
        session_id=session.id,
        on_model_done=on_model_done,
    )
    print_run_summary(summary, requested=len(models))
    console.print(f"[dim]Session: {session.id}[/dim]")
    return not summary.rejected


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """Oracle -- send one prompt to one or more LLM backends.

    \b
    Examples:
      oracle ask "Review this retry loop for races" --file src/poller.py
      oracle ask "Which cache eviction policy fits?" -m gpt-5.1 -m gemini-3-pro
      oracle ask --prompt-file question.md --background
      oracle session
      oracle session review-this-retry-loop-a1b2c3
    """
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)
    ctx.obj = _load_config_or_exit()


@main.command()
@click.argument("prompt", required=False)
@click.option("-m", "--model", "models", multiple=True, help="Model to query; repeat for a multi-model run")
@click.option("--file", "files", multiple=True, type=click.Path(exists=True), help="Attach a file as context")
@click.option("--prompt-file", type=click.Path(exists=True), help="Read the prompt (and frontmatter options) from a .md file")
@click.option("--background/--no-background", default=None, help="Force or disable background execution")
@click.option("--timeout", type=float, default=None, help="Timeout in seconds (default: per model)")
@click.option("--search/--no-search", default=None, help="Enable the backend's search tool (default: on)")
@click.option("--max-output", type=int, default=None, help="Cap on output tokens")
@click.option("--system", default=None, help="Override the system prompt")
@click.option("--silent", is_flag=True, help="Do not print the answer")
@click.option("--plain", is_flag=True, help="Print answers as plain text instead of rendered markdown")
@click.pass_obj
def ask(
    config: AppConfig,
    prompt: str | None,
    models: tuple[str, ...],
    files: tuple[str, ...],
    prompt_file: str | None,
    background: bool | None,
    timeout: float | None,
    search: bool | None,
    max_output: int | None,
    system: str | None,
    silent: bool,
    plain: bool,
) -> None:
    """Send PROMPT to one or more models."""
    file_models: list[str] = []
    if prompt_file:
        parsed = parse_prompt_file(Path(prompt_file))
        prompt = prompt or parsed.prompt
        file_models = parsed.models
        # CLI flags win; frontmatter only fills unset options
        background = background if background is not None else parsed.background
        search = search if search is not None else parsed.search
        timeout = timeout if timeout is not None else parsed.timeout_sec
        max_output = max_output if max_output is not None else parsed.max_output_tokens

    if not prompt:
        console.print("[bold red]Error:[/bold red] Provide a PROMPT argument or --prompt-file.")
        sys.exit(1)

    targets = dedupe_models(list(models) or file_models or [config.defaults.model])
    search_enabled = search if search is not None else True
    store = FileSessionStore(config.defaults.sessions_dir)

    try:
        attachments = read_attachments(list(files))
        kwargs = dict(
            system=system,
            max_output=max_output,
            search=search_enabled,
            timeout=timeout,
            background=background,
            silent=silent,
            plain=plain,
        )
        if len(targets) == 1:
            asyncio.run(_run_single(config, store, targets[0], prompt, attachments, **kwargs))
            return
        all_ok = asyncio.run(_run_multi(config, store, targets, prompt, attachments, **kwargs))
    except OracleError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    if not all_ok:
        sys.exit(1)


@main.command()
@click.argument("session_id", required=False)
@click.option("--limit", default=20, show_default=True, help="How many recent sessions to list")
@click.pass_obj
def session(config: AppConfig, session_id: str | None, limit: int) -> None:
    """Show a session's status and answers, or list recent sessions."""
    store = FileSessionStore(config.defaults.sessions_dir)
    if not session_id:
        print_session_list(store.list_sessions(limit=limit))
        return
    meta = store.read_session(session_id)
    if meta is None:
        console.print(f"[bold red]Error:[/bold red] No session named {session_id}")
        sys.exit(1)
    logs = {model: store.read_model_log(session_id, model) for model in meta.model_runs}
    print_session(meta, logs)


if __name__ == "__main__":
    main()
