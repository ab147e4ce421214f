"""Multi-model orchestration: concurrent model calls, partial-failure aggregation."""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from oracle.errors import PromptValidationError
from oracle.format import format_elapsed, format_token_estimate, format_usage_line
from oracle.models import (
    FileContent,
    Fulfilled,
    ModelExecutionOutcome,
    MultiModelRunSummary,
    Rejected,
    RunState,
)
from oracle.request import build_model_request, estimate_tokens
from oracle.runner import RunDeps, execute_request, failure_patch
from oracle.session_store import LogWriter, utc_now_iso

logger = logging.getLogger(__name__)

OnModelDone = Callable[[ModelExecutionOutcome], Awaitable[None] | None]


def dedupe_models(models: list[str]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for model in models:
        name = model.strip()
        if name and name not in seen:
            seen.add(name)
            unique.append(name)
    return unique


async def run_multi_model(
    prompt: str,
    models: list[str],
    deps: RunDeps,
    *,
    files: list[FileContent] | None = None,
    cwd: Path | None = None,
    system_prompt: str | None = None,
    max_output_tokens: int | None = None,
    search: bool = True,
    timeout_sec: float | None = None,
    background: bool | None = None,
    session_id: str | None = None,
    on_model_done: OnModelDone | None = None,
) -> MultiModelRunSummary:
    """Send one prompt to every model concurrently and collect every outcome.

    Individual model failures become Rejected outcomes, never exceptions;
    that includes session store writes made on a model's behalf.
    on_model_done fires in settlement order, so a fast model is never held
    back by a slower one listed before it. A callback that raises is logged
    and does not stop collection.

    Raises:
        PromptValidationError: If the model list is empty or names an unknown model.
    """
    targets = dedupe_models(models)
    if not targets:
        raise PromptValidationError("At least one model is required for a multi-model run.")

    config = deps.config
    # Build every request up front so an unknown model fails before anything is dispatched
    requests = {
        model: build_model_request(
            config,
            model,
            prompt,
            files=files,
            cwd=cwd,
            system_prompt=system_prompt,
            max_output_tokens=max_output_tokens,
            search=search,
            timeout_sec=timeout_sec,
            background=background,
            suppress_banner=True,
        )
        for model in targets
    }

    first = requests[targets[0]]
    estimated = estimate_tokens(first.system_prompt) + estimate_tokens(first.prompt)
    files_phrase = f"{len(files)} files" if files else "no files"
    logger.info("Calling %s — %s tokens, %s.", ", ".join(targets), format_token_estimate(estimated), files_phrase)
    if not files:
        logger.info("Tip: no files attached — answers are better with project context. Add files via --file.")

    store = deps.store if session_id else None
    if store is not None:
        store.update_session(session_id, status=RunState.RUNNING, started_at=utc_now_iso())
        # Marked before dispatch so a crash mid-run still leaves visible state
        for model in targets:
            store.update_model_run(session_id, model, status=RunState.RUNNING, started_at=utc_now_iso())

    def record_failure(model: str, exc: Exception) -> None:
        if store is None:
            return
        patch = failure_patch(exc)
        try:
            store.update_model_run(
                session_id,
                model,
                status=RunState.ERROR,
                completed_at=patch["completed_at"],
                error_message=patch["error_message"],
            )
        except Exception:
            logger.exception("Could not record the failure of %s in session %s", model, session_id)

    async def run_one(model: str) -> ModelExecutionOutcome:
        writer: LogWriter | None = None
        try:
            if store is not None:
                writer = store.create_log_writer(session_id, model)
            try:
                result = await execute_request(
                    requests[model],
                    deps,
                    write=writer.write_chunk if writer is not None else _discard,
                )
            finally:
                if writer is not None:
                    writer.close()

            log_path = writer.path if writer is not None else None
            if store is not None:
                store.update_model_run(
                    session_id,
                    model,
                    status=RunState.COMPLETED,
                    completed_at=utc_now_iso(),
                    usage=result.usage,
                    log_path=log_path,
                )
        except Exception as exc:
            logger.warning("%s failed: %s", model, exc)
            record_failure(model, exc)
            return Rejected(model=model, reason=exc)
        return Fulfilled(model=model, usage=result.usage, answer_text=result.answer_text, log_path=log_path)

    start = deps.clock.now()
    tasks = [asyncio.create_task(run_one(model), name=f"oracle:{model}") for model in targets]
    summary = MultiModelRunSummary()
    try:
        for next_done in asyncio.as_completed(tasks):
            outcome = await next_done
            if isinstance(outcome, Fulfilled):
                summary.fulfilled.append(outcome)
            else:
                summary.rejected.append(outcome)
            if on_model_done is not None:
                await _notify(on_model_done, outcome)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
    summary.elapsed_ms = (deps.clock.now() - start) * 1000

    usage = summary.aggregate_usage()
    logger.info(
        "Finished in %s (%s)",
        format_elapsed(summary.elapsed_ms / 1000),
        format_usage_line(f"{len(summary.fulfilled)}/{len(targets)} models", usage),
    )

    if store is not None:
        patch: dict = {
            "status": summary.status,
            "completed_at": utc_now_iso(),
            "usage": usage,
            "elapsed_ms": summary.elapsed_ms,
        }
        if summary.rejected:
            first_failure = failure_patch(summary.rejected[0].reason)
            patch["error_message"] = f"{summary.rejected[0].model}: {first_failure['error_message']}"
        store.update_session(session_id, **patch)
    return summary


def _discard(chunk: str) -> bool:
    return True


async def _notify(on_model_done: OnModelDone, outcome: ModelExecutionOutcome) -> None:
    try:
        maybe_awaitable = on_model_done(outcome)
        if inspect.isawaitable(maybe_awaitable):
            await maybe_awaitable
    except Exception:
        logger.exception("on_model_done failed for %s", outcome.model)
