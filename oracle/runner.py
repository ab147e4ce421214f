"""Single-model execution: validation, credentials, banner, session state, executor."""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from config.config_loader import AppConfig, ModelConfig
from oracle.clock import Clock, SystemClock
from oracle.credentials import mask_api_key, resolve_credentials
from oracle.errors import OracleResponseError, OracleTransportError
from oracle.executor import ExecutionOptions, ModelCallExecutor, OutputSink
from oracle.format import format_elapsed, format_token_estimate, format_usage_line
from oracle.models import ModelRequest, ModelRunResult, RunState
from oracle.providers.registry import ClientFactory, create_client
from oracle.request import get_model_config, resolve_background, resolve_timeout, validate_request
from oracle.session_store import SessionStore, utc_now_iso

logger = logging.getLogger(__name__)

_SHORT_PROMPT_CHARS = 80


@dataclass
class RunDeps:
    """Collaborators for a run. Everything but config has a working default."""

    config: AppConfig
    store: SessionStore | None = None
    client_factory: ClientFactory = create_client
    clock: Clock = field(default_factory=SystemClock)
    write: OutputSink | None = None
    env: Mapping[str, str] | None = None
    api_key: str | None = None
    heartbeat_sec: float | None = None
    max_input_tokens: int | None = None


def _log_banner(request: ModelRequest, model_cfg: ModelConfig, estimated_tokens: int, env_var: str, api_key: str, base_url: str | None) -> None:
    logger.info("Calling %s — %s tokens.", model_cfg.name, format_token_estimate(estimated_tokens))
    resolved = f" (resolved: {model_cfg.api_model})" if model_cfg.api_model != model_cfg.name else ""
    logger.info("Using %s=%s for model %s%s", env_var, mask_api_key(api_key), model_cfg.name, resolved)
    if base_url:
        logger.info("Base URL: %s", base_url)
    if "### File " not in request.prompt:
        logger.info("Tip: no files attached — answers are better with project context. Add files via --file.")
    if len(request.prompt.strip()) < _SHORT_PROMPT_CHARS:
        logger.info("Tip: brief prompts often yield generic answers — aim for 6–30 sentences and attach key files.")
    if model_cfg.long_running:
        logger.info("This model can take up to 60 minutes (usually replies much faster).")


def _model_label(model_cfg: ModelConfig) -> str:
    if model_cfg.reasoning_effort:
        return f"{model_cfg.name}[{model_cfg.reasoning_effort}]"
    return model_cfg.name


async def execute_request(request: ModelRequest, deps: RunDeps, write: OutputSink | None = None) -> ModelRunResult:
    """Validate and run one request. Raises on any failure, never returns a partial result."""
    config = deps.config
    model_cfg = get_model_config(config, request.model)
    credentials = resolve_credentials(model_cfg, env=deps.env, api_key=deps.api_key)
    estimated = validate_request(request, model_cfg, config, deps.max_input_tokens)
    use_background = resolve_background(request, model_cfg)
    timeout_sec = resolve_timeout(request, model_cfg, config)

    if not request.suppress_banner:
        _log_banner(request, model_cfg, estimated, credentials.env_var, credentials.api_key, credentials.base_url)

    client = deps.client_factory(model_cfg, credentials)
    executor = ModelCallExecutor(client, model_cfg, clock=deps.clock, write=write if write is not None else deps.write)
    options = ExecutionOptions(
        timeout_sec=timeout_sec,
        use_background=use_background,
        polling=config.defaults.polling,
        heartbeat_sec=deps.heartbeat_sec if deps.heartbeat_sec is not None else config.defaults.heartbeat_sec,
        estimated_input_tokens=estimated,
    )
    logger.debug("Dispatching %s (background=%s, timeout=%s)", request.model, use_background, format_elapsed(timeout_sec))
    result = await executor.execute(request, options)

    extras: list[str] = []
    if not request.search:
        extras.append("search=off")
    logger.info(
        "Finished %s in %s (%s)",
        request.model,
        format_elapsed(result.elapsed_ms / 1000),
        format_usage_line(_model_label(model_cfg), result.usage, result.raw_response.usage, extras),
    )
    return result


def failure_patch(error: BaseException) -> dict:
    """Session fields describing a failure, written before the error propagates."""
    patch: dict = {
        "status": RunState.ERROR,
        "completed_at": utc_now_iso(),
        "error_message": str(error) or type(error).__name__,
    }
    if isinstance(error, OracleTransportError):
        patch["transport"] = {"reason": error.reason.value}
    if isinstance(error, OracleResponseError):
        patch["response"] = error.response_metadata()
    return patch


async def run_single_model(request: ModelRequest, deps: RunDeps, *, session_id: str | None = None) -> ModelRunResult:
    """Run one model, mirroring its state transitions into the session store."""
    store = deps.store if session_id else None
    if store is not None:
        store.update_session(session_id, status=RunState.RUNNING, started_at=utc_now_iso())
        store.update_model_run(session_id, request.model, status=RunState.RUNNING, started_at=utc_now_iso())

    log_writer = store.create_log_writer(session_id, request.model) if store is not None else None
    sink = deps.write
    if log_writer is not None:
        def sink(chunk: str) -> bool:
            log_writer.write_chunk(chunk)
            return deps.write(chunk) if deps.write is not None else True

    try:
        result = await execute_request(request, deps, write=sink)
    except Exception as exc:
        if store is not None:
            patch = failure_patch(exc)
            store.update_model_run(
                session_id,
                request.model,
                status=RunState.ERROR,
                completed_at=patch["completed_at"],
                error_message=patch["error_message"],
            )
            store.update_session(session_id, **patch)
        raise
    finally:
        if log_writer is not None:
            log_writer.close()

    if store is not None:
        completed_at = utc_now_iso()
        store.update_model_run(
            session_id,
            request.model,
            status=RunState.COMPLETED,
            completed_at=completed_at,
            usage=result.usage,
            log_path=log_writer.path if log_writer is not None else None,
        )
        store.update_session(
            session_id,
            status=RunState.COMPLETED,
            completed_at=completed_at,
            usage=result.usage,
            elapsed_ms=result.elapsed_ms,
            response={
                "response_id": result.raw_response.id,
                "request_id": result.raw_response.request_id,
                "status": result.raw_response.status,
            },
            error_message=None,
            transport=None,
        )
    return result
