"""Model Call Executor: one request to one backend, streaming or background."""

import contextlib
import logging
import math
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

from config.config_loader import ModelConfig, PollingConfig
from oracle.clock import Clock, SystemClock, await_before
from oracle.errors import (
    DeadlineExceededError,
    OracleError,
    OracleResponseError,
    describe_transport_error,
    to_transport_error,
)
from oracle.format import format_elapsed
from oracle.heartbeat import heartbeat
from oracle.models import (
    BackendResponse,
    BackgroundedResult,
    ModelRequest,
    ModelRunResult,
    StreamedResult,
    UsageSummary,
)
from oracle.poller import PENDING_STATUSES, BackgroundPoller, response_failure_detail
from oracle.providers.base import TEXT_DELTA_TYPES, BackendClient

logger = logging.getLogger(__name__)

# Sink for streamed answer text; the return value is only a backpressure hint
OutputSink = Callable[[str], bool]


@dataclass
class ExecutionOptions:
    timeout_sec: float
    use_background: bool
    polling: PollingConfig = field(default_factory=PollingConfig)
    heartbeat_sec: float | None = None
    estimated_input_tokens: int = 0


def compute_usage(response: BackendResponse, model_cfg: ModelConfig, estimated_input_tokens: int = 0) -> UsageSummary:
    """Fill every token field, falling back to the estimate / zero / sum when unreported."""
    usage = response.usage or {}
    input_tokens = usage.get("input_tokens")
    if input_tokens is None:
        input_tokens = estimated_input_tokens
    output_tokens = usage.get("output_tokens") or 0
    reasoning_tokens = usage.get("reasoning_tokens") or 0
    total_tokens = usage.get("total_tokens")
    if total_tokens is None:
        total_tokens = input_tokens + output_tokens + reasoning_tokens

    cost: float | None = None
    if model_cfg.pricing is not None:
        cost = (
            input_tokens * model_cfg.pricing.input_per_token
            + output_tokens * model_cfg.pricing.output_per_token
        )
        if not math.isfinite(cost) or cost < 0:
            cost = None
    return UsageSummary(
        input_tokens=int(input_tokens),
        output_tokens=int(output_tokens),
        reasoning_tokens=int(reasoning_tokens),
        total_tokens=int(total_tokens),
        cost=cost,
    )


def _remaining_label(remaining_sec: float) -> str:
    if remaining_sec >= 60:
        return f"{math.ceil(remaining_sec / 60)} min"
    return f"{max(1, math.ceil(remaining_sec))}s"


class ModelCallExecutor:
    """Executes a single ModelRequest against a single BackendClient.

    Every raised error is either an OracleError from this layer or the
    classified OracleTransportError for whatever the client raised.
    """

    def __init__(
        self,
        client: BackendClient,
        model_cfg: ModelConfig,
        clock: Clock | None = None,
        write: OutputSink | None = None,
    ) -> None:
        self._client = client
        self._model_cfg = model_cfg
        self._clock = clock or SystemClock()
        self._write = write

    def _emit(self, chunk: str) -> bool:
        if self._write is None:
            return True
        return self._write(chunk)

    async def execute(self, request: ModelRequest, options: ExecutionOptions) -> ModelRunResult:
        start = self._clock.now()
        deadline = start + options.timeout_sec
        try:
            if options.use_background:
                response = await self._run_background(request, options, deadline)
                result_cls: type[ModelRunResult] = BackgroundedResult
            else:
                response = await self._run_streaming(request, options, deadline)
                result_cls = StreamedResult
        except OracleError:
            raise
        except Exception as exc:
            raise to_transport_error(exc) from exc
        elapsed_ms = (self._clock.now() - start) * 1000

        usage = compute_usage(response, self._model_cfg, options.estimated_input_tokens)
        return result_cls(usage=usage, elapsed_ms=elapsed_ms, raw_response=response)

    def _timeout_error(self, timeout_sec: float) -> DeadlineExceededError:
        return DeadlineExceededError(f"Timed out waiting for API response after {format_elapsed(timeout_sec)}.")

    async def _before_deadline(self, awaitable, deadline: float, timeout_sec: float):
        return await await_before(awaitable, self._clock, deadline, lambda: self._timeout_error(timeout_sec))

    async def _next_event(self, iterator: AsyncIterator, deadline: float, timeout_sec: float):
        if self._clock.now() >= deadline:
            raise self._timeout_error(timeout_sec)
        return await self._before_deadline(iterator.__anext__(), deadline, timeout_sec)

    async def _run_streaming(self, request: ModelRequest, options: ExecutionOptions, deadline: float) -> BackendResponse:
        timeout_sec = options.timeout_sec
        saw_text = False

        def make_message(elapsed: float) -> str:
            remaining = max(timeout_sec - elapsed, 0)
            return (
                f"API connection active — {format_elapsed(elapsed)} elapsed. "
                f"Timeout in ~{_remaining_label(remaining)} if no response."
            )

        async with heartbeat(options.heartbeat_sec, make_message, self._clock) as beat:
            try:
                async with contextlib.AsyncExitStack() as stack:
                    stream = await self._before_deadline(
                        stack.enter_async_context(self._client.stream(request)), deadline, timeout_sec
                    )
                    iterator = stream.__aiter__()
                    while True:
                        try:
                            event = await self._next_event(iterator, deadline, timeout_sec)
                        except StopAsyncIteration:
                            break
                        if event.type in TEXT_DELTA_TYPES:
                            beat.stop()
                            saw_text = True
                            if not request.silent and isinstance(event.delta, str):
                                self._emit(event.delta)
                        if self._clock.now() >= deadline:
                            raise self._timeout_error(timeout_sec)
                    response = await self._before_deadline(stream.final_response(), deadline, timeout_sec)
                if self._clock.now() >= deadline:
                    raise self._timeout_error(timeout_sec)
            except Exception as exc:
                transport_error = to_transport_error(exc)
                logger.warning("%s %s", request.model, describe_transport_error(transport_error, timeout_sec))
                if transport_error is exc:
                    raise
                raise transport_error from exc

        if saw_text and not request.silent:
            self._emit("\n")

        logger.debug("%s response status: %s", request.model, response.status or "completed")
        if response.status and response.status != "completed":
            if response.id and response.status == "in_progress":
                response = await self._grace_poll(request, response, options.polling, deadline, timeout_sec)
            if response.status != "completed":
                reason = f", reason={response.incomplete_reason}" if response.incomplete_reason else ""
                logger.warning("API ended the run early (status=%s%s).", response.status, reason)
                raise OracleResponseError(f"Response did not complete: {response_failure_detail(response)}", response)
        return response

    async def _grace_poll(
        self,
        request: ModelRequest,
        response: BackendResponse,
        polling: PollingConfig,
        deadline: float,
        timeout_sec: float,
    ) -> BackendResponse:
        """Short poll for a response still finalizing after its stream closed.

        Bounded by grace_max_sec and by the run deadline, whichever comes first.
        """
        logger.info("%s response still in_progress; polling until completion...", request.model)
        started = self._clock.now()
        while self._clock.now() - started < polling.grace_max_sec:
            await self._clock.sleep(polling.grace_interval_sec)
            if self._clock.now() >= deadline:
                error = self._timeout_error(timeout_sec)
                logger.warning("%s %s", request.model, describe_transport_error(error, timeout_sec))
                raise error
            response = await self._before_deadline(self._client.retrieve(response.id), deadline, timeout_sec)
            if response.status not in PENDING_STATUSES:
                return response
        return response

    async def _run_background(self, request: ModelRequest, options: ExecutionOptions, deadline: float) -> BackendResponse:
        initial = await self._before_deadline(self._client.create(request), deadline, options.timeout_sec)
        if initial is None or not initial.id:
            raise OracleResponseError("API did not return a response ID for the background run.", initial)
        logger.info(
            "API scheduled background response %s (status=%s). Monitoring up to %s for completion...",
            initial.id,
            initial.status or "unknown",
            format_elapsed(options.timeout_sec),
        )

        def make_message(elapsed: float) -> str:
            return f"API background run still in progress — {format_elapsed(elapsed)} elapsed."

        poller = BackgroundPoller(self._client, self._clock, options.polling)
        async with heartbeat(options.heartbeat_sec, make_message, self._clock):
            response = await poller.wait_for_completion(initial.id, initial, deadline, options.timeout_sec)

        if not request.silent and response.output_text:
            self._emit(response.output_text)
            self._emit("\n")
        return response
