"""Background job polling: fixed poll cadence plus exponential reconnect backoff."""

import logging
from dataclasses import dataclass

from config.config_loader import PollingConfig
from oracle.clock import Clock, await_before
from oracle.errors import (
    DeadlineExceededError,
    OracleResponseError,
    describe_transport_error,
    is_retryable_transport_error,
    to_transport_error,
)
from oracle.format import format_elapsed
from oracle.models import BackendResponse
from oracle.providers.base import BackendClient

logger = logging.getLogger(__name__)

PENDING_STATUSES = frozenset({"in_progress", "queued"})


def backoff_delay(attempt: int, base_sec: float, max_sec: float) -> float:
    """Delay before reconnect attempt N (1-indexed): min(base * 2^(N-1), max)."""
    return min(base_sec * 2 ** (attempt - 1), max_sec)


def _timeout_error() -> DeadlineExceededError:
    return DeadlineExceededError("Timed out waiting for API background response to finish.")


def response_failure_detail(response: BackendResponse) -> str:
    return response.error_message or response.incomplete_reason or response.status or "unknown"


@dataclass
class _Retrieved:
    response: BackendResponse
    reconnected: bool


class BackgroundPoller:
    """Waits for an accepted background job to reach a terminal state.

    The poll interval is fixed; transport failures while retrieving back off
    separately and the backoff counter resets after every successful retrieval.
    The deadline is absolute: checked before sleeping, after every wake, and
    it also bounds each retrieve call.
    """

    def __init__(self, client: BackendClient, clock: Clock, polling: PollingConfig) -> None:
        self._client = client
        self._clock = clock
        self._polling = polling

    def _check_deadline(self, deadline: float) -> None:
        if self._clock.now() >= deadline:
            raise _timeout_error()

    async def wait_for_completion(
        self,
        response_id: str,
        initial: BackendResponse,
        deadline: float,
        timeout_sec: float | None = None,
    ) -> BackendResponse:
        response = initial
        last_status: str | None = None
        first_cycle = True
        while True:
            status = response.status or "completed"
            if first_cycle:
                first_cycle = False
                logger.info("API background response status=%s. We'll keep retrying automatically.", status)
            elif status != last_status and status != "completed":
                logger.info("API background response status=%s.", status)
            last_status = status

            if status == "completed":
                return response
            if status not in PENDING_STATUSES:
                raise OracleResponseError(f"Response did not complete: {response_failure_detail(response)}", response)

            self._check_deadline(deadline)
            await self._clock.sleep(self._polling.poll_interval_sec)
            self._check_deadline(deadline)

            retrieved = await self._retrieve_with_retry(response_id, deadline, timeout_sec)
            if retrieved.reconnected:
                logger.info(
                    "Reconnected to API background response (status=%s). API is still working...",
                    retrieved.response.status or "in_progress",
                )
            response = retrieved.response

    async def _retrieve_with_retry(
        self,
        response_id: str,
        deadline: float,
        timeout_sec: float | None,
    ) -> _Retrieved:
        attempt = 0
        while True:
            try:
                response = await await_before(self._client.retrieve(response_id), self._clock, deadline, _timeout_error)
                return _Retrieved(response=response, reconnected=attempt > 0)
            except Exception as exc:
                if not is_retryable_transport_error(exc):
                    raise
                transport_error = to_transport_error(exc)
                attempt += 1
                delay = backoff_delay(attempt, self._polling.retry_base_sec, self._polling.retry_max_sec)
                logger.warning(
                    "%s Retrying in %s (attempt %d)...",
                    describe_transport_error(transport_error, timeout_sec),
                    format_elapsed(delay),
                    attempt,
                )
                await self._clock.sleep(delay)
                self._check_deadline(deadline)
