"""Error taxonomy (validation / transport / response) and the transport error classifier."""

import asyncio

import anthropic
import httpx
import openai

from oracle.models import BackendResponse, TransportFailure, TransportFailureReason
from oracle.format import format_elapsed

_TIMEOUT_TYPES: tuple[type[BaseException], ...] = (
    openai.APITimeoutError,
    anthropic.APITimeoutError,
    httpx.TimeoutException,
    TimeoutError,
)
_CONNECTION_TYPES: tuple[type[BaseException], ...] = (
    openai.APIConnectionError,
    anthropic.APIConnectionError,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    ConnectionError,
)
_ABORT_TYPES: tuple[type[BaseException], ...] = (asyncio.CancelledError,)

_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
)
_CONNECTION_PATTERNS: tuple[str, ...] = (
    "connection reset",
    "connection aborted",
    "connection closed",
    "connection error",
    "socket hang up",
    "econnreset",
)

_RETRYABLE_REASONS = frozenset({
    TransportFailureReason.CLIENT_TIMEOUT,
    TransportFailureReason.CONNECTION_LOST,
})


class OracleError(Exception):
    """Base class for errors raised by the execution layer."""


class PromptValidationError(OracleError):
    """Bad input, missing credential or over-budget prompt. Never retried."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class OracleTransportError(OracleError):
    """Network/connection level failure, classified into a closed set of reasons."""

    def __init__(self, reason: TransportFailureReason, message: str) -> None:
        self.reason = TransportFailureReason(reason)
        super().__init__(message)

    @property
    def failure(self) -> TransportFailure:
        return TransportFailure(reason=self.reason, message=str(self))


class DeadlineExceededError(OracleTransportError):
    """The run's absolute deadline passed while waiting. Never retried."""

    def __init__(self, message: str) -> None:
        super().__init__(TransportFailureReason.CLIENT_TIMEOUT, message)


class OracleResponseError(OracleError):
    """The backend accepted the job but ended it with a non-success status."""

    def __init__(self, message: str, response: BackendResponse | None = None) -> None:
        self.response = response
        super().__init__(message)

    def response_metadata(self) -> dict[str, str | None]:
        if self.response is None:
            return {}
        return {
            "response_id": self.response.id,
            "request_id": self.response.request_id,
            "status": self.response.status,
            "incomplete_reason": self.response.incomplete_reason,
        }


def _message_of(error: BaseException) -> str:
    try:
        return str(error) or type(error).__name__
    except Exception:
        return type(error).__name__


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def classify_transport_error(error: BaseException) -> TransportFailure:
    """Map any raised error onto the transport failure taxonomy. Never raises."""
    message = _message_of(error)
    if isinstance(error, OracleTransportError):
        return TransportFailure(reason=error.reason, message=message)
    # APITimeoutError subclasses APIConnectionError, so timeouts are checked first
    if isinstance(error, _TIMEOUT_TYPES):
        return TransportFailure(TransportFailureReason.CLIENT_TIMEOUT, message)
    if isinstance(error, _CONNECTION_TYPES):
        return TransportFailure(TransportFailureReason.CONNECTION_LOST, message)
    if isinstance(error, _ABORT_TYPES):
        return TransportFailure(TransportFailureReason.CLIENT_ABORT, message)
    if isinstance(error, OracleError):
        return TransportFailure(TransportFailureReason.UNKNOWN, message)

    haystack = message.lower()
    if _first_match(haystack, _CONNECTION_PATTERNS):
        return TransportFailure(TransportFailureReason.CONNECTION_LOST, message)
    if _first_match(haystack, _TIMEOUT_PATTERNS):
        return TransportFailure(TransportFailureReason.CLIENT_TIMEOUT, message)
    return TransportFailure(TransportFailureReason.UNKNOWN, message)


def to_transport_error(error: BaseException) -> OracleTransportError:
    if isinstance(error, OracleTransportError):
        return error
    failure = classify_transport_error(error)
    return OracleTransportError(failure.reason, failure.message)


def is_retryable_transport_error(error: BaseException) -> bool:
    """Only errors raised by the transport itself qualify, never response failures."""
    if isinstance(error, (OracleResponseError, PromptValidationError, DeadlineExceededError)):
        return False
    return classify_transport_error(error).reason in _RETRYABLE_REASONS


def describe_transport_error(error: OracleTransportError, timeout_sec: float | None = None) -> str:
    if error.reason is TransportFailureReason.CLIENT_TIMEOUT:
        if timeout_sec:
            return f"Request timed out after {format_elapsed(timeout_sec)}."
        return "Request timed out."
    if error.reason is TransportFailureReason.CONNECTION_LOST:
        return f"Connection to the API was lost ({error})."
    if error.reason is TransportFailureReason.CLIENT_ABORT:
        return "Request was aborted before the API replied."
    return f"Transport error: {error}"
