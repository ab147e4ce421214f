"""Pure dataclasses for request execution and multi-model runs. No logic, no deps."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class TransportFailureReason(str, Enum):
    CLIENT_TIMEOUT = "client-timeout"
    CONNECTION_LOST = "connection-lost"
    CLIENT_ABORT = "client-abort"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TransportFailure:
    reason: TransportFailureReason
    message: str


@dataclass(frozen=True)
class FileContent:
    path: str
    content: str


@dataclass(frozen=True)
class ModelRequest:
    """One dispatch to one model. Built per attempt, never mutated."""

    model: str
    prompt: str                      # rendered prompt, file sections included
    system_prompt: str = ""
    max_output_tokens: int | None = None
    search: bool = True
    timeout_sec: float | None = None
    background: bool | None = None   # None: decided by the model's config
    suppress_banner: bool = False    # set when a multi-model run owns the banner
    silent: bool = False


@dataclass(frozen=True)
class StreamEvent:
    type: str
    delta: str | None = None


@dataclass
class BackendResponse:
    """Backend reply normalized across SDKs."""

    id: str | None
    status: str | None
    output_text: str = ""
    usage: dict[str, int] = field(default_factory=dict)   # input/output/reasoning/total_tokens
    error_message: str | None = None
    incomplete_reason: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class UsageSummary:
    input_tokens: int
    output_tokens: int
    reasoning_tokens: int
    total_tokens: int
    cost: float | None = None


@dataclass
class ModelRunResult:
    usage: UsageSummary
    elapsed_ms: float
    raw_response: BackendResponse
    mode: Literal["streamed", "backgrounded"] = "streamed"

    @property
    def answer_text(self) -> str:
        return self.raw_response.output_text


@dataclass
class StreamedResult(ModelRunResult):
    mode: Literal["streamed", "backgrounded"] = "streamed"


@dataclass
class BackgroundedResult(ModelRunResult):
    mode: Literal["streamed", "backgrounded"] = "backgrounded"


@dataclass
class Fulfilled:
    model: str
    usage: UsageSummary
    answer_text: str
    log_path: str | None = None


@dataclass
class Rejected:
    model: str
    reason: BaseException


ModelExecutionOutcome = Fulfilled | Rejected


@dataclass
class MultiModelRunSummary:
    fulfilled: list[Fulfilled] = field(default_factory=list)
    rejected: list[Rejected] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def status(self) -> RunState:
        return RunState.ERROR if self.rejected else RunState.COMPLETED

    def aggregate_usage(self) -> UsageSummary:
        costs = [o.usage.cost for o in self.fulfilled if o.usage.cost is not None]
        return UsageSummary(
            input_tokens=sum(o.usage.input_tokens for o in self.fulfilled),
            output_tokens=sum(o.usage.output_tokens for o in self.fulfilled),
            reasoning_tokens=sum(o.usage.reasoning_tokens for o in self.fulfilled),
            total_tokens=sum(o.usage.total_tokens for o in self.fulfilled),
            cost=sum(costs) if costs else None,
        )
