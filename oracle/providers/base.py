"""Abstract backend client: the only integration point with a specific LLM API."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from typing import Protocol

from config.config_loader import ModelConfig
from oracle.models import BackendResponse, ModelRequest

# Event type carrying an incremental piece of answer text
TEXT_DELTA = "response.output_text.delta"
TEXT_DELTA_TYPES = frozenset({TEXT_DELTA, "chunk"})


class ResponseStream(Protocol):
    """Entered with `async with`; iterates StreamEvents, then yields the final response."""

    def __aiter__(self) -> AsyncIterator: ...

    async def final_response(self) -> BackendResponse: ...


class BackendClient(ABC):
    """Streaming + background access to one configured model."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.api_model

    @abstractmethod
    def stream(self, request: ModelRequest) -> AbstractAsyncContextManager[ResponseStream]:
        """Open a streaming call for the request."""
        ...

    @abstractmethod
    async def create(self, request: ModelRequest) -> BackendResponse:
        """Submit a background job. The returned response carries the job id."""
        ...

    @abstractmethod
    async def retrieve(self, response_id: str) -> BackendResponse:
        """Fetch the current state of a background job."""
        ...
