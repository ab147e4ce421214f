"""OpenAI Responses API client using the openai SDK with native async."""

import logging
from typing import Any

from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from oracle.models import BackendResponse, ModelRequest, StreamEvent
from oracle.providers.base import BackendClient

logger = logging.getLogger(__name__)


def build_request_body(config: ModelConfig, request: ModelRequest, *, background: bool = False) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": config.api_model,
        "instructions": request.system_prompt,
        "input": [
            {
                "role": "user",
                "content": [{"type": "input_text", "text": request.prompt}],
            }
        ],
    }
    if request.search:
        body["tools"] = [{"type": "web_search_preview"}]
    if config.reasoning_effort:
        body["reasoning"] = {"effort": config.reasoning_effort}
    if request.max_output_tokens:
        body["max_output_tokens"] = request.max_output_tokens
    if background:
        body["background"] = True
        body["store"] = True
    return body


def normalize_response(response: Any) -> BackendResponse:
    """Flatten an SDK Response object into a BackendResponse."""
    usage: dict[str, int] = {}
    raw_usage = getattr(response, "usage", None)
    if raw_usage is not None:
        for key in ("input_tokens", "output_tokens", "total_tokens"):
            value = getattr(raw_usage, key, None)
            if value is not None:
                usage[key] = int(value)
        details = getattr(raw_usage, "output_tokens_details", None)
        reasoning = getattr(details, "reasoning_tokens", None) if details is not None else None
        if reasoning is not None:
            usage["reasoning_tokens"] = int(reasoning)

    error = getattr(response, "error", None)
    incomplete = getattr(response, "incomplete_details", None)
    return BackendResponse(
        id=getattr(response, "id", None),
        status=getattr(response, "status", None),
        output_text=getattr(response, "output_text", "") or "",
        usage=usage,
        error_message=getattr(error, "message", None) if error is not None else None,
        incomplete_reason=getattr(incomplete, "reason", None) if incomplete is not None else None,
        request_id=getattr(response, "_request_id", None),
    )


class _OpenAIStream:
    """Adapts the SDK's AsyncResponseStreamManager to the ResponseStream protocol."""

    def __init__(self, manager: Any) -> None:
        self._manager = manager
        self._stream: Any = None

    async def __aenter__(self) -> "_OpenAIStream":
        self._stream = await self._manager.__aenter__()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self._manager.__aexit__(*exc_info)

    async def __aiter__(self):
        async for event in self._stream:
            yield StreamEvent(type=event.type, delta=getattr(event, "delta", None))

    async def final_response(self) -> BackendResponse:
        return normalize_response(await self._stream.get_final_response())


class OpenAIClient(BackendClient):
    """OpenAI provider via the Responses API (streaming and background jobs)."""

    def __init__(self, config: ModelConfig, api_key: str, base_url: str | None = None) -> None:
        super().__init__(config)
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    def stream(self, request: ModelRequest) -> _OpenAIStream:
        body = build_request_body(self._config, request)
        return _OpenAIStream(self._client.responses.stream(**body))

    async def create(self, request: ModelRequest) -> BackendResponse:
        body = build_request_body(self._config, request, background=True)
        response = await self._client.responses.create(**body)
        return normalize_response(response)

    async def retrieve(self, response_id: str) -> BackendResponse:
        response = await self._client.responses.retrieve(response_id)
        return normalize_response(response)
