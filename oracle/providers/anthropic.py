"""Anthropic Claude client using the anthropic SDK with native async. Streaming only."""

import logging
from typing import Any

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from oracle.errors import PromptValidationError
from oracle.models import BackendResponse, ModelRequest, StreamEvent
from oracle.providers.base import TEXT_DELTA, BackendClient

logger = logging.getLogger(__name__)

_DEFAULT_MAX_TOKENS = 8192


def normalize_message(message: Any) -> BackendResponse:
    text_blocks = [b.text for b in (message.content or []) if getattr(b, "type", None) == "text"]
    usage: dict[str, int] = {}
    if message.usage:
        usage["input_tokens"] = int(message.usage.input_tokens)
        usage["output_tokens"] = int(message.usage.output_tokens)
    status = "completed"
    incomplete_reason = None
    if getattr(message, "stop_reason", None) == "max_tokens":
        status = "incomplete"
        incomplete_reason = "max_output_tokens"
    return BackendResponse(
        id=getattr(message, "id", None),
        status=status,
        output_text="\n".join(text_blocks),
        usage=usage,
        incomplete_reason=incomplete_reason,
        request_id=getattr(message, "_request_id", None),
    )


class _AnthropicStream:
    def __init__(self, manager: Any) -> None:
        self._manager = manager
        self._stream: Any = None

    async def __aenter__(self) -> "_AnthropicStream":
        self._stream = await self._manager.__aenter__()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self._manager.__aexit__(*exc_info)

    async def __aiter__(self):
        async for event in self._stream:
            if event.type == "text":
                yield StreamEvent(type=TEXT_DELTA, delta=event.text)

    async def final_response(self) -> BackendResponse:
        return normalize_message(await self._stream.get_final_message())


class AnthropicClient(BackendClient):
    """Anthropic Claude provider via the Messages streaming API."""

    def __init__(self, config: ModelConfig, api_key: str, base_url: str | None = None) -> None:
        super().__init__(config)
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key, base_url=base_url)

    def stream(self, request: ModelRequest) -> _AnthropicStream:
        kwargs: dict[str, Any] = {
            "model": self._config.api_model,
            "max_tokens": request.max_output_tokens or _DEFAULT_MAX_TOKENS,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system_prompt:
            kwargs["system"] = request.system_prompt
        if request.search:
            kwargs["tools"] = [{"type": "web_search_20250305", "name": "web_search", "max_uses": 5}]
        return _AnthropicStream(self._client.messages.stream(**kwargs))

    async def create(self, request: ModelRequest) -> BackendResponse:
        raise PromptValidationError(f"{self._config.name} does not support background runs")

    async def retrieve(self, response_id: str) -> BackendResponse:
        raise PromptValidationError(f"{self._config.name} does not support background runs")
