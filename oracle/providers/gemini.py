"""Gemini client using the google-genai SDK with native async. Streaming only."""

import logging
from typing import Any

from google import genai
from google.genai import types as genai_types

from config.config_loader import ModelConfig
from oracle.errors import PromptValidationError
from oracle.models import BackendResponse, ModelRequest, StreamEvent
from oracle.providers.base import TEXT_DELTA, BackendClient

logger = logging.getLogger(__name__)


class _GeminiStream:
    """Collects streamed chunks so the final response can be rebuilt after iteration."""

    def __init__(self, client: genai.Client, model: str, contents: str, config: genai_types.GenerateContentConfig) -> None:
        self._client = client
        self._model = model
        self._contents = contents
        self._config = config
        self._iterator: Any = None
        self._parts: list[str] = []
        self._usage: Any = None
        self._response_id: str | None = None
        self._finish_reason: Any = None

    async def __aenter__(self) -> "_GeminiStream":
        self._iterator = await self._client.aio.models.generate_content_stream(
            model=self._model,
            contents=self._contents,
            config=self._config,
        )
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    async def __aiter__(self):
        async for chunk in self._iterator:
            if chunk.usage_metadata is not None:
                self._usage = chunk.usage_metadata
            self._response_id = getattr(chunk, "response_id", None) or self._response_id
            if chunk.candidates:
                self._finish_reason = chunk.candidates[0].finish_reason or self._finish_reason
            text = chunk.text
            if text:
                self._parts.append(text)
                yield StreamEvent(type=TEXT_DELTA, delta=text)

    async def final_response(self) -> BackendResponse:
        usage: dict[str, int] = {}
        if self._usage is not None:
            mapping = {
                "input_tokens": self._usage.prompt_token_count,
                "output_tokens": self._usage.candidates_token_count,
                "reasoning_tokens": self._usage.thoughts_token_count,
                "total_tokens": self._usage.total_token_count,
            }
            usage = {k: int(v) for k, v in mapping.items() if v is not None}
        status = "completed"
        incomplete_reason = None
        if self._finish_reason == genai_types.FinishReason.MAX_TOKENS:
            status = "incomplete"
            incomplete_reason = "max_output_tokens"
        return BackendResponse(
            id=self._response_id,
            status=status,
            output_text="".join(self._parts),
            usage=usage,
            incomplete_reason=incomplete_reason,
        )


class GeminiClient(BackendClient):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig, api_key: str, base_url: str | None = None) -> None:
        super().__init__(config)
        http_options = genai_types.HttpOptions(base_url=base_url) if base_url else None
        self._client = genai.Client(api_key=api_key, http_options=http_options)

    def stream(self, request: ModelRequest) -> _GeminiStream:
        tools = [genai_types.Tool(google_search=genai_types.GoogleSearch())] if request.search else None
        config = genai_types.GenerateContentConfig(
            system_instruction=request.system_prompt or None,
            max_output_tokens=request.max_output_tokens,
            tools=tools,
        )
        return _GeminiStream(self._client, self._config.api_model, request.prompt, config)

    async def create(self, request: ModelRequest) -> BackendResponse:
        raise PromptValidationError(f"{self._config.name} does not support background runs")

    async def retrieve(self, response_id: str) -> BackendResponse:
        raise PromptValidationError(f"{self._config.name} does not support background runs")
