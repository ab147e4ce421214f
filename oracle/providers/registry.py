"""Map a model's configured sdk to the backend client class that speaks it."""

from collections.abc import Callable

from config.config_loader import ModelConfig
from oracle.credentials import Credentials
from oracle.errors import PromptValidationError
from oracle.providers.anthropic import AnthropicClient
from oracle.providers.base import BackendClient
from oracle.providers.gemini import GeminiClient
from oracle.providers.openai_provider import OpenAIClient

ClientFactory = Callable[[ModelConfig, Credentials], BackendClient]

CLIENT_CLASSES: dict[str, type[BackendClient]] = {
    "openai": OpenAIClient,
    "anthropic": AnthropicClient,
    "gemini": GeminiClient,
}


def create_client(config: ModelConfig, credentials: Credentials) -> BackendClient:
    client_cls = CLIENT_CLASSES.get(config.sdk)
    if client_cls is None:
        raise PromptValidationError(f"Unknown sdk '{config.sdk}' for model {config.name}", {"sdk": config.sdk})
    return client_cls(config, credentials.api_key, base_url=credentials.base_url)
