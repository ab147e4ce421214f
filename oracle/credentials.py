"""Resolve the API key and endpoint for a configured model."""

import os
from collections.abc import Mapping
from dataclasses import dataclass

from config.config_loader import ModelConfig
from oracle.errors import PromptValidationError


@dataclass(frozen=True)
class Credentials:
    api_key: str
    env_var: str
    base_url: str | None = None


def resolve_credentials(
    config: ModelConfig,
    env: Mapping[str, str] | None = None,
    api_key: str | None = None,
) -> Credentials:
    """Explicit key wins over the environment. Raises PromptValidationError when none is set."""
    environ = os.environ if env is None else env
    key = (api_key or environ.get(config.api_key_env, "")).strip()
    if not key:
        raise PromptValidationError(
            f"Missing {config.api_key_env}. Set it via the environment or a .env file.",
            {"env": config.api_key_env},
        )
    base_url = config.base_url
    if not base_url and config.base_url_env:
        base_url = environ.get(config.base_url_env, "").strip() or None
    return Credentials(api_key=key, env_var=config.api_key_env, base_url=base_url)


def mask_api_key(key: str) -> str:
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}****{key[-4:]}"
