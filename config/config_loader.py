"""Load settings.yaml into typed dataclasses. Reports which models have API keys."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class PricingConfig:
    input_per_million: float
    output_per_million: float

    @property
    def input_per_token(self) -> float:
        return self.input_per_million / 1_000_000

    @property
    def output_per_token(self) -> float:
        return self.output_per_million / 1_000_000


@dataclass
class ModelConfig:
    name: str
    sdk: str
    api_model: str
    api_key_env: str
    input_limit: int
    base_url_env: str | None = None
    base_url: str | None = None
    max_output_tokens: int | None = None
    pricing: PricingConfig | None = None
    reasoning_effort: str | None = None
    long_running: bool = False
    supports_background: bool = False
    supports_search: bool = False
    timeout_sec: float | None = None


@dataclass
class PollingConfig:
    poll_interval_sec: float = 5.0
    retry_base_sec: float = 3.0
    retry_max_sec: float = 15.0
    grace_interval_sec: float = 2.0
    grace_max_sec: float = 60.0


@dataclass
class DefaultsConfig:
    model: str
    system_prompt: str
    timeout_sec: float = 120.0
    long_running_timeout_sec: float = 3600.0
    heartbeat_sec: float = 30.0
    min_prompt_chars: int = 20
    sessions_dir: Path = field(default_factory=lambda: Path.home() / ".oracle" / "sessions")
    polling: PollingConfig = field(default_factory=PollingConfig)


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    available_models: set[str] = field(default_factory=set)


def _parse_pricing(raw: dict | None) -> PricingConfig | None:
    if not raw:
        return None
    return PricingConfig(
        input_per_million=float(raw["input_per_million"]),
        output_per_million=float(raw["output_per_million"]),
    )


def _parse_model(name: str, raw: dict) -> ModelConfig:
    timeout = raw.get("timeout_sec")
    max_output = raw.get("max_output_tokens")
    return ModelConfig(
        name=name,
        sdk=str(raw["sdk"]),
        api_model=str(raw.get("api_model", name)),
        api_key_env=str(raw["api_key_env"]),
        input_limit=int(raw["input_limit"]),
        base_url_env=raw.get("base_url_env"),
        base_url=raw.get("base_url"),
        max_output_tokens=int(max_output) if max_output is not None else None,
        pricing=_parse_pricing(raw.get("pricing")),
        reasoning_effort=raw.get("reasoning_effort"),
        long_running=bool(raw.get("long_running", False)),
        supports_background=bool(raw.get("supports_background", False)),
        supports_search=bool(raw.get("supports_search", False)),
        timeout_sec=float(timeout) if timeout is not None else None,
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs which models have no API key but does not raise: credentials are
    resolved per run, right before dispatch.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    polling_raw = defaults_raw.get("polling", {})
    polling = PollingConfig(**{k: float(v) for k, v in polling_raw.items()})
    defaults = DefaultsConfig(
        model=str(defaults_raw["model"]),
        system_prompt=str(defaults_raw["system_prompt"]).strip(),
        timeout_sec=float(defaults_raw.get("timeout_sec", 120)),
        long_running_timeout_sec=float(defaults_raw.get("long_running_timeout_sec", 3600)),
        heartbeat_sec=float(defaults_raw.get("heartbeat_sec", 30)),
        min_prompt_chars=int(defaults_raw.get("min_prompt_chars", 20)),
        sessions_dir=Path(str(defaults_raw.get("sessions_dir", "~/.oracle/sessions"))).expanduser(),
        polling=polling,
    )

    models: dict[str, ModelConfig] = {}
    available_models: set[str] = set()

    for model_name, model_raw in raw["models"].items():
        model_cfg = _parse_model(model_name, model_raw)
        models[model_name] = model_cfg

        if os.environ.get(model_cfg.api_key_env, "").strip():
            available_models.add(model_name)
        else:
            logger.debug(
                "Model %s has no API key — set %s in .env",
                model_name,
                model_cfg.api_key_env,
            )

    if defaults.model not in models:
        raise ValueError(f"Default model '{defaults.model}' is not configured under models")

    return AppConfig(
        defaults=defaults,
        models=models,
        available_models=available_models,
    )
