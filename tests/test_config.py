"""Tests for config/config_loader.py."""

import logging
from pathlib import Path

import pytest
import yaml

from config.config_loader import AppConfig, ModelConfig, PollingConfig, load_config


@pytest.fixture
def minimal_settings(tmp_path: Path) -> Path:
    """Write a minimal valid settings.yaml to a temp path."""
    settings = {
        "defaults": {
            "model": "pro",
            "system_prompt": "  You are a careful reviewer.  ",
            "heartbeat_sec": 10,
            "sessions_dir": str(tmp_path / "sessions"),
            "polling": {"poll_interval_sec": 4, "retry_max_sec": 20},
        },
        "models": {
            "pro": {
                "sdk": "openai",
                "api_model": "gpt-5.1-pro",
                "api_key_env": "TEST_OPENAI_KEY",
                "input_limit": 196000,
                "long_running": True,
                "supports_background": True,
                "pricing": {"input_per_million": 15, "output_per_million": 120},
            },
            "claude": {
                "sdk": "anthropic",
                "api_key_env": "TEST_CLAUDE_KEY",
                "input_limit": 200000,
                "max_output_tokens": 16000,
                "timeout_sec": 300,
            },
        },
    }
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.dump(settings), encoding="utf-8")
    return path


def test_load_config_returns_app_config(minimal_settings):
    config = load_config(minimal_settings)
    assert isinstance(config, AppConfig)


def test_load_config_defaults(minimal_settings, tmp_path):
    config = load_config(minimal_settings)
    assert config.defaults.model == "pro"
    assert config.defaults.system_prompt == "You are a careful reviewer."
    assert config.defaults.timeout_sec == 120
    assert config.defaults.long_running_timeout_sec == 3600
    assert config.defaults.heartbeat_sec == 10
    assert config.defaults.min_prompt_chars == 20
    assert config.defaults.sessions_dir == tmp_path / "sessions"


def test_polling_overrides_merge_with_defaults(minimal_settings):
    polling = load_config(minimal_settings).defaults.polling
    assert isinstance(polling, PollingConfig)
    assert polling.poll_interval_sec == 4
    assert polling.retry_base_sec == 3
    assert polling.retry_max_sec == 20


def test_load_config_models(minimal_settings):
    config = load_config(minimal_settings)
    pro = config.models["pro"]
    assert isinstance(pro, ModelConfig)
    assert pro.api_model == "gpt-5.1-pro"
    assert pro.long_running is True
    assert pro.pricing.input_per_token == pytest.approx(15e-6)

    claude = config.models["claude"]
    assert claude.api_model == "claude"
    assert claude.pricing is None
    assert claude.max_output_tokens == 16000
    assert claude.timeout_sec == 300.0
    assert claude.supports_background is False


def test_available_models_follow_env(minimal_settings, monkeypatch, caplog):
    monkeypatch.setenv("TEST_OPENAI_KEY", "sk-test")
    monkeypatch.delenv("TEST_CLAUDE_KEY", raising=False)
    with caplog.at_level(logging.DEBUG, logger="config.config_loader"):
        config = load_config(minimal_settings)

    assert config.available_models == {"pro"}
    assert "TEST_CLAUDE_KEY" in caplog.text


def test_missing_settings_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_unknown_default_model_raises(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        yaml.dump({
            "defaults": {"model": "ghost", "system_prompt": "x"},
            "models": {"real": {"sdk": "openai", "api_key_env": "K", "input_limit": 1000}},
        }),
        encoding="utf-8",
    )
    with pytest.raises(ValueError, match="ghost"):
        load_config(path)


def test_shipped_settings_load():
    config = load_config()
    assert config.defaults.model in config.models
    assert config.models["gpt-5.1-pro"].long_running is True
    assert config.models["gemini-3-pro"].api_model == "gemini-3-pro-preview"
    assert {cfg.sdk for cfg in config.models.values()} == {"openai", "anthropic", "gemini"}
