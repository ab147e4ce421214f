"""Prompt assembly, token estimation and pre-dispatch validation of a ModelRequest."""

import logging
import math
import os
from pathlib import Path

from config.config_loader import AppConfig, ModelConfig
from oracle.errors import PromptValidationError
from oracle.models import FileContent, ModelRequest

logger = logging.getLogger(__name__)

# Rough chars-per-token ratio for English prose and code
_CHARS_PER_TOKEN = 4


def build_prompt(prompt: str, files: list[FileContent], cwd: Path | None = None) -> str:
    """Append each attached file as a numbered section below the user prompt."""
    if not files:
        return prompt
    base = cwd or Path.cwd()
    sections: list[str] = [prompt.rstrip(), ""]
    for index, file in enumerate(files, start=1):
        try:
            display = os.path.relpath(file.path, base)
        except ValueError:
            display = file.path
        sections.append(f"### File {index}: {display}")
        sections.append("```")
        sections.append(file.content.rstrip("\n"))
        sections.append("```")
        sections.append("")
    return "\n".join(sections).rstrip() + "\n"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def get_model_config(config: AppConfig, model: str) -> ModelConfig:
    model_cfg = config.models.get(model)
    if model_cfg is None:
        choices = ", ".join(sorted(config.models))
        raise PromptValidationError(
            f'Unsupported model "{model}". Choose one of: {choices}',
            {"model": model},
        )
    return model_cfg


def resolve_timeout(request: ModelRequest, model_cfg: ModelConfig, config: AppConfig) -> float:
    if request.timeout_sec is not None:
        return request.timeout_sec
    if model_cfg.timeout_sec is not None:
        return model_cfg.timeout_sec
    if model_cfg.long_running:
        return config.defaults.long_running_timeout_sec
    return config.defaults.timeout_sec


def resolve_background(request: ModelRequest, model_cfg: ModelConfig) -> bool:
    return request.background if request.background is not None else model_cfg.long_running


def build_model_request(
    config: AppConfig,
    model: str,
    prompt: str,
    *,
    files: list[FileContent] | None = None,
    cwd: Path | None = None,
    system_prompt: str | None = None,
    max_output_tokens: int | None = None,
    search: bool = True,
    timeout_sec: float | None = None,
    background: bool | None = None,
    suppress_banner: bool = False,
    silent: bool = False,
) -> ModelRequest:
    """Render the prompt with its file context and freeze it into a ModelRequest."""
    model_cfg = get_model_config(config, model)
    return ModelRequest(
        model=model,
        prompt=build_prompt(prompt, files or [], cwd),
        system_prompt=(system_prompt or "").strip() or config.defaults.system_prompt,
        max_output_tokens=max_output_tokens if max_output_tokens is not None else model_cfg.max_output_tokens,
        search=search and model_cfg.supports_search,
        timeout_sec=timeout_sec,
        background=background,
        suppress_banner=suppress_banner,
        silent=silent,
    )


def validate_request(
    request: ModelRequest,
    model_cfg: ModelConfig,
    config: AppConfig,
    max_input_tokens: int | None = None,
) -> int:
    """Raise PromptValidationError for requests that must not be dispatched.

    Returns:
        The estimated input token count.
    """
    min_chars = config.defaults.min_prompt_chars
    prompt_length = len(request.prompt.strip())
    # Only long-running models are costly enough to guard against accidental short prompts
    if model_cfg.long_running and prompt_length < min_chars:
        raise PromptValidationError(
            f"Prompt is too short (<{min_chars} chars). This was likely accidental; please provide more detail.",
            {"min_prompt_chars": min_chars, "prompt_length": prompt_length},
        )

    if resolve_background(request, model_cfg) and not model_cfg.supports_background:
        raise PromptValidationError(
            f"Model {model_cfg.name} does not support background runs. Re-run without --background.",
            {"model": model_cfg.name},
        )

    budget = max_input_tokens or model_cfg.input_limit
    estimated = estimate_tokens(request.system_prompt) + estimate_tokens(request.prompt)
    if estimated > budget:
        raise PromptValidationError(
            f"Input too large ({estimated:,} tokens). Limit is {budget:,} tokens.",
            {"estimated_input_tokens": estimated, "input_token_budget": budget},
        )
    logger.debug("Estimated input tokens for %s: %d / %d", request.model, estimated, budget)
    return estimated


def read_attachments(paths: list[str]) -> list[FileContent]:
    """Read explicitly named files as UTF-8 text."""
    files: list[FileContent] = []
    for raw in paths:
        path = Path(raw).expanduser()
        if not path.is_file():
            raise PromptValidationError(f"Attachment not found: {raw}", {"path": raw})
        files.append(FileContent(path=str(path.resolve()), content=path.read_text(encoding="utf-8")))
    return files
