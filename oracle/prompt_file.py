"""Prompt files: markdown body with optional YAML frontmatter run options."""

from dataclasses import dataclass, field
from pathlib import Path

import frontmatter


@dataclass
class PromptFile:
    prompt: str
    models: list[str] = field(default_factory=list)
    search: bool | None = None
    background: bool | None = None
    timeout_sec: float | None = None
    max_output_tokens: int | None = None


def _as_models(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [m.strip() for m in value.split(",") if m.strip()]
    return [str(m).strip() for m in value if str(m).strip()]


def parse_prompt_file(file_path: Path) -> PromptFile:
    """Parse a markdown prompt with optional frontmatter.

    Recognized keys: models (list or comma string), search, background,
    timeout (seconds), max_output (tokens). Unknown keys are ignored.
    """
    post = frontmatter.load(str(file_path))
    meta = dict(post.metadata)
    timeout = meta.get("timeout")
    max_output = meta.get("max_output")
    return PromptFile(
        prompt=post.content.strip(),
        models=_as_models(meta.get("models")),
        search=bool(meta["search"]) if "search" in meta else None,
        background=bool(meta["background"]) if "background" in meta else None,
        timeout_sec=float(timeout) if timeout is not None else None,
        max_output_tokens=int(max_output) if max_output is not None else None,
    )
