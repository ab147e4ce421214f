"""Formatting helpers for costs, durations and token counts."""

import math

from oracle.models import UsageSummary

_USAGE_KEYS = ("input_tokens", "output_tokens", "reasoning_tokens", "total_tokens")


def format_usd(value: float | None) -> str:
    if value is None or not math.isfinite(value):
        return "n/a"
    return f"${value:.4f}"


def format_elapsed(seconds: float) -> str:
    """Render a duration the way the status lines print it: 1h 2m, 3m 4s, 5s or 120ms."""
    ms = seconds * 1000
    if ms >= 60 * 60 * 1000:
        hours = int(ms // (60 * 60 * 1000))
        minutes = int((ms % (60 * 60 * 1000)) // (60 * 1000))
        return f"{hours}h {minutes}m"
    if ms >= 60 * 1000:
        minutes = int(ms // (60 * 1000))
        secs = int((ms % (60 * 1000)) // 1000)
        return f"{minutes}m {secs}s"
    if ms >= 1000:
        return f"{int(ms // 1000)}s"
    return f"{round(ms)}ms"


def format_token_estimate(value: int) -> str:
    if value >= 1000:
        abbreviated = math.floor(value / 100) / 10
        text = f"{abbreviated:.1f}"
        if text.endswith(".0"):
            text = text[:-2]
        return f"{text}k"
    return f"{value:,}"


def format_tokens(usage: UsageSummary, reported: dict[str, int] | None = None) -> str:
    """input/output/reasoning/total, with `*` marking values the backend did not report."""
    values = (usage.input_tokens, usage.output_tokens, usage.reasoning_tokens, usage.total_tokens)
    parts: list[str] = []
    for key, value in zip(_USAGE_KEYS, values):
        text = f"{value:,}"
        if reported is not None and reported.get(key) is None:
            text += "*"
        parts.append(text)
    return "/".join(parts)


def format_usage_line(
    model_label: str,
    usage: UsageSummary,
    reported: dict[str, int] | None = None,
    extras: list[str] | None = None,
) -> str:
    parts = [model_label]
    parts.append(format_usd(usage.cost) if usage.cost is not None else "cost=N/A")
    parts.append(f"tok(i/o/r/t)={format_tokens(usage, reported)}")
    parts.extend(extras or [])
    return " | ".join(parts)
