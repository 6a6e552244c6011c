from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from polymodel_chat.models import Message

_PROMPT_KEYS = ("prompt_tokens", "promptTokens", "input_tokens", "inputTokens")
_COMPLETION_KEYS = ("completion_tokens", "completionTokens", "output_tokens", "outputTokens")
_TOTAL_KEYS = ("total_tokens", "totalTokens")
_COST_KEYS = ("cost", "total_cost", "totalCost")

_CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    estimated: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.prompt_tokens is not None:
            data["promptTokens"] = self.prompt_tokens
        if self.completion_tokens is not None:
            data["completionTokens"] = self.completion_tokens
        if self.total_tokens is not None:
            data["totalTokens"] = self.total_tokens
        if self.estimated:
            data["estimated"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Usage | None:
        usage = normalize_usage(data)
        if usage is None:
            return None
        if data.get("estimated") is True:
            return Usage(usage.prompt_tokens, usage.completion_tokens, usage.total_tokens, estimated=True)
        return usage


def _to_number(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number) or number < 0:
        return None
    return number


def _first_count(data: dict, keys: tuple[str, ...]) -> int | None:
    for key in keys:
        number = _to_number(data.get(key))
        if number is not None:
            return int(number)
    return None


def normalize_usage(value: object) -> Usage | None:
    """Map an arbitrary usage fragment onto a canonical ``Usage`` record.

    Tolerates snake_case and camelCase spellings as well as the
    ``input``/``output`` naming some providers use. Returns ``None`` when no
    token count can be found. Never raises.
    """
    if not isinstance(value, dict):
        return None

    prompt = _first_count(value, _PROMPT_KEYS)
    completion = _first_count(value, _COMPLETION_KEYS)
    total = _first_count(value, _TOTAL_KEYS)

    if prompt is None and completion is None and total is None:
        return None
    if total is None and prompt is not None and completion is not None:
        total = prompt + completion
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def extract_cost(payload: object) -> float | None:
    """Find a cost figure at the top level of a stream payload or inside its usage object."""
    if not isinstance(payload, dict):
        return None
    candidates: list[dict] = [payload]
    usage = payload.get("usage")
    if isinstance(usage, dict):
        candidates.append(usage)
    for source in candidates:
        for key in _COST_KEYS:
            number = _to_number(source.get(key))
            if number is not None:
                return number
    return None


def estimate_text_tokens(text: str) -> int:
    trimmed = (text or "").strip()
    if not trimmed:
        return 0
    return max(1, math.ceil(len(trimmed) / _CHARS_PER_TOKEN))


def estimate_usage(prompt_messages: list[dict], completion: str) -> Usage:
    prompt_tokens = sum(estimate_text_tokens(str(m.get("content", ""))) for m in prompt_messages)
    completion_tokens = estimate_text_tokens(completion)
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
        estimated=True,
    )


def total_tokens(usage: Usage | None) -> int | None:
    if usage is None:
        return None
    if usage.total_tokens is not None:
        return usage.total_tokens
    if usage.prompt_tokens is None and usage.completion_tokens is None:
        return None
    return (usage.prompt_tokens or 0) + (usage.completion_tokens or 0)


def is_free_model(model: str | None) -> bool:
    return bool(model) and ":free" in model


def estimate_cost(message: Message, cost_per_1k: float | None) -> tuple[float | None, bool]:
    """Return ``(cost_usd, is_estimate)`` for a message.

    Server-reported cost wins; free models cost nothing; otherwise the
    configured per-1K-token rate is applied to the total token count.
    """
    if message.cost_usd is not None:
        return message.cost_usd, False
    if is_free_model(message.model):
        return 0.0, False
    tokens = total_tokens(message.usage)
    if cost_per_1k is None or cost_per_1k < 0 or tokens is None:
        return None, False
    return tokens / 1000 * cost_per_1k, True


def format_usd(value: float) -> str:
    if value < 0.01:
        return f"${value:.4f}"
    return f"${value:.2f}"


def format_usage_summary(message: Message, cost_per_1k: float | None = None) -> str | None:
    tokens = total_tokens(message.usage)
    parts: list[str] = []
    if tokens is not None and message.usage is not None:
        usage = message.usage
        label = f"Tokens: {'~' if usage.estimated else ''}{tokens} tok"
        if usage.prompt_tokens is not None or usage.completion_tokens is not None:
            label += f" ({usage.prompt_tokens or 0} in / {usage.completion_tokens or 0} out)"
        parts.append(label)

    cost, is_estimate = estimate_cost(message, cost_per_1k)
    if cost is not None:
        parts.append(f"Cost: {'~' if is_estimate else ''}{format_usd(cost)}")

    if not parts:
        return None
    return " • ".join(parts)
