"""Token usage and approximate cost per model."""

from __future__ import annotations

import logging
import math
import os
import threading

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# USD per 1K tokens: (input, output)
DEFAULT_PRICES_PER_1K: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4o": (0.005, 0.015),
    "text-embedding-3-large": (0.00013, 0.0),
    "text-embedding-3-small": (0.00002, 0.0),
}


class ModelUsage(BaseModel):
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    calls: int = 0
    cost_usd: float = 0.0


def _env_key(model: str) -> str:
    return "".join(ch if ch.isalnum() else "_" for ch in model.upper())


def _env_price(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        price = float(value)
    except ValueError:
        price = None
    if price is None or not math.isfinite(price) or price < 0:
        logger.warning("Ignoring invalid price override", extra={"env_var": name, "value": value})
        return default
    return price


def prices_for(model: str) -> tuple[float, float]:
    """Per-1K input/output price, overridable via OPENAI_COST_<MODEL>_INPUT_PER_1K / _OUTPUT_PER_1K."""
    default_in, default_out = DEFAULT_PRICES_PER_1K.get(model, (0.0, 0.0))
    key = _env_key(model)
    price_in = _env_price(f"OPENAI_COST_{key}_INPUT_PER_1K", default_in)
    price_out = _env_price(f"OPENAI_COST_{key}_OUTPUT_PER_1K", default_out)
    return price_in, price_out


class TokenAccounting:
    """Thread-safe per-model token counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._usage: dict[str, ModelUsage] = {}

    def record_chat_completion_usage(
        self, model: str, prompt_tokens: int, completion_tokens: int, total_tokens: int | None = None
    ) -> None:
        with self._lock:
            usage = self._usage.setdefault(model, ModelUsage(model=model))
            usage.prompt_tokens += prompt_tokens
            usage.completion_tokens += completion_tokens
            if total_tokens is None:
                total_tokens = prompt_tokens + completion_tokens
            usage.total_tokens += total_tokens
            usage.calls += 1

    def reset(self) -> None:
        with self._lock:
            self._usage.clear()

    def snapshot_with_costs(self) -> dict[str, ModelUsage]:
        with self._lock:
            snapshot = {model: usage.model_copy() for model, usage in self._usage.items()}
        for model, usage in snapshot.items():
            price_in, price_out = prices_for(model)
            cost = usage.prompt_tokens / 1000 * price_in + usage.completion_tokens / 1000 * price_out
            usage.cost_usd = round(cost, 2)
        return snapshot

    @staticmethod
    def total_cost_usd(snapshot: dict[str, ModelUsage]) -> float:
        return round(sum(usage.cost_usd for usage in snapshot.values()), 2)
