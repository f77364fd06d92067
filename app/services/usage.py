"""Per-session usage metering and cost estimates."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

_logger = logging.getLogger("relay.usage")

# USD per 1K tokens
MODEL_PRICING: dict[str, dict[str, float]] = {
    "gpt-4": {"input": 0.03, "output": 0.06},
    "gpt-4-turbo": {"input": 0.01, "output": 0.03},
    "gpt-4o": {"input": 0.0025, "output": 0.01},
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-3.5-turbo": {"input": 0.0015, "output": 0.002},
    "claude-3-5-haiku-latest": {"input": 0.0008, "output": 0.004},
    "claude-3-5-sonnet-latest": {"input": 0.003, "output": 0.015},
}
_FALLBACK_MODEL = "gpt-4"


@dataclass(frozen=True)
class TokenUsage:
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    request_id: str = "unknown"

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CostBreakdown:
    speech_cost: float = 0.0
    ai_cost: float = 0.0

    @property
    def total(self) -> float:
        return self.speech_cost + self.ai_cost

    def to_dict(self) -> dict:
        return {"speechCost": self.speech_cost, "aiCost": self.ai_cost}


def estimate_ai_cost(usage: Optional[TokenUsage]) -> float:
    if usage is None:
        return 0.0
    pricing = MODEL_PRICING.get(usage.model)
    if pricing is None:
        # local models (ollama, lmstudio) are free; unknown hosted ones priced conservatively
        if usage.model.startswith(("gpt-", "claude-", "o1", "o3")):
            _logger.warning("Unknown model pricing: %s, using %s pricing", usage.model, _FALLBACK_MODEL)
            pricing = MODEL_PRICING[_FALLBACK_MODEL]
        else:
            return 0.0
    return (usage.input_tokens / 1000) * pricing["input"] + (usage.output_tokens / 1000) * pricing["output"]


def estimate_speech_cost(duration_minutes: float, cost_per_minute: float) -> float:
    return max(duration_minutes, 0.0) * cost_per_minute


@dataclass
class UsageMeter:
    """Clock and counters for one session.

    Owned by the session and handed to the finalization pipeline; never
    shared between sessions.
    """

    user_id: str
    session_id: str
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None
    audio_bytes: int = 0
    token_usage: Optional[TokenUsage] = None

    def start(self) -> None:
        if self.started_at is None:
            self.started_at = self.clock()

    def stop(self) -> None:
        if self.started_at is not None and self.stopped_at is None:
            self.stopped_at = self.clock()

    @property
    def duration_minutes(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.stopped_at if self.stopped_at is not None else self.clock()
        return max(end - self.started_at, 0.0) / 60.0
