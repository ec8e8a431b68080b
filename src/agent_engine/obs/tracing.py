"""Run tracing, usage estimation and cost accounting."""

from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

# USD per 1M tokens.
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o": (2.50, 10.0),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4-turbo": (10.0, 30.0),
    "gpt-4": (30.0, 60.0),
    "gpt-3.5-turbo": (0.50, 1.50),
    "claude-3-opus": (15.0, 75.0),
    "claude-3-sonnet": (3.0, 15.0),
    "claude-3-haiku": (0.25, 1.25),
    "gemini-pro": (0.50, 1.50),
    "mistral-large": (4.0, 12.0),
    "mistral-small": (1.0, 3.0),
}

# USD per token, used when only a total token count is known.
PROVIDER_FALLBACK_RATES: dict[str, float] = {
    "openai": 0.00003,
    "anthropic": 0.000015,
    "google": 0.0000035,
    "mistral": 0.000008,
}
DEFAULT_FALLBACK_RATE = 0.00001

_PROVIDER_PREFIX = re.compile(r"^(openai|anthropic|google|mistral)[-/:]")


def estimate_token_count(text: str) -> int:
    """Approximate tokens as one per four characters."""
    return math.ceil(len(text) / 4)


@dataclass(slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    reported: bool = False


@dataclass(slots=True)
class CostModel:
    """Token pricing across providers and models."""

    pricing: dict[str, tuple[float, float]] = field(
        default_factory=lambda: dict(MODEL_PRICING)
    )
    fallback_rates: dict[str, float] = field(
        default_factory=lambda: dict(PROVIDER_FALLBACK_RATES)
    )

    def calculate(self, model: str, input_tokens: int, output_tokens: int) -> float | None:
        """Exact cost when the model is priced, else None."""
        normalized = _PROVIDER_PREFIX.sub("", model.lower())
        prices = self.pricing.get(normalized)
        if prices is None:
            return None
        input_price, output_price = prices
        return (input_tokens / 1_000_000) * input_price + (
            output_tokens / 1_000_000
        ) * output_price

    def fallback(self, total_tokens: int, provider: str | None) -> float:
        rate = self.fallback_rates.get(provider or "", DEFAULT_FALLBACK_RATE)
        return total_tokens * rate

    def estimate(self, usage: Usage, *, model: str | None, provider: str | None) -> float:
        if model and usage.reported:
            exact = self.calculate(model, usage.input_tokens, usage.output_tokens)
            if exact is not None:
                return exact
        return self.fallback(usage.total_tokens, provider)


@dataclass(slots=True)
class RunTrace:
    run_id: str
    thread_id: str
    session_id: str
    status: str
    timestamp_utc: str
    latency_ms: float
    tokens_used: int
    cost: float
    tool_names: list[str]
    error: str | None = None


class TraceStore:
    """In-memory trace storage for API-level observability."""

    def __init__(self) -> None:
        self._records: dict[str, RunTrace] = {}

    def record(
        self,
        *,
        run_id: str,
        thread_id: str,
        session_id: str,
        status: str,
        latency_ms: float,
        tokens_used: int = 0,
        cost: float = 0.0,
        tool_names: list[str] | None = None,
        error: str | None = None,
    ) -> RunTrace:
        trace = RunTrace(
            run_id=run_id,
            thread_id=thread_id,
            session_id=session_id,
            status=status,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            latency_ms=latency_ms,
            tokens_used=tokens_used,
            cost=cost,
            tool_names=list(tool_names or []),
            error=error,
        )
        self._records[run_id] = trace
        return trace

    def get(self, run_id: str) -> RunTrace:
        record = self._records.get(run_id)
        if record is None:
            raise KeyError(f"Run trace not found: {run_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[RunTrace]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate run metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_runs": 0,
                "errored_runs": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "total_tokens": 0,
                "total_cost": 0.0,
                "total_tool_calls": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        return {
            "total_runs": total,
            "errored_runs": sum(1 for record in records if record.status == "errored"),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "total_tokens": sum(record.tokens_used for record in records),
            "total_cost": sum(record.cost for record in records),
            "total_tool_calls": sum(len(record.tool_names) for record in records),
        }


class Timer:
    """Wall-clock timer read while a run is still going."""

    def __init__(self) -> None:
        self._start = 0.0

    def start(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def peek_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000.0
