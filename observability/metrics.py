"""Cost estimation and per-session tracking of provider calls."""

from __future__ import annotations

from collections import defaultdict

from schemas.observability import LLMCallRecord

# USD per 1M tokens, list prices. Embedding models only bill input.
_PRICES: dict[str, tuple[float, float]] = {
    "claude-3-5-sonnet-20241022": (3.0, 15.0),
    "claude-3-5-haiku-20241022": (0.80, 4.0),
    "claude-sonnet-4-20250514": (3.0, 15.0),
    "gpt-4-turbo-preview": (10.0, 30.0),
    "gpt-4o": (2.50, 10.0),
    "gpt-4o-mini": (0.15, 0.60),
    "text-embedding-3-small": (0.02, 0.0),
    "text-embedding-3-large": (0.13, 0.0),
    "text-embedding-ada-002": (0.10, 0.0),
}


def estimate_cost(model_id: str, input_tokens: int, output_tokens: int) -> float:
    """Approximate USD cost of one call. Unpriced models (dummy, local) cost 0."""
    input_price, output_price = _PRICES.get(model_id, (0.0, 0.0))
    return round((input_tokens * input_price + output_tokens * output_price) / 1_000_000, 6)


class MetricsCollector:
    """Accumulates LLMCallRecords for one chat session or ingestion run.

    Providers call ``record`` once per logical call (after retries), so a call
    that needed three attempts still counts once.
    """

    def __init__(self) -> None:
        self.records: list[LLMCallRecord] = []

    def record(self, rec: LLMCallRecord) -> None:
        self.records.append(rec)

    @property
    def total_calls(self) -> int:
        return len(self.records)

    @property
    def failed_calls(self) -> int:
        return sum(1 for r in self.records if not r.success)

    @property
    def total_input_tokens(self) -> int:
        return sum(r.input_tokens for r in self.records)

    @property
    def total_output_tokens(self) -> int:
        return sum(r.output_tokens for r in self.records)

    @property
    def total_cost_usd(self) -> float:
        return round(sum(r.estimated_cost_usd for r in self.records), 6)

    @property
    def avg_latency_ms(self) -> float:
        if not self.records:
            return 0.0
        return round(sum(r.latency_ms for r in self.records) / len(self.records), 2)

    def by_operation(self) -> dict[str, int]:
        """Call counts keyed by operation (``complete``, ``stream``, ``embed``)."""
        counts: dict[str, int] = defaultdict(int)
        for r in self.records:
            counts[r.operation] += 1
        return dict(counts)

    def summary(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "failed_calls": self.failed_calls,
            "calls_by_operation": self.by_operation(),
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_cost_usd": self.total_cost_usd,
            "avg_latency_ms": self.avg_latency_ms,
        }
