"""In-process turn counters exposed at /internal/metrics.

One counter per turn kind (``relay.turn.stream``, ``relay.turn.blocking``).
Counters live for the lifetime of the process.

Last Grunted: 10/19/2026 09:15:00 AM UTC
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass


@dataclass
class TurnMetric:
    count: int = 0
    failures: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    last_latency_ms: float = 0.0

    def snapshot(self) -> dict[str, float]:
        if not self.count:
            return {"count": 0.0, "failures": 0.0, "avg_latency_ms": 0.0,
                    "max_latency_ms": 0.0, "last_latency_ms": 0.0, "error_rate": 0.0}
        return {
            "count": float(self.count),
            "failures": float(self.failures),
            "avg_latency_ms": self.total_latency_ms / self.count,
            "max_latency_ms": self.max_latency_ms,
            "last_latency_ms": self.last_latency_ms,
            "error_rate": self.failures / self.count,
        }


_turns: dict[str, TurnMetric] = defaultdict(TurnMetric)


def record_metric(name: str, latency_ms: float, success: bool) -> None:
    """Count one finished turn of kind ``name``."""
    metric = _turns[name]
    metric.count += 1
    metric.failures += 0 if success else 1
    metric.total_latency_ms += latency_ms
    metric.last_latency_ms = latency_ms
    metric.max_latency_ms = max(metric.max_latency_ms, latency_ms)


def get_metric_snapshot() -> dict[str, dict[str, float]]:
    return {name: metric.snapshot() for name, metric in sorted(_turns.items())}


def reset_metrics() -> None:
    _turns.clear()
