"""Lightweight in-process metrics for the command pipeline.

Metrics are best-effort in multi-worker deployments: each process keeps its
own counters.
"""

import os
import threading
from dataclasses import dataclass, field
from typing import Any


@dataclass
class MetricsCollector:
    """In-memory, thread-safe metrics collector."""

    # Counters keyed by command action (add, remove, set, undo, unknown)
    action_counts: dict[str, int] = field(default_factory=dict)

    # Counters keyed by outcome status (ok, needs_confirmation, incomplete, ...)
    status_counts: dict[str, int] = field(default_factory=dict)

    # Counters keyed by confirmation tier
    tier_counts: dict[str, int] = field(default_factory=dict)

    # Counters for confirmation outcomes (confirmed, rejected, timeout)
    confirm_outcomes: dict[str, int] = field(default_factory=dict)

    # Failed delegated extractions, keyed by extractor name
    extraction_failures: dict[str, int] = field(default_factory=dict)

    # Per-utterance processing latency samples (milliseconds)
    utterance_latencies: list[float] = field(default_factory=list)

    _lock: threading.Lock = field(default_factory=threading.Lock)

    def record_command(self, action: str, status: str, tier: str | None = None) -> None:
        """Record one processed command.

        Args:
            action: Command action value
            status: Outcome status value
            tier: Confirmation tier value, if a decision was made
        """
        with self._lock:
            self.action_counts[action] = self.action_counts.get(action, 0) + 1
            self.status_counts[status] = self.status_counts.get(status, 0) + 1
            if tier is not None:
                self.tier_counts[tier] = self.tier_counts.get(tier, 0) + 1

    def record_confirmation(self, outcome: str) -> None:
        """Record a resolved confirmation (confirmed, rejected, timeout)."""
        with self._lock:
            self.confirm_outcomes[outcome] = self.confirm_outcomes.get(outcome, 0) + 1

    def record_extraction_failure(self, extractor: str) -> None:
        with self._lock:
            self.extraction_failures[extractor] = self.extraction_failures.get(extractor, 0) + 1

    def record_utterance_latency(self, latency_ms: float) -> None:
        with self._lock:
            self.utterance_latencies.append(latency_ms)

    def _calculate_percentile(self, sorted_values: list[float], percentile: float) -> float | None:
        """Calculate a percentile from sorted values.

        Args:
            sorted_values: List of values sorted in ascending order
            percentile: Percentile to calculate (0.0 to 1.0)

        Returns:
            The percentile value, or None if list is empty
        """
        if not sorted_values:
            return None

        n = len(sorted_values)
        idx = int(n * percentile)
        return sorted_values[min(idx, n - 1)]

    def get_snapshot(self) -> dict[str, Any]:
        """Get a snapshot of current metrics, including latency percentiles."""
        with self._lock:
            sorted_latencies = sorted(self.utterance_latencies)
            return {
                "action_counts": dict(self.action_counts),
                "status_counts": dict(self.status_counts),
                "tier_counts": dict(self.tier_counts),
                "confirm_outcomes": dict(self.confirm_outcomes),
                "extraction_failures": dict(self.extraction_failures),
                "utterance_latency_ms": {
                    "p50": self._calculate_percentile(sorted_latencies, 0.5),
                    "p95": self._calculate_percentile(sorted_latencies, 0.95),
                    "count": len(sorted_latencies),
                },
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.action_counts.clear()
            self.status_counts.clear()
            self.tier_counts.clear()
            self.confirm_outcomes.clear()
            self.extraction_failures.clear()
            self.utterance_latencies.clear()


_metrics_collector: MetricsCollector | None = None
_metrics_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get or create the global metrics collector instance."""
    global _metrics_collector
    with _metrics_lock:
        if _metrics_collector is None:
            _metrics_collector = MetricsCollector()
        return _metrics_collector


def is_metrics_enabled() -> bool:
    """Check if metrics collection is enabled via STOCKCOUNT_ENABLE_METRICS."""
    return os.getenv("STOCKCOUNT_ENABLE_METRICS", "false").lower() in ("true", "1", "yes")
