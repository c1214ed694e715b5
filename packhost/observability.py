"""
Process metrics for packhost.

Plain counters plus a short step-duration histogram, kept in one
process-global ``HostMetrics`` instance. Exposed on the admin status
route; can be exported to Prometheus or StatsD by reading ``get_stats()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class HostMetrics:
    """
    Host execution metrics.

    Tracks:
    - Ingress events and dedup suppressions
    - Flow outcomes by status
    - Reconciliation runs and per-tenant failures
    - Cache corruption detections
    """

    # Ingress
    events_total: int = 0
    duplicates_total: int = 0

    # Flows
    completions_total: int = 0
    suspensions_total: int = 0
    faults_total: int = 0
    resume_failures_total: int = 0

    # Reconciliation
    reloads_total: int = 0
    reload_failures_total: int = 0
    swaps_total: int = 0

    # Cache
    cache_corruptions_total: int = 0

    step_durations_ms: list[float] = field(default_factory=list)
    max_histogram_entries: int = 1000

    def record_event(self, duplicate: bool) -> None:
        self.events_total += 1
        if duplicate:
            self.duplicates_total += 1

    def record_outcome(self, status: str, duration_ms: float | None = None) -> None:
        """Record a flow step outcome by its status string."""
        if status == "completed":
            self.completions_total += 1
        elif status == "suspended":
            self.suspensions_total += 1
        elif status == "resume_failed":
            self.resume_failures_total += 1
        else:
            self.faults_total += 1

        if duration_ms is not None:
            self.step_durations_ms.append(duration_ms)
            if len(self.step_durations_ms) > self.max_histogram_entries:
                del self.step_durations_ms[: len(self.step_durations_ms) - self.max_histogram_entries]

    def record_reload(self, failures: int, swaps: int) -> None:
        self.reloads_total += 1
        self.reload_failures_total += failures
        self.swaps_total += swaps

    def record_cache_corruption(self) -> None:
        self.cache_corruptions_total += 1

    def get_stats(self) -> dict[str, Any]:
        durations = sorted(self.step_durations_ms)
        p50 = durations[len(durations) // 2] if durations else None
        return {
            "events": {
                "total": self.events_total,
                "duplicates": self.duplicates_total,
            },
            "flows": {
                "completed": self.completions_total,
                "suspended": self.suspensions_total,
                "faulted": self.faults_total,
                "resume_failed": self.resume_failures_total,
                "step_p50_ms": p50,
            },
            "reloads": {
                "total": self.reloads_total,
                "tenant_failures": self.reload_failures_total,
                "swaps": self.swaps_total,
            },
            "cache_corruptions": self.cache_corruptions_total,
        }

    def reset(self) -> None:
        """Reset all metrics."""
        self.events_total = 0
        self.duplicates_total = 0
        self.completions_total = 0
        self.suspensions_total = 0
        self.faults_total = 0
        self.resume_failures_total = 0
        self.reloads_total = 0
        self.reload_failures_total = 0
        self.swaps_total = 0
        self.cache_corruptions_total = 0
        self.step_durations_ms.clear()


_global_metrics = HostMetrics()


def get_metrics() -> HostMetrics:
    """Get the global metrics instance."""
    return _global_metrics


def reset_metrics() -> None:
    """Reset global metrics (useful for testing)."""
    _global_metrics.reset()
