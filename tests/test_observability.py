"""
Tests for host metrics.
"""
from packhost.observability import HostMetrics, get_metrics, reset_metrics


class TestHostMetrics:
    """Tests for counter bookkeeping."""

    def test_outcomes_by_status(self):
        metrics = HostMetrics()
        for status in ("completed", "completed", "suspended", "faulted", "resume_failed"):
            metrics.record_outcome(status, duration_ms=1.0)

        stats = metrics.get_stats()
        assert stats["flows"]["completed"] == 2
        assert stats["flows"]["suspended"] == 1
        assert stats["flows"]["faulted"] == 1
        assert stats["flows"]["resume_failed"] == 1
        assert stats["flows"]["step_p50_ms"] == 1.0

    def test_events_and_reloads(self):
        metrics = HostMetrics()
        metrics.record_event(duplicate=False)
        metrics.record_event(duplicate=True)
        metrics.record_reload(failures=1, swaps=2)

        stats = metrics.get_stats()
        assert stats["events"] == {"total": 2, "duplicates": 1}
        assert stats["reloads"] == {"total": 1, "tenant_failures": 1, "swaps": 2}

    def test_histogram_is_bounded(self):
        metrics = HostMetrics(max_histogram_entries=3)
        for i in range(10):
            metrics.record_outcome("completed", duration_ms=float(i))
        assert metrics.step_durations_ms == [7.0, 8.0, 9.0]

    def test_global_reset(self):
        get_metrics().record_cache_corruption()
        reset_metrics()
        assert get_metrics().cache_corruptions_total == 0
