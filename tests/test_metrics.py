"""Session metrics tests.

These run entirely in-process. They verify:
  1. Counter increment semantics (plain + labeled)
  2. Histogram bucket placement and percentile estimates
  3. Semantic helpers used by the registry, gate and backend client
  4. Snapshot structure
"""

from __future__ import annotations

import pytest

from warden.observability.metrics import Histogram, MetricsCollector


@pytest.fixture()
def mc() -> MetricsCollector:
    return MetricsCollector()


class TestCounters:
    def test_plain_counter(self, mc):
        mc.inc("x")
        mc.inc("x", 2)
        assert mc.counter("x") == 3

    def test_labeled_counter(self, mc):
        mc.inc_labeled("events_total", "metrics")
        mc.inc_labeled("events_total", "metrics")
        mc.inc_labeled("events_total", "plan_update")
        assert mc.counter("events_total", "metrics") == 2
        assert mc.counter("events_total", "plan_update") == 1
        assert mc.counter("events_total", "screenshot") == 0

    def test_unknown_counter_is_zero(self, mc):
        assert mc.counter("never") == 0


class TestHistogram:
    def test_empty(self):
        h = Histogram("h")
        assert h.count == 0
        assert h.percentile(50) == 0.0
        assert h.to_dict()["min_ms"] == 0

    def test_percentiles_ordered(self):
        h = Histogram("h")
        for value in (2, 3, 8, 40, 90, 300, 1200):
            h.record(value)
        assert h.count == 7
        assert h.percentile(50) <= h.percentile(95)
        assert h.to_dict()["max_ms"] == 1200

    def test_overflow_bucket_uses_max(self):
        h = Histogram("h")
        h.record(60_000)
        assert h.percentile(99) == pytest.approx(60_000, rel=0.01)

    def test_unknown_histogram_ignored(self, mc):
        mc.record("not_registered", 5)
        assert "not_registered" not in mc.snapshot()["histograms"]

    @pytest.mark.asyncio
    async def test_timer_records(self, mc):
        async with mc.timer("outbound_latency_ms"):
            pass
        assert mc.snapshot()["histograms"]["outbound_latency_ms"]["count"] == 1


class TestSemanticHelpers:
    def test_approval_resolved_auto(self, mc):
        mc.approval_resolved("approved", auto=True)
        mc.approval_resolved("rejected")
        assert mc.counter("approvals_total", "approved") == 1
        assert mc.counter("approvals_total", "rejected") == 1
        assert mc.counter("trust_auto_approvals_total") == 1

    def test_dispatch_helpers(self, mc):
        mc.event_received("metrics")
        mc.event_dropped("torn_down")
        mc.handler_failed("metrics")
        mc.outbound_failed("pause_agent")
        snap = mc.snapshot()["labeled_counters"]
        assert snap["events_total"] == {"metrics": 1}
        assert snap["events_dropped_total"] == {"torn_down": 1}
        assert snap["handler_errors_total"] == {"metrics": 1}
        assert snap["outbound_errors_total"] == {"pause_agent": 1}

    def test_snapshot_shape(self, mc):
        snap = mc.snapshot()
        assert set(snap) == {"uptime_seconds", "counters", "labeled_counters", "histograms"}

    def test_sessions_do_not_share(self):
        a, b = MetricsCollector(), MetricsCollector()
        a.inc("x")
        assert b.counter("x") == 0
