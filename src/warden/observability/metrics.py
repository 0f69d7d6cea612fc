"""Session metrics for the activity sync layer.

In-process counters and latency histograms tracking:
  - Inbound events by channel, and events dropped before reaching the store
  - Handler failures by channel
  - Approval decisions, including trust-based auto-approvals
  - Outbound backend call failures and latency

Each session owns one collector, so parallel sessions (tests, multiple
conversations) never share counts. Everything runs on the event loop thread,
so no locking is needed; snapshots are plain dicts.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator


# ---------------------------------------------------------------------------
# Histogram
# ---------------------------------------------------------------------------

# Upper bounds in milliseconds; outbound calls are local-network round trips.
_LATENCY_BUCKETS_MS: tuple[float, ...] = (
    1, 5, 10, 25, 50, 100, 250, 500, 1_000, 2_500, 5_000, 15_000, float("inf"),
)


@dataclass
class Histogram:
    """Fixed-bucket latency histogram with running min/max/sum."""

    name: str
    _buckets: list[int] = field(default_factory=lambda: [0] * len(_LATENCY_BUCKETS_MS))
    _count: int = 0
    _sum_ms: float = 0.0
    _min_ms: float = float("inf")
    _max_ms: float = 0.0

    def record(self, value_ms: float) -> None:
        self._count += 1
        self._sum_ms += value_ms
        self._min_ms = min(self._min_ms, value_ms)
        self._max_ms = max(self._max_ms, value_ms)
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            if value_ms <= bound:
                self._buckets[i] += 1
                break

    @property
    def count(self) -> int:
        return self._count

    @property
    def mean_ms(self) -> float:
        return self._sum_ms / self._count if self._count else 0.0

    def percentile(self, p: float) -> float:
        """Estimate a percentile by interpolating inside the target bucket."""
        if self._count == 0:
            return 0.0
        target = math.ceil(p / 100 * self._count)
        cumulative = 0
        lower = 0.0
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            in_bucket = self._buckets[i]
            cumulative += in_bucket
            if cumulative >= target and in_bucket:
                upper = self._max_ms if math.isinf(bound) else bound
                frac = (target - (cumulative - in_bucket)) / in_bucket
                return lower + frac * (upper - lower)
            lower = bound
        return self._max_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self._count,
            "min_ms": round(self._min_ms, 2) if self._count else 0,
            "max_ms": round(self._max_ms, 2),
            "mean_ms": round(self.mean_ms, 2),
            "p50_ms": round(self.percentile(50), 2),
            "p95_ms": round(self.percentile(95), 2),
        }


# ---------------------------------------------------------------------------
# MetricsCollector
# ---------------------------------------------------------------------------

class MetricsCollector:
    """Per-session metrics registry.

    Counters:
        events_total[channel]            Every inbound event handed to a handler
        events_dropped_total[reason]     Events discarded (torn down, malformed)
        handler_errors_total[channel]    Handlers that raised
        approvals_total[decision]        approved / rejected / timeout
        trust_auto_approvals_total       Requests resolved by a trust record
        outbound_errors_total[call]      Backend calls that failed after retries

    Histograms (milliseconds):
        outbound_latency_ms              Backend round trips
    """

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._labeled: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms: dict[str, Histogram] = {
            "outbound_latency_ms": Histogram("outbound_latency_ms"),
        }
        self._started_at = time.monotonic()

    def inc(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def inc_labeled(self, name: str, label: str, value: int = 1) -> None:
        self._labeled[name][label] += value

    def record(self, histogram: str, value_ms: float) -> None:
        if histogram in self._histograms:
            self._histograms[histogram].record(value_ms)

    def counter(self, name: str, label: str | None = None) -> int:
        if label is None:
            return self._counters.get(name, 0)
        return self._labeled.get(name, {}).get(label, 0)

    @asynccontextmanager
    async def timer(self, histogram: str) -> AsyncIterator[None]:
        t0 = time.monotonic()
        try:
            yield
        finally:
            self.record(histogram, (time.monotonic() - t0) * 1000)

    # ------------------------------------------------------------------
    # Semantic helpers
    # ------------------------------------------------------------------

    def event_received(self, channel: str) -> None:
        self.inc_labeled("events_total", channel)

    def event_dropped(self, reason: str) -> None:
        self.inc_labeled("events_dropped_total", reason)

    def handler_failed(self, channel: str) -> None:
        self.inc_labeled("handler_errors_total", channel)

    def approval_resolved(self, decision: str, *, auto: bool = False) -> None:
        self.inc_labeled("approvals_total", decision)
        if auto:
            self.inc("trust_auto_approvals_total")

    def outbound_failed(self, call: str) -> None:
        self.inc_labeled("outbound_errors_total", call)

    def snapshot(self) -> dict[str, Any]:
        return {
            "uptime_seconds": round(time.monotonic() - self._started_at, 1),
            "counters": dict(self._counters),
            "labeled_counters": {k: dict(v) for k, v in self._labeled.items()},
            "histograms": {k: v.to_dict() for k, v in self._histograms.items()},
        }
