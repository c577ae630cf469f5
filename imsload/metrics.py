"""Metrics collection and aggregation with bounded memory.

Per-operation streaming stats (T-Digest percentiles, counters) cover the full
run; a ring buffer (deque) keeps recent samples for time-series charts only.
One collector per run. It is fed by a single consumer task draining the result
queue, so updates need no locks.
"""

from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from tdigest import TDigest

from .logging_config import get_logger
from .models import AggregateMetrics, MetricSample, Op

logger = get_logger("metrics")

# Recent samples kept for charts; percentiles never depend on this buffer
DEFAULT_MAX_RESULTS = 100_000
DEFAULT_CACHE_TTL_SEC = 0.5
TIME_SERIES_BUCKET_SEC = 1
MAX_ERROR_MESSAGES = 50


@dataclass
class TimeSeriesPoint:
    """Single point for time-series (e.g. requests per second)."""

    offset_seconds: int
    rps: float
    avg_ms: float
    p95_ms: float
    error_rate_pct: float


def _percentile_from_digest(digest: TDigest, p: float) -> float:
    """Get percentile from T-Digest. Returns 0.0 if empty."""
    try:
        return digest.percentile(p) or 0.0
    except (ValueError, IndexError):
        return 0.0


def _percentile(sorted_times: list[float], p: float) -> float:
    """Linear-interpolated percentile for small sorted lists."""
    if not sorted_times:
        return 0.0
    k = (len(sorted_times) - 1) * (p / 100.0)
    f = int(k)
    c = f + 1 if f + 1 < len(sorted_times) else f
    return sorted_times[f] + (k - f) * (sorted_times[c] - sorted_times[f])


class OperationStats:
    """Streaming statistics for one operation tag over the whole run."""

    __slots__ = ("digest", "count", "failed", "timed_out", "sum_ms", "min_ms", "max_ms", "status_counts")

    def __init__(self) -> None:
        self.digest = TDigest()
        self.count = 0
        self.failed = 0
        self.timed_out = 0
        self.sum_ms = 0.0
        self.min_ms = float("inf")
        self.max_ms = 0.0
        self.status_counts: dict[str, int] = defaultdict(int)

    def add(self, s: MetricSample) -> None:
        rt = s.duration_ms
        self.count += 1
        self.sum_ms += rt
        self.digest.update(rt)
        if rt < self.min_ms:
            self.min_ms = rt
        if rt > self.max_ms:
            self.max_ms = rt
        if not s.success:
            self.failed += 1
        if s.timed_out:
            self.timed_out += 1
        self.status_counts[str(s.status_code) if s.status_code is not None else "Error"] += 1

    @property
    def mean_ms(self) -> float:
        return self.sum_ms / self.count if self.count else 0.0

    def percentile(self, p: float) -> float:
        return _percentile_from_digest(self.digest, p)

    def aggregate(self) -> AggregateMetrics:
        if self.count == 0:
            return AggregateMetrics(total_requests=0, successful_requests=0, failed_requests=0)
        return AggregateMetrics(
            total_requests=self.count,
            successful_requests=self.count - self.failed,
            failed_requests=self.failed,
            timed_out_requests=self.timed_out,
            avg_ms=self.mean_ms,
            min_ms=self.min_ms,
            max_ms=self.max_ms,
            p50_ms=self.percentile(50),
            p90_ms=self.percentile(90),
            p95_ms=self.percentile(95),
            p99_ms=self.percentile(99),
            error_rate_pct=100.0 * self.failed / self.count,
            status_code_counts=dict(self.status_counts),
        )


class MetricsCollector:
    """Collects MetricSamples: per-operation streaming stats plus a recent-sample ring buffer."""

    __slots__ = (
        "_recent", "_ops", "_total", "_start_time", "_end_time",
        "_agg_cache", "_agg_cache_time", "_error_counts", "_overflow_warned",
    )

    def __init__(self, max_results: int = DEFAULT_MAX_RESULTS) -> None:
        self._recent: deque[MetricSample] = deque(maxlen=max_results)
        self._ops: dict[str, OperationStats] = {}
        self._total = OperationStats()
        self._start_time: float | None = None
        self._end_time: float | None = None
        self._agg_cache: AggregateMetrics | None = None
        self._agg_cache_time = 0.0
        self._error_counts: dict[str, int] = defaultdict(int)
        self._overflow_warned = False

    def add(self, sample: MetricSample) -> None:
        if self._start_time is None:
            self._start_time = sample.timestamp
        self._end_time = sample.timestamp
        if not self._overflow_warned and len(self._recent) == self._recent.maxlen:
            logger.debug("Recent-sample buffer full; charts cover the last %d samples", self._recent.maxlen)
            self._overflow_warned = True
        self._recent.append(sample)
        ops = self._ops.get(sample.operation)
        if ops is None:
            ops = self._ops[sample.operation] = OperationStats()
        ops.add(sample)
        self._total.add(sample)
        if not sample.success:
            if sample.error:
                key = f"{sample.operation}: {sample.error[:200]}"
            else:
                key = f"{sample.operation}: HTTP {sample.status_code}"
            if key in self._error_counts or len(self._error_counts) < MAX_ERROR_MESSAGES:
                self._error_counts[key] += 1
        self._agg_cache = None

    @property
    def total_samples(self) -> int:
        return self._total.count

    @property
    def operations(self) -> dict[str, OperationStats]:
        return self._ops

    def operation(self, tag: str) -> OperationStats | None:
        return self._ops.get(tag)

    def stats_for(self, tag: str) -> OperationStats | None:
        """Stats for a threshold tag; Op.ALL_REQUESTS covers every sample."""
        if tag == Op.ALL_REQUESTS:
            return self._total
        return self._ops.get(tag)

    def set_end_time(self, t: float) -> None:
        self._end_time = t
        self._agg_cache = None

    @property
    def start_time(self) -> float:
        return self._start_time or 0.0

    @property
    def end_time(self) -> float:
        return self._end_time or time.perf_counter()

    @property
    def duration_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return max(0.0, self.end_time - self._start_time)

    def full_aggregate(self) -> AggregateMetrics:
        return self._total.aggregate()

    def rps(self) -> float:
        d = self.duration_seconds
        return self._total.count / d if d > 0 else 0.0

    def get_cached_aggregate(self, cache_ttl_sec: float = DEFAULT_CACHE_TTL_SEC) -> AggregateMetrics:
        """Aggregate with short TTL cache for the live view (low overhead)."""
        now = time.perf_counter()
        if self._agg_cache is not None and (now - self._agg_cache_time) <= cache_ttl_sec:
            return self._agg_cache
        self._agg_cache = self.full_aggregate()
        self._agg_cache_time = now
        return self._agg_cache

    def operation_aggregates(self) -> dict[str, AggregateMetrics]:
        return {tag: stats.aggregate() for tag, stats in sorted(self._ops.items())}

    def top_errors(self, n: int = 5) -> dict[str, int]:
        return dict(sorted(self._error_counts.items(), key=lambda x: x[1], reverse=True)[:n])

    def time_series(self, bucket_sec: int = TIME_SERIES_BUCKET_SEC) -> list[TimeSeriesPoint]:
        """Bucket recent samples for charts. Single pass."""
        if not self._recent:
            return []
        start = self._recent[0].timestamp
        buckets: dict[int, list[MetricSample]] = defaultdict(list)
        for s in self._recent:
            buckets[int((s.timestamp - start) // bucket_sec)].append(s)
        out: list[TimeSeriesPoint] = []
        for b in sorted(buckets):
            items = buckets[b]
            times = sorted(s.duration_ms for s in items)
            failed = sum(1 for s in items if not s.success)
            out.append(
                TimeSeriesPoint(
                    offset_seconds=b * bucket_sec,
                    rps=len(items) / bucket_sec,
                    avg_ms=sum(times) / len(times),
                    p95_ms=_percentile(times, 95),
                    error_rate_pct=100.0 * failed / len(items),
                )
            )
        return out
