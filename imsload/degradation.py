"""Endurance drift tracking: per-minute buckets plus periodic health snapshots.

Every sample lands in bucket floor(elapsed / 60). Buckets are created lazily
and never merged or split. Health snapshots are folded into the bucket of the
minute they were taken in. Coarse buckets keep an 8 hour run to a few hundred
entries.
"""

from __future__ import annotations

import math
from typing import Any

from .logging_config import get_logger
from .models import DegradationBucket, DegradationReport, HealthSnapshot, MetricSample

logger = get_logger("degradation")

BUCKET_SECONDS = 60
# Memory growth (%) across the run that, with a monotonic trend, flags a leak
MEMORY_LEAK_THRESHOLD_PCT = 5.0
# Latency growth (%) between first and last quarter reported as degradation
LATENCY_DRIFT_WARN_PCT = 20.0
MIN_HEALTH_POINTS_FOR_TREND = 3

_HEALTH_KEYS = {
    "cpu_utilization": ("cpuUtilization", "cpu", "cpuUsage"),
    "memory_utilization": ("memoryUtilization", "memory", "memoryUsage", "heapUtilization"),
    "connection_pool_utilization": ("connectionPoolUtilization", "connectionPool", "dbConnectionPoolUtilization"),
}


def parse_health(body: Any, elapsed_seconds: float = 0.0) -> HealthSnapshot | None:
    """HealthSnapshot from a /system/health body, or None if no utilization fields are present."""
    if not isinstance(body, dict):
        return None
    source = body.get("metrics") if isinstance(body.get("metrics"), dict) else body
    values: dict[str, float] = {}
    for attr, keys in _HEALTH_KEYS.items():
        for k in keys:
            v = source.get(k)
            if isinstance(v, (int, float)) and not isinstance(v, bool):
                values[attr] = float(v)
                break
    if not values:
        return None
    return HealthSnapshot(
        cpu_utilization=values.get("cpu_utilization", 0.0),
        memory_utilization=values.get("memory_utilization", 0.0),
        connection_pool_utilization=values.get("connection_pool_utilization", 0.0),
        elapsed_seconds=elapsed_seconds,
    )


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _growth_pct(first: float, last: float) -> float:
    if first <= 0:
        return 0.0 if last <= 0 else 100.0
    return 100.0 * (last - first) / first


class DegradationTracker:
    """Per-run bucket store. Fed by the single metrics consumer, so no locking."""

    __slots__ = ("start_time", "health_sample_every", "_buckets")

    def __init__(self, start_time: float, health_sample_every: int = 100) -> None:
        self.start_time = start_time
        self.health_sample_every = health_sample_every
        self._buckets: dict[int, DegradationBucket] = {}

    @staticmethod
    def bucket_index(elapsed_seconds: float) -> int:
        return max(0, math.floor(elapsed_seconds / BUCKET_SECONDS))

    def _bucket(self, minute: int) -> DegradationBucket:
        b = self._buckets.get(minute)
        if b is None:
            b = self._buckets[minute] = DegradationBucket(elapsed_minute=minute)
        return b

    def record_at(self, elapsed_seconds: float, duration_ms: float, success: bool) -> DegradationBucket:
        b = self._bucket(self.bucket_index(elapsed_seconds))
        b.sample_count += 1
        b.latency_sum_ms += duration_ms
        if not success:
            b.failed_count += 1
        return b

    def record(self, sample: MetricSample) -> DegradationBucket:
        return self.record_at(sample.timestamp - self.start_time, sample.duration_ms, sample.success)

    def should_sample_health(self, started: int) -> bool:
        """True for every health_sample_every-th started iteration (0, N, 2N, ...).

        Counts iterations that reached a worker; dropped starts are not counted.
        """
        return started % self.health_sample_every == 0

    def fold_health(self, snapshot: HealthSnapshot) -> DegradationBucket:
        """Running mean of the snapshots taken within the bucket's minute."""
        b = self._bucket(self.bucket_index(snapshot.elapsed_seconds))
        n = b.health_samples
        b.cpu_utilization = ((b.cpu_utilization or 0.0) * n + snapshot.cpu_utilization) / (n + 1)
        b.memory_utilization = ((b.memory_utilization or 0.0) * n + snapshot.memory_utilization) / (n + 1)
        b.connection_pool_utilization = (
            (b.connection_pool_utilization or 0.0) * n + snapshot.connection_pool_utilization
        ) / (n + 1)
        b.health_samples = n + 1
        return b

    @property
    def buckets(self) -> list[DegradationBucket]:
        return [self._buckets[k] for k in sorted(self._buckets)]

    def report(self) -> DegradationReport:
        """Compare the first and last quarter of buckets and look for a monotonic memory climb."""
        buckets = self.buckets
        comments: list[str] = []
        if len(buckets) < 2:
            return DegradationReport(
                buckets=len(buckets),
                latency_drift_pct=0.0,
                error_rate_drift_pct=0.0,
                throughput_drift_pct=0.0,
                memory_growth_pct=None,
                cpu_growth_pct=None,
                memory_monotonic=False,
                leak_suspected=False,
                comments=["Fewer than two minutes of data; no trend computed."],
            )
        q = max(1, len(buckets) // 4)
        first, last = buckets[:q], buckets[-q:]
        latency_drift = _growth_pct(
            _mean([b.mean_latency_ms for b in first]), _mean([b.mean_latency_ms for b in last])
        )
        error_drift = _mean([b.error_rate_pct for b in last]) - _mean([b.error_rate_pct for b in first])
        throughput_drift = _growth_pct(
            _mean([float(b.throughput_count) for b in first]), _mean([float(b.throughput_count) for b in last])
        )

        health = [b for b in buckets if b.health_samples]
        memory_growth = cpu_growth = None
        monotonic = False
        if len(health) >= 2:
            mem = [b.memory_utilization or 0.0 for b in health]
            cpu = [b.cpu_utilization or 0.0 for b in health]
            memory_growth = _growth_pct(mem[0], mem[-1])
            cpu_growth = _growth_pct(cpu[0], cpu[-1])
            monotonic = (
                len(mem) >= MIN_HEALTH_POINTS_FOR_TREND
                and all(b >= a for a, b in zip(mem, mem[1:]))
                and mem[-1] > mem[0]
            )
        leak = monotonic and memory_growth is not None and memory_growth > MEMORY_LEAK_THRESHOLD_PCT

        if latency_drift > LATENCY_DRIFT_WARN_PCT:
            comments.append(f"Mean latency rose {latency_drift:.1f}% from the first to the last quarter of the run.")
        if error_drift > 0.5:
            comments.append(f"Error rate rose {error_drift:.2f} points over the run.")
        if throughput_drift < -10:
            comments.append(f"Throughput fell {abs(throughput_drift):.1f}% at an unchanged start rate (saturation).")
        if leak:
            comments.append(
                f"Memory utilization climbed monotonically by {memory_growth:.1f}%: possible resource leak."
            )
        elif memory_growth is not None and memory_growth > MEMORY_LEAK_THRESHOLD_PCT:
            comments.append(f"Memory utilization grew {memory_growth:.1f}% but not monotonically.")
        if not comments:
            comments.append("No significant drift detected.")
        if leak:
            logger.warning("Possible resource leak: memory +%.1f%% across %d health samples", memory_growth, len(health))

        return DegradationReport(
            buckets=len(buckets),
            latency_drift_pct=latency_drift,
            error_rate_drift_pct=error_drift,
            throughput_drift_pct=throughput_drift,
            memory_growth_pct=memory_growth,
            cpu_growth_pct=cpu_growth,
            memory_monotonic=monotonic,
            leak_suspected=leak,
            comments=comments,
        )
