"""Check/assertion engine: named pass/fail outcomes grouped by category.

Status, response shape, hard SLA, timeout guard, batch success rate and data
consistency are tallied separately so a slow-but-correct call (SLA fail) is
never confused with a hung or broken one (timeout guard fail).
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .logging_config import get_logger
from .models import CheckCategory, MetricSample, Op, ThresholdSpec

logger = get_logger("checks")

OK_STATUSES = frozenset({200, 201})

# Required fields and allowed status values per business response
LOCATE_SHAPE = (("requestId", "status", "securityId", "quantity"), {"status": {"PENDING", "APPROVED", "REJECTED"}})
ORDER_SHAPE = (
    ("orderId", "status", "clientLimit", "aggregationUnitLimit"),
    {"status": {"APPROVED", "REJECTED"}},
)
POSITION_SHAPE = (("bookId", "securityId", "quantity"), {})
INVENTORY_SHAPE = (("securityId", "availableQuantity", "calculationType"), {})


@dataclass(slots=True)
class CheckTally:
    passes: int = 0
    fails: int = 0

    @property
    def total(self) -> int:
        return self.passes + self.fails

    @property
    def pass_rate_pct(self) -> float:
        return 100.0 * self.passes / self.total if self.total else 100.0


def batch_passes(outcomes: Iterable[bool], min_success_rate: float | None) -> tuple[bool, float]:
    """Judge a batch by success rate. Deterministic for a given outcome vector and threshold.

    Returns (passed, success_rate). With min_success_rate None every non-empty batch passes.
    An empty batch fails.
    """
    values = list(outcomes)
    if not values:
        return False, 0.0
    rate = sum(1 for v in values if v) / len(values)
    if min_success_rate is None:
        return True, rate
    return rate >= min_success_rate, rate


def missing_fields(body: Any, required: Sequence[str], allowed: Mapping[str, set[str]] | None = None) -> list[str]:
    """Field problems in a JSON body: missing/empty required fields and out-of-set values."""
    if not isinstance(body, dict):
        return ["<body is not an object>"]
    problems = [f for f in required if body.get(f) in (None, "")]
    for f, values in (allowed or {}).items():
        if f in body and body[f] not in values:
            problems.append(f"{f}={body[f]!r}")
    return problems


def per_call_ceilings(thresholds: Iterable[ThresholdSpec]) -> dict[str, float]:
    """Hard per-call ceiling per operation: its highest-percentile tier (strictest on ties).

    Lower tiers (p95, p50, avg) describe the distribution and are judged at run
    end only; the run-wide tag never applies to a single call.
    """
    best: dict[str, ThresholdSpec] = {}
    for t in thresholds:
        if t.percentile is None or t.operation == Op.ALL_REQUESTS:
            continue
        cur = best.get(t.operation)
        if cur is None or t.percentile > cur.percentile or (t.percentile == cur.percentile and t.max_ms < cur.max_ms):
            best[t.operation] = t
    return {op: t.max_ms for op, t in best.items()}


class CheckEngine:
    """Per-run check recorder. One instance per run, updated from the event loop only."""

    __slots__ = ("_tallies", "_sla", "_categories")

    def __init__(self, thresholds: Iterable[ThresholdSpec] = ()) -> None:
        self._tallies: dict[tuple[CheckCategory, str], CheckTally] = defaultdict(CheckTally)
        self._categories: dict[CheckCategory, CheckTally] = defaultdict(CheckTally)
        self._sla = per_call_ceilings(thresholds)

    def sla_for(self, operation: str) -> float | None:
        return self._sla.get(operation)

    def record(self, category: CheckCategory, name: str, passed: bool) -> bool:
        tally = self._tallies[(category, name)]
        cat = self._categories[category]
        if passed:
            tally.passes += 1
            cat.passes += 1
        else:
            tally.fails += 1
            cat.fails += 1
        return passed

    def verify(
        self,
        sample: MetricSample,
        expected_status: Iterable[int] = OK_STATUSES,
        max_ms: float | None = None,
        name: str | None = None,
    ) -> bool:
        """Record status, timeout guard and SLA outcomes for one call.

        Returns True when the call is functionally successful (expected status,
        no timeout), whether or not it met its latency ceiling.
        """
        name = name or sample.operation
        if sample.timed_out:
            self.record(CheckCategory.TIMEOUT_GUARD, name, False)
            self.record(CheckCategory.STATUS, name, False)
            return False
        self.record(CheckCategory.TIMEOUT_GUARD, name, True)
        ok = self.record(CheckCategory.STATUS, name, sample.status_code in set(expected_status))
        ceiling = max_ms if max_ms is not None else self._sla.get(sample.operation)
        if ok and ceiling is not None:
            self.record(CheckCategory.SLA, name, sample.duration_ms <= ceiling)
        return ok

    def verify_shape(
        self,
        name: str,
        body: Any,
        required: Sequence[str],
        allowed: Mapping[str, set[str]] | None = None,
    ) -> bool:
        """Record a response-shape outcome. A False result means: skip dependent steps."""
        problems = missing_fields(body, required, allowed)
        if problems:
            logger.debug("Shape check %s failed: %s", name, ", ".join(problems))
        return self.record(CheckCategory.SHAPE, name, not problems)

    def verify_batch(self, name: str, outcomes: Iterable[bool], min_success_rate: float | None) -> bool:
        passed, rate = batch_passes(outcomes, min_success_rate)
        if not passed:
            logger.debug("Batch check %s failed: success rate %.1f%%", name, rate * 100)
        return self.record(CheckCategory.BATCH, name, passed)

    def verify_consistency(self, name: str, passed: bool) -> bool:
        return self.record(CheckCategory.CONSISTENCY, name, passed)

    def tally(self, category: CheckCategory, name: str | None = None) -> CheckTally:
        if name is None:
            return self._categories.get(category, CheckTally())
        return self._tallies.get((category, name), CheckTally())

    def summary(self) -> list[dict[str, Any]]:
        """Rows for reports, grouped by category then name."""
        rows = []
        for (category, name), t in sorted(self._tallies.items(), key=lambda kv: (kv[0][0].value, kv[0][1])):
            rows.append({
                "category": category.value,
                "name": name,
                "passes": t.passes,
                "fails": t.fails,
                "pass_rate_pct": round(t.pass_rate_pct, 2),
            })
        return rows

    def overall(self) -> CheckTally:
        """All checks of the run, every category."""
        return CheckTally(
            passes=sum(t.passes for t in self._categories.values()),
            fails=sum(t.fails for t in self._categories.values()),
        )

    def category_summary(self) -> dict[str, dict[str, int]]:
        return {c.value: {"passes": t.passes, "fails": t.fails} for c, t in self._categories.items()}
