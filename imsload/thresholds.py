"""Run-end SLA verdict from per-operation percentiles, the error-rate ceiling and the check gate."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from .checks import CheckEngine
from .logging_config import get_logger
from .metrics import MetricsCollector
from .models import RunVerdict, ThresholdResult, ThresholdSpec

logger = get_logger("thresholds")


def evaluate_thresholds(
    collector: MetricsCollector,
    thresholds: Iterable[ThresholdSpec],
    max_error_rate_pct: float,
    relaxations: Mapping[str, float] | None = None,
    checks: CheckEngine | None = None,
    min_check_pass_rate_pct: float | None = None,
) -> RunVerdict:
    """Judge every registered threshold over the operation's full-run samples.

    An operation may carry several tiers (p99, p95, p50, avg); each is its own
    result. Op.ALL_REQUESTS tiers are judged over every sample of the run. An
    operation with no samples is reported as no-data and does not fail the
    run. The verdict is compliant only if every threshold passes, the run-wide
    error rate is within the ceiling and, when a check gate is set, the share
    of passing checks reaches it.
    """
    relaxations = relaxations or {}
    results: list[ThresholdResult] = []
    for spec in thresholds:
        stats = collector.stats_for(spec.operation)
        if stats is None or stats.count == 0:
            results.append(ThresholdResult(spec.operation, spec.label, spec.max_ms, None, 0, True))
            continue
        actual = stats.mean_ms if spec.percentile is None else stats.percentile(spec.percentile)
        results.append(
            ThresholdResult(
                operation=spec.operation,
                label=spec.label,
                max_ms=spec.max_ms,
                actual_ms=actual,
                samples=stats.count,
                passed=actual <= spec.max_ms,
                relaxed=spec.percentile == 99.0 and relaxations.get(spec.operation) == spec.max_ms,
            )
        )

    agg = collector.full_aggregate()
    error_ok = agg.error_rate_pct <= max_error_rate_pct

    check_rate: float | None = None
    checks_ok = True
    if checks is not None:
        tally = checks.overall()
        if tally.total:
            check_rate = tally.pass_rate_pct
            if min_check_pass_rate_pct is not None:
                checks_ok = check_rate >= min_check_pass_rate_pct
        elif min_check_pass_rate_pct is not None:
            logger.info("Check gate %g%%: no checks recorded", min_check_pass_rate_pct)

    verdict = RunVerdict(
        compliant=error_ok and checks_ok and all(r.passed for r in results),
        results=results,
        error_rate_pct=agg.error_rate_pct,
        max_error_rate_pct=max_error_rate_pct,
        error_rate_ok=error_ok,
        total_requests=agg.total_requests,
        check_pass_rate_pct=check_rate,
        min_check_pass_rate_pct=min_check_pass_rate_pct,
        checks_ok=checks_ok,
    )
    for r in results:
        if r.no_data:
            logger.info("Threshold %s %s: no samples", r.operation, r.label)
    logger.info(
        "SLA verdict: %s (%d thresholds, error rate %.3f%% / max %g%%)",
        "COMPLIANT" if verdict.compliant else "NOT COMPLIANT",
        len(results), agg.error_rate_pct, max_error_rate_pct,
    )
    return verdict
