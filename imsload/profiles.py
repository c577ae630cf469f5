"""Built-in load profiles and the per-profile threshold table.

The threshold table here is the single source of truth for SLA evaluation.
Any profile ceiling that differs from DOCUMENTED_SLA must be declared in the
profile's relaxations; audit_thresholds reports divergence either way.
"""

from __future__ import annotations

from dataclasses import dataclass

from .exceptions import ImsLoadConfigError
from .models import (
    ExecutorKind,
    LoadProfile,
    Op,
    ProfileSettings,
    ScenarioKind,
    ScenarioWeight,
    Stage,
    ThinkTime,
    ThresholdSpec,
    Timeouts,
)

# Production SLA (p99, ms) for the latency-critical operations
DOCUMENTED_SLA: dict[str, float] = {
    Op.VALIDATE_ORDER: 150.0,
    Op.CALCULATE_POSITION: 200.0,
    Op.RECALCULATE_POSITION: 200.0,
    Op.CALCULATE_INVENTORY: 200.0,
}
DOCUMENTED_MAX_ERROR_RATE_PCT = 1.0

DEFAULT_TIMEOUTS = {
    Op.VALIDATE_ORDER: 5_000.0,
    Op.SUBMIT_LOCATE: 8_000.0,
}

# Stable table order: locate, shortSell, position, inventory, dataIngestion, mixed
_ORDER = (
    ScenarioKind.LOCATE,
    ScenarioKind.SHORT_SELL,
    ScenarioKind.POSITION,
    ScenarioKind.INVENTORY,
    ScenarioKind.DATA_INGESTION,
    ScenarioKind.MIXED,
)


def weight_table(*weights: float) -> tuple[ScenarioWeight, ...]:
    """Weights in the stable scenario order."""
    if len(weights) != len(_ORDER):
        raise ValueError(f"expected {len(_ORDER)} weights, got {len(weights)}")
    return tuple(ScenarioWeight(kind, w) for kind, w in zip(_ORDER, weights))


def documented_thresholds(relaxations: dict[str, float] | None = None) -> tuple[ThresholdSpec, ...]:
    """p99 thresholds at the documented SLA, with explicit per-operation relaxations applied."""
    relaxations = relaxations or {}
    return tuple(
        ThresholdSpec(op, relaxations.get(op, max_ms), 99.0) for op, max_ms in DOCUMENTED_SLA.items()
    )


def tiers(
    operation: str,
    p99: float | None = None,
    p95: float | None = None,
    p50: float | None = None,
    avg: float | None = None,
) -> tuple[ThresholdSpec, ...]:
    """Distribution tiers for one operation tag; unset tiers are skipped."""
    out = [ThresholdSpec(operation, ms, pct) for pct, ms in ((99.0, p99), (95.0, p95), (50.0, p50)) if ms is not None]
    if avg is not None:
        out.append(ThresholdSpec(operation, avg, None))
    return tuple(out)


NORMAL_WEIGHTS = weight_table(0.20, 0.30, 0.20, 0.15, 0.05, 0.10)
SPIKE_WEIGHTS = weight_table(0.20, 0.25, 0.15, 0.15, 0.10, 0.15)
ENDURANCE_WEIGHTS = weight_table(0.20, 0.20, 0.20, 0.15, 0.15, 0.10)

STRESS_RELAXATIONS = {Op.VALIDATE_ORDER: 200.0}


def _normal() -> ProfileSettings:
    return ProfileSettings(
        name="normal",
        load=LoadProfile.constant(rate=200, duration_seconds=300, preallocated_workers=100, max_workers=150),
        weights=NORMAL_WEIGHTS,
        thresholds=documented_thresholds() + tiers(Op.ALL_REQUESTS, p95=2000),
        max_error_rate_pct=DOCUMENTED_MAX_ERROR_RATE_PCT,
        timeouts=Timeouts(per_operation=dict(DEFAULT_TIMEOUTS)),
    )


def _peak() -> ProfileSettings:
    return ProfileSettings(
        name="peak",
        load=LoadProfile.constant(rate=500, duration_seconds=300, preallocated_workers=250, max_workers=375),
        weights=NORMAL_WEIGHTS,
        thresholds=(
            documented_thresholds()
            + tiers(Op.ALL_REQUESTS, p99=3000, p95=2000, avg=1000)
            + tiers(Op.SUBMIT_LOCATE, p99=2000, p95=1000)
            + tiers(Op.VALIDATE_ORDER, p95=100, avg=50)
            + tiers(Op.CALCULATE_POSITION, p95=150, avg=100)
            + tiers(Op.CALCULATE_INVENTORY, p95=150, avg=100)
            + tiers(Op.SUBMIT_MARKET_DATA, p99=500, p95=300, avg=150)
        ),
        max_error_rate_pct=DOCUMENTED_MAX_ERROR_RATE_PCT,
        timeouts=Timeouts(per_operation=dict(DEFAULT_TIMEOUTS)),
    )


def _stress() -> ProfileSettings:
    return ProfileSettings(
        name="stress",
        load=LoadProfile(
            executor=ExecutorKind.RAMPING_RATE,
            stages=(
                Stage(30, 1000), Stage(60, 1000),
                Stage(30, 2000), Stage(60, 2000),
                Stage(30, 3000), Stage(60, 3000),
                Stage(30, 0),
            ),
            preallocated_workers=500,
            max_workers=3000,
        ),
        weights=NORMAL_WEIGHTS,
        thresholds=(
            documented_thresholds(STRESS_RELAXATIONS)
            + tiers(Op.ALL_REQUESTS, p99=300, p95=200, p50=150)
            + tiers(Op.VALIDATE_ORDER, p95=150, p50=100)
            + tiers(Op.CALCULATE_POSITION, p95=200, p50=150)
        ),
        max_error_rate_pct=5.0,
        relaxations=dict(STRESS_RELAXATIONS),
        think_time=ThinkTime(0.1, 0.3),
        timeouts=Timeouts(per_operation=dict(DEFAULT_TIMEOUTS)),
        market_data_batch_size=50,
        max_quantity=100_000,
    )


def _spike() -> ProfileSettings:
    return ProfileSettings(
        name="spike",
        load=LoadProfile(
            executor=ExecutorKind.RAMPING_RATE,
            stages=(
                Stage(120, 50),
                Stage(20, 350),
                Stage(60, 350),
                Stage(60, 50),
                Stage(300, 50),
            ),
            preallocated_workers=100,
            max_workers=1000,
            start_rate=50,
        ),
        weights=SPIKE_WEIGHTS,
        thresholds=(
            documented_thresholds(STRESS_RELAXATIONS)
            + tiers(Op.ALL_REQUESTS, p99=5000, p95=3000)
            + tiers(Op.VALIDATE_ORDER, p95=100)
            + tiers(Op.CALCULATE_POSITION, p95=150)
        ),
        max_error_rate_pct=5.0,
        relaxations=dict(STRESS_RELAXATIONS),
        think_time=ThinkTime(0.5, 2.0, spike_factor=0.2),
        timeouts=Timeouts(per_operation=dict(DEFAULT_TIMEOUTS)),
    )


def _endurance() -> ProfileSettings:
    return ProfileSettings(
        name="endurance",
        load=LoadProfile.constant(rate=50, duration_seconds=8 * 3600, preallocated_workers=100, max_workers=150),
        weights=ENDURANCE_WEIGHTS,
        thresholds=(
            documented_thresholds()
            + tiers(Op.ALL_REQUESTS, p99=3000, p95=2000, p50=1000)
            + tiers(Op.VALIDATE_ORDER, p95=100)
            + tiers(Op.CALCULATE_POSITION, p95=150)
        ),
        max_error_rate_pct=0.1,
        timeouts=Timeouts(per_operation=dict(DEFAULT_TIMEOUTS)),
        track_degradation=True,
        health_sample_every=100,
        min_check_pass_rate_pct=99.9,
    )


PROFILE_FACTORIES = {
    "normal": _normal,
    "peak": _peak,
    "stress": _stress,
    "spike": _spike,
    "endurance": _endurance,
}


def get_profile(name: str) -> ProfileSettings:
    """Fresh copy of a built-in profile (safe to mutate)."""
    factory = PROFILE_FACTORIES.get(name.strip().lower())
    if factory is None:
        raise ImsLoadConfigError(f"Unknown profile: {name}", context={"known": sorted(PROFILE_FACTORIES)})
    return factory()


@dataclass(slots=True, frozen=True)
class ThresholdDivergence:
    operation: str
    documented_ms: float
    configured_ms: float | None
    declared: bool
    label: str = "p(99)"

    def describe(self, profile: str) -> str:
        configured = "no threshold" if self.configured_ms is None else f"{self.configured_ms:g}ms"
        kind = "explicit relaxation" if self.declared else "UNDECLARED divergence"
        return (
            f"{profile}: {self.operation} {self.label} {configured} "
            f"vs documented p99 {self.documented_ms:g}ms ({kind})"
        )


def audit_thresholds(settings: ProfileSettings) -> list[ThresholdDivergence]:
    """Compare a profile's thresholds with the documented SLA.

    The p99 ceiling of each documented operation must equal the documented
    value unless the profile lists the operation in its relaxations with the
    same ceiling. A lower tier (p95, p50, avg) looser than the documented p99
    is always an undeclared divergence.
    """
    configured: dict[str, float] = {}
    for t in settings.thresholds:
        if t.percentile == 99.0:
            configured[t.operation] = min(t.max_ms, configured.get(t.operation, t.max_ms))
    out: list[ThresholdDivergence] = []
    for op, documented in DOCUMENTED_SLA.items():
        actual = configured.get(op)
        if actual == documented:
            continue
        declared = actual is not None and settings.relaxations.get(op) == actual
        out.append(ThresholdDivergence(op, documented, actual, declared))
    for t in settings.thresholds:
        documented = DOCUMENTED_SLA.get(t.operation)
        if documented is not None and t.percentile != 99.0 and t.max_ms > documented:
            out.append(ThresholdDivergence(t.operation, documented, t.max_ms, False, t.label))
    return out
