"""Data models for the imsload harness.

Optimized for long, high-rate runs:
- __slots__ on hot-path classes (requests, samples) to reduce memory
- Enums for executor kinds, scenarios and check categories
- Profiles are explicit dataclasses validated at load time, never loose dicts
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .auth import SessionAuthenticator
    from .environments import Environment


class ExecutorKind(str, Enum):
    """How iteration starts are paced."""

    CONSTANT_RATE = "constant-rate"
    RAMPING_RATE = "ramping-rate"


class ScenarioKind(str, Enum):
    """Closed set of workflow scenarios. Each has exactly one handler in workflows."""

    LOCATE = "locate"
    SHORT_SELL = "shortSell"
    POSITION = "position"
    INVENTORY = "inventory"
    DATA_INGESTION = "dataIngestion"
    MIXED = "mixed"


class CheckCategory(str, Enum):
    """Outcome categories reported separately."""

    STATUS = "status"
    SHAPE = "shape"
    SLA = "sla"
    TIMEOUT_GUARD = "timeout_guard"
    BATCH = "batch"
    CONSISTENCY = "consistency"


@dataclass(slots=True, frozen=True)
class Stage:
    """One (duration, target rate) pair of a load profile."""

    duration_seconds: float
    target_rate: float


@dataclass(slots=True)
class LoadProfile:
    """Time shape of the iteration-start rate.

    For ramping profiles the rate moves linearly from the previous stage's
    target (or start_rate for the first stage) to each stage's target.
    """

    executor: ExecutorKind
    stages: tuple[Stage, ...]
    preallocated_workers: int
    max_workers: int
    start_rate: float = 0.0

    @classmethod
    def constant(cls, rate: float, duration_seconds: float, preallocated_workers: int, max_workers: int) -> "LoadProfile":
        return cls(
            executor=ExecutorKind.CONSTANT_RATE,
            stages=(Stage(duration_seconds, rate),),
            preallocated_workers=preallocated_workers,
            max_workers=max_workers,
            start_rate=rate,
        )

    @property
    def total_duration_seconds(self) -> float:
        return sum(s.duration_seconds for s in self.stages)

    @property
    def peak_rate(self) -> float:
        return max([self.start_rate, *(s.target_rate for s in self.stages)])


@dataclass(slots=True, frozen=True)
class ScenarioWeight:
    scenario: ScenarioKind
    weight: float


@dataclass(slots=True, frozen=True)
class ThresholdSpec:
    """Latency ceiling for one operation tag. percentile=None means mean latency."""

    operation: str
    max_ms: float
    percentile: float | None = 99.0

    @property
    def label(self) -> str:
        if self.percentile is None:
            return "avg"
        return f"p({self.percentile:g})"


@dataclass(slots=True)
class ThinkTime:
    """Bounds (seconds) for pauses between requests. spike_factor scales pauses during spike phases."""

    min_seconds: float = 0.5
    max_seconds: float = 2.0
    spike_factor: float = 1.0


@dataclass(slots=True)
class Timeouts:
    """Timeout guard per operation (ms). Distinct from the SLA ceiling."""

    default_ms: float = 10_000.0
    per_operation: dict[str, float] = field(default_factory=dict)

    def guard_ms(self, operation: str) -> float:
        return self.per_operation.get(operation, self.default_ms)


@dataclass(slots=True)
class ProfileSettings:
    """Everything a run needs besides the target environment and reference data."""

    name: str
    load: LoadProfile
    weights: tuple[ScenarioWeight, ...]
    thresholds: tuple[ThresholdSpec, ...]
    max_error_rate_pct: float
    relaxations: dict[str, float] = field(default_factory=dict)
    think_time: ThinkTime = field(default_factory=ThinkTime)
    timeouts: Timeouts = field(default_factory=Timeouts)
    track_degradation: bool = False
    health_sample_every: int = 100
    batch_success_threshold: float = 0.95
    market_data_batch_size: int = 10
    locate_poll_attempts: int = 3
    settle_seconds: float = 0.5
    max_quantity: int = 50_000
    # Minimum share of all recorded checks that must pass (None: no gate)
    min_check_pass_rate_pct: float | None = None


class WorkflowRequest:
    """One HTTP call of a scenario. Ephemeral, built per call.

    Uses __slots__: constructed for every request of every iteration.
    """

    __slots__ = ("method", "path", "tags", "body", "params")

    def __init__(
        self,
        method: str,
        path: str,
        operation: str,
        body: Any = None,
        params: dict[str, Any] | None = None,
        **tags: str,
    ) -> None:
        self.method = method
        self.path = path
        self.tags = {"operation": operation, **tags}
        self.body = body
        self.params = params

    @property
    def operation(self) -> str:
        return self.tags["operation"]

    def __repr__(self) -> str:
        return f"WorkflowRequest(method={self.method!r}, path={self.path!r}, operation={self.operation!r})"


class MetricSample:
    """Timing and outcome of one executed WorkflowRequest.

    The most allocated object during a run; kept small with __slots__.
    """

    __slots__ = (
        "operation", "method", "path", "status_code", "duration_ms",
        "success", "timed_out", "error", "iteration", "timestamp",
    )

    def __init__(
        self,
        operation: str,
        method: str,
        path: str,
        status_code: int | None,
        duration_ms: float,
        success: bool,
        timed_out: bool = False,
        error: str | None = None,
        iteration: int = 0,
        timestamp: float = 0.0,
    ) -> None:
        self.operation = operation
        self.method = method
        self.path = path
        self.status_code = status_code
        self.duration_ms = duration_ms
        self.success = success
        self.timed_out = timed_out
        self.error = error
        self.iteration = iteration
        self.timestamp = timestamp

    def __repr__(self) -> str:
        return (
            f"MetricSample(operation={self.operation!r}, status={self.status_code}, "
            f"time_ms={self.duration_ms:.2f}, success={self.success})"
        )


@dataclass(slots=True)
class TestContext:
    """Shared, read-only run state built once in setup.

    Only the bearer token changes during a run, and it lives on the session.
    """

    __test__ = False  # not a pytest test class

    environment: Environment
    session: SessionAuthenticator
    securities: tuple[dict[str, Any], ...]
    counterparties: tuple[dict[str, Any], ...]
    books: tuple[dict[str, Any], ...]
    aggregation_units: tuple[dict[str, Any], ...]
    positions: tuple[dict[str, Any], ...]
    locates: tuple[dict[str, Any], ...]
    scenario_weights: tuple[ScenarioWeight, ...]

    @property
    def token(self) -> str | None:
        return self.session.token


@dataclass(slots=True)
class HealthSnapshot:
    cpu_utilization: float
    memory_utilization: float
    connection_pool_utilization: float
    elapsed_seconds: float = 0.0


@dataclass(slots=True)
class DegradationBucket:
    """Per-minute aggregate for endurance runs. Created lazily, never merged or split."""

    elapsed_minute: int
    sample_count: int = 0
    failed_count: int = 0
    latency_sum_ms: float = 0.0
    cpu_utilization: float | None = None
    memory_utilization: float | None = None
    connection_pool_utilization: float | None = None
    health_samples: int = 0

    @property
    def mean_latency_ms(self) -> float:
        return self.latency_sum_ms / self.sample_count if self.sample_count else 0.0

    @property
    def error_rate_pct(self) -> float:
        return 100.0 * self.failed_count / self.sample_count if self.sample_count else 0.0

    @property
    def throughput_count(self) -> int:
        return self.sample_count


@dataclass(slots=True)
class DegradationReport:
    buckets: int
    latency_drift_pct: float
    error_rate_drift_pct: float
    throughput_drift_pct: float
    memory_growth_pct: float | None
    cpu_growth_pct: float | None
    memory_monotonic: bool
    leak_suspected: bool
    comments: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AggregateMetrics:
    """Aggregated metrics for one operation tag or the whole run."""

    total_requests: int
    successful_requests: int
    failed_requests: int
    timed_out_requests: int = 0
    avg_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    p50_ms: float = 0.0
    p90_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0
    error_rate_pct: float = 0.0
    status_code_counts: dict[str, int] = field(default_factory=dict)

    @property
    def success_rate_pct(self) -> float:
        if self.total_requests == 0:
            return 100.0
        return 100.0 * self.successful_requests / self.total_requests


@dataclass(slots=True)
class SchedulerStats:
    iterations_started: int = 0
    iterations_completed: int = 0
    iterations_failed: int = 0
    dropped_iterations: int = 0
    peak_workers: int = 0
    allocated_workers: int = 0
    duration_seconds: float = 0.0


@dataclass(slots=True)
class ThresholdResult:
    operation: str
    label: str
    max_ms: float
    actual_ms: float | None
    samples: int
    passed: bool
    relaxed: bool = False

    @property
    def no_data(self) -> bool:
        return self.samples == 0


@dataclass(slots=True)
class RunVerdict:
    """Run-level SLA verdict, computed only at teardown."""

    compliant: bool
    results: list[ThresholdResult]
    error_rate_pct: float
    max_error_rate_pct: float
    error_rate_ok: bool
    total_requests: int
    check_pass_rate_pct: float | None = None
    min_check_pass_rate_pct: float | None = None
    checks_ok: bool = True

    @property
    def violations(self) -> list[str]:
        out: list[str] = []
        for r in self.results:
            if not r.passed:
                out.append(f"{r.operation} {r.label} {r.actual_ms:.1f}ms exceeds {r.max_ms:g}ms")
        if not self.error_rate_ok:
            out.append(f"Error rate {self.error_rate_pct:.2f}% exceeds {self.max_error_rate_pct:g}%")
        if not self.checks_ok:
            out.append(f"Check pass rate {self.check_pass_rate_pct:.3f}% below {self.min_check_pass_rate_pct:g}%")
        return out


class Op:
    """Operation tags used to group samples."""

    AUTHENTICATE = "authenticate"
    SUBMIT_LOCATE = "submitLocate"
    CHECK_LOCATE_STATUS = "checkLocateStatus"
    VALIDATE_ORDER = "validateOrder"
    CHECK_CLIENT_LIMIT = "checkClientLimit"
    CHECK_AU_LIMIT = "checkAggregationUnitLimit"
    CALCULATE_POSITION = "calculatePosition"
    RECALCULATE_POSITION = "recalculatePosition"
    SUBMIT_TRADE = "submitTrade"
    SETTLEMENT_LADDER = "querySettlementLadder"
    CALCULATE_INVENTORY = "calculateInventory"
    UPDATE_REFERENCE_DATA = "updateReferenceData"
    SUBMIT_MARKET_DATA = "submitMarketData"
    SUBMIT_MARKET_DATA_BATCH = "submitMarketDataBatch"
    VERIFY_INGESTION = "verifyIngestion"
    SYSTEM_HEALTH = "systemHealth"
    # Threshold tag matching every sample of the run
    ALL_REQUESTS = "allRequests"
