"""Run lifecycle: initialize_run, execute_run, finalize_run, and the run_load_test wrapper."""

from __future__ import annotations

import asyncio
import random
import signal
import sys
import time
import uuid
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from rich.console import Console
from rich.live import Live

from .auth import SessionAuthenticator
from .checks import CheckEngine
from .dashboard import create_live_panel, status_line
from .degradation import DegradationTracker, parse_health
from .dispatcher import ScenarioDispatcher
from .engine import RequestExecutor, create_client, response_json
from .environments import Environment, resolve_environment
from .logging_config import bind_log_context, get_logger, reset_log_context
from .metrics import DEFAULT_MAX_RESULTS, MetricsCollector
from .models import (
    DegradationBucket,
    DegradationReport,
    MetricSample,
    Op,
    ProfileSettings,
    RunVerdict,
    ScenarioKind,
    SchedulerStats,
    TestContext,
    WorkflowRequest,
)
from .profiles import audit_thresholds
from .reference_data import ReferenceData, build_test_context, load_reference_data
from .report import generate_json_report, generate_junit_report, generate_report
from .scheduler import ArrivalRateScheduler
from .thresholds import evaluate_thresholds
from .workflows import Iteration, WorkflowRuntime, run_scenario

logger = get_logger("runner")

CONSUMER_POLL_SEC = 0.1
CONSUMER_BATCH_LIMIT = 1000
LIVE_REFRESH_PER_SEC = 1
# When stdout is not a TTY (CI, containers), one status line per interval
STREAMING_FALLBACK_INTERVAL_SEC = 1.0
RESULT_QUEUE_MAXSIZE = 50_000
HEALTH_PATH = "/api/v1/system/health"
REPORT_TIMESTAMP_FMT = "%Y%m%d_%H%M%S"


@dataclass(slots=True)
class RunContext:
    """Everything a run threads through its workers. One per run."""

    settings: ProfileSettings
    test_context: TestContext
    client: httpx.AsyncClient
    executor: RequestExecutor
    checks: CheckEngine
    collector: MetricsCollector
    dispatcher: ScenarioDispatcher
    runtime: WorkflowRuntime
    scheduler: ArrivalRateScheduler
    result_queue: asyncio.Queue[MetricSample | None]
    degradation: DegradationTracker | None
    start_dt: datetime
    run_id: str = ""
    divergences: list[str] = field(default_factory=list)
    scenario_counts: Counter = field(default_factory=Counter)
    iteration_errors: int = 0
    # Iterations that actually started on a worker (dropped starts excluded)
    iterations_run: int = 0


@dataclass(slots=True)
class RunOutcome:
    settings: ProfileSettings
    environment: str
    verdict: RunVerdict
    scheduler_stats: SchedulerStats
    check_rows: list[dict[str, Any]]
    check_categories: dict[str, dict[str, int]]
    degradation_report: DegradationReport | None
    degradation_buckets: list[DegradationBucket]
    divergences: list[str]
    scenario_counts: dict[str, int]
    iteration_errors: int
    start_dt: datetime
    end_dt: datetime
    collector: MetricsCollector
    run_id: str = ""
    target_url: str = ""


def _stdout_is_tty() -> bool:
    """True if stdout is an interactive terminal."""
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


async def _sample_health(run: RunContext, iteration: int) -> None:
    tracker = run.degradation
    sample, response = await run.executor.send(WorkflowRequest("GET", HEALTH_PATH, Op.SYSTEM_HEALTH), iteration)
    if not run.checks.verify(sample):
        return
    snapshot = parse_health(response_json(response), elapsed_seconds=time.perf_counter() - tracker.start_time)
    if snapshot is None:
        logger.debug("Health response without utilization fields")
        return
    tracker.fold_health(snapshot)


def _make_iteration(run_ref: list[RunContext]) -> Callable[[int], Awaitable[None]]:
    async def iteration(n: int) -> None:
        run = run_ref[0]
        kind = run.dispatcher.next(run.runtime.rng)
        run.scenario_counts[kind.value] += 1
        seq = run.iterations_run
        run.iterations_run += 1
        token = bind_log_context(scenario=kind.value, iteration=n)
        try:
            if run.degradation is not None and run.degradation.should_sample_health(seq):
                await _sample_health(run, n)
            await run_scenario(kind, Iteration(run.runtime, n, kind))
        except Exception:  # noqa: BLE001
            run.iteration_errors += 1
            logger.exception("Scenario %s iteration %d failed", kind.value, n)
        finally:
            reset_log_context(token)

    return iteration


async def initialize_run(
    settings: ProfileSettings,
    client: httpx.AsyncClient,
    environment: Environment | None = None,
    reference: ReferenceData | None = None,
    seed: int | None = None,
    clock: Callable[[], float] = time.perf_counter,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RunContext:
    """Resolve environment, authenticate, load reference data and build the run's collaborators.

    Raises:
        ImsLoadConfigError: Environment cannot be resolved
        ImsLoadAuthError: Login failed
        ImsLoadRunnerError: Reference data invalid
    """
    environment = environment or resolve_environment()
    run_id = uuid.uuid4().hex[:8]
    # Bound for the rest of the calling task; every worker task inherits it
    bind_log_context(run_id=run_id, profile=settings.name, environment=environment.name)
    limit = environment.requests_per_second_limit
    if limit is not None and settings.load.peak_rate > limit:
        logger.warning(
            "Peak target %.0f it/s exceeds the %s rate limit of %d req/s; expect HTTP 429s from the gateway",
            settings.load.peak_rate, environment.name, limit,
        )
    divergences: list[str] = []
    for d in audit_thresholds(settings):
        msg = d.describe(settings.name)
        divergences.append(msg)
        if d.declared:
            logger.info("Threshold relaxation: %s", msg)
        else:
            logger.warning("Threshold diverges from documented SLA: %s", msg)

    session = SessionAuthenticator(environment)
    await session.login(client)
    reference = reference or await asyncio.to_thread(load_reference_data)
    test_context = build_test_context(environment, session, reference, settings.weights)

    result_queue: asyncio.Queue[MetricSample | None] = asyncio.Queue(maxsize=RESULT_QUEUE_MAXSIZE)
    executor = RequestExecutor(client, test_context, settings.timeouts, result_queue)
    checks = CheckEngine(settings.thresholds)
    run_ref: list[RunContext] = []
    scheduler = ArrivalRateScheduler(settings.load, _make_iteration(run_ref), clock=clock, sleep=sleep)
    runtime = WorkflowRuntime(
        context=test_context,
        executor=executor,
        checks=checks,
        settings=settings,
        rng=random.Random(seed),
        elapsed=scheduler.elapsed,
        sleep=sleep,
    )
    degradation = None
    if settings.track_degradation:
        degradation = DegradationTracker(time.perf_counter(), settings.health_sample_every)

    run = RunContext(
        settings=settings,
        test_context=test_context,
        client=client,
        executor=executor,
        checks=checks,
        collector=MetricsCollector(max_results=DEFAULT_MAX_RESULTS),
        dispatcher=ScenarioDispatcher(settings.weights),
        runtime=runtime,
        scheduler=scheduler,
        result_queue=result_queue,
        degradation=degradation,
        start_dt=datetime.now(timezone.utc),
        divergences=divergences,
        run_id=run_id,
    )
    run_ref.append(run)
    logger.info(
        "Run initialized: profile=%s, environment=%s, executor=%s, duration=%ss, workers=%d..%d",
        settings.name, environment.name, settings.load.executor.value,
        settings.load.total_duration_seconds, settings.load.preallocated_workers, settings.load.max_workers,
    )
    return run


async def consume_results(
    result_queue: asyncio.Queue[MetricSample | None],
    collector: MetricsCollector,
    tracker: DegradationTracker | None = None,
) -> None:
    """Single consumer: folds samples into the collector (and tracker) until the None sentinel."""
    queue_get_nowait = result_queue.get_nowait
    queue_empty = result_queue.empty

    def fold(sample: MetricSample) -> None:
        collector.add(sample)
        if tracker is not None:
            tracker.record(sample)

    while True:
        try:
            item = await asyncio.wait_for(result_queue.get(), timeout=CONSUMER_POLL_SEC)
        except asyncio.TimeoutError:
            continue
        if item is None:
            return
        fold(item)
        for _ in range(CONSUMER_BATCH_LIMIT):
            if queue_empty():
                break
            nxt = queue_get_nowait()
            if nxt is None:
                return
            fold(nxt)


def _setup_signal_handlers(scheduler: ArrivalRateScheduler) -> None:
    """SIGINT/SIGTERM stop new iterations; in-flight ones finish and reports are still written."""
    loop = asyncio.get_running_loop()

    def _signal_handler(signum: int, frame: Any) -> None:
        logger.info("Shutdown signal received (signal %d), finishing in-flight iterations...", signum)
        loop.call_soon_threadsafe(scheduler.stop)

    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)


async def execute_run(run: RunContext, live: bool = True, handle_signals: bool = True) -> SchedulerStats:
    """Drive the scheduler to completion while a single consumer folds samples."""
    if handle_signals:
        _setup_signal_handlers(run.scheduler)
    if run.degradation is not None:
        run.degradation.start_time = time.perf_counter()
    consumer_task = asyncio.create_task(consume_results(run.result_queue, run.collector, run.degradation))
    scheduler_task = asyncio.create_task(run.scheduler.run())

    if live:
        if _stdout_is_tty():
            console = Console()
            with Live(create_live_panel(run), console=console, refresh_per_second=LIVE_REFRESH_PER_SEC) as live_ctx:
                while not scheduler_task.done():
                    live_ctx.update(create_live_panel(run))
                    await asyncio.sleep(CONSUMER_POLL_SEC)
                live_ctx.update(create_live_panel(run))
        else:
            while not scheduler_task.done():
                sys.stdout.write(status_line(run) + "\n")
                sys.stdout.flush()
                await asyncio.wait({scheduler_task}, timeout=STREAMING_FALLBACK_INTERVAL_SEC)

    try:
        stats = await scheduler_task
    finally:
        await run.result_queue.put(None)
        await consumer_task
    run.collector.set_end_time(time.perf_counter())
    return stats


async def finalize_run(run: RunContext) -> RunOutcome:
    """Compute the verdict from the accumulated samples and release the session."""
    settings = run.settings
    verdict = evaluate_thresholds(
        run.collector,
        settings.thresholds,
        settings.max_error_rate_pct,
        settings.relaxations,
        checks=run.checks,
        min_check_pass_rate_pct=settings.min_check_pass_rate_pct,
    )
    report = run.degradation.report() if run.degradation is not None else None
    await run.test_context.session.logout(run.client)
    stats = run.scheduler.stats
    if stats.dropped_iterations:
        logger.warning(
            "%d iterations dropped (max_workers=%d reached); target rate was not sustained",
            stats.dropped_iterations, settings.load.max_workers,
        )
    return RunOutcome(
        settings=settings,
        environment=run.test_context.environment.name,
        verdict=verdict,
        scheduler_stats=stats,
        check_rows=run.checks.summary(),
        check_categories=run.checks.category_summary(),
        degradation_report=report,
        degradation_buckets=run.degradation.buckets if run.degradation is not None else [],
        divergences=list(run.divergences),
        scenario_counts={k.value: run.scenario_counts.get(k.value, 0) for k in ScenarioKind},
        iteration_errors=run.iteration_errors,
        start_dt=run.start_dt,
        end_dt=datetime.now(timezone.utc),
        collector=run.collector,
        run_id=run.run_id,
        target_url=run.test_context.environment.base_url,
    )


def _resolve_report_path(report_path: str | Path) -> Path:
    """Normalize to an .html file and add a UTC timestamp so back-to-back runs do not overwrite."""
    p = Path(report_path)
    if p.suffix.lower() != ".html":
        if not p.suffix or p.is_dir():
            p = p / "report.html"
        else:
            p = p.with_suffix(".html")
    stem_ts = p.stem + "_" + datetime.now(timezone.utc).strftime(REPORT_TIMESTAMP_FMT)
    return p.parent / (stem_ts + p.suffix)


async def run_load_test(
    settings: ProfileSettings,
    report_path: str | Path,
    environment: Environment | None = None,
    reference_path: str | Path | None = None,
    live: bool = True,
    junit_path: str | Path | None = None,
    json_path: str | Path | None = None,
    seed: int | None = None,
    http2: bool = True,
    transport: httpx.AsyncBaseTransport | None = None,
    handle_signals: bool = True,
) -> RunOutcome:
    """Full run: setup, load, teardown, reports. Returns the outcome (verdict included)."""
    reference = await asyncio.to_thread(load_reference_data, reference_path) if reference_path else None
    report_file = _resolve_report_path(report_path)
    console = Console()
    async with await create_client(http2=http2, transport=transport) as client:
        run = await initialize_run(settings, client, environment=environment, reference=reference, seed=seed)
        try:
            await execute_run(run, live=live, handle_signals=handle_signals)
        finally:
            outcome = await finalize_run(run)

    agg = outcome.collector.full_aggregate()
    logger.info(
        "Load test finished: requests=%d, error_rate_pct=%.2f, dropped_iterations=%d",
        agg.total_requests, agg.error_rate_pct, outcome.scheduler_stats.dropped_iterations,
    )
    generate_report(report_file, outcome)
    if junit_path:
        generate_junit_report(junit_path, outcome)
        if live:
            console.print(f"[dim]JUnit report:[/dim] {junit_path}")
    if json_path:
        generate_json_report(json_path, outcome)
        if live:
            console.print(f"[dim]JSON report:[/dim] {json_path}")
    if live:
        color = "green" if outcome.verdict.compliant else "red"
        console.print(f"[{color}]SLA verdict: {'COMPLIANT' if outcome.verdict.compliant else 'NOT COMPLIANT'}[/{color}]")
        console.print(f"[green]Report written to[/green] {report_file}")
    return outcome
