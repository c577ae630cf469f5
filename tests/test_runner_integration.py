"""Integration tests for the run lifecycle against the in-memory IMS API."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path

import httpx
import pytest
from conftest import FakeIms, make_client

import imsload.runner as runner_module
from imsload.exceptions import ImsLoadAuthError
from imsload.logging_config import current_log_context
from imsload.metrics import MetricsCollector
from imsload.models import MetricSample, Op, ScenarioKind
from imsload.runner import (
    _make_iteration,
    _resolve_report_path,
    consume_results,
    execute_run,
    finalize_run,
    initialize_run,
    run_load_test,
)


def test_full_run_writes_reports(fake_ims, environment, fast_settings, tmp_path: Path) -> None:
    outcome = asyncio.run(
        run_load_test(
            fast_settings,
            report_path=tmp_path / "report.html",
            environment=environment,
            live=False,
            junit_path=tmp_path / "junit.xml",
            json_path=tmp_path / "result.json",
            seed=11,
            transport=httpx.MockTransport(fake_ims),
            handle_signals=False,
        )
    )
    stats = outcome.scheduler_stats
    assert stats.iterations_started == 10
    assert stats.dropped_iterations == 0
    assert outcome.iteration_errors == 0
    assert sum(outcome.scenario_counts.values()) == 10
    assert set(outcome.scenario_counts) == {k.value for k in ScenarioKind}
    assert outcome.collector.total_samples > 10
    assert outcome.verdict.error_rate_pct == 0.0
    assert fake_ims.logins == 1
    assert fake_ims.logouts == 1
    html_files = list(tmp_path.glob("report_*.html"))
    assert len(html_files) == 1
    assert (tmp_path / "junit.xml").exists()
    assert (tmp_path / "result.json").exists()


def test_initialize_fails_on_bad_credentials(environment, fast_settings) -> None:
    fake = FakeIms()
    fake.login_status = 403

    async def go():
        async with make_client(fake) as client:
            await initialize_run(fast_settings, client, environment=environment)

    with pytest.raises(ImsLoadAuthError):
        asyncio.run(go())


def test_endurance_samples_health_into_buckets(fake_ims, environment, reference, fast_settings) -> None:
    settings = replace(fast_settings, track_degradation=True, health_sample_every=2)

    async def go():
        async with make_client(fake_ims) as client:
            run = await initialize_run(settings, client, environment=environment, reference=reference, seed=5)
            await execute_run(run, live=False, handle_signals=False)
            return await finalize_run(run)

    outcome = asyncio.run(go())
    assert outcome.collector.operation(Op.SYSTEM_HEALTH).count == 5
    assert outcome.degradation_buckets
    bucket = outcome.degradation_buckets[0]
    assert bucket.health_samples == 5
    assert bucket.memory_utilization == 50.0
    assert outcome.degradation_report is not None


def test_consume_results_drains_until_sentinel() -> None:
    async def go():
        queue: asyncio.Queue = asyncio.Queue()
        collector = MetricsCollector()
        for i in range(5):
            queue.put_nowait(MetricSample("op", "GET", "/x", 200, 1.0, True, timestamp=float(i)))
        queue.put_nowait(None)
        await consume_results(queue, collector)
        return collector

    assert asyncio.run(go()).total_samples == 5


def test_resolve_report_path_adds_timestamp(tmp_path: Path) -> None:
    p = _resolve_report_path(tmp_path / "out.html")
    assert p.parent == tmp_path
    assert p.name.startswith("out_") and p.suffix == ".html"
    d = _resolve_report_path(tmp_path)
    assert d.parent == tmp_path
    assert d.name.startswith("report_")
    j = _resolve_report_path(tmp_path / "out.json")
    assert j.suffix == ".html"


def test_scenario_exceptions_are_counted_and_run_continues(
    fake_ims, environment, reference, fast_settings, monkeypatch
) -> None:
    real = runner_module.run_scenario

    async def flaky(kind, it):
        if it.number % 3 == 0:
            raise RuntimeError("scenario blew up")
        await real(kind, it)

    monkeypatch.setattr(runner_module, "run_scenario", flaky)

    async def go():
        async with make_client(fake_ims) as client:
            run = await initialize_run(fast_settings, client, environment=environment, reference=reference, seed=3)
            await execute_run(run, live=False, handle_signals=False)
            return await finalize_run(run)

    outcome = asyncio.run(go())
    assert outcome.scheduler_stats.iterations_started == 10
    assert outcome.scheduler_stats.iterations_failed == 0
    assert outcome.iteration_errors == 4
    assert sum(outcome.scenario_counts.values()) == 10
    assert fake_ims.logouts == 1


def test_health_sampling_follows_started_iterations(fake_ims, environment, reference, fast_settings, monkeypatch) -> None:
    settings = replace(fast_settings, track_degradation=True, health_sample_every=2)

    async def noop(kind, it):
        return None

    monkeypatch.setattr(runner_module, "run_scenario", noop)

    async def go():
        async with make_client(fake_ims) as client:
            run = await initialize_run(settings, client, environment=environment, reference=reference, seed=5)
            iteration = _make_iteration([run])
            # Gaps in the issued numbers stand in for starts dropped under saturation
            for n in (1, 3, 5, 7):
                await iteration(n)
            return run

    run = asyncio.run(go())
    assert run.iterations_run == 4
    assert fake_ims.calls[("GET", "/api/v1/system/health")] == 2


def test_rate_limit_below_peak_target_warns(fake_ims, environment, reference, fast_settings, caplog) -> None:
    limited = replace(environment, requests_per_second_limit=5)

    async def go():
        async with make_client(fake_ims) as client:
            await initialize_run(fast_settings, client, environment=limited, reference=reference)

    with caplog.at_level("WARNING", logger="imsload.runner"):
        asyncio.run(go())
    assert any("exceeds the local rate limit of 5 req/s" in r.getMessage() for r in caplog.records)


def test_run_binds_log_context(fake_ims, environment, reference, fast_settings) -> None:
    async def go():
        async with make_client(fake_ims) as client:
            run = await initialize_run(fast_settings, client, environment=environment, reference=reference)
            return run, current_log_context()

    run, ctx = asyncio.run(go())
    assert ctx["run_id"] == run.run_id
    assert ctx["profile"] == "normal"
    assert ctx["environment"] == "local"
