"""Unit tests for dashboard (build_metrics_table, create_live_panel, status_line)."""

from __future__ import annotations

import asyncio

from conftest import make_client
from rich.panel import Panel
from rich.table import Table

from imsload.dashboard import _format_remaining, build_metrics_table, create_live_panel, status_line
from imsload.models import MetricSample, Op
from imsload.runner import finalize_run, initialize_run


def _render(fake_ims, environment, reference, settings, samples=()):
    async def go():
        async with make_client(fake_ims) as client:
            run = await initialize_run(settings, client, environment=environment, reference=reference)
            for s in samples:
                run.collector.add(s)
            out = (build_metrics_table(run, 0.0), create_live_panel(run), status_line(run))
            await finalize_run(run)
            return out

    return asyncio.run(go())


def test_dashboard_before_first_iteration(fake_ims, environment, reference, fast_settings) -> None:
    table, panel, line = _render(fake_ims, environment, reference, fast_settings)
    assert isinstance(table, Table)
    assert isinstance(panel, Panel)
    assert "started=0" in line
    assert "dropped=0" in line
    assert "p99=-" in line


def test_status_line_with_samples(fake_ims, environment, reference, fast_settings) -> None:
    samples = [
        MetricSample(Op.VALIDATE_ORDER, "POST", "/api/v1/orders/validate", 200, 40.0, True, timestamp=1.0 + i / 100)
        for i in range(20)
    ]
    _, _, line = _render(fake_ims, environment, reference, fast_settings, samples)
    assert "requests=20" in line
    assert "errors=0.00%" in line


def test_format_remaining() -> None:
    assert _format_remaining(5) == "5s"
    assert _format_remaining(-3) == "0s"
    assert _format_remaining(125) == "2m 5s"
    assert _format_remaining(7260) == "2h 1m"
