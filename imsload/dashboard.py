"""Rich live dashboard with low overhead for real-time metrics."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .logging_config import get_logger
from .metrics import MetricsCollector
from .models import AggregateMetrics
from .scheduler import target_rate_at

if TYPE_CHECKING:
    from .runner import RunContext

logger = get_logger("dashboard")


def _safe_agg(collector: MetricsCollector, cache_ttl_sec: float = 0.5) -> AggregateMetrics | None:
    """Cached aggregate for live view (low overhead, avoid full scan every frame)."""
    try:
        return collector.get_cached_aggregate(cache_ttl_sec=cache_ttl_sec)
    except Exception as e:  # noqa: BLE001
        logger.debug("Failed to get aggregate metrics: %s", e)
        return None


def _format_remaining(seconds: float) -> str:
    """Format remaining time as Xs or Xm Ys (Xh Ym for endurance runs)."""
    s = max(0, int(round(seconds)))
    if s >= 3600:
        h, rest = divmod(s, 3600)
        return f"{h}h {rest // 60}m"
    if s >= 60:
        m, s = divmod(s, 60)
        return f"{m}m {s}s"
    return f"{s}s"


def build_metrics_table(run: RunContext, elapsed_seconds: float) -> Table:
    """Build a single Rich table with current load and latency figures."""
    collector = run.collector
    stats = run.scheduler.stats
    profile = run.settings.load
    agg = _safe_agg(collector)
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column(style="green")

    table.add_row("Target rate (it/s)", f"{target_rate_at(profile, elapsed_seconds):.1f}")
    table.add_row("Iterations started", str(stats.iterations_started))
    dropped = Text(str(stats.dropped_iterations), style="bold red" if stats.dropped_iterations else "green")
    table.add_row("Dropped iterations", dropped)
    table.add_row("Workers busy / allocated", f"{run.scheduler.busy_workers} / {stats.allocated_workers} (max {profile.max_workers})")
    table.add_row("Total requests", str(collector.total_samples))

    if agg and agg.total_requests:
        table.add_row("Requests/s", f"{collector.rps():.1f}")
        table.add_row("Avg response (ms)", f"{agg.avg_ms:.1f}")
        table.add_row("P99 (ms)", f"{agg.p99_ms:.1f}")
        table.add_row("Error rate %", f"{agg.error_rate_pct:.2f}% (max {run.settings.max_error_rate_pct:g}%)")
    else:
        table.add_row("Requests/s", "-")
        table.add_row("Avg response (ms)", "-")
        table.add_row("P99 (ms)", "-")
        table.add_row("Error rate %", "-")

    gate = run.settings.min_check_pass_rate_pct
    if gate is not None:
        checks = run.checks.overall()
        if checks.total:
            style = "green" if checks.pass_rate_pct >= gate else "bold red"
            table.add_row("Checks passed %", Text(f"{checks.pass_rate_pct:.3f}% (min {gate:g}%)", style=style))
        else:
            table.add_row("Checks passed %", f"- (min {gate:g}%)")

    for spec in run.settings.thresholds:
        op_stats = collector.stats_for(spec.operation)
        if op_stats is None or op_stats.count == 0:
            table.add_row(f"{spec.operation} {spec.label}", f"- / {spec.max_ms:g}")
            continue
        actual = op_stats.mean_ms if spec.percentile is None else op_stats.percentile(spec.percentile)
        style = "green" if actual <= spec.max_ms else "bold red"
        table.add_row(f"{spec.operation} {spec.label}", Text(f"{actual:.1f} / {spec.max_ms:g}", style=style))
    return table


def create_live_panel(run: RunContext) -> Panel:
    """Create Rich Panel for live display."""
    duration = run.settings.load.total_duration_seconds
    elapsed = run.scheduler.elapsed()
    remaining = max(0.0, duration - elapsed)
    table = build_metrics_table(run, elapsed)
    table.add_row("Elapsed", f"{elapsed:.1f}s / {duration:g}s")
    table.add_row("Remaining (ETA)", _format_remaining(remaining))
    title = Text()
    title.append("imsload ", style="bold magenta")
    title.append(f"| {run.settings.name} | {run.test_context.environment.name} | {elapsed:.1f}s / {duration:g}s", style="dim")
    title.append(f" | ETA: {_format_remaining(remaining)}", style="bold yellow")
    return Panel(table, title=title, border_style="blue")


def status_line(run: RunContext) -> str:
    """One-line progress for non-TTY output."""
    duration = run.settings.load.total_duration_seconds
    elapsed = run.scheduler.elapsed()
    stats = run.scheduler.stats
    agg = _safe_agg(run.collector)
    err = f"{agg.error_rate_pct:.2f}%" if agg and agg.total_requests else "-"
    p99 = f"{agg.p99_ms:.0f}ms" if agg and agg.total_requests else "-"
    return (
        f"[{elapsed:.0f}s/{duration:g}s] {run.settings.name} target={target_rate_at(run.settings.load, elapsed):.0f}/s "
        f"started={stats.iterations_started} dropped={stats.dropped_iterations} "
        f"requests={run.collector.total_samples} p99={p99} errors={err}"
    )
