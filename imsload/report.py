"""HTML, JSON and JUnit reports for a finished run. Offline-capable single-file HTML."""

from __future__ import annotations

import re
import sys
import xml.etree.ElementTree as ET
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse, urlunparse
from xml.dom import minidom

import orjson
from jinja2 import Environment, PackageLoader, select_autoescape

from . import __version__ as imsload_version
from .logging_config import get_logger

if TYPE_CHECKING:
    from .runner import RunOutcome

logger = get_logger("report")

REDACTED_PLACEHOLDER = "[REDACTED]"
JUNIT_SUITE_PREFIX = "imsload"


def mask_url(url: str, max_path_length: int = 120) -> str:
    """Remove query string and fragment from URL to avoid leaking tokens in reports."""
    if not url or not url.strip():
        return url
    try:
        parsed = urlparse(url)
        clean = urlunparse((parsed.scheme, parsed.netloc, parsed.path or "", "", "", ""))
        if len(clean) > max_path_length:
            clean = clean[: max_path_length - 3] + "..."
        return clean
    except ValueError:
        return url[:max_path_length] + ("..." if len(url) > max_path_length else "")


def mask_error_message(msg: str | None, max_length: int = 200) -> str:
    """Truncate error message and redact URLs to avoid leaking sensitive data."""
    if not msg:
        return ""
    msg = re.sub(r"https?://[^\s]+", REDACTED_PLACEHOLDER, msg)
    if len(msg) > max_length:
        return msg[: max_length - 3] + "..."
    return msg


def _get_echarts_script() -> str:
    """Embed ECharts from vendor file for fully offline single-file HTML. No CDN."""
    vendor_path = Path(__file__).resolve().parent / "templates" / "vendor" / "echarts.min.js"
    if vendor_path.exists():
        return "<script>\n" + vendor_path.read_text(encoding="utf-8") + "\n</script>"
    return ""


def _serialize(obj: Any) -> str:
    """JSON-serialize for HTML embedding (orjson). Safe for script context (no </script>)."""
    s = orjson.dumps(obj).decode("utf-8")
    return s.replace("</", "<\\/")


def _fmt_dt(dt: datetime | None, fmt: str = "%Y-%m-%d %H:%M:%S UTC") -> str:
    return dt.strftime(fmt) if dt else ""


def _threshold_rows(outcome: RunOutcome) -> list[dict[str, Any]]:
    return [
        {
            "operation": r.operation,
            "label": r.label,
            "max_ms": r.max_ms,
            "actual_ms": round(r.actual_ms, 2) if r.actual_ms is not None else None,
            "samples": r.samples,
            "passed": r.passed,
            "no_data": r.no_data,
            "relaxed": r.relaxed,
        }
        for r in outcome.verdict.results
    ]


def _operation_rows(outcome: RunOutcome) -> list[dict[str, Any]]:
    duration = outcome.collector.duration_seconds
    rows = []
    for op, agg in outcome.collector.operation_aggregates().items():
        rows.append({
            "operation": op,
            "total": agg.total_requests,
            "failed": agg.failed_requests,
            "timed_out": agg.timed_out_requests,
            "rps": round(agg.total_requests / duration, 2) if duration > 0 else 0.0,
            "avg_ms": round(agg.avg_ms, 2),
            "p50_ms": round(agg.p50_ms, 2),
            "p95_ms": round(agg.p95_ms, 2),
            "p99_ms": round(agg.p99_ms, 2),
            "max_ms": round(agg.max_ms, 2),
            "error_pct": round(agg.error_rate_pct, 2),
        })
    return sorted(rows, key=lambda r: -r["total"])


def _build_assessments(outcome: RunOutcome) -> list[str]:
    """Human-readable comments on the result."""
    agg = outcome.collector.full_aggregate()
    stats = outcome.scheduler_stats
    out: list[str] = []
    if agg.total_requests == 0:
        return ["No requests were recorded; check target availability and credentials."]
    if outcome.verdict.violations:
        out.append(f"{len(outcome.verdict.violations)} SLA threshold(s) exceeded; review capacity or optimization.")
    no_data = [r.operation for r in outcome.verdict.results if r.no_data]
    if no_data:
        out.append(f"No samples for {', '.join(no_data)}; those thresholds were not exercised by this mix.")
    if stats.dropped_iterations:
        pct = 100.0 * stats.dropped_iterations / max(1, stats.dropped_iterations + stats.iterations_started)
        out.append(
            f"{stats.dropped_iterations} iterations ({pct:.1f}%) were dropped because all "
            f"{outcome.settings.load.max_workers} workers were busy; the target rate was not sustained."
        )
    if not outcome.verdict.checks_ok:
        out.append(
            f"Only {outcome.verdict.check_pass_rate_pct:.3f}% of checks passed "
            f"(minimum {outcome.verdict.min_check_pass_rate_pct:g}%); see the checks table."
        )
    timeout_guard = outcome.check_categories.get("timeout_guard", {})
    if timeout_guard.get("fails"):
        out.append(f"{timeout_guard['fails']} calls hit their timeout guard (hung or overloaded endpoints).")
    if outcome.iteration_errors:
        out.append(f"{outcome.iteration_errors} iterations raised unexpectedly; see the log for tracebacks.")
    if outcome.divergences:
        out.append("Thresholds differ from the documented SLA: " + "; ".join(outcome.divergences))
    if not out:
        out.append("All thresholds met with no dropped iterations.")
    return out


def generate_report(output_path: str | Path, outcome: RunOutcome) -> None:
    """Generate a single self-contained HTML report."""
    collector = outcome.collector
    agg = collector.full_aggregate()
    time_series = collector.time_series()
    settings = outcome.settings
    stats = outcome.scheduler_stats

    top_errors = [
        {"message": mask_error_message(k, 160), "count": v} for k, v in collector.top_errors(10).items()
    ]
    degradation = asdict(outcome.degradation_report) if outcome.degradation_report is not None else None
    buckets = [
        {
            "minute": b.elapsed_minute,
            "samples": b.sample_count,
            "mean_ms": round(b.mean_latency_ms, 2),
            "error_pct": round(b.error_rate_pct, 3),
            "cpu": b.cpu_utilization,
            "memory": b.memory_utilization,
            "pool": b.connection_pool_utilization,
        }
        for b in outcome.degradation_buckets
    ]

    env = Environment(
        loader=PackageLoader("imsload", "templates"),
        autoescape=select_autoescape(["html", "xml"]),
    )
    template = env.get_template("report.html")
    html = template.render(
        profile=settings.name,
        environment=outcome.environment,
        target=mask_url(outcome.target_url),
        executor=settings.load.executor.value,
        stages=[{"duration": s.duration_seconds, "rate": s.target_rate} for s in settings.load.stages],
        preallocated_workers=settings.load.preallocated_workers,
        max_workers=settings.load.max_workers,
        compliant=outcome.verdict.compliant,
        violations=outcome.verdict.violations,
        total_requests=agg.total_requests,
        failed_requests=agg.failed_requests,
        error_rate_pct=round(agg.error_rate_pct, 3),
        max_error_rate_pct=settings.max_error_rate_pct,
        check_pass_rate_pct=outcome.verdict.check_pass_rate_pct,
        min_check_pass_rate_pct=outcome.verdict.min_check_pass_rate_pct,
        rps=round(collector.rps(), 2),
        avg_ms=round(agg.avg_ms, 2),
        p95_ms=round(agg.p95_ms, 2),
        p99_ms=round(agg.p99_ms, 2),
        stats=stats,
        threshold_rows=_threshold_rows(outcome),
        operation_rows=_operation_rows(outcome),
        check_rows=outcome.check_rows,
        check_categories=outcome.check_categories,
        scenario_counts=outcome.scenario_counts,
        top_errors=top_errors,
        assessments=_build_assessments(outcome),
        divergences=outcome.divergences,
        degradation=degradation,
        buckets=buckets,
        ts_labels=_serialize([f"{p.offset_seconds}s" for p in time_series]),
        ts_rps=_serialize([round(p.rps, 2) for p in time_series]),
        ts_p95=_serialize([round(p.p95_ms, 2) for p in time_series]),
        ts_errors=_serialize([round(p.error_rate_pct, 2) for p in time_series]),
        echarts_script=_get_echarts_script(),
        start_datetime_str=_fmt_dt(outcome.start_dt),
        end_datetime_str=_fmt_dt(outcome.end_dt),
        developer_info={
            "imsload_version": imsload_version,
            "report_generated_at": _fmt_dt(datetime.now(timezone.utc)),
            "python_version": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        },
    )
    out_path = Path(output_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(html, encoding="utf-8")
    logger.info("HTML report written to %s", out_path)


def generate_junit_report(output_path: str | Path, outcome: RunOutcome) -> None:
    """Write JUnit XML for CI: one testcase per threshold plus one for the error-rate ceiling."""
    verdict = outcome.verdict
    duration = outcome.collector.duration_seconds
    suite_name = f"{JUNIT_SUITE_PREFIX}.{outcome.settings.name}"
    gated = verdict.min_check_pass_rate_pct is not None
    failures = (
        sum(1 for r in verdict.results if not r.passed)
        + (0 if verdict.error_rate_ok else 1)
        + (0 if verdict.checks_ok else 1)
    )

    testsuite = ET.Element(
        "testsuite",
        name=suite_name,
        tests=str(len(verdict.results) + 1 + (1 if gated else 0)),
        failures=str(failures),
        errors="0",
        skipped=str(sum(1 for r in verdict.results if r.no_data) + (1 if gated and verdict.check_pass_rate_pct is None else 0)),
        time=f"{duration:.3f}",
    )
    testsuite.set("timestamp", _fmt_dt(outcome.start_dt, "%Y-%m-%dT%H:%M:%S"))
    for r in verdict.results:
        case = ET.SubElement(testsuite, "testcase", name=f"{r.operation} {r.label} <= {r.max_ms:g}ms", classname=suite_name)
        if r.no_data:
            ET.SubElement(case, "skipped", message="no samples")
        elif not r.passed:
            failure = ET.SubElement(case, "failure", message="threshold exceeded")
            failure.text = f"{r.operation} {r.label} {r.actual_ms:.2f}ms > {r.max_ms:g}ms over {r.samples} samples"
        else:
            out = ET.SubElement(case, "system-out")
            out.text = f"actual={r.actual_ms:.2f}ms samples={r.samples}"
    case = ET.SubElement(
        testsuite, "testcase", name=f"error rate <= {verdict.max_error_rate_pct:g}%", classname=suite_name
    )
    if not verdict.error_rate_ok:
        failure = ET.SubElement(case, "failure", message="error rate exceeded")
        failure.text = f"{verdict.error_rate_pct:.3f}% > {verdict.max_error_rate_pct:g}% over {verdict.total_requests} requests"
    system_out = ET.SubElement(case, "system-out")
    system_out.text = (
        f"total_requests={verdict.total_requests} error_rate_pct={verdict.error_rate_pct:.3f} "
        f"dropped_iterations={outcome.scheduler_stats.dropped_iterations}"
    )
    if gated:
        case = ET.SubElement(
            testsuite, "testcase", name=f"checks passed >= {verdict.min_check_pass_rate_pct:g}%", classname=suite_name
        )
        if not verdict.checks_ok:
            failure = ET.SubElement(case, "failure", message="check pass rate too low")
            failure.text = f"{verdict.check_pass_rate_pct:.3f}% < {verdict.min_check_pass_rate_pct:g}%"
        elif verdict.check_pass_rate_pct is None:
            ET.SubElement(case, "skipped", message="no checks recorded")

    root = ET.Element("testsuites")
    root.append(testsuite)
    xml_str = minidom.parseString(ET.tostring(root, encoding="unicode", method="xml")).toprettyxml(indent="  ")
    out_path = Path(output_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(xml_str, encoding="utf-8")


def generate_json_report(output_path: str | Path, outcome: RunOutcome) -> None:
    """Write machine-readable JSON with the verdict, per-operation stats and check tallies."""
    agg = outcome.collector.full_aggregate()
    stats = outcome.scheduler_stats
    payload: dict[str, Any] = {
        "profile": outcome.settings.name,
        "run_id": outcome.run_id,
        "environment": outcome.environment,
        "target": mask_url(outcome.target_url),
        "start_datetime": _fmt_dt(outcome.start_dt, "%Y-%m-%dT%H:%M:%SZ") or None,
        "end_datetime": _fmt_dt(outcome.end_dt, "%Y-%m-%dT%H:%M:%SZ") or None,
        "compliant": outcome.verdict.compliant,
        "violations": outcome.verdict.violations,
        "thresholds": _threshold_rows(outcome),
        "error_rate_pct": round(agg.error_rate_pct, 4),
        "max_error_rate_pct": outcome.settings.max_error_rate_pct,
        "check_pass_rate_pct": outcome.verdict.check_pass_rate_pct,
        "min_check_pass_rate_pct": outcome.verdict.min_check_pass_rate_pct,
        "total_requests": agg.total_requests,
        "failed_requests": agg.failed_requests,
        "timed_out_requests": agg.timed_out_requests,
        "p99_ms": round(agg.p99_ms, 4),
        "operations": _operation_rows(outcome),
        "scheduler": asdict(stats),
        "scenarios": outcome.scenario_counts,
        "checks": outcome.check_categories,
        "divergences": outcome.divergences,
        "degradation": asdict(outcome.degradation_report) if outcome.degradation_report is not None else None,
    }
    out_path = Path(output_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
