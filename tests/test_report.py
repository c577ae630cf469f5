"""Tests for HTML, JSON and JUnit reports."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import orjson
import pytest

from imsload.checks import CheckEngine
from imsload.metrics import MetricsCollector
from imsload.models import CheckCategory, DegradationBucket, MetricSample, Op, SchedulerStats
from imsload.profiles import get_profile
from imsload.report import generate_json_report, generate_junit_report, generate_report, mask_error_message, mask_url
from imsload.runner import RunOutcome
from imsload.thresholds import evaluate_thresholds


def _outcome(order_ms: float = 50.0, failures: int = 0) -> RunOutcome:
    settings = get_profile("normal")
    collector = MetricsCollector()
    for i in range(100):
        collector.add(MetricSample(Op.VALIDATE_ORDER, "POST", "/api/v1/orders/validate", 200, order_ms, True, timestamp=i / 10))
    for i in range(failures):
        collector.add(MetricSample(Op.SUBMIT_LOCATE, "POST", "/api/v1/locates", 503, 5.0, False, timestamp=i / 10))
    checks = CheckEngine(settings.thresholds)
    checks.verify_consistency("position changed after trade", True)
    verdict = evaluate_thresholds(collector, settings.thresholds, settings.max_error_rate_pct)
    now = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
    return RunOutcome(
        settings=settings,
        environment="staging",
        verdict=verdict,
        scheduler_stats=SchedulerStats(iterations_started=100, dropped_iterations=3, peak_workers=12),
        check_rows=checks.summary(),
        check_categories=checks.category_summary(),
        degradation_report=None,
        degradation_buckets=[DegradationBucket(0, sample_count=100, latency_sum_ms=5000)],
        divergences=[],
        scenario_counts={"shortSell": 100},
        iteration_errors=0,
        start_dt=now,
        end_dt=now,
        collector=collector,
    )


def test_mask_url_drops_query() -> None:
    assert mask_url("https://api.example.com/a/b?token=x#frag") == "https://api.example.com/a/b"


def test_mask_error_message_redacts_urls() -> None:
    msg = mask_error_message("failed calling https://auth.example.com/token?secret=1 twice")
    assert "secret" not in msg
    assert "[REDACTED]" in msg
    assert len(mask_error_message("x" * 500, 100)) == 100


def test_html_report(tmp_path: Path) -> None:
    out = tmp_path / "r.html"
    generate_report(out, _outcome())
    html = out.read_text(encoding="utf-8")
    assert "COMPLIANT" in html and "NOT COMPLIANT" not in html
    assert "validateOrder" in html
    assert "no data" in html
    assert "Dropped iterations" in html


def test_html_report_not_compliant(tmp_path: Path) -> None:
    out = tmp_path / "r.html"
    generate_report(out, _outcome(order_ms=400))
    assert "NOT COMPLIANT" in out.read_text(encoding="utf-8")


def test_json_report(tmp_path: Path) -> None:
    out = tmp_path / "r.json"
    generate_json_report(out, _outcome(failures=5))
    data = orjson.loads(out.read_bytes())
    assert data["profile"] == "normal"
    assert data["compliant"] is False
    assert data["scheduler"]["dropped_iterations"] == 3
    assert data["error_rate_pct"] == pytest.approx(100 * 5 / 105, rel=1e-3)
    assert {t["operation"] for t in data["thresholds"]} >= {Op.VALIDATE_ORDER}
    assert data["checks"]["consistency"]["passes"] == 1


def test_junit_report(tmp_path: Path) -> None:
    out = tmp_path / "junit.xml"
    outcome = _outcome(order_ms=400)
    generate_junit_report(out, outcome)
    suite = ET.parse(out).getroot().find("testsuite")
    assert suite is not None
    cases = suite.findall("testcase")
    assert len(cases) == len(outcome.verdict.results) + 1
    assert suite.get("failures") == "1"
    assert suite.get("skipped") == "3"
    failed = [c for c in cases if c.find("failure") is not None]
    assert failed[0].get("name").startswith("validateOrder p(99)")


def test_json_report_masks_target_and_carries_run_id(tmp_path: Path) -> None:
    out = tmp_path / "r.json"
    outcome = replace(_outcome(), run_id="ab12cd34", target_url="http://ims.test/gw?token=abc")
    generate_json_report(out, outcome)
    data = orjson.loads(out.read_bytes())
    assert data["run_id"] == "ab12cd34"
    assert data["target"] == "http://ims.test/gw"
    assert data["min_check_pass_rate_pct"] is None


def test_html_report_masks_target(tmp_path: Path) -> None:
    out = tmp_path / "r.html"
    generate_report(out, replace(_outcome(), target_url="http://ims.test/gw?token=abc"))
    html = out.read_text(encoding="utf-8")
    assert "http://ims.test/gw" in html
    assert "token=abc" not in html


def _gated_outcome(passes: int, fails: int) -> RunOutcome:
    outcome = _outcome()
    checks = CheckEngine()
    for i in range(passes + fails):
        checks.record(CheckCategory.STATUS, "any", i >= fails)
    verdict = evaluate_thresholds(
        outcome.collector, outcome.settings.thresholds, outcome.settings.max_error_rate_pct,
        checks=checks, min_check_pass_rate_pct=99.9,
    )
    return replace(outcome, verdict=verdict)


def test_junit_report_check_gate(tmp_path: Path) -> None:
    out = tmp_path / "junit.xml"
    outcome = _gated_outcome(990, 10)
    generate_junit_report(out, outcome)
    suite = ET.parse(out).getroot().find("testsuite")
    cases = suite.findall("testcase")
    assert len(cases) == len(outcome.verdict.results) + 2
    assert suite.get("failures") == "1"
    gate = cases[-1]
    assert gate.get("name") == "checks passed >= 99.9%"
    assert gate.find("failure").text == "99.000% < 99.9%"


def test_junit_report_check_gate_passes(tmp_path: Path) -> None:
    out = tmp_path / "junit.xml"
    generate_junit_report(out, _gated_outcome(1000, 0))
    suite = ET.parse(out).getroot().find("testsuite")
    assert suite.get("failures") == "0"
    assert suite.findall("testcase")[-1].find("failure") is None
