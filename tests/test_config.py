"""Unit tests for config loading, validation and overrides."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from imsload.config import apply_overrides, env_overrides, load_config, resolve_settings, settings_from_mapping, validate_profile
from imsload.exceptions import ImsLoadConfigError
from imsload.models import ExecutorKind, LoadProfile, Op, ScenarioKind
from imsload.profiles import get_profile


def test_max_workers_below_preallocated_rejected() -> None:
    s = replace(get_profile("normal"), load=LoadProfile.constant(10, 60, preallocated_workers=10, max_workers=5))
    with pytest.raises(ImsLoadConfigError) as exc_info:
        validate_profile(s)
    assert exc_info.value.context["max_workers"] == 5


def test_constant_profile_needs_one_stage() -> None:
    base = get_profile("stress")
    s = replace(base, load=replace(base.load, executor=ExecutorKind.CONSTANT_RATE))
    with pytest.raises(ImsLoadConfigError):
        validate_profile(s)


def test_builtin_profiles_are_valid() -> None:
    for name in ("normal", "peak", "stress", "spike", "endurance"):
        validate_profile(get_profile(name))


def test_yaml_overlay(tmp_path: Path) -> None:
    p = tmp_path / "run.yaml"
    p.write_text(
        """
profile: peak
name: peak-short
rate: 100
duration_seconds: 60
max_workers: 400
weights:
  shortSell: 3
  locate: 1
thresholds:
  - {operation: validateOrder, max_ms: 150}
  - {operation: submitTrade, max_ms: 300, percentile: 95}
think_time: {min_seconds: 0, max_seconds: 0.1}
timeouts: {validateOrder: 3000}
settle_seconds: 0
""",
        encoding="utf-8",
    )
    s = load_config(p)
    assert s.name == "peak-short"
    assert s.load.stages[0].target_rate == 100
    assert s.load.total_duration_seconds == 60
    assert s.load.max_workers == 400
    assert [w.scenario for w in s.weights] == list(ScenarioKind)
    assert s.weights[0].weight == 1 and s.weights[1].weight == 3 and s.weights[2].weight == 0
    assert s.thresholds[1].label == "p(95)"
    assert s.timeouts.guard_ms(Op.VALIDATE_ORDER) == 3000
    assert s.timeouts.guard_ms(Op.SUBMIT_LOCATE) == 8000
    assert s.settle_seconds == 0


def test_yaml_invalid_workers(tmp_path: Path) -> None:
    p = tmp_path / "bad.yaml"
    p.write_text("profile: normal\npreallocated_workers: 10\nmax_workers: 2\n", encoding="utf-8")
    with pytest.raises(ImsLoadConfigError) as exc_info:
        load_config(p)
    assert exc_info.value.context["path"] == str(p)


def test_yaml_unknown_scenario(tmp_path: Path) -> None:
    p = tmp_path / "bad.yaml"
    p.write_text("weights: {teleport: 1}\n", encoding="utf-8")
    with pytest.raises(ImsLoadConfigError):
        load_config(p)


def test_yaml_not_a_mapping(tmp_path: Path) -> None:
    p = tmp_path / "list.yaml"
    p.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ImsLoadConfigError):
        load_config(p)


def test_missing_file() -> None:
    with pytest.raises(ImsLoadConfigError):
        load_config("/nonexistent/run.yaml")


def test_ramping_overrides_scale_stages() -> None:
    stress = get_profile("stress")
    s = apply_overrides(stress, rate=300, duration_seconds=stress.load.total_duration_seconds / 10)
    assert s.load.peak_rate == pytest.approx(300)
    assert s.load.stages[0].duration_seconds == pytest.approx(3)
    assert s.load.stages[0].target_rate == pytest.approx(100)


def test_settings_from_mapping_ramping_scaled() -> None:
    s = settings_from_mapping({"profile": "spike", "duration_seconds": 56})
    assert s.load.executor == ExecutorKind.RAMPING_RATE
    assert s.load.total_duration_seconds == pytest.approx(56)


def test_env_overrides() -> None:
    assert env_overrides({"IMSLOAD_RATE": "25", "IMSLOAD_DURATION": " "}) == {"rate": 25.0}
    with pytest.raises(ImsLoadConfigError):
        env_overrides({"IMSLOAD_DURATION": "ten"})


def test_resolve_settings_precedence() -> None:
    environ = {"IMSLOAD_PROFILE": "peak", "IMSLOAD_RATE": "40", "IMSLOAD_DURATION": "30"}
    s = resolve_settings(environ=environ)
    assert s.name == "peak"
    assert s.load.stages[0].target_rate == 40
    s = resolve_settings(profile="normal", rate=5, environ=environ)
    assert s.name == "normal"
    assert s.load.stages[0].target_rate == 5
    assert s.load.total_duration_seconds == 30


def test_check_pass_rate_gate_from_mapping() -> None:
    assert settings_from_mapping({"profile": "peak", "min_check_pass_rate_pct": 99.5}).min_check_pass_rate_pct == 99.5
    assert settings_from_mapping({"profile": "endurance", "min_check_pass_rate_pct": None}).min_check_pass_rate_pct is None
    assert settings_from_mapping({"profile": "endurance"}).min_check_pass_rate_pct == 99.9
    with pytest.raises(ImsLoadConfigError, match="min_check_pass_rate_pct"):
        settings_from_mapping({"profile": "peak", "min_check_pass_rate_pct": 120})
