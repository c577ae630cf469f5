"""Run configuration: built-in profile, optional YAML overrides, environment overrides."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ImsLoadConfigError
from .logging_config import get_logger
from .models import (
    ExecutorKind,
    LoadProfile,
    ProfileSettings,
    ScenarioKind,
    ScenarioWeight,
    Stage,
    ThinkTime,
    ThresholdSpec,
    Timeouts,
)
from .profiles import get_profile

logger = get_logger("config")

PROFILE_VAR = "IMSLOAD_PROFILE"
RATE_VAR = "IMSLOAD_RATE"
DURATION_VAR = "IMSLOAD_DURATION"
DEFAULT_PROFILE = "normal"


def validate_profile(s: ProfileSettings) -> None:
    """Static validation before a run starts. Raises ImsLoadConfigError if invalid."""
    load = s.load
    ctx = {"profile": s.name}
    if not load.stages:
        raise ImsLoadConfigError("load profile needs at least one stage", context=ctx)
    for i, stage in enumerate(load.stages):
        if stage.duration_seconds <= 0:
            raise ImsLoadConfigError(f"stage {i} duration must be > 0", context=ctx)
        if stage.target_rate < 0:
            raise ImsLoadConfigError(f"stage {i} target rate must be >= 0", context=ctx)
    if load.executor == ExecutorKind.CONSTANT_RATE and len(load.stages) != 1:
        raise ImsLoadConfigError("constant-rate profile takes exactly one stage", context=ctx)
    if load.start_rate < 0:
        raise ImsLoadConfigError("start_rate must be >= 0", context=ctx)
    if load.preallocated_workers < 1:
        raise ImsLoadConfigError("preallocated_workers must be >= 1", context=ctx)
    if load.max_workers < load.preallocated_workers:
        raise ImsLoadConfigError(
            "max_workers must be >= preallocated_workers",
            context={**ctx, "preallocated_workers": load.preallocated_workers, "max_workers": load.max_workers},
        )
    if not s.weights:
        raise ImsLoadConfigError("scenario weight table is empty", context=ctx)
    if any(w.weight < 0 for w in s.weights):
        raise ImsLoadConfigError("scenario weights must be >= 0", context=ctx)
    for t in s.thresholds:
        if t.max_ms <= 0:
            raise ImsLoadConfigError(f"threshold for {t.operation} must be > 0 ms", context=ctx)
        if t.percentile is not None and not 0 < t.percentile <= 100:
            raise ImsLoadConfigError(f"threshold percentile for {t.operation} must be in (0, 100]", context=ctx)
    if not 0 <= s.max_error_rate_pct <= 100:
        raise ImsLoadConfigError("max_error_rate_pct must be between 0 and 100", context=ctx)
    if s.think_time.min_seconds < 0 or s.think_time.max_seconds < s.think_time.min_seconds:
        raise ImsLoadConfigError("think_time needs 0 <= min_seconds <= max_seconds", context=ctx)
    if s.think_time.spike_factor < 0:
        raise ImsLoadConfigError("think_time.spike_factor must be >= 0", context=ctx)
    if s.timeouts.default_ms <= 0 or any(v <= 0 for v in s.timeouts.per_operation.values()):
        raise ImsLoadConfigError("timeouts must be > 0 ms", context=ctx)
    if s.health_sample_every < 1:
        raise ImsLoadConfigError("health_sample_every must be >= 1", context=ctx)
    if not 0 <= s.batch_success_threshold <= 1:
        raise ImsLoadConfigError("batch_success_threshold must be between 0 and 1", context=ctx)
    if s.market_data_batch_size < 1:
        raise ImsLoadConfigError("market_data_batch_size must be >= 1", context=ctx)
    if s.locate_poll_attempts < 0 or s.settle_seconds < 0:
        raise ImsLoadConfigError("locate_poll_attempts and settle_seconds must be >= 0", context=ctx)
    if s.max_quantity < 1000:
        raise ImsLoadConfigError("max_quantity must be >= 1000", context=ctx)
    if s.min_check_pass_rate_pct is not None and not 0 <= s.min_check_pass_rate_pct <= 100:
        raise ImsLoadConfigError("min_check_pass_rate_pct must be between 0 and 100", context=ctx)


def _parse_weights(raw: Any) -> tuple[ScenarioWeight, ...]:
    if not isinstance(raw, Mapping):
        raise ImsLoadConfigError("weights must be a mapping of scenario name to weight")
    known = {k.value: k for k in ScenarioKind}
    unknown = set(raw) - set(known)
    if unknown:
        raise ImsLoadConfigError(f"unknown scenarios in weights: {sorted(unknown)}", context={"known": sorted(known)})
    # Table order is the ScenarioKind declaration order, never the file order.
    return tuple(ScenarioWeight(kind, float(raw.get(kind.value, 0.0))) for kind in ScenarioKind)


def _parse_thresholds(raw: Any) -> tuple[ThresholdSpec, ...]:
    if not isinstance(raw, list):
        raise ImsLoadConfigError("thresholds must be a list")
    out = []
    for item in raw:
        if not isinstance(item, Mapping) or "operation" not in item or "max_ms" not in item:
            raise ImsLoadConfigError("each threshold needs operation and max_ms", context={"item": item})
        pct = item.get("percentile", 99.0)
        out.append(ThresholdSpec(str(item["operation"]), float(item["max_ms"]), None if pct is None else float(pct)))
    return tuple(out)


def _parse_load(raw: Mapping[str, Any], base: LoadProfile) -> LoadProfile:
    executor = base.executor
    if "executor" in raw:
        try:
            executor = ExecutorKind(str(raw["executor"]).strip().lower())
        except ValueError as e:
            raise ImsLoadConfigError(f"unknown executor: {raw['executor']}", original_error=e) from e
    prealloc = int(raw.get("preallocated_workers", base.preallocated_workers))
    max_workers = int(raw.get("max_workers", base.max_workers))

    if "stages" in raw:
        stages_raw = raw["stages"]
        if not isinstance(stages_raw, list):
            raise ImsLoadConfigError("stages must be a list")
        stages = tuple(Stage(float(s["duration_seconds"]), float(s["target_rate"])) for s in stages_raw)
        return LoadProfile(executor, stages, prealloc, max_workers, float(raw.get("start_rate", 0.0)))
    if executor == ExecutorKind.CONSTANT_RATE:
        rate = float(raw.get("rate", base.stages[0].target_rate if base.executor == executor else base.peak_rate))
        duration = float(raw.get("duration_seconds", base.total_duration_seconds))
        return LoadProfile.constant(rate, duration, prealloc, max_workers)
    return replace(
        base,
        executor=executor,
        preallocated_workers=prealloc,
        max_workers=max_workers,
        start_rate=float(raw.get("start_rate", base.start_rate)),
    )


def settings_from_mapping(raw: Mapping[str, Any], base: ProfileSettings | None = None) -> ProfileSettings:
    """Overlay a config mapping on a built-in profile ("profile" key, default normal)."""
    if base is None:
        base = get_profile(str(raw.get("profile") or DEFAULT_PROFILE))
    try:
        settings = replace(base, load=_parse_load(raw, base.load))
        if "weights" in raw:
            settings.weights = _parse_weights(raw["weights"])
        if "relaxations" in raw:
            settings.relaxations = {str(k): float(v) for k, v in (raw["relaxations"] or {}).items()}
        if "thresholds" in raw:
            settings.thresholds = _parse_thresholds(raw["thresholds"])
        if "think_time" in raw:
            tt = raw["think_time"] or {}
            settings.think_time = ThinkTime(
                float(tt.get("min_seconds", base.think_time.min_seconds)),
                float(tt.get("max_seconds", base.think_time.max_seconds)),
                float(tt.get("spike_factor", base.think_time.spike_factor)),
            )
        if "timeouts" in raw:
            to = dict(raw["timeouts"] or {})
            default_ms = float(to.pop("default_ms", base.timeouts.default_ms))
            per_op = {**base.timeouts.per_operation, **{str(k): float(v) for k, v in to.items()}}
            settings.timeouts = Timeouts(default_ms, per_op)
        for key in ("max_error_rate_pct", "batch_success_threshold", "settle_seconds"):
            if key in raw:
                setattr(settings, key, float(raw[key]))
        for key in ("health_sample_every", "market_data_batch_size", "locate_poll_attempts", "max_quantity"):
            if key in raw:
                setattr(settings, key, int(raw[key]))
        if "min_check_pass_rate_pct" in raw:
            v = raw["min_check_pass_rate_pct"]
            settings.min_check_pass_rate_pct = None if v is None else float(v)
        if "track_degradation" in raw:
            settings.track_degradation = bool(raw["track_degradation"])
        if "name" in raw:
            settings.name = str(raw["name"])
        if settings.load.executor == ExecutorKind.RAMPING_RATE and "stages" not in raw:
            rate = raw.get("rate")
            duration = raw.get("duration_seconds")
            settings = apply_overrides(
                settings,
                rate=float(rate) if rate is not None else None,
                duration_seconds=float(duration) if duration is not None else None,
            )
    except (TypeError, ValueError, KeyError) as e:
        raise ImsLoadConfigError(f"Invalid config value: {e}", original_error=e) from e
    validate_profile(settings)
    return settings


def load_config(path: str | Path) -> ProfileSettings:
    """Load run configuration from a YAML file.

    Raises:
        ImsLoadConfigError: If file not found, invalid YAML, or validation fails
    """
    p = Path(path)
    if not p.exists():
        raise ImsLoadConfigError(f"Config file not found: {path}", context={"path": str(path)})
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.exception("Failed to parse YAML config file")
        raise ImsLoadConfigError(
            f"Invalid YAML syntax in config file: {e}", context={"path": str(path)}, original_error=e
        ) from e
    except OSError as e:
        logger.exception("Failed to read config file")
        raise ImsLoadConfigError(
            f"Cannot read config file: {e}", context={"path": str(path)}, original_error=e
        ) from e
    if not isinstance(raw, dict):
        raise ImsLoadConfigError(
            "Config must be a YAML object/dictionary",
            context={"path": str(path), "actual_type": type(raw).__name__},
        )
    try:
        settings = settings_from_mapping(raw)
    except ImsLoadConfigError as e:
        raise e.with_context(path=str(path))
    logger.debug(
        "Loaded config: profile=%s, executor=%s, duration=%ss",
        settings.name, settings.load.executor.value, settings.load.total_duration_seconds,
    )
    return settings


def apply_overrides(
    settings: ProfileSettings,
    rate: float | None = None,
    duration_seconds: float | None = None,
) -> ProfileSettings:
    """Override target rate and/or duration.

    Constant-rate profiles take the values directly. Ramping profiles are
    scaled: every stage target by rate / peak rate, every stage duration by
    duration / total duration, so the curve keeps its shape.
    """
    if rate is None and duration_seconds is None:
        return settings
    load = settings.load
    if load.executor == ExecutorKind.CONSTANT_RATE:
        new_load = LoadProfile.constant(
            rate if rate is not None else load.stages[0].target_rate,
            duration_seconds if duration_seconds is not None else load.total_duration_seconds,
            load.preallocated_workers,
            load.max_workers,
        )
    else:
        rate_k = rate / load.peak_rate if rate is not None and load.peak_rate > 0 else 1.0
        dur_k = duration_seconds / load.total_duration_seconds if duration_seconds is not None else 1.0
        new_load = replace(
            load,
            stages=tuple(Stage(s.duration_seconds * dur_k, s.target_rate * rate_k) for s in load.stages),
            start_rate=load.start_rate * rate_k,
        )
    out = replace(settings, load=new_load)
    validate_profile(out)
    return out


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, float]:
    """Read IMSLOAD_RATE / IMSLOAD_DURATION. Invalid numbers are a config error."""
    environ = os.environ if environ is None else environ
    out: dict[str, float] = {}
    for var, key in ((RATE_VAR, "rate"), (DURATION_VAR, "duration_seconds")):
        value = environ.get(var)
        if value is None or not value.strip():
            continue
        try:
            out[key] = float(value)
        except ValueError as e:
            raise ImsLoadConfigError(f"{var} must be a number", context={var: value}, original_error=e) from e
    return out


def resolve_settings(
    profile: str | None = None,
    config_path: str | Path | None = None,
    rate: float | None = None,
    duration_seconds: float | None = None,
    environ: Mapping[str, str] | None = None,
) -> ProfileSettings:
    """Built-in profile < YAML file < environment < explicit arguments."""
    environ = os.environ if environ is None else environ
    if config_path is not None:
        settings = load_config(config_path)
        if profile is not None:
            logger.debug("Config file given; ignoring profile name %s", profile)
    else:
        settings = get_profile(profile or environ.get(PROFILE_VAR) or DEFAULT_PROFILE)
        validate_profile(settings)
    env = env_overrides(environ)
    return apply_overrides(
        settings,
        rate=rate if rate is not None else env.get("rate"),
        duration_seconds=duration_seconds if duration_seconds is not None else env.get("duration_seconds"),
    )
