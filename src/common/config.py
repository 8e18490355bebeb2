# ABOUTME: Loads and validates the policy configuration for classification, capping, and detection.
# ABOUTME: Every threshold and weight is supplied from YAML or a mapping, never from code defaults.

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Type, TypeVar

import yaml

from .enums import AnomalySeverity
from .errors import ConfigurationError

T = TypeVar("T")


@dataclass(frozen=True)
class ClassifierPolicy:
    """Thresholds applied by the validity classifier."""

    idle_timeout_seconds: float
    interaction_timeout_seconds: float
    min_refocus_seconds: float
    suspicious_window_seconds: float
    require_identity_verification: bool


@dataclass(frozen=True)
class DailyCapPolicy:
    daily_limit_seconds: float


@dataclass(frozen=True)
class DetectorThresholds:
    """Per-detector firing thresholds."""

    rapid_progress_ratio: float
    window_switch_count: int
    idle_gap_seconds: float
    face_fail_count: int
    network_disconnect_count: int
    suspicious_behavior_count: int
    device_change_count: int
    ip_change_count: int


@dataclass(frozen=True)
class ScoringWeights:
    focus: float
    interaction: float
    continuity: float
    effective_ratio: float
    interaction_target_per_minute: float
    quality_review_threshold: float
    focus_review_threshold: float


@dataclass(frozen=True)
class LifecyclePolicy:
    auto_resolve: bool
    auto_resolve_max_severity: AnomalySeverity
    auto_resolve_note: str


@dataclass(frozen=True)
class EngineConfig:
    classifier: ClassifierPolicy
    daily_cap: DailyCapPolicy
    detectors: DetectorThresholds
    scoring: ScoringWeights
    lifecycle: LifecyclePolicy

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "EngineConfig":
        if not isinstance(raw, Mapping):
            raise ConfigurationError("Engine configuration must be a mapping.")
        _reject_unknown("engine", raw, {f.name for f in fields(cls)})

        lifecycle_raw = dict(_section(raw, "lifecycle"))
        severity_value = lifecycle_raw.get("auto_resolve_max_severity")
        try:
            lifecycle_raw["auto_resolve_max_severity"] = AnomalySeverity(severity_value)
        except ValueError as exc:
            raise ConfigurationError(
                f"lifecycle.auto_resolve_max_severity: unknown severity '{severity_value}'."
            ) from exc

        config = cls(
            classifier=_build(ClassifierPolicy, "classifier", _section(raw, "classifier")),
            daily_cap=_build(DailyCapPolicy, "daily_cap", _section(raw, "daily_cap")),
            detectors=_build(DetectorThresholds, "detectors", _section(raw, "detectors")),
            scoring=_build(ScoringWeights, "scoring", _section(raw, "scoring")),
            lifecycle=_build(LifecyclePolicy, "lifecycle", lifecycle_raw),
        )
        validate_config(config)
        return config


def load_engine_config(path: Path) -> EngineConfig:
    """Read a YAML policy file into a validated :class:`EngineConfig`."""

    with open(path) as f:
        raw = yaml.safe_load(f)
    if raw is None:
        raise ConfigurationError(f"Configuration file {path} is empty.")
    return EngineConfig.from_dict(raw)


def validate_config(config: EngineConfig) -> None:
    for section in (config.classifier, config.daily_cap, config.detectors, config.scoring):
        for spec in fields(section):
            value = getattr(section, spec.name)
            if isinstance(value, bool):
                continue
            if value < 0:
                raise ConfigurationError(f"{spec.name} must be >= 0, got {value}.")

    if config.daily_cap.daily_limit_seconds <= 0:
        raise ConfigurationError("daily_cap.daily_limit_seconds must be positive.")
    if config.detectors.rapid_progress_ratio <= 0:
        raise ConfigurationError("detectors.rapid_progress_ratio must be positive.")
    if config.scoring.interaction_target_per_minute <= 0:
        raise ConfigurationError("scoring.interaction_target_per_minute must be positive.")
    if config.scoring.quality_review_threshold > 10:
        raise ConfigurationError("scoring.quality_review_threshold must lie in [0, 10].")
    if config.scoring.focus_review_threshold > 1:
        raise ConfigurationError("scoring.focus_review_threshold must lie in [0, 1].")

    weights = config.scoring
    if weights.focus + weights.interaction + weights.continuity + weights.effective_ratio <= 0:
        raise ConfigurationError("At least one scoring weight must be positive.")

    # HIGH and CRITICAL anomalies always need a human.
    if config.lifecycle.auto_resolve_max_severity.weight > AnomalySeverity.MEDIUM.weight:
        raise ConfigurationError("Auto-resolution is limited to LOW and MEDIUM anomalies.")
    if config.lifecycle.auto_resolve and not config.lifecycle.auto_resolve_note.strip():
        raise ConfigurationError("lifecycle.auto_resolve_note must not be empty.")


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = raw.get(name)
    if section is None:
        raise ConfigurationError(f"Missing configuration section '{name}'.")
    if not isinstance(section, Mapping):
        raise ConfigurationError(f"Configuration section '{name}' must be a mapping.")
    return section


def _reject_unknown(name: str, raw: Mapping[str, Any], known: set) -> None:
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{name}': {', '.join(unknown)}.")


def _build(cls: Type[T], name: str, raw: Mapping[str, Any]) -> T:
    expected = {f.name: f for f in fields(cls)}
    _reject_unknown(name, raw, set(expected))
    missing = sorted(set(expected) - set(raw))
    if missing:
        raise ConfigurationError(f"Missing keys in '{name}': {', '.join(missing)}.")

    values = {}
    for key, spec in expected.items():
        value = raw[key]
        if spec.type in ("bool", bool):
            if not isinstance(value, bool):
                raise ConfigurationError(f"{name}.{key} must be a boolean.")
        elif spec.type in ("float", float, "int", int):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"{name}.{key} must be numeric, got {value!r}.")
            value = int(value) if spec.type in ("int", int) else float(value)
        elif spec.type in ("str", str):
            if not isinstance(value, str):
                raise ConfigurationError(f"{name}.{key} must be a string.")
        values[key] = value
    return cls(**values)
