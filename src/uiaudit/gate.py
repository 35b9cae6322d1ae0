# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Release gate: review labels → per-component precision → pass/fail verdict.

Two stages:
  1. :func:`build_regression_report` counts decisions per component key and
     computes ``precision = correct / (correct + wrong_type + false_positive)``.
  2. :func:`score_gate` checks each configured component against its class
     threshold.  Too few scored labels is ``insufficient_sample``, never a
     pass.

Status precedence, for classes and overall: fail > insufficient_sample > pass.
Exit codes: pass 0, fail 1, insufficient_sample 2.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ._jsonio import write_json
from .errors import DataConsistencyError, GateConfigError, GateInputError
from .labels import SCORED_DECISIONS, Decision, LabelLoadResult

logger = logging.getLogger(__name__)

DEFAULT_MIN_SAMPLE = 10


class GateStatus(StrEnum):
    PASS = "pass"
    FAIL = "fail"
    INSUFFICIENT_SAMPLE = "insufficient_sample"


_EXIT_CODES = {GateStatus.PASS: 0, GateStatus.FAIL: 1, GateStatus.INSUFFICIENT_SAMPLE: 2}


def _utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def aggregate_status(statuses: list[GateStatus]) -> GateStatus:
    if GateStatus.FAIL in statuses:
        return GateStatus.FAIL
    if GateStatus.INSUFFICIENT_SAMPLE in statuses:
        return GateStatus.INSUFFICIENT_SAMPLE
    return GateStatus.PASS


# ---------------------------------------------------------------------------
# Regression report
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ComponentMetrics:
    total_labels: int = 0
    scored: int = 0
    correct: int = 0
    wrong_type: int = 0
    false_positive: int = 0
    unclear: int = 0
    missing: int = 0
    precision: float | None = None
    status: str = "insufficient_sample"  # computed | insufficient_sample

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_labels": self.total_labels,
            "scored": self.scored,
            "correct": self.correct,
            "wrong_type": self.wrong_type,
            "false_positive": self.false_positive,
            "unclear": self.unclear,
            "missing": self.missing,
            "precision": self.precision,
            "status": self.status,
        }


@dataclass(slots=True)
class RegressionReport:
    source: str
    min_sample: int
    totals: dict[str, int] = field(default_factory=dict)
    components: dict[str, ComponentMetrics] = field(default_factory=dict)
    generated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "source": self.source,
            "min_sample": self.min_sample,
            "totals": dict(self.totals),
            "components": {key: m.to_dict() for key, m in sorted(self.components.items())},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegressionReport:
        """Rebuild a report written by :meth:`to_dict`.

        Raises:
            GateInputError: *data* is not a regression report.
        """
        try:
            components = {
                key: ComponentMetrics(**{k: v for k, v in raw.items() if k in ComponentMetrics.__slots__})
                for key, raw in data["components"].items()
            }
            return cls(
                source=str(data.get("source", "")),
                min_sample=int(data.get("min_sample", DEFAULT_MIN_SAMPLE)),
                totals=dict(data.get("totals", {})),
                components=components,
                generated_at=str(data.get("generated_at", "")),
            )
        except (KeyError, TypeError, AttributeError, ValueError) as exc:
            raise GateInputError(f"Malformed regression report: {exc}") from exc


def build_regression_report(labels: LabelLoadResult, min_sample: int = DEFAULT_MIN_SAMPLE) -> RegressionReport:
    """Count decisions per component key and derive precision."""
    if min_sample < 0:
        raise ValueError(f"min_sample must be >= 0, got {min_sample}")

    components: dict[str, ComponentMetrics] = {}
    for label in labels.labels:
        metrics = components.setdefault(label.component_key, ComponentMetrics())
        metrics.total_labels += 1
        if label.decision is Decision.CORRECT:
            metrics.correct += 1
        elif label.decision is Decision.WRONG_TYPE:
            metrics.wrong_type += 1
        elif label.decision is Decision.FALSE_POSITIVE:
            metrics.false_positive += 1
        elif label.decision is Decision.UNCLEAR:
            metrics.unclear += 1
        else:
            metrics.missing += 1
        if label.decision in SCORED_DECISIONS:
            metrics.scored += 1

    for metrics in components.values():
        if metrics.scored > 0:
            metrics.precision = metrics.correct / metrics.scored
        metrics.status = "computed" if metrics.scored >= min_sample else "insufficient_sample"

    logger.info("Regression report: %d component(s) from %d label(s)", len(components), labels.parsed)
    return RegressionReport(source=labels.source, min_sample=min_sample, totals=labels.totals(), components=components)


# ---------------------------------------------------------------------------
# Gate config
# ---------------------------------------------------------------------------


class GateClassConfig(BaseModel):
    min_precision: float = Field(ge=0.0, le=1.0, description="Lowest passing precision for this class")
    components: list[str] = Field(default_factory=list, description="Component keys gated by this class")


class GateConfig(BaseModel):
    """Thresholds file (YAML or JSON).  Unknown keys are ignored."""

    version: str = "1"
    min_sample_scored: int = Field(DEFAULT_MIN_SAMPLE, ge=0, description="Scored labels needed for a verdict")
    classes: dict[str, GateClassConfig] = Field(default_factory=dict)

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, value: Any) -> str:
        return str(value)


def load_gate_config(path: str | Path) -> GateConfig:
    """Read and validate a gate config.

    Raises:
        GateConfigError: missing, unparseable or invalid file.
    """
    p = Path(path)
    try:
        with open(p, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise GateConfigError(f"Gate config not found: {p}") from exc
    except (OSError, yaml.YAMLError) as exc:
        raise GateConfigError(f"Cannot read gate config {p}: {exc}") from exc

    if not isinstance(raw, dict):
        raise GateConfigError(f"Gate config {p} must be a mapping, got {type(raw).__name__}")
    try:
        return GateConfig.model_validate(raw)
    except ValidationError as exc:
        raise GateConfigError(f"Invalid gate config {p}: {exc}") from exc


# ---------------------------------------------------------------------------
# Gate scoring
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ComponentVerdict:
    component_key: str
    class_name: str
    threshold: float
    scored: int
    precision: float | None
    status: GateStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "class": self.class_name,
            "threshold": self.threshold,
            "scored": self.scored,
            "precision": self.precision,
            "status": self.status.value,
        }


@dataclass(slots=True)
class ClassSummary:
    status: GateStatus = GateStatus.PASS
    passed: int = 0
    failed: int = 0
    insufficient_sample: int = 0

    def record(self, status: GateStatus) -> None:
        if status is GateStatus.PASS:
            self.passed += 1
        elif status is GateStatus.FAIL:
            self.failed += 1
        else:
            self.insufficient_sample += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "pass": self.passed,
            "fail": self.failed,
            "insufficient_sample": self.insufficient_sample,
        }


@dataclass(slots=True)
class GateReport:
    overall_status: GateStatus
    min_sample_scored: int
    classes: dict[str, ClassSummary] = field(default_factory=dict)
    components: dict[str, ComponentVerdict] = field(default_factory=dict)
    inputs: dict[str, str] = field(default_factory=dict)
    generated_at: str = field(default_factory=_utc_now)

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.overall_status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "inputs": dict(self.inputs),
            "summary": {
                "overall_status": self.overall_status.value,
                "min_sample_scored": self.min_sample_scored,
                "classes": {name: s.to_dict() for name, s in self.classes.items()},
            },
            "components": {key: v.to_dict() for key, v in self.components.items()},
        }


def _verdict(
    key: str, class_name: str, threshold: float, metrics: ComponentMetrics | None, min_sample: int
) -> ComponentVerdict:
    if metrics is None or metrics.scored < min_sample:
        return ComponentVerdict(
            component_key=key,
            class_name=class_name,
            threshold=threshold,
            scored=metrics.scored if metrics is not None else 0,
            precision=None,
            status=GateStatus.INSUFFICIENT_SAMPLE,
        )
    if metrics.precision is None:
        raise DataConsistencyError(
            f"Component {key!r} has scored={metrics.scored} >= min_sample_scored={min_sample} but no precision"
        )
    return ComponentVerdict(
        component_key=key,
        class_name=class_name,
        threshold=threshold,
        scored=metrics.scored,
        precision=metrics.precision,
        status=GateStatus.PASS if metrics.precision >= threshold else GateStatus.FAIL,
    )


def score_gate(
    report: RegressionReport, config: GateConfig, *, inputs: dict[str, str] | None = None
) -> GateReport:
    """Score *report* against *config*.

    Raises:
        DataConsistencyError: a component has enough scored labels but no precision.
    """
    min_sample = config.min_sample_scored
    classes: dict[str, ClassSummary] = {}
    components: dict[str, ComponentVerdict] = {}

    for class_name, class_config in config.classes.items():
        summary = ClassSummary()
        statuses: list[GateStatus] = []
        for key in class_config.components:
            verdict = _verdict(key, class_name, class_config.min_precision, report.components.get(key), min_sample)
            components[key] = verdict
            summary.record(verdict.status)
            statuses.append(verdict.status)
        summary.status = aggregate_status(statuses)
        classes[class_name] = summary

    overall = aggregate_status([s.status for s in classes.values()])
    logger.info("Gate %s: %d class(es), %d component(s)", overall.value, len(classes), len(components))
    return GateReport(
        overall_status=overall,
        min_sample_scored=min_sample,
        classes=classes,
        components=components,
        inputs=dict(inputs or {}),
    )


def write_reports(out_dir: str | Path, regression: RegressionReport, gate: GateReport) -> tuple[Path, Path]:
    """Write ``regression-report.json`` and ``gate-report.json`` atomically."""
    out = Path(out_dir)
    return (
        write_json(out / "regression-report.json", regression.to_dict()),
        write_json(out / "gate-report.json", gate.to_dict()),
    )
