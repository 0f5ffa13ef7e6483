# SPDX-License-Identifier: MIT
"""Rollout submission documents.

External orchestrators submit a document such as::

    stableRevision: {id: zuul-1.4.2, image: registry.local/zuul:1.4.2}
    canaryRevision: zuul-1.5.0
    steps:
      - setWeight: 10
      - analysis: {templateName: security-analysis, count: 5}
      - pause: {duration: 60}
      - setWeight: 100
    analysisTemplates:
      security-analysis:
        interval: 30
        checks:
          - {name: critical-vulns, metric: criticalVulnCount, operator: "<=", threshold: 0, hard: true}

The pydantic models below validate the wire shape; :func:`parse_rollout_document`
converts it into the immutable :class:`~delivery.models.RolloutSpec`.
"""

from __future__ import annotations

import json
from dataclasses import replace
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml  # type: ignore[import-untyped]
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from core.config.settings import SecurityThreshold

from .errors import InvalidSpec
from .models import (
    Analysis,
    AnalysisTemplate,
    Check,
    Operator,
    Pause,
    Revision,
    RolloutSpec,
    SetWeight,
    Step,
)
from .state_machine import validate_spec

__all__ = [
    "AnalysisTemplateDocument",
    "CheckDocument",
    "RevisionDocument",
    "RolloutDocument",
    "StepDocument",
    "default_security_template",
    "load_rollout_document",
    "parse_rollout_document",
]


class _Document(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class RevisionDocument(_Document):
    id: str = Field(min_length=1)
    image: str = ""
    created_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_identifier(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"id": data}
        return data

    def to_revision(self) -> Revision:
        return Revision(id=self.id, image=self.image, created_at=self.created_at)


class PauseDocument(_Document):
    duration: Optional[float] = Field(default=None, gt=0)


class AnalysisStepDocument(_Document):
    template_name: str = Field(min_length=1)
    count: int = Field(default=10, ge=1)


class StepDocument(_Document):
    set_weight: Optional[int] = Field(default=None, ge=0, le=100)
    pause: Optional[PauseDocument] = None
    analysis: Optional[AnalysisStepDocument] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "StepDocument":
        chosen = [
            name
            for name, value in (
                ("setWeight", self.set_weight),
                ("pause", self.pause),
                ("analysis", self.analysis),
            )
            if value is not None
        ]
        if len(chosen) != 1:
            raise ValueError(
                "each step must define exactly one of setWeight, pause or analysis"
                + (f" (got {', '.join(chosen)})" if chosen else "")
            )
        return self

    def to_step(self) -> Step:
        if self.set_weight is not None:
            return SetWeight(self.set_weight)
        if self.pause is not None:
            return Pause(self.pause.duration)
        assert self.analysis is not None
        return Analysis(self.analysis.template_name, self.analysis.count)


class CheckDocument(_Document):
    name: str = Field(min_length=1)
    metric: str = Field(min_length=1)
    operator: Operator
    threshold: float
    hard: bool = False
    min_samples: int = Field(default=1, ge=1)
    max_consecutive_failures: int = Field(default=3, ge=1)
    max_missing_samples: int = Field(default=5, ge=0)

    def to_check(self) -> Check:
        return Check(
            name=self.name,
            metric=self.metric,
            operator=self.operator,
            threshold=self.threshold,
            hard=self.hard,
            min_samples=self.min_samples,
            max_consecutive_failures=self.max_consecutive_failures,
            max_missing_samples=self.max_missing_samples,
        )


class AnalysisTemplateDocument(_Document):
    interval: float = Field(default=30.0, gt=0)
    checks: list[CheckDocument] = Field(min_length=1)

    def to_template(self, name: str) -> AnalysisTemplate:
        return AnalysisTemplate(
            name=name,
            checks=tuple(check.to_check() for check in self.checks),
            interval=self.interval,
        )


class RolloutDocument(_Document):
    stable_revision: RevisionDocument
    canary_revision: RevisionDocument
    replicas: int = Field(default=1, ge=1)
    steps: list[StepDocument] = Field(min_length=1)
    analysis_templates: dict[str, AnalysisTemplateDocument] = Field(default_factory=dict)

    @field_validator("analysis_templates")
    @classmethod
    def _non_blank_names(
        cls, value: dict[str, AnalysisTemplateDocument]
    ) -> dict[str, AnalysisTemplateDocument]:
        for name in value:
            if not name.strip():
                raise ValueError("analysis template names must not be blank")
        return value

    def to_spec(self) -> RolloutSpec:
        return RolloutSpec(
            stable=self.stable_revision.to_revision(),
            canary=self.canary_revision.to_revision(),
            steps=tuple(step.to_step() for step in self.steps),
            templates={
                name: template.to_template(name)
                for name, template in self.analysis_templates.items()
            },
            replicas=self.replicas,
        )


def parse_rollout_document(
    data: Mapping[str, Any] | RolloutDocument,
    *,
    defaults: Mapping[str, AnalysisTemplate] | None = None,
) -> RolloutSpec:
    """Validate a submission document and return its :class:`RolloutSpec`.

    ``defaults`` supplies analysis templates referenced by steps but not
    defined in the document itself.

    Raises:
        InvalidSpec: when the document is malformed or semantically invalid.
    """

    if isinstance(data, RolloutDocument):
        document = data
    else:
        try:
            document = RolloutDocument.model_validate(data)
        except ValidationError as exc:
            problems = [
                f"{'.'.join(str(part) for part in error['loc']) or 'document'}: {error['msg']}"
                for error in exc.errors()
            ]
            raise InvalidSpec(problems) from exc
    spec = document.to_spec()
    if defaults:
        merged = {**defaults, **spec.templates}
        spec = replace(spec, templates=merged)
    problems = validate_spec(spec)
    if problems:
        raise InvalidSpec(problems)
    return spec


def load_rollout_document(
    path: str | Path,
    *,
    defaults: Mapping[str, AnalysisTemplate] | None = None,
) -> RolloutSpec:
    """Load a JSON or YAML rollout document from ``path``."""

    payload_path = Path(path)
    text = payload_path.read_text(encoding="utf8")
    try:
        if payload_path.suffix.lower() == ".json":
            loaded = json.loads(text)
        else:
            loaded = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise InvalidSpec(f"{payload_path}: cannot parse document: {exc}") from exc
    if not isinstance(loaded, Mapping):
        raise InvalidSpec(f"{payload_path}: document must define a mapping")
    return parse_rollout_document(loaded, defaults=defaults)


_SEVERITIES: tuple[tuple[str, str], ...] = (
    ("critical", "criticalVulnCount"),
    ("high", "highVulnCount"),
    ("medium", "mediumVulnCount"),
    ("low", "lowVulnCount"),
)


def default_security_template(
    threshold: SecurityThreshold = "medium",
    *,
    name: str = "security-analysis",
    interval: float = 30.0,
    max_error_rate: float = 0.01,
    max_p95_latency_ms: float = 500.0,
) -> AnalysisTemplate:
    """Security gate blocking vulnerabilities at or above ``threshold``.

    Vulnerability counts and policy violations are hard checks; error rate and
    p95 latency are soft checks tolerating isolated spikes.
    """

    levels = [level for level, _ in _SEVERITIES]
    if threshold not in levels:
        raise ValueError(f"unknown security threshold {threshold!r}")
    blocking = _SEVERITIES[: levels.index(threshold) + 1]
    checks = [
        Check(f"{level}-vulnerabilities", metric, Operator.LE, 0.0, hard=True)
        for level, metric in blocking
    ]
    checks.append(Check("policy-violations", "policyViolationCount", Operator.LE, 0.0, hard=True))
    checks.append(Check("error-rate", "errorRate", Operator.LE, max_error_rate, min_samples=3))
    checks.append(
        Check("p95-latency", "p95LatencyMs", Operator.LE, max_p95_latency_ms, min_samples=3)
    )
    return AnalysisTemplate(name=name, checks=tuple(checks), interval=interval)
