# SPDX-License-Identifier: MIT
"""Rollout data model: revisions, steps, analysis templates and status.

Steps form a closed tagged union (:data:`Step`) discriminated by ``kind`` so
the state machine can dispatch with an explicit ``match`` and persisted specs
round-trip through :class:`pydantic.TypeAdapter` without custom codecs.
"""

from __future__ import annotations

import copy
import operator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Callable, Dict, Literal, Mapping, Optional, Tuple, Union

from pydantic import Field, TypeAdapter

__all__ = [
    "Analysis",
    "AnalysisRun",
    "AnalysisTemplate",
    "Check",
    "CheckResult",
    "Operator",
    "Pause",
    "Phase",
    "Revision",
    "RolloutKey",
    "RolloutRecord",
    "RolloutSpec",
    "RolloutStatus",
    "Sample",
    "SampleOutcome",
    "SetWeight",
    "Step",
    "Verdict",
]


class Phase(str, Enum):
    """Lifecycle phase of a rollout."""

    INITIALIZING = "Initializing"
    PROGRESSING = "Progressing"
    PAUSED = "Paused"
    ANALYZING = "Analyzing"
    PROMOTING = "Promoting"
    ABORTING = "Aborting"
    STABLE = "Stable"
    ROLLED_BACK = "RolledBack"

    @property
    def terminal(self) -> bool:
        return self in (Phase.STABLE, Phase.ROLLED_BACK)


class Verdict(str, Enum):
    """Verdict of a single check or of a whole analysis run."""

    PENDING = "Pending"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"
    INCONCLUSIVE = "Inconclusive"

    @property
    def final(self) -> bool:
        return self is not Verdict.PENDING


class SampleOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    MISSING = "missing"


_COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    "<=": operator.le,
    "<": operator.lt,
    ">=": operator.ge,
    ">": operator.gt,
    "==": operator.eq,
}


class Operator(str, Enum):
    """Comparison applied between a raw metric value and a check threshold."""

    LE = "<="
    LT = "<"
    GE = ">="
    GT = ">"
    EQ = "=="

    def compare(self, value: float, threshold: float) -> bool:
        return _COMPARATORS[self.value](value, threshold)


@dataclass(frozen=True)
class Revision:
    """Immutable workload revision."""

    id: str
    image: str = ""
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class SetWeight:
    """Route ``weight`` percent of traffic to the canary."""

    weight: int
    kind: Literal["setWeight"] = field(default="setWeight", repr=False)


@dataclass(frozen=True)
class Pause:
    """Hold the current split; ``duration=None`` waits for an explicit promote."""

    duration: Optional[float] = None
    kind: Literal["pause"] = field(default="pause", repr=False)


@dataclass(frozen=True)
class Analysis:
    """Gate on an analysis template; ``count`` bounds the polling ticks."""

    template: str
    count: int = 10
    kind: Literal["analysis"] = field(default="analysis", repr=False)


Step = Annotated[Union[SetWeight, Pause, Analysis], Field(discriminator="kind")]


@dataclass(frozen=True)
class Check:
    """A metric threshold evaluated on every analysis tick."""

    name: str
    metric: str
    operator: Operator
    threshold: float
    hard: bool = False
    min_samples: int = 1
    max_consecutive_failures: int = 3
    max_missing_samples: int = 5

    def describe(self) -> str:
        return f"{self.metric} {self.operator.value} {self.threshold:g}"


@dataclass(frozen=True)
class AnalysisTemplate:
    """Named set of checks sampled every ``interval`` seconds."""

    name: str
    checks: Tuple[Check, ...]
    interval: float = 30.0


@dataclass(frozen=True, order=True)
class RolloutKey:
    """Namespace-scoped rollout identity."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, text: str, *, default_namespace: str = "default") -> "RolloutKey":
        namespace, sep, name = text.partition("/")
        if not sep:
            return cls(default_namespace, namespace)
        return cls(namespace, name)


@dataclass(frozen=True)
class RolloutSpec:
    """Immutable desired state of a rollout."""

    stable: Revision
    canary: Revision
    steps: Tuple[Step, ...]
    templates: Mapping[str, AnalysisTemplate] = field(default_factory=dict)
    replicas: int = 1


@dataclass
class Sample:
    timestamp: float
    value: Optional[float]
    outcome: SampleOutcome


@dataclass
class CheckResult:
    """Per-check sample history and streak counters within one run."""

    name: str
    verdict: Verdict = Verdict.PENDING
    samples: list[Sample] = field(default_factory=list)
    consecutive_passes: int = 0
    consecutive_failures: int = 0
    missing: int = 0
    message: Optional[str] = None


@dataclass
class AnalysisRun:
    """One execution of an analysis template for a step attempt.

    ``next_tick_at`` is the resumable continuation: the engine does nothing
    until the clock reaches it.
    """

    template: str
    revision: str
    started_at: float
    max_ticks: int
    next_tick_at: float
    verdict: Verdict = Verdict.PENDING
    checks: Dict[str, CheckResult] = field(default_factory=dict)
    ticks: int = 0
    finished_at: Optional[float] = None
    reason: Optional[str] = None

    @property
    def final(self) -> bool:
        return self.verdict.final


@dataclass
class RolloutStatus:
    """Mutable status of a rollout, owned by its state machine."""

    phase: Phase = Phase.INITIALIZING
    step_index: int = 0
    stable_weight: int = 100
    canary_weight: int = 0
    requested_weight: Optional[int] = None
    weight_requested_at: Optional[float] = None
    step_started_at: Optional[float] = None
    pause_until: Optional[float] = None
    traffic_attempts: int = 0
    traffic_retry_at: Optional[float] = None
    weight_check_at: Optional[float] = None
    analysis: Optional[AnalysisRun] = None
    inconclusive_retries: int = 0
    last_analysis_verdict: Optional[Verdict] = None
    last_transition_at: Optional[float] = None
    abort_reason: Optional[str] = None
    aborted_at: Optional[float] = None
    message: Optional[str] = None

    def clone(self) -> "RolloutStatus":
        return copy.deepcopy(self)

    def snapshot(self) -> dict[str, Any]:
        """External status view returned by the submission surface."""

        return {
            "phase": self.phase.value,
            "stepIndex": self.step_index,
            "currentWeights": {"stable": self.stable_weight, "canary": self.canary_weight},
            "lastAnalysisVerdict": (
                self.last_analysis_verdict.value if self.last_analysis_verdict else None
            ),
            "abortReason": self.abort_reason,
        }


@dataclass
class RolloutRecord:
    """Persisted rollout: immutable spec plus mutable status."""

    key: RolloutKey
    spec: RolloutSpec
    status: RolloutStatus


SPEC_ADAPTER: TypeAdapter[RolloutSpec] = TypeAdapter(RolloutSpec)
STATUS_ADAPTER: TypeAdapter[RolloutStatus] = TypeAdapter(RolloutStatus)
RUN_ADAPTER: TypeAdapter[AnalysisRun] = TypeAdapter(AnalysisRun)
