# SPDX-License-Identifier: MIT
"""Builders and fakes shared by the delivery test-suite."""

from __future__ import annotations

from typing import Mapping, Sequence

from prometheus_client import CollectorRegistry

from core.config.settings import RolloutPolicy
from core.utils.metrics import MetricsCollector
from delivery.analysis import AnalysisEngine
from delivery.controller import RolloutController
from delivery.errors import TrafficApplyFailed
from delivery.history import InMemoryHistoryStore
from delivery.models import (
    Analysis,
    AnalysisTemplate,
    Check,
    Operator,
    Revision,
    RolloutKey,
    RolloutSpec,
    SetWeight,
    Step,
)
from delivery.providers import MetricProvider, ScriptedMetricProvider
from delivery.state_machine import RolloutStateMachine
from delivery.store import InMemoryRolloutStore
from delivery.traffic import InMemoryTrafficManager, InMemoryTrafficMesh

STABLE = Revision("zuul-1.4.2", image="registry.local/zuul:1.4.2")
CANARY = Revision("zuul-1.5.0", image="registry.local/zuul:1.5.0")
KEY = RolloutKey("gateway", "zuul")


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instead of blocking."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = float(start)
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyTrafficManager(InMemoryTrafficManager):
    """Traffic manager whose next ``set_weights`` calls fail until ``heal``."""

    def __init__(self, *, failures: int, **kwargs: object) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.remaining_failures = failures

    def set_weights(self, stable: int, canary: int) -> None:
        if self.remaining_failures > 0:
            self.remaining_failures -= 1
            raise TrafficApplyFailed("virtual service update rejected")
        super().set_weights(stable, canary)


def critical_template(name: str = "tmpl-A", *, interval: float = 30.0) -> AnalysisTemplate:
    return AnalysisTemplate(
        name=name,
        checks=(Check("critical-vulns", "criticalVulnCount", Operator.LE, 0.0, hard=True),),
        interval=interval,
    )


def error_rate_template(
    name: str = "tmpl-errors",
    *,
    max_failures: int = 3,
    min_samples: int = 3,
    max_missing: int = 5,
    interval: float = 30.0,
) -> AnalysisTemplate:
    return AnalysisTemplate(
        name=name,
        checks=(
            Check(
                "error-rate",
                "errorRate",
                Operator.LE,
                0.01,
                min_samples=min_samples,
                max_consecutive_failures=max_failures,
                max_missing_samples=max_missing,
            ),
        ),
        interval=interval,
    )


def scenario_spec(template: AnalysisTemplate | None = None) -> RolloutSpec:
    """``[SetWeight(10), Analysis, SetWeight(50), Analysis, SetWeight(100)]``."""

    template = template or critical_template()
    return make_spec(
        [
            SetWeight(10),
            Analysis(template.name, count=5),
            SetWeight(50),
            Analysis(template.name, count=5),
            SetWeight(100),
        ],
        templates=[template],
    )


def make_spec(
    steps: Sequence[Step],
    *,
    templates: Sequence[AnalysisTemplate] = (),
    stable: Revision = STABLE,
    canary: Revision = CANARY,
) -> RolloutSpec:
    return RolloutSpec(
        stable=stable,
        canary=canary,
        steps=tuple(steps),
        templates={template.name: template for template in templates},
    )


def isolated_metrics() -> MetricsCollector:
    return MetricsCollector(CollectorRegistry())


def make_machine(
    spec: RolloutSpec,
    *,
    clock: FakeClock,
    provider: MetricProvider | None = None,
    traffic: InMemoryTrafficManager | None = None,
    history: InMemoryHistoryStore | None = None,
    policy: RolloutPolicy | None = None,
    metrics: MetricsCollector | None = None,
) -> RolloutStateMachine:
    metrics = metrics or isolated_metrics()
    engine = AnalysisEngine(
        provider or ScriptedMetricProvider({}),
        time_source=clock,
        sleep_fn=clock.sleep,
        metrics=metrics,
    )
    return RolloutStateMachine(
        KEY,
        spec,
        traffic=traffic or InMemoryTrafficManager(time_source=clock),
        engine=engine,
        history=history or InMemoryHistoryStore(),
        policy=policy,
        time_source=clock,
        sleep_fn=clock.sleep,
        metrics=metrics,
    )


def drive(machine: RolloutStateMachine, clock: FakeClock, *, limit: int = 500) -> None:
    """Evaluate and advance until terminal, jumping the clock between wakeups."""

    for _ in range(limit):
        if machine.terminal:
            return
        if machine.evaluate():
            machine.advance()
            continue
        if machine.terminal:
            return
        wakeup = machine.next_wakeup(clock.now)
        if wakeup is None:
            raise AssertionError(f"rollout blocked in {machine.phase.value} without a wakeup")
        clock.now = max(clock.now, wakeup)
    raise AssertionError("rollout did not terminate")


def make_controller(
    *,
    clock: FakeClock,
    script: Mapping[str, Sequence[float | None | BaseException]] | None = None,
    provider: MetricProvider | None = None,
    mesh: InMemoryTrafficMesh | None = None,
    history: InMemoryHistoryStore | None = None,
    store: InMemoryRolloutStore | None = None,
    policy: RolloutPolicy | None = None,
    metrics: MetricsCollector | None = None,
    tick_interval: float = 10.0,
) -> RolloutController:
    return RolloutController(
        store or InMemoryRolloutStore(),
        traffic=mesh or InMemoryTrafficMesh(time_source=clock),
        history=history or InMemoryHistoryStore(),
        provider=provider if provider is not None else ScriptedMetricProvider(script or {}),
        policy=policy,
        time_source=clock,
        sleep_fn=clock.sleep,
        tick_interval=tick_interval,
        metrics=metrics or isolated_metrics(),
    )
