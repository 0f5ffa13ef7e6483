# SPDX-License-Identifier: MIT
"""Step-sequenced rollout state machine.

The machine walks the immutable step list of one rollout. It never blocks on a
wait condition: :meth:`RolloutStateMachine.evaluate` performs the non-blocking
work of the current step and reports whether the step is done, and
:meth:`RolloutStateMachine.advance` moves to the next step (or into promotion
after the last one). Everything the machine needs to resume later, such as
pause deadlines, retry timestamps and the analysis continuation, lives in
:class:`~delivery.models.RolloutStatus`, so a machine can be rebuilt from a
persisted record at any time.

Phases::

    Initializing -> Progressing(i) -> Paused(i) | Analyzing(i)
        -> Progressing(i + 1) | Promoting -> Stable
        -> Aborting -> RolledBack
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Sequence

from core.config.settings import RolloutPolicy
from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector
from libs.retry import RetryPolicy, backoff_delay, run_with_retry

from .analysis import AnalysisEngine
from .errors import InvalidSpec
from .history import HistoryStore, Incident
from .models import (
    Analysis,
    AnalysisRun,
    Pause,
    Phase,
    RolloutKey,
    RolloutSpec,
    RolloutStatus,
    SetWeight,
    Step,
    Verdict,
)
from .traffic import TrafficManager

__all__ = ["RolloutStateMachine", "describe_steps", "validate_spec"]


def validate_spec(spec: RolloutSpec) -> list[str]:
    """Return the problems that make ``spec`` unusable (empty when valid)."""

    problems: list[str] = []
    if not spec.steps:
        problems.append("steps must not be empty")
    if spec.stable.id == spec.canary.id:
        problems.append("stable and canary revisions must differ")
    if spec.replicas < 1:
        problems.append("replicas must be at least 1")

    previous_weight = 0
    for index, step in enumerate(spec.steps):
        match step:
            case SetWeight(weight=weight):
                if not isinstance(weight, int) or not 0 <= weight <= 100:
                    problems.append(f"step {index}: weight {weight!r} must be an integer within [0, 100]")
                elif weight < previous_weight:
                    problems.append(
                        f"step {index}: weight {weight} decreases from {previous_weight}; "
                        "weights must be non-decreasing"
                    )
                else:
                    previous_weight = weight
            case Pause(duration=duration):
                if duration is not None and duration <= 0:
                    problems.append(f"step {index}: pause duration must be positive")
            case Analysis(template=template, count=count):
                if template not in spec.templates:
                    problems.append(f"step {index}: unknown analysis template {template!r}")
                if count < 1:
                    problems.append(f"step {index}: analysis count must be at least 1")
            case _:
                problems.append(f"step {index}: unsupported step {step!r}")

    for name, template in spec.templates.items():
        if template.name != name:
            problems.append(f"template {name!r} is registered under a different name {template.name!r}")
        if not template.checks:
            problems.append(f"template {name!r} defines no checks")
        if template.interval <= 0:
            problems.append(f"template {name!r}: interval must be positive")
        seen: set[str] = set()
        for check in template.checks:
            if check.name in seen:
                problems.append(f"template {name!r}: duplicate check {check.name!r}")
            seen.add(check.name)
            if check.min_samples < 1:
                problems.append(f"check {check.name!r}: min_samples must be at least 1")
            if check.max_consecutive_failures < 1:
                problems.append(f"check {check.name!r}: max_consecutive_failures must be at least 1")
            if check.max_missing_samples < 0:
                problems.append(f"check {check.name!r}: max_missing_samples must be non-negative")
    return problems


class RolloutStateMachine:
    """Drive one rollout through its steps.

    The machine mutates the :class:`RolloutStatus` it was built with; callers
    persist it after each reconciliation.
    """

    def __init__(
        self,
        key: RolloutKey,
        spec: RolloutSpec,
        status: RolloutStatus | None = None,
        *,
        traffic: TrafficManager,
        engine: AnalysisEngine,
        history: HistoryStore,
        policy: RolloutPolicy | None = None,
        time_source: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] = time.sleep,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.key = key
        self.spec = spec
        self._status = status if status is not None else RolloutStatus()
        self._traffic = traffic
        self._engine = engine
        self._history = history
        self._policy = policy or RolloutPolicy()
        self._time = time_source
        self._sleep = sleep_fn
        self._metrics = metrics or get_metrics_collector()
        self._logger = get_logger(__name__).bind(rollout=str(key))
        self._finished_runs: list[AnalysisRun] = []

    # ------------------------------------------------------------------
    # Introspection
    @property
    def status(self) -> RolloutStatus:
        return self._status

    @property
    def phase(self) -> Phase:
        return self._status.phase

    @property
    def terminal(self) -> bool:
        return self._status.phase.terminal

    @property
    def current_step(self) -> Step:
        return self.spec.steps[self._status.step_index]

    def drain_finished_runs(self) -> list[AnalysisRun]:
        """Return analysis runs that reached a verdict since the last drain."""

        runs, self._finished_runs = self._finished_runs, []
        return runs

    def next_wakeup(self, now: float) -> float | None:
        """Earliest time at which :meth:`evaluate` could make progress."""

        status = self._status
        if status.phase.terminal:
            return None
        if status.phase is Phase.ABORTING:
            return now + self._policy.weight_poll_interval
        if status.phase is Phase.INITIALIZING:
            return now

        candidates = [
            moment
            for moment in (status.traffic_retry_at, status.weight_check_at, status.pause_until)
            if moment is not None
        ]
        if status.analysis is not None and not status.analysis.final:
            candidates.append(status.analysis.next_tick_at)
        if candidates:
            return max(now, min(candidates))
        if status.phase is Phase.PAUSED:
            return None
        return now

    # ------------------------------------------------------------------
    # Lifecycle
    def start(self, now: float | None = None) -> None:
        """Validate the spec and enter ``Progressing(0)``.

        Raises:
            InvalidSpec: if the spec is unusable; the status is left untouched.
        """

        problems = validate_spec(self.spec)
        if problems:
            raise InvalidSpec(problems)
        if self._status.phase is not Phase.INITIALIZING:
            return
        self._enter_step(0, self._now(now))
        self._logger.info("Rollout started", steps=len(self.spec.steps))

    def evaluate(self, now: float | None = None) -> bool:
        """Do the current step's pending work; ``True`` when its condition holds."""

        now = self._now(now)
        status = self._status
        if status.phase.terminal:
            return False
        if status.phase is Phase.INITIALIZING:
            self.start(now)
        if status.phase is Phase.ABORTING:
            self._complete_abort(now)
            return False
        if status.phase is Phase.PROMOTING:
            return self._drive_weight(100, now)

        step = self.current_step
        match step:
            case SetWeight(weight=weight):
                return self._drive_weight(weight, now)
            case Pause():
                return self._drive_pause(step, now)
            case Analysis():
                return self._drive_analysis(step, now)
        raise TypeError(f"unsupported step {step!r}")

    def advance(self, now: float | None = None) -> None:
        """Leave the current step; after the final step, promote the canary."""

        now = self._now(now)
        status = self._status
        if status.phase.terminal or status.phase in (Phase.ABORTING, Phase.INITIALIZING):
            return
        if status.phase is Phase.PROMOTING:
            self._finish_promotion(now)
            return
        if status.step_index >= len(self.spec.steps) - 1:
            self._reset_step_state()
            self._transition(Phase.PROMOTING, now)
            return
        self._enter_step(status.step_index + 1, now)

    def promote_now(self, now: float | None = None) -> bool:
        """Skip the remaining pause or analysis of the current step only."""

        now = self._now(now)
        status = self._status
        if status.phase.terminal or status.phase in (
            Phase.ABORTING,
            Phase.PROMOTING,
            Phase.INITIALIZING,
        ):
            return False
        step = self.current_step
        if isinstance(step, SetWeight):
            self._logger.warning(
                "Promote ignored while waiting for a traffic weight",
                step_index=status.step_index,
                weight=step.weight,
            )
            return False
        self._logger.info(
            "Promote requested; skipping step",
            step_index=status.step_index,
            step=step.kind,
        )
        status.message = f"step {status.step_index} ({step.kind}) skipped by promote"
        self.advance(now)
        return True

    def abort(self, reason: str, now: float | None = None) -> None:
        """Roll back to 100% stable. A no-op once the rollout is terminal."""

        now = self._now(now)
        status = self._status
        if status.phase.terminal:
            return
        if status.phase is not Phase.ABORTING:
            status.abort_reason = reason
            self._logger.warning("Aborting rollout", reason=reason, step_index=status.step_index)
            if status.analysis is not None and not status.analysis.final:
                status.analysis = None
            status.pause_until = None
            self._transition(Phase.ABORTING, now)
        self._complete_abort(now)

    # ------------------------------------------------------------------
    # Step drivers
    def _drive_weight(self, target: int, now: float) -> bool:
        status = self._status
        if status.requested_weight != target:
            if status.traffic_retry_at is not None and now < status.traffic_retry_at:
                return False
            try:
                self._traffic.set_weights(100 - target, target)
            except Exception as exc:
                return self._record_traffic_failure(target, exc, now)
            status.requested_weight = target
            status.weight_requested_at = now
            status.traffic_attempts = 0
            status.traffic_retry_at = None
            status.weight_check_at = None
            self._logger.info("Traffic weight requested", canary_weight=target)
        return self._confirm_weight(target, now)

    def _record_traffic_failure(self, target: int, exc: Exception, now: float) -> bool:
        status = self._status
        status.traffic_attempts += 1
        self._metrics.record_traffic_apply_failure(str(self.key))
        if status.traffic_attempts >= self._policy.max_traffic_attempts:
            self.abort(
                f"traffic-apply-failed: canary weight {target} not applied after "
                f"{status.traffic_attempts} attempts: {exc}",
                now,
            )
            return False
        delay = backoff_delay(
            status.traffic_attempts,
            initial=self._policy.traffic_backoff_initial,
            maximum=self._policy.traffic_backoff_max,
        )
        status.traffic_retry_at = now + delay
        self._logger.warning(
            "Traffic weight apply failed; retrying",
            canary_weight=target,
            attempt=status.traffic_attempts,
            retry_in=delay,
            error=str(exc),
        )
        return False

    def _confirm_weight(self, target: int, now: float) -> bool:
        status = self._status
        if status.weight_check_at is not None and now < status.weight_check_at:
            return False
        stable, canary = self._traffic.current_weights()
        if stable + canary == 100:
            status.stable_weight, status.canary_weight = stable, canary
            self._metrics.set_canary_weight(str(self.key), canary)
        else:
            self._logger.error(
                "Traffic manager reported an invalid split", stable=stable, canary=canary
            )
        if canary == target and stable == 100 - target:
            status.weight_check_at = None
            return True

        requested_at = status.weight_requested_at if status.weight_requested_at is not None else now
        if now - requested_at >= self._policy.weight_confirm_timeout:
            self.abort(
                f"traffic-apply-failed: canary weight {target} not confirmed within "
                f"{self._policy.weight_confirm_timeout:g}s (observed {canary})",
                now,
            )
            return False
        status.weight_check_at = now + self._policy.weight_poll_interval
        return False

    def _drive_pause(self, step: Pause, now: float) -> bool:
        status = self._status
        if status.phase is not Phase.PAUSED:
            status.pause_until = None if step.duration is None else now + step.duration
            self._transition(Phase.PAUSED, now)
        if status.pause_until is None:
            return False
        return now >= status.pause_until

    def _drive_analysis(self, step: Analysis, now: float) -> bool:
        status = self._status
        template = self.spec.templates[step.template]
        if status.phase is not Phase.ANALYZING:
            self._transition(Phase.ANALYZING, now)
        if status.analysis is None:
            status.analysis = self._engine.start(
                template, self.spec.canary, now=now, max_ticks=step.count
            )

        run = self._engine.poll(status.analysis, template, now=now)
        if not run.final:
            return False

        status.last_analysis_verdict = run.verdict
        self._finished_runs.append(run)
        if run.verdict is Verdict.SUCCESSFUL:
            return True
        if run.verdict is Verdict.FAILED:
            self.abort(f"analysis-failed: {run.reason}", now)
            return False

        status.inconclusive_retries += 1
        if status.inconclusive_retries > self._policy.max_inconclusive_retries:
            self.abort(
                f"analysis-inconclusive: template {template.name!r} inconclusive "
                f"{status.inconclusive_retries} times: {run.reason}",
                now,
            )
            return False
        self._logger.warning(
            "Analysis inconclusive; retrying",
            template=template.name,
            retry=status.inconclusive_retries,
            reason=run.reason,
        )
        status.analysis = self._engine.start(
            template,
            self.spec.canary,
            now=now,
            max_ticks=step.count,
            first_tick_at=now + template.interval,
        )
        return False

    # ------------------------------------------------------------------
    # Terminal transitions
    def _complete_abort(self, now: float) -> None:
        status = self._status
        reason = status.abort_reason or "aborted"
        restore = RetryPolicy(
            attempts=self._policy.restore_attempts,
            initial_backoff=self._policy.restore_backoff_initial,
            max_backoff=self._policy.restore_backoff_max,
        )
        try:
            run_with_retry(
                restore,
                logging.getLogger(__name__),
                lambda: self._traffic.set_weights(100, 0),
                sleep=self._sleep,
            )
        except Exception as exc:
            status.message = f"restore to stable failed, will retry: {exc}"
            self._metrics.record_traffic_apply_failure(str(self.key))
            self._logger.error("Restoring stable traffic failed", reason=reason, error=str(exc))
            return

        status.requested_weight = 0
        status.stable_weight, status.canary_weight = 100, 0
        self._metrics.set_canary_weight(str(self.key), 0)
        target = self.spec.stable
        self._history.record_incident(
            Incident(
                rollout=str(self.key),
                reason=reason,
                revision=self.spec.canary.id,
                rollback_target=target.id,
                occurred_at=now,
            )
        )
        self._reset_step_state()
        status.step_index = 0
        status.aborted_at = now
        status.message = f"rolled back to {target.id}"
        self._transition(Phase.ROLLED_BACK, now)
        self._metrics.record_abort(reason)
        self._logger.warning("Rollout rolled back", reason=reason, rollback_target=target.id)

    def _finish_promotion(self, now: float) -> None:
        latest = self._history.latest_stable()
        if latest is None or latest.id != self.spec.stable.id:
            if latest is None or latest.id != self.spec.canary.id:
                self._history.push_stable(self.spec.stable)
        self._history.push_stable(self.spec.canary)
        self._status.message = f"promoted {self.spec.canary.id}"
        self._transition(Phase.STABLE, now)
        self._metrics.record_promotion()
        self._logger.info("Rollout promoted", revision=self.spec.canary.id)

    # ------------------------------------------------------------------
    # Helpers
    def _enter_step(self, index: int, now: float) -> None:
        self._reset_step_state()
        self._status.step_index = index
        self._status.step_started_at = now
        self._transition(Phase.PROGRESSING, now, force=True)

    def _reset_step_state(self) -> None:
        status = self._status
        status.pause_until = None
        status.analysis = None
        status.inconclusive_retries = 0
        status.traffic_attempts = 0
        status.traffic_retry_at = None
        status.weight_check_at = None

    def _transition(self, phase: Phase, now: float, *, force: bool = False) -> None:
        status = self._status
        if status.phase is phase and not force:
            return
        previous = status.phase
        status.phase = phase
        status.last_transition_at = now
        self._metrics.record_transition(phase.value)
        self._logger.info(
            "Rollout transition",
            previous=previous.value,
            phase=phase.value,
            step_index=status.step_index,
        )

    def _now(self, now: float | None) -> float:
        return self._time() if now is None else now


def describe_steps(steps: Sequence[Step]) -> list[str]:
    """Human-readable rendering of a step list."""

    rendered: list[str] = []
    for step in steps:
        match step:
            case SetWeight(weight=weight):
                rendered.append(f"setWeight({weight})")
            case Pause(duration=None):
                rendered.append("pause(until promoted)")
            case Pause(duration=duration):
                rendered.append(f"pause({duration:g}s)")
            case Analysis(template=template, count=count):
                rendered.append(f"analysis({template}, count={count})")
    return rendered
