# SPDX-License-Identifier: MIT
"""Metric-based analysis gating rollout progression.

An :class:`AnalysisRun` advances one tick at a time. Every tick polls the
metric provider for each check that has not reached a verdict yet, folds the
sample into the check's streak counters and recomputes the aggregate verdict:

* a check passes after ``min_samples`` consecutive passing samples;
* a hard check fails on its first failing sample;
* a soft check fails after ``max_consecutive_failures`` consecutive failures;
* a tick without data (or with the provider unavailable) counts as neither,
  does not reset streaks, and more than ``max_missing_samples`` of them turn
  the run ``Inconclusive``.

The aggregate is ``Failed`` as soon as one check fails, ``Successful`` once all
checks passed, and otherwise ``Pending`` until ``max_ticks`` ticks elapsed, at
which point it becomes ``Inconclusive``.
"""

from __future__ import annotations

import math
import time
from typing import Callable

from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector

from .errors import AnalysisFailed, ProviderUnavailable
from .models import (
    AnalysisRun,
    AnalysisTemplate,
    Check,
    CheckResult,
    Revision,
    Sample,
    SampleOutcome,
    Verdict,
)
from .providers import MetricProvider, MetricReading

__all__ = ["AnalysisEngine"]


class AnalysisEngine:
    """Evaluate analysis templates against a :class:`MetricProvider`."""

    def __init__(
        self,
        provider: MetricProvider,
        *,
        time_source: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] = time.sleep,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._provider = provider
        self._time = time_source
        self._sleep = sleep_fn
        self._metrics = metrics or get_metrics_collector()
        self._logger = get_logger(__name__)

    def start(
        self,
        template: AnalysisTemplate,
        revision: Revision,
        *,
        now: float,
        max_ticks: int,
        first_tick_at: float | None = None,
    ) -> AnalysisRun:
        """Instantiate a run whose first tick is due at ``first_tick_at`` (default ``now``)."""

        if max_ticks < 1:
            raise ValueError("max_ticks must be at least 1")
        return AnalysisRun(
            template=template.name,
            revision=revision.id,
            started_at=now,
            max_ticks=max_ticks,
            next_tick_at=now if first_tick_at is None else first_tick_at,
            checks={check.name: CheckResult(name=check.name) for check in template.checks},
        )

    def due(self, run: AnalysisRun, now: float) -> bool:
        return not run.final and now >= run.next_tick_at

    def poll(self, run: AnalysisRun, template: AnalysisTemplate, *, now: float) -> AnalysisRun:
        """Execute one tick if it is due; a no-op otherwise.

        The run is mutated in place and returned for convenience.
        """

        if not self.due(run, now):
            return run

        window_start = now - template.interval
        failure: AnalysisFailed | None = None
        exhausted: list[str] = []
        for check in template.checks:
            result = run.checks.setdefault(check.name, CheckResult(name=check.name))
            if result.verdict.final:
                continue
            reading = self._read(run, check, window_start, now)
            outcome = self._apply(check, result, reading, now)
            self._metrics.record_analysis_sample(template.name, check.name, outcome.value)
            if result.verdict is Verdict.FAILED and failure is None:
                failure = AnalysisFailed(check.name, result.message or check.describe())
            if result.missing > check.max_missing_samples:
                exhausted.append(check.name)

        run.ticks += 1
        run.next_tick_at = now + template.interval

        if failure is not None:
            self._finish(run, Verdict.FAILED, now, failure.reason)
        elif all(result.verdict is Verdict.SUCCESSFUL for result in run.checks.values()):
            self._finish(run, Verdict.SUCCESSFUL, now, None)
        elif exhausted:
            self._finish(
                run,
                Verdict.INCONCLUSIVE,
                now,
                "too many missing samples for check(s) " + ", ".join(sorted(exhausted)),
            )
        elif run.ticks >= run.max_ticks:
            pending = sorted(name for name, r in run.checks.items() if not r.verdict.final)
            self._finish(
                run,
                Verdict.INCONCLUSIVE,
                now,
                f"no verdict after {run.ticks} ticks for check(s) " + ", ".join(pending),
            )
        return run

    def run_template(
        self,
        template: AnalysisTemplate,
        revision: Revision,
        window: float | None = None,
        *,
        max_ticks: int = 10,
    ) -> AnalysisRun:
        """Run ``template`` to a final verdict, blocking between ticks.

        ``window`` overrides the template sampling interval when given.
        """

        if window is not None:
            if window <= 0:
                raise ValueError("window must be strictly positive")
            template = AnalysisTemplate(template.name, template.checks, float(window))
        run = self.start(template, revision, now=self._time(), max_ticks=max_ticks)
        while True:
            self.poll(run, template, now=self._time())
            if run.final:
                return run
            delay = run.next_tick_at - self._time()
            if delay > 0.0 and math.isfinite(delay):
                self._sleep(delay)

    def _read(
        self, run: AnalysisRun, check: Check, window_start: float, window_end: float
    ) -> MetricReading:
        try:
            return self._provider.query(run.revision, check.metric, window_start, window_end)
        except ProviderUnavailable as exc:
            self._logger.warning(
                "Metric provider unavailable; recording missing sample",
                template=run.template,
                check=check.name,
                metric=check.metric,
                error=str(exc),
            )
            return MetricReading.missing()

    @staticmethod
    def _apply(check: Check, result: CheckResult, reading: MetricReading, now: float) -> SampleOutcome:
        if not reading.has_data or math.isnan(reading.value):
            result.missing += 1
            result.samples.append(Sample(now, None, SampleOutcome.MISSING))
            return SampleOutcome.MISSING

        value = float(reading.value)
        if check.operator.compare(value, check.threshold):
            result.samples.append(Sample(now, value, SampleOutcome.PASS))
            result.consecutive_passes += 1
            result.consecutive_failures = 0
            if result.consecutive_passes >= check.min_samples:
                result.verdict = Verdict.SUCCESSFUL
            return SampleOutcome.PASS

        result.samples.append(Sample(now, value, SampleOutcome.FAIL))
        result.consecutive_failures += 1
        result.consecutive_passes = 0
        if check.hard:
            result.verdict = Verdict.FAILED
            result.message = (
                f"hard check '{check.name}' ({check.describe()}) failed: observed {value:g}"
            )
        elif result.consecutive_failures >= check.max_consecutive_failures:
            result.verdict = Verdict.FAILED
            result.message = (
                f"check '{check.name}' ({check.describe()}) failed "
                f"{result.consecutive_failures} consecutive samples: last observed {value:g}"
            )
        return SampleOutcome.FAIL

    def _finish(self, run: AnalysisRun, verdict: Verdict, now: float, reason: str | None) -> None:
        run.verdict = verdict
        run.finished_at = now
        run.reason = reason
        self._metrics.record_analysis_run(run.template, verdict.value)
        log = self._logger.warning if verdict is not Verdict.SUCCESSFUL else self._logger.info
        log(
            "Analysis run finished",
            template=run.template,
            revision=run.revision,
            verdict=verdict.value,
            ticks=run.ticks,
            reason=reason,
        )
