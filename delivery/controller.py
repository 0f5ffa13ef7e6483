# SPDX-License-Identifier: MIT
"""Reconciliation loop owning many independent rollouts.

Each rollout is reconciled by at most one worker at a time: a per-key lock
guards the load, evaluate/advance, persist cycle. A scheduler thread keeps a
heap of due ticks and hands them to a bounded :class:`ThreadPoolExecutor`.
A rollout that is waiting (for a weight to propagate, a pause to expire or
the next analysis sample) simply reschedules and releases its lock.

Tick cancellation uses per-key generation numbers: scheduling or cancelling
bumps the generation, and stale heap entries are skipped when popped. A
rollout that turns terminal drops both its lock and its generation entry.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Union

from core.config.settings import RolloutPolicy
from core.utils.logging import generate_correlation_id, get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector

from .analysis import AnalysisEngine
from .documents import RolloutDocument, parse_rollout_document
from .errors import ConcurrencyViolation, InvalidSpec
from .history import HistoryStore, Incident
from .models import AnalysisRun, RolloutKey, RolloutRecord, RolloutSpec, RolloutStatus
from .providers import MetricProvider
from .state_machine import RolloutStateMachine, validate_spec
from .store import RolloutStore
from .traffic import TrafficManager

__all__ = ["RolloutController"]

SpecInput = Union[RolloutSpec, RolloutDocument, Mapping[str, Any]]


class RolloutController:
    """Submit, reconcile and command rollouts."""

    def __init__(
        self,
        store: RolloutStore,
        *,
        traffic: Callable[[RolloutKey], TrafficManager],
        history: HistoryStore,
        provider: MetricProvider | None = None,
        engine: AnalysisEngine | None = None,
        policy: RolloutPolicy | None = None,
        time_source: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] = time.sleep,
        max_workers: int = 4,
        tick_interval: float = 10.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if engine is None:
            if provider is None:
                raise ValueError("either provider or engine must be supplied")
            engine = AnalysisEngine(
                provider, time_source=time_source, sleep_fn=sleep_fn, metrics=metrics
            )
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        self._store = store
        self._traffic = traffic
        self._history = history
        self._engine = engine
        self._policy = policy or RolloutPolicy()
        self._time = time_source
        self._sleep = sleep_fn
        self._max_workers = int(max_workers)
        self._tick_interval = float(tick_interval)
        self._metrics = metrics or get_metrics_collector()
        self._logger = get_logger(__name__)

        self._locks: Dict[RolloutKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, RolloutKey, int]] = []
        self._generations: Dict[RolloutKey, int] = {}
        self._seq = itertools.count()
        self._stopping = threading.Event()
        self._scheduler: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Submission and queries
    def submit(self, spec: SpecInput, *, name: str, namespace: str = "default") -> RolloutKey:
        """Register a rollout and start its state machine.

        Raises:
            InvalidSpec: the spec is unusable; nothing is persisted.
            RolloutExists: ``namespace/name`` is already taken.
        """

        if not name or not namespace or "/" in name or "/" in namespace:
            raise InvalidSpec(f"invalid rollout identity {namespace!r}/{name!r}")
        if isinstance(spec, RolloutSpec):
            problems = validate_spec(spec)
            if problems:
                raise InvalidSpec(problems)
            resolved = spec
        else:
            resolved = parse_rollout_document(spec)

        key = RolloutKey(namespace, name)
        self._store.create(key, resolved, RolloutStatus())
        with self._lock_for(key):
            record = self._store.load(key)
            machine = self._machine(record)
            machine.start(self._time())
            self._store.save_status(key, machine.status)
        self._logger.info(
            "Rollout submitted",
            rollout=str(key),
            stable=resolved.stable.id,
            canary=resolved.canary.id,
            steps=len(resolved.steps),
        )
        self.schedule(key, self._time())
        return key

    def status(self, key: RolloutKey) -> dict[str, Any]:
        return self._store.load(key).status.snapshot()

    def list_rollouts(self) -> list[dict[str, Any]]:
        return [
            {"rollout": str(key), **self._store.load(key).status.snapshot()}
            for key in self._store.keys()
        ]

    def analysis_history(self, key: RolloutKey, limit: int | None = None) -> list[AnalysisRun]:
        return self._store.analysis_history(key, limit)

    def incidents(self, limit: int | None = None) -> list[Incident]:
        return self._history.incidents(limit)

    # ------------------------------------------------------------------
    # Reconciliation
    def reconcile(self, key: RolloutKey) -> dict[str, Any] | None:
        """Drive ``key`` as far as it can go without waiting.

        Returns the status snapshot, or ``None`` if another reconciliation of
        the same rollout held the lock and this call was dropped.
        """

        lock = self._existing_lock(key)
        if not lock.acquire(blocking=False):
            violation = ConcurrencyViolation(f"reconcile of {key} already in progress")
            self._metrics.record_concurrency_violation()
            self._logger.warning(
                "Dropping concurrent reconcile", rollout=str(key), error=str(violation)
            )
            return None
        try:
            return self._reconcile_locked(key)
        finally:
            lock.release()

    def promote_now(self, key: RolloutKey) -> bool:
        """Skip the remaining pause or analysis of the current step."""

        with self._existing_lock(key):
            self.cancel(key)
            promoted: list[bool] = []
            self._reconcile_locked(
                key, command=lambda machine, now: promoted.append(machine.promote_now(now))
            )
        return bool(promoted and promoted[0])

    def abort_now(self, key: RolloutKey, reason: str = "aborted by operator") -> dict[str, Any]:
        """Cancel pending waits and roll back to 100% stable."""

        with self._existing_lock(key):
            self.cancel(key)
            return self._reconcile_locked(
                key, command=lambda machine, now: machine.abort(f"manual-abort: {reason}", now)
            )

    def _reconcile_locked(
        self,
        key: RolloutKey,
        *,
        command: Callable[[RolloutStateMachine, float], Any] | None = None,
    ) -> dict[str, Any]:
        with self._metrics.measure_reconcile() as ctx, self._logger.operation(
            "reconcile", correlation_id=f"{key}:{generate_correlation_id()}", rollout=str(key)
        ) as op:
            record = self._store.load(key)
            machine = self._machine(record)
            now = self._time()
            if command is not None:
                command(machine, now)

            # every advance moves forward, so the loop is bounded by the step count
            for _ in range(len(record.spec.steps) + 2):
                if machine.terminal or not machine.evaluate(now):
                    break
                machine.advance(now)

            self._store.save_status(key, machine.status)
            for run in machine.drain_finished_runs():
                self._store.append_analysis(key, run)
            ctx["status"] = "terminal" if machine.terminal else "waiting"
            op["phase"] = machine.phase.value
            op["step_index"] = machine.status.step_index
            self._reschedule(key, machine, now)
            return machine.status.snapshot()

    def _machine(self, record: RolloutRecord) -> RolloutStateMachine:
        return RolloutStateMachine(
            record.key,
            record.spec,
            record.status,
            traffic=self._traffic(record.key),
            engine=self._engine,
            history=self._history,
            policy=self._policy,
            time_source=self._time,
            sleep_fn=self._sleep,
            metrics=self._metrics,
        )

    def _lock_for(self, key: RolloutKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _existing_lock(self, key: RolloutKey) -> threading.Lock:
        # RolloutNotFound surfaces before any per-key state is created
        self._store.load(key)
        return self._lock_for(key)

    def _forget(self, key: RolloutKey) -> None:
        with self._cond:
            self._generations.pop(key, None)
        with self._locks_guard:
            self._locks.pop(key, None)

    # ------------------------------------------------------------------
    # Scheduling
    def schedule(self, key: RolloutKey, at: float) -> None:
        """Replace any pending tick of ``key`` with one due at ``at``."""

        with self._cond:
            generation = self._generations.get(key, 0) + 1
            self._generations[key] = generation
            heapq.heappush(self._heap, (at, next(self._seq), key, generation))
            self._cond.notify()

    def cancel(self, key: RolloutKey) -> None:
        with self._cond:
            self._generations[key] = self._generations.get(key, 0) + 1

    def pending_tick(self, key: RolloutKey) -> float | None:
        """Due time of the live tick for ``key``, if one is scheduled."""

        with self._cond:
            generation = self._generations.get(key)
            due = [at for at, _, k, gen in self._heap if k == key and gen == generation]
        return min(due) if due else None

    def _reschedule(self, key: RolloutKey, machine: RolloutStateMachine, now: float) -> None:
        if machine.terminal:
            # queued heap entries no longer match any generation and are skipped
            self._forget(key)
            return
        periodic = now + self._tick_interval
        wakeup = machine.next_wakeup(now)
        self.schedule(key, periodic if wakeup is None else min(wakeup, periodic))

    def start(self) -> None:
        """Start the scheduler thread and worker pool; resume persisted rollouts."""

        if self._scheduler is not None:
            return
        self._stopping.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="canarygate-worker"
        )
        now = self._time()
        for key in self._store.keys():
            if not self._store.load(key).status.phase.terminal:
                self.schedule(key, now)
        self._scheduler = threading.Thread(
            target=self._run_scheduler, name="canarygate-scheduler", daemon=True
        )
        self._scheduler.start()
        self._logger.info("Controller started", max_workers=self._max_workers)

    def stop(self, *, wait: bool = True) -> None:
        if self._scheduler is None:
            return
        self._stopping.set()
        with self._cond:
            self._cond.notify_all()
        self._scheduler.join()
        self._scheduler = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        self._logger.info("Controller stopped")

    def __enter__(self) -> "RolloutController":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _run_scheduler(self) -> None:
        while not self._stopping.is_set():
            with self._cond:
                if not self._heap:
                    self._cond.wait(self._tick_interval)
                    continue
                at, _, key, generation = self._heap[0]
                if self._generations.get(key) != generation:
                    heapq.heappop(self._heap)
                    continue
                delay = at - self._time()
                if delay > 0:
                    self._cond.wait(min(delay, self._tick_interval))
                    continue
                heapq.heappop(self._heap)
                # consumed; a reschedule from the worker creates the next tick
                self._generations[key] = generation + 1
            executor = self._executor
            if executor is not None:
                executor.submit(self._dispatch, key)

    def _dispatch(self, key: RolloutKey) -> None:
        try:
            self.reconcile(key)
        except Exception as exc:
            self._logger.error(
                "Reconcile failed; retrying on next tick",
                rollout=str(key),
                error=str(exc),
                exc_info=True,
            )
            self.schedule(key, self._time() + self._tick_interval)
