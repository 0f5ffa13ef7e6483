# SPDX-License-Identifier: MIT
"""Prometheus instrumentation for the delivery controller.

The collector owns every metric family emitted by the controller so tests can
build an isolated instance bound to a private :class:`CollectorRegistry`.
"""
from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class MetricsCollector:
    """Centralised metrics collection for rollout reconciliation."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialise metric families.

        Args:
            registry: Prometheus registry (the process default if ``None``).
        """
        self.registry = registry
        kwargs: Dict[str, Any] = {} if registry is None else {"registry": registry}

        self.rollout_transitions_total = Counter(
            "canarygate_rollout_transitions_total",
            "Rollout phase transitions",
            ["phase"],
            **kwargs,
        )
        self.rollout_aborts_total = Counter(
            "canarygate_rollout_aborts_total",
            "Rollouts aborted and rolled back",
            ["reason"],
            **kwargs,
        )
        self.rollout_promotions_total = Counter(
            "canarygate_rollout_promotions_total",
            "Rollouts promoted to stable",
            **kwargs,
        )
        self.canary_weight = Gauge(
            "canarygate_canary_weight_percent",
            "Canary traffic weight last confirmed by the traffic manager",
            ["rollout"],
            **kwargs,
        )
        self.analysis_samples_total = Counter(
            "canarygate_analysis_samples_total",
            "Analysis samples collected per check",
            ["template", "check", "outcome"],
            **kwargs,
        )
        self.analysis_runs_total = Counter(
            "canarygate_analysis_runs_total",
            "Analysis runs that reached a final verdict",
            ["template", "verdict"],
            **kwargs,
        )
        self.traffic_apply_failures_total = Counter(
            "canarygate_traffic_apply_failures_total",
            "Failed attempts to apply traffic weights",
            ["rollout"],
            **kwargs,
        )
        self.reconcile_duration = Histogram(
            "canarygate_reconcile_duration_seconds",
            "Time spent in a single reconciliation",
            ["status"],
            **kwargs,
        )
        self.concurrency_violations_total = Counter(
            "canarygate_concurrency_violations_total",
            "Reconciliations dropped because the rollout lock was held",
            **kwargs,
        )

    def record_transition(self, phase: str) -> None:
        self.rollout_transitions_total.labels(phase=phase).inc()

    def record_abort(self, reason: str) -> None:
        """Record an abort, keyed by the reason prefix to bound cardinality."""

        category = reason.split(":", 1)[0].strip() or "unspecified"
        self.rollout_aborts_total.labels(reason=category).inc()

    def record_promotion(self) -> None:
        self.rollout_promotions_total.inc()

    def set_canary_weight(self, rollout: str, weight: float) -> None:
        self.canary_weight.labels(rollout=rollout).set(float(weight))

    def record_analysis_sample(self, template: str, check: str, outcome: str) -> None:
        self.analysis_samples_total.labels(
            template=template, check=check, outcome=outcome
        ).inc()

    def record_analysis_run(self, template: str, verdict: str) -> None:
        self.analysis_runs_total.labels(template=template, verdict=verdict).inc()

    def record_traffic_apply_failure(self, rollout: str) -> None:
        self.traffic_apply_failures_total.labels(rollout=rollout).inc()

    def record_concurrency_violation(self) -> None:
        self.concurrency_violations_total.inc()

    @contextmanager
    def measure_reconcile(self) -> Iterator[Dict[str, Any]]:
        """Time a reconciliation; callers may set ``ctx["status"]``."""

        ctx: Dict[str, Any] = {}
        start = time.perf_counter()
        try:
            yield ctx
        except Exception:
            ctx["status"] = "error"
            raise
        finally:
            status = str(ctx.get("status") or "success")
            self.reconcile_duration.labels(status=status).observe(
                time.perf_counter() - start
            )

    def render_prometheus(self) -> str:
        """Return the exposition-format payload for this collector."""

        payload = generate_latest(self.registry) if self.registry else generate_latest()
        return payload.decode("utf-8")


_collector: Optional[MetricsCollector] = None


def get_metrics_collector(registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Return the process-wide metrics collector."""

    global _collector
    if _collector is None:
        _collector = MetricsCollector(registry)
    return _collector


__all__ = [
    "MetricsCollector",
    "get_metrics_collector",
]
