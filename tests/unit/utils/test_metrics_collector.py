# SPDX-License-Identifier: MIT
from __future__ import annotations

import pytest
from prometheus_client import CollectorRegistry

from core.utils.metrics import MetricsCollector


def _sample_value(registry: CollectorRegistry, name: str, labels: dict[str, str] | None = None) -> float | None:
    """Helper to extract metric samples from the registry."""

    return registry.get_sample_value(name, labels or {})


@pytest.fixture
def collector() -> MetricsCollector:
    return MetricsCollector(CollectorRegistry())


def test_transitions_and_promotions_are_counted(collector: MetricsCollector) -> None:
    collector.record_transition("Progressing")
    collector.record_transition("Progressing")
    collector.record_transition("Stable")
    collector.record_promotion()

    registry = collector.registry
    assert registry is not None
    assert _sample_value(registry, "canarygate_rollout_transitions_total", {"phase": "Progressing"}) == 2.0
    assert _sample_value(registry, "canarygate_rollout_transitions_total", {"phase": "Stable"}) == 1.0
    assert _sample_value(registry, "canarygate_rollout_promotions_total") == 1.0


def test_abort_reasons_are_bucketed_by_prefix(collector: MetricsCollector) -> None:
    collector.record_abort("analysis-failed: hard check 'critical-vulns' failed")
    collector.record_abort("analysis-failed: check 'error-rate' failed")
    collector.record_abort("operator said so")

    registry = collector.registry
    assert registry is not None
    assert _sample_value(registry, "canarygate_rollout_aborts_total", {"reason": "analysis-failed"}) == 2.0
    assert _sample_value(registry, "canarygate_rollout_aborts_total", {"reason": "operator said so"}) == 1.0


def test_canary_weight_gauge_tracks_latest_value(collector: MetricsCollector) -> None:
    collector.set_canary_weight("gateway/zuul", 10)
    collector.set_canary_weight("gateway/zuul", 50)

    assert collector.registry is not None
    assert _sample_value(collector.registry, "canarygate_canary_weight_percent", {"rollout": "gateway/zuul"}) == 50.0


def test_measure_reconcile_records_status_label(collector: MetricsCollector) -> None:
    with collector.measure_reconcile() as ctx:
        ctx["status"] = "waiting"
    with pytest.raises(RuntimeError):
        with collector.measure_reconcile():
            raise RuntimeError("store offline")

    registry = collector.registry
    assert registry is not None
    assert _sample_value(registry, "canarygate_reconcile_duration_seconds_count", {"status": "waiting"}) == 1.0
    assert _sample_value(registry, "canarygate_reconcile_duration_seconds_count", {"status": "error"}) == 1.0


def test_render_prometheus_exposes_collector_registry(collector: MetricsCollector) -> None:
    collector.record_concurrency_violation()
    collector.record_traffic_apply_failure("gateway/zuul")

    payload = collector.render_prometheus()

    assert "canarygate_concurrency_violations_total 1.0" in payload
    assert 'canarygate_traffic_apply_failures_total{rollout="gateway/zuul"} 1.0' in payload
