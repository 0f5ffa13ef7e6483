# SPDX-License-Identifier: MIT
from __future__ import annotations

import logging
import threading
import time

import pytest

from delivery.controller import RolloutController
from delivery.errors import InvalidSpec, RolloutExists, RolloutNotFound
from delivery.history import InMemoryHistoryStore
from delivery.models import Analysis, Pause, Phase, RolloutKey, SetWeight, Verdict
from delivery.providers import ScriptedMetricProvider, StaticMetricProvider
from delivery.store import InMemoryRolloutStore
from delivery.traffic import InMemoryTrafficManager, InMemoryTrafficMesh
from tests.helpers import (
    CANARY,
    STABLE,
    FakeClock,
    error_rate_template,
    isolated_metrics,
    make_controller,
    make_spec,
    scenario_spec,
)

DOCUMENT = {
    "stableRevision": STABLE.id,
    "canaryRevision": {"id": CANARY.id, "image": CANARY.image},
    "steps": [
        {"setWeight": 25},
        {"analysis": {"templateName": "security", "count": 3}},
        {"setWeight": 100},
    ],
    "analysisTemplates": {
        "security": {
            "interval": 20,
            "checks": [
                {
                    "name": "critical-vulns",
                    "metric": "criticalVulnCount",
                    "operator": "<=",
                    "threshold": 0,
                    "hard": True,
                }
            ],
        }
    },
}


def test_submit_starts_rollout_and_schedules_first_tick() -> None:
    clock = FakeClock()
    controller = make_controller(clock=clock)

    key = controller.submit(scenario_spec(), name="zuul", namespace="gateway")

    assert key == RolloutKey("gateway", "zuul")
    assert controller.status(key) == {
        "phase": "Progressing",
        "stepIndex": 0,
        "currentWeights": {"stable": 100, "canary": 0},
        "lastAnalysisVerdict": None,
        "abortReason": None,
    }
    assert controller.pending_tick(key) == clock.now


def test_submit_rejects_invalid_spec_without_creating_state() -> None:
    clock = FakeClock()
    store = InMemoryRolloutStore()
    controller = make_controller(clock=clock, store=store)

    with pytest.raises(InvalidSpec):
        controller.submit(make_spec([SetWeight(60), SetWeight(30)]), name="zuul")

    assert store.keys() == []
    with pytest.raises(RolloutNotFound):
        controller.status(RolloutKey("default", "zuul"))


def test_submit_rejects_duplicate_identity() -> None:
    clock = FakeClock()
    controller = make_controller(clock=clock)
    controller.submit(scenario_spec(), name="zuul")

    with pytest.raises(RolloutExists):
        controller.submit(scenario_spec(), name="zuul")


def test_submit_accepts_rollout_document() -> None:
    clock = FakeClock()
    controller = make_controller(clock=clock, script={"criticalVulnCount": [0]})

    key = controller.submit(DOCUMENT, name="zuul")
    snapshot = controller.reconcile(key)

    assert snapshot is not None
    assert snapshot["phase"] == "Stable"
    assert snapshot["currentWeights"] == {"stable": 0, "canary": 100}


def test_submit_rejects_malformed_document() -> None:
    clock = FakeClock()
    controller = make_controller(clock=clock)
    document = {**DOCUMENT, "steps": [{"setWeight": 10, "pause": {}}]}

    with pytest.raises(InvalidSpec) as excinfo:
        controller.submit(document, name="zuul")

    assert "exactly one of setWeight, pause or analysis" in str(excinfo.value)


def test_reconcile_promotes_clean_canary() -> None:
    clock = FakeClock()
    history = InMemoryHistoryStore()
    controller = make_controller(clock=clock, script={"criticalVulnCount": [0]}, history=history)
    key = controller.submit(scenario_spec(), name="zuul")

    snapshot = controller.reconcile(key)

    assert snapshot == {
        "phase": "Stable",
        "stepIndex": 4,
        "currentWeights": {"stable": 0, "canary": 100},
        "lastAnalysisVerdict": "Successful",
        "abortReason": None,
    }
    runs = controller.analysis_history(key)
    assert [run.verdict for run in runs] == [Verdict.SUCCESSFUL, Verdict.SUCCESSFUL]
    assert history.latest_stable() == CANARY
    assert controller.pending_tick(key) is None


def test_reconcile_rolls_back_on_hard_check_failure() -> None:
    clock = FakeClock()
    mesh = InMemoryTrafficMesh(time_source=clock)
    controller = make_controller(clock=clock, script={"criticalVulnCount": [1]}, mesh=mesh)
    key = controller.submit(scenario_spec(), name="zuul")

    snapshot = controller.reconcile(key)

    assert snapshot is not None
    assert snapshot["phase"] == "RolledBack"
    assert snapshot["currentWeights"] == {"stable": 100, "canary": 0}
    assert "critical-vulns" in snapshot["abortReason"]
    assert mesh.route(key).current_weights() == (100, 0)
    (incident,) = controller.incidents()
    assert incident.rollout == str(key)


def test_reconcile_is_idempotent_while_waiting() -> None:
    clock = FakeClock()
    template = error_rate_template(min_samples=3)
    spec = make_spec([SetWeight(10), Analysis(template.name, count=10), SetWeight(100)], templates=[template])
    store = InMemoryRolloutStore()
    controller = make_controller(clock=clock, script={"errorRate": [0.0]}, store=store)
    key = controller.submit(spec, name="zuul")

    first = controller.reconcile(key)
    first_status = store.load(key).status
    second = controller.reconcile(key)

    assert first == second
    assert store.load(key).status == first_status
    assert first is not None and first["phase"] == "Analyzing"
    assert controller.pending_tick(key) == clock.now + 10.0


def test_periodic_reconciles_drive_analysis_to_completion() -> None:
    clock = FakeClock()
    template = error_rate_template(min_samples=3)
    spec = make_spec([SetWeight(10), Analysis(template.name, count=10), SetWeight(100)], templates=[template])
    controller = make_controller(clock=clock, script={"errorRate": [0.0]}, tick_interval=60.0)
    key = controller.submit(spec, name="zuul")

    phases = []
    for _ in range(10):
        snapshot = controller.reconcile(key)
        assert snapshot is not None
        phases.append(snapshot["phase"])
        if snapshot["phase"] == "Stable":
            break
        due = controller.pending_tick(key)
        assert due is not None
        clock.now = due

    assert phases[-1] == "Stable"
    assert phases.count("Analyzing") == 2


def test_abort_now_during_pause_rolls_back_without_waiting() -> None:
    clock = FakeClock()
    mesh = InMemoryTrafficMesh(time_source=clock)
    controller = make_controller(clock=clock, mesh=mesh)
    key = controller.submit(make_spec([SetWeight(40), Pause(3600.0), SetWeight(100)]), name="zuul")
    snapshot = controller.reconcile(key)
    assert snapshot is not None and snapshot["phase"] == "Paused"
    assert controller.pending_tick(key) == clock.now + 10.0

    result = controller.abort_now(key, "error budget burned")

    assert result["phase"] == "RolledBack"
    assert result["abortReason"] == "manual-abort: error budget burned"
    assert mesh.route(key).current_weights() == (100, 0)
    assert controller.pending_tick(key) is None


def test_abort_now_during_analysis_stops_metric_polling() -> None:
    clock = FakeClock()
    template = error_rate_template(min_samples=3)
    spec = make_spec([SetWeight(10), Analysis(template.name, count=10), SetWeight(100)], templates=[template])
    provider = ScriptedMetricProvider({"errorRate": [0.0]})
    mesh = InMemoryTrafficMesh(time_source=clock)
    controller = make_controller(clock=clock, provider=provider, mesh=mesh)
    key = controller.submit(spec, name="zuul")
    snapshot = controller.reconcile(key)
    assert snapshot is not None and snapshot["phase"] == "Analyzing"
    assert controller.pending_tick(key) is not None
    clock.advance(5.0)
    queries = len(provider.queries)

    result = controller.abort_now(key, "cve published")

    assert result["phase"] == "RolledBack"
    assert result["currentWeights"] == {"stable": 100, "canary": 0}
    assert result["abortReason"] == "manual-abort: cve published"
    assert mesh.route(key).current_weights() == (100, 0)
    assert controller.pending_tick(key) is None
    assert len(provider.queries) == queries

    clock.advance(120.0)
    assert controller.reconcile(key) == result
    assert len(provider.queries) == queries


def test_promote_now_releases_indefinite_pause() -> None:
    clock = FakeClock()
    controller = make_controller(clock=clock)
    key = controller.submit(make_spec([SetWeight(40), Pause(), SetWeight(100)]), name="zuul")
    controller.reconcile(key)
    assert controller.status(key)["phase"] == "Paused"

    assert controller.promote_now(key) is True

    assert controller.status(key)["phase"] == "Stable"


def test_promote_now_is_rejected_for_terminal_rollout() -> None:
    clock = FakeClock()
    controller = make_controller(clock=clock)
    key = controller.submit(make_spec([SetWeight(100)]), name="zuul")
    controller.reconcile(key)

    assert controller.promote_now(key) is False


def test_each_reconcile_gets_its_own_correlation_id(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="delivery.controller")
    clock = FakeClock()
    controller = make_controller(clock=clock)
    first = controller.submit(make_spec([SetWeight(40), Pause()]), name="a", namespace="gateway")
    second = controller.submit(make_spec([SetWeight(40), Pause()]), name="b", namespace="gateway")

    for key in (first, second, first):
        controller.reconcile(key)

    started = [
        record
        for record in caplog.records
        if record.name == "delivery.controller" and record.getMessage() == "Starting operation: reconcile"
    ]
    ids = [record.correlation_id for record in started]
    assert [record.extra_fields["rollout"] for record in started] == ["gateway/a", "gateway/b", "gateway/a"]
    assert len(set(ids)) == 3
    assert ids[0].startswith("gateway/a:")
    assert ids[1].startswith("gateway/b:")
    assert ids[2].startswith("gateway/a:")


def test_terminal_rollout_releases_per_key_state() -> None:
    clock = FakeClock()
    controller = make_controller(clock=clock)
    key = controller.submit(make_spec([SetWeight(100)]), name="zuul")
    assert key in controller._generations

    snapshot = controller.reconcile(key)

    assert snapshot is not None and snapshot["phase"] == "Stable"
    assert key not in controller._locks
    assert key not in controller._generations
    assert controller.pending_tick(key) is None
    assert controller.promote_now(key) is False
    assert key not in controller._locks


@pytest.mark.parametrize("command", ["reconcile", "promote_now", "abort_now"])
def test_commands_on_unknown_rollout_leave_no_state(command: str) -> None:
    controller = make_controller(clock=FakeClock())

    with pytest.raises(RolloutNotFound):
        getattr(controller, command)(RolloutKey("gateway", "absent"))

    assert controller._locks == {}
    assert controller._generations == {}


class _BlockingTraffic(InMemoryTrafficManager):
    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def set_weights(self, stable: int, canary: int) -> None:
        self.entered.set()
        assert self.release.wait(5.0)
        super().set_weights(stable, canary)


def test_concurrent_reconcile_is_dropped_and_counted() -> None:
    clock = FakeClock()
    metrics = isolated_metrics()
    traffic = _BlockingTraffic()
    controller = RolloutController(
        InMemoryRolloutStore(),
        traffic=lambda key: traffic,
        history=InMemoryHistoryStore(),
        provider=StaticMetricProvider({}),
        time_source=clock,
        sleep_fn=clock.sleep,
        metrics=metrics,
    )
    key = controller.submit(make_spec([SetWeight(30), Pause()]), name="zuul")

    worker = threading.Thread(target=controller.reconcile, args=(key,))
    worker.start()
    assert traffic.entered.wait(5.0)

    assert controller.reconcile(key) is None

    traffic.release.set()
    worker.join(5.0)
    assert metrics.registry is not None
    assert metrics.registry.get_sample_value("canarygate_concurrency_violations_total") == 1.0
    assert controller.status(key)["phase"] == "Paused"


def test_list_rollouts_reports_every_key() -> None:
    clock = FakeClock()
    controller = make_controller(clock=clock)
    controller.submit(make_spec([SetWeight(100)]), name="b", namespace="payments")
    controller.submit(make_spec([SetWeight(100)]), name="a", namespace="gateway")

    listed = controller.list_rollouts()

    assert [entry["rollout"] for entry in listed] == ["gateway/a", "payments/b"]
    assert all(entry["phase"] == "Progressing" for entry in listed)


def test_submit_rejects_slash_in_name() -> None:
    controller = make_controller(clock=FakeClock())

    with pytest.raises(InvalidSpec):
        controller.submit(scenario_spec(), name="gateway/zuul")


def test_scheduler_drives_rollouts_in_background() -> None:
    controller = RolloutController(
        InMemoryRolloutStore(),
        traffic=InMemoryTrafficMesh(),
        history=InMemoryHistoryStore(),
        provider=StaticMetricProvider({"criticalVulnCount": 0.0}),
        tick_interval=0.05,
        metrics=isolated_metrics(),
    )
    with controller:
        keys = [
            controller.submit(scenario_spec(), name=f"svc-{index}", namespace="gateway")
            for index in range(3)
        ]
        deadline = time.monotonic() + 10.0
        while time.monotonic() < deadline:
            if all(controller.status(key)["phase"] == "Stable" for key in keys):
                break
            time.sleep(0.02)

    assert [controller.status(key)["phase"] for key in keys] == ["Stable"] * 3


def test_start_resumes_persisted_rollouts() -> None:
    store = InMemoryRolloutStore()
    history = InMemoryHistoryStore()
    first = RolloutController(
        store,
        traffic=InMemoryTrafficMesh(),
        history=history,
        provider=StaticMetricProvider({"criticalVulnCount": 0.0}),
        metrics=isolated_metrics(),
    )
    key = first.submit(scenario_spec(), name="zuul")
    assert store.load(key).status.phase is Phase.PROGRESSING

    second = RolloutController(
        store,
        traffic=InMemoryTrafficMesh(),
        history=history,
        provider=StaticMetricProvider({"criticalVulnCount": 0.0}),
        tick_interval=0.05,
        metrics=isolated_metrics(),
    )
    with second:
        deadline = time.monotonic() + 10.0
        while time.monotonic() < deadline and second.status(key)["phase"] != "Stable":
            time.sleep(0.02)

    assert second.status(key)["phase"] == "Stable"
