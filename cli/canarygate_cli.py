# SPDX-License-Identifier: MIT
"""canarygate CLI: validate, simulate and inspect canary rollouts."""

from __future__ import annotations

import json
import time
from collections.abc import Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import click
import yaml  # type: ignore[import-untyped]
from prometheus_client import CollectorRegistry

from core.config.settings import ConfigError as SettingsConfigError
from core.config.settings import ControllerSettings, load_settings
from core.utils.logging import configure_logging
from core.utils.metrics import MetricsCollector
from delivery.controller import RolloutController
from delivery.documents import default_security_template, load_rollout_document
from delivery.errors import InvalidSpec, RolloutNotFound
from delivery.history import HistoryStore, InMemoryHistoryStore, SQLiteHistoryStore
from delivery.models import Phase, RolloutKey, RolloutSpec
from delivery.providers import ScriptedMetricProvider
from delivery.state_machine import describe_steps
from delivery.store import InMemoryRolloutStore, RolloutStore, SQLiteRolloutStore
from delivery.traffic import InMemoryTrafficMesh


class CLIError(click.ClickException):
    """Base class for typed CLI failures with deterministic exit codes."""

    exit_code = 1


class ConfigError(CLIError):
    exit_code = 2


class RolledBackError(CLIError):
    exit_code = 3


class SimulationError(CLIError):
    exit_code = 4


class NotFoundError(CLIError):
    exit_code = 5


@contextmanager
def step_logger(command: str, name: str) -> Iterator[None]:
    """Context manager emitting deterministic start/stop step logs."""

    click.echo(f"[{command}] ▶ {name}")
    start = time.perf_counter()
    try:
        yield
    except Exception:
        duration = time.perf_counter() - start
        click.echo(f"[{command}] ✖ {name} ({duration:.2f}s)", err=True)
        raise
    else:
        duration = time.perf_counter() - start
        click.echo(f"[{command}] ✓ {name} ({duration:.2f}s)")


class SimulatedClock:
    """Manually advanced clock shared by every simulated component."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def sleep(self, seconds: float) -> None:
        self._now += max(0.0, float(seconds))

    def advance_to(self, moment: float) -> None:
        self._now = max(self._now, float(moment))


def _settings(ctx: click.Context) -> ControllerSettings:
    return ctx.obj["settings"]


def _load_spec(document: Path, settings: ControllerSettings) -> RolloutSpec:
    template = default_security_template(settings.security_threshold)
    try:
        return load_rollout_document(document, defaults={template.name: template})
    except InvalidSpec as exc:
        raise ConfigError(str(exc)) from exc


def _load_script(path: Path | None) -> dict[str, list[float | None]]:
    if path is None:
        return {}
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"cannot parse metrics script {path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ConfigError(f"metrics script {path} must map metric names to values")
    script: dict[str, list[float | None]] = {}
    for metric, values in payload.items():
        entries = values if isinstance(values, list) else [values]
        try:
            script[str(metric)] = [None if value is None else float(value) for value in entries]
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"metric {metric!r}: values must be numbers or null") from exc
    return script


def _stores(
    settings: ControllerSettings, persist: bool
) -> tuple[RolloutStore, HistoryStore]:
    if not persist:
        return (
            InMemoryRolloutStore(history_limit=settings.analysis_history_limit),
            InMemoryHistoryStore(retention=settings.history_retention),
        )
    return (
        SQLiteRolloutStore(settings.rollouts_db, history_limit=settings.analysis_history_limit),
        SQLiteHistoryStore(settings.history_db, retention=settings.history_retention),
    )


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


@click.group()
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="YAML controller configuration file.",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding the SQLite rollout and history databases.",
)
@click.option("--log-level", default=None, help="Override the configured log level.")
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Path | None,
    state_dir: Path | None,
    log_level: str | None,
) -> None:
    """Security-gated canary rollout controller."""

    overrides: dict[str, Any] = {}
    if state_dir is not None:
        overrides["state_dir"] = state_dir
    if log_level is not None:
        overrides["log_level"] = log_level
    try:
        settings = load_settings(config_file, **overrides)
    except SettingsConfigError as exc:
        raise ConfigError(str(exc)) from exc
    configure_logging(settings.log_level, use_json=settings.log_json)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("document", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def validate(ctx: click.Context, document: Path) -> None:
    """Validate a rollout DOCUMENT without creating any state."""

    command = "validate"
    with step_logger(command, "parse document"):
        spec = _load_spec(document, _settings(ctx))
    click.echo(f"[{command}] stable={spec.stable.id} canary={spec.canary.id}")
    for index, rendered in enumerate(describe_steps(spec.steps)):
        click.echo(f"[{command}]   {index}: {rendered}")
    click.echo(f"[{command}] templates={','.join(sorted(spec.templates)) or '-'}")


@cli.command()
@click.argument("document", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--metrics",
    "metrics_script",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML mapping of metric name to the sequence of observed values.",
)
@click.option("--name", default="simulation", show_default=True, help="Rollout name.")
@click.option("--namespace", default="default", show_default=True, help="Rollout namespace.")
@click.option(
    "--propagation-delay",
    type=float,
    default=0.0,
    show_default=True,
    help="Seconds before a requested traffic split is reported as applied.",
)
@click.option(
    "--auto-promote/--no-auto-promote",
    default=True,
    show_default=True,
    help="Promote through pauses that wait for an operator.",
)
@click.option(
    "--persist/--no-persist",
    default=False,
    show_default=True,
    help="Record the simulated rollout in the state directory.",
)
@click.option("--max-iterations", type=int, default=1000, show_default=True)
@click.option("--emit-metrics", is_flag=True, help="Print Prometheus metrics after the run.")
@click.pass_context
def simulate(
    ctx: click.Context,
    document: Path,
    metrics_script: Path | None,
    name: str,
    namespace: str,
    propagation_delay: float,
    auto_promote: bool,
    persist: bool,
    max_iterations: int,
    emit_metrics: bool,
) -> None:
    """Run DOCUMENT to completion against scripted metrics and a simulated clock."""

    command = "simulate"
    settings = _settings(ctx)
    with step_logger(command, "parse document"):
        spec = _load_spec(document, settings)
        script = _load_script(metrics_script)

    clock = SimulatedClock()
    metrics = MetricsCollector(CollectorRegistry())
    store, history = _stores(settings, persist)
    controller = RolloutController(
        store,
        traffic=InMemoryTrafficMesh(propagation_delay=propagation_delay, time_source=clock.now),
        history=history,
        provider=ScriptedMetricProvider(script),
        policy=settings.policy,
        time_source=clock.now,
        sleep_fn=clock.sleep,
        max_workers=settings.max_workers,
        tick_interval=settings.tick_interval,
        metrics=metrics,
    )

    with step_logger(command, "submit rollout"):
        try:
            key = controller.submit(spec, name=name, namespace=namespace)
        except InvalidSpec as exc:
            raise ConfigError(str(exc)) from exc

    with step_logger(command, "reconcile"):
        for _ in range(max_iterations):
            snapshot = controller.reconcile(key)
            if snapshot is None:
                raise SimulationError("reconcile was dropped by a concurrent worker")
            if Phase(snapshot["phase"]).terminal:
                break
            status = store.load(key).status
            if auto_promote and status.phase is Phase.PAUSED and status.pause_until is None:
                click.echo(f"[{command}] • t={clock.now():g}s promoting step {status.step_index}")
                controller.promote_now(key)
                continue
            due = controller.pending_tick(key)
            clock.advance_to(due if due is not None else clock.now() + settings.tick_interval)
        else:
            raise SimulationError(f"rollout did not finish within {max_iterations} iterations")

    for run in reversed(controller.analysis_history(key)):
        click.echo(
            f"[{command}] • analysis {run.template} verdict={run.verdict.value} "
            f"ticks={run.ticks}" + (f" reason={run.reason}" if run.reason else "")
        )
    final = controller.status(key)
    _echo_json({"rollout": str(key), "simulatedSeconds": clock.now(), **final})
    if emit_metrics:
        click.echo(metrics.render_prometheus())
    if final["phase"] == Phase.ROLLED_BACK.value:
        raise RolledBackError(f"rollout {key} rolled back: {final['abortReason']}")


@cli.command()
@click.argument("rollout", required=False)
@click.pass_context
def status(ctx: click.Context, rollout: str | None) -> None:
    """Show the status of ROLLOUT (namespace/name), or of every rollout."""

    settings = _settings(ctx)
    store = SQLiteRolloutStore(settings.rollouts_db, history_limit=settings.analysis_history_limit)
    if rollout is None:
        _echo_json(
            [{"rollout": str(key), **store.load(key).status.snapshot()} for key in store.keys()]
        )
        return
    key = RolloutKey.parse(rollout)
    try:
        record = store.load(key)
    except RolloutNotFound as exc:
        raise NotFoundError(str(exc)) from exc
    _echo_json({"rollout": str(key), **record.status.snapshot(), "message": record.status.message})


@cli.command()
@click.option("--rollout", default=None, help="Also list analysis runs of this rollout.")
@click.option("--limit", type=int, default=10, show_default=True)
@click.pass_context
def history(ctx: click.Context, rollout: str | None, limit: int) -> None:
    """List stable revisions, rollback incidents and analysis runs."""

    settings = _settings(ctx)
    store = SQLiteHistoryStore(settings.history_db, retention=settings.history_retention)
    payload: dict[str, Any] = {
        "stableRevisions": [
            {"id": revision.id, "image": revision.image} for revision in store.list(limit)
        ],
        "incidents": [
            {
                "rollout": incident.rollout,
                "reason": incident.reason,
                "revision": incident.revision,
                "rollbackTarget": incident.rollback_target,
                "occurredAt": incident.occurred_at,
            }
            for incident in store.incidents(limit)
        ],
    }
    if rollout is not None:
        rollouts = SQLiteRolloutStore(
            settings.rollouts_db, history_limit=settings.analysis_history_limit
        )
        key = RolloutKey.parse(rollout)
        try:
            runs = rollouts.analysis_history(key, limit)
        except RolloutNotFound as exc:
            raise NotFoundError(str(exc)) from exc
        payload["analysisRuns"] = [
            {
                "template": run.template,
                "revision": run.revision,
                "verdict": run.verdict.value,
                "ticks": run.ticks,
                "reason": run.reason,
            }
            for run in runs
        ]
    _echo_json(payload)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
