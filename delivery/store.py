# SPDX-License-Identifier: MIT
"""Persistence of rollout records and their analysis history.

The controller loads a :class:`~delivery.models.RolloutRecord`, reconciles it
and writes the status back; specs are immutable once created. Finished
analysis runs are appended to a per-rollout log capped at ``history_limit``
entries.
"""

from __future__ import annotations

import copy
import logging
import sqlite3
import threading
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Dict, Protocol, TypeVar

from libs.retry import RetryPolicy, run_with_retry

from .errors import RolloutExists, RolloutNotFound, StoreBusy
from .models import (
    RUN_ADAPTER,
    SPEC_ADAPTER,
    STATUS_ADAPTER,
    AnalysisRun,
    RolloutKey,
    RolloutRecord,
    RolloutSpec,
    RolloutStatus,
)

__all__ = [
    "InMemoryRolloutStore",
    "RolloutStore",
    "SQLiteRolloutStore",
    "StoreBusy",
]

T = TypeVar("T")


class RolloutStore(Protocol):
    def create(self, key: RolloutKey, spec: RolloutSpec, status: RolloutStatus) -> RolloutRecord:
        """Persist a new rollout; raise :class:`RolloutExists` if ``key`` is taken."""

    def load(self, key: RolloutKey) -> RolloutRecord:
        """Return the record for ``key``; raise :class:`RolloutNotFound` otherwise."""

    def save_status(self, key: RolloutKey, status: RolloutStatus) -> None:
        """Replace the persisted status of ``key``."""

    def keys(self) -> list[RolloutKey]:
        """Return all known rollout identities, sorted."""

    def append_analysis(self, key: RolloutKey, run: AnalysisRun) -> None:
        """Append a finished analysis run to the rollout's log."""

    def analysis_history(self, key: RolloutKey, limit: int | None = None) -> list[AnalysisRun]:
        """Return finished analysis runs, most recent first."""


class InMemoryRolloutStore:
    """Process-local store; records are copied in and out to avoid aliasing."""

    def __init__(self, *, history_limit: int = 25) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self._history_limit = history_limit
        self._records: Dict[RolloutKey, RolloutRecord] = {}
        self._runs: Dict[RolloutKey, Deque[AnalysisRun]] = {}
        self._lock = threading.Lock()

    def create(self, key: RolloutKey, spec: RolloutSpec, status: RolloutStatus) -> RolloutRecord:
        with self._lock:
            if key in self._records:
                raise RolloutExists(f"rollout {key} already exists")
            self._records[key] = RolloutRecord(key, spec, status.clone())
            self._runs[key] = deque(maxlen=self._history_limit)
        return RolloutRecord(key, spec, status.clone())

    def load(self, key: RolloutKey) -> RolloutRecord:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                raise RolloutNotFound(f"rollout {key} not found")
            return RolloutRecord(key, record.spec, record.status.clone())

    def save_status(self, key: RolloutKey, status: RolloutStatus) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                raise RolloutNotFound(f"rollout {key} not found")
            record.status = status.clone()

    def keys(self) -> list[RolloutKey]:
        with self._lock:
            return sorted(self._records)

    def append_analysis(self, key: RolloutKey, run: AnalysisRun) -> None:
        with self._lock:
            runs = self._runs.get(key)
            if runs is None:
                raise RolloutNotFound(f"rollout {key} not found")
            runs.appendleft(copy.deepcopy(run))

    def analysis_history(self, key: RolloutKey, limit: int | None = None) -> list[AnalysisRun]:
        with self._lock:
            runs = self._runs.get(key)
            if runs is None:
                raise RolloutNotFound(f"rollout {key} not found")
            items = list(runs)
        return items if limit is None else items[: max(0, limit)]


class SQLiteRolloutStore:
    """SQLite-backed store so rollouts survive controller restarts."""

    def __init__(
        self,
        path: str | Path,
        *,
        history_limit: int = 25,
        timeout: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        sleep_fn: Callable[[float], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._path = Path(path)
        self._history_limit = int(history_limit)
        self._timeout = float(timeout)
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep_fn
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._initialise()

    @property
    def path(self) -> Path:
        return self._path

    def _initialise(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self._path, timeout=self._timeout) as connection:
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS rollouts (
                    namespace TEXT NOT NULL,
                    name TEXT NOT NULL,
                    spec_json TEXT NOT NULL,
                    status_json TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (namespace, name)
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS analysis_runs (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    namespace TEXT NOT NULL,
                    name TEXT NOT NULL,
                    template TEXT NOT NULL,
                    verdict TEXT NOT NULL,
                    run_json TEXT NOT NULL
                )
                """
            )
            connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_analysis_runs_rollout "
                "ON analysis_runs (namespace, name, seq)"
            )

    def _execute(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        def attempt() -> T:
            try:
                with self._lock:
                    with sqlite3.connect(self._path, timeout=self._timeout) as connection:
                        return operation(connection)
            except sqlite3.OperationalError as exc:
                message = str(exc).lower()
                if "locked" in message or "busy" in message:
                    raise StoreBusy(str(exc)) from exc
                raise

        return run_with_retry(
            self._retry_policy,
            self._logger,
            attempt,
            retry_on=(StoreBusy,),
            sleep=self._sleep,
        )

    def create(self, key: RolloutKey, spec: RolloutSpec, status: RolloutStatus) -> RolloutRecord:
        spec_json = SPEC_ADAPTER.dump_json(spec).decode("utf8")
        status_json = STATUS_ADAPTER.dump_json(status).decode("utf8")

        def _create(connection: sqlite3.Connection) -> None:
            try:
                connection.execute(
                    "INSERT INTO rollouts (namespace, name, spec_json, status_json, phase) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (key.namespace, key.name, spec_json, status_json, status.phase.value),
                )
            except sqlite3.IntegrityError as exc:
                raise RolloutExists(f"rollout {key} already exists") from exc

        self._execute(_create)
        return RolloutRecord(key, spec, status.clone())

    def load(self, key: RolloutKey) -> RolloutRecord:
        def _load(connection: sqlite3.Connection) -> tuple[str, str] | None:
            return connection.execute(
                "SELECT spec_json, status_json FROM rollouts WHERE namespace = ? AND name = ?",
                (key.namespace, key.name),
            ).fetchone()

        row = self._execute(_load)
        if row is None:
            raise RolloutNotFound(f"rollout {key} not found")
        spec_json, status_json = row
        return RolloutRecord(
            key,
            SPEC_ADAPTER.validate_json(spec_json),
            STATUS_ADAPTER.validate_json(status_json),
        )

    def save_status(self, key: RolloutKey, status: RolloutStatus) -> None:
        status_json = STATUS_ADAPTER.dump_json(status).decode("utf8")

        def _save(connection: sqlite3.Connection) -> int:
            cursor = connection.execute(
                "UPDATE rollouts SET status_json = ?, phase = ?, updated_at = CURRENT_TIMESTAMP "
                "WHERE namespace = ? AND name = ?",
                (status_json, status.phase.value, key.namespace, key.name),
            )
            return cursor.rowcount

        if self._execute(_save) == 0:
            raise RolloutNotFound(f"rollout {key} not found")

    def keys(self) -> list[RolloutKey]:
        def _keys(connection: sqlite3.Connection) -> list[tuple[str, str]]:
            return connection.execute(
                "SELECT namespace, name FROM rollouts ORDER BY namespace, name"
            ).fetchall()

        return [RolloutKey(namespace, name) for namespace, name in self._execute(_keys)]

    def append_analysis(self, key: RolloutKey, run: AnalysisRun) -> None:
        run_json = RUN_ADAPTER.dump_json(run).decode("utf8")

        def _append(connection: sqlite3.Connection) -> None:
            exists = connection.execute(
                "SELECT 1 FROM rollouts WHERE namespace = ? AND name = ?",
                (key.namespace, key.name),
            ).fetchone()
            if exists is None:
                raise RolloutNotFound(f"rollout {key} not found")
            connection.execute(
                "INSERT INTO analysis_runs (namespace, name, template, verdict, run_json) "
                "VALUES (?, ?, ?, ?, ?)",
                (key.namespace, key.name, run.template, run.verdict.value, run_json),
            )
            connection.execute(
                """
                DELETE FROM analysis_runs
                WHERE namespace = ? AND name = ? AND seq NOT IN (
                    SELECT seq FROM analysis_runs WHERE namespace = ? AND name = ?
                    ORDER BY seq DESC LIMIT ?
                )
                """,
                (key.namespace, key.name, key.namespace, key.name, self._history_limit),
            )

        self._execute(_append)

    def analysis_history(self, key: RolloutKey, limit: int | None = None) -> list[AnalysisRun]:
        bound = self._history_limit if limit is None else max(0, int(limit))

        def _history(connection: sqlite3.Connection) -> tuple[bool, list[tuple[str]]]:
            exists = connection.execute(
                "SELECT 1 FROM rollouts WHERE namespace = ? AND name = ?",
                (key.namespace, key.name),
            ).fetchone()
            rows = connection.execute(
                "SELECT run_json FROM analysis_runs WHERE namespace = ? AND name = ? "
                "ORDER BY seq DESC LIMIT ?",
                (key.namespace, key.name, bound),
            ).fetchall()
            return exists is not None, rows

        exists, rows = self._execute(_history)
        if not exists:
            raise RolloutNotFound(f"rollout {key} not found")
        return [RUN_ADAPTER.validate_json(run_json) for (run_json,) in rows]
