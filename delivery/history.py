# SPDX-License-Identifier: MIT
"""Versioned record of stable revisions used as rollback targets.

Stores keep revisions most-recent-first, capped at a retention count, and an
incident log of aborted rollouts. A single store may be shared by several
rollouts of the same service, so every implementation serialises access
internally.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Deque, Protocol, TypeVar

from libs.retry import RetryPolicy, run_with_retry

from .errors import StoreBusy
from .models import Revision

__all__ = [
    "HistoryStore",
    "InMemoryHistoryStore",
    "Incident",
    "SQLiteHistoryStore",
]

T = TypeVar("T")


@dataclass(frozen=True)
class Incident:
    """An aborted rollout and the revision traffic was restored to."""

    rollout: str
    reason: str
    revision: str
    rollback_target: str
    occurred_at: float


class HistoryStore(Protocol):
    def push_stable(self, revision: Revision) -> None:
        """Record ``revision`` as the newest stable revision."""

    def latest_stable(self) -> Revision | None:
        """Return the newest stable revision, if any."""

    def list(self, limit: int | None = None) -> list[Revision]:
        """Return stable revisions, most recent first."""

    def record_incident(self, incident: Incident) -> None:
        """Append an abort incident."""

    def incidents(self, limit: int | None = None) -> list[Incident]:
        """Return incidents, most recent first."""


class InMemoryHistoryStore:
    """Process-local history store."""

    def __init__(self, *, retention: int = 20) -> None:
        if retention < 1:
            raise ValueError("retention must be at least 1")
        self._revisions: Deque[Revision] = deque(maxlen=retention)
        self._incidents: Deque[Incident] = deque(maxlen=retention)
        self._lock = threading.Lock()

    def push_stable(self, revision: Revision) -> None:
        with self._lock:
            if self._revisions and self._revisions[0].id == revision.id:
                return
            self._revisions.appendleft(revision)

    def latest_stable(self) -> Revision | None:
        with self._lock:
            return self._revisions[0] if self._revisions else None

    def list(self, limit: int | None = None) -> list[Revision]:
        with self._lock:
            items = list(self._revisions)
        return items if limit is None else items[: max(0, limit)]

    def record_incident(self, incident: Incident) -> None:
        with self._lock:
            self._incidents.appendleft(incident)

    def incidents(self, limit: int | None = None) -> list[Incident]:
        with self._lock:
            items = list(self._incidents)
        return items if limit is None else items[: max(0, limit)]


class SQLiteHistoryStore:
    """SQLite-backed history store persisting rollback targets across restarts."""

    def __init__(
        self,
        path: str | Path,
        *,
        retention: int = 20,
        timeout: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        sleep_fn: Callable[[float], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if retention < 1:
            raise ValueError("retention must be at least 1")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._path = Path(path)
        self._retention = int(retention)
        self._timeout = float(timeout)
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep_fn
        self._logger = logger or logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._initialise()

    def _initialise(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self._path, timeout=self._timeout) as connection:
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS stable_revisions (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    revision_id TEXT NOT NULL,
                    image TEXT NOT NULL DEFAULT '',
                    created_at TEXT,
                    pushed_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS incidents (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    rollout TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    revision_id TEXT NOT NULL,
                    rollback_target TEXT NOT NULL,
                    occurred_at REAL NOT NULL
                )
                """
            )

    def _with_retry(self, operation: Callable[[sqlite3.Connection], T]) -> T:
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

    def push_stable(self, revision: Revision) -> None:

        def _push(connection: sqlite3.Connection) -> None:
            head = connection.execute(
                "SELECT revision_id FROM stable_revisions ORDER BY seq DESC LIMIT 1"
            ).fetchone()
            if head is not None and head[0] == revision.id:
                return
            connection.execute(
                "INSERT INTO stable_revisions (revision_id, image, created_at) VALUES (?, ?, ?)",
                (
                    revision.id,
                    revision.image,
                    revision.created_at.isoformat() if revision.created_at else None,
                ),
            )
            connection.execute(
                """
                DELETE FROM stable_revisions WHERE seq NOT IN (
                    SELECT seq FROM stable_revisions ORDER BY seq DESC LIMIT ?
                )
                """,
                (self._retention,),
            )

        self._with_retry(_push)

    def latest_stable(self) -> Revision | None:
        revisions = self.list(1)
        return revisions[0] if revisions else None

    def list(self, limit: int | None = None) -> list[Revision]:
        bound = self._retention if limit is None else max(0, int(limit))

        def _list(connection: sqlite3.Connection) -> list[tuple[str, str, str | None]]:
            cursor = connection.execute(
                "SELECT revision_id, image, created_at FROM stable_revisions "
                "ORDER BY seq DESC LIMIT ?",
                (bound,),
            )
            return cursor.fetchall()

        return [
            Revision(
                id=revision_id,
                image=image,
                created_at=datetime.fromisoformat(created_at) if created_at else None,
            )
            for revision_id, image, created_at in self._with_retry(_list)
        ]

    def record_incident(self, incident: Incident) -> None:

        def _record(connection: sqlite3.Connection) -> None:
            connection.execute(
                "INSERT INTO incidents (rollout, reason, revision_id, rollback_target, occurred_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    incident.rollout,
                    incident.reason,
                    incident.revision,
                    incident.rollback_target,
                    incident.occurred_at,
                ),
            )
            connection.execute(
                """
                DELETE FROM incidents WHERE seq NOT IN (
                    SELECT seq FROM incidents ORDER BY seq DESC LIMIT ?
                )
                """,
                (self._retention,),
            )

        self._with_retry(_record)

    def incidents(self, limit: int | None = None) -> list[Incident]:
        bound = self._retention if limit is None else max(0, int(limit))

        def _load(connection: sqlite3.Connection) -> list[tuple[str, str, str, str, float]]:
            cursor = connection.execute(
                "SELECT rollout, reason, revision_id, rollback_target, occurred_at "
                "FROM incidents ORDER BY seq DESC LIMIT ?",
                (bound,),
            )
            return cursor.fetchall()

        return [Incident(*row) for row in self._with_retry(_load)]
