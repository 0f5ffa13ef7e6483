# SPDX-License-Identifier: MIT
"""Error taxonomy of the delivery controller."""

from __future__ import annotations

import sqlite3
from typing import Sequence

__all__ = [
    "AnalysisFailed",
    "ConcurrencyViolation",
    "DeliveryError",
    "InvalidSpec",
    "ProviderUnavailable",
    "RolloutExists",
    "RolloutNotFound",
    "StoreBusy",
    "TrafficApplyFailed",
]


class DeliveryError(RuntimeError):
    """Base exception for delivery controller failures."""


class InvalidSpec(DeliveryError, ValueError):
    """Raised when a rollout specification is rejected; no state is created."""

    def __init__(self, problems: str | Sequence[str]) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("invalid rollout spec: " + "; ".join(self.problems))


class ProviderUnavailable(DeliveryError):
    """Raised by a metric provider on transport failures."""


class TrafficApplyFailed(DeliveryError):
    """Raised when the traffic manager cannot apply or confirm a split."""


class AnalysisFailed(DeliveryError):
    """A check's policy triggered; carried as a verdict rather than raised."""

    def __init__(self, check: str, reason: str) -> None:
        super().__init__(reason)
        self.check = check
        self.reason = reason


class ConcurrencyViolation(DeliveryError):
    """A reconciliation was attempted while the rollout lock was held."""


class RolloutNotFound(DeliveryError, KeyError):
    """Raised when a rollout identity is unknown to the store."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "rollout not found"


class RolloutExists(DeliveryError):
    """Raised when submitting a rollout whose identity is already taken."""


class StoreBusy(sqlite3.OperationalError):
    """Transient SQLite lock contention, retried by the SQLite-backed stores."""
