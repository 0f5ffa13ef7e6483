# SPDX-License-Identifier: MIT
"""Traffic managers splitting requests between stable and canary revisions.

Implementations keep the complementary share pinned to the stable revision so
``stable + canary == 100`` holds for every reported split. ``set_weights`` is
eventually consistent: ``current_weights`` may keep reporting the previous
split until the mesh configuration propagates.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Protocol

from .errors import TrafficApplyFailed
from .models import RolloutKey

__all__ = [
    "InMemoryTrafficManager",
    "InMemoryTrafficMesh",
    "TrafficManager",
    "validate_weights",
]


class TrafficManager(Protocol):
    """Routing primitive for one rollout's stable/canary split."""

    def set_weights(self, stable: int, canary: int) -> None:
        """Request the split; raise on transport failure."""

    def current_weights(self) -> tuple[int, int]:
        """Return the split currently applied by the data plane."""


def validate_weights(stable: int, canary: int) -> None:
    if not (0 <= stable <= 100 and 0 <= canary <= 100):
        raise ValueError("weights must be within [0, 100]")
    if stable + canary != 100:
        raise ValueError(f"weights must sum to 100, got {stable}+{canary}")


class InMemoryTrafficManager:
    """Thread-safe in-process traffic split with simulated propagation delay.

    ``fail_next`` injects transport failures for the next N ``set_weights``
    calls. Every split reported by :meth:`current_weights` is appended to
    ``observed``.
    """

    def __init__(
        self,
        *,
        propagation_delay: float = 0.0,
        time_source: Callable[[], float] = time.monotonic,
        initial: tuple[int, int] = (100, 0),
    ) -> None:
        validate_weights(*initial)
        self._delay = max(0.0, float(propagation_delay))
        self._time = time_source
        self._applied = initial
        self._pending: tuple[int, int] | None = None
        self._effective_at = 0.0
        self._lock = threading.Lock()
        self.fail_next = 0
        self.requests: list[tuple[int, int]] = []
        self.observed: list[tuple[int, int]] = []

    def set_weights(self, stable: int, canary: int) -> None:
        validate_weights(stable, canary)
        with self._lock:
            if self.fail_next > 0:
                self.fail_next -= 1
                raise TrafficApplyFailed("mesh rejected the route update")
            self.requests.append((stable, canary))
            self._pending = (stable, canary)
            self._effective_at = self._time() + self._delay
            self._propagate()

    def current_weights(self) -> tuple[int, int]:
        with self._lock:
            self._propagate()
            self.observed.append(self._applied)
            return self._applied

    def _propagate(self) -> None:
        if self._pending is not None and self._time() >= self._effective_at:
            self._applied = self._pending
            self._pending = None


class InMemoryTrafficMesh:
    """Registry handing out one :class:`InMemoryTrafficManager` per rollout."""

    def __init__(
        self,
        *,
        propagation_delay: float = 0.0,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self._delay = propagation_delay
        self._time = time_source
        self._routes: dict[RolloutKey, InMemoryTrafficManager] = {}
        self._lock = threading.Lock()

    def __call__(self, key: RolloutKey) -> InMemoryTrafficManager:
        return self.route(key)

    def route(self, key: RolloutKey) -> InMemoryTrafficManager:
        with self._lock:
            manager = self._routes.get(key)
            if manager is None:
                manager = InMemoryTrafficManager(
                    propagation_delay=self._delay, time_source=self._time
                )
                self._routes[key] = manager
            return manager

    def observed(self) -> list[tuple[int, int]]:
        with self._lock:
            managers = list(self._routes.values())
        return [split for manager in managers for split in list(manager.observed)]
