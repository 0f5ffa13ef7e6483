# SPDX-License-Identifier: MIT
"""Metric providers feeding the analysis engine.

A provider answers one question: what was the value of ``metric`` for
``revision_id`` over ``[window_start, window_end]``. Transport problems are
reported as :class:`~delivery.errors.ProviderUnavailable`; an empty answer is a
reading with ``has_data=False``. Neither is a threshold failure.
"""

from __future__ import annotations

import math
import threading
from collections import defaultdict
from typing import Any, Iterable, Mapping, NamedTuple, Protocol, Sequence, Union

import httpx

from core.utils.logging import get_logger

from .errors import ProviderUnavailable

__all__ = [
    "MetricProvider",
    "MetricReading",
    "PrometheusMetricProvider",
    "ScriptedMetricProvider",
    "StaticMetricProvider",
]

_logger = get_logger(__name__)


class MetricReading(NamedTuple):
    value: float
    has_data: bool

    @classmethod
    def missing(cls) -> "MetricReading":
        return cls(math.nan, False)


class MetricProvider(Protocol):
    """Pull named numeric signals for a workload revision."""

    def query(
        self,
        revision_id: str,
        metric: str,
        window_start: float,
        window_end: float,
    ) -> MetricReading:
        """Return the aggregated value of ``metric`` over the window."""


class StaticMetricProvider:
    """Return a fixed value per metric regardless of revision or window."""

    def __init__(self, values: Mapping[str, float]) -> None:
        self._values = dict(values)
        self._lock = threading.Lock()

    def set(self, metric: str, value: float) -> None:
        with self._lock:
            self._values[metric] = float(value)

    def query(
        self, revision_id: str, metric: str, window_start: float, window_end: float
    ) -> MetricReading:
        with self._lock:
            if metric not in self._values:
                return MetricReading.missing()
            return MetricReading(float(self._values[metric]), True)


ScriptEntry = Union[float, int, None, BaseException]


class ScriptedMetricProvider:
    """Replay a per-metric sequence of observations.

    Each query consumes the next entry for the metric: a number is a reading,
    ``None`` is a tick without data, and an exception instance is raised. The
    last entry repeats once the script is exhausted.
    """

    def __init__(self, script: Mapping[str, Sequence[ScriptEntry]]) -> None:
        self._script = {metric: list(entries) for metric, entries in script.items()}
        self._cursor: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()
        self.queries: list[tuple[str, str, float, float]] = []

    def query(
        self, revision_id: str, metric: str, window_start: float, window_end: float
    ) -> MetricReading:
        with self._lock:
            self.queries.append((revision_id, metric, window_start, window_end))
            entries = self._script.get(metric)
            if not entries:
                return MetricReading.missing()
            index = min(self._cursor[metric], len(entries) - 1)
            self._cursor[metric] += 1
            entry = entries[index]
        if isinstance(entry, BaseException):
            raise entry
        if entry is None:
            return MetricReading.missing()
        return MetricReading(float(entry), True)


class PrometheusMetricProvider:
    """Evaluate PromQL instant queries through the Prometheus HTTP API.

    ``queries`` maps metric names to PromQL templates; ``{revision}`` and
    ``{window}`` (a duration such as ``30s``) are substituted before the query
    is sent.
    """

    def __init__(
        self,
        base_url: str,
        queries: Mapping[str, str],
        *,
        client: httpx.Client | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._queries = dict(queries)
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._owns_client = client is None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "PrometheusMetricProvider":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def query(
        self, revision_id: str, metric: str, window_start: float, window_end: float
    ) -> MetricReading:
        template = self._queries.get(metric)
        if template is None:
            _logger.warning("No PromQL configured for metric", metric=metric)
            return MetricReading.missing()
        window = f"{max(1, int(round(window_end - window_start)))}s"
        promql = template.replace("{revision}", revision_id).replace("{window}", window)
        try:
            response = self._client.get(
                "/api/v1/query", params={"query": promql, "time": window_end}
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderUnavailable(f"prometheus query for {metric!r} failed: {exc}") from exc

        if payload.get("status") != "success":
            raise ProviderUnavailable(
                f"prometheus returned {payload.get('status')!r} for {metric!r}: "
                f"{payload.get('error', 'unknown error')}"
            )
        data = payload.get("data") or {}
        result = data.get("result") or []
        if data.get("resultType") == "scalar":
            result = [{"value": result}]
        return _first_value(result)


def _first_value(result: Iterable[Mapping[str, Any]]) -> MetricReading:
    for series in result:
        value = series.get("value")
        if not value or len(value) != 2:
            continue
        try:
            number = float(value[1])
        except (TypeError, ValueError):
            continue
        if math.isnan(number):
            continue
        return MetricReading(number, True)
    return MetricReading.missing()
