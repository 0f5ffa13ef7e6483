# SPDX-License-Identifier: MIT
"""Shared utilities for canarygate."""

from .logging import (
    JSONFormatter,
    StructuredLogger,
    configure_logging,
    correlation_context,
    get_logger,
)
from .metrics import (
    MetricsCollector,
    get_metrics_collector,
)

__all__ = [
    "JSONFormatter",
    "StructuredLogger",
    "configure_logging",
    "correlation_context",
    "get_logger",
    "MetricsCollector",
    "get_metrics_collector",
]
