# SPDX-License-Identifier: MIT
"""Structured JSON logging for the delivery controller.

Every reconciliation runs inside a correlation context so the log lines emitted
by the state machine, the analysis engine and the adapters of one rollout tick
can be stitched together downstream.
"""
from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Mapping, Optional
from uuid import uuid4


_CORRELATION_ID_VAR: ContextVar[Optional[str]] = ContextVar(
    "canarygate_correlation_id", default=None
)


def generate_correlation_id() -> str:
    """Generate a new correlation identifier."""

    return uuid4().hex


def get_correlation_id() -> Optional[str]:
    """Return the currently active correlation identifier, if any."""

    return _CORRELATION_ID_VAR.get()


@contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind ``correlation_id`` (or a fresh one) for the duration of the block."""

    resolved = correlation_id or generate_correlation_id()
    token = _CORRELATION_ID_VAR.set(resolved)
    try:
        yield resolved
    finally:
        _CORRELATION_ID_VAR.reset(token)


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "correlation_id"):
            log_data["correlation_id"] = record.correlation_id

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """Wrapper around :mod:`logging` carrying bound structured fields."""

    def __init__(
        self,
        name: str,
        correlation_id: Optional[str] = None,
        *,
        fields: Mapping[str, Any] | None = None,
    ) -> None:
        self.logger = logging.getLogger(name)
        self._correlation_id = correlation_id
        self._fields: Dict[str, Any] = dict(fields or {})

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Return a child logger that always emits ``fields``."""

        merged = {**self._fields, **fields}
        return StructuredLogger(
            self.logger.name, self._correlation_id, fields=merged
        )

    def _resolve_correlation_id(self, explicit: Optional[str] = None) -> str:
        if explicit:
            return explicit

        current = get_correlation_id()
        if current:
            return current

        if self._correlation_id is None:
            self._correlation_id = generate_correlation_id()
        return self._correlation_id

    def _log(self, level: int, msg: str, **kwargs: Any) -> None:
        correlation_id = kwargs.pop("correlation_id", None)
        exc_info = kwargs.pop("exc_info", None)
        resolved_id = self._resolve_correlation_id(correlation_id)
        extra_data: Dict[str, Any] = {"correlation_id": resolved_id}
        payload = {**self._fields, **kwargs}
        if payload:
            extra_data["extra_fields"] = payload
        self.logger.log(level, msg, extra=extra_data, exc_info=exc_info)

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, **kwargs)

    def critical(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.CRITICAL, msg, **kwargs)

    @contextmanager
    def operation(
        self, operation_name: str, *, correlation_id: Optional[str] = None, **context: Any
    ) -> Iterator[Dict[str, Any]]:
        """Track timing and outcome of ``operation_name``.

        The yielded dictionary can be enriched by the caller; its content is
        attached to the completion (or failure) record.

        Example:
            >>> logger = get_logger("canarygate")
            >>> with logger.operation("reconcile", rollout="gw/zuul") as op:
            ...     op["phase"] = "Progressing"
        """
        start_time = time.perf_counter()
        resolved_id = self._resolve_correlation_id(correlation_id)
        op_context: Dict[str, Any] = {"operation": operation_name, **context}

        with correlation_context(resolved_id):
            self.debug(f"Starting operation: {operation_name}", **op_context)
            try:
                yield op_context
            except Exception as exc:
                op_context.setdefault("status", "failure")
                self.error(
                    f"Failed operation: {operation_name}",
                    **op_context,
                    duration_seconds=time.perf_counter() - start_time,
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                )
                raise
            op_context.setdefault("status", "success")
            self.debug(
                f"Completed operation: {operation_name}",
                **op_context,
                duration_seconds=time.perf_counter() - start_time,
            )


def configure_logging(
    level: str = "INFO",
    use_json: bool = True,
    stream: Any = None,
) -> None:
    """Configure the root logger.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        use_json: Emit JSON documents instead of the plain text layout.
        stream: Output stream, defaults to ``sys.stderr``.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    root_logger.addHandler(handler)


def get_logger(name: str, correlation_id: Optional[str] = None) -> StructuredLogger:
    """Return a :class:`StructuredLogger` for ``name``."""

    return StructuredLogger(name, correlation_id)


__all__ = [
    "JSONFormatter",
    "StructuredLogger",
    "configure_logging",
    "correlation_context",
    "generate_correlation_id",
    "get_correlation_id",
    "get_logger",
]
