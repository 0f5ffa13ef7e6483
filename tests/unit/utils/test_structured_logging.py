# SPDX-License-Identifier: MIT
"""Tests for the structured logging utilities."""
from __future__ import annotations

import io
import json
import logging

import pytest

from core.utils.logging import (
    JSONFormatter,
    StructuredLogger,
    configure_logging,
    correlation_context,
    get_correlation_id,
)


def _make_record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="canarygate.tests",
        level=logging.ERROR,
        pathname=__file__,
        lineno=42,
        msg="restore failed",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extras_and_exception() -> None:
    formatter = JSONFormatter()

    try:
        raise ValueError("boom")
    except ValueError as exc:
        record = _make_record(
            correlation_id="cid-123",
            extra_fields={"rollout": "gateway/zuul"},
            exc_info=(ValueError, exc, exc.__traceback__),
        )

    payload = json.loads(formatter.format(record))

    assert payload["level"] == "ERROR"
    assert payload["correlation_id"] == "cid-123"
    assert payload["rollout"] == "gateway/zuul"
    assert "ValueError: boom" in payload["exception"]


def test_bound_fields_are_attached_to_every_record(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    logger = StructuredLogger("canarygate.machine", correlation_id="cid-bound").bind(rollout="gateway/zuul")

    logger.info("Rollout transition", phase="Paused")

    record = caplog.records[-1]
    assert record.correlation_id == "cid-bound"
    assert record.extra_fields == {"rollout": "gateway/zuul", "phase": "Paused"}


def test_correlation_context_overrides_logger_default(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    logger = StructuredLogger("canarygate.ctx", correlation_id="cid-default")

    with correlation_context("cid-scoped") as resolved:
        assert get_correlation_id() == "cid-scoped"
        logger.info("inside")
    logger.info("outside")

    assert resolved == "cid-scoped"
    assert get_correlation_id() is None
    assert [record.correlation_id for record in caplog.records[-2:]] == ["cid-scoped", "cid-default"]


def test_structured_logger_operation_success_emits_context(
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.DEBUG)

    logger = StructuredLogger("canarygate.ops", correlation_id="cid-success")
    with logger.operation("reconcile", rollout="gateway/zuul") as ctx:
        ctx["phase"] = "Analyzing"

    start_record, end_record = caplog.records[-2:]

    assert start_record.message == "Starting operation: reconcile"
    assert start_record.correlation_id == "cid-success"
    assert start_record.extra_fields["operation"] == "reconcile"

    assert end_record.message == "Completed operation: reconcile"
    assert end_record.extra_fields["status"] == "success"
    assert end_record.extra_fields["phase"] == "Analyzing"
    assert end_record.extra_fields["rollout"] == "gateway/zuul"
    assert "duration_seconds" in end_record.extra_fields


def test_structured_logger_operation_failure_logs_error(
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.DEBUG)

    logger = StructuredLogger("canarygate.ops", correlation_id="cid-failure")

    with pytest.raises(RuntimeError):
        with logger.operation("restore", rollout="gateway/zuul"):
            raise RuntimeError("mesh unreachable")

    error_record = caplog.records[-1]
    assert error_record.levelno == logging.ERROR
    assert error_record.message == "Failed operation: restore"
    assert error_record.correlation_id == "cid-failure"
    assert error_record.extra_fields["status"] == "failure"
    assert error_record.extra_fields["error_type"] == "RuntimeError"
    assert error_record.extra_fields["error_message"] == "mesh unreachable"


def test_configure_logging_emits_json_payload() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    stream = io.StringIO()
    try:
        configure_logging(level="DEBUG", use_json=True, stream=stream)
        logging.getLogger("canarygate.tests").info("hello world")
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)

    payload = json.loads(stream.getvalue().strip())

    assert payload["level"] == "INFO"
    assert payload["logger"] == "canarygate.tests"
    assert payload["message"] == "hello world"
    assert "timestamp" in payload
