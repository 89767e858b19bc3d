"""Tests for the structured logging system (procurement_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO

import pytest

from procurement_kernel.domain.lifecycle import RequestStatus
from procurement_kernel.exceptions import OutOfOrderDecisionError
from procurement_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "procurement_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info(
            "request_closed",
            extra={"total_received": 15, "status": RequestStatus.CLOSED, "value": Decimal("12.50")},
        )

        record = _parse_log(stream)
        assert record["total_received"] == 15
        assert record["status"] == "CLOSED"
        assert record["value"] == "12.50"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="abc-123", request_code="AT-000001")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["request_code"] == "AT-000001"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger("test").error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_kernel_exception_fields_extracted(self):
        """Kernel exceptions carry a .code and structured attributes."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise OutOfOrderDecisionError("AT-000001", 5, 2, 1)
        except OutOfOrderDecisionError:
            get_logger("test").error("decision_failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "OUT_OF_ORDER_DECISION"
        assert record["exc_type"] == "OutOfOrderDecisionError"
        assert record["exc_request_code"] == "AT-000001"
        assert record["exc_blocking_level"] == 1

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "actor_id" not in record

    def test_debug_filtered_at_default_level(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        assert [r["message"] for r in logs] == ["first", "second"]
        for record in logs:
            assert {"ts", "level", "logger", "message"} <= record.keys()


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Tests for context propagation."""

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", actor_id="4")
        assert LogContext.get_all() == {"correlation_id": "x", "actor_id": "4"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner"):
            assert LogContext.get_all()["correlation_id"] == "inner"
        assert LogContext.get_all()["correlation_id"] == "outer"

    def test_bind_restores_none(self):
        assert "request_code" not in LogContext.get_all()
        with LogContext.bind(request_code="AT-000001", actor_id=4):
            assert LogContext.get_all() == {"request_code": "AT-000001", "actor_id": "4"}
        assert LogContext.get_all() == {}

    def test_nested_bind_only_resets_its_own_keys(self):
        with LogContext.bind(operation="receive"):
            with LogContext.bind(request_code="AT-000001"):
                assert LogContext.get_all()["operation"] == "receive"
            assert LogContext.get_all() == {"operation": "receive"}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="unknown log context field"):
            LogContext.set(tenant="acme")

    def test_bind_restores_after_exception(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(operation="decide"):
                raise RuntimeError("boom")
        assert LogContext.get_all() == {}


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Tests for initialization."""

    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)
        assert len(logging.getLogger("procurement_kernel").handlers) == 1

    def test_get_logger_returns_child(self):
        assert get_logger("services.approval_engine").name == "procurement_kernel.services.approval_engine"

    def test_logger_hierarchy(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("deep.nested.module").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "procurement_kernel.deep.nested.module"

    def test_reset_restores_propagation(self):
        handler, _ = _make_handler()
        configure_logging(handler=handler)
        assert logging.getLogger("procurement_kernel").propagate is False

        reset_logging()

        kernel_logger = logging.getLogger("procurement_kernel")
        assert kernel_logger.propagate is True
        assert kernel_logger.handlers == []
