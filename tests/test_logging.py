"""Tests for the structured logging system (billing_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from billing_kernel.logging_config import (
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
    """Parse all JSON log lines from a stream."""
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
        logger = get_logger("test")
        logger.info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "billing_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("invoice_issued", extra={"line_count": 3, "status": "issued"})

        record = _parse_log(stream)
        assert record["line_count"] == 3
        assert record["status"] == "issued"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        LogContext.set(correlation_id="abc-123", invoice_id="inv-456")
        logger.info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["invoice_id"] == "inv-456"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_billing_exception_code_extracted(self):
        """Billing kernel exceptions carry .code and structured attributes."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        from billing_kernel.exceptions import OverpaymentRejectedError

        try:
            raise OverpaymentRejectedError(Decimal("60.01"), Decimal("60.00"), "USD")
        except OverpaymentRejectedError:
            logger.error("payment_error", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "OVERPAYMENT_REJECTED"
        assert record["exc_type"] == "OverpaymentRejectedError"
        assert record["exc_amount"] == "60.01"
        assert record["exc_pending_balance"] == "60.00"
        assert record["exc_currency"] == "USD"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("bare_message")

        record = _parse_log(stream)
        assert "correlation_id" not in record
        assert "invoice_id" not in record

    def test_uuid_and_decimal_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        uid = uuid4()
        logger.info("with_uuid", extra={"payment_id": uid, "amount": Decimal("31.32")})

        record = _parse_log(stream)
        assert record["payment_id"] == str(uid)
        assert record["amount"] == "31.32"

    def test_valid_json_every_line(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        # default level is INFO, so the debug line is dropped
        assert len(logs) == 2
        for record in logs:
            assert "ts" in record
            assert "level" in record
            assert "logger" in record
            assert "message" in record


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    """Tests for context propagation."""

    def test_set_and_get(self):
        LogContext.set(correlation_id="x", actor_id="y")
        ctx = LogContext.get_all()
        assert ctx == {"correlation_id": "x", "actor_id": "y"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_unknown_field_rejected(self):
        with pytest.raises(KeyError):
            LogContext.set(journal_id="nope")

    def test_bind_context_manager(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner"):
            assert LogContext.get_all()["correlation_id"] == "inner"
        assert LogContext.get_all()["correlation_id"] == "outer"

    def test_bind_restores_none(self):
        """bind() restores to None if there was no previous value."""
        assert "invoice_id" not in LogContext.get_all()
        with LogContext.bind(invoice_id="temp"):
            assert LogContext.get_all()["invoice_id"] == "temp"
        assert "invoice_id" not in LogContext.get_all()

    def test_bind_stringifies_uuid(self):
        uid = uuid4()
        with LogContext.bind(actor_id=uid):
            assert LogContext.get_all()["actor_id"] == str(uid)

    def test_all_fields(self):
        LogContext.set(
            correlation_id="c",
            actor_id="a",
            invoice_id="i",
            scope="s",
            trace_id="t",
        )
        ctx = LogContext.get_all()
        assert len(ctx) == 5
        assert ctx["scope"] == "s"
        assert ctx["trace_id"] == "t"


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
        root = logging.getLogger("billing_kernel")
        assert h1 in root.handlers
        assert h2 not in root.handlers

    def test_get_logger_returns_child(self):
        logger = get_logger("services.sequence")
        assert logger.name == "billing_kernel.services.sequence"

    def test_logger_hierarchy(self):
        """Child loggers inherit the billing_kernel root config."""
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        child = get_logger("deep.nested.module")
        child.debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "billing_kernel.deep.nested.module"
