"""
Tests for logging configuration.
"""

import io
import logging

from billing_ledger.core.errors import DuplicateEventError
from billing_ledger.logging_config import configure_logging, get_logger, reset_logging


class TestLogging:
    """Test logger setup and formatting."""

    def teardown_method(self):
        reset_logging()

    def test_loggers_live_under_package_namespace(self):
        assert get_logger("core.events").name == "billing_ledger.core.events"
        assert get_logger("billing_ledger.core.events").name == "billing_ledger.core.events"

    def test_key_value_output_with_extra_fields(self):
        stream = io.StringIO()
        configure_logging(level="INFO", stream=stream)

        get_logger("test").info("Billable event created", extra={"event_id": "evt-1", "amount": "15000.00"})

        line = stream.getvalue().strip()
        assert "level=INFO" in line
        assert "logger=billing_ledger.test" in line
        assert 'message="Billable event created"' in line
        assert "event_id=evt-1" in line
        assert "amount=15000.00" in line

    def test_configure_is_idempotent(self):
        configure_logging(stream=io.StringIO())
        configure_logging(stream=io.StringIO())
        assert len(logging.getLogger("billing_ledger").handlers) == 1

    def test_level_filters(self):
        stream = io.StringIO()
        configure_logging(level=logging.WARNING, stream=stream)

        get_logger("test").info("hidden")
        get_logger("test").warning("shown")

        assert "hidden" not in stream.getvalue()
        assert "shown" in stream.getvalue()

    def test_exception_includes_error_code(self):
        stream = io.StringIO()
        configure_logging(stream=stream)

        try:
            raise DuplicateEventError("ACME-PL1-20231215-FEE")
        except DuplicateEventError:
            get_logger("test").exception("Create failed")

        output = stream.getvalue()
        assert "exc_type=DuplicateEventError" in output
        assert "exc_code=DUPLICATE_ENTRY" in output
        assert "Traceback" in output
