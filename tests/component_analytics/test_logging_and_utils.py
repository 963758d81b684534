"""
Tests for logging setup and the ingestion hygiene helpers.
"""

import json
import logging

import pytest

from component_analytics.logging_config import (
    ALERTS_LOGGER,
    API_LOGGER,
    LogContext,
    StructuredFormatter,
    log_alert_transition,
    setup_logging,
)
from component_analytics.utils.log_sanitizer import sanitize_for_log
from component_analytics.utils.privacy import detect_device_type, hash_identifier


class TestPrivacy:
    """Test identifier hashing and device classification."""

    def test_hash_is_salted_and_truncated(self):
        hashed = hash_identifier("203.0.113.7", "salt-a")

        assert len(hashed) == 16
        assert hashed != "203.0.113.7"
        assert hashed == hash_identifier("203.0.113.7", "salt-a")
        assert hashed != hash_identifier("203.0.113.7", "salt-b")

    def test_hash_of_missing_value(self):
        assert hash_identifier(None, "salt") is None
        assert hash_identifier("", "salt") is None

    @pytest.mark.parametrize(
        "user_agent,expected",
        [
            ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile/15E148", "mobile"),
            ("Mozilla/5.0 (iPad; CPU OS 17_0) Mobile/15E148", "tablet"),
            ("Mozilla/5.0 (Linux; Android 14; SM-X700) Tablet", "tablet"),
            ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "desktop"),
            (None, "desktop"),
        ],
    )
    def test_device_type(self, user_agent, expected):
        assert detect_device_type(user_agent) == expected


class TestLogSanitizer:
    """Test log hygiene for untrusted strings."""

    def test_strips_control_characters(self):
        assert sanitize_for_log("comp\nFAKE ERROR\r\x1b[31m") == "compFAKE ERROR[31m"

    def test_truncates(self):
        assert sanitize_for_log("x" * 150) == "x" * 100 + "..."
        assert sanitize_for_log("abcdef", max_length=3) == "abc..."

    def test_non_string_values(self):
        assert sanitize_for_log(42) == "42"
        assert sanitize_for_log(None) == "None"


class TestLogging:
    """Test handler setup and structured output."""

    @pytest.fixture
    def restore_logging(self):
        root = logging.getLogger()
        saved_handlers = list(root.handlers)
        saved_level = root.level
        yield
        for name in ("", ALERTS_LOGGER, API_LOGGER):
            logger = logging.getLogger(name or None)
            for handler in list(logger.handlers):
                if handler not in saved_handlers:
                    handler.close()
                    logger.removeHandler(handler)
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        logging.getLogger(API_LOGGER).propagate = True

    def test_setup_creates_log_files(self, tmp_path, restore_logging):
        setup_logging(log_dir=str(tmp_path / "logs"), console_level="WARNING")

        log_alert_transition("triggered", "alert-1", "comp-x", "error_rate >= 0.5", rule_id="r1")
        logging.getLogger("component_analytics.collector").error("flush failed")

        for handler in logging.getLogger(ALERTS_LOGGER).handlers:
            handler.flush()
        for handler in logging.getLogger().handlers:
            handler.flush()

        logs = tmp_path / "logs"
        assert "Alert triggered: alert-1" in (logs / "alerts.log").read_text()
        assert "flush failed" in (logs / "error.log").read_text()
        assert "flush failed" in (logs / "analytics.log").read_text()
        assert not logging.getLogger(API_LOGGER).propagate

    def test_structured_formatter_includes_context(self):
        record = logging.LogRecord(
            "component_analytics.alerts", logging.INFO, __file__, 1, "hello", None, None
        )
        record.component_id = "comp-x"
        record.alert_id = "alert-1"

        payload = json.loads(StructuredFormatter().format(record))

        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["component_id"] == "comp-x"
        assert payload["alert_id"] == "alert-1"
        assert "rule_id" not in payload

    def test_log_context_injects_and_restores(self):
        logger = logging.getLogger("component_analytics.test")
        factory = logging.getLogRecordFactory()

        with LogContext(logger, command="aggregate-hour"):
            record = logging.getLogRecordFactory()("x", logging.INFO, __file__, 1, "m", None, None)
            assert record.command == "aggregate-hour"

        assert logging.getLogRecordFactory() is factory
