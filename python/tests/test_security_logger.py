"""
Tests for structured security event logging.
"""

import json

import pytest

from evisit.security_logger import SecurityEvent, SecurityLogger


@pytest.fixture
def log_dir(tmp_path):
    return tmp_path / "logs"


@pytest.fixture
def file_logger(log_dir):
    logger = SecurityLogger(log_dir=str(log_dir))
    yield logger
    logger.clear_request_context()
    for handler in list(logger.logger.handlers):
        handler.close()
        logger.logger.removeHandler(handler)


def read_events(log_dir):
    lines = (log_dir / "security.log").read_text(encoding="utf-8").strip().split("\n")
    return [json.loads(line.split(" - ", 3)[3]) for line in lines]


class TestSecurityLogger:
    """Tests for SecurityLogger"""

    def test_creates_log_file(self, file_logger, log_dir):
        """Events land in security.log"""
        file_logger.log_access_event("PERMISSION_DENIED", "officer-1", "approve", blocked=True)
        assert (log_dir / "security.log").exists()

    def test_qr_rejection_is_sanitized(self, file_logger, log_dir):
        """Scanned payloads cannot forge extra log lines."""
        file_logger.log_qr_rejected("MALFORMED", "junk\nFAKE LOG ENTRY\n", "CP-1", "cp-officer-1")
        events = read_events(log_dir)
        assert len(events) == 1
        assert events[0]["event_type"] == "QR_VERIFICATION_FAILED"
        assert events[0]["severity"] == "WARNING"
        assert "\n" not in events[0]["sanitized_input"]

    def test_tampered_qr_is_error(self, file_logger, log_dir):
        """Bad signatures are logged at ERROR."""
        file_logger.log_qr_rejected("BAD_SIGNATURE", "{}", "CP-1", "cp-officer-1")
        assert read_events(log_dir)[0]["severity"] == "ERROR"

    def test_long_input_truncated(self, file_logger, log_dir):
        """Only a short prefix of the raw input is kept."""
        file_logger.log_qr_rejected("MALFORMED", "x" * 500, "CP-1", "cp-officer-1")
        assert read_events(log_dir)[0]["sanitized_input"].endswith("...(truncated)")

    def test_request_context(self, file_logger, log_dir):
        """Events carry the current request id."""
        request_id = file_logger.set_request_context(request_id="REQ-12345", user_id="director-1")
        assert request_id == "REQ-12345"
        file_logger.log_access_event("RISK_GATE_OVERRIDE", "director-1", "approve", blocked=False)

        event = read_events(log_dir)[0]
        assert event["request_id"] == "REQ-12345"
        assert event["user_id"] == "director-1"
        assert event["context"]["blocked"] is False

    def test_generated_request_id(self, file_logger):
        """Without an id one is generated."""
        assert file_logger.set_request_context().startswith("REQ-")

    def test_watchlist_alert_severity(self, file_logger, log_dir):
        """CRITICAL entries raise CRITICAL alerts."""
        file_logger.log_watchlist_alert("app-1", "CP-1", "SECURITY_CONCERN", "CRITICAL", "cp-officer-1")
        event = read_events(log_dir)[0]
        assert event["severity"] == "CRITICAL"
        assert event["context"]["watchlist_severity"] == "CRITICAL"


class TestSecurityEvent:
    """Tests for SecurityEvent serialization"""

    def test_to_json(self):
        """Events serialize to one JSON object."""
        event = SecurityEvent(
            event_type="WATCHLIST_ALERT",
            severity="ERROR",
            error_code="WATCHLIST_ALERT",
            additional_context={"checkpoint_id": "CP-1"},
        )
        data = json.loads(event.to_json())
        assert data["event_type"] == "WATCHLIST_ALERT"
        assert data["context"] == {"checkpoint_id": "CP-1"}
