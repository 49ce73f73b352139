"""
Security event log for the e-Visit permit system.

Checkpoint refusals, watchlist hits, risk-gate blocks and overrides,
permission denials and watchlist edits are written as one JSON object
per line to logs/security.log. Values that came from outside (scanned
payloads, request fields) are sanitized and truncated before they are
written, and every event carries the request ID of the HTTP call that
caused it.
"""

import json
import uuid
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import dataclass, field as dataclass_field

from evisit.log_utils import sanitize_for_logging

_request_id: ContextVar[str] = ContextVar("security_request_id", default="")
_user_id: ContextVar[str] = ContextVar("security_user_id", default="")
_source_ip: ContextVar[str] = ContextVar("security_source_ip", default="")

LOG_FORMAT = '%(asctime)s - SECURITY - %(levelname)s - %(message)s'
INPUT_PREVIEW = 50
CONTEXT_PREVIEW = 200
LEVELS = {
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _preview(value: Any, limit: int) -> str:
    text = sanitize_for_logging(value) if value else ""
    return text if len(text) <= limit else text[:limit] + "...(truncated)"


def _clean(value: Any) -> Any:
    """Scalars pass through, containers are cleaned recursively, the rest is previewed."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, dict):
        return {_preview(str(k), 100) or "unknown": _clean(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_clean(item) for item in value]
    return _preview(str(value), CONTEXT_PREVIEW)


@dataclass
class SecurityEvent:
    """One line of security.log"""
    event_type: str
    severity: str
    error_code: str = ""
    sanitized_input: str = ""
    source: str = ""
    request_id: str = ""
    user_id: str = ""
    source_ip: str = ""
    additional_context: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            name: getattr(self, name)
            for name in ('timestamp', 'event_type', 'severity', 'error_code', 'sanitized_input',
                         'source', 'request_id', 'user_id', 'source_ip')
        }
        data['context'] = self.additional_context
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class SecurityLogger:
    """Writes SecurityEvents to the 'evisit.security' logger."""

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.INFO,
        enable_console: bool = False,
        enable_file: bool = True
    ):
        """
        Args:
            log_dir: Directory that receives security.log
            log_level: Minimum level recorded
            enable_console: Mirror events to stderr
            enable_file: Write security.log
        """
        self.logger = logging.getLogger('evisit.security')
        self.logger.setLevel(log_level)
        self.logger.handlers.clear()

        handlers = []
        if enable_file:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(Path(log_dir) / "security.log", encoding='utf-8'))
        if enable_console:
            handlers.append(logging.StreamHandler())
        for handler in handlers:
            handler.setLevel(log_level)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self.logger.addHandler(handler)

    def set_request_context(
        self,
        request_id: Optional[str] = None,
        user_id: str = "",
        source_ip: str = ""
    ) -> str:
        """Bind request metadata to the current context; returns the request ID"""
        request_id = request_id or f"REQ-{uuid.uuid4().hex[:8]}"
        for var, value in ((_request_id, request_id), (_user_id, user_id), (_source_ip, source_ip)):
            var.set(value)
        return request_id

    def clear_request_context(self) -> None:
        for var in (_request_id, _user_id, _source_ip):
            var.set("")

    def log_security_event(
        self,
        event_type: str,
        severity: str = "WARNING",
        error_code: str = "",
        input_value: str = "",
        source: str = "",
        blocked: bool = True,
        additional_context: Optional[Dict[str, Any]] = None
    ) -> SecurityEvent:
        """Record one event

        Args:
            event_type: e.g. QR_VERIFICATION_FAILED, WATCHLIST_ALERT
            severity: INFO, WARNING, ERROR or CRITICAL
            error_code: Code returned to the caller, if any
            input_value: Untrusted input that triggered the event
            source: Where the event was detected
            blocked: Whether the action was refused
            additional_context: Extra fields, cleaned before writing
        """
        context = _clean(additional_context or {})
        context['blocked'] = blocked
        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            error_code=error_code,
            sanitized_input=_preview(input_value, INPUT_PREVIEW),
            source=source,
            request_id=_request_id.get(),
            user_id=_user_id.get(),
            source_ip=_source_ip.get(),
            additional_context=context
        )
        self.logger.log(LEVELS.get(severity, logging.WARNING), event.to_json())
        return event

    def log_qr_rejected(self, reason: str, raw_payload: str, checkpoint_id: str, officer_id: str) -> SecurityEvent:
        """A scanned permit QR failed verification"""
        return self.log_security_event(
            event_type="QR_VERIFICATION_FAILED",
            severity="ERROR" if reason == "BAD_SIGNATURE" else "WARNING",
            error_code="INVALID_QR",
            input_value=raw_payload,
            source="checkpoint.verify",
            additional_context={"reason": reason, "checkpoint_id": checkpoint_id, "officer_id": officer_id}
        )

    def log_watchlist_alert(
        self,
        application_id: str,
        checkpoint_id: str,
        flag_type: str,
        severity: str,
        officer_id: str
    ) -> SecurityEvent:
        """A checkpoint scan matched an active watchlist entry"""
        return self.log_security_event(
            event_type="WATCHLIST_ALERT",
            severity="CRITICAL" if severity == "CRITICAL" else "ERROR",
            error_code="WATCHLIST_ALERT",
            source="checkpoint.verify",
            additional_context={
                "application_id": application_id,
                "checkpoint_id": checkpoint_id,
                "flag_type": flag_type,
                "watchlist_severity": severity,
                "officer_id": officer_id,
            }
        )

    def log_access_event(
        self,
        event_type: str,
        actor_id: str,
        action: str,
        blocked: bool,
        additional_context: Optional[Dict[str, Any]] = None
    ) -> SecurityEvent:
        """Permission denials, risk-gate blocks/overrides and watchlist edits"""
        context = dict(additional_context or {}, actor_id=actor_id, action=action)
        return self.log_security_event(
            event_type=event_type,
            severity="WARNING" if blocked else "INFO",
            source="lifecycle",
            blocked=blocked,
            additional_context=context
        )


_security_logger: Optional[SecurityLogger] = None


def get_security_logger(
    log_dir: str = "logs",
    enable_console: bool = False
) -> SecurityLogger:
    """Process-wide security logger, created on first use"""
    global _security_logger
    if _security_logger is None:
        _security_logger = SecurityLogger(log_dir=log_dir, enable_console=enable_console)
    return _security_logger


def set_security_logger(security_logger: Optional[SecurityLogger]) -> None:
    """Install a preconfigured security logger (or None to reset)"""
    global _security_logger
    _security_logger = security_logger
