"""
Applicant notifications.

The dispatcher is best-effort: notify() snapshots what it needs from the
application, hands delivery to a worker thread and returns immediately.
Delivery failures are logged and swallowed. Only the message text lives
here; the transport (SMS gateway, e-mail, ...) is a pluggable callable.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from evisit.log_utils import mask_identifier, sanitize_for_logging

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DOCUMENTS_REQUESTED = "DOCUMENTS_REQUESTED"
    ENTRY_RECORDED = "ENTRY_RECORDED"


@dataclass
class Notification:
    """Rendered message addressed to one applicant"""
    kind: NotificationKind
    reference_number: str
    phone_number: str
    email: Optional[str]
    message: str
    extra: Dict[str, Any] = field(default_factory=dict)


Transport = Callable[[Notification], None]


def render_message(kind: NotificationKind, reference_number: str, extra: Dict[str, Any], track_url: str) -> str:
    if kind == NotificationKind.SUBMITTED:
        return (
            f"Application submitted successfully!\n\nReference: {reference_number}\n\n"
            f"Track status: {track_url}\n\nYou'll receive updates via SMS."
        )
    if kind == NotificationKind.APPROVED:
        return (
            f"Your e-Visit permit has been APPROVED!\n\nReference: {reference_number}\n\n"
            f"Download your QR code: {track_url}\n\nShow this at the checkpoint."
        )
    if kind == NotificationKind.REJECTED:
        return (
            f"Application {reference_number} was rejected.\n\n"
            f"Reason: {extra.get('reason', '')}\n\nYou can reapply or contact support."
        )
    if kind == NotificationKind.DOCUMENTS_REQUESTED:
        return (
            f"Additional documents required for application {reference_number}\n\n"
            f"Check your application status for details.\n\nTrack: {track_url}"
        )
    if kind == NotificationKind.ENTRY_RECORDED:
        return (
            f"Entry recorded at {extra.get('checkpoint_name', 'checkpoint')}\n\n"
            f"Your permit is now ACTIVE.\n\nPermit valid until: {extra.get('valid_until', '')}\n\n"
            f"Safe travels!"
        )
    raise ValueError(f"Unknown notification kind: {kind}")


def log_transport(notification: Notification) -> None:
    """Default transport: record the message instead of sending it"""
    logger.info(
        "Notification %s for %s to %s",
        notification.kind.value,
        notification.reference_number,
        mask_identifier(notification.phone_number),
    )


class NotificationDispatcher:
    """Renders applicant messages and delivers them off the request path."""

    def __init__(
        self,
        transport: Optional[Transport] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        track_url: str = "krg-evisit.gov/track",
        enabled: bool = True,
        max_workers: int = 2
    ):
        self._transport = transport or log_transport
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="evisit-notify"
        )
        self._track_url = track_url
        self._enabled = enabled

    def notify(self, kind: NotificationKind, application: Any, extra: Optional[Dict[str, Any]] = None) -> Optional[Future]:
        """
        Queue a notification. Never raises.

        Args:
            kind: Which message to send
            application: Object with reference_number, phone_number and email
            extra: Template values (reason, checkpoint_name, valid_until)
        """
        if not self._enabled:
            return None
        try:
            extra = dict(extra or {})
            notification = Notification(
                kind=kind,
                reference_number=application.reference_number,
                phone_number=application.phone_number,
                email=getattr(application, "email", None),
                message=render_message(kind, application.reference_number, extra, self._track_url),
                extra=extra,
            )
            return self._executor.submit(self._deliver, notification)
        except Exception as e:
            logger.error("Failed to queue %s notification: %s", kind, sanitize_for_logging(str(e)))
            return None

    def _deliver(self, notification: Notification) -> bool:
        try:
            self._transport(notification)
            return True
        except Exception as e:
            logger.error(
                "Notification %s for %s failed: %s",
                notification.kind.value,
                notification.reference_number,
                sanitize_for_logging(str(e)),
            )
            return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
