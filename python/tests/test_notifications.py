"""
Tests for applicant notifications.
"""

from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from evisit.notifications import (
    NotificationDispatcher,
    NotificationKind,
    render_message,
)


@pytest.fixture
def application():
    return SimpleNamespace(
        reference_number="KRG-2025-000001",
        phone_number="+9647501234567",
        email="ahmad@example.com",
    )


@pytest.fixture
def executor():
    executor = ThreadPoolExecutor(max_workers=1)
    yield executor
    executor.shutdown(wait=True)


class TestRenderMessage:
    """Tests for message templates"""

    def test_submitted(self):
        """Submission messages carry the reference and tracking link."""
        message = render_message(NotificationKind.SUBMITTED, "KRG-2025-000001", {}, "krg-evisit.gov/track")
        assert "Reference: KRG-2025-000001" in message
        assert "krg-evisit.gov/track" in message

    def test_rejected_includes_reason(self):
        """Rejections quote the reason."""
        message = render_message(NotificationKind.REJECTED, "KRG-2025-000001",
                                 {"reason": "Incomplete documents"}, "x")
        assert "Reason: Incomplete documents" in message

    def test_entry_recorded(self):
        """Entry messages name the checkpoint and the validity end."""
        message = render_message(NotificationKind.ENTRY_RECORDED, "KRG-2025-000001",
                                 {"checkpoint_name": "Erbil North", "valid_until": "2025-04-09"}, "x")
        assert "Entry recorded at Erbil North" in message
        assert "Permit valid until: 2025-04-09" in message


class TestDispatcher:
    """Tests for NotificationDispatcher"""

    def test_delivers_through_transport(self, application, executor):
        """notify() hands a rendered notification to the transport."""
        transport = MagicMock()
        dispatcher = NotificationDispatcher(transport=transport, executor=executor)
        future = dispatcher.notify(NotificationKind.APPROVED, application)
        assert future.result(timeout=5) is True

        notification = transport.call_args.args[0]
        assert notification.kind == NotificationKind.APPROVED
        assert notification.phone_number == "+9647501234567"
        assert "APPROVED" in notification.message

    def test_transport_failure_swallowed(self, application, executor):
        """A failing gateway is logged, never raised."""
        transport = MagicMock(side_effect=ConnectionError("SMS gateway unreachable"))
        dispatcher = NotificationDispatcher(transport=transport, executor=executor)
        future = dispatcher.notify(NotificationKind.SUBMITTED, application)
        assert future.result(timeout=5) is False

    def test_disabled(self, application, executor):
        """Disabled dispatchers send nothing."""
        transport = MagicMock()
        dispatcher = NotificationDispatcher(transport=transport, executor=executor, enabled=False)
        assert dispatcher.notify(NotificationKind.SUBMITTED, application) is None
        transport.assert_not_called()

    def test_bad_application_does_not_raise(self, executor):
        """Missing fields on the application are logged, not raised."""
        dispatcher = NotificationDispatcher(transport=MagicMock(), executor=executor)
        assert dispatcher.notify(NotificationKind.SUBMITTED, object()) is None
