"""
Tests for checkpoint verification, entry/exit recording and log queries.
"""

import json
from datetime import date, timedelta
from unittest.mock import patch
from uuid import uuid4

import pytest

from evisit.database.models import ApplicationStatus, CheckpointAction, VisitorLocation
from evisit.errors import ErrorKind
from evisit.notifications import NotificationKind

from conftest import applicant_for

CHECKPOINT = "CP-ERBIL-01"


@pytest.fixture
def scan(services, checkpoint_officer):
    def run(payload, action="ENTRY", actor=None, checkpoint_id=CHECKPOINT):
        return services.checkpoint.verify(
            payload, action, checkpoint_id, actor or checkpoint_officer,
            checkpoint_name="Erbil North"
        )
    return run


def log_count(services, actor):
    logs, total = services.checkpoint.logs(actor).unwrap()
    return total


class TestEntry:
    """Tests for ENTRY scans"""

    def test_entry_activates_permit(self, services, approved, scan, checkpoint_officer, clock):
        """A valid scan records entry and makes the permit ACTIVE."""
        decision = approved()
        outcome = scan(decision.permit.payload).unwrap()

        assert outcome.action == CheckpointAction.ENTRY
        assert outcome.application.status == ApplicationStatus.ACTIVE
        assert outcome.application.current_location == VisitorLocation.INSIDE
        assert outcome.application.entry_timestamp == clock()
        assert outcome.application.entry_checkpoint_id == CHECKPOINT
        assert outcome.log.officer_id == "cp-officer-1"
        assert outcome.log.checkpoint_name == "Erbil North"
        assert log_count(services, checkpoint_officer) == 1

    def test_outcome_serialises(self, approved, scan):
        """to_dict carries the action, log id and visitor summary."""
        data = scan(approved().permit.payload).unwrap().to_dict()
        assert data["success"] is True
        assert data["action"] == "ENTRY"
        assert data["application"]["status"] == "ACTIVE"
        assert data["application"]["reference_number"] == "KRG-2025-000001"

    def test_entry_notifies_applicant(self, approved, scan, notifier):
        """The applicant is told about the entry after commit."""
        scan(approved().permit.payload).unwrap()
        kind, application, extra = notifier.notify.call_args.args
        assert kind == NotificationKind.ENTRY_RECORDED
        assert extra == {"checkpoint_name": "Erbil North", "valid_until": "2025-04-09"}

    def test_second_entry_refused(self, services, approved, scan, checkpoint_officer):
        """Scanning twice for entry fails with ALREADY_INSIDE and logs nothing."""
        payload = approved().permit.payload
        scan(payload).unwrap()
        result = scan(payload)
        assert result.error.code == "ALREADY_INSIDE"
        assert result.error.kind == ErrorKind.ALREADY_INSIDE
        assert log_count(services, checkpoint_officer) == 1

    def test_tampered_payload_refused(self, services, approved, scan, checkpoint_officer, security_logger):
        """A modified payload is INVALID_QR; no log and no status change."""
        decision = approved()
        data = json.loads(decision.permit.payload)
        data["applicationId"] = str(uuid4())

        with patch.object(security_logger, "log_qr_rejected") as log_rejected:
            result = scan(json.dumps(data))

        assert result.error.code == "INVALID_QR"
        assert result.error.kind == ErrorKind.SIGNATURE_INVALID
        assert result.error.details == {"reason": "BAD_SIGNATURE"}
        log_rejected.assert_called_once()
        assert log_count(services, checkpoint_officer) == 0
        stored = services.lifecycle.get(decision.application.id).unwrap()
        assert stored.status == ApplicationStatus.APPROVED

    @pytest.mark.parametrize("payload", [
        "definitely not a permit",
        '{"applicationId": "\\ud800", "timestamp": "2025-03-10T10:00:00.000Z", "signature": "ab"}',
        "[" * 200000 + "]" * 200000,
    ], ids=["garbage", "lone-surrogate", "deep-nesting"])
    def test_malformed_payload(self, services, scan, checkpoint_officer, payload):
        """Garbage input is INVALID_QR with kind MALFORMED, never an exception."""
        result = scan(payload)
        assert result.error.code == "INVALID_QR"
        assert result.error.kind == ErrorKind.MALFORMED
        assert result.error.details == {"reason": "MALFORMED"}
        assert log_count(services, checkpoint_officer) == 0

    def test_stale_qr_refused_until_reissued(self, services, approved, scan, clock):
        """A QR older than 24h is refused; a reissued one is accepted."""
        decision = approved()
        clock.advance(hours=24, seconds=1)

        stale = scan(decision.permit.payload)
        assert stale.error.code == "INVALID_QR"
        assert stale.error.kind == ErrorKind.EXPIRED

        reissued = services.lifecycle.reissue_permit(
            decision.application.id, applicant_for("19900101001"), national_id="19900101001"
        ).unwrap()
        assert scan(reissued.permit.payload).ok

    def test_unknown_application(self, services, scan):
        """A correctly signed payload for an unknown id is APPLICATION_NOT_FOUND."""
        permit = services.codec.issue(str(uuid4()))
        result = scan(permit.payload)
        assert result.error.code == "APPLICATION_NOT_FOUND"
        assert result.error.kind == ErrorKind.NOT_FOUND

    def test_non_uuid_application_id(self, services, scan):
        """A signed payload whose id is not a UUID is also not found."""
        result = scan(services.codec.issue("not-a-uuid").payload)
        assert result.error.code == "APPLICATION_NOT_FOUND"

    def test_unapproved_application(self, services, submit, scan):
        """A signed payload for a SUBMITTED application is NOT_APPROVED."""
        application = submit()
        result = scan(services.codec.issue(str(application.id)).payload)
        assert result.error.code == "NOT_APPROVED"
        assert result.error.details == {"status": "SUBMITTED"}

    def test_outside_validity_window(self, approved, scan, clock):
        """Scanning before valid_from is PERMIT_EXPIRED."""
        today = clock().date()
        decision = approved(valid_from=today + timedelta(days=5), valid_until=today + timedelta(days=10))
        result = scan(decision.permit.payload)
        assert result.error.code == "PERMIT_EXPIRED"
        assert result.error.kind == ErrorKind.EXPIRED

    def test_watchlist_alert(self, services, approved, scan, supervisor, checkpoint_officer, security_logger):
        """A watchlist entry added after approval stops the visitor."""
        decision = approved()
        services.watchlist.add_to_watchlist(
            supervisor, "19900101001", "Intelligence report", "SECURITY_CONCERN", "CRITICAL"
        ).unwrap()

        with patch.object(security_logger, "log_watchlist_alert") as log_alert:
            result = scan(decision.permit.payload)

        assert result.error.code == "WATCHLIST_ALERT"
        assert result.error.kind == ErrorKind.SECURITY_GATE
        assert result.error.details == {
            "reason": "Intelligence report",
            "flaggedBy": "supervisor-1",
            "flagType": "SECURITY_CONCERN",
            "severity": "CRITICAL",
        }
        log_alert.assert_called_once()
        assert log_count(services, checkpoint_officer) == 0

    def test_applicant_cannot_scan(self, approved, scan):
        """Only checkpoint and processing staff operate checkpoints."""
        result = scan(approved().permit.payload, actor=applicant_for("19900101001"))
        assert result.error.kind == ErrorKind.PERMISSION_DENIED

    def test_unknown_action(self, approved, scan):
        """Actions other than ENTRY and EXIT are refused."""
        result = scan(approved().permit.payload, action="TRANSIT")
        assert result.error.kind == ErrorKind.VALIDATION
        assert result.error.field == "action"


class TestExit:
    """Tests for EXIT scans"""

    def test_exit_after_entry(self, services, approved, scan, checkpoint_officer, clock):
        """Exit closes the visit with a second log row."""
        payload = approved().permit.payload
        scan(payload).unwrap()
        clock.advance(hours=2)

        outcome = scan(payload, action="EXIT", checkpoint_id="CP-DUHOK-02").unwrap()
        assert outcome.application.status == ApplicationStatus.EXITED
        assert outcome.application.current_location == VisitorLocation.EXITED
        assert outcome.application.exit_checkpoint_id == "CP-DUHOK-02"
        assert outcome.application.exit_timestamp == clock()
        assert log_count(services, checkpoint_officer) == 2

    def test_exit_without_entry(self, services, approved, scan, checkpoint_officer):
        """Exit before any entry is NOT_INSIDE."""
        result = scan(approved().permit.payload, action="EXIT")
        assert result.error.code == "NOT_INSIDE"
        assert result.error.kind == ErrorKind.NOT_INSIDE
        assert log_count(services, checkpoint_officer) == 0

    def test_no_action_after_exit(self, approved, scan):
        """EXITED is terminal; further scans are NOT_APPROVED."""
        payload = approved().permit.payload
        scan(payload).unwrap()
        scan(payload, action="EXIT").unwrap()
        assert scan(payload, action="EXIT").error.code == "NOT_APPROVED"
        assert scan(payload).error.code == "NOT_APPROVED"


class TestQueries:
    """Tests for checkpoint logs and active visitors"""

    def test_logs_filter_by_checkpoint(self, services, approved, scan, checkpoint_officer):
        """Logs can be narrowed to one checkpoint."""
        scan(approved(national_id="A-1").permit.payload).unwrap()
        scan(approved(national_id="A-2").permit.payload, checkpoint_id="CP-OTHER").unwrap()

        logs, total = services.checkpoint.logs(checkpoint_officer, checkpoint_id=CHECKPOINT).unwrap()
        assert total == 1
        assert logs[0].checkpoint_id == CHECKPOINT

    def test_logs_for_day(self, services, approved, scan, checkpoint_officer, clock):
        """Today's logs include the entry; yesterday's are empty."""
        scan(approved().permit.payload).unwrap()
        logs, total = services.checkpoint.logs_for_day(checkpoint_officer).unwrap()
        assert total == 1
        logs, total = services.checkpoint.logs_for_day(
            checkpoint_officer, day=clock().date() - timedelta(days=1)
        ).unwrap()
        assert total == 0

    def test_logs_pagination(self, services, approved, scan, checkpoint_officer):
        """Pages are offset by limit."""
        for index in range(3):
            scan(approved(national_id=f"P-{index}").permit.payload).unwrap()
        logs, total = services.checkpoint.logs(checkpoint_officer, page=2, limit=2).unwrap()
        assert total == 3
        assert len(logs) == 1

    def test_active_visitors(self, services, approved, scan, checkpoint_officer):
        """Only visitors currently inside are listed."""
        inside = approved(national_id="IN-1")
        left = approved(national_id="OUT-1")
        approved(national_id="NEVER-1")
        scan(inside.permit.payload).unwrap()
        scan(left.permit.payload).unwrap()
        scan(left.permit.payload, action="EXIT").unwrap()

        visitors, total = services.checkpoint.active_visitors(checkpoint_officer).unwrap()
        assert total == 1
        assert visitors[0].id == inside.application.id

    def test_logs_require_staff(self, services):
        """Applicants cannot read checkpoint logs."""
        result = services.checkpoint.logs(applicant_for("19900101001"))
        assert result.error.kind == ErrorKind.PERMISSION_DENIED


class TestScenario:
    """Full journey from submission to exit"""

    def test_submission_to_exit(self, services, submit, officer, supervisor, director,
                                checkpoint_officer, clock):
        """Submit, process, approve, enter and leave."""
        application = submit()
        assert application.risk_score == 0
        services.lifecycle.assign(application.id, officer.id, supervisor).unwrap()
        services.lifecycle.review(application.id, officer, recommendation="APPROVE").unwrap()
        decision = services.lifecycle.approve(
            application.id, director, valid_from=date(2025, 3, 10), valid_until=date(2025, 3, 20)
        ).unwrap()

        clock.advance(hours=3)
        services.checkpoint.verify(decision.permit.payload, "ENTRY", CHECKPOINT, checkpoint_officer).unwrap()
        clock.advance(days=5)
        stale = services.checkpoint.verify(decision.permit.payload, "EXIT", CHECKPOINT, checkpoint_officer)
        assert stale.error.kind == ErrorKind.EXPIRED

        reissued = services.lifecycle.reissue_permit(application.id, officer).unwrap()
        services.checkpoint.verify(reissued.permit.payload, "EXIT", CHECKPOINT, checkpoint_officer).unwrap()

        final = services.lifecycle.get(application.id).unwrap()
        assert final.status == ApplicationStatus.EXITED
        logs, total = services.checkpoint.logs(checkpoint_officer).unwrap()
        assert [log.log_type for log in logs] == [CheckpointAction.EXIT, CheckpointAction.ENTRY]
