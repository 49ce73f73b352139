"""
Tests for watchlist curation.
"""

from datetime import timedelta

from evisit.database.models import AuditAction, RiskSeverity, WatchlistFlagType
from evisit.database.repositories import AuditRepository
from evisit.errors import ErrorKind


class TestAddToWatchlist:
    """Tests for WatchlistService.add_to_watchlist"""

    def test_add_entry(self, services, supervisor, clock):
        """Entries are active, attributed and audited."""
        entry = services.watchlist.add_to_watchlist(
            supervisor, " 555 ", "Forged documents", "FRAUD", "HIGH", full_name="Test Person"
        ).unwrap()
        assert entry.national_id == "555"
        assert entry.flag_type == WatchlistFlagType.FRAUD
        assert entry.severity == RiskSeverity.HIGH
        assert entry.is_active
        assert entry.created_by == "supervisor-1"
        assert entry.created_at == clock()

        with services.db.session_scope() as session:
            logs, total = AuditRepository(session).search(action=AuditAction.WATCHLIST_ADD)
        assert total == 1
        assert logs[0].resource_id == str(entry.id)

    def test_officer_cannot_add(self, services, officer):
        """Only supervisors and above curate the watchlist."""
        result = services.watchlist.add_to_watchlist(officer, "555", "x", "FRAUD", "LOW")
        assert result.error.kind == ErrorKind.PERMISSION_DENIED

    def test_unknown_flag_type(self, services, supervisor):
        """Flag types outside the enum are refused."""
        result = services.watchlist.add_to_watchlist(supervisor, "555", "x", "GOSSIP", "LOW")
        assert result.error.kind == ErrorKind.VALIDATION
        assert result.error.field == "flag_type"

    def test_reason_required(self, services, supervisor):
        """Entries need a reason."""
        result = services.watchlist.add_to_watchlist(supervisor, "555", "  ", "FRAUD", "LOW")
        assert result.error.field == "reason"

    def test_expiry_must_be_future(self, services, supervisor, clock):
        """An entry cannot be created already expired."""
        result = services.watchlist.add_to_watchlist(
            supervisor, "555", "x", "FRAUD", "LOW", expires_at=clock() - timedelta(minutes=1)
        )
        assert result.error.field == "expires_at"


class TestCheckAndRemove:
    """Tests for check_watchlist, remove_from_watchlist and list_watchlist"""

    def test_check_returns_most_severe(self, services, supervisor):
        """The most severe active entry is returned."""
        services.watchlist.add_to_watchlist(supervisor, "555", "minor", "DUPLICATE", "LOW").unwrap()
        services.watchlist.add_to_watchlist(supervisor, "555", "major", "SECURITY_CONCERN", "CRITICAL").unwrap()
        entry = services.watchlist.check_watchlist("555").unwrap()
        assert entry.severity == RiskSeverity.CRITICAL

    def test_check_matches_email(self, services, supervisor):
        """An entry recorded with an e-mail also matches by e-mail."""
        services.watchlist.add_to_watchlist(
            supervisor, "555", "alias", "FRAUD", "MEDIUM", email="Someone@Example.com"
        ).unwrap()
        entry = services.watchlist.check_watchlist("999", email="someone@example.com").unwrap()
        assert entry is not None
        assert entry.national_id == "555"

    def test_expired_entry_ignored(self, services, supervisor, clock):
        """Entries past expires_at no longer match."""
        services.watchlist.add_to_watchlist(
            supervisor, "555", "temporary", "FRAUD", "LOW", expires_at=clock() + timedelta(days=1)
        ).unwrap()
        assert services.watchlist.check_watchlist("555").unwrap() is not None
        clock.advance(days=2)
        assert services.watchlist.check_watchlist("555").unwrap() is None

    def test_remove_deactivates(self, services, supervisor):
        """Removal deactivates every active entry for the identity."""
        services.watchlist.add_to_watchlist(supervisor, "555", "a", "FRAUD", "LOW").unwrap()
        services.watchlist.add_to_watchlist(supervisor, "555", "b", "OVERSTAY", "LOW").unwrap()
        assert services.watchlist.remove_from_watchlist(supervisor, "555").unwrap() == 2
        assert services.watchlist.check_watchlist("555").unwrap() is None

        entries, total = services.watchlist.list_watchlist(supervisor, active_only=False).unwrap()
        assert total == 2
        assert all(entry.deactivated_by == "supervisor-1" for entry in entries)

    def test_remove_by_flag_type(self, services, supervisor):
        """A flag type narrows the removal."""
        services.watchlist.add_to_watchlist(supervisor, "555", "a", "FRAUD", "LOW").unwrap()
        services.watchlist.add_to_watchlist(supervisor, "555", "b", "OVERSTAY", "LOW").unwrap()
        assert services.watchlist.remove_from_watchlist(supervisor, "555", "OVERSTAY").unwrap() == 1
        assert services.watchlist.check_watchlist("555").unwrap().flag_type == WatchlistFlagType.FRAUD

    def test_checkpoint_officer_can_list(self, services, supervisor, checkpoint_officer):
        """Checkpoint staff may read the watchlist."""
        services.watchlist.add_to_watchlist(supervisor, "555", "a", "FRAUD", "LOW").unwrap()
        entries, total = services.watchlist.list_watchlist(checkpoint_officer).unwrap()
        assert total == 1
