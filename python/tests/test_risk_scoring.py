"""
Unit tests for the composite risk scoring engine.

Uses the in-memory SQLite database from conftest.py.
"""

from datetime import timedelta

import pytest

from evisit.config_manager import OverstayConfig
from evisit.database.models import RiskSeverity, WatchlistFlagType
from evisit.database.repositories import ApplicationRepository, WatchlistRepository
from evisit.database.risk_service import (
    RiskScoringEngine,
    classify_score,
    gate_for,
    merge_flags,
    overstay_severity,
)


@pytest.fixture
def screen(db, config, clock):
    """Run one screening in its own session."""
    def run(national_id="19900101001", phone_number="+9647501234567", exclude_application_id=None):
        with db.session_scope() as session:
            return RiskScoringEngine(session, config.screening, clock).screen(
                national_id, phone_number, "Test Person", exclude_application_id=exclude_application_id
            )
    return run


@pytest.fixture
def add_watchlist(db, clock):
    def add(national_id, severity, flag_type=WatchlistFlagType.SECURITY_CONCERN,
            reason="Flagged by intelligence", is_active=True, expires_at=None, email=None):
        with db.session_scope() as session:
            WatchlistRepository(session).create({
                "national_id": national_id,
                "email": email,
                "reason": reason,
                "flag_type": flag_type,
                "severity": severity,
                "is_active": is_active,
                "expires_at": expires_at,
                "created_by": "supervisor-1",
                "created_at": clock(),
                "updated_at": clock(),
            })
    return add


class TestScoreBands:
    """Tests for severity classification and gating."""

    @pytest.mark.parametrize("score,severity", [
        (0, RiskSeverity.LOW),
        (29, RiskSeverity.LOW),
        (30, RiskSeverity.MEDIUM),
        (49, RiskSeverity.MEDIUM),
        (50, RiskSeverity.HIGH),
        (79, RiskSeverity.HIGH),
        (80, RiskSeverity.CRITICAL),
        (100, RiskSeverity.CRITICAL),
    ])
    def test_classify_score_boundaries(self, score, severity):
        """Band edges are inclusive at the lower bound."""
        assert classify_score(score) == severity

    def test_gate_blocks_high_and_critical(self):
        """HIGH and CRITICAL fail the gate and need a supervisor."""
        assert gate_for(RiskSeverity.CRITICAL) == (False, True, True)
        assert gate_for(RiskSeverity.HIGH) == (False, True, True)

    def test_gate_medium_needs_manual_review(self):
        """MEDIUM passes but is routed to manual review."""
        assert gate_for(RiskSeverity.MEDIUM) == (True, False, True)
        assert gate_for(RiskSeverity.LOW) == (True, False, False)

    def test_merge_flags_keeps_order_without_duplicates(self):
        """Merged flags keep first-seen order and drop repeats."""
        assert merge_flags(["A", "B"], ["B", "C"]) == ["A", "B", "C"]
        assert merge_flags(None, ["A"]) == ["A"]


class TestOverstaySeverity:
    """Tests for overstay to watchlist severity mapping."""

    @pytest.mark.parametrize("days,expected", [
        (3, None),
        (7, None),
        (8, RiskSeverity.LOW),
        (14, RiskSeverity.LOW),
        (15, RiskSeverity.MEDIUM),
        (30, RiskSeverity.MEDIUM),
        (31, RiskSeverity.HIGH),
    ])
    def test_thresholds(self, days, expected):
        """Thresholds are strictly greater-than."""
        assert overstay_severity(days, OverstayConfig()) == expected


class TestWatchlistCheck:
    """Tests for the watchlist component."""

    def test_clean_applicant_scores_zero(self, screen):
        """No history and no watchlist entry gives a clean LOW result."""
        result = screen()
        assert result.risk_score == 0
        assert result.severity == RiskSeverity.LOW
        assert result.passed
        assert result.flags == []

    def test_critical_watchlist_entry_blocks(self, screen, add_watchlist):
        """An active CRITICAL entry scores 80 and fails the gate."""
        add_watchlist("Y-123", RiskSeverity.CRITICAL)
        result = screen(national_id="Y-123")
        assert result.risk_score >= 80
        assert result.severity == RiskSeverity.CRITICAL
        assert result.passed is False
        assert result.requires_supervisor_review
        assert result.flags == ["WATCHLIST: SECURITY_CONCERN - Flagged by intelligence"]
        assert result.details.watchlist_match

    def test_most_severe_entry_wins(self, screen, add_watchlist):
        """With several entries the most severe one is scored."""
        add_watchlist("Y-123", RiskSeverity.LOW, reason="minor")
        add_watchlist("Y-123", RiskSeverity.HIGH, reason="major")
        result = screen(national_id="Y-123")
        assert result.risk_score == 50
        assert result.flags == ["WATCHLIST: SECURITY_CONCERN - major"]

    def test_inactive_and_expired_entries_ignored(self, screen, add_watchlist, clock):
        """Deactivated or expired entries do not count."""
        add_watchlist("Y-123", RiskSeverity.CRITICAL, is_active=False)
        add_watchlist("Y-123", RiskSeverity.CRITICAL, expires_at=clock() - timedelta(days=1))
        assert screen(national_id="Y-123").risk_score == 0


class TestHistoryChecks:
    """Tests for duplicate, rejection, overstay and phone checks."""

    def test_duplicate_within_window(self, screen, submit):
        """A live application in the last 7 days adds 40 points."""
        first = submit()
        result = screen()
        assert result.risk_score == 40
        assert result.severity == RiskSeverity.MEDIUM
        assert result.requires_manual_review
        assert result.flags == [f"DUPLICATE: Application {first.reference_number} already exists"]

    def test_duplicate_outside_window_ignored(self, screen, submit, clock):
        """Applications older than the window are not duplicates."""
        submit()
        clock.advance(days=8)
        assert screen().risk_score == 0

    def test_rescreen_excludes_own_application(self, screen, submit):
        """The application being re-screened is not its own duplicate."""
        first = submit()
        assert screen(exclude_application_id=first.id).risk_score == 0

    def test_recent_rejection(self, services, screen, under_review, director):
        """A rejection in the last 30 days adds 25 points."""
        application = under_review()
        services.lifecycle.reject(application.id, director, "Incomplete documents").unwrap()
        result = screen()
        assert result.risk_score == 25
        assert result.flags == ["RECENT_REJECTION: Rejected on 2025-03-10"]

    def test_overstay_history(self, db, screen, submit, clock):
        """A past overstay above 7 days adds 35 points."""
        application = submit()
        clock.advance(days=10)
        with db.session_scope() as session:
            ApplicationRepository(session).get_by_id(application.id).overstay_days = 12
        result = screen()
        assert result.risk_score == 35
        assert result.flags == ["OVERSTAY_HISTORY: 12 days overstay"]

    def test_suspicious_phone_sharing(self, screen, submit, clock):
        """Three other IDs on the same phone add 30 points."""
        for index in range(3):
            submit(national_id=f"OTHER-{index}", phone_number="+9647700000000")
            clock.advance(days=8)
        result = screen(national_id="NEW-ID", phone_number="+9647700000000")
        assert result.risk_score == 30
        assert result.flags == ["SUSPICIOUS: 3 different IDs using same phone"]

    def test_two_other_ids_not_suspicious(self, screen, submit):
        """Below the threshold the phone check stays silent."""
        submit(national_id="OTHER-1", phone_number="+9647700000000")
        submit(national_id="OTHER-2", phone_number="+9647700000000")
        assert screen(national_id="NEW-ID", phone_number="+9647700000000").risk_score == 0

    def test_score_clamped_to_100(self, screen, submit, add_watchlist):
        """Watchlist plus duplicate exceeds 100 and is clamped."""
        submit(national_id="Y-123")
        add_watchlist("Y-123", RiskSeverity.CRITICAL)
        result = screen(national_id="Y-123")
        assert result.risk_score == 100
        assert len(result.flags) == 2


class TestScoreComposition:
    """Tests for how the five checks combine."""

    def test_score_never_decreases_as_checks_fire(
        self, db, services, screen, submit, under_review, director, add_watchlist
    ):
        """Each newly triggered check keeps the score non-decreasing and within 0..100."""
        def watchlist():
            add_watchlist("Y-123", RiskSeverity.LOW)

        def duplicate():
            submit(national_id="Y-123")

        def rejection():
            application = under_review(national_id="Y-123")
            services.lifecycle.reject(application.id, director, "Incomplete documents").unwrap()

        def overstay():
            application = submit(national_id="Y-123")
            with db.session_scope() as session:
                ApplicationRepository(session).get_by_id(application.id).overstay_days = 12

        def phone_pattern():
            for index in range(3):
                submit(national_id=f"OTHER-{index}")

        previous = screen(national_id="Y-123").risk_score
        assert previous == 0
        for step in (watchlist, duplicate, rejection, overstay, phone_pattern):
            step()
            score = screen(national_id="Y-123").risk_score
            assert 0 <= score <= 100, step.__name__
            assert score >= previous, step.__name__
            previous = score

        result = screen(national_id="Y-123")
        assert result.risk_score == 100
        assert len(result.flags) == 5
        assert result.details.watchlist_match
        assert result.details.duplicate_application
        assert result.details.recent_rejection
        assert result.details.overstay_history
        assert result.details.suspicious_pattern
