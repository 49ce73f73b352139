"""
Risk Scoring Engine for e-Visit applications

Five independent checks each add a fixed number of points:

    Watchlist           active, unexpired entry for the national ID
                        (CRITICAL 80 / HIGH 50 / MEDIUM 30 / LOW 15)
    Duplicate           another open application in the last 7 days   +40
    Recent rejection    rejected in the last 30 days                  +25
    Overstay history    any application with more than 7 overstay days +35
    Suspicious pattern  3+ other national IDs on the same phone
                        in the last 30 days                           +30

The sum is clamped to [0, 100] and banded into a severity. CRITICAL and
HIGH block approval until a supervisor overrides the gate; MEDIUM is
flagged for manual review.

This module also hosts the scheduled overstay sweep, which feeds the
watchlist that the screening reads.

Usage:
    with db_provider.session_scope() as session:
        engine = RiskScoringEngine(session, config.screening)
        assessment = engine.screen("19912345678", "+9647501234567", "Ahmed Karim")
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from evisit.actors import SYSTEM_ACTOR
from evisit.clock import Clock, utc_now, whole_days_between
from evisit.config_manager import OverstayConfig, ScreeningConfig
from evisit.database.connection import DatabaseSessionProvider
from evisit.database.models import (
    Application,
    ApplicationStatus,
    AuditAction,
    RiskSeverity,
    WatchlistFlagType,
)
from evisit.database.repositories import (
    ApplicationRepository,
    AuditRepository,
    WatchlistRepository,
)
from evisit.log_utils import mask_identifier

logger = logging.getLogger(__name__)

DUPLICATE_STATUSES = (
    ApplicationStatus.SUBMITTED,
    ApplicationStatus.UNDER_REVIEW,
    ApplicationStatus.APPROVED,
    ApplicationStatus.ACTIVE,
)


@dataclass
class RiskDetails:
    """Which checks fired"""
    watchlist_match: bool = False
    duplicate_application: bool = False
    recent_rejection: bool = False
    overstay_history: bool = False
    suspicious_pattern: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            "watchlist_match": self.watchlist_match,
            "duplicate_application": self.duplicate_application,
            "recent_rejection": self.recent_rejection,
            "overstay_history": self.overstay_history,
            "suspicious_pattern": self.suspicious_pattern,
        }


@dataclass
class RiskAssessment:
    """Result of screening one applicant"""
    risk_score: int
    severity: RiskSeverity
    flags: List[str] = field(default_factory=list)
    passed: bool = True
    requires_supervisor_review: bool = False
    requires_manual_review: bool = False
    details: RiskDetails = field(default_factory=RiskDetails)
    screened_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_score": self.risk_score,
            "severity": self.severity.value,
            "flags": list(self.flags),
            "passed": self.passed,
            "requires_supervisor_review": self.requires_supervisor_review,
            "requires_manual_review": self.requires_manual_review,
            "details": self.details.to_dict(),
            "screened_at": self.screened_at.isoformat() if self.screened_at else None,
        }


def classify_score(score: int) -> RiskSeverity:
    """Severity band for a clamped score"""
    if score >= 80:
        return RiskSeverity.CRITICAL
    if score >= 50:
        return RiskSeverity.HIGH
    if score >= 30:
        return RiskSeverity.MEDIUM
    return RiskSeverity.LOW


def gate_for(severity: RiskSeverity) -> Tuple[bool, bool, bool]:
    """(passed, requires_supervisor_review, requires_manual_review) for a band"""
    if severity in (RiskSeverity.CRITICAL, RiskSeverity.HIGH):
        return False, True, True
    if severity == RiskSeverity.MEDIUM:
        return True, False, True
    return True, False, False


def merge_flags(existing: Optional[List[str]], new: List[str]) -> List[str]:
    """Union of flag lists, keeping first-seen order"""
    merged = list(existing or [])
    for flag in new:
        if flag not in merged:
            merged.append(flag)
    return merged


class RiskScoringEngine:
    """
    Composite risk screening against the application history and watchlist.

    Session-bound; runs inside the caller's transaction and never writes.
    "now" is taken once per screen() call so every window uses the same
    reference point.
    """

    def __init__(
        self,
        session: Session,
        config: Optional[ScreeningConfig] = None,
        clock: Clock = utc_now
    ):
        self.session = session
        self.config = config or ScreeningConfig()
        self._clock = clock
        self._applications = ApplicationRepository(session)
        self._watchlist = WatchlistRepository(session)

    def screen(
        self,
        national_id: str,
        phone_number: str,
        full_name: str,
        exclude_application_id: Optional[UUID] = None,
        now: Optional[datetime] = None
    ) -> RiskAssessment:
        """
        Run all five checks and combine them.

        Args:
            national_id: Applicant national ID
            phone_number: Applicant phone number
            full_name: Applicant name (carried for audit display only)
            exclude_application_id: Application being re-screened, ignored by the duplicate check
            now: Operation time snapshot; defaults to the engine clock
        """
        now = now or self._clock()
        details = RiskDetails()
        flags: List[str] = []
        score = 0

        for check in (
            self._check_watchlist,
            self._check_duplicate,
            self._check_recent_rejection,
            self._check_overstay_history,
            self._check_suspicious_pattern,
        ):
            points, flag = check(national_id, phone_number, exclude_application_id, now, details)
            if flag:
                score += points
                flags.append(flag)

        score = max(0, min(100, score))
        severity = classify_score(score)
        passed, supervisor, manual = gate_for(severity)

        logger.info(
            "Screened %s: score=%d severity=%s flags=%d",
            mask_identifier(national_id), score, severity.value, len(flags)
        )

        return RiskAssessment(
            risk_score=score,
            severity=severity,
            flags=flags,
            passed=passed,
            requires_supervisor_review=supervisor,
            requires_manual_review=manual,
            details=details,
            screened_at=now,
        )

    def _check_watchlist(self, national_id, phone_number, exclude_id, now, details):
        entries = self._watchlist.find_active(now, national_id)
        if not entries:
            return 0, None
        entry = entries[0]
        details.watchlist_match = True
        points = self.config.watchlist_weights.get(entry.severity.value, 0)
        return points, f"WATCHLIST: {entry.flag_type.value} - {entry.reason}"

    def _check_duplicate(self, national_id, phone_number, exclude_id, now, details):
        since = now - timedelta(days=self.config.duplicate_window_days)
        duplicate = self._applications.find_recent_duplicate(
            national_id, since, DUPLICATE_STATUSES, exclude_id
        )
        if duplicate is None:
            return 0, None
        details.duplicate_application = True
        return (
            self.config.weights['duplicate'],
            f"DUPLICATE: Application {duplicate.reference_number} already exists"
        )

    def _check_recent_rejection(self, national_id, phone_number, exclude_id, now, details):
        since = now - timedelta(days=self.config.rejection_window_days)
        rejected = self._applications.find_recent_rejection(national_id, since)
        if rejected is None:
            return 0, None
        details.recent_rejection = True
        return (
            self.config.weights['recent_rejection'],
            f"RECENT_REJECTION: Rejected on {rejected.rejection_date.date().isoformat()}"
        )

    def _check_overstay_history(self, national_id, phone_number, exclude_id, now, details):
        previous = self._applications.find_overstay_history(
            national_id, self.config.overstay_history_min_days
        )
        if previous is None:
            return 0, None
        details.overstay_history = True
        return (
            self.config.weights['overstay_history'],
            f"OVERSTAY_HISTORY: {previous.overstay_days} days overstay"
        )

    def _check_suspicious_pattern(self, national_id, phone_number, exclude_id, now, details):
        since = now - timedelta(days=self.config.phone_window_days)
        other_ids = self._applications.count_other_ids_for_phone(phone_number, since, national_id)
        if other_ids < self.config.suspicious_phone_threshold:
            return 0, None
        details.suspicious_pattern = True
        return (
            self.config.weights['suspicious_pattern'],
            f"SUSPICIOUS: {other_ids} different IDs using same phone"
        )


# ============================================
# OVERSTAY SWEEP
# ============================================

@dataclass
class OverstaySweepReport:
    """Summary of one sweep run"""
    started_at: datetime
    candidates: int = 0
    flagged: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def watchlisted(self) -> int:
        return sum(1 for item in self.flagged if item["watchlisted"])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "candidates": self.candidates,
            "flagged": self.flagged,
            "watchlisted": self.watchlisted,
            "failed": self.failed,
        }


def overstay_severity(overstay_days: int, config: OverstayConfig) -> Optional[RiskSeverity]:
    """Watchlist severity for an overstay, or None below the watchlist threshold"""
    if overstay_days > config.high_severity_days:
        return RiskSeverity.HIGH
    if overstay_days > config.medium_severity_days:
        return RiskSeverity.MEDIUM
    if overstay_days > config.watchlist_min_days:
        return RiskSeverity.LOW
    return None


class OverstaySweepService:
    """
    Marks ACTIVE visitors whose permit expired more than grace_days ago
    and who never exited as OVERSTAYED.

    Each application is handled in its own transaction with the row
    locked and re-checked, so a checkpoint exit that lands first wins.
    """

    def __init__(
        self,
        db_provider: DatabaseSessionProvider,
        config: Optional[OverstayConfig] = None,
        clock: Clock = utc_now
    ):
        self._db = db_provider
        self.config = config or OverstayConfig()
        self._clock = clock

    def detect_and_flag_overstays(self) -> OverstaySweepReport:
        now = self._clock()
        cutoff = now - timedelta(days=self.config.grace_days)
        report = OverstaySweepReport(started_at=now)

        with self._db.session_scope() as session:
            candidate_ids = ApplicationRepository(session).find_overstay_candidate_ids(cutoff)
        report.candidates = len(candidate_ids)

        for application_id in candidate_ids:
            try:
                outcome = self._db.run_transaction(
                    lambda session: self._flag_one(session, application_id, now, cutoff)
                )
            except Exception:
                logger.exception("Overstay sweep failed for application %s", application_id)
                report.failed.append(str(application_id))
                continue
            if outcome is not None:
                report.flagged.append(outcome)

        logger.info(
            "Overstay sweep: candidates=%d flagged=%d watchlisted=%d failed=%d",
            report.candidates, len(report.flagged), report.watchlisted, len(report.failed)
        )
        return report

    def _flag_one(
        self,
        session: Session,
        application_id: UUID,
        now: datetime,
        cutoff: datetime
    ) -> Optional[Dict[str, Any]]:
        application = ApplicationRepository(session).get_by_id(application_id, for_update=True)
        if not self._still_overstaying(application, cutoff):
            return None

        overstay_days = whole_days_between(application.permit_expiry_date, now)
        old_status = application.status
        application.status = ApplicationStatus.OVERSTAYED
        application.overstay_days = overstay_days
        application.updated_at = now

        severity = overstay_severity(overstay_days, self.config)
        if severity is not None:
            WatchlistRepository(session).create({
                "national_id": application.national_id,
                "phone_number": application.phone_number,
                "email": application.email,
                "full_name": application.full_name,
                "reason": f"Overstayed by {overstay_days} days",
                "flag_type": WatchlistFlagType.OVERSTAY,
                "severity": severity,
                "is_active": True,
                "expires_at": now + timedelta(days=self.config.watchlist_ttl_days),
                "created_by": SYSTEM_ACTOR.id,
                "source_application_id": application.id,
                "created_at": now,
                "updated_at": now,
            })

        AuditRepository(session).log(
            action=AuditAction.MARK_OVERSTAY,
            resource_type="application",
            resource_id=str(application.id),
            actor_id=SYSTEM_ACTOR.id,
            actor_role=SYSTEM_ACTOR.role,
            old_value={"status": old_status.value},
            new_value={
                "status": ApplicationStatus.OVERSTAYED.value,
                "overstay_days": overstay_days,
                "watchlist_severity": severity.value if severity else None,
            },
            timestamp=now,
        )

        return {
            "application_id": str(application.id),
            "reference_number": application.reference_number,
            "overstay_days": overstay_days,
            "watchlisted": severity is not None,
        }

    @staticmethod
    def _still_overstaying(application: Optional[Application], cutoff: datetime) -> bool:
        return (
            application is not None
            and application.status == ApplicationStatus.ACTIVE
            and application.exit_timestamp is None
            and application.permit_expiry_date is not None
            and application.permit_expiry_date < cutoff
        )
