"""
SQLAlchemy ORM Models for the KRG e-Visit permit system

Tables:
1. applications - Visit applications (aggregate root)
2. watchlist_entries - Supervisor-curated and auto-generated watchlist
3. entry_exit_logs - Append-only checkpoint records
4. audit_logs - Immutable trail of every lifecycle transition
5. reference_sequences - Per-year counter for reference numbers

Types are portable between PostgreSQL (production) and SQLite (tests):
JSON columns use JSONB on PostgreSQL, and all timestamps are stored
and returned as timezone-aware UTC.
"""

import uuid
from datetime import date, datetime
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Boolean, Date, DateTime, Text, JSON, Uuid,
    ForeignKey, Index, CheckConstraint, Enum
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from evisit.clock import ensure_utc, utc_now

# Base class for all models
Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """DateTime that always binds and loads timezone-aware UTC values"""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            value = ensure_utc(value)
        return value

    def process_result_value(self, value, dialect):
        if value is not None:
            value = ensure_utc(value)
        return value


# ============================================
# ENUMS
# ============================================

class ApplicationStatus(str, PyEnum):
    """Lifecycle status of an application"""
    SUBMITTED = "SUBMITTED"
    ASSIGNED = "ASSIGNED"
    UNDER_REVIEW = "UNDER_REVIEW"
    PENDING_DOCUMENTS = "PENDING_DOCUMENTS"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ACTIVE = "ACTIVE"
    EXITED = "EXITED"
    OVERSTAYED = "OVERSTAYED"


TERMINAL_STATUSES = frozenset({ApplicationStatus.REJECTED, ApplicationStatus.EXITED})


class VisitPurpose(str, PyEnum):
    TOURISM = "TOURISM"
    BUSINESS = "BUSINESS"
    FAMILY_VISIT = "FAMILY_VISIT"
    MEDICAL = "MEDICAL"
    EDUCATION = "EDUCATION"
    OTHER = "OTHER"


class PriorityLevel(str, PyEnum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class RiskSeverity(str, PyEnum):
    """Severity band of a risk score, also used for watchlist entries"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


SEVERITY_RANK = {
    RiskSeverity.LOW: 1,
    RiskSeverity.MEDIUM: 2,
    RiskSeverity.HIGH: 3,
    RiskSeverity.CRITICAL: 4,
}


class WatchlistFlagType(str, PyEnum):
    OVERSTAY = "OVERSTAY"
    FRAUD = "FRAUD"
    SECURITY_CONCERN = "SECURITY_CONCERN"
    DUPLICATE = "DUPLICATE"


class VisitorLocation(str, PyEnum):
    NOT_ENTERED = "NOT_ENTERED"
    INSIDE = "INSIDE"
    EXITED = "EXITED"


class CheckpointAction(str, PyEnum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"


class UserRole(str, PyEnum):
    """Role carried by the caller of an operation"""
    APPLICANT = "APPLICANT"
    OFFICER = "OFFICER"
    SUPERVISOR = "SUPERVISOR"
    DIRECTOR = "DIRECTOR"
    ADMIN = "ADMIN"
    CHECKPOINT_OFFICER = "CHECKPOINT_OFFICER"
    SYSTEM = "SYSTEM"


class AuditAction(str, PyEnum):
    """Type of audit action"""
    SUBMIT_APPLICATION = "SUBMIT_APPLICATION"
    ASSIGN_APPLICATION = "ASSIGN_APPLICATION"
    REVIEW_APPLICATION = "REVIEW_APPLICATION"
    OVERRIDE_RISK_GATE = "OVERRIDE_RISK_GATE"
    APPROVE_APPLICATION = "APPROVE_APPLICATION"
    REJECT_APPLICATION = "REJECT_APPLICATION"
    REQUEST_DOCUMENTS = "REQUEST_DOCUMENTS"
    DOCUMENTS_RECEIVED = "DOCUMENTS_RECEIVED"
    RESCREEN_APPLICATION = "RESCREEN_APPLICATION"
    REISSUE_PERMIT = "REISSUE_PERMIT"
    CHECKPOINT_ENTRY = "CHECKPOINT_ENTRY"
    CHECKPOINT_EXIT = "CHECKPOINT_EXIT"
    MARK_OVERSTAY = "MARK_OVERSTAY"
    WATCHLIST_ADD = "WATCHLIST_ADD"
    WATCHLIST_REMOVE = "WATCHLIST_REMOVE"


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps.

    Values come from the service clock rather than the database server so
    that time windows computed in Python and in SQL agree.
    """
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True),
        default=utc_now,
        nullable=False,
        index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )


# ============================================
# APPLICATION
# ============================================

class Application(Base, TimestampMixin):
    """
    A visit application and, once approved, the source of truth for the permit.

    Status changes only through ApplicationLifecycleService. The ``version``
    column is the optimistic-lock counter: a flush against a stale row
    raises StaleDataError instead of overwriting a concurrent change.
    """
    __tablename__ = "applications"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    reference_number: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)

    # Applicant
    national_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(254), nullable=True, index=True)
    date_of_birth: Mapped[date] = mapped_column(Date, nullable=False)
    nationality: Mapped[str] = mapped_column(String(100), nullable=False, default="Iraq")

    # Visit
    origin_governorate: Mapped[str] = mapped_column(String(100), nullable=False)
    destination_governorate: Mapped[str] = mapped_column(String(100), nullable=False)
    visit_purpose: Mapped[VisitPurpose] = mapped_column(Enum(VisitPurpose), nullable=False)
    visit_purpose_other: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    visit_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    visit_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    declared_accommodation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Processing
    status: Mapped[ApplicationStatus] = mapped_column(
        Enum(ApplicationStatus),
        nullable=False,
        default=ApplicationStatus.SUBMITTED,
        index=True
    )
    priority_level: Mapped[PriorityLevel] = mapped_column(
        Enum(PriorityLevel),
        nullable=False,
        default=PriorityLevel.NORMAL
    )
    processing_deadline: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    assigned_officer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    reviewed_by_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    review_recommendation: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    requested_documents: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    # Risk screening
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    risk_severity: Mapped[RiskSeverity] = mapped_column(
        Enum(RiskSeverity),
        nullable=False,
        default=RiskSeverity.LOW
    )
    risk_flags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    risk_passed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requires_supervisor_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    screened_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    risk_override_by_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    risk_override_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    risk_override_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)

    # Decision
    approved_by_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    approval_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    approval_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    valid_from: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    valid_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    permit_expiry_date: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(timezone=True),
        nullable=True,
        index=True
    )
    rejected_by_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    rejection_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejection_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    permit_payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    permit_signature: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    permit_issued_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)

    # Entry / exit
    current_location: Mapped[VisitorLocation] = mapped_column(
        Enum(VisitorLocation),
        nullable=False,
        default=VisitorLocation.NOT_ENTERED
    )
    entry_timestamp: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    entry_checkpoint_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    exit_timestamp: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    exit_checkpoint_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    overstay_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Version for optimistic locking
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    entry_exit_logs: Mapped[List["EntryExitLog"]] = relationship(
        "EntryExitLog",
        back_populates="application",
        order_by="EntryExitLog.recorded_at"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_applications_national_created', 'national_id', 'created_at'),
        Index('ix_applications_phone_created', 'phone_number', 'created_at'),
        Index('ix_applications_status_expiry', 'status', 'permit_expiry_date'),
        CheckConstraint('risk_score >= 0 AND risk_score <= 100', name='ck_applications_risk_score'),
        CheckConstraint('overstay_days >= 0', name='ck_applications_overstay_days'),
        CheckConstraint('visit_end_date >= visit_start_date', name='ck_applications_visit_dates'),
    )

    def __repr__(self) -> str:
        return f"<Application(ref='{self.reference_number}', status={self.status})>"


# ============================================
# WATCHLIST
# ============================================

class WatchlistEntry(Base, TimestampMixin):
    """
    Flagged identity consulted during screening and at checkpoints.

    Never hard-deleted: removal sets is_active=False, and entries with
    an expires_at in the past are ignored.
    """
    __tablename__ = "watchlist_entries"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    national_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(254), nullable=True, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    flag_type: Mapped[WatchlistFlagType] = mapped_column(Enum(WatchlistFlagType), nullable=False)
    severity: Mapped[RiskSeverity] = mapped_column(Enum(RiskSeverity), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    source_application_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(timezone=True), nullable=True)
    deactivated_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        Index('ix_watchlist_active_national', 'is_active', 'national_id'),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "national_id": self.national_id,
            "full_name": self.full_name,
            "reason": self.reason,
            "flag_type": self.flag_type.value,
            "severity": self.severity.value,
            "is_active": self.is_active,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<WatchlistEntry(national_id='{self.national_id}', flag={self.flag_type}, severity={self.severity})>"


# ============================================
# CHECKPOINT LOGS
# ============================================

class EntryExitLog(Base):
    """
    One row per successful checkpoint action.

    Immutable - no updates or deletes allowed.
    """
    __tablename__ = "entry_exit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    application_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("applications.id"),
        nullable=False,
        index=True
    )
    log_type: Mapped[CheckpointAction] = mapped_column(Enum(CheckpointAction), nullable=False)
    checkpoint_id: Mapped[str] = mapped_column(String(100), nullable=False)
    checkpoint_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    officer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False)

    application: Mapped["Application"] = relationship("Application", back_populates="entry_exit_logs")

    __table_args__ = (
        Index('ix_entry_exit_checkpoint_time', 'checkpoint_id', 'recorded_at'),
        Index('ix_entry_exit_recorded_at', 'recorded_at'),
    )

    def __repr__(self) -> str:
        return f"<EntryExitLog(application={self.application_id}, type={self.log_type}, checkpoint='{self.checkpoint_id}')>"


# ============================================
# AUDIT
# ============================================

class AuditLog(Base):
    """
    Audit trail of lifecycle transitions and watchlist changes.

    Written in the same transaction as the change it records.
    Immutable - no updates or deletes allowed.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime(timezone=True),
        default=utc_now,
        nullable=False,
        index=True
    )
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    actor_role: Mapped[UserRole] = mapped_column(Enum(UserRole), nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    old_value: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    new_value: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index('ix_audit_resource', 'resource_type', 'resource_id'),
        Index('ix_audit_actor', 'actor_id', 'timestamp'),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, resource='{self.resource_type}')>"


# ============================================
# REFERENCE NUMBER SEQUENCE
# ============================================

class ReferenceSequence(Base):
    """Last issued reference sequence value per calendar year"""
    __tablename__ = "reference_sequences"

    year: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<ReferenceSequence(year={self.year}, last_value={self.last_value})>"
