"""
Repository Pattern for e-Visit Database Operations

Provides the data access layer used by the services. Repositories take
an open session and never commit; transaction boundaries belong to the
calling service.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID
from datetime import datetime

from sqlalchemy import select, update, func, and_, or_, true
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from evisit.database.models import (
    Application,
    ApplicationStatus,
    AuditAction,
    AuditLog,
    CheckpointAction,
    EntryExitLog,
    ReferenceSequence,
    SEVERITY_RANK,
    UserRole,
    WatchlistEntry,
    WatchlistFlagType,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class DuplicateEntityError(RepositoryError):
    """Raised when attempting to create a duplicate record."""
    pass


# ============================================
# REFERENCE NUMBER SEQUENCE
# ============================================

class ReferenceSequenceRepository:
    """Atomic per-year counter backing reference numbers."""

    MAX_ATTEMPTS = 3

    def __init__(self, session: Session):
        self.session = session

    def next_value(self, year: int) -> int:
        """
        Increment and return the counter for year.

        The UPDATE takes a row lock held until the caller's transaction
        ends, so concurrent submissions receive distinct values. The first
        use of a year inserts the row inside a savepoint; losing that race
        to another transaction surfaces as IntegrityError and the increment
        is retried.
        """
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            result = self.session.execute(
                update(ReferenceSequence)
                .where(ReferenceSequence.year == year)
                .values(last_value=ReferenceSequence.last_value + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                return self.session.execute(
                    select(ReferenceSequence.last_value).where(ReferenceSequence.year == year)
                ).scalar_one()

            try:
                with self.session.begin_nested():
                    self.session.add(ReferenceSequence(year=year, last_value=1))
                return 1
            except IntegrityError:
                logger.debug("Sequence row for %d created concurrently (attempt %d)", year, attempt)

        raise RepositoryError(f"Could not allocate reference sequence for {year}")


# ============================================
# APPLICATION REPOSITORY
# ============================================

class ApplicationRepository:
    """Repository for application operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, data: Dict[str, Any]) -> Application:
        """
        Create a new application.

        Raises:
            DuplicateEntityError: If the reference number is already taken
        """
        application = Application(**data)
        try:
            with self.session.begin_nested():
                self.session.add(application)
        except IntegrityError as e:
            raise DuplicateEntityError(f"Application already exists: {e.orig}")

        logger.debug("Created application %s", application.reference_number)
        return application

    def get_by_id(self, application_id: UUID, for_update: bool = False) -> Optional[Application]:
        """
        Get application by ID.

        Args:
            application_id: UUID of the application
            for_update: Lock the row until the transaction ends
        """
        query = select(Application).where(Application.id == application_id)
        if for_update:
            query = query.with_for_update()
        return self.session.execute(query).scalar_one_or_none()

    def get_by_reference(self, reference_number: str) -> Optional[Application]:
        query = select(Application).where(Application.reference_number == reference_number)
        return self.session.execute(query).scalar_one_or_none()

    def search(
        self,
        status: Optional[ApplicationStatus] = None,
        assigned_officer_id: Optional[str] = None,
        national_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[Application], int]:
        """
        List applications with filters, newest first.

        Returns:
            Tuple of (applications, total count)
        """
        conditions = []
        if status:
            conditions.append(Application.status == status)
        if assigned_officer_id:
            conditions.append(Application.assigned_officer_id == assigned_officer_id)
        if national_id:
            conditions.append(Application.national_id == national_id)

        where = and_(*conditions) if conditions else true()

        total = self.session.execute(
            select(func.count(Application.id)).where(where)
        ).scalar_one()

        query = (
            select(Application)
            .where(where)
            .order_by(Application.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.execute(query).scalars().all()), total

    # ---- screening queries ----

    def find_recent_duplicate(
        self,
        national_id: str,
        since: datetime,
        statuses: Iterable[ApplicationStatus],
        exclude_id: Optional[UUID] = None
    ) -> Optional[Application]:
        """Most recent application for national_id created at or after since."""
        conditions = [
            Application.national_id == national_id,
            Application.created_at >= since,
            Application.status.in_(list(statuses)),
        ]
        if exclude_id is not None:
            conditions.append(Application.id != exclude_id)

        query = (
            select(Application)
            .where(and_(*conditions))
            .order_by(Application.created_at.desc())
            .limit(1)
        )
        return self.session.execute(query).scalar_one_or_none()

    def find_recent_rejection(self, national_id: str, since: datetime) -> Optional[Application]:
        query = (
            select(Application)
            .where(and_(
                Application.national_id == national_id,
                Application.status == ApplicationStatus.REJECTED,
                Application.rejection_date >= since,
            ))
            .order_by(Application.rejection_date.desc())
            .limit(1)
        )
        return self.session.execute(query).scalar_one_or_none()

    def find_overstay_history(self, national_id: str, min_days: int) -> Optional[Application]:
        """Application for national_id with the longest overstay above min_days."""
        query = (
            select(Application)
            .where(and_(
                Application.national_id == national_id,
                Application.overstay_days > min_days,
            ))
            .order_by(Application.overstay_days.desc())
            .limit(1)
        )
        return self.session.execute(query).scalar_one_or_none()

    def count_other_ids_for_phone(self, phone_number: str, since: datetime, national_id: str) -> int:
        """Distinct national IDs other than national_id using phone_number since a cutoff."""
        query = select(func.count(func.distinct(Application.national_id))).where(and_(
            Application.phone_number == phone_number,
            Application.created_at >= since,
            Application.national_id != national_id,
        ))
        return self.session.execute(query).scalar_one()

    # ---- checkpoint / overstay queries ----

    def find_overstay_candidate_ids(self, expired_before: datetime) -> List[UUID]:
        """IDs of ACTIVE applications whose permit expired before the cutoff with no exit."""
        query = (
            select(Application.id)
            .where(and_(
                Application.status == ApplicationStatus.ACTIVE,
                Application.permit_expiry_date < expired_before,
                Application.exit_timestamp.is_(None),
            ))
            .order_by(Application.permit_expiry_date)
        )
        return list(self.session.execute(query).scalars().all())

    def list_active_visitors(self, offset: int = 0, limit: int = 100) -> Tuple[List[Application], int]:
        condition = Application.status.in_([ApplicationStatus.ACTIVE, ApplicationStatus.OVERSTAYED])
        total = self.session.execute(
            select(func.count(Application.id)).where(condition)
        ).scalar_one()
        query = (
            select(Application)
            .where(condition)
            .order_by(Application.entry_timestamp.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.execute(query).scalars().all()), total


# ============================================
# WATCHLIST REPOSITORY
# ============================================

class WatchlistRepository:
    """Repository for watchlist entries."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, data: Dict[str, Any]) -> WatchlistEntry:
        entry = WatchlistEntry(**data)
        self.session.add(entry)
        self.session.flush()
        logger.debug("Created watchlist entry %s", entry.id)
        return entry

    def find_active(
        self,
        now: datetime,
        national_id: str,
        email: Optional[str] = None
    ) -> List[WatchlistEntry]:
        """
        Active, unexpired entries matching national_id (or email when given),
        most severe first.
        """
        identity = WatchlistEntry.national_id == national_id
        if email:
            identity = or_(identity, func.lower(WatchlistEntry.email) == email.lower())

        query = select(WatchlistEntry).where(and_(
            identity,
            WatchlistEntry.is_active.is_(True),
            or_(WatchlistEntry.expires_at.is_(None), WatchlistEntry.expires_at >= now),
        ))
        entries = list(self.session.execute(query).scalars().all())
        entries.sort(key=lambda e: (SEVERITY_RANK[e.severity], e.created_at), reverse=True)
        return entries

    def deactivate(
        self,
        national_id: str,
        now: datetime,
        deactivated_by: str,
        flag_type: Optional[WatchlistFlagType] = None
    ) -> List[WatchlistEntry]:
        """Deactivate active entries for national_id, optionally one flag type only."""
        conditions = [
            WatchlistEntry.national_id == national_id,
            WatchlistEntry.is_active.is_(True),
        ]
        if flag_type:
            conditions.append(WatchlistEntry.flag_type == flag_type)

        entries = list(self.session.execute(
            select(WatchlistEntry).where(and_(*conditions))
        ).scalars().all())
        for entry in entries:
            entry.is_active = False
            entry.deactivated_at = now
            entry.deactivated_by = deactivated_by
        self.session.flush()
        return entries

    def search(
        self,
        active_only: bool = True,
        national_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 100
    ) -> Tuple[List[WatchlistEntry], int]:
        conditions = []
        if active_only:
            conditions.append(WatchlistEntry.is_active.is_(True))
        if national_id:
            conditions.append(WatchlistEntry.national_id == national_id)
        where = and_(*conditions) if conditions else true()

        total = self.session.execute(
            select(func.count(WatchlistEntry.id)).where(where)
        ).scalar_one()
        query = (
            select(WatchlistEntry)
            .where(where)
            .order_by(WatchlistEntry.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.execute(query).scalars().all()), total


# ============================================
# ENTRY / EXIT LOG REPOSITORY
# ============================================

class EntryExitLogRepository:
    """Append-only access to checkpoint logs."""

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        application_id: UUID,
        log_type: CheckpointAction,
        checkpoint_id: str,
        officer_id: str,
        recorded_at: datetime,
        checkpoint_name: Optional[str] = None
    ) -> EntryExitLog:
        log = EntryExitLog(
            application_id=application_id,
            log_type=log_type,
            checkpoint_id=checkpoint_id,
            checkpoint_name=checkpoint_name,
            officer_id=officer_id,
            recorded_at=recorded_at
        )
        self.session.add(log)
        self.session.flush()
        return log

    def search(
        self,
        checkpoint_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[EntryExitLog], int]:
        """
        Search logs, newest first.

        Returns:
            Tuple of (logs, total count)
        """
        conditions = []
        if checkpoint_id:
            conditions.append(EntryExitLog.checkpoint_id == checkpoint_id)
        if start:
            conditions.append(EntryExitLog.recorded_at >= start)
        if end:
            conditions.append(EntryExitLog.recorded_at <= end)
        where = and_(*conditions) if conditions else true()

        total = self.session.execute(
            select(func.count(EntryExitLog.id)).where(where)
        ).scalar_one()
        query = (
            select(EntryExitLog)
            .where(where)
            .order_by(EntryExitLog.recorded_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.execute(query).scalars().all()), total


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository:
    """Repository for audit log operations."""

    def __init__(self, session: Session):
        self.session = session

    def log(
        self,
        action: AuditAction,
        resource_type: str,
        actor_id: str,
        actor_role: UserRole,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
        success: bool = True
    ) -> AuditLog:
        """
        Create an audit log entry in the current transaction.

        Args:
            action: Type of action
            resource_type: Type of resource affected
            actor_id / actor_role: Caller identity
            resource_id: ID of resource
            details: Additional details
            old_value: Value before change
            new_value: Value after change
            timestamp: Operation time snapshot
            success: Whether action succeeded
        """
        log = AuditLog(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            actor_role=actor_role,
            details=details,
            old_value=old_value,
            new_value=new_value,
            success=success
        )
        if timestamp is not None:
            log.timestamp = timestamp

        self.session.add(log)
        self.session.flush()
        return log

    def for_resource(self, resource_type: str, resource_id: str) -> List[AuditLog]:
        query = (
            select(AuditLog)
            .where(and_(
                AuditLog.resource_type == resource_type,
                AuditLog.resource_id == resource_id,
            ))
            .order_by(AuditLog.timestamp)
        )
        return list(self.session.execute(query).scalars().all())

    def search(
        self,
        action: Optional[AuditAction] = None,
        actor_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 100
    ) -> Tuple[List[AuditLog], int]:
        """
        Search audit logs with filters.

        Returns:
            Tuple of (logs list, total count)
        """
        conditions = []
        if action:
            conditions.append(AuditLog.action == action)
        if actor_id:
            conditions.append(AuditLog.actor_id == actor_id)
        if start_date:
            conditions.append(AuditLog.timestamp >= start_date)
        if end_date:
            conditions.append(AuditLog.timestamp <= end_date)
        where = and_(*conditions) if conditions else true()

        total = self.session.execute(
            select(func.count(AuditLog.id)).where(where)
        ).scalar_one()
        query = (
            select(AuditLog)
            .where(where)
            .order_by(AuditLog.timestamp.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.execute(query).scalars().all()), total
