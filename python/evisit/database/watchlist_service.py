"""
Watchlist curation: supervisors add and remove flagged identities.

Entries are never deleted. Removal deactivates every matching active
entry and is recorded in the audit trail like any other change.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from evisit.actors import Actor, require_actor
from evisit.clock import Clock, ensure_utc, utc_now
from evisit.database.connection import DatabaseSessionProvider
from evisit.database.models import (
    AuditAction,
    RiskSeverity,
    UserRole,
    WatchlistEntry,
    WatchlistFlagType,
)
from evisit.database.repositories import AuditRepository, WatchlistRepository
from evisit.errors import returns_result, validation_error
from evisit.log_utils import mask_identifier
from evisit.security_logger import SecurityLogger, get_security_logger

logger = logging.getLogger(__name__)

CURATOR_ROLES = (UserRole.SUPERVISOR, UserRole.DIRECTOR, UserRole.ADMIN)
READER_ROLES = CURATOR_ROLES + (UserRole.OFFICER, UserRole.CHECKPOINT_OFFICER)


def _parse_enum(enum_cls, value, field):
    try:
        return value if isinstance(value, enum_cls) else enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise validation_error(f"{field} must be one of: {allowed}", field=field)


class WatchlistService:
    """Add, remove and query watchlist entries."""

    def __init__(
        self,
        db_provider: DatabaseSessionProvider,
        clock: Clock = utc_now,
        security_logger: Optional[SecurityLogger] = None
    ):
        self._db = db_provider
        self._clock = clock
        self._security = security_logger

    @property
    def security(self) -> SecurityLogger:
        return self._security or get_security_logger()

    @returns_result
    def add_to_watchlist(
        self,
        actor: Actor,
        national_id: str,
        reason: str,
        flag_type,
        severity,
        full_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        email: Optional[str] = None,
        expires_at: Optional[datetime] = None
    ) -> WatchlistEntry:
        require_actor(actor, CURATOR_ROLES, "edit the watchlist")
        if not national_id or not national_id.strip():
            raise validation_error("national_id is required", field="national_id")
        if not reason or not reason.strip():
            raise validation_error("reason is required", field="reason")
        flag_type = _parse_enum(WatchlistFlagType, flag_type, "flag_type")
        severity = _parse_enum(RiskSeverity, severity, "severity")

        now = self._clock()
        if expires_at is not None:
            expires_at = ensure_utc(expires_at)
            if expires_at <= now:
                raise validation_error("expires_at must be in the future", field="expires_at")

        def work(session):
            entry = WatchlistRepository(session).create({
                "national_id": national_id.strip(),
                "full_name": full_name,
                "phone_number": phone_number,
                "email": email,
                "reason": reason.strip(),
                "flag_type": flag_type,
                "severity": severity,
                "is_active": True,
                "expires_at": expires_at,
                "created_by": actor.id,
                "created_at": now,
                "updated_at": now,
            })
            AuditRepository(session).log(
                action=AuditAction.WATCHLIST_ADD,
                resource_type="watchlist_entry",
                resource_id=str(entry.id),
                actor_id=actor.id,
                actor_role=actor.role,
                new_value={"flag_type": flag_type.value, "severity": severity.value},
                timestamp=now,
            )
            return entry

        entry = self._db.run_transaction(work)
        self.security.log_access_event(
            "WATCHLIST_CHANGED", actor.id, "add", blocked=False,
            additional_context={"flag_type": flag_type.value, "severity": severity.value}
        )
        logger.warning(
            "Added to watchlist: %s - %s (%s)",
            mask_identifier(entry.national_id), flag_type.value, severity.value
        )
        return entry

    @returns_result
    def remove_from_watchlist(
        self,
        actor: Actor,
        national_id: str,
        flag_type=None
    ) -> int:
        """Deactivate entries for national_id; returns how many were deactivated."""
        require_actor(actor, CURATOR_ROLES, "edit the watchlist")
        if not national_id:
            raise validation_error("national_id is required", field="national_id")
        if flag_type is not None:
            flag_type = _parse_enum(WatchlistFlagType, flag_type, "flag_type")
        now = self._clock()

        def work(session):
            entries = WatchlistRepository(session).deactivate(national_id, now, actor.id, flag_type)
            for entry in entries:
                AuditRepository(session).log(
                    action=AuditAction.WATCHLIST_REMOVE,
                    resource_type="watchlist_entry",
                    resource_id=str(entry.id),
                    actor_id=actor.id,
                    actor_role=actor.role,
                    old_value={"is_active": True},
                    new_value={"is_active": False},
                    timestamp=now,
                )
            return len(entries)

        removed = self._db.run_transaction(work)
        self.security.log_access_event(
            "WATCHLIST_CHANGED", actor.id, "remove", blocked=False,
            additional_context={"deactivated": removed}
        )
        logger.info("Removed from watchlist: %s (%d entries)", mask_identifier(national_id), removed)
        return removed

    @returns_result
    def check_watchlist(self, national_id: str, email: Optional[str] = None) -> Optional[WatchlistEntry]:
        """Most severe active, unexpired entry for the identity, if any"""
        now = self._clock()
        with self._db.session_scope() as session:
            entries = WatchlistRepository(session).find_active(now, national_id, email)
        return entries[0] if entries else None

    @returns_result
    def list_watchlist(
        self,
        actor: Actor,
        active_only: bool = True,
        national_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 100
    ) -> Tuple[List[WatchlistEntry], int]:
        require_actor(actor, READER_ROLES, "view the watchlist")
        with self._db.session_scope() as session:
            return WatchlistRepository(session).search(active_only, national_id, offset, limit)
