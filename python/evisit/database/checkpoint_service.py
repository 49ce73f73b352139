"""
Checkpoint verification: scan a permit QR and record entry or exit.

The payload check runs first and touches nothing. Everything after it
(lookup, status, validity window, watchlist, the transition itself)
runs in one transaction on the locked application row, so a refused
scan writes no log row and changes no status.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy.orm import Session

from evisit.actors import Actor, require_actor
from evisit.clock import Clock, end_of_day, start_of_day, utc_now
from evisit.database.connection import DatabaseSessionProvider
from evisit.database.lifecycle_service import ApplicationLifecycleService
from evisit.database.models import (
    Application,
    ApplicationStatus,
    CheckpointAction,
    EntryExitLog,
    UserRole,
)
from evisit.database.repositories import (
    ApplicationRepository,
    EntryExitLogRepository,
    WatchlistRepository,
)
from evisit.errors import ErrorKind, PermitError, returns_result, validation_error
from evisit.notifications import NotificationDispatcher, NotificationKind
from evisit.qr_codec import PermitCodec
from evisit.security_logger import SecurityLogger, get_security_logger

logger = logging.getLogger(__name__)

CHECKPOINT_ROLES = (
    UserRole.CHECKPOINT_OFFICER,
    UserRole.OFFICER,
    UserRole.SUPERVISOR,
    UserRole.ADMIN,
)
ADMITTING_STATUSES = (ApplicationStatus.APPROVED, ApplicationStatus.ACTIVE)


@dataclass
class CheckpointOutcome:
    """A recorded entry or exit"""
    application: Application
    log: EntryExitLog
    action: CheckpointAction

    def to_dict(self) -> Dict[str, Any]:
        application = self.application
        return {
            "success": True,
            "action": self.action.value,
            "log_id": str(self.log.id),
            "recorded_at": self.log.recorded_at.isoformat(),
            "checkpoint_id": self.log.checkpoint_id,
            "application": {
                "id": str(application.id),
                "reference_number": application.reference_number,
                "full_name": application.full_name,
                "national_id": application.national_id,
                "status": application.status.value,
                "current_location": application.current_location.value,
                "valid_until": application.valid_until.isoformat() if application.valid_until else None,
            },
        }


def _parse_action(action: Union[CheckpointAction, str]) -> CheckpointAction:
    try:
        return CheckpointAction(action)
    except ValueError:
        raise validation_error("action must be ENTRY or EXIT", field="action")


class CheckpointService:
    """Verifies permits at checkpoints and applies entry/exit."""

    def __init__(
        self,
        db_provider: DatabaseSessionProvider,
        codec: PermitCodec,
        lifecycle: ApplicationLifecycleService,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Clock = utc_now,
        security_logger: Optional[SecurityLogger] = None
    ):
        self._db = db_provider
        self._codec = codec
        self._lifecycle = lifecycle
        self._notifier = notifier
        self._clock = clock
        self._security = security_logger

    @property
    def security(self) -> SecurityLogger:
        return self._security or get_security_logger()

    @returns_result
    def verify(
        self,
        raw_payload: Any,
        action: Union[CheckpointAction, str],
        checkpoint_id: str,
        actor: Actor,
        checkpoint_name: Optional[str] = None
    ) -> CheckpointOutcome:
        """
        Verify a scanned permit and record the crossing.

        Failure codes, in check order: INVALID_QR, APPLICATION_NOT_FOUND,
        NOT_APPROVED, PERMIT_EXPIRED, WATCHLIST_ALERT, then ALREADY_INSIDE
        or NOT_INSIDE from the transition itself.
        """
        require_actor(actor, CHECKPOINT_ROLES, "operate a checkpoint")
        action = _parse_action(action)
        if not checkpoint_id or not str(checkpoint_id).strip():
            raise validation_error("checkpoint_id is required", field="checkpoint_id")
        now = self._clock()

        verification = self._codec.parse_and_verify(raw_payload, now=now)
        if not verification.ok:
            self.security.log_qr_rejected(
                verification.failure.value,
                raw_payload if isinstance(raw_payload, str) else repr(raw_payload),
                checkpoint_id,
                actor.id,
            )
            raise PermitError(
                "INVALID_QR",
                verification.message,
                verification.failure.error_kind,
                details={"reason": verification.failure.value}
            )

        try:
            application_id = UUID(verification.application_id)
        except ValueError:
            raise self._not_found()

        def work(session: Session) -> CheckpointOutcome:
            application = ApplicationRepository(session).get_by_id(application_id, for_update=True)
            if application is None:
                raise self._not_found()

            if application.status not in ADMITTING_STATUSES:
                raise PermitError(
                    "NOT_APPROVED",
                    f"Application is not approved (status: {application.status.value})",
                    ErrorKind.INVALID_STATE_TRANSITION,
                    details={"status": application.status.value}
                )

            if not self._within_validity(application, now):
                raise PermitError(
                    "PERMIT_EXPIRED",
                    "Permit is not valid at this time",
                    ErrorKind.EXPIRED,
                    details={
                        "valid_from": application.valid_from.isoformat() if application.valid_from else None,
                        "valid_until": application.valid_until.isoformat() if application.valid_until else None,
                    }
                )

            entries = WatchlistRepository(session).find_active(now, application.national_id, application.email)
            if entries:
                entry = entries[0]
                self.security.log_watchlist_alert(
                    str(application.id), checkpoint_id,
                    entry.flag_type.value, entry.severity.value, actor.id
                )
                raise PermitError(
                    "WATCHLIST_ALERT",
                    "SECURITY ALERT: Visitor is flagged in watchlist",
                    ErrorKind.SECURITY_GATE,
                    details={
                        "reason": entry.reason,
                        "flaggedBy": entry.created_by,
                        "flagType": entry.flag_type.value,
                        "severity": entry.severity.value,
                    }
                )

            log = self._lifecycle.apply_checkpoint_action(
                session, application, action, checkpoint_id, actor, now, checkpoint_name
            )
            return CheckpointOutcome(application=application, log=log, action=action)

        outcome = self._db.run_transaction(work)
        logger.info(
            "%s recorded for %s at %s",
            action.value, outcome.application.reference_number, checkpoint_id
        )
        if action == CheckpointAction.ENTRY and self._notifier is not None:
            valid_until = outcome.application.valid_until
            self._notifier.notify(NotificationKind.ENTRY_RECORDED, outcome.application, {
                "checkpoint_name": checkpoint_name or checkpoint_id,
                "valid_until": valid_until.date().isoformat() if valid_until else "",
            })
        return outcome

    @staticmethod
    def _not_found() -> PermitError:
        return PermitError("APPLICATION_NOT_FOUND", "Application not found", ErrorKind.NOT_FOUND)

    @staticmethod
    def _within_validity(application: Application, now: datetime) -> bool:
        if application.valid_from is not None and now < application.valid_from:
            return False
        if application.valid_until is not None and now > application.valid_until:
            return False
        return True

    @returns_result
    def logs(
        self,
        actor: Actor,
        checkpoint_id: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Tuple[List[EntryExitLog], int]:
        require_actor(actor, CHECKPOINT_ROLES, "view checkpoint logs")
        page = max(page, 1)
        with self._db.session_scope() as session:
            return EntryExitLogRepository(session).search(
                checkpoint_id=checkpoint_id, start=start, end=end,
                offset=(page - 1) * limit, limit=limit
            )

    def logs_for_day(
        self,
        actor: Actor,
        day: Optional[date] = None,
        checkpoint_id: Optional[str] = None,
        limit: int = 500
    ):
        """Logs recorded during one UTC day (today by default)"""
        day = day or self._clock().date()
        return self.logs(
            actor, checkpoint_id=checkpoint_id, page=1, limit=limit,
            start=start_of_day(day), end=end_of_day(day)
        )

    @returns_result
    def active_visitors(self, actor: Actor, page: int = 1, limit: int = 100) -> Tuple[List[Application], int]:
        """Visitors currently inside, overstayers included"""
        require_actor(actor, CHECKPOINT_ROLES, "view active visitors")
        page = max(page, 1)
        with self._db.session_scope() as session:
            return ApplicationRepository(session).list_active_visitors(offset=(page - 1) * limit, limit=limit)
