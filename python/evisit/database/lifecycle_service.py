"""
Application Lifecycle Service

Owns every status change of an application:

    SUBMITTED -> ASSIGNED -> UNDER_REVIEW -> APPROVED | REJECTED | PENDING_DOCUMENTS
    PENDING_DOCUMENTS -> UNDER_REVIEW
    APPROVED -> ACTIVE (checkpoint entry) -> EXITED (checkpoint exit)
    ACTIVE -> OVERSTAYED (overstay sweep)

REJECTED and EXITED are terminal. Each transition:
- requires a caller identity with an allowed role,
- loads the application row locked for update,
- writes the state change and its audit entry in one transaction,
- notifies the applicant only after that transaction committed.

Public methods return OperationResult; see evisit.errors.

Usage:
    service = ApplicationLifecycleService(db_provider, codec, notifier, config)
    result = service.approve(application_id, director, valid_from=date.today())
    if result.ok:
        permit = result.value.permit
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy.orm import Session

from evisit.actors import Actor, require_actor
from evisit.clock import Clock, end_of_day, ensure_utc, start_of_day, utc_now
from evisit.config_manager import ConfigManager
from evisit.database.connection import DatabaseSessionProvider
from evisit.database.models import (
    Application,
    ApplicationStatus,
    AuditAction,
    AuditLog,
    CheckpointAction,
    EntryExitLog,
    PriorityLevel,
    UserRole,
    VisitorLocation,
    VisitPurpose,
)
from evisit.database.repositories import (
    ApplicationRepository,
    AuditRepository,
    EntryExitLogRepository,
    ReferenceSequenceRepository,
    RepositoryError,
)
from evisit.database.risk_service import RiskAssessment, RiskScoringEngine, merge_flags
from evisit.errors import (
    ErrorKind,
    PermitError,
    invalid_transition,
    not_found,
    returns_result,
    validation_error,
)
from evisit.log_utils import mask_identifier
from evisit.notifications import NotificationDispatcher, NotificationKind
from evisit.qr_codec import IssuedPermit, PermitCodec
from evisit.security_logger import SecurityLogger, get_security_logger

logger = logging.getLogger(__name__)

SUBMIT_ROLES = (UserRole.APPLICANT, UserRole.OFFICER, UserRole.SUPERVISOR, UserRole.ADMIN)
STAFF_ROLES = (UserRole.OFFICER, UserRole.SUPERVISOR, UserRole.DIRECTOR, UserRole.ADMIN)
ASSIGN_ROLES = (UserRole.SUPERVISOR, UserRole.ADMIN)
REVIEW_ROLES = (UserRole.OFFICER, UserRole.SUPERVISOR)
OVERRIDE_ROLES = (UserRole.SUPERVISOR, UserRole.DIRECTOR, UserRole.ADMIN)
DECISION_ROLES = (UserRole.DIRECTOR, UserRole.ADMIN)
REISSUE_ROLES = STAFF_ROLES + (UserRole.APPLICANT,)

REVIEW_RECOMMENDATIONS = ("APPROVE", "REJECT", "REQUEST_DOCUMENTS")
SCREENABLE_STATUSES = (
    ApplicationStatus.SUBMITTED,
    ApplicationStatus.ASSIGNED,
    ApplicationStatus.UNDER_REVIEW,
    ApplicationStatus.PENDING_DOCUMENTS,
)
PERMIT_STATUSES = (ApplicationStatus.APPROVED, ApplicationStatus.ACTIVE)


def format_reference_number(prefix: str, year: int, sequence: int) -> str:
    """``KRG-2025-000042``"""
    return f"{prefix}-{year:04d}-{sequence:06d}"


@dataclass
class ApplicationInput:
    """Applicant-supplied fields of a new application"""
    national_id: str
    full_name: str
    phone_number: str
    date_of_birth: date
    origin_governorate: str
    destination_governorate: str
    visit_purpose: Union[VisitPurpose, str]
    visit_start_date: date
    visit_end_date: date
    email: Optional[str] = None
    nationality: str = "Iraq"
    visit_purpose_other: Optional[str] = None
    declared_accommodation: Optional[str] = None

    def validate(self, today: date) -> None:
        """
        Raises:
            PermitError: VALIDATION for the first offending field
        """
        for name in ("national_id", "full_name", "phone_number",
                     "origin_governorate", "destination_governorate"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise validation_error(f"{name} is required", field=name)
            setattr(self, name, value.strip())

        if len(self.full_name) < 2:
            raise validation_error("full_name must be at least 2 characters", field="full_name")
        if self.email is not None and "@" not in self.email:
            raise validation_error("email is not a valid address", field="email")

        try:
            self.visit_purpose = VisitPurpose(self.visit_purpose)
        except ValueError:
            allowed = ", ".join(p.value for p in VisitPurpose)
            raise validation_error(f"visit_purpose must be one of: {allowed}", field="visit_purpose")
        if self.visit_purpose == VisitPurpose.OTHER and not self.visit_purpose_other:
            raise validation_error("visit_purpose_other is required when purpose is OTHER",
                                   field="visit_purpose_other")

        if self.date_of_birth >= today:
            raise validation_error("date_of_birth must be in the past", field="date_of_birth")
        if self.visit_end_date < self.visit_start_date:
            raise validation_error("visit_end_date must not be before visit_start_date",
                                   field="visit_end_date")

    def to_record(self) -> Dict[str, Any]:
        return {
            "national_id": self.national_id,
            "full_name": self.full_name,
            "phone_number": self.phone_number,
            "email": self.email,
            "date_of_birth": self.date_of_birth,
            "nationality": self.nationality or "Iraq",
            "origin_governorate": self.origin_governorate,
            "destination_governorate": self.destination_governorate,
            "visit_purpose": self.visit_purpose,
            "visit_purpose_other": self.visit_purpose_other,
            "visit_start_date": self.visit_start_date,
            "visit_end_date": self.visit_end_date,
            "declared_accommodation": self.declared_accommodation,
        }


@dataclass
class PermitDecision:
    """An approved application with the permit minted for it"""
    application: Application
    permit: IssuedPermit


@dataclass
class ScreeningOutcome:
    """Re-screen result: the stored application and the fresh assessment"""
    application: Application
    assessment: RiskAssessment
    new_flags: List[str] = field(default_factory=list)


def _bound(value: Optional[Union[date, datetime]], default: date, upper: bool) -> datetime:
    """Dates expand to the start/end of the UTC day; datetimes are kept exact."""
    if value is None:
        value = default
    if isinstance(value, datetime):
        return ensure_utc(value)
    return end_of_day(value) if upper else start_of_day(value)


class ApplicationLifecycleService:
    """State machine for visit applications."""

    def __init__(
        self,
        db_provider: DatabaseSessionProvider,
        codec: PermitCodec,
        notifier: Optional[NotificationDispatcher] = None,
        config: Optional[ConfigManager] = None,
        clock: Clock = utc_now,
        security_logger: Optional[SecurityLogger] = None
    ):
        self._db = db_provider
        self._codec = codec
        self._notifier = notifier
        self.config = config or ConfigManager(load_env=False)
        self._clock = clock
        self._security = security_logger

    @property
    def security(self) -> SecurityLogger:
        return self._security or get_security_logger()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _authorize(self, actor: Optional[Actor], roles: Iterable[UserRole], action: str) -> Actor:
        try:
            return require_actor(actor, roles, action)
        except PermitError as e:
            if e.kind == ErrorKind.PERMISSION_DENIED:
                self.security.log_access_event("PERMISSION_DENIED", actor.id, action, blocked=True,
                                               additional_context={"role": actor.role.value})
            raise

    @staticmethod
    def _load(session: Session, application_id: UUID) -> Application:
        application = ApplicationRepository(session).get_by_id(application_id, for_update=True)
        if application is None:
            raise not_found("application", application_id)
        return application

    @staticmethod
    def _require_status(application: Application, allowed: Iterable[ApplicationStatus], action: str) -> None:
        if application.status not in tuple(allowed):
            raise invalid_transition(action, application.status)

    @staticmethod
    def _audit(
        session: Session,
        action: AuditAction,
        application: Application,
        actor: Actor,
        now: datetime,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditLog:
        return AuditRepository(session).log(
            action=action,
            resource_type="application",
            resource_id=str(application.id),
            actor_id=actor.id,
            actor_role=actor.role,
            old_value=old_value,
            new_value=new_value,
            details=details,
            timestamp=now,
        )

    def _notify(self, kind: NotificationKind, application: Application, extra: Optional[Dict[str, Any]] = None) -> None:
        if self._notifier is not None:
            self._notifier.notify(kind, application, extra)

    @staticmethod
    def _apply_assessment(application: Application, assessment: RiskAssessment) -> List[str]:
        """Store a fresh assessment; flags accumulate, the score is replaced."""
        previous = list(application.risk_flags or [])
        merged = merge_flags(previous, assessment.flags)
        application.risk_flags = merged
        application.risk_score = assessment.risk_score
        application.risk_severity = assessment.severity
        application.risk_passed = assessment.passed
        application.requires_manual_review = assessment.requires_manual_review
        application.requires_supervisor_review = assessment.requires_supervisor_review
        application.screened_at = assessment.screened_at
        if assessment.requires_supervisor_review:
            application.priority_level = PriorityLevel.HIGH
        return [flag for flag in merged if flag not in previous]

    # ------------------------------------------------------------------
    # submission
    # ------------------------------------------------------------------

    @returns_result
    def submit(self, data: ApplicationInput, actor: Actor) -> Application:
        """
        Create an application: validate, screen, assign a reference number.

        The reference counter row stays locked until commit, so concurrent
        submissions get distinct, increasing numbers.
        """
        actor = self._authorize(actor, SUBMIT_ROLES, "submit an application")
        now = self._clock()
        data.validate(now.date())

        def work(session: Session) -> Application:
            assessment = RiskScoringEngine(session, self.config.screening, self._clock).screen(
                data.national_id, data.phone_number, data.full_name, now=now
            )
            try:
                sequence = ReferenceSequenceRepository(session).next_value(now.year)
                record = data.to_record()
                record.update({
                    "reference_number": format_reference_number(
                        self.config.permit.reference_prefix, now.year, sequence
                    ),
                    "status": ApplicationStatus.SUBMITTED,
                    "priority_level": PriorityLevel.NORMAL,
                    "processing_deadline": now + timedelta(hours=self.config.permit.processing_deadline_hours),
                    "risk_flags": [],
                    "current_location": VisitorLocation.NOT_ENTERED,
                    "overstay_days": 0,
                    "created_at": now,
                    "updated_at": now,
                })
                application = ApplicationRepository(session).create(record)
            except RepositoryError as e:
                raise PermitError("STORAGE_FAILURE", str(e), ErrorKind.STORAGE_FAILURE)

            self._apply_assessment(application, assessment)
            session.flush()
            self._audit(
                session, AuditAction.SUBMIT_APPLICATION, application, actor, now,
                new_value={
                    "status": application.status.value,
                    "reference_number": application.reference_number,
                    "risk_score": assessment.risk_score,
                    "risk_severity": assessment.severity.value,
                },
                details={"flags": assessment.flags},
            )
            return application

        application = self._db.run_transaction(work)
        logger.info(
            "Application %s submitted for %s (risk %d %s)",
            application.reference_number, mask_identifier(application.national_id),
            application.risk_score, application.risk_severity.value
        )
        self._notify(NotificationKind.SUBMITTED, application)
        return application

    # ------------------------------------------------------------------
    # processing transitions
    # ------------------------------------------------------------------

    @returns_result
    def assign(self, application_id: UUID, officer_id: str, actor: Actor) -> Application:
        actor = self._authorize(actor, ASSIGN_ROLES, "assign applications")
        if not officer_id or not str(officer_id).strip():
            raise validation_error("officer_id is required", field="officer_id")
        now = self._clock()

        def work(session: Session) -> Application:
            application = self._load(session, application_id)
            self._require_status(application, (ApplicationStatus.SUBMITTED, ApplicationStatus.ASSIGNED), "assign")
            old = {"status": application.status.value, "assigned_officer_id": application.assigned_officer_id}
            application.assigned_officer_id = str(officer_id).strip()
            application.assigned_at = now
            application.status = ApplicationStatus.ASSIGNED
            application.updated_at = now
            session.flush()
            self._audit(session, AuditAction.ASSIGN_APPLICATION, application, actor, now, old_value=old,
                        new_value={"status": application.status.value,
                                   "assigned_officer_id": application.assigned_officer_id})
            return application

        return self._db.run_transaction(work)

    @returns_result
    def review(
        self,
        application_id: UUID,
        actor: Actor,
        notes: Optional[str] = None,
        recommendation: Optional[str] = None
    ) -> Application:
        actor = self._authorize(actor, REVIEW_ROLES, "review applications")
        if recommendation is not None and recommendation not in REVIEW_RECOMMENDATIONS:
            raise validation_error(
                f"recommendation must be one of: {', '.join(REVIEW_RECOMMENDATIONS)}",
                field="recommendation"
            )
        now = self._clock()

        def work(session: Session) -> Application:
            application = self._load(session, application_id)
            self._require_status(application, (ApplicationStatus.ASSIGNED,), "review")
            if actor.role == UserRole.OFFICER and application.assigned_officer_id != actor.id:
                raise PermitError(
                    "PERMISSION_DENIED",
                    "Only the assigned officer may review this application",
                    ErrorKind.PERMISSION_DENIED
                )
            application.reviewed_by_id = actor.id
            application.reviewed_at = now
            application.review_notes = notes
            application.review_recommendation = recommendation
            application.status = ApplicationStatus.UNDER_REVIEW
            application.updated_at = now
            session.flush()
            self._audit(session, AuditAction.REVIEW_APPLICATION, application, actor, now,
                        old_value={"status": ApplicationStatus.ASSIGNED.value},
                        new_value={"status": application.status.value, "recommendation": recommendation})
            return application

        return self._db.run_transaction(work)

    @returns_result
    def override_risk_gate(self, application_id: UUID, actor: Actor, reason: str) -> Application:
        """Let a blocked application proceed to approval, with a recorded justification."""
        actor = self._authorize(actor, OVERRIDE_ROLES, "override the risk gate")
        if not reason or not reason.strip():
            raise validation_error("An override justification is required", field="reason")
        now = self._clock()

        def work(session: Session) -> Application:
            application = self._load(session, application_id)
            self._require_status(application, SCREENABLE_STATUSES, "override the risk gate of")
            application.risk_override_by_id = actor.id
            application.risk_override_reason = reason.strip()
            application.risk_override_at = now
            application.updated_at = now
            session.flush()
            self._audit(session, AuditAction.OVERRIDE_RISK_GATE, application, actor, now,
                        details={"reason": application.risk_override_reason,
                                 "risk_score": application.risk_score,
                                 "risk_severity": application.risk_severity.value})
            return application

        application = self._db.run_transaction(work)
        self.security.log_access_event(
            "RISK_GATE_OVERRIDE", actor.id, "override", blocked=False,
            additional_context={"application_id": str(application.id), "risk_score": application.risk_score}
        )
        return application

    @returns_result
    def approve(
        self,
        application_id: UUID,
        actor: Actor,
        valid_from: Optional[Union[date, datetime]] = None,
        valid_until: Optional[Union[date, datetime]] = None,
        notes: Optional[str] = None
    ) -> PermitDecision:
        """
        Approve and mint the permit.

        The validity window defaults to the visit dates. Dates cover whole
        UTC days; datetimes are used exactly.
        """
        actor = self._authorize(actor, DECISION_ROLES, "approve applications")
        if valid_from is not None and valid_until is not None:
            if _bound(valid_from, valid_from, False) > _bound(valid_until, valid_until, True):
                raise validation_error("valid_from must not be after valid_until", field="valid_from")
        now = self._clock()

        def work(session: Session) -> PermitDecision:
            application = self._load(session, application_id)
            self._require_status(application, (ApplicationStatus.UNDER_REVIEW,), "approve")
            if not application.risk_passed and not application.risk_override_by_id:
                self.security.log_access_event(
                    "SECURITY_GATE_BLOCKED", actor.id, "approve", blocked=True,
                    additional_context={"application_id": str(application.id),
                                        "risk_score": application.risk_score}
                )
                raise PermitError(
                    "SECURITY_GATE",
                    "Risk screening blocks approval until a supervisor overrides it",
                    ErrorKind.SECURITY_GATE,
                    details={
                        "risk_score": application.risk_score,
                        "risk_severity": application.risk_severity.value,
                        "risk_flags": list(application.risk_flags or []),
                    }
                )

            window_start = _bound(valid_from, application.visit_start_date, upper=False)
            window_end = _bound(valid_until, application.visit_end_date, upper=True)
            if window_start > window_end:
                raise validation_error("valid_from must not be after valid_until", field="valid_from")

            permit = self._codec.issue(str(application.id), now=now)

            application.approved_by_id = actor.id
            application.approval_date = now
            application.approval_notes = notes
            application.valid_from = window_start
            application.valid_until = window_end
            application.permit_expiry_date = window_end
            application.permit_payload = permit.payload
            application.permit_signature = permit.signature
            application.permit_issued_at = now
            application.status = ApplicationStatus.APPROVED
            application.updated_at = now
            session.flush()
            self._audit(session, AuditAction.APPROVE_APPLICATION, application, actor, now,
                        old_value={"status": ApplicationStatus.UNDER_REVIEW.value},
                        new_value={"status": application.status.value,
                                   "valid_from": window_start.isoformat(),
                                   "valid_until": window_end.isoformat()},
                        details={"risk_override_by": application.risk_override_by_id})
            return PermitDecision(application=application, permit=permit)

        decision = self._db.run_transaction(work)
        logger.info("Application %s approved by %s", decision.application.reference_number, actor.id)
        self._notify(NotificationKind.APPROVED, decision.application,
                     {"valid_until": decision.application.valid_until.date().isoformat()})
        return decision

    @returns_result
    def reject(self, application_id: UUID, actor: Actor, reason: str, notes: Optional[str] = None) -> Application:
        actor = self._authorize(actor, DECISION_ROLES, "reject applications")
        if not reason or not reason.strip():
            raise validation_error("A rejection reason is required", field="reason")
        now = self._clock()

        def work(session: Session) -> Application:
            application = self._load(session, application_id)
            self._require_status(application, (ApplicationStatus.UNDER_REVIEW,), "reject")
            application.rejected_by_id = actor.id
            application.rejection_date = now
            application.rejection_reason = reason.strip()
            application.rejection_notes = notes
            application.status = ApplicationStatus.REJECTED
            application.updated_at = now
            session.flush()
            self._audit(session, AuditAction.REJECT_APPLICATION, application, actor, now,
                        old_value={"status": ApplicationStatus.UNDER_REVIEW.value},
                        new_value={"status": application.status.value},
                        details={"reason": application.rejection_reason})
            return application

        application = self._db.run_transaction(work)
        logger.info("Application %s rejected by %s", application.reference_number, actor.id)
        self._notify(NotificationKind.REJECTED, application, {"reason": application.rejection_reason})
        return application

    @returns_result
    def request_documents(
        self,
        application_id: UUID,
        actor: Actor,
        documents: List[str],
        notes: Optional[str] = None
    ) -> Application:
        actor = self._authorize(actor, STAFF_ROLES, "request documents")
        documents = [d.strip() for d in (documents or []) if isinstance(d, str) and d.strip()]
        if not documents:
            raise validation_error("At least one document must be requested", field="documents")
        now = self._clock()

        def work(session: Session) -> Application:
            application = self._load(session, application_id)
            self._require_status(application, (ApplicationStatus.UNDER_REVIEW,), "request documents for")
            application.requested_documents = documents
            application.status = ApplicationStatus.PENDING_DOCUMENTS
            application.updated_at = now
            session.flush()
            self._audit(session, AuditAction.REQUEST_DOCUMENTS, application, actor, now,
                        old_value={"status": ApplicationStatus.UNDER_REVIEW.value},
                        new_value={"status": application.status.value},
                        details={"documents": documents, "notes": notes,
                                 "summary": f"Requested documents: {', '.join(documents)}"})
            return application

        application = self._db.run_transaction(work)
        self._notify(NotificationKind.DOCUMENTS_REQUESTED, application, {"documents": documents})
        return application

    @returns_result
    def documents_received(self, application_id: UUID, actor: Actor) -> Application:
        actor = self._authorize(actor, STAFF_ROLES, "record received documents")
        now = self._clock()

        def work(session: Session) -> Application:
            application = self._load(session, application_id)
            self._require_status(application, (ApplicationStatus.PENDING_DOCUMENTS,), "resume review of")
            application.status = ApplicationStatus.UNDER_REVIEW
            application.updated_at = now
            session.flush()
            self._audit(session, AuditAction.DOCUMENTS_RECEIVED, application, actor, now,
                        old_value={"status": ApplicationStatus.PENDING_DOCUMENTS.value},
                        new_value={"status": application.status.value},
                        details={"documents": list(application.requested_documents or [])})
            return application

        return self._db.run_transaction(work)

    @returns_result
    def rescreen(self, application_id: UUID, actor: Actor) -> ScreeningOutcome:
        """Recompute the risk score; previously raised flags are kept."""
        actor = self._authorize(actor, STAFF_ROLES, "re-screen applications")
        now = self._clock()

        def work(session: Session) -> ScreeningOutcome:
            application = self._load(session, application_id)
            self._require_status(application, SCREENABLE_STATUSES, "re-screen")
            old = {"risk_score": application.risk_score, "risk_severity": application.risk_severity.value}
            assessment = RiskScoringEngine(session, self.config.screening, self._clock).screen(
                application.national_id, application.phone_number, application.full_name,
                exclude_application_id=application.id, now=now
            )
            new_flags = self._apply_assessment(application, assessment)
            application.updated_at = now
            session.flush()
            self._audit(session, AuditAction.RESCREEN_APPLICATION, application, actor, now, old_value=old,
                        new_value={"risk_score": assessment.risk_score,
                                   "risk_severity": assessment.severity.value},
                        details={"new_flags": new_flags})
            return ScreeningOutcome(application=application, assessment=assessment, new_flags=new_flags)

        return self._db.run_transaction(work)

    @returns_result
    def reissue_permit(
        self,
        application_id: UUID,
        actor: Actor,
        national_id: Optional[str] = None
    ) -> PermitDecision:
        """
        Mint a fresh permit QR for an approved or active application.

        Applicants must also present the national ID on the application;
        a mismatch is reported as not found.
        """
        actor = self._authorize(actor, REISSUE_ROLES, "reissue permits")
        now = self._clock()

        def work(session: Session) -> PermitDecision:
            application = self._load(session, application_id)
            if actor.role == UserRole.APPLICANT and application.national_id != national_id:
                raise not_found("application", application_id)
            self._require_status(application, PERMIT_STATUSES, "reissue the permit of")
            permit = self._codec.issue(str(application.id), now=now)
            application.permit_payload = permit.payload
            application.permit_signature = permit.signature
            application.permit_issued_at = now
            application.updated_at = now
            session.flush()
            self._audit(session, AuditAction.REISSUE_PERMIT, application, actor, now,
                        new_value={"permit_issued_at": now.isoformat()})
            return PermitDecision(application=application, permit=permit)

        return self._db.run_transaction(work)

    # ------------------------------------------------------------------
    # checkpoint transitions (run inside CheckpointService's transaction)
    # ------------------------------------------------------------------

    def apply_checkpoint_action(
        self,
        session: Session,
        application: Application,
        action: CheckpointAction,
        checkpoint_id: str,
        actor: Actor,
        now: datetime,
        checkpoint_name: Optional[str] = None
    ) -> EntryExitLog:
        """
        Record entry or exit on a locked application.

        Raises:
            PermitError: ALREADY_INSIDE on a second entry, NOT_INSIDE on exit
                         without a recorded entry
        """
        old_status = application.status
        if action == CheckpointAction.ENTRY:
            if (application.status == ApplicationStatus.ACTIVE
                    or application.current_location == VisitorLocation.INSIDE):
                raise PermitError("ALREADY_INSIDE", "Visitor is already inside KRG", ErrorKind.ALREADY_INSIDE)
            self._require_status(application, (ApplicationStatus.APPROVED,), "record entry for")
            application.status = ApplicationStatus.ACTIVE
            application.current_location = VisitorLocation.INSIDE
            application.entry_timestamp = now
            application.entry_checkpoint_id = checkpoint_id
            audit_action = AuditAction.CHECKPOINT_ENTRY
        else:
            if application.status != ApplicationStatus.ACTIVE:
                raise PermitError("NOT_INSIDE", "Visitor is not inside KRG", ErrorKind.NOT_INSIDE)
            application.status = ApplicationStatus.EXITED
            application.current_location = VisitorLocation.EXITED
            application.exit_timestamp = now
            application.exit_checkpoint_id = checkpoint_id
            audit_action = AuditAction.CHECKPOINT_EXIT

        application.updated_at = now
        session.flush()
        log = EntryExitLogRepository(session).append(
            application_id=application.id,
            log_type=action,
            checkpoint_id=checkpoint_id,
            checkpoint_name=checkpoint_name,
            officer_id=actor.id,
            recorded_at=now,
        )
        self._audit(session, audit_action, application, actor, now,
                    old_value={"status": old_status.value},
                    new_value={"status": application.status.value},
                    details={"checkpoint_id": checkpoint_id, "log_id": str(log.id)})
        return log

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    @returns_result
    def get(self, application_id: UUID) -> Application:
        with self._db.session_scope() as session:
            application = ApplicationRepository(session).get_by_id(application_id)
            if application is None:
                raise not_found("application", application_id)
            return application

    @returns_result
    def get_by_reference(self, reference_number: str) -> Application:
        with self._db.session_scope() as session:
            application = ApplicationRepository(session).get_by_reference(reference_number)
            if application is None:
                raise not_found("application", reference_number)
            return application

    @returns_result
    def list_applications(
        self,
        actor: Actor,
        status: Optional[ApplicationStatus] = None,
        assigned_officer_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[Application], int]:
        self._authorize(actor, STAFF_ROLES, "list applications")
        with self._db.session_scope() as session:
            return ApplicationRepository(session).search(
                status=status, assigned_officer_id=assigned_officer_id, offset=offset, limit=limit
            )

    @returns_result
    def preview_screening(
        self,
        actor: Actor,
        national_id: str,
        phone_number: str,
        full_name: str = ""
    ) -> RiskAssessment:
        """Score an identity as a submission would, storing nothing."""
        self._authorize(actor, STAFF_ROLES, "preview screening")
        with self._db.session_scope() as session:
            return RiskScoringEngine(session, self.config.screening, self._clock).screen(
                national_id, phone_number, full_name
            )

    @returns_result
    def audit_trail(self, application_id: UUID) -> List[AuditLog]:
        with self._db.session_scope() as session:
            return AuditRepository(session).for_resource("application", str(application_id))

    @returns_result
    def permit_image(self, application_id: UUID) -> bytes:
        """PNG of the currently stored permit payload"""
        with self._db.session_scope() as session:
            application = ApplicationRepository(session).get_by_id(application_id)
            if application is None:
                raise not_found("application", application_id)
            if not application.permit_payload:
                raise not_found("permit", application_id)
            payload = application.permit_payload
        return self._codec.render(payload)
