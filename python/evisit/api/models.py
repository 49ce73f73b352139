"""
Pydantic request/response schemas for the e-Visit permit API

Request models validate shape and simple formats; business rules
(status transitions, roles, screening) stay in the services.
"""

import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from evisit.database.models import (
    Application,
    AuditLog,
    EntryExitLog,
    WatchlistEntry,
)

PHONE_PATTERN = re.compile(r'^\+?[0-9 ()-]{7,20}$')


# ============================================
# REQUESTS
# ============================================

class ApplicationCreateRequest(BaseModel):
    """Public application form.

    Validation mirrors ApplicationInput.validate in the lifecycle service.
    """
    full_name: str = Field(..., min_length=2, max_length=200, description="Applicant full name")
    national_id: str = Field(..., min_length=1, max_length=50, description="Iraqi national ID number")
    phone_number: str = Field(..., description="Mobile number used for SMS updates")
    email: Optional[str] = Field(default=None, max_length=254)
    date_of_birth: date
    nationality: str = Field(default="Iraq", max_length=100)
    origin_governorate: str = Field(..., min_length=1, max_length=100)
    destination_governorate: str = Field(..., min_length=1, max_length=100)
    visit_purpose: str = Field(..., description="TOURISM, BUSINESS, FAMILY_VISIT, MEDICAL, EDUCATION or OTHER")
    visit_purpose_other: Optional[str] = Field(default=None, max_length=200)
    visit_start_date: date
    visit_end_date: date
    declared_accommodation: Optional[str] = Field(default=None, max_length=1000)

    @field_validator('phone_number')
    @classmethod
    def validate_phone(cls, v: str) -> str:
        v = v.strip()
        if not PHONE_PATTERN.match(v):
            raise ValueError("phone_number must contain 7-20 digits, optionally starting with +")
        return v

    @field_validator('email')
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if "@" not in v:
            raise ValueError("email must be a valid address")
        return v.strip()


class AssignRequest(BaseModel):
    officer_id: str = Field(..., min_length=1, max_length=100)


class ReviewRequest(BaseModel):
    notes: Optional[str] = None
    recommendation: Optional[str] = Field(default=None, description="APPROVE, REJECT or REQUEST_DOCUMENTS")


class RiskOverrideRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Justification for letting the application proceed")


class ApproveRequest(BaseModel):
    """Validity window; dates cover whole days, omitted values use the visit dates."""
    valid_from: Optional[date] = None
    valid_until: Optional[date] = None
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    notes: Optional[str] = None


class DocumentsRequest(BaseModel):
    documents: List[str] = Field(..., min_length=1)
    notes: Optional[str] = None


class PermitReissueRequest(BaseModel):
    national_id: str = Field(..., min_length=1, max_length=50)


class CheckpointVerifyRequest(BaseModel):
    qr_data: str = Field(..., min_length=1, description="Raw payload read from the permit QR code")
    action: str = Field(..., description="ENTRY or EXIT")
    checkpoint_id: str = Field(..., min_length=1, max_length=100)
    checkpoint_name: Optional[str] = Field(default=None, max_length=200)

    @field_validator('action')
    @classmethod
    def validate_action(cls, v: str) -> str:
        v = v.upper()
        if v not in ("ENTRY", "EXIT"):
            raise ValueError("action must be ENTRY or EXIT")
        return v


class WatchlistAddRequest(BaseModel):
    national_id: str = Field(..., min_length=1, max_length=50)
    reason: str = Field(..., min_length=1)
    flag_type: str = Field(..., description="OVERSTAY, FRAUD, SECURITY_CONCERN or DUPLICATE")
    severity: str = Field(..., description="LOW, MEDIUM, HIGH or CRITICAL")
    full_name: Optional[str] = Field(default=None, max_length=200)
    phone_number: Optional[str] = Field(default=None, max_length=30)
    email: Optional[str] = Field(default=None, max_length=254)
    expires_at: Optional[datetime] = None


class ScreeningPreviewRequest(BaseModel):
    national_id: str = Field(..., min_length=1, max_length=50)
    phone_number: str = Field(..., min_length=1, max_length=30)
    full_name: str = Field(default="", max_length=200)


# ============================================
# RESPONSES
# ============================================

class ApplicationSummary(BaseModel):
    """Status view shown to applicants on the tracking page."""
    reference_number: str
    full_name: str
    status: str
    visit_start_date: date
    visit_end_date: date
    submitted_at: datetime
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    requested_documents: Optional[List[str]] = None
    rejection_reason: Optional[str] = None

    @classmethod
    def from_application(cls, application: Application) -> 'ApplicationSummary':
        return cls(
            reference_number=application.reference_number,
            full_name=application.full_name,
            status=application.status.value,
            visit_start_date=application.visit_start_date,
            visit_end_date=application.visit_end_date,
            submitted_at=application.created_at,
            valid_from=application.valid_from,
            valid_until=application.valid_until,
            requested_documents=application.requested_documents,
            rejection_reason=application.rejection_reason,
        )


class ApplicationDetail(BaseModel):
    """Officer view of an application."""
    id: str
    reference_number: str
    status: str
    priority_level: str
    national_id: str
    full_name: str
    phone_number: str
    email: Optional[str] = None
    date_of_birth: date
    nationality: str
    origin_governorate: str
    destination_governorate: str
    visit_purpose: str
    visit_purpose_other: Optional[str] = None
    visit_start_date: date
    visit_end_date: date
    declared_accommodation: Optional[str] = None
    processing_deadline: Optional[datetime] = None
    assigned_officer_id: Optional[str] = None
    risk_score: int
    risk_severity: str
    risk_flags: List[str] = Field(default_factory=list)
    risk_passed: bool
    requires_manual_review: bool
    requires_supervisor_review: bool
    risk_override_by_id: Optional[str] = None
    risk_override_reason: Optional[str] = None
    review_recommendation: Optional[str] = None
    requested_documents: Optional[List[str]] = None
    approved_by_id: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    permit_issued_at: Optional[datetime] = None
    current_location: str
    entry_timestamp: Optional[datetime] = None
    exit_timestamp: Optional[datetime] = None
    overstay_days: int = 0
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_application(cls, application: Application) -> 'ApplicationDetail':
        return cls(
            id=str(application.id),
            reference_number=application.reference_number,
            status=application.status.value,
            priority_level=application.priority_level.value,
            national_id=application.national_id,
            full_name=application.full_name,
            phone_number=application.phone_number,
            email=application.email,
            date_of_birth=application.date_of_birth,
            nationality=application.nationality,
            origin_governorate=application.origin_governorate,
            destination_governorate=application.destination_governorate,
            visit_purpose=application.visit_purpose.value,
            visit_purpose_other=application.visit_purpose_other,
            visit_start_date=application.visit_start_date,
            visit_end_date=application.visit_end_date,
            declared_accommodation=application.declared_accommodation,
            processing_deadline=application.processing_deadline,
            assigned_officer_id=application.assigned_officer_id,
            risk_score=application.risk_score,
            risk_severity=application.risk_severity.value,
            risk_flags=list(application.risk_flags or []),
            risk_passed=application.risk_passed,
            requires_manual_review=application.requires_manual_review,
            requires_supervisor_review=application.requires_supervisor_review,
            risk_override_by_id=application.risk_override_by_id,
            risk_override_reason=application.risk_override_reason,
            review_recommendation=application.review_recommendation,
            requested_documents=application.requested_documents,
            approved_by_id=application.approved_by_id,
            valid_from=application.valid_from,
            valid_until=application.valid_until,
            rejection_reason=application.rejection_reason,
            permit_issued_at=application.permit_issued_at,
            current_location=application.current_location.value,
            entry_timestamp=application.entry_timestamp,
            exit_timestamp=application.exit_timestamp,
            overstay_days=application.overstay_days,
            created_at=application.created_at,
            updated_at=application.updated_at,
        )


class SubmissionResponse(BaseModel):
    id: str
    reference_number: str
    status: str
    risk_score: int
    risk_severity: str
    processing_deadline: Optional[datetime] = None


class ApplicationListResponse(BaseModel):
    items: List[ApplicationDetail]
    total: int = Field(..., ge=0)
    offset: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)


class PermitResponse(BaseModel):
    """A minted permit: payload to encode and a ready-to-show PNG data URL."""
    application_id: str
    reference_number: str
    status: str
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    qr_payload: str
    qr_image: str = Field(..., description="data:image/png;base64 URL")
    issued_at: str


class AuditEntryResponse(BaseModel):
    id: str
    timestamp: datetime
    action: str
    actor_id: str
    actor_role: str
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_log(cls, log: AuditLog) -> 'AuditEntryResponse':
        return cls(
            id=str(log.id),
            timestamp=log.timestamp,
            action=log.action.value,
            actor_id=log.actor_id,
            actor_role=log.actor_role.value,
            old_value=log.old_value,
            new_value=log.new_value,
            details=log.details,
        )


class CheckpointLogResponse(BaseModel):
    id: str
    application_id: str
    log_type: str
    checkpoint_id: str
    checkpoint_name: Optional[str] = None
    officer_id: str
    recorded_at: datetime

    @classmethod
    def from_log(cls, log: EntryExitLog) -> 'CheckpointLogResponse':
        return cls(
            id=str(log.id),
            application_id=str(log.application_id),
            log_type=log.log_type.value,
            checkpoint_id=log.checkpoint_id,
            checkpoint_name=log.checkpoint_name,
            officer_id=log.officer_id,
            recorded_at=log.recorded_at,
        )


class CheckpointLogListResponse(BaseModel):
    items: List[CheckpointLogResponse]
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)


class ActiveVisitorResponse(BaseModel):
    id: str
    reference_number: str
    full_name: str
    national_id: str
    status: str
    entry_timestamp: Optional[datetime] = None
    entry_checkpoint_id: Optional[str] = None
    valid_until: Optional[datetime] = None
    overstay_days: int = 0

    @classmethod
    def from_application(cls, application: Application) -> 'ActiveVisitorResponse':
        return cls(
            id=str(application.id),
            reference_number=application.reference_number,
            full_name=application.full_name,
            national_id=application.national_id,
            status=application.status.value,
            entry_timestamp=application.entry_timestamp,
            entry_checkpoint_id=application.entry_checkpoint_id,
            valid_until=application.valid_until,
            overstay_days=application.overstay_days,
        )


class ActiveVisitorListResponse(BaseModel):
    items: List[ActiveVisitorResponse]
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)


class WatchlistEntryResponse(BaseModel):
    id: str
    national_id: str
    full_name: Optional[str] = None
    reason: str
    flag_type: str
    severity: str
    is_active: bool
    expires_at: Optional[datetime] = None
    created_by: str
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: WatchlistEntry) -> 'WatchlistEntryResponse':
        return cls(
            id=str(entry.id),
            national_id=entry.national_id,
            full_name=entry.full_name,
            reason=entry.reason,
            flag_type=entry.flag_type.value,
            severity=entry.severity.value,
            is_active=entry.is_active,
            expires_at=entry.expires_at,
            created_by=entry.created_by,
            created_at=entry.created_at,
        )


class WatchlistListResponse(BaseModel):
    items: List[WatchlistEntryResponse]
    total: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: bool = Field(..., description="Whether the database answered")
    overstay_sweeper_running: bool = False
    version: str
    uptime_seconds: Optional[int] = Field(default=None, description="Server uptime in seconds")


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    kind: Optional[str] = Field(default=None, description="Failure category")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Structured failure data")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
