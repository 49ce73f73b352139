"""
FastAPI e-Visit Permit API Server

REST endpoints for applicants (submit, track, download permit), staff
(review workflow, watchlist, screening preview) and checkpoints (verify
a scanned permit, logs, visitors inside).

Usage:
    uvicorn evisit.api.server:app --reload --port 8000
"""

import os
import time
import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, Response

from evisit import __version__
from evisit.actors import Actor, require_actor
from evisit.api.auth import actor_dependency
from evisit.api.middleware import (
    RequestLoggingMiddleware,
    setup_cors,
    setup_exception_handlers,
    unwrap_result,
)
from evisit.api.models import (
    ActiveVisitorListResponse,
    ActiveVisitorResponse,
    ApplicationCreateRequest,
    ApplicationDetail,
    ApplicationListResponse,
    ApplicationSummary,
    ApproveRequest,
    AssignRequest,
    AuditEntryResponse,
    CheckpointLogListResponse,
    CheckpointLogResponse,
    CheckpointVerifyRequest,
    DocumentsRequest,
    ErrorResponse,
    HealthResponse,
    PermitReissueRequest,
    PermitResponse,
    RejectRequest,
    ReviewRequest,
    RiskOverrideRequest,
    ScreeningPreviewRequest,
    SubmissionResponse,
    WatchlistAddRequest,
    WatchlistEntryResponse,
    WatchlistListResponse,
)
from evisit.clock import Clock, utc_now
from evisit.config_manager import ConfigManager, ConfigurationError, SecurityConfig, get_config
from evisit.database.connection import DatabaseSessionProvider, close_db, init_db
from evisit.database.lifecycle_service import STAFF_ROLES, ApplicationInput, PermitDecision
from evisit.database.models import ApplicationStatus, UserRole
from evisit.log_utils import configure_logging
from evisit.notifications import NotificationDispatcher
from evisit.scheduler import OverstaySweeper
from evisit.security_logger import SecurityLogger
from evisit.services import Services, build_services

logger = logging.getLogger(__name__)

CONFIG_PATH = os.getenv("CONFIG_PATH") or None

SWEEP_ROLES = (UserRole.SUPERVISOR, UserRole.ADMIN)

# Global state
_services: Optional[Services] = None
_config: Optional[ConfigManager] = None
_sweeper: Optional[OverstaySweeper] = None
_startup_time: Optional[datetime] = None

ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing or invalid token"},
    403: {"model": ErrorResponse, "description": "Role not allowed or security gate"},
    404: {"model": ErrorResponse, "description": "Application not found"},
    409: {"model": ErrorResponse, "description": "Invalid status transition"},
    422: {"model": ErrorResponse, "description": "Validation error"},
}


def configure_services(
    db_provider: DatabaseSessionProvider,
    config: ConfigManager,
    clock: Clock = utc_now,
    notifier: Optional[NotificationDispatcher] = None,
    security_logger: Optional[SecurityLogger] = None
) -> Services:
    """Install the service graph used by the routes (startup and tests)."""
    global _services, _config
    _config = config
    _services = build_services(config, db_provider, clock, notifier, security_logger)
    return _services


def reset_services() -> None:
    global _services, _config
    if _services is not None:
        _services.close()
    _services = None
    _config = None


def get_services() -> Services:
    """Dependency to get the service graph."""
    if _services is None:
        raise HTTPException(status_code=503, detail="Service not initialized. Service is starting up.")
    return _services


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def get_security_config(config: ConfigManager = Depends(get_config_instance)) -> SecurityConfig:
    return config.security


current_actor = actor_dependency(get_security_config)


app = FastAPI(
    title="KRG e-Visit Permit API",
    description="Visit permit applications, review workflow and checkpoint verification",
    version=__version__,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Validate configuration, connect the database and start the sweeper."""
    global _config, _sweeper, _startup_time

    logger.info("Starting e-Visit Permit API...")
    start_time = time.time()

    try:
        if _services is None:
            config = get_config(CONFIG_PATH)
            configure_logging(config.logging)
            config.validate()
            db = init_db(config.database)
            db.create_tables()
            configure_services(db, config)
        services = get_services()

        if services.config.overstay.enabled:
            _sweeper = OverstaySweeper(services.overstay, services.config.overstay.sweep_interval_seconds)
            _sweeper.start()

        _startup_time = datetime.now(timezone.utc)
        logger.info("API ready in %.2f seconds", time.time() - start_time)

    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        raise


@app.on_event("shutdown")
async def shutdown():
    """Stop the sweeper and release connections."""
    global _sweeper
    logger.info("Shutting down e-Visit Permit API...")
    if _sweeper is not None:
        _sweeper.stop()
        _sweeper = None
    reset_services()
    close_db()


def _permit_response(decision: PermitDecision) -> PermitResponse:
    application = decision.application
    return PermitResponse(
        application_id=str(application.id),
        reference_number=application.reference_number,
        status=application.status.value,
        valid_from=application.valid_from,
        valid_until=application.valid_until,
        qr_payload=decision.permit.payload,
        qr_image=decision.permit.to_data_url(),
        issued_at=decision.permit.timestamp,
    )


# ============================================
# APPLICANT ENDPOINTS (public)
# ============================================

@app.post(
    "/api/v1/applications",
    response_model=SubmissionResponse,
    status_code=201,
    responses={422: ERROR_RESPONSES[422]},
    summary="Submit an application",
)
def submit_application(
    request: ApplicationCreateRequest,
    services: Services = Depends(get_services),
):
    data = ApplicationInput(**request.model_dump())
    applicant = Actor(id=f"applicant:{request.national_id}", role=UserRole.APPLICANT, name=request.full_name)
    application = unwrap_result(services.lifecycle.submit(data, applicant))
    return SubmissionResponse(
        id=str(application.id),
        reference_number=application.reference_number,
        status=application.status.value,
        risk_score=application.risk_score,
        risk_severity=application.risk_severity.value,
        processing_deadline=application.processing_deadline,
    )


@app.get(
    "/api/v1/track/{reference_number}",
    response_model=ApplicationSummary,
    responses={404: ERROR_RESPONSES[404]},
    summary="Track an application by reference number",
)
def track_application(reference_number: str, services: Services = Depends(get_services)):
    application = unwrap_result(services.lifecycle.get_by_reference(reference_number))
    return ApplicationSummary.from_application(application)


@app.post(
    "/api/v1/track/{reference_number}/permit",
    response_model=PermitResponse,
    responses={404: ERROR_RESPONSES[404], 409: ERROR_RESPONSES[409]},
    summary="Download a fresh permit QR",
    description="The national ID on the application must be supplied; a mismatch reads as not found.",
)
def download_permit(
    reference_number: str,
    request: PermitReissueRequest,
    services: Services = Depends(get_services),
):
    application = unwrap_result(services.lifecycle.get_by_reference(reference_number))
    applicant = Actor(id=f"applicant:{request.national_id}", role=UserRole.APPLICANT)
    decision = unwrap_result(
        services.lifecycle.reissue_permit(application.id, applicant, national_id=request.national_id)
    )
    return _permit_response(decision)


# ============================================
# STAFF WORKFLOW ENDPOINTS
# ============================================

@app.get(
    "/api/v1/applications",
    response_model=ApplicationListResponse,
    responses={401: ERROR_RESPONSES[401], 403: ERROR_RESPONSES[403]},
    summary="List applications",
)
def list_applications(
    status: Optional[ApplicationStatus] = None,
    assigned_officer_id: Optional[str] = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    items, total = unwrap_result(services.lifecycle.list_applications(
        actor, status=status, assigned_officer_id=assigned_officer_id, offset=offset, limit=limit
    ))
    return ApplicationListResponse(
        items=[ApplicationDetail.from_application(a) for a in items],
        total=total,
        offset=offset,
        limit=limit,
    )


@app.get(
    "/api/v1/applications/{application_id}",
    response_model=ApplicationDetail,
    responses={401: ERROR_RESPONSES[401], 404: ERROR_RESPONSES[404]},
    summary="Get an application",
)
def get_application(
    application_id: UUID,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    require_actor(actor, STAFF_ROLES + (UserRole.CHECKPOINT_OFFICER,), "view applications")
    return ApplicationDetail.from_application(unwrap_result(services.lifecycle.get(application_id)))


@app.get(
    "/api/v1/applications/{application_id}/audit",
    response_model=List[AuditEntryResponse],
    responses={401: ERROR_RESPONSES[401], 403: ERROR_RESPONSES[403]},
    summary="Audit trail of an application",
)
def get_audit_trail(
    application_id: UUID,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    require_actor(actor, STAFF_ROLES, "view the audit trail")
    logs = unwrap_result(services.lifecycle.audit_trail(application_id))
    return [AuditEntryResponse.from_log(log) for log in logs]


@app.patch(
    "/api/v1/applications/{application_id}/assign",
    response_model=ApplicationDetail,
    responses=ERROR_RESPONSES,
    summary="Assign to an officer",
)
def assign_application(
    application_id: UUID,
    request: AssignRequest,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    application = unwrap_result(services.lifecycle.assign(application_id, request.officer_id, actor))
    return ApplicationDetail.from_application(application)


@app.patch(
    "/api/v1/applications/{application_id}/review",
    response_model=ApplicationDetail,
    responses=ERROR_RESPONSES,
    summary="Start review",
)
def review_application(
    application_id: UUID,
    request: ReviewRequest,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    application = unwrap_result(services.lifecycle.review(
        application_id, actor, notes=request.notes, recommendation=request.recommendation
    ))
    return ApplicationDetail.from_application(application)


@app.patch(
    "/api/v1/applications/{application_id}/risk-override",
    response_model=ApplicationDetail,
    responses=ERROR_RESPONSES,
    summary="Override the risk gate",
)
def override_risk_gate(
    application_id: UUID,
    request: RiskOverrideRequest,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    application = unwrap_result(services.lifecycle.override_risk_gate(application_id, actor, request.reason))
    return ApplicationDetail.from_application(application)


@app.patch(
    "/api/v1/applications/{application_id}/approve",
    response_model=PermitResponse,
    responses=ERROR_RESPONSES,
    summary="Approve and issue the permit",
)
def approve_application(
    application_id: UUID,
    request: ApproveRequest,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    decision = unwrap_result(services.lifecycle.approve(
        application_id, actor,
        valid_from=request.valid_from, valid_until=request.valid_until, notes=request.notes
    ))
    return _permit_response(decision)


@app.patch(
    "/api/v1/applications/{application_id}/reject",
    response_model=ApplicationDetail,
    responses=ERROR_RESPONSES,
    summary="Reject",
)
def reject_application(
    application_id: UUID,
    request: RejectRequest,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    application = unwrap_result(services.lifecycle.reject(
        application_id, actor, request.reason, notes=request.notes
    ))
    return ApplicationDetail.from_application(application)


@app.patch(
    "/api/v1/applications/{application_id}/request-documents",
    response_model=ApplicationDetail,
    responses=ERROR_RESPONSES,
    summary="Request additional documents",
)
def request_documents(
    application_id: UUID,
    request: DocumentsRequest,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    application = unwrap_result(services.lifecycle.request_documents(
        application_id, actor, request.documents, notes=request.notes
    ))
    return ApplicationDetail.from_application(application)


@app.patch(
    "/api/v1/applications/{application_id}/documents-received",
    response_model=ApplicationDetail,
    responses=ERROR_RESPONSES,
    summary="Resume review after documents arrived",
)
def documents_received(
    application_id: UUID,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    application = unwrap_result(services.lifecycle.documents_received(application_id, actor))
    return ApplicationDetail.from_application(application)


@app.post(
    "/api/v1/applications/{application_id}/rescreen",
    responses=ERROR_RESPONSES,
    summary="Re-run risk screening",
)
def rescreen_application(
    application_id: UUID,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    outcome = unwrap_result(services.lifecycle.rescreen(application_id, actor))
    return {
        "application": ApplicationDetail.from_application(outcome.application).model_dump(mode="json"),
        "assessment": outcome.assessment.to_dict(),
        "new_flags": outcome.new_flags,
    }


@app.post(
    "/api/v1/applications/{application_id}/permit/reissue",
    response_model=PermitResponse,
    responses=ERROR_RESPONSES,
    summary="Reissue the permit QR",
)
def reissue_permit(
    application_id: UUID,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    return _permit_response(unwrap_result(services.lifecycle.reissue_permit(application_id, actor)))


@app.get(
    "/api/v1/applications/{application_id}/permit.png",
    responses={200: {"content": {"image/png": {}}}, 404: ERROR_RESPONSES[404]},
    response_class=Response,
    summary="Permit QR image",
)
def permit_image(
    application_id: UUID,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    require_actor(actor, STAFF_ROLES, "download permit images")
    png = unwrap_result(services.lifecycle.permit_image(application_id))
    return Response(content=png, media_type="image/png")


# ============================================
# CHECKPOINT ENDPOINTS
# ============================================

@app.post(
    "/api/v1/checkpoint/verify",
    responses={**ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Invalid or expired QR"}},
    summary="Verify a permit and record entry/exit",
)
def verify_checkpoint(
    request: CheckpointVerifyRequest,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    outcome = unwrap_result(services.checkpoint.verify(
        request.qr_data, request.action, request.checkpoint_id, actor,
        checkpoint_name=request.checkpoint_name
    ))
    return outcome.to_dict()


@app.get(
    "/api/v1/checkpoint/logs",
    response_model=CheckpointLogListResponse,
    responses={401: ERROR_RESPONSES[401], 403: ERROR_RESPONSES[403]},
    summary="Checkpoint logs",
)
def checkpoint_logs(
    checkpoint_id: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    logs, total = unwrap_result(services.checkpoint.logs(actor, checkpoint_id=checkpoint_id, page=page, limit=limit))
    return CheckpointLogListResponse(
        items=[CheckpointLogResponse.from_log(log) for log in logs], total=total, page=page, limit=limit
    )


@app.get(
    "/api/v1/checkpoint/logs/today",
    response_model=CheckpointLogListResponse,
    responses={401: ERROR_RESPONSES[401], 403: ERROR_RESPONSES[403]},
    summary="Today's checkpoint logs",
)
def checkpoint_logs_today(
    checkpoint_id: Optional[str] = None,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    logs, total = unwrap_result(services.checkpoint.logs_for_day(actor, checkpoint_id=checkpoint_id))
    return CheckpointLogListResponse(
        items=[CheckpointLogResponse.from_log(log) for log in logs], total=total, page=1, limit=max(total, 1)
    )


@app.get(
    "/api/v1/checkpoint/active-visitors",
    response_model=ActiveVisitorListResponse,
    responses={401: ERROR_RESPONSES[401], 403: ERROR_RESPONSES[403]},
    summary="Visitors currently inside",
)
def active_visitors(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    items, total = unwrap_result(services.checkpoint.active_visitors(actor, page=page, limit=limit))
    return ActiveVisitorListResponse(
        items=[ActiveVisitorResponse.from_application(a) for a in items], total=total, page=page, limit=limit
    )


# ============================================
# WATCHLIST & SCREENING ENDPOINTS
# ============================================

@app.post(
    "/api/v1/watchlist",
    response_model=WatchlistEntryResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    summary="Add a watchlist entry",
)
def add_watchlist_entry(
    request: WatchlistAddRequest,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    entry = unwrap_result(services.watchlist.add_to_watchlist(
        actor, request.national_id, request.reason, request.flag_type, request.severity,
        full_name=request.full_name, phone_number=request.phone_number,
        email=request.email, expires_at=request.expires_at
    ))
    return WatchlistEntryResponse.from_entry(entry)


@app.delete(
    "/api/v1/watchlist/{national_id}",
    responses=ERROR_RESPONSES,
    summary="Deactivate watchlist entries for an identity",
)
def remove_watchlist_entries(
    national_id: str,
    flag_type: Optional[str] = None,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    removed = unwrap_result(services.watchlist.remove_from_watchlist(actor, national_id, flag_type))
    return {"national_id": national_id, "deactivated": removed}


@app.get(
    "/api/v1/watchlist",
    response_model=WatchlistListResponse,
    responses={401: ERROR_RESPONSES[401], 403: ERROR_RESPONSES[403]},
    summary="List watchlist entries",
)
def list_watchlist(
    active_only: bool = True,
    national_id: Optional[str] = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    entries, total = unwrap_result(services.watchlist.list_watchlist(
        actor, active_only=active_only, national_id=national_id, offset=offset, limit=limit
    ))
    return WatchlistListResponse(items=[WatchlistEntryResponse.from_entry(e) for e in entries], total=total)


@app.post(
    "/api/v1/screening/preview",
    responses={401: ERROR_RESPONSES[401], 403: ERROR_RESPONSES[403]},
    summary="Preview risk screening without storing anything",
)
def screening_preview(
    request: ScreeningPreviewRequest,
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    assessment = unwrap_result(services.lifecycle.preview_screening(
        actor, request.national_id, request.phone_number, request.full_name
    ))
    return assessment.to_dict()


@app.post(
    "/api/v1/overstay/sweep",
    responses={401: ERROR_RESPONSES[401], 403: ERROR_RESPONSES[403]},
    summary="Run the overstay sweep now",
)
def run_overstay_sweep(
    actor: Actor = Depends(current_actor),
    services: Services = Depends(get_services),
):
    require_actor(actor, SWEEP_ROLES, "run the overstay sweep")
    return services.overstay.detect_and_flag_overstays().to_dict()


# ============================================
# HEALTH
# ============================================

@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check service and database health",
)
def health_check():
    """Always returns HTTP 200; the body says what is wrong."""
    database_ok = False
    if _services is not None:
        try:
            database_ok = _services.db.health_check()
        except Exception as e:
            logger.error("Health check failed: %s", e)

    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        database=database_ok,
        overstay_sweeper_running=bool(_sweeper and _sweeper.running),
        version=__version__,
        uptime_seconds=uptime_seconds,
    )
