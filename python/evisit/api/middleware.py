"""
HTTP plumbing for the e-Visit API: CORS, per-request logging and the
mapping from service failures to JSON error bodies.

Every error leaves the API as {"error": {"code", "message", "timestamp", ...}}.
PermitError kinds decide the status code; unexpected exceptions are logged
and answered with a generic 500 so internals never reach the client.
"""

import os
import time
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TypeVar

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from evisit.config_manager import ConfigurationError
from evisit.errors import ErrorKind, OperationResult, PermitError
from evisit.log_utils import sanitize_for_logging
from evisit.security_logger import get_security_logger

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCAL_ORIGINS = [
    f"http://{host}:{port}"
    for host in ("localhost", "127.0.0.1")
    for port in (3000, 5173, 8000)
]

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.SECURITY_GATE: 403,
    ErrorKind.INVALID_STATE_TRANSITION: 409,
    ErrorKind.ALREADY_INSIDE: 409,
    ErrorKind.NOT_INSIDE: 409,
    ErrorKind.MALFORMED: 400,
    ErrorKind.SIGNATURE_INVALID: 400,
    ErrorKind.EXPIRED: 400,
    ErrorKind.STORAGE_FAILURE: 503,
}


def setup_cors(app: FastAPI) -> None:
    """Allow the officer console and applicant portal origins.

    CORS_ORIGINS (comma-separated) replaces the local development defaults.
    """
    configured = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=configured or LOCAL_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an ID shared by the app log and security log."""

    async def dispatch(self, request: Request, call_next: Callable):
        security = get_security_logger()
        request_id = security.set_request_context(
            request_id=request.headers.get("X-Request-ID"),
            source_ip=request.client.host if request.client else "",
        )
        request.state.request_id = request_id
        started = time.perf_counter()
        path = sanitize_for_logging(request.url.path)
        logger.info("%s %s [%s]", request.method, path, request_id)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error("%s %s failed after %dms [%s]: %s", request.method, path,
                         _elapsed_ms(started), request_id, sanitize_for_logging(str(exc)))
            raise
        finally:
            security.clear_request_context()

        elapsed = _elapsed_ms(started)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(elapsed)
        logger.info("%s %s -> %d in %dms [%s]", request.method, path,
                    response.status_code, elapsed, request_id)
        return response


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def error_response(
    status_code: int,
    code: str,
    message: str,
    kind: Optional[str] = None,
    field: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    body: Dict[str, Any] = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    optional = {"kind": kind, "field": field, "details": details}
    body.update({key: value for key, value in optional.items() if value})
    return JSONResponse(status_code=status_code, content={"error": body})


def unwrap_result(result: OperationResult[T]) -> T:
    """Value of a successful service call; failures go to permit_error_handler"""
    if not result.ok:
        raise result.error
    return result.value


async def permit_error_handler(request: Request, exc: PermitError) -> JSONResponse:
    logger.info("Refused %s (%s) [%s]", exc.code, exc.kind.value, _request_id(request))
    return error_response(
        STATUS_BY_KIND.get(exc.kind, 400),
        exc.code,
        exc.message,
        kind=exc.kind.value,
        field=exc.field,
        details=exc.details,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report the first pydantic error, naming the offending field."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return error_response(
        422,
        "VALIDATION_ERROR",
        sanitize_for_logging(str(first.get("msg", "Invalid request"))),
        kind=ErrorKind.VALIDATION.value,
        field=field or None,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning("HTTP %d: %s [%s]", exc.status_code, sanitize_for_logging(detail), _request_id(request))
    response = error_response(exc.status_code, f"HTTP_{exc.status_code}", detail)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled %s: %s [%s]", type(exc).__name__,
                 sanitize_for_logging(str(exc)), _request_id(request))
    if isinstance(exc, ConfigurationError):
        return error_response(503, "CONFIGURATION_ERROR",
                              "Service configuration is invalid. Please contact administrator.")
    return error_response(500, "INTERNAL_ERROR", "An unexpected error occurred. Please try again later.")


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PermitError, permit_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
