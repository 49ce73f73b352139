"""
Error taxonomy and typed operation results.

Service methods raise PermitError internally and convert it, together
with storage errors, into an OperationResult at their public boundary.
The HTTP layer maps ErrorKind values to status codes.
"""

import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from evisit.log_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Machine-readable failure category"""
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    SECURITY_GATE = "SECURITY_GATE"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    EXPIRED = "EXPIRED"
    MALFORMED = "MALFORMED"
    ALREADY_INSIDE = "ALREADY_INSIDE"
    NOT_INSIDE = "NOT_INSIDE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    STORAGE_FAILURE = "STORAGE_FAILURE"


class PermitError(Exception):
    """Raised when an operation cannot be applied

    Attributes:
        code: Stable error code for programmatic handling
        kind: Failure category
        details: Optional structured payload shown to the caller
        field: Input field that caused the failure, if any
    """
    def __init__(
        self,
        code: str,
        message: str,
        kind: ErrorKind,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None
    ):
        self.code = code
        self.kind = kind
        self.details = details
        self.field = field
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> Dict[str, Any]:
        error = {
            "code": self.code,
            "message": self.message,
            "kind": self.kind.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.details:
            error["details"] = self.details
        if self.field:
            error["field"] = self.field
        return error

    def __repr__(self) -> str:
        return f"<PermitError(code={self.code}, kind={self.kind.value})>"


def validation_error(message: str, field: Optional[str] = None) -> PermitError:
    return PermitError("VALIDATION_ERROR", message, ErrorKind.VALIDATION, field=field)


def not_found(resource: str, identifier: Any) -> PermitError:
    return PermitError(
        f"{resource.upper()}_NOT_FOUND",
        f"{resource.capitalize()} not found: {identifier}",
        ErrorKind.NOT_FOUND
    )


def invalid_transition(action: str, current_status: Any) -> PermitError:
    status = getattr(current_status, "value", current_status)
    return PermitError(
        "INVALID_STATE_TRANSITION",
        f"Cannot {action} an application in status {status}",
        ErrorKind.INVALID_STATE_TRANSITION,
        details={"action": action, "current_status": status}
    )


@dataclass
class OperationResult(Generic[T]):
    """Success value or a PermitError, never both"""
    value: Optional[T] = None
    error: Optional[PermitError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> 'OperationResult[T]':
        return cls(value=value)

    @classmethod
    def failure(cls, error: PermitError) -> 'OperationResult[T]':
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error"""
        if self.error is not None:
            raise self.error
        return self.value


def returns_result(func: Callable[..., T]) -> Callable[..., OperationResult[T]]:
    """Wrap a service method so failures come back as OperationResult"""
    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> OperationResult[T]:
        try:
            return OperationResult.success(func(*args, **kwargs))
        except PermitError as e:
            logger.info(
                "%s failed: code=%s message=%s",
                func.__name__, e.code, sanitize_for_logging(e.message)
            )
            return OperationResult.failure(e)
        except SQLAlchemyError as e:
            logger.error(
                "%s storage failure: %s",
                func.__name__, sanitize_for_logging(str(e))
            )
            return OperationResult.failure(PermitError(
                "STORAGE_FAILURE",
                "The operation could not be persisted. Please retry.",
                ErrorKind.STORAGE_FAILURE
            ))
    return wrapper
