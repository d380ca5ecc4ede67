"""
FundLedger - Error Handling

Exception hierarchy for the reconciliation engine and the FastAPI handlers
that render every failure as

    {"detail": {"code", "message", "timestamp", "field"?, "details"?}}

Services raise these exceptions inside their atomic units; the unit rolls
back and the handler maps the exception to its HTTP status.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import DataError, IntegrityError, OperationalError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("fundledger.errors")

Identifier = Union[str, UUID]


class ErrorCode(str, Enum):
    """Machine-readable error codes returned in error bodies"""

    # 422
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_DATE_RANGE = "INVALID_DATE_RANGE"
    INVALID_STATUS = "INVALID_STATUS"

    # 401/403
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # 404
    NOT_FOUND = "NOT_FOUND"
    STATEMENT_NOT_FOUND = "STATEMENT_NOT_FOUND"
    RECONCILIATION_NOT_FOUND = "RECONCILIATION_NOT_FOUND"

    # 409
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    RECONCILIATION_NOT_BALANCED = "RECONCILIATION_NOT_BALANCED"
    ALREADY_MATCHED = "ALREADY_MATCHED"
    CANNOT_MODIFY = "CANNOT_MODIFY"
    CANNOT_DELETE = "CANNOT_DELETE"

    # 500
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def error_body(
    code: ErrorCode,
    message: str,
    field: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    body = {
        "code": code.value,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }
    if field:
        body["field"] = field
    if details:
        body["details"] = details
    return body


class AppException(Exception):
    """
    Base class for errors raised by services.

    Subclasses fix the HTTP status; callers choose the code, message and
    optional field/details.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        return error_body(self.code, self.message, self.field, self.details)


# ============================================================================
# 422 - Validation
# ============================================================================

class ValidationException(AppException):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(code, message, details=details, field=field)


class InvalidDateRangeException(ValidationException):
    """A period or filter window whose start falls after its end"""

    def __init__(self, start_date: date, end_date: date):
        super().__init__(
            f"Start date {start_date} must not be after end date {end_date}",
            field="start_date",
            details={"start_date": str(start_date), "end_date": str(end_date)},
            code=ErrorCode.INVALID_DATE_RANGE,
        )


class InvalidStatusException(ValidationException):
    """Status value the operation does not accept"""

    def __init__(self, value: Any, allowed: list, field: str = "status"):
        allowed_values = [str(getattr(a, "value", a)) for a in allowed]
        value = getattr(value, "value", value)
        super().__init__(
            f"Invalid status '{value}'. Allowed: {', '.join(allowed_values)}",
            field=field,
            details={"value": str(value), "allowed": allowed_values},
            code=ErrorCode.INVALID_STATUS,
        )


# ============================================================================
# 404 - Not found
# ============================================================================

class NotFoundException(AppException):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Identifier] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if resource_id is None:
            message = f"{resource_type} not found"
        else:
            message = f"{resource_type} with ID '{resource_id}' not found"
        super().__init__(
            code,
            message,
            details={
                "resource_type": resource_type,
                "resource_id": str(resource_id) if resource_id is not None else None,
            },
        )


class StatementNotFoundException(NotFoundException):
    def __init__(self, statement_id: Identifier):
        super().__init__("Bank statement", statement_id, code=ErrorCode.STATEMENT_NOT_FOUND)


class ReconciliationNotFoundException(NotFoundException):
    def __init__(self, reconciliation_id: Identifier):
        super().__init__("Reconciliation", reconciliation_id, code=ErrorCode.RECONCILIATION_NOT_FOUND)


# ============================================================================
# 409 - Business rule conflicts
# ============================================================================

class ConflictException(AppException):
    status_code = status.HTTP_409_CONFLICT

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if resource_type:
            details["resource_type"] = resource_type
        super().__init__(code, message, details=details)


class InvalidStatusTransitionException(ConflictException):
    """Status change not permitted by the workflow"""

    def __init__(self, resource_type: str, current: Any, target: Any):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            f"Cannot change {resource_type.lower()} status from '{current_value}' to '{target_value}'",
            resource_type=resource_type,
            code=ErrorCode.INVALID_STATUS_TRANSITION,
            details={"current_status": current_value, "requested_status": target_value},
        )


class ReconciliationNotBalancedException(ConflictException):
    """Completion refused while |difference| exceeds the tolerance"""

    def __init__(self, difference: Decimal, tolerance: Decimal):
        super().__init__(
            f"Cannot complete reconciliation: current difference is {difference}",
            resource_type="Reconciliation",
            code=ErrorCode.RECONCILIATION_NOT_BALANCED,
            details={"difference": str(difference), "tolerance": str(tolerance)},
        )


class AlreadyMatchedException(ConflictException):
    """Bank transaction or ledger line already referenced by a reconciliation item"""

    def __init__(self, resource_type: str, resource_id: Identifier):
        super().__init__(
            f"{resource_type} '{resource_id}' is already matched",
            resource_type=resource_type,
            code=ErrorCode.ALREADY_MATCHED,
            details={"resource_id": str(resource_id)},
        )


# ============================================================================
# Handlers
# ============================================================================

HTTP_STATUS_CODES = {
    400: ErrorCode.INVALID_INPUT,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.RESOURCE_CONFLICT,
    422: ErrorCode.VALIDATION_ERROR,
}


def _respond(status_code: int, body: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": body})


def _request_context(request: Request) -> Dict[str, str]:
    return {"path": request.url.path, "method": request.method}


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"{type(exc).__name__}: {exc.code.value} - {exc.message}",
        extra={**_request_context(request), "code": exc.code.value},
    )
    return _respond(exc.status_code, exc.to_dict())


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning(f"HTTPException: {exc.status_code} - {message}", extra=_request_context(request))
    code = HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    return _respond(exc.status_code, error_body(code, message))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    logger.warning(f"Request validation failed with {len(errors)} errors", extra=_request_context(request))
    return _respond(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        error_body(ErrorCode.VALIDATION_ERROR, "Request validation failed", details={"errors": errors}),
    )


def _classify_database_error(exc: SQLAlchemyError):
    if isinstance(exc, IntegrityError):
        reason = str(exc.orig).lower() if exc.orig else ""
        # Concurrent claim of the same bank transaction or ledger line
        if "unique" in reason or "duplicate" in reason:
            return status.HTTP_409_CONFLICT, ErrorCode.DUPLICATE_ENTRY, "A record with this value already exists"
        if "foreign key" in reason:
            return (
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                ErrorCode.DATA_INTEGRITY_ERROR,
                "Referenced record does not exist",
            )
        return (
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            ErrorCode.DATA_INTEGRITY_ERROR,
            "Data integrity constraint violated",
        )
    if isinstance(exc, DataError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY, ErrorCode.DATABASE_ERROR, "Invalid data format for database"
    if isinstance(exc, OperationalError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.CONNECTION_ERROR, "Database operation failed"
    return status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.DATABASE_ERROR, "A database error occurred"


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    status_code, code, message = _classify_database_error(exc)
    logger.error(
        f"SQLAlchemyError: {type(exc).__name__} - {exc}",
        extra=_request_context(request),
        exc_info=True,
    )
    return _respond(status_code, error_body(code, message))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.critical(
        f"Unhandled {type(exc).__name__}: {exc}",
        extra=_request_context(request),
        exc_info=True,
    )
    # Internal details stay in the log
    return _respond(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_body(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred. Please try again later."),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the handlers on ``app``."""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
