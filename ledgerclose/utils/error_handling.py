"""
Error Handling Module for LedgerClose

This module provides centralized error handling with:
- Custom exception hierarchy for ledger, close and FX failures
- Standardized error responses
- Error logging
- Database error mapping
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import UUID
import logging

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DataError,
)
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("ledgerclose.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (422)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    IMBALANCED_TRANSACTION = "IMBALANCED_TRANSACTION"
    RECONCILIATION_MISMATCH = "RECONCILIATION_MISMATCH"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ALREADY_POSTED = "ALREADY_POSTED"
    POSTING_VALIDATION_FAILED = "POSTING_VALIDATION_FAILED"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"

    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    DOCUMENT_NOT_FOUND = "DOCUMENT_NOT_FOUND"
    LEDGER_ENTRY_NOT_FOUND = "LEDGER_ENTRY_NOT_FOUND"
    PERIOD_CLOSE_NOT_FOUND = "PERIOD_CLOSE_NOT_FOUND"
    RATE_NOT_FOUND = "RATE_NOT_FOUND"
    ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"

    # Business Logic Errors (422)
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    INCOMPLETE_TASKS = "INCOMPLETE_TASKS"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    INVALID_ACCRUAL_STATE = "INVALID_ACCRUAL_STATE"

    # External Service Errors (502)
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    FX_PROVIDER_ERROR = "FX_PROVIDER_ERROR"

    # Database Errors (500)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = datetime.utcnow()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() + "Z",
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """Base validation exception"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


class ImbalancedTransactionError(ValidationException):
    """Debits and credits of a transaction do not agree"""

    def __init__(self, total_debits: Any, total_credits: Any):
        super().__init__(
            message=(
                f"Transaction is not balanced: debits={total_debits}, "
                f"credits={total_credits}"
            ),
            code=ErrorCode.IMBALANCED_TRANSACTION,
            details={
                "total_debits": str(total_debits),
                "total_credits": str(total_credits),
            },
        )


class ReconciliationMismatchError(ValidationException):
    """Two ledger entries cannot be paired"""

    def __init__(self, message: str, entry_ids: Optional[List[Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.RECONCILIATION_MISMATCH,
            details={"entry_ids": [str(e) for e in entry_ids or []]},
        )


class AccountNotFoundError(ValidationException):
    """Account has neither ledger activity nor a chart of accounts record"""

    def __init__(self, account_code: str):
        super().__init__(
            message=f"Account {account_code} not found",
            field="account_code",
            code=ErrorCode.ACCOUNT_NOT_FOUND,
            details={"account_code": account_code},
        )


class AlreadyPostedError(ValidationException):
    """Source document has already been posted to the ledger"""

    def __init__(self, document_id: Union[str, UUID]):
        super().__init__(
            message=f"Document {document_id} has already been posted",
            code=ErrorCode.ALREADY_POSTED,
            details={"document_id": str(document_id)},
        )


class PostingValidationError(ValidationException):
    """Document failed posting validation"""

    def __init__(self, document_id: Union[str, UUID], errors: List[str]):
        super().__init__(
            message=f"Document {document_id} failed posting validation: {'; '.join(errors)}",
            code=ErrorCode.POSTING_VALIDATION_FAILED,
            details={"document_id": str(document_id), "errors": errors},
        )


class DocumentRequiresReviewError(ValidationException):
    """Document extraction confidence is below the posting threshold"""

    def __init__(self, document_id: Union[str, UUID], confidence: Optional[float] = None):
        super().__init__(
            message=f"Document {document_id} requires manual review before posting",
            code=ErrorCode.REVIEW_REQUIRED,
            details={"document_id": str(document_id), "confidence": confidence},
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Union[str, UUID]] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if message is None:
            if resource_id is not None:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={
                "resource_type": resource_type,
                "resource_id": str(resource_id) if resource_id is not None else None,
            },
        )


class DocumentNotFoundError(NotFoundException):
    """Source document not found"""

    def __init__(self, document_id: Union[str, UUID]):
        super().__init__(
            resource_type="Document",
            resource_id=document_id,
            code=ErrorCode.DOCUMENT_NOT_FOUND,
        )


class LedgerEntryNotFoundError(NotFoundException):
    """Ledger entry not found"""

    def __init__(self, entry_id: Union[str, UUID]):
        super().__init__(
            resource_type="LedgerEntry",
            resource_id=entry_id,
            code=ErrorCode.LEDGER_ENTRY_NOT_FOUND,
        )


class PeriodCloseNotFoundError(NotFoundException):
    """Period close not found"""

    def __init__(self, close_id: Union[str, UUID]):
        super().__init__(
            resource_type="PeriodClose",
            resource_id=close_id,
            code=ErrorCode.PERIOD_CLOSE_NOT_FOUND,
        )


class EntityNotFoundError(NotFoundException):
    """Reporting entity not found"""

    def __init__(self, entity_id: Union[str, UUID]):
        super().__init__(
            resource_type="Entity",
            resource_id=entity_id,
            code=ErrorCode.ENTITY_NOT_FOUND,
        )


class RateNotFoundError(NotFoundException):
    """No exchange rate for a currency pair and date"""

    def __init__(self, from_currency: str, to_currency: str, rate_date: Any):
        super().__init__(
            resource_type="ExchangeRate",
            message=f"No exchange rate found for {from_currency}/{to_currency} on {rate_date}",
            code=ErrorCode.RATE_NOT_FOUND,
        )
        self.details.update({
            "from_currency": from_currency,
            "to_currency": to_currency,
            "rate_date": str(rate_date),
        })


# ============================================================================
# Business Logic Exceptions
# ============================================================================

class BusinessRuleException(AppException):
    """Business rule violation exception"""

    def __init__(
        self,
        message: str,
        rule: Optional[str] = None,
        code: ErrorCode = ErrorCode.BUSINESS_RULE_VIOLATION,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if rule:
            _details["violated_rule"] = rule
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=_details,
        )


class IncompleteTasksError(BusinessRuleException):
    """Period cannot be closed while tasks are outstanding"""

    def __init__(self, close_id: Union[str, UUID], incomplete_tasks: List[Dict[str, Any]]):
        super().__init__(
            message=f"Cannot close period {close_id}: {len(incomplete_tasks)} task(s) incomplete",
            rule="all_close_tasks_completed",
            code=ErrorCode.INCOMPLETE_TASKS,
            details={"incomplete_tasks": incomplete_tasks},
        )


class InvalidCloseTransitionError(BusinessRuleException):
    """Period close status change not allowed from the current state"""

    def __init__(self, close_id: Union[str, UUID], current_status: str, target_status: str):
        super().__init__(
            message=f"Cannot move period close {close_id} from {current_status} to {target_status}",
            rule="period_close_state_machine",
            code=ErrorCode.INVALID_STATE_TRANSITION,
            details={"current_status": current_status, "target_status": target_status},
        )


class InvalidAccrualStateError(BusinessRuleException):
    """Accrual or prepayment is not in a state that allows the operation"""

    def __init__(self, resource_type: str, resource_id: Union[str, UUID], current_status: str, operation: str):
        super().__init__(
            message=f"Cannot {operation} {resource_type.lower()} {resource_id} with status {current_status}",
            rule="accrual_lifecycle",
            code=ErrorCode.INVALID_ACCRUAL_STATE,
            details={
                "resource_type": resource_type,
                "resource_id": str(resource_id),
                "current_status": current_status,
            },
        )


# ============================================================================
# External Service Exceptions
# ============================================================================

class ExternalServiceException(AppException):
    """External service error exception"""

    def __init__(
        self,
        service_name: str,
        message: str,
        code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        original_error: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        _details["service"] = service_name
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=_details,
            original_error=original_error,
        )


class ProviderError(ExternalServiceException):
    """Exchange rate provider failure"""

    def __init__(self, provider: str, message: str, original_error: Optional[Exception] = None):
        super().__init__(
            service_name=provider,
            message=message,
            code=ErrorCode.FX_PROVIDER_ERROR,
            original_error=original_error,
        )


# ============================================================================
# Exception Handlers
# ============================================================================

def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Create a standardized error response"""
    content = {
        "detail": {
            "code": code.value,
            "message": message,
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }
    }
    if field:
        content["detail"]["field"] = field
    if details:
        content["detail"]["details"] = details

    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle AppException"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"AppException: {exc.code.value} - {exc.message}",
        extra={
            "code": exc.code.value,
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=exc.original_error,
    )

    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        field=exc.field,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException"""
    code_map = {
        400: ErrorCode.INVALID_INPUT,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.DUPLICATE_ENTRY,
        422: ErrorCode.VALIDATION_ERROR,
        500: ErrorCode.INTERNAL_ERROR,
        502: ErrorCode.EXTERNAL_SERVICE_ERROR,
        503: ErrorCode.EXTERNAL_SERVICE_ERROR,
    }

    error_code = code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    logger.warning(
        f"HTTPException: {exc.status_code} - {message}",
        extra={"path": request.url.path, "method": request.method},
    )

    return create_error_response(
        code=error_code,
        message=message,
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors"""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    logger.warning(
        f"ValidationError: {len(errors)} validation errors",
        extra={"path": request.url.path, "method": request.method},
    )

    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy errors"""
    error_message = "A database error occurred"
    error_code = ErrorCode.DATABASE_ERROR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if isinstance(exc, IntegrityError):
        error_message = "Data integrity constraint violated"
        error_code = ErrorCode.DATA_INTEGRITY_ERROR
        error_str = str(exc.orig).lower() if exc.orig else ""
        if "unique" in error_str or "duplicate" in error_str:
            error_message = "A record with this value already exists"
            error_code = ErrorCode.DUPLICATE_ENTRY
            status_code = status.HTTP_409_CONFLICT
        elif "foreign key" in error_str:
            error_message = "Referenced record does not exist"
            status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, OperationalError):
        error_message = "Database operation failed"
        error_code = ErrorCode.CONNECTION_ERROR
    elif isinstance(exc, DataError):
        error_message = "Invalid data format for database"
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    logger.error(
        f"SQLAlchemyError: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=error_code,
        message=error_message,
        status_code=status_code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions"""
    logger.critical(
        f"UnhandledException: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


__all__ = [
    "AppException",
    "ErrorCode",

    # Validation
    "ValidationException",
    "ImbalancedTransactionError",
    "ReconciliationMismatchError",
    "AccountNotFoundError",
    "AlreadyPostedError",
    "PostingValidationError",
    "DocumentRequiresReviewError",

    # Resource
    "NotFoundException",
    "DocumentNotFoundError",
    "LedgerEntryNotFoundError",
    "PeriodCloseNotFoundError",
    "EntityNotFoundError",
    "RateNotFoundError",

    # Business Logic
    "BusinessRuleException",
    "IncompleteTasksError",
    "InvalidCloseTransitionError",
    "InvalidAccrualStateError",

    # External Services
    "ExternalServiceException",
    "ProviderError",

    # Handlers
    "setup_exception_handlers",
    "create_error_response",
]
