"""
Error taxonomy for the points ledger and standardized error responses
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("points_service.security")

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    ok: bool = False
    error: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    timestamp: float
    trace_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_PLATFORM = "INVALID_PLATFORM"

    # Business Logic
    INSUFFICIENT_POINTS = "INSUFFICIENT_POINTS"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ACCOUNT_EXISTS = "ACCOUNT_EXISTS"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    DUPLICATE_TRADE_NO = "DUPLICATE_TRADE_NO"
    DUPLICATE_LEDGER_ENTRY = "DUPLICATE_LEDGER_ENTRY"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    RECONCILIATION_FAILED = "RECONCILIATION_FAILED"
    GATEWAY_NOT_CONFIGURED = "GATEWAY_NOT_CONFIGURED"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"

    # External Service Errors
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"

BUSINESS_STATUS_CODES = {
    ErrorCodes.INSUFFICIENT_POINTS: 402,
    ErrorCodes.INSUFFICIENT_BALANCE: 402,
    ErrorCodes.ACCOUNT_NOT_FOUND: 404,
    ErrorCodes.ORDER_NOT_FOUND: 404,
    ErrorCodes.ACCOUNT_EXISTS: 409,
    ErrorCodes.DUPLICATE_TRADE_NO: 409,
    ErrorCodes.DUPLICATE_LEDGER_ENTRY: 409,
    ErrorCodes.SIGNATURE_MISMATCH: 400,
    ErrorCodes.VALIDATION_ERROR: 400,
}

SERVICE_STATUS_CODES = {
    ErrorCodes.DATABASE_ERROR: 503,
    ErrorCodes.RECONCILIATION_FAILED: 503,
    ErrorCodes.CIRCUIT_BREAKER_OPEN: 503,
    ErrorCodes.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCodes.GATEWAY_NOT_CONFIGURED: 500,
}

# Expected conditions that are part of normal traffic
QUIET_CODES = {ErrorCodes.INSUFFICIENT_POINTS, ErrorCodes.INSUFFICIENT_BALANCE}

class BusinessLogicError(Exception):
    """Custom exception for business logic errors"""
    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Custom exception for service-level errors"""
    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

class AccountNotFound(BusinessLogicError):
    """No balance row exists for the account. Never retried."""
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(ErrorCodes.ACCOUNT_NOT_FOUND, f"account {account_id} not found",
                         field="account_id", context={"account_id": account_id})

class AccountExists(BusinessLogicError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(ErrorCodes.ACCOUNT_EXISTS, f"account {account_id} already exists",
                         field="account_id", context={"account_id": account_id})

class InsufficientBalance(BusinessLogicError):
    """A debit would take the balance below zero."""
    code_name = ErrorCodes.INSUFFICIENT_BALANCE

    def __init__(self, account_id: str, balance: int, required: int):
        self.account_id = account_id
        self.balance = balance
        self.required = required
        super().__init__(self.code_name, f"insufficient balance: have {balance}, need {required}",
                         context={"account_id": account_id, "balance": balance, "required": required})

class InsufficientPoints(InsufficientBalance):
    code_name = ErrorCodes.INSUFFICIENT_POINTS

class InvalidAmount(BusinessLogicError):
    def __init__(self, message: str, field: str = "amount"):
        super().__init__(ErrorCodes.INVALID_AMOUNT, message, field=field)

class InvalidPlatform(BusinessLogicError):
    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(ErrorCodes.INVALID_PLATFORM, f"unsupported platform {platform!r}",
                         field="platform", context={"platform": platform})

class DuplicateTradeNo(BusinessLogicError):
    def __init__(self, trade_no: str):
        self.trade_no = trade_no
        super().__init__(ErrorCodes.DUPLICATE_TRADE_NO, f"trade number {trade_no} already exists",
                         field="merchant_trade_no", context={"merchant_trade_no": trade_no})

class OrderNotFound(BusinessLogicError):
    def __init__(self, trade_no: str):
        self.trade_no = trade_no
        super().__init__(ErrorCodes.ORDER_NOT_FOUND, f"order {trade_no} not found",
                         context={"merchant_trade_no": trade_no})

class DuplicateLedgerEntry(BusinessLogicError):
    """The idempotency key was already used; `entry` describes the original movement."""
    def __init__(self, idempotency_key: str, entry):
        self.idempotency_key = idempotency_key
        self.entry = entry
        super().__init__(ErrorCodes.DUPLICATE_LEDGER_ENTRY, f"ledger entry {idempotency_key} already applied",
                         context={"idempotency_key": idempotency_key, "ledger_id": entry.ledger_id})

class SignatureMismatch(BusinessLogicError):
    def __init__(self, trade_no: Optional[str] = None):
        self.trade_no = trade_no
        super().__init__(ErrorCodes.SIGNATURE_MISMATCH, "CheckMacValue verification failed",
                         field="CheckMacValue", context={"merchant_trade_no": trade_no})

class StoreTransient(ServiceError):
    """Timeouts, dropped connections and lock contention in the relational store."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.DATABASE_ERROR, message, original_error)

class GatewayUnreachable(ServiceError):
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.EXTERNAL_SERVICE_ERROR, message, original_error)

class GatewayNotConfigured(ServiceError):
    def __init__(self, message: str):
        super().__init__(ErrorCodes.GATEWAY_NOT_CONFIGURED, message)

class ReconciliationFailed(ServiceError):
    def __init__(self, trade_no: str, original_error: Exception = None):
        self.trade_no = trade_no
        super().__init__(ErrorCodes.RECONCILIATION_FAILED,
                         f"recharge for {trade_no} could not be settled: {original_error}", original_error)

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
) -> JSONResponse:
    """Create standardized error response"""
    error_response = StandardErrorResponse(
        error=error_code,
        message=message,
        field=field,
        context=context or None,
        timestamp=time.time(),
        trace_id=trace_id,
    )

    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(exclude_none=True)
    )

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business logic exceptions"""
    status_code = BUSINESS_STATUS_CODES.get(exc.code, 400)
    trace_id = getattr(request.state, 'trace_id', None)

    if exc.code == ErrorCodes.SIGNATURE_MISMATCH:
        security_logger.warning(f"Rejected payload with bad signature on {request.url.path}", extra={
            "trace_id": trace_id,
            "context": exc.context
        })
    elif exc.code not in QUIET_CODES:
        logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
            "error_code": exc.code,
            "trace_id": trace_id,
            "field": exc.field,
            "context": exc.context
        })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context,
        trace_id=trace_id,
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""
    status_code = SERVICE_STATUS_CODES.get(exc.code, 500)
    trace_id = getattr(request.state, 'trace_id', None)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        trace_id=trace_id,
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation exceptions"""
    trace_id = getattr(request.state, 'trace_id', None)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.info(f"Validation error: {message} on field {field}", extra={"trace_id": trace_id})

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        trace_id=trace_id,
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""
    trace_id = getattr(request.state, 'trace_id', None)

    status_to_code = {
        401: ErrorCodes.UNAUTHORIZED,
        403: ErrorCodes.FORBIDDEN,
        500: ErrorCodes.INTERNAL_SERVER_ERROR,
    }

    if isinstance(exc.detail, str) and exc.detail.isupper():
        error_code = exc.detail
    else:
        error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "trace_id": trace_id,
    })

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=trace_id,
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    trace_id = getattr(request.state, 'trace_id', None)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "traceback": traceback.format_exc()
    })

    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=trace_id,
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
