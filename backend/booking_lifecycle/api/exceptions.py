"""
FastAPI exception handlers for the booking lifecycle error taxonomy.

ErrorCode to HTTP status:
- 400 Bad Request: validation failures, missing reasons, idempotency mismatch
- 402 Payment Required: settlement failed
- 404 Not Found: unknown booking, course or payment record
- 409 Conflict: policy violations, status/payment state, inventory conflicts
- 429 Too Many Requests: edit rate limit (with Retry-After)
- 503 Service Unavailable: retryable integration faults
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_402_PAYMENT_REQUIRED,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_429_TOO_MANY_REQUESTS,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from booking_lifecycle.core.errors import BookingLifecycleError, ErrorCode, PolicyViolation
from booking_lifecycle.core.logging import get_logger

logger = get_logger(__name__)

ERROR_CODE_TO_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_FAILED: HTTP_400_BAD_REQUEST,
    ErrorCode.REASON_REQUIRED: HTTP_400_BAD_REQUEST,
    ErrorCode.METADATA_INCOMPLETE: HTTP_400_BAD_REQUEST,
    ErrorCode.IDEMPOTENCY_MISMATCH: HTTP_400_BAD_REQUEST,
    ErrorCode.REFUND_NOT_ALLOWED: HTTP_400_BAD_REQUEST,
    ErrorCode.POLICY_VIOLATION: HTTP_409_CONFLICT,
    ErrorCode.INVALID_STATUS_TRANSITION: HTTP_409_CONFLICT,
    ErrorCode.INVALID_PAYMENT_STATE: HTTP_409_CONFLICT,
    ErrorCode.DISPUTE_EVIDENCE_REJECTED: HTTP_409_CONFLICT,
    ErrorCode.INVENTORY_CONFLICT: HTTP_409_CONFLICT,
    ErrorCode.RATE_LIMITED: HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.PAYMENT_FAILED: HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.BOOKING_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.COURSE_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.PAYMENT_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.GATEWAY_UNAVAILABLE: HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.AUDIT_WRITE_FAILED: HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.CONCURRENT_MODIFICATION: HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.REQUEST_IN_PROGRESS: HTTP_503_SERVICE_UNAVAILABLE,
}


def get_http_status_for_error(code: ErrorCode) -> int:
    return ERROR_CODE_TO_HTTP_STATUS.get(code, HTTP_400_BAD_REQUEST)


async def booking_lifecycle_error_handler(request: Request, exc: BookingLifecycleError) -> JSONResponse:
    status_code = get_http_status_for_error(exc.code)
    headers = {}
    if isinstance(exc, PolicyViolation) and exc.retry_after_seconds:
        headers["Retry-After"] = str(exc.retry_after_seconds)

    log = logger.warning if status_code < 500 else logger.error
    log("request_rejected", error_code=exc.code.value, status_code=status_code, message=exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers or None)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", error=str(exc))
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error_code": "ERR_INTERNAL",
            "message": "An unexpected error occurred",
            "retryable": True,
            "details": {},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BookingLifecycleError, booking_lifecycle_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
