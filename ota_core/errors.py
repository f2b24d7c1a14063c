"""
Error taxonomy for the OTA integration core.

Low-level adapter, transport and store errors are wrapped into these at the
dispatcher / engine boundary. Each carries a stable code; the API handler
renders `{ok: false, error: {code, message, correlationId}}` and never leaks
stack details or secrets.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from .utils.logging_config import correlation_id_var

logger = logging.getLogger(__name__)


class OTACoreError(Exception):
    code = "ota_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class TransientError(OTACoreError):
    """Retry the operation: network timeout, 5xx from OTA, bus back-pressure"""
    code = "transient_error"
    http_status = 503
    retryable = True


class RateLimited(TransientError):
    """Retry after the adapter's hint or the default backoff"""
    code = "rate_limited"
    http_status = 429

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ValidationError(OTACoreError):
    """Malformed request; never retried"""
    code = "validation_error"
    http_status = 400


class PayloadTooLarge(ValidationError):
    code = "payload_too_large"
    http_status = 413


class AuthError(OTACoreError):
    """Signature mismatch inbound or credential reject outbound"""
    code = "auth_error"
    http_status = 401


class BusinessRuleError(OTACoreError):
    """A decision violated a booking rule"""
    code = "business_rule_violation"
    http_status = 422

    def __init__(self, message: str, rule: str, **kwargs):
        super().__init__(message, **kwargs)
        self.rule = rule

    @property
    def reason(self) -> Dict[str, Any]:
        """Structured reason stored on a rejected amendment"""
        return {"rule": self.rule, "message": self.message, **self.details}


class IntegrityError(OTACoreError):
    """Payload hash mismatch or schema drift; the record is quarantined"""
    code = "integrity_error"
    http_status = 500


class NotFoundError(OTACoreError):
    code = "not_found"
    http_status = 404


class InvalidTransitionError(OTACoreError):
    """State machine refused the transition (terminal state or illegal edge)"""
    code = "invalid_transition"
    http_status = 409


def error_body(code: str, message: str, correlation_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ok": False,
        "error": {
            "code": code,
            "message": message,
            "correlationId": correlation_id or correlation_id_var.get() or None,
        },
    }


async def ota_error_handler(request: Request, exc: OTACoreError) -> JSONResponse:
    """Render taxonomy errors with their stable code"""
    if exc.http_status >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    headers = {}
    if isinstance(exc, RateLimited) and exc.retry_after:
        headers["Retry-After"] = str(int(exc.retry_after))
    return JSONResponse(
        status_code=exc.http_status,
        content=error_body(exc.code, exc.message),
        headers=headers,
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: log the stack, return a generic message"""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content=error_body("internal_error", "An internal error occurred"),
    )
