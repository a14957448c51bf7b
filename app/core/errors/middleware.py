"""
FastAPI exception handler for BillingError.

Catches BillingError, looks up the registry, and returns a structured
JSON error response. Unknown codes get a safe fallback.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.errors import BillingError
from app.core.errors.registry import error_registry

logger = logging.getLogger(__name__)


def error_payload(exc: BillingError) -> tuple[int, dict]:
    """Return (http_status, body) for a BillingError."""
    entry = error_registry.get(exc.code)
    if entry is None:
        return 500, {
            "error": "An unexpected error occurred.",
            "code": exc.code,
            "recommended_plan": None,
            "retryable": False,
        }

    body = {
        "error": exc.message or entry.safe_message,
        "code": entry.code,
        "recommended_plan": exc.recommended_plan,
        "retryable": entry.retryable,
    }
    for key, value in exc.context.items():
        body.setdefault(key, value)
    return entry.http_status, body


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Convert BillingError into a structured JSON response."""
    entry = error_registry.get(exc.code)
    status_code, body = error_payload(exc)
    request.state.error_code = exc.code

    if entry is None:
        logger.error(
            "unregistered_error_code",
            extra={"error.code": exc.code, "error.message": exc.message},
        )
        return JSONResponse(status_code=status_code, content=body)

    log_fn = _severity_to_log_fn(entry.severity)
    log_fn(
        entry.title,
        extra={
            "error.code": exc.code,
            "error.message": exc.message,
            "error.recommended_plan": exc.recommended_plan,
            "http.path": request.url.path,
            **{f"error.ctx.{k}": v for k, v in exc.context.items()},
        },
    )

    headers = None
    if exc.retry_after_seconds is not None:
        headers = {"Retry-After": str(max(1, exc.retry_after_seconds))}
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def _severity_to_log_fn(severity: str):
    """Map registry severity to logger method."""
    return {
        "DEBUG": logger.debug,
        "INFO": logger.info,
        "WARN": logger.warning,
        "ERROR": logger.error,
        "CRITICAL": logger.critical,
    }.get(severity, logger.error)
