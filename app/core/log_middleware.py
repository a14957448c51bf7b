"""
Request logging middleware.

Assigns a request id (honouring an inbound ``X-Request-Id`` from the
session gateway), exposes it to structlog through a contextvar and writes
one ``request_completed`` entry per API call with the account id and the
billing error code, when the handlers recorded them on ``request.state``.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.structured_logging import request_id_var

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"

# Polled by load balancers every few seconds
QUIET_PATHS = frozenset({"/api/health", "/"})


class RequestLogMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            user = getattr(request.state, "user", None)
            fields = {
                "http.method": request.method,
                "http.path": request.url.path,
                "http.status_code": status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "user_id": getattr(user, "id", None),
                "error.code": getattr(request.state, "error_code", None),
            }
            level = logging.DEBUG if request.url.path in QUIET_PATHS else logging.INFO
            logger.log(level, "request_completed", extra=fields)
            request_id_var.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
