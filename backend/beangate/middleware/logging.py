"""
BeanGate Backend: Request Logging Middleware
==============================================

What:  One access log line per HTTP request: method, path, status, duration,
       request id, and whether the caller was authenticated.
How:   Measures wall time around the downstream app and picks the log level
       from the status class (5xx ERROR, 4xx WARNING, else INFO).
Who:   Registered in main.create_app() inside RequestIDMiddleware, so the
       request id is already set when this runs.

Never logged: request bodies (they carry API keys on /api/keys), the auth
header value, or query strings.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from beangate.config import settings
from beangate.middleware.request_id import request_id_var

logger = logging.getLogger("beangate.access")

# Probe endpoints that would otherwise flood the log.
_QUIET_PATHS = frozenset({"/health"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in _QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO

        rid = request_id_var.get("")
        authenticated = bool(request.headers.get(settings.auth_user_header))
        logger.log(
            level,
            "%s %s %d %.1fms [%s] auth=%s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            "user" if authenticated else "anonymous",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return response
