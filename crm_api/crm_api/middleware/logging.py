"""Access logging for the CRM API.

One record per request on the ``crm_api.access`` logger, carrying the
payload under ``record.request`` so :class:`JSONFormatter` can emit it as a
nested object.  Credentials never reach the log: API keys, bearer tokens,
cookies and Stripe signatures are replaced by ``***``.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("crm_api.access")

_REDACTED_HEADERS: frozenset[str] = frozenset({"authorization", "x-api-key", "cookie", "stripe-signature"})
_MASK = "***"

CORRELATION_HEADER = "X-Correlation-ID"


def redact_headers(headers: Any) -> dict[str, str]:
    """Copy *headers* with credential-bearing values masked."""
    return {key: (_MASK if key.lower() in _REDACTED_HEADERS else value) for key, value in headers.items()}


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation id and log its outcome.

    The id comes from the caller's ``X-Correlation-ID`` header when present,
    otherwise a fresh UUID-4.  It is stored on ``request.state`` so handlers
    can quote it, and echoed on the response.  ``tenant_id`` is read after the
    inner authentication middleware has run.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query or None,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "tenant_id": getattr(request.state, "tenant_id", None) or "anonymous",
                "role": getattr(request.state, "role", None),
                "headers": redact_headers(request.headers),
            }
            logger.log(_level_for(status_code), "request completed", extra={"request": payload})
