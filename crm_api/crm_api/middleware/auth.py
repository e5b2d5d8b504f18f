"""Authentication middleware that extracts and validates bearer tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates it
via :class:`TokenManager`, and populates ``request.state`` with
``tenant_id``, ``sub`` (user identity), ``role`` and ``jti``.

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication: the webhook
endpoint authenticates by signature and the integration endpoint by API key.
Paths in ``_OPTIONAL_AUTH_PATHS`` accept anonymous callers but still reject
a token that is present and invalid.
"""

from __future__ import annotations

import logging
from typing import Any

from billing_core.errors import AuthenticationFailure
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from crm_api.security import TokenManager

logger = logging.getLogger(__name__)

# Paths that do not require a bearer token.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/billing/webhooks",
        "/api/v1/integrations/whoami",
    }
)

# Prefixes that skip auth (e.g. static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)

# Paths that evaluate anonymous callers instead of rejecting them.
_OPTIONAL_AUTH_PATHS: frozenset[str] = frozenset({"/api/v1/entitlement"})


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


def _unauthorized(detail: str, error_code: str = AuthenticationFailure.error_code) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"detail": detail, "error_code": error_code},
        headers={"WWW-Authenticate": "Bearer"},
    )


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Checks whether the path is public and skips auth.
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Validates the token via :class:`TokenManager`.
    4. Stores ``tenant_id``, ``sub``, ``role`` and ``jti`` on ``request.state``.
    5. Returns a 401 JSON response on failure.
    """

    def __init__(self, app: Any, *, token_manager: TokenManager) -> None:
        super().__init__(app)
        self._token_manager = token_manager

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        if _is_public_path(path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            if path in _OPTIONAL_AUTH_PATHS:
                return await call_next(request)
            return _unauthorized("Missing Authorization header")

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return _unauthorized("Authorization header must use Bearer scheme")

        try:
            claims = self._token_manager.validate_token(parts[1])
        except AuthenticationFailure as exc:
            logger.info("Rejected bearer token on %s: %s", path, exc)
            return _unauthorized(
                "Token has expired" if exc.error_code == "token_expired" else "Invalid token",
                exc.error_code,
            )

        # Populate request.state for downstream dependencies and handlers.
        request.state.tenant_id = claims.tenant_id
        request.state.sub = claims.sub
        request.state.role = claims.role
        request.state.jti = claims.jti

        return await call_next(request)
