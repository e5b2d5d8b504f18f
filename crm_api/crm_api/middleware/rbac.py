"""Role-based access control dependencies.

Three roles ordered by privilege: ``user`` < ``clinic_admin`` <
``super_admin``.  Each role inherits every capability of the roles below it.

Usage in routers::

    from crm_api.middleware.rbac import require_role

    @router.post("/rotate")
    async def rotate(
        ...,
        role: Role = Depends(require_role(Role.CLINIC_ADMIN)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from billing_core.models.roles import Role, parse_role
from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


def get_user_role(request: Request) -> Role:
    """Extract and validate the caller role from ``request.state.role``.

    Raises
    ------
    HTTPException(401)
        If the request is unauthenticated or the role claim is missing.
    HTTPException(403)
        If the role claim value is not a recognised role.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        if getattr(request.state, "sub", None) is not None:
            logger.warning(
                "Authenticated request (sub=%s) missing role claim; rejecting",
                getattr(request.state, "sub", "unknown"),
            )
            raise HTTPException(status_code=401, detail="Missing role claim in authenticated token")
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise HTTPException(status_code=403, detail="Unrecognised role")


def require_role(min_role: Role) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a minimum role level.

    Returns the resolved :class:`Role` so handlers can pass it on.
    """

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if role < min_role:
            logger.info("Role check failed: role=%s requires %s", role.claim, min_role.claim)
            raise HTTPException(
                status_code=403,
                detail=f"Role '{role.claim}' is insufficient; '{min_role.claim}' or higher required",
            )
        return role

    return _guard


require_admin = require_role(Role.CLINIC_ADMIN)
require_super_admin = require_role(Role.SUPER_ADMIN)
