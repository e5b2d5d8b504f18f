"""Closed set of caller roles.

The integer value encodes hierarchy: a role implicitly holds every
capability of the roles with lower values.
"""

from __future__ import annotations

from enum import IntEnum


class Role(IntEnum):
    """Caller roles ordered by privilege level."""

    USER = 0
    CLINIC_ADMIN = 1
    SUPER_ADMIN = 2

    @property
    def claim(self) -> str:
        """The string form used in token claims and audit metadata."""
        return self.name.lower()


# Mapping from the string claim value to the enum member.
_ROLE_LOOKUP: dict[str, Role] = {r.claim: r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a ``role`` claim string into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


def is_admin(role: Role) -> bool:
    """Return ``True`` for roles allowed to manage tenant credentials and billing."""
    return role >= Role.CLINIC_ADMIN
