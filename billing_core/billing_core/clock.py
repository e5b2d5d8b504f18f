"""Injectable time source.

Components accept a ``clock`` callable instead of calling
``datetime.now()`` directly so tests can advance time deterministically.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)
