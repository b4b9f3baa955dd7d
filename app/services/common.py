"""Common helper functions for service layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
