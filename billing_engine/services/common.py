"""Shared service utilities: UUID coercion and timestamp normalisation."""
from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def from_unix(value: int | float | None) -> datetime | None:
    """Processor timestamps are unix seconds."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, UTC)
