"""Utility helpers for OpenPotluck."""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Convert aware datetimes to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def normalize_email(value: str | None) -> str:
    """Return the canonical form used to match participants by email."""
    return (value or "").strip().lower()


def clean_optional(value: str | None) -> str | None:
    """Strip a free-text field, collapsing blanks to ``None``."""
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None
