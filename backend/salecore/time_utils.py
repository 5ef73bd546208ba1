"""
Timestamps are stored UTC-naive and serialized with a trailing 'Z'.

Parsers take the name of the field they read so a malformed value surfaces
as a ValidationError the caller can return as-is.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from .errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def parse_iso_datetime(value: Optional[str], field: str = "datetime") -> Optional[datetime]:
    """
    "2026-03-01T08:30", "...Z" or "...+03:00" -> UTC-naive datetime.

    Naive input is taken as UTC. Blank -> None.
    """
    if _blank(value):
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", details={field: value})
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_iso_date(value: Optional[str], field: str = "date") -> Optional[date]:
    if _blank(value):
        return None
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be YYYY-MM-DD", details={field: value})


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Second-precision ISO-8601 in UTC; naive input is taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
