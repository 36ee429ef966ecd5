from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, field_validator

EventStatus = Literal["confirmed", "cancelled", "tentative"]

DEFAULT_TIMED_DURATION = timedelta(hours=1)
DEFAULT_ALL_DAY_DURATION = timedelta(hours=24)


def ensure_utc(dt: datetime) -> datetime:
    """Naive datetimes are read as UTC; aware ones are converted."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_utc(dt: datetime) -> str:
    """
    Canonical timestamp string: 2025-02-10T17:00:00.000Z

    Used both for persisted start/end values and for synthesized
    recurring-instance ids, so it must stay stable across releases.
    """
    return ensure_utc(dt).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> Optional[datetime]:
    if not value:
        return None
    v = value.strip()
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(v))
    except ValueError:
        return None


class NormalizedEvent(BaseModel):
    external_uid: str

    title: str
    start_at: datetime
    end_at: Optional[datetime] = None
    all_day: bool = False

    location: Optional[str] = None
    status: EventStatus = "confirmed"

    raw: Optional[Dict[str, Any]] = None
    # pre-sanitization title; only feeds external_uid hashing, never persisted
    raw_title: Optional[str] = None

    @field_validator("start_at", "end_at", mode="before")
    @classmethod
    def _coerce_utc(cls, v: Any) -> Any:
        if isinstance(v, str):
            parsed = parse_iso(v)
            if parsed is None:
                raise ValueError(f"invalid ISO timestamp: {v!r}")
            return parsed
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


def default_end(start: datetime, all_day: bool) -> datetime:
    """End for events whose source gave none: +24h all-day, +1h otherwise."""
    return start + (DEFAULT_ALL_DAY_DURATION if all_day else DEFAULT_TIMED_DURATION)


def normalize_status(status: Any) -> EventStatus:
    """Free-text vendor status -> confirmed | cancelled | tentative."""
    if not isinstance(status, str) or not status:
        return "confirmed"
    lower = status.lower()
    if "cancel" in lower:
        return "cancelled"
    if "tentative" in lower:
        return "tentative"
    return "confirmed"
