from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..config import SYNC_FUTURE_DAYS, SYNC_PAST_DAYS
from ..models import NormalizedEvent, ensure_utc

PREVIEW_DAYS_BACK = 30
PREVIEW_DAYS_FORWARD = 180
PREVIEW_MAX_EVENTS = 20


@dataclass(frozen=True)
class SyncWindow:
    """Closed time range bounding expansion, filtering and drop detection."""
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.end < self.start:
            raise ValueError("SyncWindow end must not precede start")

    def contains(self, dt: datetime) -> bool:
        return self.start <= ensure_utc(dt) <= self.end


def _day_bounded_window(now: datetime, days_back: int, days_forward: int) -> SyncWindow:
    now = ensure_utc(now)
    start = (now - timedelta(days=days_back)).replace(hour=0, minute=0, second=0, microsecond=0)
    end = (now + timedelta(days=days_forward)).replace(
        hour=23, minute=59, second=59, microsecond=999000
    )
    return SyncWindow(start=start, end=end)


def default_sync_window(now: Optional[datetime] = None) -> SyncWindow:
    return _day_bounded_window(
        now or datetime.now(timezone.utc), SYNC_PAST_DAYS, SYNC_FUTURE_DAYS
    )


def preview_window(now: Optional[datetime] = None) -> SyncWindow:
    return _day_bounded_window(
        now or datetime.now(timezone.utc), PREVIEW_DAYS_BACK, PREVIEW_DAYS_FORWARD
    )


@dataclass(frozen=True)
class HandleResult:
    ok: bool
    confidence: float = 0.0
    reason: Optional[str] = None


@dataclass
class PreviewResult:
    vendor: str
    events: List[NormalizedEvent] = field(default_factory=list)
    title: Optional[str] = None
    inferred_meta: Optional[Dict[str, Any]] = None


@dataclass
class SyncResult:
    imported: int
    updated: int
    cancelled: int
    vendor: str
