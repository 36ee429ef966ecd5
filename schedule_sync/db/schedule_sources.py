from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from supabase import Client

from ..models import ensure_utc, iso_utc, parse_iso
from ..sources.types import SyncResult

logger = logging.getLogger(__name__)

SOURCES_TABLE = "schedule_sources"
SYNCABLE_STATUSES = ("active", "error")
MAX_ERROR_LENGTH = 500
_SOURCE_COLUMNS = "id,org_id,vendor_id,source_url,title,status,last_synced_at,last_error,created_at"


@dataclass(frozen=True)
class ScheduleSourceRow:
    """
    One row of public.schedule_sources:
      - id (uuid)
      - org_id (uuid)
      - vendor_id (text; connector id, may be null for legacy rows)
      - source_url (text; normalized)
      - title (text, optional)
      - status (active | paused | error)
      - last_synced_at, last_error
    """
    id: str
    org_id: str
    source_url: str
    vendor_id: Optional[str] = None
    status: str = "active"
    last_synced_at: Optional[str] = None
    last_error: Optional[str] = None
    title: Optional[str] = None


def _row_from_db(r: dict) -> ScheduleSourceRow:
    return ScheduleSourceRow(
        id=str(r.get("id") or "").strip(),
        org_id=str(r.get("org_id") or "").strip(),
        source_url=str(r.get("source_url") or "").strip(),
        vendor_id=(str(r["vendor_id"]).strip() or None) if r.get("vendor_id") else None,
        status=str(r.get("status") or "active"),
        last_synced_at=r.get("last_synced_at"),
        last_error=r.get("last_error"),
        title=r.get("title"),
    )


def is_due(source: ScheduleSourceRow, synced_before: datetime) -> bool:
    """Never synced, unreadable timestamp, or last sync older than the cutoff."""
    if not source.last_synced_at:
        return True
    last = parse_iso(str(source.last_synced_at))
    return last is None or last < ensure_utc(synced_before)


def load_active_sources(
    client: Client,
    org_id: Optional[str] = None,
    source_id: Optional[str] = None,
    synced_before: Optional[datetime] = None,
) -> List[ScheduleSourceRow]:
    """
    Sources due for a sync: active ones and ones whose last run failed.

    With `synced_before`, sources synced at or after that instant are left
    for a later run.
    """
    query = client.table(SOURCES_TABLE).select(_SOURCE_COLUMNS).in_("status", list(SYNCABLE_STATUSES))
    if org_id:
        query = query.eq("org_id", org_id)
    if source_id:
        query = query.eq("id", source_id)

    resp = query.order("created_at", desc=False).execute()
    data: Any = getattr(resp, "data", None)
    if not data:
        return []

    rows = [_row_from_db(r) for r in data]

    # malformed rows are skipped, never fatal
    skipped = [x for x in rows if not (x.id and x.org_id and x.source_url)]
    if skipped:
        logger.warning("[sources] skipping %s malformed schedule_sources rows", len(skipped))
    rows = [x for x in rows if x.id and x.org_id and x.source_url]

    if synced_before is not None:
        due = [x for x in rows if is_due(x, synced_before)]
        logger.info(
            "[sources] due=%s fresh=%s synced_before=%s",
            len(due), len(rows) - len(due), iso_utc(synced_before),
        )
        rows = due
    return rows


def find_source(client: Client, org_id: str, source_url: str) -> Optional[ScheduleSourceRow]:
    resp = (
        client.table(SOURCES_TABLE)
        .select(_SOURCE_COLUMNS)
        .eq("org_id", org_id)
        .eq("source_url", source_url)
        .limit(1)
        .execute()
    )
    data: Any = getattr(resp, "data", None)
    return _row_from_db(data[0]) if data else None


def create_source(
    client: Client,
    *,
    org_id: str,
    source_url: str,
    vendor_id: str,
    now: datetime,
    title: Optional[str] = None,
    user_id: Optional[str] = None,
) -> ScheduleSourceRow:
    payload = {
        "org_id": org_id,
        "vendor_id": vendor_id,
        "source_url": source_url,
        "title": title,
        "status": "active",
        "created_by": user_id,
        "created_at": iso_utc(now),
        "updated_at": iso_utc(now),
    }
    resp = client.table(SOURCES_TABLE).insert(payload).execute()
    data: Any = getattr(resp, "data", None)
    if not data:
        raise RuntimeError("schedule_sources insert returned no row")
    row = _row_from_db(data[0])
    logger.info("[sources] created source_id=%s org_id=%s vendor=%s", row.id, org_id, vendor_id)
    return row


def mark_sync_success(client: Client, source_id: str, result: SyncResult, now: datetime) -> None:
    client.table(SOURCES_TABLE).update(
        {
            "status": "active",
            "last_synced_at": iso_utc(now),
            "last_error": None,
            "last_event_count": result.imported + result.updated,
            "updated_at": iso_utc(now),
        }
    ).eq("id", source_id).execute()


def mark_sync_error(client: Client, source_id: str, message: str, now: datetime) -> None:
    client.table(SOURCES_TABLE).update(
        {
            "status": "error",
            "last_error": (message or "Sync failed")[:MAX_ERROR_LENGTH],
            "updated_at": iso_utc(now),
        }
    ).eq("id", source_id).execute()
