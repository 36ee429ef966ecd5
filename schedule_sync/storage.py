from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, List, Optional, Sequence, TypeVar

from supabase import Client

from .models import NormalizedEvent, default_end, ensure_utc, iso_utc
from .sources.types import SyncWindow

logger = logging.getLogger(__name__)

EVENTS_TABLE = "schedule_events"
ON_CONFLICT = "source_id,external_uid"

# PostgREST puts `in.(...)` filters in the query string; keep them short.
CANCEL_CHUNK_SIZE = 250
UPSERT_CHUNK_SIZE = 500
# PostgREST returns at most max-rows (1000 by default) per request.
EXISTING_PAGE_SIZE = 1000

T = TypeVar("T")


@dataclass
class ReconcileResult:
    imported: int = 0
    updated: int = 0
    cancelled: int = 0


# -----------------------------------------------------------------------------
# Small utilities
# -----------------------------------------------------------------------------

def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def ensure_end(ev: NormalizedEvent) -> NormalizedEvent:
    if ev.end_at is not None:
        return ev
    return ev.model_copy(update={"end_at": default_end(ev.start_at, ev.all_day)})


def dedupe_events(events: Iterable[NormalizedEvent]) -> List[NormalizedEvent]:
    """One event per external_uid; the last one in input order wins."""
    by_uid: dict[str, NormalizedEvent] = {}
    for ev in events:
        by_uid[ev.external_uid] = ev
    return list(by_uid.values())


def build_schedule_event_row(
    ev: NormalizedEvent,
    *,
    org_id: str,
    source_id: str,
    now: datetime,
) -> dict[str, Any]:
    """
    Build a dict suitable for upserting into public.schedule_events.

    Pure function (no DB calls).
    """
    end_at = ev.end_at or default_end(ev.start_at, ev.all_day)
    return {
        "org_id": org_id,
        "source_id": source_id,
        "external_uid": ev.external_uid,
        "title": ev.title,
        "start_at": iso_utc(ev.start_at),
        "end_at": iso_utc(end_at),
        "location": ev.location,
        "status": ev.status,
        "raw": ev.raw,
        "updated_at": iso_utc(now),
    }


# -----------------------------------------------------------------------------
# Reconciliation
# -----------------------------------------------------------------------------

def load_existing_in_window(
    client: Client, source_id: str, window: SyncWindow
) -> list[dict[str, Any]]:
    """All rows of the source starting inside the window, paged with .range()."""
    rows: list[dict[str, Any]] = []
    offset = 0
    while True:
        res = (
            client.table(EVENTS_TABLE)
            .select("id,external_uid,status")
            .eq("source_id", source_id)
            .gte("start_at", iso_utc(window.start))
            .lte("start_at", iso_utc(window.end))
            .order("id")
            .range(offset, offset + EXISTING_PAGE_SIZE - 1)
            .execute()
        )
        page = list(getattr(res, "data", None) or [])
        rows.extend(page)
        if len(page) < EXISTING_PAGE_SIZE:
            return rows
        offset += EXISTING_PAGE_SIZE


def sync_schedule_events(
    client: Client,
    *,
    org_id: str,
    source_id: str,
    events: Iterable[NormalizedEvent],
    window: SyncWindow,
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """
    Reconcile a freshly normalized batch into schedule_events.

    1. dedupe by external_uid (last wins), keep only starts inside the
       window, give every event an end
    2. snapshot existing rows of this source whose start is in the window
    3. batch upsert on (source_id, external_uid); imported/updated are
       report-only counts
    4. rows in the snapshot but missing from the batch move to
       status=cancelled (never deleted)

    Invariant: a second call with the same input reports imported=0 and
    leaves the table unchanged apart from updated_at.
    Persistence errors propagate; a retry reconverges to the same state.
    """
    now = ensure_utc(now or datetime.now(timezone.utc))

    batch = [ensure_end(ev) for ev in dedupe_events(events) if window.contains(ev.start_at)]

    existing = load_existing_in_window(client, source_id, window)
    existing_by_uid = {
        row["external_uid"]: row for row in existing if row.get("external_uid")
    }

    result = ReconcileResult()
    for ev in batch:
        if ev.external_uid in existing_by_uid:
            result.updated += 1
        else:
            result.imported += 1

    rows = [
        build_schedule_event_row(ev, org_id=org_id, source_id=source_id, now=now)
        for ev in batch
    ]
    for chunk in chunked(rows, UPSERT_CHUNK_SIZE):
        client.table(EVENTS_TABLE).upsert(list(chunk), on_conflict=ON_CONFLICT).execute()

    incoming = {ev.external_uid for ev in batch}
    stale = [
        uid for uid, row in existing_by_uid.items()
        if uid not in incoming and row.get("status") != "cancelled"
    ]
    for chunk in chunked(stale, CANCEL_CHUNK_SIZE):
        (
            client.table(EVENTS_TABLE)
            .update({"status": "cancelled", "updated_at": iso_utc(now)})
            .eq("source_id", source_id)
            .in_("external_uid", list(chunk))
            .execute()
        )
        result.cancelled += len(chunk)

    logger.info(
        "[storage] reconciled source_id=%s batch=%s imported=%s updated=%s cancelled=%s",
        source_id, len(batch), result.imported, result.updated, result.cancelled,
    )
    return result
