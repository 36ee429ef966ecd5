from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from .config import SYNC_STALE_HOURS
from .db.schedule_sources import (
    ScheduleSourceRow,
    create_source,
    find_source,
    load_active_sources,
    mark_sync_error,
    mark_sync_success,
)
from .db.supabase_client import get_supabase_client
from .errors import classify_error, public_error_message
from .models import NormalizedEvent, iso_utc
from .security.enroll import authorize_domain, ensure_domain_allowed, verify_and_enroll
from .security.url import mask_url, normalize_url
from .sources.base import BaseConnector
from .sources.registry import CONNECTORS_BY_ID, detect_connector, get_connector
from .sources.types import SyncWindow, default_sync_window

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(hours=SYNC_STALE_HOURS)
DUPLICATE_SOURCE_MESSAGE = "Schedule already connected for this organization"


@dataclass
class SourceSyncOutcome:
    source_id: str
    ok: bool
    imported: int = 0
    updated: int = 0
    cancelled: int = 0
    vendor: Optional[str] = None
    error: Optional[str] = None
    recorded: bool = True


def _resolve_connector(source: ScheduleSourceRow) -> BaseConnector:
    if not source.vendor_id:
        return detect_connector(source.source_url).connector
    if source.vendor_id not in CONNECTORS_BY_ID:
        raise ValueError(f"Unsupported vendor: {source.vendor_id}")
    return get_connector(source.vendor_id)


def sync_source(
    client: Client,
    source: ScheduleSourceRow,
    window: Optional[SyncWindow] = None,
    now: Optional[datetime] = None,
) -> SourceSyncOutcome:
    """
    Sync one schedule source and record the outcome on its row.

    Failures (unknown vendor, fetch/parse errors, DB errors) are written to
    schedule_sources.last_error and returned; they never escape. A failed
    status write is logged and reported as `recorded=False`.
    """
    now = now or datetime.now(timezone.utc)
    window = window or default_sync_window(now)

    try:
        connector = _resolve_connector(source)
        result = connector.sync(source.id, source.org_id, source.source_url, window, client=client)
    except Exception as e:
        message = str(e) or type(e).__name__
        logger.warning(
            "[pipeline] SYNC_FAILED source_id=%s url=%s status=%s | %s: %s",
            source.id, mask_url(source.source_url), classify_error(e), type(e).__name__, message,
        )
        try:
            mark_sync_error(client, source.id, message, now)
            recorded = True
        except Exception as write_err:
            logger.error(
                "[pipeline] could not record failure source_id=%s | %s: %s",
                source.id, type(write_err).__name__, write_err,
            )
            recorded = False
        return SourceSyncOutcome(
            source_id=source.id, ok=False, vendor=source.vendor_id, error=message, recorded=recorded
        )

    try:
        mark_sync_success(client, source.id, result, now)
        recorded = True
    except Exception as write_err:
        logger.error(
            "[pipeline] could not record success source_id=%s | %s: %s",
            source.id, type(write_err).__name__, write_err,
        )
        recorded = False
    logger.info(
        "[pipeline] synced source_id=%s vendor=%s imported=%s updated=%s cancelled=%s",
        source.id, result.vendor, result.imported, result.updated, result.cancelled,
    )
    return SourceSyncOutcome(
        source_id=source.id,
        ok=True,
        imported=result.imported,
        updated=result.updated,
        cancelled=result.cancelled,
        vendor=result.vendor,
        recorded=recorded,
    )


def run_sync(
    client: Client,
    org_id: Optional[str] = None,
    source_id: Optional[str] = None,
    window: Optional[SyncWindow] = None,
    now: Optional[datetime] = None,
    force: bool = False,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> Dict[str, int]:
    """
    Sync every due source. Sources synced within `stale_after` are skipped
    unless `force` is set; never-synced sources are always due.
    """
    now = now or datetime.now(timezone.utc)
    synced_before = None if force else now - stale_after
    sources = load_active_sources(client, org_id=org_id, source_id=source_id, synced_before=synced_before)
    summary = {
        "sources_run": 0,
        "synced": 0,
        "failed": 0,
        "imported": 0,
        "updated": 0,
        "cancelled": 0,
    }
    for source in sources:
        outcome = sync_source(client, source, window=window, now=now)
        summary["sources_run"] += 1
        if not outcome.ok:
            summary["failed"] += 1
            continue
        summary["synced"] += 1
        summary["imported"] += outcome.imported
        summary["updated"] += outcome.updated
        summary["cancelled"] += outcome.cancelled
    return summary


def serialize_event(ev: NormalizedEvent) -> Dict[str, Any]:
    return {
        "external_uid": ev.external_uid,
        "title": ev.title,
        "start_at": iso_utc(ev.start_at),
        "end_at": iso_utc(ev.end_at) if ev.end_at else None,
        "all_day": ev.all_day,
        "location": ev.location,
        "status": ev.status,
    }


def preview_schedule(org_id: str, url: str, client: Optional[Client] = None) -> Dict[str, Any]:
    """
    Preview payload for a schedule URL (nothing is persisted).

    With a client, the host must already be an active allowed domain.
    """
    normalized = normalize_url(url)
    if client is not None:
        ensure_domain_allowed(client, normalized)

    detection = detect_connector(normalized)
    preview = detection.connector.preview(normalized, org_id)
    return {
        "vendor": preview.vendor,
        "title": preview.title,
        "events": [serialize_event(ev) for ev in preview.events],
        "inferred_meta": preview.inferred_meta,
        "masked_url": mask_url(normalized),
    }


@dataclass
class ConnectResult:
    source_id: str
    vendor_id: str
    masked_url: str
    title: Optional[str]
    sync: SourceSyncOutcome


def connect_source(
    client: Client,
    org_id: str,
    url: str,
    title: Optional[str] = None,
    user_id: Optional[str] = None,
    window: Optional[SyncWindow] = None,
    now: Optional[datetime] = None,
) -> ConnectResult:
    """
    Add a schedule source for an org and run its first sync.

    Order: URL gate, domain gate (may fingerprint and enroll the host),
    duplicate check, connector detection, row insert, initial sync. Gate and
    detection errors raise before anything is written; a failed initial
    sync leaves the row in status=error and is returned in `sync`.
    """
    now = now or datetime.now(timezone.utc)
    normalized = normalize_url(url)
    authorize_domain(client, normalized, org_id, user_id=user_id, now=now)

    if find_source(client, org_id, normalized) is not None:
        raise ValueError(DUPLICATE_SOURCE_MESSAGE)

    detection = detect_connector(normalized)
    source = create_source(
        client,
        org_id=org_id,
        source_url=normalized,
        vendor_id=detection.connector.id,
        title=title,
        user_id=user_id,
        now=now,
    )
    logger.info(
        "[pipeline] connected source_id=%s vendor=%s reason=%s url=%s",
        source.id, detection.connector.id, detection.reason, mask_url(normalized),
    )

    outcome = sync_source(client, source, window=window, now=now)
    return ConnectResult(
        source_id=source.id,
        vendor_id=detection.connector.id,
        masked_url=mask_url(normalized),
        title=title,
        sync=outcome,
    )


def _print_summary(summary: Dict[str, int]) -> None:
    # grep '[pipeline][summary]' /tmp/schedule-sync.log
    print(
        f"[pipeline][summary]"
        f" sources_run={summary['sources_run']}"
        f" synced={summary['synced']}"
        f" failed={summary['failed']}"
        f" imported={summary['imported']}"
        f" updated={summary['updated']}"
        f" cancelled={summary['cancelled']}"
    )


def _cmd_sync(args: argparse.Namespace) -> int:
    client = get_supabase_client()
    summary = run_sync(client, org_id=args.org_id, source_id=args.source_id, force=args.force)
    _print_summary(summary)
    return 1 if summary["failed"] else 0


def _cmd_preview(args: argparse.Namespace) -> int:
    client = None if args.skip_domain_check else get_supabase_client()
    try:
        payload = preview_schedule(args.org_id, args.url, client=client)
    except Exception as e:
        print(f"[pipeline][preview] status={classify_error(e)} error={public_error_message(e)}")
        logger.debug("[pipeline] preview failed", exc_info=True)
        return 1

    print(
        f"[pipeline][preview] vendor={payload['vendor']} title={payload['title']!r}"
        f" events={len(payload['events'])} url={payload['masked_url']}"
    )
    for ev in payload["events"]:
        print(f"  {ev['start_at']}  {ev['title']}" + (f"  @ {ev['location']}" if ev["location"] else ""))
    return 0


def _cmd_connect(args: argparse.Namespace) -> int:
    client = get_supabase_client()
    try:
        result = connect_source(client, args.org_id, args.url, title=args.title, user_id=args.user_id)
    except Exception as e:
        print(f"[pipeline][connect] status={classify_error(e)} error={public_error_message(e)}")
        logger.debug("[pipeline] connect failed", exc_info=True)
        return 1

    outcome = result.sync
    print(
        f"[pipeline][connect] source_id={result.source_id} vendor={result.vendor_id}"
        f" synced={outcome.ok} imported={outcome.imported} url={result.masked_url}"
        + ("" if outcome.ok else f" error={outcome.error}")
    )
    return 0 if outcome.ok else 1


def _cmd_verify(args: argparse.Namespace) -> int:
    client = get_supabase_client()
    try:
        result = verify_and_enroll(
            client, args.url, args.org_id, user_id=args.user_id, vendor_hint=args.vendor_hint
        )
    except Exception as e:
        print(f"[pipeline][verify] status={classify_error(e)} error={public_error_message(e)}")
        return 1

    print(
        f"[pipeline][verify] allow_status={result.allow_status} vendor={result.vendor_id}"
        f" confidence={result.confidence} evidence={','.join(result.evidence or [])}"
    )
    return 0 if result.allow_status in ("active", "pending") else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="schedule-sync",
        description="Import external team schedules (ICS feeds, athletics pages) into schedule_events.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    p_sync = sub.add_parser("sync", help="Sync every active schedule source.")
    p_sync.add_argument("--org-id", default=None, help="Only sources of this org (optional).")
    p_sync.add_argument("--source-id", default=None, help="Only this source (optional).")
    p_sync.add_argument(
        "--force",
        action="store_true",
        help="Also sync sources that were synced recently (SCHEDULE_SYNC_STALE_HOURS).",
    )
    p_sync.set_defaults(func=_cmd_sync)

    p_preview = sub.add_parser("preview", help="Show the first events of a schedule URL.")
    p_preview.add_argument("--org-id", required=True)
    p_preview.add_argument(
        "--skip-domain-check",
        action="store_true",
        help="Do not require an active schedule_allowed_domains row (no DB access).",
    )
    p_preview.add_argument("url")
    p_preview.set_defaults(func=_cmd_preview)

    p_connect = sub.add_parser("connect", help="Add a schedule source for an org and run its first sync.")
    p_connect.add_argument("--org-id", required=True)
    p_connect.add_argument("--title", default=None)
    p_connect.add_argument("--user-id", default=None)
    p_connect.add_argument("url")
    p_connect.set_defaults(func=_cmd_connect)

    p_verify = sub.add_parser("verify", help="Fingerprint a host and enroll it as an allowed domain.")
    p_verify.add_argument("--org-id", required=True)
    p_verify.add_argument("--user-id", default=None)
    p_verify.add_argument("--vendor-hint", default=None)
    p_verify.add_argument("url")
    p_verify.set_defaults(func=_cmd_verify)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
