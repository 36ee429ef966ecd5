"""
Fallback connector for arbitrary schedule pages.

Signals, strongest first:
  - a linked .ics feed           -> delegate to the ICS connector
  - Schema.org Event JSON-LD
  - an embedded window.__SCHEDULE_DATA__ blob
  - schedule-like tables
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from ...models import NormalizedEvent, parse_iso
from ...sanitize import sanitize_event_title
from ...security.url import mask_url
from ..base import HtmlConnector
from ..html_utils import (
    ParsedEvent,
    extract_balanced_json,
    extract_json_ld_events,
    extract_table_events,
    find_ics_link,
    parse_date_time,
    to_normalized_events,
)
from ..types import HandleResult, PreviewResult, SyncWindow, preview_window
from .ics import IcsConnector

logger = logging.getLogger(__name__)

SCHEDULE_DATA_PREFIX = re.compile(r"window\.__SCHEDULE_DATA__\s*=\s*")


def _first_str(obj: Mapping[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _parse_when(value: Optional[str]):
    if not value:
        return None
    return parse_iso(value) or parse_date_time(value)


def extract_schedule_data_events(html: str) -> List[ParsedEvent]:
    """window.__SCHEDULE_DATA__ = {"events": [{"id", "title", "start", "end", ...}]}"""
    data = extract_balanced_json(html or "", SCHEDULE_DATA_PREFIX)
    if not isinstance(data, dict):
        return []
    items = data.get("events")
    if not isinstance(items, list):
        return []

    events: List[ParsedEvent] = []
    for row_index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        start = _parse_when(_first_str(item, "start", "startDate", "start_at"))
        if start is None:
            continue
        raw_title = _first_str(item, "title", "name")
        uid = item.get("id") if item.get("id") is not None else item.get("uid")
        events.append(
            ParsedEvent(
                title=sanitize_event_title(raw_title),
                raw_title=raw_title,
                start_at=start,
                end_at=_parse_when(_first_str(item, "end", "endDate", "end_at")),
                location=_first_str(item, "location", "venue"),
                status=_first_str(item, "status"),
                uid=str(uid) if uid is not None and str(uid).strip() else None,
                row_index=row_index,
                raw=item,
            )
        )
    return events


@dataclass
class _PageScan:
    kind: Optional[str] = None
    ics_url: Optional[str] = None
    parsed: List[ParsedEvent] = field(default_factory=list)


def scan_page(html: str, url: str) -> _PageScan:
    ics_url = find_ics_link(html, url)
    if ics_url:
        return _PageScan(kind="ics_link", ics_url=ics_url)
    for kind, extractor in (
        ("json_ld", extract_json_ld_events),
        ("schedule_data", extract_schedule_data_events),
        ("table", extract_table_events),
    ):
        parsed = extractor(html)
        if parsed:
            return _PageScan(kind=kind, parsed=parsed)
    return _PageScan()


class GenericHtmlConnector(HtmlConnector):
    id = "generic_html"
    preview_title = "Schedule"

    _SCORES = {"ics_link": 0.55, "json_ld": 0.5, "schedule_data": 0.45, "table": 0.4}

    def __init__(self, ics: Optional[IcsConnector] = None) -> None:
        self.ics = ics or IcsConnector()

    def can_handle(
        self,
        url: str,
        html: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> HandleResult:
        if not html:
            return HandleResult(ok=False)
        scan = scan_page(html, url)
        if scan.kind is None:
            return HandleResult(ok=False)
        return HandleResult(ok=True, confidence=self._SCORES[scan.kind], reason=scan.kind)

    def extract(self, html: str, url: str) -> List[ParsedEvent]:
        return scan_page(html, url).parsed

    def _load(self, url: str, window: SyncWindow) -> tuple[List[NormalizedEvent], _PageScan]:
        fetched = self.fetch_html(url)
        scan = scan_page(fetched.text, fetched.url)
        if scan.ics_url:
            logger.info("[generic_html] delegating to ics feed=%s", mask_url(scan.ics_url))
            return self.ics.load_events(scan.ics_url, window), scan
        events = to_normalized_events(scan.parsed)
        logger.info(
            "[generic_html] kind=%s extracted=%s url=%s",
            scan.kind, len(events), mask_url(fetched.url),
        )
        return events, scan

    def load_events(self, url: str, window: SyncWindow) -> List[NormalizedEvent]:
        events, _ = self._load(url, window)
        return events

    def preview(self, url: str, org_id: str) -> PreviewResult:
        window = preview_window(self.now_utc())
        events, scan = self._load(url, window)
        result = self.build_preview([ev for ev in events if window.contains(ev.start_at)])
        if scan.kind is not None:
            meta: dict[str, Any] = {"detected": scan.kind}
            if scan.ics_url:
                meta["ics_url"] = mask_url(scan.ics_url)
                if result.events:
                    result.title = self.ics.preview_title
            result.inferred_meta = meta
        return result
