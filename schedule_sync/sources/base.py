from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Mapping, Optional

from supabase import Client

from ..db.supabase_client import get_supabase_client
from ..models import NormalizedEvent
from ..security.url import mask_url
from ..storage import ensure_end, sync_schedule_events
from .html_utils import ParsedEvent, to_normalized_events
from .http import FetchResult, fetch_url_safe
from .types import PREVIEW_MAX_EVENTS, HandleResult, PreviewResult, SyncResult, SyncWindow, preview_window

logger = logging.getLogger(__name__)


class BaseConnector(ABC):
    """
    One schedule source type (ICS feed, vendor page, generic HTML).

    Subclasses implement detection (can_handle) and load_events; preview
    and sync are shared: fetch -> parse/normalize -> reconcile.
    """

    id: str = ""
    preview_title: Optional[str] = None

    @abstractmethod
    def can_handle(
        self,
        url: str,
        html: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> HandleResult:
        """Confidence that this connector understands the source."""

    @abstractmethod
    def load_events(self, url: str, window: SyncWindow) -> List[NormalizedEvent]:
        """Fetch the source and return normalized events (not yet windowed)."""

    def preview(self, url: str, org_id: str) -> PreviewResult:
        window = preview_window(self.now_utc())
        events = [ev for ev in self.load_events(url, window) if window.contains(ev.start_at)]
        logger.info(
            "[%s] preview org_id=%s url=%s in_window=%s", self.id, org_id, mask_url(url), len(events)
        )
        return self.build_preview(events)

    def build_preview(self, events: List[NormalizedEvent]) -> PreviewResult:
        events = [ensure_end(ev) for ev in self.finalize_preview(events)]
        return PreviewResult(
            vendor=self.id,
            title=self.preview_title if events else None,
            events=events,
        )

    def sync(
        self,
        source_id: str,
        org_id: str,
        url: str,
        window: SyncWindow,
        client: Optional[Client] = None,
    ) -> SyncResult:
        client = client or get_supabase_client()
        events = self.load_events(url, window)
        res = sync_schedule_events(
            client,
            org_id=org_id,
            source_id=source_id,
            events=events,
            window=window,
            now=self.now_utc(),
        )
        return SyncResult(
            imported=res.imported,
            updated=res.updated,
            cancelled=res.cancelled,
            vendor=self.id,
        )

    def finalize_preview(self, events: List[NormalizedEvent]) -> List[NormalizedEvent]:
        """Chronological, capped at the preview size."""
        return sorted(events, key=lambda ev: ev.start_at)[:PREVIEW_MAX_EVENTS]

    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


def header_value(headers: Optional[Mapping[str, str]], name: str) -> str:
    """Case-insensitive header lookup; '' when absent."""
    if not headers:
        return ""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value or ""
    return ""


HTML_ACCEPT = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.5"


class HtmlConnector(BaseConnector):
    """Connector for schedule pages: one safe fetch, then extract()."""

    def fetch_html(self, url: str) -> FetchResult:
        return fetch_url_safe(url, accept=HTML_ACCEPT)

    @abstractmethod
    def extract(self, html: str, url: str) -> List[ParsedEvent]:
        """Pull schedule entries out of a fetched page."""

    def load_events(self, url: str, window: SyncWindow) -> List[NormalizedEvent]:
        fetched = self.fetch_html(url)
        events = to_normalized_events(self.extract(fetched.text, fetched.url))
        logger.info("[%s] extracted=%s url=%s", self.id, len(events), mask_url(fetched.url))
        return events
