from __future__ import annotations

from typing import List, Mapping, Optional
from urllib.parse import urlsplit

from ..base import HtmlConnector
from ..html_utils import ParsedEvent, extract_json_ld_events, extract_table_events
from ..types import HandleResult

PRESTO_HOST = "prestosports.com"
_MARKERS = ("prestosports", "presto-sport")


class PrestoSportsConnector(HtmlConnector):
    """PrestoSports schedule pages (table layout, JSON-LD on newer themes)."""

    id = "prestosports"
    preview_title = "PrestoSports Schedule"

    def can_handle(
        self,
        url: str,
        html: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> HandleResult:
        try:
            host = (urlsplit(url).hostname or "").lower()
        except ValueError:
            host = ""
        if host == PRESTO_HOST or host.endswith("." + PRESTO_HOST):
            return HandleResult(ok=True, confidence=0.95, reason="presto_host")

        lower = (html or "").lower()
        if any(m in lower for m in _MARKERS):
            confidence = 0.85 if "<table" in lower else 0.8
            return HandleResult(ok=True, confidence=confidence, reason="presto_marker")
        return HandleResult(ok=False)

    def extract(self, html: str, url: str) -> List[ParsedEvent]:
        return extract_table_events(html) or extract_json_ld_events(html)
