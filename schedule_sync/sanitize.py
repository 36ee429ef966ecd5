# schedule_sync/sanitize.py
"""
Title sanitization for text pulled from third-party schedule feeds.

Two contracts:
  - sanitize_event_title: display form (tags stripped, safe entities decoded)
  - sanitize_event_title_for_email: display form, then HTML-escaped for
    interpolation into email templates

&lt; / &gt; are never decoded so stripped markup cannot reappear as tags.
"""
from __future__ import annotations

import html
import re
from typing import Any

DEFAULT_TITLE = "Untitled Event"
MAX_TITLE_LENGTH = 200
ELLIPSIS = "..."

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")

# Order matters: &amp; last so "&amp;nbsp;" stays "&nbsp;" instead of a space.
_SAFE_ENTITIES: tuple[tuple[str, str], ...] = (
    ("&nbsp;", " "),
    ("&quot;", '"'),
    ("&#x27;", "'"),
    ("&#39;", "'"),
    ("&amp;", "&"),
)


def sanitize_event_title(raw: Any) -> str:
    if not isinstance(raw, str):
        return DEFAULT_TITLE

    s = _SCRIPT_STYLE_RE.sub("", raw)
    s = _TAG_RE.sub("", s)
    for entity, replacement in _SAFE_ENTITIES:
        s = s.replace(entity, replacement)
    s = _WS_RE.sub(" ", s).strip()

    if len(s) > MAX_TITLE_LENGTH:
        s = s[:MAX_TITLE_LENGTH] + ELLIPSIS

    return s or DEFAULT_TITLE


def sanitize_event_title_for_email(raw: Any) -> str:
    return html.escape(sanitize_event_title(raw), quote=True)


def get_title_for_hash(raw_title: str | None, sanitized_title: str) -> str:
    """Prefer the raw title so ids survive changes to the sanitizer rules."""
    if raw_title and raw_title.strip():
        return raw_title
    return sanitized_title
