"""
HTML schedule extraction helpers shared by the vendor connectors.

Extract events from JSON-LD (Schema.org Event), schedule tables and
embedded JSON blobs, and turn them into NormalizedEvents with stable,
hash-based external ids.
"""
from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Pattern
from urllib.parse import urljoin

import dateparser
from bs4 import BeautifulSoup, Tag

from ..models import NormalizedEvent, ensure_utc, iso_utc, normalize_status, parse_iso
from ..sanitize import get_title_for_hash, sanitize_event_title

logger = logging.getLogger(__name__)

TABLE_EVENT_DURATION = timedelta(hours=2)

_TIME_IN_DATE_RE = re.compile(r"\d{1,2}:\d{2}\s*(am|pm)?", re.IGNORECASE)
_YEAR_GLUED_TIME_RE = re.compile(r"(\d{4})(\d{1,2}:\d{2}\s*(?:am|pm)?)", re.IGNORECASE)
_GLUED_MERIDIEM_RE = re.compile(r"(\d{1,2}:\d{2})(am|pm)\b", re.IGNORECASE)


@dataclass
class ParsedEvent:
    """Connector-neutral extraction result (not yet a NormalizedEvent)."""
    title: str
    start_at: datetime
    end_at: Optional[datetime] = None
    location: Optional[str] = None
    status: Optional[str] = None
    raw: Optional[dict] = None
    raw_title: Optional[str] = None
    row_index: Optional[int] = None
    uid: Optional[str] = None  # vendor-provided stable id, if any


def hash_event_id(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ------------------------------------------------------------------
# Dates
# ------------------------------------------------------------------

def parse_date_time(date_text: str, time_text: Optional[str] = None) -> Optional[datetime]:
    """
    Combine free-text date and time cells ("Feb 10, 2025" + "7:00 PM").

    Cells without an explicit offset are read as UTC.
    """
    normalized_date = re.sub(r"\s+", " ", date_text or "").strip()
    if not normalized_date:
        return None
    normalized_date = _YEAR_GLUED_TIME_RE.sub(r"\1 \2", normalized_date)
    normalized_date = _GLUED_MERIDIEM_RE.sub(r"\1 \2", normalized_date)

    normalized_time = re.sub(r"\s+", " ", time_text or "").strip() or None
    date_has_time = bool(_TIME_IN_DATE_RE.search(normalized_date))
    same_text = normalized_time is not None and normalized_time == normalized_date

    if normalized_time and not date_has_time and not same_text and _TIME_IN_DATE_RE.search(normalized_time):
        combined = f"{normalized_date} {normalized_time}"
    else:
        combined = normalized_date

    parsed = dateparser.parse(
        combined,
        languages=["en"],
        settings={
            "TIMEZONE": "UTC",
            "RETURN_AS_TIMEZONE_AWARE": True,
            "PREFER_DAY_OF_MONTH": "first",
        },
    )
    if parsed is None:
        return None
    return ensure_utc(parsed)


# ------------------------------------------------------------------
# JSON-LD
# ------------------------------------------------------------------

def _is_event_type(t: Any) -> bool:
    """
    Handles both string and list formats, and Schema.org subtypes
    (SportsEvent, SocialEvent, ...).
    """
    if isinstance(t, str):
        return t == "Event" or t.endswith("Event")
    if isinstance(t, list):
        return any(_is_event_type(x) for x in t)
    return False


def _collect_jsonld_objects(data: Any) -> list[dict]:
    if isinstance(data, list):
        out: list[dict] = []
        for item in data:
            out.extend(_collect_jsonld_objects(item))
        return out
    if isinstance(data, dict):
        if isinstance(data.get("@graph"), list):
            return _collect_jsonld_objects(data["@graph"])
        return [data]
    return []


def _jsonld_location(location: Any) -> Optional[str]:
    if not location:
        return None
    if isinstance(location, str):
        return location
    if isinstance(location, list):
        return _jsonld_location(location[0]) if location else None
    if isinstance(location, dict):
        if isinstance(location.get("name"), str):
            return location["name"]
        address = location.get("address")
        if isinstance(address, str):
            return address
        if isinstance(address, dict) and isinstance(address.get("streetAddress"), str):
            return address["streetAddress"]
    return None


def _jsonld_to_event(obj: dict) -> Optional[ParsedEvent]:
    start_raw = obj.get("startDate")
    if not isinstance(start_raw, str):
        return None
    start = parse_iso(start_raw)
    if start is None:
        start = parse_date_time(start_raw)
    if start is None:
        return None

    end_raw = obj.get("endDate")
    end = parse_iso(end_raw) if isinstance(end_raw, str) else None

    name = obj.get("name")
    raw_title = name if isinstance(name, str) else None
    status_raw = obj.get("eventStatus")

    return ParsedEvent(
        title=sanitize_event_title(raw_title if raw_title is not None else "Event"),
        raw_title=raw_title,
        start_at=start,
        end_at=end,
        location=_jsonld_location(obj.get("location")),
        status=normalize_status(status_raw) if isinstance(status_raw, str) else None,
        raw=obj,
    )


def extract_json_ld_events(html: str) -> List[ParsedEvent]:
    soup = BeautifulSoup(html or "", "html.parser")
    events: List[ParsedEvent] = []

    for script in soup.find_all("script", type="application/ld+json"):
        text = script.get_text() or ""
        if not text.strip():
            continue
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            logger.debug("[html] skipping unparsable JSON-LD block")
            continue
        for obj in _collect_jsonld_objects(data):
            if not _is_event_type(obj.get("@type")):
                continue
            ev = _jsonld_to_event(obj)
            if ev:
                events.append(ev)

    return events


# ------------------------------------------------------------------
# Tables
# ------------------------------------------------------------------

def _find_index(headers: list[str], *needles: str) -> int:
    for i, h in enumerate(headers):
        if any(n in h for n in needles):
            return i
    return -1


def _cell(cells: list[str], idx: int, default: str = "") -> str:
    if 0 <= idx < len(cells):
        return cells[idx]
    return default


def _table_headers(table: Tag) -> list[str]:
    header_cells = table.select("thead th")
    if not header_cells:
        first_row = table.find("tr")
        header_cells = first_row.find_all("th") if first_row else []
    return [c.get_text(" ", strip=True).lower() for c in header_cells]


def _table_rows(table: Tag) -> Iterable[Tag]:
    body_rows = table.select("tbody tr")
    if body_rows:
        return body_rows
    return [tr for tr in table.find_all("tr") if tr.find("td")]


def extract_table_events(html: str) -> List[ParsedEvent]:
    """
    Header-driven schedule table parsing.

    Columns are located by header keywords; a table without a header row
    is read as date, title. Rows carry no end time, so a fixed two-hour
    duration is assumed.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    events: List[ParsedEvent] = []
    row_index = 0

    for table in soup.find_all("table"):
        headers = _table_headers(table)

        date_i = _find_index(headers, "date")
        time_i = _find_index(headers, "time")
        title_i = _find_index(headers, "opponent", "event", "match")
        # "event type" also contains "event"; prefer a pure title column
        if title_i >= 0 and "event type" in headers[title_i]:
            title_i = next(
                (i for i, h in enumerate(headers)
                 if any(n in h for n in ("opponent", "event", "match")) and "event type" not in h),
                -1,
            )
        location_i = _find_index(headers, "location", "site", "facility", "venue")
        home_i = _find_index(headers, "home")
        away_i = _find_index(headers, "away")
        sport_i = _find_index(headers, "sport")
        gender_i = _find_index(headers, "gender")
        event_type_i = _find_index(headers, "event type")

        for row in _table_rows(table):
            cells = [td.get_text(" ", strip=True) for td in row.find_all("td")]
            if not cells:
                continue

            date_text = _cell(cells, date_i) if date_i >= 0 else cells[0]
            time_text = _cell(cells, time_i) if time_i >= 0 else None
            if title_i >= 0:
                title_text = _cell(cells, title_i)
            else:
                title_text = "" if headers else _cell(cells, 1)
            location_text = (_cell(cells, location_i) or None) if location_i >= 0 else None

            start = parse_date_time(date_text, time_text)
            if start is None:
                continue

            sport_label = " ".join(x for x in (_cell(cells, gender_i), _cell(cells, sport_i)) if x)
            matchup = " vs ".join(x for x in (_cell(cells, away_i), _cell(cells, home_i)) if x)
            fallback = " - ".join(x for x in (sport_label, matchup or _cell(cells, event_type_i)) if x)
            final_title = title_text or fallback or "Event"

            events.append(
                ParsedEvent(
                    title=sanitize_event_title(final_title),
                    raw_title=final_title,
                    start_at=start,
                    end_at=start + TABLE_EVENT_DURATION,
                    location=location_text,
                    raw={
                        "date_text": date_text,
                        "time_text": time_text,
                        "title_text": title_text,
                        "location_text": location_text,
                    },
                    row_index=row_index,
                )
            )
            row_index += 1

    return events


# ------------------------------------------------------------------
# Embedded JSON / links
# ------------------------------------------------------------------

def extract_balanced_json(text: str, prefix: Pattern[str] | str) -> Optional[Any]:
    """
    Extract the JSON object that starts right after `prefix`.

    Walks braces while honouring string literals and escapes, so nested
    objects and braces inside strings do not truncate the match.
    Returns None when the prefix is absent, not followed by '{', unbalanced
    or not valid JSON.
    """
    pattern = re.compile(prefix) if isinstance(prefix, str) else prefix
    m = pattern.search(text or "")
    if not m:
        return None

    start = m.end()
    if start >= len(text) or text[start] != "{":
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(text[start:i + 1])
                except json.JSONDecodeError:
                    return None
    return None


def find_ics_link(html: str, base_url: str) -> Optional[str]:
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup.find_all(["a", "link"], href=True):
        href = (tag.get("href") or "").strip()
        if ".ics" in href.lower():
            try:
                return urljoin(base_url, href)
            except ValueError:
                return None
    return None


# ------------------------------------------------------------------
# ParsedEvent -> NormalizedEvent
# ------------------------------------------------------------------

def to_normalized_events(parsed: Iterable[ParsedEvent]) -> List[NormalizedEvent]:
    """
    External ids: vendor uid when present, else a hash of
    raw title | start | location | row index (row index keeps repeated
    identical rows, e.g. two practices, apart).
    """
    out: List[NormalizedEvent] = []
    for ev in parsed:
        start = ensure_utc(ev.start_at)
        if ev.uid:
            external_uid = ev.uid
        else:
            title_for_hash = get_title_for_hash(ev.raw_title, ev.title)
            seed = "|".join([
                title_for_hash,
                iso_utc(start),
                ev.location or "",
                "" if ev.row_index is None else str(ev.row_index),
            ])
            external_uid = hash_event_id(seed)

        out.append(
            NormalizedEvent(
                external_uid=external_uid,
                title=ev.title,
                raw_title=ev.raw_title,
                start_at=start,
                end_at=ev.end_at,
                location=ev.location,
                status=normalize_status(ev.status),
                raw=_json_safe(ev.raw),
            )
        )
    return out


def _json_safe(raw: Optional[dict]) -> Optional[dict]:
    if raw is None:
        return None
    try:
        return json.loads(json.dumps(raw, default=str))
    except (TypeError, ValueError):
        return None