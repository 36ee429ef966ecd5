"""
ICS / webcal feeds.

expand_ics_events() turns one VCALENDAR document into concrete, windowed
event instances:
  - plain VEVENTs pass through when their start is in the window
  - RRULE series are expanded with dateutil, minus EXDATEs
  - RECURRENCE-ID components replace the occurrence they point at
  - recurring instances get `{series uid}|{instance start}` as external uid

Date-only and floating values are read as UTC.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from dateutil.rrule import rrulestr
from icalendar import Calendar
from supabase import Client

from ...errors import IcsParseError
from ...models import NormalizedEvent, default_end, ensure_utc, iso_utc, normalize_status
from ...sanitize import sanitize_event_title
from ..base import BaseConnector, header_value
from ..http import fetch_url_safe
from ..types import HandleResult, SyncResult, SyncWindow

logger = logging.getLogger(__name__)

ICS_ACCEPT = "text/calendar,text/plain;q=0.9,*/*;q=0.5"
PARSE_ERROR_MESSAGE = "Unable to parse calendar feed"


@dataclass(frozen=True)
class _When:
    at: datetime  # UTC
    date_only: bool


def _to_when(value: Any) -> Optional[_When]:
    # datetime is a date subclass, check it first
    if isinstance(value, datetime):
        return _When(ensure_utc(value), False)
    if isinstance(value, date):
        return _When(datetime(value.year, value.month, value.day, tzinfo=timezone.utc), True)
    return None


def _prop_when(comp: Any, name: str) -> Optional[_When]:
    return _to_when(getattr(comp.get(name), "dt", None))


def _text(value: Any) -> Optional[str]:
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None:
        return None
    return str(value)


def _as_list(value: Any) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _is_midnight(dt: datetime) -> bool:
    return dt.hour == 0 and dt.minute == 0 and dt.second == 0 and dt.microsecond == 0


def _is_all_day(date_only: bool, start: datetime, end: Optional[datetime]) -> bool:
    if date_only:
        return True
    return end is not None and _is_midnight(start) and _is_midnight(end)


def _explicit_duration(comp: Any, start: _When) -> Optional[timedelta]:
    """DTEND - DTSTART, else DURATION, else None."""
    end = _prop_when(comp, "DTEND")
    if end is not None:
        return end.at - start.at
    duration = getattr(comp.get("DURATION"), "dt", None)
    if isinstance(duration, timedelta):
        return duration
    return None


def _exdate_keys(comp: Any) -> set[str]:
    keys: set[str] = set()
    for prop in _as_list(comp.get("EXDATE")):
        for item in getattr(prop, "dts", None) or []:
            when = _to_when(getattr(item, "dt", None))
            if when is not None:
                keys.add(iso_utc(when.at))
    return keys


def _rule_start(value: Any) -> datetime:
    """DTSTART as handed to dateutil: keep the zone so wall-clock times survive DST."""
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def _between(rule_text: str, dtstart: datetime, window: SyncWindow) -> List[datetime]:
    try:
        rule = rrulestr(rule_text, dtstart=dtstart)
        return list(rule.between(window.start, window.end, inc=True))
    except ValueError:
        # UNTIL given as a date or floating time while DTSTART carries a zone:
        # dateutil refuses to mix them, so expand on naive UTC instead.
        naive_start = ensure_utc(dtstart).replace(tzinfo=None)
        rule = rrulestr(rule_text, dtstart=naive_start)
        occurrences = rule.between(
            window.start.replace(tzinfo=None), window.end.replace(tzinfo=None), inc=True
        )
        return [o.replace(tzinfo=timezone.utc) for o in occurrences]


def _occurrences(comp: Any, dtstart: datetime, window: SyncWindow) -> List[datetime]:
    found: set[datetime] = set()
    for prop in _as_list(comp.get("RRULE")):
        rule_text = prop.to_ical().decode("utf-8")
        found.update(ensure_utc(o) for o in _between(rule_text, dtstart, window))
    return sorted(found)


def _rrule_text(comp: Any) -> Optional[str]:
    rules = _as_list(comp.get("RRULE"))
    if not rules:
        return None
    return "\n".join(r.to_ical().decode("utf-8") for r in rules)


def _build_event(
    comp: Any,
    *,
    series_uid: str,
    external_uid: str,
    start_at: datetime,
    end_at: Optional[datetime],
    date_only: bool,
    rrule: Optional[str] = None,
    exdates: Iterable[str] = (),
) -> NormalizedEvent:
    all_day = _is_all_day(date_only, start_at, end_at)
    end_at = end_at or default_end(start_at, all_day)

    summary = _text(comp.get("SUMMARY"))
    location = (_text(comp.get("LOCATION")) or "").strip() or None

    return NormalizedEvent(
        external_uid=external_uid,
        title=sanitize_event_title(summary),
        raw_title=summary,
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        location=location,
        status=normalize_status(_text(comp.get("STATUS"))),
        raw={
            "uid": series_uid,
            "summary": summary,
            "description": _text(comp.get("DESCRIPTION")),
            "location": location,
            "start": iso_utc(start_at),
            "end": iso_utc(end_at),
            "rrule": rrule,
            "exdate": sorted(exdates),
        },
    )


def _collect_overrides(vevents: Iterable[Any]) -> Dict[str, Dict[str, Any]]:
    """uid -> {iso_utc(RECURRENCE-ID) -> override component}"""
    overrides: Dict[str, Dict[str, Any]] = {}
    for comp in vevents:
        uid = _text(comp.get("UID"))
        rid = _prop_when(comp, "RECURRENCE-ID")
        if not uid or rid is None:
            continue
        overrides.setdefault(uid, {})[iso_utc(rid.at)] = comp
    return overrides


def _expand_component(
    comp: Any,
    uid: str,
    window: SyncWindow,
    overrides: Mapping[str, Any],
) -> List[NormalizedEvent]:
    start_prop = comp.get("DTSTART")
    start = _to_when(getattr(start_prop, "dt", None))
    if start is None:
        logger.debug("[ics] VEVENT uid=%s has no usable DTSTART", uid)
        return []
    duration = _explicit_duration(comp, start)

    if comp.get("RRULE") is None:
        if not window.contains(start.at):
            return []
        end = start.at + duration if duration is not None else None
        return [
            _build_event(
                comp,
                series_uid=uid,
                external_uid=uid,
                start_at=start.at,
                end_at=end,
                date_only=start.date_only,
            )
        ]

    rrule = _rrule_text(comp)
    exdates = _exdate_keys(comp)
    out: List[NormalizedEvent] = []

    for occurrence in _occurrences(comp, _rule_start(start_prop.dt), window):
        key = iso_utc(occurrence)
        if key in exdates:
            continue

        override = overrides.get(key)
        instance = override if override is not None else comp
        inst_start = _When(occurrence, start.date_only)
        inst_duration = duration

        if override is not None:
            inst_start = _prop_when(override, "DTSTART") or inst_start
            if not window.contains(inst_start.at):
                continue
            own = _explicit_duration(override, inst_start)
            if own is not None:
                inst_duration = own

        end = inst_start.at + inst_duration if inst_duration is not None else None
        out.append(
            _build_event(
                instance,
                series_uid=uid,
                external_uid=f"{uid}|{iso_utc(inst_start.at)}",
                start_at=inst_start.at,
                end_at=end,
                date_only=inst_start.date_only,
                rrule=rrule,
                exdates=exdates,
            )
        )
    return out


def parse_calendar(ics_text: str) -> Calendar:
    text = (ics_text or "").lstrip("\ufeff")
    if "BEGIN:VCALENDAR" not in text.upper():
        raise IcsParseError(PARSE_ERROR_MESSAGE)
    try:
        return Calendar.from_ical(text)
    except (ValueError, IndexError, KeyError) as e:
        raise IcsParseError(PARSE_ERROR_MESSAGE) from e


def expand_ics_events(ics_text: str, window: SyncWindow) -> List[NormalizedEvent]:
    """
    All event instances of the feed whose start lies in `window`.

    Pure: no I/O, no clock. A malformed VEVENT is logged and skipped; an
    unreadable document raises IcsParseError. When two instances share an
    external uid the first one wins.
    """
    calendar = parse_calendar(ics_text)
    vevents = list(calendar.walk("VEVENT"))
    overrides = _collect_overrides(vevents)

    instances: Dict[str, NormalizedEvent] = {}
    for comp in vevents:
        uid = _text(comp.get("UID"))
        if not uid or comp.get("RECURRENCE-ID") is not None:
            continue
        try:
            expanded = _expand_component(comp, uid, window, overrides.get(uid, {}))
        except (ValueError, TypeError, OverflowError) as e:
            logger.warning("[ics] skipping VEVENT uid=%s: %s", uid, e)
            continue
        for ev in expanded:
            instances.setdefault(ev.external_uid, ev)

    logger.debug("[ics] vevents=%s instances=%s", len(vevents), len(instances))
    return list(instances.values())


class IcsConnector(BaseConnector):
    id = "ics"
    preview_title = "ICS Schedule"

    def can_handle(
        self,
        url: str,
        html: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> HandleResult:
        lower = (url or "").lower()
        path = lower.split("#", 1)[0].split("?", 1)[0]
        if path.endswith(".ics") or "ical" in lower or "webcal" in lower:
            return HandleResult(ok=True, confidence=0.9, reason="ics_url")

        if "text/calendar" in header_value(headers, "content-type").lower():
            return HandleResult(ok=True, confidence=0.6, reason="content_type")
        if html and html.lstrip("\ufeff \t\r\n").upper().startswith("BEGIN:VCALENDAR"):
            return HandleResult(ok=True, confidence=0.6, reason="vcalendar_body")

        return HandleResult(ok=False)

    def load_events(self, url: str, window: SyncWindow) -> List[NormalizedEvent]:
        fetched = fetch_url_safe(url, accept=ICS_ACCEPT)
        return expand_ics_events(fetched.text, window)


def sync_ics_to_source(
    client: Client,
    *,
    source_id: str,
    org_id: str,
    url: str,
    window: SyncWindow,
) -> SyncResult:
    return IcsConnector().sync(source_id, org_id, url, window, client=client)
