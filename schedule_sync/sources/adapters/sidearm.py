from __future__ import annotations

from typing import List, Mapping, Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, Tag

from ...sanitize import sanitize_event_title
from ..base import HtmlConnector
from ..html_utils import ParsedEvent, extract_json_ld_events, parse_date_time
from ..types import HandleResult

SIDEARM_HOST = "sidearmsports.com"
GAME_CLASS = "sidearm-schedule-game"

_OPPONENT_SELECTOR = ".sidearm-schedule-game-opponent-name"
_DATE_SELECTOR = ".sidearm-schedule-game-opponent-date"
_LOCATION_SELECTOR = ".sidearm-schedule-game-location"
_RESULT_SELECTOR = ".sidearm-schedule-game-result"


def _select_text(node: Tag, selector: str) -> str:
    found = node.select_one(selector)
    return found.get_text(" ", strip=True) if found else ""


def _date_and_time(game: Tag) -> tuple[str, Optional[str]]:
    block = game.select_one(_DATE_SELECTOR)
    if block is None:
        return "", None
    spans = [s.get_text(" ", strip=True) for s in block.find_all("span")]
    spans = [s for s in spans if s]
    if len(spans) >= 2:
        return spans[0], spans[1]
    return block.get_text(" ", strip=True), None


def _matchup_prefix(game: Tag) -> str:
    classes = game.get("class") or []
    if "sidearm-schedule-home-game" in classes:
        return "vs"
    if "sidearm-schedule-away-game" in classes:
        return "at"
    return ""


def parse_sidearm_games(html: str) -> List[ParsedEvent]:
    """
    SIDEARM schedule list items:

      <li class="sidearm-schedule-game sidearm-schedule-home-game" data-game-id="4711">
        <div class="sidearm-schedule-game-opponent-name">State</div>
        <div class="sidearm-schedule-game-opponent-date"><span>Sep 6</span><span>7:00 PM</span></div>
        <div class="sidearm-schedule-game-location">Main Stadium</div>
      </li>
    """
    soup = BeautifulSoup(html or "", "html.parser")
    events: List[ParsedEvent] = []

    for row_index, game in enumerate(soup.select(f".{GAME_CLASS}")):
        date_text, time_text = _date_and_time(game)
        start = parse_date_time(date_text, time_text)
        if start is None:
            continue

        opponent = _select_text(game, _OPPONENT_SELECTOR)
        prefix = _matchup_prefix(game)
        raw_title = f"{prefix} {opponent}".strip() if opponent else "Game"
        location = _select_text(game, _LOCATION_SELECTOR) or None
        result = _select_text(game, _RESULT_SELECTOR) or None
        game_id = (game.get("data-game-id") or "").strip()

        events.append(
            ParsedEvent(
                title=sanitize_event_title(raw_title),
                raw_title=raw_title,
                start_at=start,
                location=location,
                status=result,
                uid=f"sidearm-{game_id}" if game_id else None,
                row_index=row_index,
                raw={
                    "game_id": game_id or None,
                    "opponent": opponent,
                    "date_text": date_text,
                    "time_text": time_text,
                    "location_text": location,
                    "result": result,
                },
            )
        )
    return events


class SidearmConnector(HtmlConnector):
    """SIDEARM Sports athletics schedule pages."""

    id = "sidearm"
    preview_title = "SIDEARM Schedule"

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
        if host == SIDEARM_HOST or host.endswith("." + SIDEARM_HOST):
            return HandleResult(ok=True, confidence=0.95, reason="sidearm_host")

        lower = (html or "").lower()
        if GAME_CLASS in lower:
            return HandleResult(ok=True, confidence=0.9, reason="sidearm_markup")
        if "sidearmsports" in lower:
            return HandleResult(ok=True, confidence=0.8, reason="sidearm_marker")
        return HandleResult(ok=False)

    def extract(self, html: str, url: str) -> List[ParsedEvent]:
        return parse_sidearm_games(html) or extract_json_ld_events(html)
