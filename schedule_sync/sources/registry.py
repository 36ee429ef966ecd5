from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple, Type

from ..errors import NoConnectorError
from ..security.url import mask_url, normalize_url
from .adapters.generic_html import GenericHtmlConnector
from .adapters.ics import IcsConnector
from .adapters.prestosports import PrestoSportsConnector
from .adapters.sidearm import SidearmConnector
from .base import BaseConnector
from .http import fetch_url_safe

logger = logging.getLogger(__name__)

# Priority order: on equal confidence the earlier connector wins.
CONNECTORS: Tuple[Type[BaseConnector], ...] = (
    IcsConnector,
    SidearmConnector,
    PrestoSportsConnector,
    GenericHtmlConnector,
)

CONNECTORS_BY_ID: Dict[str, Type[BaseConnector]] = {cls.id: cls for cls in CONNECTORS}


@dataclass(frozen=True)
class Detection:
    connector: BaseConnector
    confidence: float
    reason: Optional[str] = None


def get_connector(vendor_id: str) -> BaseConnector:
    cls = CONNECTORS_BY_ID[vendor_id]
    return cls()


def _best_match(
    url: str,
    html: Optional[str],
    headers: Optional[Mapping[str, str]],
) -> Optional[Detection]:
    best: Optional[Detection] = None
    for cls in CONNECTORS:
        connector = cls()
        result = connector.can_handle(url, html=html, headers=headers)
        if not result.ok:
            continue
        if best is None or result.confidence > best.confidence:
            best = Detection(connector, result.confidence, result.reason)
    return best


def detect_connector(
    url: str,
    html: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
    fetch: bool = True,
) -> Detection:
    """
    Pick the connector for a schedule URL.

    Pass 1 looks at the URL (and html/headers when the caller already has
    them). If nothing matches, the page is fetched once through the safe
    fetcher and pass 2 runs with its body and headers.
    """
    normalized = normalize_url(url)

    found = _best_match(normalized, html, headers)
    if found is None and html is None and fetch:
        fetched = fetch_url_safe(normalized)
        found = _best_match(fetched.url, fetched.text, fetched.headers)

    if found is None:
        logger.info("[registry] no connector url=%s", mask_url(normalized))
        raise NoConnectorError()

    logger.info(
        "[registry] detected vendor=%s confidence=%.2f reason=%s url=%s",
        found.connector.id, found.confidence, found.reason, mask_url(normalized),
    )
    return found
