# schedule_sync/security/enroll.py
"""
Domain verification and enrollment.

Before a schedule host is used for an org it must be on
public.schedule_allowed_domains with status=active. New hosts are
fingerprinted (ICS content, known vendor host, vendor HTML markers):

  confidence >= 0.95 -> active
  confidence >= 0.80 -> pending (admin approval)
  otherwise          -> denied (nothing written)

A blocked row is never overwritten and an active row is never
downgraded to pending.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlsplit

from postgrest.exceptions import APIError
from supabase import Client

from ..errors import ScheduleSecurityError
from ..models import iso_utc
from ..sources.http import fetch_url_safe
from .allowlist import is_host_allowed, normalize_host
from .url import mask_url, normalize_url

logger = logging.getLogger(__name__)

DOMAINS_TABLE = "schedule_allowed_domains"
_DOMAIN_COLUMNS = "id,hostname,vendor_id,status"

VERIFY_TIMEOUT_S = 8
VERIFY_MAX_BYTES = 256 * 1024

ACTIVE_THRESHOLD = 0.95
PENDING_THRESHOLD = 0.8

_UNIQUE_VIOLATION = "23505"

# (host suffixes, vendor id); vendors that have a connector use its id
_HOST_VENDORS = (
    (("sidearmsports.com",), "sidearm"),
    (("prestosports.com",), "prestosports"),
    (("vantagesportz.com",), "vantage"),
    (("sportsengine.com", "sportngin.com"), "sportsengine"),
    (("teamsnap.com",), "teamsnap"),
    (("leagueapps.com",), "leagueapps"),
    (("arbitersports.com",), "arbiter"),
    (("bigteams.com",), "bigteams"),
    (("rankone.com", "rankonesport.com"), "rankone"),
    (("rschooltoday.com", "activityscheduler.com"), "rschooltoday"),
)

# (lowercased page markers, vendor id)
_MARKER_VENDORS = (
    (("sidearmsports", "sidearm sports"), "sidearm"),
    (("prestosports", "presto sports"), "prestosports"),
    (("vantagesportz", "vantage"), "vantage"),
    (("sportngin", "sportsengine"), "sportsengine"),
    (("teamsnap",), "teamsnap"),
    (("leagueapps",), "leagueapps"),
    (("arbitersports",), "arbiter"),
    (("bigteams", "schedulestar"), "bigteams"),
    (("rank one", "rankone"), "rankone"),
    (("rschooltoday", "activity scheduler"), "rschooltoday"),
)


@dataclass
class VerificationResult:
    vendor_id: str
    confidence: float
    evidence: List[str] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class EnrollmentResult:
    allow_status: str  # active | pending | blocked | denied
    vendor_id: Optional[str] = None
    confidence: Optional[float] = None
    evidence: Optional[List[str]] = None


def _vendor_from_host(host: str) -> Optional[str]:
    for suffixes, vendor in _HOST_VENDORS:
        if any(host.endswith(s) for s in suffixes):
            return vendor
    return None


def _vendor_from_markers(lower_text: str) -> Optional[str]:
    for markers, vendor in _MARKER_VENDORS:
        if any(m in lower_text for m in markers):
            return vendor
    return None


def detect_vendor(headers: Mapping[str, str], text: str, url: str) -> VerificationResult:
    text = text or ""
    headers = dict(headers or {})
    content_type = headers.get("content-type", "")
    host = normalize_host(urlsplit(url).hostname or "")

    if "text/calendar" in content_type or text.lstrip().startswith("BEGIN:VCALENDAR"):
        return VerificationResult("ics", 0.99, ["ics_content"], headers)

    host_vendor = _vendor_from_host(host)
    marker_vendor = _vendor_from_markers(text.lower())

    if host_vendor and host_vendor == marker_vendor:
        return VerificationResult(host_vendor, 0.97, ["host_match", "html_marker"], headers)
    if host_vendor:
        return VerificationResult(host_vendor, 0.92, ["host_match"], headers)
    if marker_vendor:
        return VerificationResult(marker_vendor, 0.85, ["html_marker"], headers)
    return VerificationResult("unknown", 0.0, ["unknown"], headers)


def verify_host(url: str) -> VerificationResult:
    normalized = normalize_url(url)
    fetched = fetch_url_safe(normalized, timeout_s=VERIFY_TIMEOUT_S, max_bytes=VERIFY_MAX_BYTES)
    return detect_vendor(fetched.headers, fetched.text, normalized)


def _find_domain(client: Client, host: str, columns: str = _DOMAIN_COLUMNS) -> Optional[dict]:
    resp = client.table(DOMAINS_TABLE).select(columns).eq("hostname", host).limit(1).execute()
    data: Any = getattr(resp, "data", None)
    return data[0] if data else None


def _host_of(normalized_url: str) -> str:
    return normalize_host(urlsplit(normalized_url).hostname or "")


def verify_and_enroll(
    client: Client,
    url: str,
    org_id: str,
    user_id: Optional[str] = None,
    vendor_hint: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EnrollmentResult:
    normalized = normalize_url(url)
    host = _host_of(normalized)
    now_iso = iso_utc(now or datetime.now(timezone.utc))

    existing = _find_domain(client, host)
    if existing:
        if existing.get("status") == "blocked":
            return EnrollmentResult("blocked", vendor_id=existing.get("vendor_id"))
        if existing.get("status") == "active":
            client.table(DOMAINS_TABLE).update({"last_seen_at": now_iso}).eq(
                "id", existing["id"]
            ).execute()
            return EnrollmentResult("active", vendor_id=existing.get("vendor_id"))
        # pending: verify again, the fingerprint may have improved

    verification = verify_host(normalized)
    logger.info(
        "[enroll] host=%s vendor=%s confidence=%.2f evidence=%s",
        host, verification.vendor_id, verification.confidence, ",".join(verification.evidence),
    )

    if verification.confidence >= ACTIVE_THRESHOLD:
        next_status = "active"
    elif verification.confidence >= PENDING_THRESHOLD:
        next_status = "pending"
    else:
        return EnrollmentResult(
            "denied",
            vendor_id=verification.vendor_id,
            confidence=verification.confidence,
            evidence=verification.evidence,
        )

    def verified(status: Optional[str]) -> EnrollmentResult:
        return EnrollmentResult(
            "active" if status == "active" else "pending",
            vendor_id=verification.vendor_id,
            confidence=verification.confidence,
            evidence=verification.evidence,
        )

    payload = {
        "vendor_id": verification.vendor_id,
        "status": next_status,
        "verified_by_org_id": org_id,
        "verified_by_user_id": user_id,
        "verified_at": now_iso if next_status == "active" else None,
        "verification_method": "fingerprint",
        "fingerprint": {
            "evidence": verification.evidence,
            "confidence": verification.confidence,
            "vendor_hint": vendor_hint,
        },
        "last_seen_at": now_iso,
    }

    # Conditional update: never touch blocked rows, never downgrade active -> pending.
    allowed_current = ["pending"] if next_status == "pending" else ["pending", "active"]
    resp = (
        client.table(DOMAINS_TABLE)
        .update(payload)
        .eq("hostname", host)
        .neq("status", "blocked")
        .in_("status", allowed_current)
        .execute()
    )
    updated: Any = getattr(resp, "data", None)
    if updated:
        return verified(updated[0].get("status"))

    current = _find_domain(client, host, "id,status,vendor_id")
    if current is not None:
        if current.get("status") == "blocked":
            return EnrollmentResult("blocked", vendor_id=current.get("vendor_id"))
        return verified(current.get("status"))

    try:
        resp = client.table(DOMAINS_TABLE).insert({"hostname": host, **payload}).execute()
    except APIError as e:
        if getattr(e, "code", None) != _UNIQUE_VIOLATION:
            logger.error("[enroll] insert failed host=%s: %s", host, e)
            raise ScheduleSecurityError("enroll_failed", "Unable to enroll schedule domain.") from e
        # another request inserted the host first
        current = _find_domain(client, host, "id,status,vendor_id")
        if current is not None and current.get("status") == "blocked":
            return EnrollmentResult("blocked", vendor_id=current.get("vendor_id"))
        return verified(current.get("status") if current else None)

    inserted: Any = getattr(resp, "data", None)
    return verified(inserted[0].get("status") if inserted else next_status)


def ensure_domain_allowed(client: Client, url: str) -> None:
    """Raise unless the URL's host is enrolled and active (or env-allowlisted)."""
    normalized = normalize_url(url)
    host = _host_of(normalized)
    if is_host_allowed(host):
        return

    row = _find_domain(client, host)
    status = row.get("status") if row else None
    if status == "active":
        return
    logger.info("[enroll] domain not active url=%s status=%s", mask_url(normalized), status)
    if status == "blocked":
        raise ScheduleSecurityError("domain_blocked", "Domain is blocked")
    raise ScheduleSecurityError("domain_pending", "Domain pending admin approval")


def authorize_domain(
    client: Client,
    url: str,
    org_id: str,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """
    Domain gate for connecting a new schedule source.

    Blocked hosts fail outright. A host this org already submitted and that
    still waits for approval fails without re-fingerprinting it. Anything
    else not yet active is verified and enrolled; only an active result
    lets the connect go ahead.
    """
    normalized = normalize_url(url)
    host = _host_of(normalized)
    if is_host_allowed(host):
        return

    row = _find_domain(client, host, _DOMAIN_COLUMNS + ",verified_by_org_id")
    status = row.get("status") if row else None
    if status == "blocked":
        raise ScheduleSecurityError("domain_blocked", "Domain is blocked")
    if status == "active":
        return
    if status == "pending" and row.get("verified_by_org_id") == org_id:
        raise ScheduleSecurityError("domain_pending", "Domain pending admin approval")

    result = verify_and_enroll(client, normalized, org_id, user_id=user_id, now=now)
    logger.info(
        "[enroll] connect gate url=%s allow_status=%s vendor=%s",
        mask_url(normalized), result.allow_status, result.vendor_id,
    )
    if result.allow_status == "active":
        return
    if result.allow_status == "blocked":
        raise ScheduleSecurityError("domain_blocked", "Domain is blocked")
    if result.allow_status == "pending":
        raise ScheduleSecurityError("domain_pending", "Domain pending admin approval")
    raise ScheduleSecurityError("domain_unverified", "Domain could not be verified for import")
