from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests
from requests.adapters import HTTPAdapter

from ..config import FETCH_MAX_BYTES, FETCH_MAX_REDIRECTS, FETCH_TIMEOUT_S, USER_AGENT
from ..errors import ScheduleSecurityError
from ..security.allowlist import is_host_allowed
from ..security.url import is_private_address, mask_url, normalize_url, parse_ip

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_DEFAULT_ACCEPT = "text/calendar,text/html,application/xhtml+xml,text/plain;q=0.9,*/*;q=0.5"


@dataclass
class FetchResult:
    url: str
    status_code: int
    text: str
    headers: Dict[str, str] = field(default_factory=dict)


class PinnedAddressAdapter(HTTPAdapter):
    """
    Send every request of a hop to one already-vetted IP address.

    The URL host is swapped for the address, the Host header keeps the
    original name, and for https the certificate and SNI are still checked
    against the hostname. A second DNS lookup at connect time (rebinding)
    can therefore not redirect the request to a private address.
    """

    def __init__(self, hostname: str, address: str, **kwargs) -> None:
        self.hostname = hostname
        self.address = address
        super().__init__(**kwargs)

    def send(self, request, **kwargs):
        parts = urlsplit(request.url)
        host = f"[{self.address}]" if ":" in self.address else self.address
        netloc = f"{host}:{parts.port}" if parts.port else host
        request.headers["Host"] = parts.netloc
        request.url = urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
        if parts.scheme == "https":
            self.poolmanager.connection_pool_kw["server_hostname"] = self.hostname
            self.poolmanager.connection_pool_kw["assert_hostname"] = self.hostname
        return super().send(request, **kwargs)


def resolve_host(host: str) -> list[str]:
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    return sorted({info[4][0] for info in infos})


def assert_public_host(host: str) -> Optional[str]:
    """
    Connect-time check: every address the host resolves to must be public.

    Returns the address the request must be pinned to, or None for
    allowlisted hosts (resolved normally, private addresses allowed).
    """
    if is_host_allowed(host):
        return None
    try:
        addresses = resolve_host(host)
    except socket.gaierror as e:
        raise ScheduleSecurityError("fetch_failed", "Fetch failed (host not found)") from e
    if not addresses:
        raise ScheduleSecurityError("fetch_failed", "Fetch failed (host not found)")

    pinned: Optional[str] = None
    for addr in addresses:
        bare = addr.split("%", 1)[0]
        ip = parse_ip(bare)
        if ip is not None and is_private_address(ip):
            raise ScheduleSecurityError("private_ip", "Private IPs are not allowed")
        if pinned is None and ip is not None:
            pinned = bare
    if pinned is None:
        raise ScheduleSecurityError("fetch_failed", "Fetch failed (host not found)")
    return pinned


def _read_capped(resp: requests.Response, max_bytes: int) -> bytes:
    declared = resp.headers.get("Content-Length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise ScheduleSecurityError("response_too_large", "Response exceeds size limit")

    buf = bytearray()
    for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
        if not chunk:
            continue
        buf.extend(chunk)
        if len(buf) > max_bytes:
            raise ScheduleSecurityError("response_too_large", "Response exceeds size limit")
    return bytes(buf)


def _decode(resp: requests.Response, body: bytes) -> str:
    # requests falls back to ISO-8859-1 for text/* without a charset;
    # calendar feeds and modern pages are UTF-8 unless they say otherwise.
    content_type = (resp.headers.get("Content-Type") or "").lower()
    encoding = resp.encoding if "charset=" in content_type and resp.encoding else "utf-8"
    try:
        return body.decode(encoding, errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


def fetch_url_safe(
    url: str,
    *,
    timeout_s: float = FETCH_TIMEOUT_S,
    max_bytes: int = FETCH_MAX_BYTES,
    max_redirects: int = FETCH_MAX_REDIRECTS,
    accept: str = _DEFAULT_ACCEPT,
) -> FetchResult:
    """
    GET a user-supplied URL with SSRF and resource limits.

    Every hop (initial URL and each redirect target) goes through
    normalize_url and the DNS check, and the connection is pinned to the
    checked address. Redirects are followed manually so the limit and the
    checks apply per hop. No retries.
    """
    current = normalize_url(url)
    headers = {"User-Agent": USER_AGENT, "Accept": accept}

    for hop in range(max_redirects + 1):
        parts = urlsplit(current)
        hostname = parts.hostname or ""
        pinned = assert_public_host(hostname)
        logger.debug("[fetch] GET %s hop=%s", mask_url(current), hop)

        with requests.Session() as session:
            if pinned is not None:
                session.mount(f"{parts.scheme}://", PinnedAddressAdapter(hostname, pinned))
            try:
                resp = session.get(
                    current,
                    headers=headers,
                    timeout=timeout_s,
                    allow_redirects=False,
                    stream=True,
                )
            except requests.Timeout as e:
                raise ScheduleSecurityError("timeout", "Fetch timed out") from e
            except requests.RequestException as e:
                logger.warning("[fetch] network error url=%s: %s", mask_url(current), type(e).__name__)
                raise ScheduleSecurityError(
                    "network_error", "Network error while fetching schedule"
                ) from e

            try:
                if resp.is_redirect:
                    location = resp.headers.get("Location")
                    if not location:
                        raise ScheduleSecurityError("fetch_failed", f"Fetch failed ({resp.status_code})")
                    current = normalize_url(urljoin(current, location))
                    continue

                if resp.status_code >= 400:
                    raise ScheduleSecurityError("fetch_failed", f"Fetch failed ({resp.status_code})")

                try:
                    body = _read_capped(resp, max_bytes)
                except requests.Timeout as e:
                    raise ScheduleSecurityError("timeout", "Fetch timed out") from e
                except requests.RequestException as e:
                    raise ScheduleSecurityError(
                        "network_error", "Network error while fetching schedule"
                    ) from e

                logger.info(
                    "[fetch] ok url=%s status=%s bytes=%s",
                    mask_url(current), resp.status_code, len(body),
                )
                return FetchResult(
                    url=current,
                    status_code=resp.status_code,
                    text=_decode(resp, body),
                    headers={k.lower(): v for k, v in resp.headers.items()},
                )
            finally:
                resp.close()

    raise ScheduleSecurityError("too_many_redirects", "Too many redirects")
