# schedule_sync/security/url.py
"""
URL gate for user-supplied schedule URLs.

normalize_url() runs before any network access and again on every redirect
hop. It only inspects the literal URL; DNS-level checks happen at connect
time in sources/http.py.
"""
from __future__ import annotations

import ipaddress
import re
from typing import Optional, Union
from urllib.parse import urlsplit, urlunsplit

from ..errors import ScheduleSecurityError
from .allowlist import is_host_allowed, is_host_blocked

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

ALLOWED_SCHEMES = ("http", "https")
ALLOWED_PORTS = (80, 443)
_DEFAULT_PORTS = {"http": 80, "https": 443}
_MASK_TAIL_CHARS = 6

# inet_aton shorthand (2130706433, 127.1, 0x7f.1, 0177.0.0.1): resolvers expand
# these to IPs that parse_ip does not recognise.
_NUMERIC_HOST_RE = re.compile(r"^(0x[0-9a-f]*|\d+)(\.(0x[0-9a-f]*|\d+)){0,3}$", re.IGNORECASE)


def parse_ip(host: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return None


def is_private_address(ip: IPAddress) -> bool:
    """Anything that is not a routable public address."""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def check_host(host: str) -> None:
    """Host-level rules shared by normalize_url and redirect handling."""
    if is_host_blocked(host):
        raise ScheduleSecurityError("blocked_host", "Domain is blocked")
    if is_host_allowed(host):
        return

    if host == "localhost" or host.endswith(".localhost"):
        raise ScheduleSecurityError("localhost", "Localhost URLs are not allowed")

    ip = parse_ip(host)
    if ip is None:
        if _NUMERIC_HOST_RE.match(host):
            raise ScheduleSecurityError("invalid_url", "Invalid URL")
        return
    if ip.is_loopback or (isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped and ip.ipv4_mapped.is_loopback):
        raise ScheduleSecurityError("localhost", "Localhost URLs are not allowed")
    if is_private_address(ip):
        raise ScheduleSecurityError("private_ip", "Private IPs are not allowed")


def normalize_url(raw: str) -> str:
    """
    Validate and canonicalize a schedule URL.

    - webcal:// is read as https://
    - only http/https, ports 80/443, no embedded credentials
    - scheme and host lowercased, default port and fragment dropped,
      trailing slashes removed from the path

    Raises ScheduleSecurityError with a user-facing message.
    """
    s = raw.strip() if isinstance(raw, str) else ""
    if not s:
        raise ScheduleSecurityError("invalid_url", "Invalid URL")

    if s.lower().startswith("webcal://"):
        s = "https://" + s[len("webcal://"):]

    try:
        parts = urlsplit(s)
        port = parts.port
    except ValueError as e:
        raise ScheduleSecurityError("invalid_url", "Invalid URL") from e

    scheme = (parts.scheme or "").lower()
    if scheme not in ALLOWED_SCHEMES:
        raise ScheduleSecurityError("invalid_url", "URL must start with http(s)")

    host = (parts.hostname or "").rstrip(".")
    if not host:
        raise ScheduleSecurityError("invalid_url", "Invalid URL")

    if parts.username or parts.password:
        raise ScheduleSecurityError(
            "invalid_url", "URLs with embedded credentials are not allowed"
        )

    check_host(host)

    if port is not None and port not in ALLOWED_PORTS:
        raise ScheduleSecurityError("invalid_port", "Only ports 80 and 443 are allowed")

    netloc = f"[{host}]" if ":" in host else host
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"

    path = parts.path.rstrip("/")
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def mask_url(url: str) -> str:
    """Host plus the last few path characters; never query or credentials."""
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError:
        return "hidden"
    if not host:
        return "hidden"

    path = parts.path.rstrip("/")
    if len(path) <= 1:
        return host
    return f"{host}/...{path[-_MASK_TAIL_CHARS:]}"
