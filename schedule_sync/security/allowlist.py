from __future__ import annotations

from typing import Iterable, Optional

from ..config import ALLOWED_HOSTS, BLOCKED_HOSTS

_allowlist_override: Optional[frozenset[str]] = None


def normalize_host(host: str) -> str:
    h = (host or "").strip().lower().rstrip(".")
    if h.startswith("www."):
        h = h[4:]
    return h


def set_allowlist_override(hosts: Optional[Iterable[str]]) -> None:
    """Replace the env allowlist (tests, self-hosted feeds). None restores it."""
    global _allowlist_override
    if hosts is None:
        _allowlist_override = None
    else:
        _allowlist_override = frozenset(normalize_host(h) for h in hosts)


def _allowed_hosts() -> frozenset[str]:
    if _allowlist_override is not None:
        return _allowlist_override
    return frozenset(normalize_host(h) for h in ALLOWED_HOSTS)


def is_host_allowed(host: str) -> bool:
    """Explicitly trusted hosts skip the private-address checks."""
    return normalize_host(host) in _allowed_hosts()


def is_host_blocked(host: str) -> bool:
    h = normalize_host(host)
    for blocked in BLOCKED_HOSTS:
        b = normalize_host(blocked)
        if h == b or h.endswith("." + b):
            return True
    return False
