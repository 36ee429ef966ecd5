# schedule_sync/errors.py
"""
Error taxonomy for schedule previews and syncs.

Callers (HTTP routes, the CLI) never inspect exception types to pick a
status code; they match the message against SAFE_ERROR_MESSAGES. Anything
that matches is a client-fixable condition (400), everything else is an
internal fault (500) whose message must not leak.
"""
from __future__ import annotations

GENERIC_ERROR_MESSAGE = "Something went wrong while loading this schedule. Please try again."

# Substrings of messages that are safe to show and map to HTTP 400.
SAFE_ERROR_MESSAGES: tuple[str, ...] = (
    "Invalid URL",
    "URL must start with http",
    "embedded credentials",
    "Localhost URLs are not allowed",
    "Private IPs are not allowed",
    "Only ports 80 and 443 are allowed",
    "Domain is blocked",
    "Domain pending admin approval",
    "Domain could not be verified",
    "Schedule already connected",
    "Too many redirects",
    "Response exceeds size limit",
    "Fetch timed out",
    "Fetch failed",
    "No supported schedule connector",
    "Unable to parse calendar feed",
)


class ScheduleSecurityError(Exception):
    """URL gate or fetch violation. `code` is stable, the message is user-facing."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class NoConnectorError(ValueError):
    def __init__(self, message: str = "No supported schedule connector found for this URL.") -> None:
        super().__init__(message)


class IcsParseError(ValueError):
    """The whole feed is unreadable; raised before anything is persisted."""


def is_client_error(exc: BaseException) -> bool:
    message = str(exc)
    return any(safe in message for safe in SAFE_ERROR_MESSAGES)


def classify_error(exc: BaseException) -> int:
    return 400 if is_client_error(exc) else 500


def public_error_message(exc: BaseException) -> str:
    if is_client_error(exc):
        return str(exc)
    return GENERIC_ERROR_MESSAGE
