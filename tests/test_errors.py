# tests/test_errors.py
from __future__ import annotations

import pytest
from postgrest.exceptions import APIError

from schedule_sync.errors import (
    GENERIC_ERROR_MESSAGE,
    IcsParseError,
    NoConnectorError,
    ScheduleSecurityError,
    classify_error,
    public_error_message,
)


@pytest.mark.parametrize(
    "exc",
    [
        ScheduleSecurityError("invalid_url", "URL must start with http(s)"),
        ScheduleSecurityError("private_ip", "Private IPs are not allowed"),
        ScheduleSecurityError("fetch_failed", "Fetch failed (503)"),
        ScheduleSecurityError("domain_pending", "Domain pending admin approval"),
        NoConnectorError(),
        IcsParseError("Unable to parse calendar feed"),
    ],
)
def test_client_errors_are_400_and_shown(exc):
    assert classify_error(exc) == 400
    assert public_error_message(exc) == str(exc)


@pytest.mark.parametrize(
    "exc",
    [
        RuntimeError("connection reset by peer at 10.0.0.5"),
        KeyError("vendor_id"),
        ScheduleSecurityError("network_error", "Network error while fetching schedule"),
        APIError({"message": "relation does not exist", "code": "42P01", "hint": None, "details": None}),
    ],
)
def test_internal_errors_are_500_and_hidden(exc):
    assert classify_error(exc) == 500
    assert public_error_message(exc) == GENERIC_ERROR_MESSAGE


def test_security_error_keeps_code():
    e = ScheduleSecurityError("too_many_redirects", "Too many redirects")
    assert e.code == "too_many_redirects"
    assert e.message == str(e) == "Too many redirects"
