# tests/test_safe_fetch.py
"""fetch_url_safe: per-hop URL gate, DNS check, redirect and size limits."""
from __future__ import annotations

import io
import socket
from unittest.mock import MagicMock, patch

import pytest
import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict

from schedule_sync.errors import ScheduleSecurityError, classify_error
from schedule_sync.sources.http import PinnedAddressAdapter, assert_public_host, fetch_url_safe

PUBLIC_IP = "93.184.216.34"


def _response(
    status: int = 200,
    body: bytes = b"",
    headers: dict | None = None,
    redirect: bool = False,
    encoding: str | None = "utf-8",
) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.is_redirect = redirect
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.encoding = encoding
    resp.iter_content.return_value = [body[i:i + 8] for i in range(0, len(body), 8)]
    return resp


def _wire_response(body: bytes, content_type: str) -> requests.Response:
    """A real Response whose encoding is derived from headers the way requests does it."""
    resp = requests.Response()
    resp.status_code = 200
    resp.headers = CaseInsensitiveDict({"Content-Type": content_type})
    resp.encoding = requests.utils.get_encoding_from_headers(resp.headers)
    resp.raw = io.BytesIO(body)
    return resp


@pytest.fixture
def public_dns():
    with patch("schedule_sync.sources.http.resolve_host", return_value=[PUBLIC_IP]) as m:
        yield m


@pytest.fixture
def http_get():
    with patch("schedule_sync.sources.http.requests.Session.get") as m:
        yield m


class TestFetchOk:
    def test_returns_text_and_lowercased_headers(self, public_dns, http_get):
        resp = _response(body=b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n",
                         headers={"Content-Type": "text/calendar"})
        http_get.return_value = resp

        result = fetch_url_safe("https://Feeds.Example.org/team.ics")

        assert result.url == "https://feeds.example.org/team.ics"
        assert result.status_code == 200
        assert result.text.startswith("BEGIN:VCALENDAR")
        assert result.headers["content-type"] == "text/calendar"
        resp.close.assert_called_once()

    def test_request_is_streamed_without_auto_redirects(self, public_dns, http_get):
        http_get.return_value = _response(body=b"ok")

        fetch_url_safe("https://feeds.example.org/x", timeout_s=7)

        _, kwargs = http_get.call_args
        assert kwargs["allow_redirects"] is False
        assert kwargs["stream"] is True
        assert kwargs["timeout"] == 7
        assert "User-Agent" in kwargs["headers"]

    def test_missing_encoding_defaults_to_utf8(self, public_dns, http_get):
        http_get.return_value = _response(body="Zürich".encode("utf-8"), encoding=None)
        assert fetch_url_safe("https://feeds.example.org/x").text == "Zürich"

    def test_text_calendar_without_charset_is_utf8(self, public_dns, http_get):
        resp = _wire_response("SUMMARY:Café Zürich".encode("utf-8"), "text/calendar")
        assert resp.encoding == "ISO-8859-1"
        http_get.return_value = resp

        assert fetch_url_safe("https://feeds.example.org/team.ics").text == "SUMMARY:Café Zürich"

    def test_explicit_charset_is_honoured(self, public_dns, http_get):
        http_get.return_value = _wire_response(
            "Café".encode("iso-8859-1"), "text/html; charset=ISO-8859-1"
        )
        assert fetch_url_safe("https://feeds.example.org/x").text == "Café"


class TestRedirects:
    def test_relative_redirect_followed_through_gate(self, public_dns, http_get):
        http_get.side_effect = [
            _response(status=302, redirect=True, headers={"Location": "/v2/team.ics"}),
            _response(body=b"done"),
        ]

        result = fetch_url_safe("https://feeds.example.org/team.ics")

        assert result.text == "done"
        assert result.url == "https://feeds.example.org/v2/team.ics"
        assert http_get.call_args_list[1].args[0] == "https://feeds.example.org/v2/team.ics"

    def test_redirect_to_loopback_rejected(self, public_dns, http_get):
        http_get.return_value = _response(
            status=301, redirect=True, headers={"Location": "http://127.0.0.1/admin"}
        )
        with pytest.raises(ScheduleSecurityError, match="Localhost URLs are not allowed"):
            fetch_url_safe("https://feeds.example.org/team.ics")
        assert http_get.call_count == 1

    def test_redirect_to_disallowed_port_rejected(self, public_dns, http_get):
        http_get.return_value = _response(
            status=302, redirect=True, headers={"Location": "https://feeds.example.org:8443/x"}
        )
        with pytest.raises(ScheduleSecurityError, match="Only ports 80 and 443"):
            fetch_url_safe("https://feeds.example.org/team.ics")

    def test_too_many_redirects(self, public_dns, http_get):
        http_get.side_effect = lambda *a, **k: _response(
            status=302, redirect=True, headers={"Location": "/again"}
        )
        with pytest.raises(ScheduleSecurityError, match="Too many redirects"):
            fetch_url_safe("https://feeds.example.org/start", max_redirects=2)
        assert http_get.call_count == 3


class TestLimits:
    def test_declared_length_over_cap(self, public_dns, http_get):
        resp = _response(body=b"x" * 10, headers={"Content-Length": "999999"})
        http_get.return_value = resp
        with pytest.raises(ScheduleSecurityError, match="Response exceeds size limit"):
            fetch_url_safe("https://feeds.example.org/x", max_bytes=1000)
        resp.iter_content.assert_not_called()
        resp.close.assert_called_once()

    def test_streamed_body_over_cap(self, public_dns, http_get):
        http_get.return_value = _response(body=b"y" * 64)
        with pytest.raises(ScheduleSecurityError) as exc:
            fetch_url_safe("https://feeds.example.org/x", max_bytes=20)
        assert exc.value.code == "response_too_large"

    def test_body_exactly_at_cap_ok(self, public_dns, http_get):
        http_get.return_value = _response(body=b"z" * 16)
        assert len(fetch_url_safe("https://feeds.example.org/x", max_bytes=16).text) == 16


class TestFailures:
    def test_http_error_status(self, public_dns, http_get):
        http_get.return_value = _response(status=404)
        with pytest.raises(ScheduleSecurityError, match=r"Fetch failed \(404\)") as exc:
            fetch_url_safe("https://feeds.example.org/x")
        assert classify_error(exc.value) == 400

    def test_timeout(self, public_dns, http_get):
        http_get.side_effect = requests.Timeout("slow")
        with pytest.raises(ScheduleSecurityError, match="Fetch timed out"):
            fetch_url_safe("https://feeds.example.org/x")

    def test_connection_error_is_server_side(self, public_dns, http_get):
        http_get.side_effect = requests.ConnectionError("reset")
        with pytest.raises(ScheduleSecurityError) as exc:
            fetch_url_safe("https://feeds.example.org/x")
        assert exc.value.code == "network_error"
        assert classify_error(exc.value) == 500

    def test_private_dns_answer_blocks_request(self, http_get):
        with patch("schedule_sync.sources.http.resolve_host", return_value=[PUBLIC_IP, "10.1.2.3"]):
            with pytest.raises(ScheduleSecurityError, match="Private IPs are not allowed"):
                fetch_url_safe("https://rebind.example.org/x")
        http_get.assert_not_called()

    def test_unresolvable_host(self, http_get):
        with patch("schedule_sync.sources.http.resolve_host", side_effect=socket.gaierror("nope")):
            with pytest.raises(ScheduleSecurityError, match="Fetch failed"):
                fetch_url_safe("https://missing.example.org/x")
        http_get.assert_not_called()


class TestAssertPublicHost:
    def test_allowlisted_host_skips_dns(self, allow_test_hosts):
        with patch("schedule_sync.sources.http.resolve_host") as resolve:
            assert_public_host("203.0.113.10")
        resolve.assert_not_called()

    def test_ipv6_loopback_answer_rejected(self):
        with patch("schedule_sync.sources.http.resolve_host", return_value=["::1"]):
            with pytest.raises(ScheduleSecurityError):
                assert_public_host("sneaky.example.org")

    def test_returns_address_to_pin(self):
        with patch("schedule_sync.sources.http.resolve_host", return_value=["2606:2800::1", PUBLIC_IP]):
            assert assert_public_host("feeds.example.org") == "2606:2800::1"

    def test_allowlisted_host_is_not_pinned(self, allow_test_hosts):
        assert assert_public_host("203.0.113.10") is None


class TestAddressPinning:
    def test_fetch_pins_each_hop_to_checked_address(self, public_dns, http_get):
        http_get.return_value = _response(body=b"ok")
        with patch("schedule_sync.sources.http.PinnedAddressAdapter") as adapter_cls:
            fetch_url_safe("https://feeds.example.org/team.ics")
        adapter_cls.assert_called_once_with("feeds.example.org", PUBLIC_IP)

    def test_allowlisted_host_uses_normal_resolution(self, allow_test_hosts, http_get):
        http_get.return_value = _response(body=b"ok")
        with patch("schedule_sync.sources.http.PinnedAddressAdapter") as adapter_cls:
            fetch_url_safe("http://203.0.113.10/team.ics")
        adapter_cls.assert_not_called()

    def test_adapter_rewrites_target_but_keeps_host_name(self):
        adapter = PinnedAddressAdapter("feeds.example.org", PUBLIC_IP)
        request = requests.Request("GET", "https://feeds.example.org/team.ics?x=1").prepare()

        with patch.object(HTTPAdapter, "send", return_value="sent") as send:
            assert adapter.send(request, timeout=5) == "sent"

        sent = send.call_args.args[0]
        assert sent.url == f"https://{PUBLIC_IP}/team.ics?x=1"
        assert sent.headers["Host"] == "feeds.example.org"
        pool_kw = adapter.poolmanager.connection_pool_kw
        assert pool_kw["server_hostname"] == "feeds.example.org"
        assert pool_kw["assert_hostname"] == "feeds.example.org"

    def test_adapter_brackets_ipv6(self):
        adapter = PinnedAddressAdapter("feeds.example.org", "2606:2800::1")
        request = requests.Request("GET", "http://feeds.example.org/x").prepare()

        with patch.object(HTTPAdapter, "send", return_value="sent") as send:
            adapter.send(request)

        assert send.call_args.args[0].url == "http://[2606:2800::1]/x"
        assert "assert_hostname" not in adapter.poolmanager.connection_pool_kw
