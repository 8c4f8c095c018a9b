"""
Request helpers: client IP resolution, UA fingerprint and the response builder.
"""
import hashlib

from starlette.requests import Request
from starlette.responses import JSONResponse

from src.catalog_app.utils import ResponseBuilder, client_ip, ua_fingerprint


def make_request(headers=None, client=("192.0.2.10", 50000)):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "headers": raw, "client": client})


class TestClientIp:
    def test_socket_address(self):
        assert client_ip(make_request()) == "192.0.2.10"

    def test_cloudflare_header_wins(self):
        request = make_request(
            {"CF-Connecting-IP": "198.51.100.1", "X-Forwarded-For": "198.51.100.2"}
        )
        assert client_ip(request) == "198.51.100.1"

    def test_first_forwarded_hop(self):
        request = make_request({"X-Forwarded-For": "198.51.100.2, 10.0.0.1"})
        assert client_ip(request) == "198.51.100.2"

    def test_invalid_header_is_skipped(self):
        request = make_request({"X-Forwarded-For": "not-an-ip", "X-Real-IP": "2001:db8::1"})
        assert client_ip(request) == "2001:db8::1"

    def test_unknown(self):
        assert client_ip(make_request(client=None)) == "0.0.0.0"


def test_ua_fingerprint():
    expected = hashlib.sha256(b"Mozilla/5.0").hexdigest()[:32]
    assert ua_fingerprint("Mozilla/5.0") == expected
    assert ua_fingerprint("") is None
    assert ua_fingerprint(None) is None


class TestResponseBuilder:
    def test_applies_cookies_and_headers(self):
        builder = ResponseBuilder()
        builder.set_session_cookie("sid", "abc", secure=False, samesite="Strict")
        builder.set_header("Cache-Control", "no-store")

        response = builder.apply(JSONResponse({}))

        cookie = response.headers["set-cookie"].lower()
        assert "sid=abc" in cookie
        assert "httponly" in cookie
        assert "samesite=strict" in cookie
        assert "secure" not in cookie
        assert response.headers["cache-control"] == "no-store"
        assert response.headers["referrer-policy"] == "no-referrer"

    def test_samesite_none_forces_secure(self):
        builder = ResponseBuilder()
        builder.set_session_cookie("sid", "abc", secure=False, samesite="None")
        assert builder.cookies[0].secure is True

    def test_delete_overrides_earlier_set(self):
        builder = ResponseBuilder()
        builder.set_session_cookie("sid", "abc", secure=False, samesite="Lax")
        builder.delete_cookie("sid", secure=False, samesite="Lax")
        assert builder.cookies == []
        assert [c.name for c in builder.deleted_cookies] == ["sid"]

    def test_set_after_delete_wins(self):
        builder = ResponseBuilder()
        builder.delete_cookie("sid", secure=False, samesite="Lax")
        builder.set_session_cookie("sid", "new", secure=False, samesite="Lax")
        assert builder.deleted_cookies == []
        assert builder.cookies[0].value == "new"
