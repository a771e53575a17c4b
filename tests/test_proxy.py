"""
Tests for blunder request proxy / response normalization.
"""

import base64
import json
import socket
from unittest.mock import MagicMock, patch

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from blunder.core.proxy import (
    INVALID_JSON_MESSAGE,
    INVALID_URL_MESSAGE,
    MAX_RESPONSE_BYTES,
    InvalidInput,
    NetworkError,
    ProxyEngine,
    ProxyFailure,
    ProxySuccess,
    RequestDescriptor,
    classify_body,
    get_proxy_engine,
    is_http_url,
    looks_textual,
    parse_descriptor,
    pick_serializable_headers,
    prefer_ipv4,
    read_capped,
    reset_proxy_engine,
    sanitize_headers,
    set_proxy_engine,
)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _fake_response(
    status: int = 200,
    reason: str = "OK",
    headers: dict | None = None,
    chunks: list | None = None,
) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.reason = reason
    resp.headers = CaseInsensitiveDict(headers if headers is not None else {"Content-Type": "application/json"})
    resp.iter_content.return_value = iter(chunks if chunks is not None else [b'{"a":1}'])
    return resp


def _body(**payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def engine():
    return ProxyEngine(timeout=5)


@pytest.fixture
def upstream():
    """Patch the session transport; yields the mock for assertions."""
    with patch("blunder.core.proxy.requests.Session.request") as mock_request:
        mock_request.return_value = _fake_response()
        yield mock_request


# ── Validation ───────────────────────────────────────────────────────────────


class TestValidation:
    @pytest.mark.parametrize("url", [
        "http://example.com",
        "https://api.example.com/v1/health?x=1",
        "http://127.0.0.1:8080/path",
        "HTTPS://EXAMPLE.COM/",
    ])
    def test_http_urls_accepted(self, url):
        assert is_http_url(url)

    @pytest.mark.parametrize("url", [
        "",
        "example.com",
        "ftp://example.com/file",
        "file:///etc/passwd",
        "javascript:alert(1)",
        "mailto:someone@example.com",
        "http://",
        "http://[::1",
        "http://example.com:99999/",
    ])
    def test_other_urls_rejected(self, url):
        assert not is_http_url(url)

    def test_parse_descriptor_defaults(self):
        d = parse_descriptor(_body(url="  https://example.com  "))
        assert d.url == "https://example.com"
        assert d.method == "GET"
        assert d.headers == {}
        assert d.body is None

    def test_method_normalized(self):
        assert parse_descriptor(_body(url="http://x.io", method="patch")).method == "PATCH"
        assert parse_descriptor(_body(url="http://x.io", method="")).method == "GET"
        assert parse_descriptor(_body(url="http://x.io", method="purge")).method == "PURGE"

    def test_invalid_json(self):
        with pytest.raises(InvalidInput) as exc:
            parse_descriptor(b"{not json")
        assert exc.value.message == INVALID_JSON_MESSAGE
        assert exc.value.status_code == 400

    @pytest.mark.parametrize("raw", [
        b'{"method": "GET"}',
        b'{"url": "   "}',
        b'{"url": 42}',
        b'["http://example.com"]',
        b'"http://example.com"',
        b"null",
    ])
    def test_missing_or_invalid_url(self, raw):
        with pytest.raises(InvalidInput) as exc:
            parse_descriptor(raw)
        assert exc.value.message == INVALID_URL_MESSAGE

    def test_non_string_body_serialized(self):
        d = parse_descriptor(_body(url="http://x.io", method="POST", body={"k": 1}))
        assert d.body == '{"k": 1}'

    def test_headers_not_object_ignored(self):
        d = parse_descriptor(_body(url="http://x.io", headers=["a"]))
        assert d.headers == {}

    def test_outbound_body(self):
        assert RequestDescriptor(url="http://x.io", method="GET", body="x").outbound_body is None
        assert RequestDescriptor(url="http://x.io", method="HEAD", body="x").outbound_body is None
        assert RequestDescriptor(url="http://x.io", method="POST", body="x").outbound_body == "x"


# ── Headers ──────────────────────────────────────────────────────────────────


class TestHeaders:
    def test_strips_host_and_content_length_any_case(self):
        out = sanitize_headers({"HOST": "evil.example", "Content-LENGTH": "99", "X-Token": "abc"})
        assert "host" not in out
        assert "content-length" not in out
        assert out["x-token"] == "abc"

    def test_default_accept(self):
        out = sanitize_headers({})
        assert out["accept"] == "*/*"

    def test_existing_accept_kept(self):
        out = sanitize_headers({"ACCEPT": "application/json"})
        assert out["accept"] == "application/json"
        assert len(out) == 1

    def test_none_input(self):
        assert dict(sanitize_headers(None)) == {"accept": "*/*"}

    def test_response_headers_drop_set_cookie(self):
        headers = CaseInsensitiveDict({
            "Content-Type": "text/plain",
            "Set-Cookie": "session=abc",
            "X-Request-Id": "1",
        })
        out = pick_serializable_headers(headers)
        assert out == {"content-type": "text/plain", "x-request-id": "1"}


# ── Body handling ────────────────────────────────────────────────────────────


class TestClassification:
    @pytest.mark.parametrize("ct", [
        "application/json",
        "application/json; charset=utf-8",
        "Application/JSON",
        "text/html",
        "text/plain; charset=iso-8859-1",
        "application/xml",
        "application/xhtml+xml",
        "application/javascript",
        "application/x-www-form-urlencoded",
        "application/problem+json; x=application/json",
    ])
    def test_textual(self, ct):
        assert looks_textual(ct)

    @pytest.mark.parametrize("ct", [None, "", "image/png", "application/octet-stream",
                                    "application/pdf", "video/mp4"])
    def test_binary(self, ct):
        assert not looks_textual(ct)

    def test_text_decoded_lossy(self):
        text, b64 = classify_body(b"ok \xff\xfe end", "text/plain")
        assert b64 is None
        assert text.startswith("ok ")
        assert "�" in text

    def test_binary_base64(self):
        text, b64 = classify_body(b"\x89PNG\r\n", "image/png")
        assert text is None
        assert base64.b64decode(b64) == b"\x89PNG\r\n"

    def test_empty_text(self):
        assert classify_body(b"", "text/plain") == ("", None)


class TestReadCapped:
    def test_small_body(self):
        resp = _fake_response(chunks=[b"abc", b"", b"def"])
        payload, truncated = read_capped(resp, limit=10)
        assert payload == b"abcdef"
        assert truncated is False
        resp.close.assert_called_once()

    def test_exactly_limit_not_truncated(self):
        resp = _fake_response(chunks=[b"x" * 6, b"y" * 4])
        payload, truncated = read_capped(resp, limit=10)
        assert len(payload) == 10
        assert truncated is False

    def test_over_limit_truncated(self):
        resp = _fake_response(chunks=[b"x" * 6, b"y" * 6, b"z" * 100])
        payload, truncated = read_capped(resp, limit=10)
        assert payload == b"x" * 6 + b"y" * 4
        assert truncated is True
        resp.close.assert_called_once()

    def test_stops_reading_after_limit(self):
        consumed = []

        def chunks():
            for i in range(100):
                consumed.append(i)
                yield b"x" * 8

        resp = _fake_response()
        resp.iter_content.return_value = chunks()
        read_capped(resp, limit=10)
        assert len(consumed) == 2

    def test_read_error_is_network_error(self):
        def chunks():
            yield b"partial"
            raise requests.exceptions.ChunkedEncodingError("Connection broken")

        resp = _fake_response()
        resp.iter_content.return_value = chunks()
        with pytest.raises(NetworkError) as exc:
            read_capped(resp)
        assert "Connection broken" in exc.value.message
        assert exc.value.status_code == 502
        resp.close.assert_called_once()

    def test_decode_error_is_network_error(self):
        def chunks():
            yield b"partial"
            raise ValueError("invalid literal for int() with base 16")

        resp = _fake_response()
        resp.iter_content.return_value = chunks()
        with pytest.raises(NetworkError):
            read_capped(resp)
        resp.close.assert_called_once()


# ── Proxy Engine ─────────────────────────────────────────────────────────────


class TestProxyEngine:
    def test_json_success(self, engine, upstream):
        result = engine.handle(_body(url="https://api.example.com/a"))
        assert isinstance(result, ProxySuccess)
        d = result.to_dict()
        assert result.http_status == 200
        assert d["ok"] is True
        assert d["status"] == 200
        assert d["statusText"] == "OK"
        assert d["url"] == "https://api.example.com/a"
        assert d["method"] == "GET"
        assert isinstance(d["durationMs"], int)
        body = d["response"]
        assert body["contentType"] == "application/json"
        assert body["bodyText"] == '{"a":1}'
        assert body["bodyBase64"] is None
        assert body["bytes"] == 7
        assert body["truncated"] is False

    def test_request_arguments(self, engine, upstream):
        engine.handle(_body(url="http://x.io/p", method="post", body="hello",
                            headers={"Host": "h", "content-length": "3", "X-A": "1"}))
        kwargs = upstream.call_args.kwargs
        assert kwargs["method"] == "POST"
        assert kwargs["url"] == "http://x.io/p"
        assert kwargs["data"] == b"hello"
        assert kwargs["allow_redirects"] is True
        assert kwargs["stream"] is True
        assert kwargs["timeout"] == 5
        headers = kwargs["headers"]
        assert "host" not in headers
        assert "content-length" not in headers
        assert headers["x-a"] == "1"
        assert headers["accept"] == "*/*"

    @pytest.mark.parametrize("method", ["GET", "HEAD", "get", "head"])
    def test_body_dropped_for_get_and_head(self, engine, upstream, method):
        engine.handle(_body(url="http://x.io", method=method, body="ignored"))
        assert upstream.call_args.kwargs["data"] is None

    def test_empty_body_forwarded_for_post(self, engine, upstream):
        engine.handle(_body(url="http://x.io", method="POST", body=""))
        assert upstream.call_args.kwargs["data"] == b""

    def test_invalid_url_no_network(self, engine, upstream):
        for url in ("", "   ", "ftp://x.io", "nope"):
            result = engine.handle(_body(url=url))
            assert isinstance(result, ProxyFailure)
            assert result.http_status == 400
            assert result.to_dict() == {"error": INVALID_URL_MESSAGE}
        upstream.assert_not_called()

    def test_invalid_json_checked_before_url(self, engine, upstream):
        result = engine.handle(b'{"url": "ftp://nope"')
        assert result.http_status == 400
        assert result.to_dict() == {"error": INVALID_JSON_MESSAGE}
        upstream.assert_not_called()

    def test_connection_failure_is_502(self, engine, upstream):
        upstream.side_effect = requests.exceptions.ConnectionError("Name or service not known")
        result = engine.handle(_body(url="http://does-not-exist.invalid"))
        assert isinstance(result, ProxyFailure)
        assert result.http_status == 502
        assert result.to_dict() == {"error": "Name or service not known"}
        assert "response" not in result.to_dict()

    def test_too_many_redirects_is_502(self, engine, upstream):
        upstream.side_effect = requests.exceptions.TooManyRedirects("Exceeded 10 redirects.")
        result = engine.handle(_body(url="http://loop.example"))
        assert result.http_status == 502
        assert "redirects" in result.error

    def test_unsendable_method_is_502(self, engine, upstream):
        upstream.side_effect = ValueError("Method cannot contain non-token characters 'GE T'")
        result = engine.handle(_body(url="http://x.io", method="GE T"))
        assert isinstance(result, ProxyFailure)
        assert result.http_status == 502
        assert "non-token characters" in result.error
        assert upstream.call_args.kwargs["method"] == "GE T"

    def test_non_latin1_header_is_502(self, engine, upstream):
        upstream.side_effect = UnicodeEncodeError("latin-1", "\u20ac", 0, 1, "ordinal not in range(256)")
        result = engine.handle_payload({"url": "http://x.io", "headers": {"X-A": "\u20ac"}})
        assert result.http_status == 502
        assert "latin-1" in result.error

    @pytest.mark.parametrize("payload", [
        {"url": "http://127.0.0.1:9/", "method": "GE T"},
        {"url": "http://127.0.0.1:9/", "headers": {"X-A": "\u20ac"}},
    ])
    def test_transport_rejections_never_raise(self, payload):
        result = ProxyEngine(timeout=2).handle(json.dumps(payload))
        assert isinstance(result, ProxyFailure)
        assert result.http_status == 502

    def test_upstream_error_status_still_success_variant(self, engine, upstream):
        upstream.return_value = _fake_response(status=404, reason="Not Found",
                                               headers={"Content-Type": "text/html"},
                                               chunks=[b"<h1>nope</h1>"])
        result = engine.handle(_body(url="http://x.io/missing"))
        assert isinstance(result, ProxySuccess)
        assert result.http_status == 200
        assert result.ok is False
        assert result.status == 404
        assert result.status_text == "Not Found"
        assert result.response.body_text == "<h1>nope</h1>"

    @pytest.mark.parametrize("status,ok", [(199, False), (200, True), (204, True),
                                           (299, True), (300, False), (500, False)])
    def test_ok_range(self, engine, upstream, status, ok):
        upstream.return_value = _fake_response(status=status, chunks=[])
        assert engine.handle(_body(url="http://x.io")).ok is ok

    def test_missing_reason(self, engine, upstream):
        upstream.return_value = _fake_response(reason=None)
        assert engine.handle(_body(url="http://x.io")).status_text == ""

    def test_binary_response(self, engine, upstream):
        png = b"\x89PNG\r\n\x1a\n" + bytes(range(256))
        upstream.return_value = _fake_response(headers={"Content-Type": "image/png"}, chunks=[png])
        body = engine.handle(_body(url="http://x.io/logo.png")).response
        assert body.body_text is None
        assert body.body_base64
        assert base64.b64decode(body.body_base64) == png

    def test_no_content_type_is_binary(self, engine, upstream):
        upstream.return_value = _fake_response(headers={}, chunks=[b"raw"])
        d = engine.handle(_body(url="http://x.io")).to_dict()["response"]
        assert d["contentType"] is None
        assert d["bodyText"] is None
        assert d["bodyBase64"] == base64.b64encode(b"raw").decode()

    def test_invalid_json_text_kept_verbatim(self, engine, upstream):
        upstream.return_value = _fake_response(chunks=[b"not json"])
        assert engine.handle(_body(url="http://x.io")).response.body_text == "not json"

    def test_set_cookie_excluded(self, engine, upstream):
        upstream.return_value = _fake_response(headers={
            "Content-Type": "text/plain",
            "Set-Cookie": "sid=1; HttpOnly",
            "ETag": '"abc"',
        })
        headers = engine.handle(_body(url="http://x.io")).to_dict()["response"]["headers"]
        assert "set-cookie" not in {k.lower() for k in headers}
        assert headers["etag"] == '"abc"'

    def test_truncated_at_max_bytes(self, engine, upstream):
        upstream.return_value = _fake_response(
            headers={"Content-Type": "text/plain"},
            chunks=[b"a" * MAX_RESPONSE_BYTES, b"overflow"],
        )
        body = engine.handle(_body(url="http://x.io/big")).response
        assert body.truncated is True
        assert body.bytes == MAX_RESPONSE_BYTES
        assert len(body.body_text) == MAX_RESPONSE_BYTES
        assert "overflow" not in body.body_text

    def test_exactly_max_bytes_not_truncated(self, engine, upstream):
        upstream.return_value = _fake_response(
            headers={"Content-Type": "application/octet-stream"},
            chunks=[b"a" * (MAX_RESPONSE_BYTES - 1), b"b"],
        )
        body = engine.handle(_body(url="http://x.io/big")).response
        assert body.truncated is False
        assert body.bytes == MAX_RESPONSE_BYTES
        assert base64.b64decode(body.body_base64).endswith(b"ab")

    def test_body_fields_mutually_exclusive(self, engine, upstream):
        for ct in ("application/json", "image/gif", "text/csv", ""):
            upstream.return_value = _fake_response(headers={"Content-Type": ct}, chunks=[b"data"])
            body = engine.handle(_body(url="http://x.io")).to_dict()["response"]
            assert (body["bodyText"] is None) != (body["bodyBase64"] is None)

    def test_empty_textual_body(self, engine, upstream):
        upstream.return_value = _fake_response(headers={"Content-Type": "text/plain"}, chunks=[])
        body = engine.handle(_body(url="http://x.io", method="HEAD")).response
        assert body.body_text == ""
        assert body.body_base64 is None
        assert body.bytes == 0

    def test_handle_payload_dict(self, engine, upstream):
        result = engine.handle_payload({"url": "http://x.io", "method": "delete"})
        assert result.method == "DELETE"

    def test_handle_payload_invalid(self, engine, upstream):
        result = engine.handle_payload({"url": "gopher://x.io"})
        assert result.http_status == 400
        upstream.assert_not_called()

    def test_session_configuration(self):
        eng = ProxyEngine(timeout=0, max_redirects=3, verify_tls=False)
        assert eng.timeout is None
        assert eng._session.max_redirects == 3
        assert eng.verify_tls is False

    def test_from_config(self):
        from blunder.config import ProxyConfig
        eng = ProxyEngine.from_config(ProxyConfig(timeout=12, max_redirects=4))
        assert eng.timeout == 12
        assert eng.max_redirects == 4
        assert eng.max_response_bytes == MAX_RESPONSE_BYTES


# ── DNS ordering ─────────────────────────────────────────────────────────────


class TestPreferIpv4:
    def test_reorders_and_is_idempotent(self, monkeypatch):
        v6 = (socket.AF_INET6, socket.SOCK_STREAM, 6, "", ("::1", 80, 0, 0))
        v4 = (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("127.0.0.1", 80))
        fake = MagicMock(return_value=[v6, v4])
        monkeypatch.setattr(socket, "getaddrinfo", fake)

        prefer_ipv4()
        wrapper = socket.getaddrinfo
        prefer_ipv4()
        assert socket.getaddrinfo is wrapper

        assert socket.getaddrinfo("localhost", 80) == [v4, v6]
        assert fake.call_count == 1


# ── Singleton ────────────────────────────────────────────────────────────────


class TestSingleton:
    def setup_method(self):
        reset_proxy_engine()

    def teardown_method(self):
        reset_proxy_engine()

    def test_get_creates_once(self):
        assert get_proxy_engine() is get_proxy_engine()

    def test_set_and_reset(self):
        eng = ProxyEngine(timeout=1)
        set_proxy_engine(eng)
        assert get_proxy_engine() is eng
        reset_proxy_engine()
        assert get_proxy_engine() is not eng
