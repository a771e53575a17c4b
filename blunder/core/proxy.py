"""
blunder Request Proxy
=====================
Server-side half of the API client: takes a request description sent by the
browser, performs the request upstream and returns a bounded, JSON-safe
representation of the response.

Pipeline:
  • Validate the target URL (absolute http/https only)
  • Sanitize outbound headers (drop host/content-length, default accept)
  • Execute exactly one upstream request (redirects followed, capped)
  • Read at most MAX_RESPONSE_BYTES of the body, flag truncation
  • Classify the body as text (UTF-8, lossy) or binary (base64)
  • Serialize a success or failure result

Usage::

    engine = get_proxy_engine()
    result = engine.handle(request_body_bytes)
    return jsonify(result.to_dict()), result.http_status
"""

from __future__ import annotations

import base64
import json
import logging
import socket
import threading
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import requests
from requests.structures import CaseInsensitiveDict

logger = logging.getLogger(__name__)

MAX_RESPONSE_BYTES = 1024 * 1024
READ_CHUNK_SIZE = 64 * 1024

INVALID_JSON_MESSAGE = "Invalid JSON body."
INVALID_URL_MESSAGE = "Please provide a valid http(s) URL."

BODYLESS_METHODS = ("GET", "HEAD")
STRIPPED_REQUEST_HEADERS = ("host", "content-length")
EXCLUDED_RESPONSE_HEADERS = ("set-cookie",)

_TEXTUAL_MARKERS = (
    "application/json",
    "application/xml",
    "application/xhtml",
    "application/javascript",
    "application/x-www-form-urlencoded",
)


# ── Errors ───────────────────────────────────────────────────────────────────

class ProxyError(Exception):
    """Base error for a proxied request; carries the endpoint status code."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(ProxyError):
    """Malformed request JSON or an unusable target URL."""

    status_code = 400


class NetworkError(ProxyError):
    """DNS, connection, TLS, timeout or body-read failure upstream."""

    status_code = 502


# ── Data Models ──────────────────────────────────────────────────────────────

@dataclass
class RequestDescriptor:
    """A validated request description received from the client."""
    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None

    @property
    def outbound_body(self) -> Optional[str]:
        """Body to send upstream; never present for GET/HEAD."""
        if self.method in BODYLESS_METHODS:
            return None
        return self.body


@dataclass
class ResponseBody:
    content_type: Optional[str]
    headers: Dict[str, str]
    bytes: int
    truncated: bool
    body_text: Optional[str] = None
    body_base64: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contentType": self.content_type,
            "headers": self.headers,
            "bytes": self.bytes,
            "truncated": self.truncated,
            "bodyText": self.body_text,
            "bodyBase64": self.body_base64,
        }


@dataclass
class ProxySuccess:
    ok: bool
    status: int
    status_text: str
    duration_ms: int
    url: str
    method: str
    response: ResponseBody

    http_status = 200

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "status": self.status,
            "statusText": self.status_text,
            "durationMs": self.duration_ms,
            "url": self.url,
            "method": self.method,
            "response": self.response.to_dict(),
        }


@dataclass
class ProxyFailure:
    error: str
    http_status: int = 502

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error}

    @classmethod
    def from_error(cls, err: ProxyError) -> "ProxyFailure":
        return cls(error=err.message, http_status=err.status_code)


ProxyResult = Union[ProxySuccess, ProxyFailure]


# ── Validation ───────────────────────────────────────────────────────────────

def is_http_url(raw: str) -> bool:
    """True if ``raw`` is an absolute http(s) URL naming a host."""
    try:
        parsed = urllib.parse.urlsplit(raw)
        # Accessing .port validates the port component.
        parsed.port
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.hostname)


def parse_descriptor(raw_body: Union[bytes, str]) -> RequestDescriptor:
    """Decode and validate a JSON request description.

    Raises:
        InvalidInput: body is not JSON, or the URL is missing or not http(s).
    """
    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise InvalidInput(INVALID_JSON_MESSAGE)
    return descriptor_from_payload(payload)


def descriptor_from_payload(payload: Any) -> RequestDescriptor:
    """Validate an already decoded request description."""
    if not isinstance(payload, dict):
        raise InvalidInput(INVALID_URL_MESSAGE)

    url = payload.get("url")
    url = url.strip() if isinstance(url, str) else ""
    if not url or not is_http_url(url):
        raise InvalidInput(INVALID_URL_MESSAGE)

    method = str(payload.get("method") or "GET").upper()

    headers = payload.get("headers")
    if not isinstance(headers, dict):
        headers = {}

    body = payload.get("body")
    if body is not None and not isinstance(body, str):
        body = json.dumps(body)

    return RequestDescriptor(
        url=url,
        method=method,
        headers={str(k): str(v) for k, v in headers.items()},
        body=body,
    )


# ── Headers ──────────────────────────────────────────────────────────────────

def sanitize_headers(headers: Optional[Mapping[str, str]]) -> CaseInsensitiveDict:
    """Build the outbound header set from user-supplied headers."""
    out: CaseInsensitiveDict = CaseInsensitiveDict(headers or {})

    # Recomputed by the transport, never trusted from user input.
    for name in STRIPPED_REQUEST_HEADERS:
        out.pop(name, None)

    if "accept" not in out:
        out["accept"] = "*/*"
    return out


def pick_serializable_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Copy upstream response headers, dropping set-cookie."""
    out: Dict[str, str] = {}
    for key, value in headers.items():
        name = key.lower()
        if name in EXCLUDED_RESPONSE_HEADERS:
            continue
        out[name] = value
    return out


# ── Body handling ────────────────────────────────────────────────────────────

def looks_textual(content_type: Optional[str]) -> bool:
    """Decide from the content type whether a body should be decoded as text."""
    ct = (content_type or "").lower()
    if ct.startswith("text/"):
        return True
    return any(marker in ct for marker in _TEXTUAL_MARKERS)


def read_capped(response: requests.Response,
                limit: int = MAX_RESPONSE_BYTES) -> Tuple[bytes, bool]:
    """Read at most ``limit`` bytes of a streamed response body.

    Returns:
        (payload, truncated) where truncated is True iff the upstream body
        had more than ``limit`` bytes.

    Raises:
        NetworkError: the connection failed while reading.
    """
    buf = bytearray()
    truncated = False
    try:
        for chunk in response.iter_content(chunk_size=READ_CHUNK_SIZE):
            if not chunk:
                continue
            buf.extend(chunk)
            if len(buf) > limit:
                truncated = True
                break
    except (requests.RequestException, ValueError) as e:
        raise NetworkError(str(e))
    finally:
        response.close()

    if truncated:
        del buf[limit:]
    return bytes(buf), truncated


def classify_body(payload: bytes, content_type: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Return (body_text, body_base64); exactly one is not None."""
    if looks_textual(content_type):
        return payload.decode("utf-8", errors="replace"), None
    return None, base64.b64encode(payload).decode("ascii")


# ── DNS ──────────────────────────────────────────────────────────────────────

_dns_lock = threading.Lock()


def prefer_ipv4() -> None:
    """Make hostname resolution return IPv4 addresses first, process-wide.

    Avoids slow IPv6 -> IPv4 fallback on hosts with broken IPv6. Safe to call
    any number of times; only the first call installs the wrapper.
    """
    # Python has no resolver-order setting, so the stdlib resolver is wrapped.
    with _dns_lock:
        current = socket.getaddrinfo
        if getattr(current, "_ipv4_first", False):
            return

        def getaddrinfo(*args, **kwargs):
            results = current(*args, **kwargs)
            return sorted(results, key=lambda info: info[0] != socket.AF_INET)

        getaddrinfo._ipv4_first = True  # type: ignore[attr-defined]
        socket.getaddrinfo = getaddrinfo
        logger.debug("DNS resolution order set to ipv4first")


# ── Proxy Engine ─────────────────────────────────────────────────────────────

class ProxyEngine:
    """
    Performs one upstream request per call and normalizes the result.

    Stateless across requests: the underlying session is configured once and
    never mutated afterwards, so a single engine is shared by all threads.
    """

    def __init__(
        self,
        timeout: Optional[float] = 30.0,
        max_redirects: int = 10,
        verify_tls: bool = True,
        max_response_bytes: int = MAX_RESPONSE_BYTES,
    ):
        """
        Args:
            timeout: Upstream connect/read timeout in seconds (None or 0 disables).
            max_redirects: Maximum redirects followed before failing.
            verify_tls: Verify upstream TLS certificates.
            max_response_bytes: Body read ceiling.
        """
        self.timeout = timeout or None
        self.max_redirects = max_redirects
        self.verify_tls = verify_tls
        self.max_response_bytes = max_response_bytes
        self._session = requests.Session()
        self._session.max_redirects = max_redirects
        # No environment proxies / netrc credentials.
        self._session.trust_env = False

    @classmethod
    def from_config(cls, cfg) -> "ProxyEngine":
        """Build an engine from a ``ProxyConfig``."""
        return cls(
            timeout=cfg.timeout,
            max_redirects=cfg.max_redirects,
            verify_tls=cfg.verify_tls,
        )

    # ── Entry points ─────────────────────────────────────────────────────

    def handle(self, raw_body: Union[bytes, str]) -> ProxyResult:
        """Run the full pipeline on a raw JSON request body."""
        started_at = time.perf_counter()
        try:
            descriptor = parse_descriptor(raw_body)
            return self.execute(descriptor, started_at=started_at)
        except ProxyError as e:
            return self._failure(e)

    def handle_payload(self, payload: Any) -> ProxyResult:
        """Run the pipeline on an already decoded request description."""
        started_at = time.perf_counter()
        try:
            descriptor = descriptor_from_payload(payload)
            return self.execute(descriptor, started_at=started_at)
        except ProxyError as e:
            return self._failure(e)

    # ── Execution ────────────────────────────────────────────────────────

    def execute(self, descriptor: RequestDescriptor,
                started_at: Optional[float] = None) -> ProxySuccess:
        """Send the request upstream and serialize the response.

        Raises:
            NetworkError: on any transport failure.
        """
        if started_at is None:
            started_at = time.perf_counter()

        headers = sanitize_headers(descriptor.headers)
        body = descriptor.outbound_body
        data = body.encode("utf-8") if body is not None else None

        # http.client rejects non-token methods and non-latin-1 header values
        # with ValueError (UnicodeEncodeError) before anything is sent.
        try:
            upstream = self._session.request(
                method=descriptor.method,
                url=descriptor.url,
                headers=headers,
                data=data,
                allow_redirects=True,
                stream=True,
                timeout=self.timeout,
                verify=self.verify_tls,
            )
        except (requests.RequestException, ValueError) as e:
            raise NetworkError(str(e))

        content_type = upstream.headers.get("content-type")
        payload, truncated = read_capped(upstream, self.max_response_bytes)
        body_text, body_base64 = classify_body(payload, content_type)

        duration_ms = int(round((time.perf_counter() - started_at) * 1000))
        status = upstream.status_code

        logger.info(
            f"{descriptor.method} {descriptor.url} -> {status} "
            f"({len(payload)}B{', truncated' if truncated else ''}, {duration_ms}ms)"
        )

        return ProxySuccess(
            ok=200 <= status <= 299,
            status=status,
            status_text=upstream.reason or "",
            duration_ms=duration_ms,
            url=descriptor.url,
            method=descriptor.method,
            response=ResponseBody(
                content_type=content_type,
                headers=pick_serializable_headers(upstream.headers),
                bytes=len(payload),
                truncated=truncated,
                body_text=body_text,
                body_base64=body_base64,
            ),
        )

    @staticmethod
    def _failure(err: ProxyError) -> ProxyFailure:
        logger.warning(f"Proxy request failed ({err.status_code}): {err.message}")
        return ProxyFailure.from_error(err)


# ── Singleton ────────────────────────────────────────────────────────────────

_proxy_engine: Optional[ProxyEngine] = None


def get_proxy_engine() -> ProxyEngine:
    """Get or create the global proxy engine singleton."""
    global _proxy_engine
    if _proxy_engine is None:
        _proxy_engine = ProxyEngine()
    return _proxy_engine


def set_proxy_engine(engine: ProxyEngine) -> None:
    """Install a configured engine as the global singleton."""
    global _proxy_engine
    _proxy_engine = engine


def reset_proxy_engine() -> None:
    """Reset the global proxy engine (for testing)."""
    global _proxy_engine
    _proxy_engine = None
