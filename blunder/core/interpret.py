"""
blunder Response Interpreter
============================
Client-side half of the API client: turns a proxy result (the JSON object
returned by ``/api/proxy``) into a display model shared by the web GUI and
the terminal UI.

  • Success vs. failure branching
  • JSON detection, pretty-printing and tree view-model construction
  • Raw text fallback when JSON parsing fails
  • Binary notice with base64 payload
  • Header rows with an explicit empty indicator
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")

NO_HEADERS = "(no headers)"
BINARY_NOTICE = "Non-text response. Body provided as base64 (first ~1MB):"

# Containers at depth <= this are expanded by default (root is depth 0).
DEFAULT_OPEN_DEPTH = 1

_MISSING = object()


# ── Request helpers ──────────────────────────────────────────────────────────

def parse_header_lines(text: str) -> Dict[str, str]:
    """Parse a ``Key: Value`` per line header editor into a mapping.

    Blank lines, lines without a colon and lines with an empty key are
    skipped; a repeated key keeps the last value.
    """
    out: Dict[str, str] = {}
    for raw_line in (text or "").split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        if not key:
            continue
        out[key] = value.strip()
    return out


def body_allowed(method: str) -> bool:
    """Whether the body editor applies to ``method``."""
    return method.upper() not in ("GET", "HEAD")


# ── JSON detection ───────────────────────────────────────────────────────────

def looks_like_json(body_text: str, content_type: Optional[str]) -> bool:
    ct = (content_type or "").lower()
    stripped = body_text.strip()
    return "application/json" in ct or stripped.startswith("{") or stripped.startswith("[")


def _reject_constant(name: str) -> Any:
    # NaN / Infinity are not JSON.
    raise ValueError(f"Invalid JSON constant: {name}")


def _parse_number(text: str) -> Any:
    """Read a JSON number the way a browser displays it.

    Integral values print without a fraction (``1.0`` -> ``1``); values that
    overflow a double (``1e400``) become null, as they do when re-serialized.
    """
    value = float(text)
    if not math.isfinite(value):
        return None
    if value.is_integer() and abs(value) < 1e21:
        return int(value)
    return value


def try_parse_json(body_text: Optional[str], content_type: Optional[str]) -> Any:
    """Parse ``body_text`` as JSON if it looks like JSON.

    Returns the parsed value, or the module-private ``_MISSING`` sentinel
    when the text is absent, does not look like JSON, or fails to parse.
    """
    if not body_text or not looks_like_json(body_text, content_type):
        return _MISSING
    try:
        return json.loads(body_text, parse_float=_parse_number, parse_constant=_reject_constant)
    except ValueError:
        return _MISSING


def pretty_maybe_json(body_text: Optional[str], content_type: Optional[str]) -> Optional[str]:
    """Indented JSON when the body parses, otherwise the text unchanged."""
    if body_text is None:
        return None
    parsed = try_parse_json(body_text, content_type)
    if parsed is _MISSING:
        return body_text
    return json.dumps(parsed, indent=2, ensure_ascii=False)


# ── JSON tree ────────────────────────────────────────────────────────────────

@dataclass
class JsonNode:
    """One node of the JSON tree view model."""
    label: str
    kind: str                      # object | array | null | boolean | number | string
    display: str                   # scalar text, or container summary
    depth: int = 0
    open: bool = False
    children: List["JsonNode"] = field(default_factory=list)

    @property
    def is_container(self) -> bool:
        return self.kind in ("object", "array")

    @property
    def empty_label(self) -> str:
        return "(empty array)" if self.kind == "array" else "(empty object)"

    def find(self, label: str) -> Optional["JsonNode"]:
        for child in self.children:
            if child.label == label:
                return child
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "kind": self.kind,
            "display": self.display,
            "depth": self.depth,
            "open": self.open,
            "children": [c.to_dict() for c in self.children],
        }


def json_kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _scalar_display(value: Any, kind: str) -> str:
    if kind == "string":
        return f'"{value}"'
    # null/true/false and numbers as JSON spells them
    return json.dumps(value)


def build_json_tree(value: Any, label: Optional[str] = None, depth: int = 0) -> JsonNode:
    """Build a display tree from a parsed JSON value."""
    kind = json_kind(value)
    if label is None:
        label = {"array": "Array", "object": "Object"}.get(kind, "Value")

    if kind == "array":
        node = JsonNode(label=label, kind=kind, display="[]", depth=depth,
                        open=depth <= DEFAULT_OPEN_DEPTH)
        entries: List[Tuple[str, Any]] = [(str(i), v) for i, v in enumerate(value)]
    elif kind == "object":
        node = JsonNode(label=label, kind=kind, display="{…}", depth=depth,
                        open=depth <= DEFAULT_OPEN_DEPTH)
        entries = [(str(k), v) for k, v in value.items()]
    else:
        return JsonNode(label=label, kind=kind, display=_scalar_display(value, kind), depth=depth)

    node.children = [build_json_tree(v, label=k, depth=depth + 1) for k, v in entries]
    return node


# ── Response view ────────────────────────────────────────────────────────────

@dataclass
class ResponseView:
    """Everything the UI needs to render one proxy result."""
    error: Optional[str] = None
    ok: bool = False
    status: int = 0
    status_text: str = ""
    duration_ms: int = 0
    url: str = ""
    method: str = ""
    content_type: Optional[str] = None
    bytes: int = 0
    truncated: bool = False
    headers: List[Tuple[str, str]] = field(default_factory=list)
    pretty: Optional[str] = None
    tree: Optional[JsonNode] = None
    body_base64: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def kind(self) -> str:
        """error | json | text | binary"""
        if self.error is not None:
            return "error"
        if self.tree is not None:
            return "json"
        if self.pretty is not None:
            return "text"
        return "binary"

    @property
    def status_line(self) -> str:
        return f"{self.status} {self.status_text}".strip()

    @property
    def duration_label(self) -> str:
        return f"{self.duration_ms}ms"

    @property
    def size_label(self) -> str:
        label = f"{self.bytes} bytes"
        if self.truncated:
            label += " (truncated)"
        return label


def is_success_response(result: Optional[Dict[str, Any]]) -> bool:
    return bool(result) and "response" in result


def interpret(result: Dict[str, Any]) -> ResponseView:
    """Interpret a proxy result object for display."""
    if not is_success_response(result):
        return ResponseView(error=str((result or {}).get("error") or "Request failed."))

    response = result["response"] or {}
    content_type = response.get("contentType")
    body_text = response.get("bodyText")
    headers = response.get("headers") or {}

    view = ResponseView(
        ok=bool(result.get("ok")),
        status=int(result.get("status") or 0),
        status_text=result.get("statusText") or "",
        duration_ms=int(result.get("durationMs") or 0),
        url=result.get("url") or "",
        method=result.get("method") or "",
        content_type=content_type,
        bytes=int(response.get("bytes") or 0),
        truncated=bool(response.get("truncated")),
        headers=[(str(k), str(v)) for k, v in headers.items()],
    )

    if body_text is None:
        view.body_base64 = response.get("bodyBase64") or ""
        return view

    parsed = try_parse_json(body_text, content_type)
    if parsed is _MISSING:
        view.pretty = body_text
    else:
        view.pretty = json.dumps(parsed, indent=2, ensure_ascii=False)
        view.tree = build_json_tree(parsed, label="root")
    return view
