"""
blunder Web GUI
===============
Flask application serving the browser UI and the proxy endpoint.

The browser never talks to the target API directly: the form is submitted
to this server, which performs the request through the proxy engine and
renders the interpreted result.
"""

from __future__ import annotations

import logging
import threading
import time
import webbrowser
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, jsonify, render_template, request
from werkzeug.exceptions import HTTPException

from blunder import __app_name__, __version__
from blunder.config import BlunderConfig, load_config
from blunder.core.interpret import (
    BINARY_NOTICE,
    METHODS,
    NO_HEADERS,
    ResponseView,
    body_allowed,
    interpret,
    parse_header_lines,
)
from blunder.core.proxy import ProxyEngine, get_proxy_engine, prefer_ipv4, set_proxy_engine

logger = logging.getLogger(__name__)

# ── Flask App ────────────────────────────────────────────────────────────────

TEMPLATE_DIR = Path(__file__).parent / "templates"
STATIC_DIR = Path(__file__).parent / "static"

app = Flask(
    __name__,
    template_folder=str(TEMPLATE_DIR),
    static_folder=str(STATIC_DIR),
)

# Global state (per-process)
_state: Dict[str, Any] = {
    "config": None,
}


def _init_state(config: BlunderConfig) -> None:
    """Initialize the global application state.

    Runs the one-time DNS ordering setup before any request is served.
    """
    _state["config"] = config
    if config.proxy.prefer_ipv4:
        prefer_ipv4()
    set_proxy_engine(ProxyEngine.from_config(config.proxy))


@app.before_request
def _ensure_state():
    # Hosts other than launch_gui (flask run, WSGI servers) never call _init_state.
    if _state["config"] is None:
        _init_state(load_config())


def _render_index(form: Dict[str, str], view: Optional[ResponseView] = None,
                  response_tab: str = "body"):
    method = form.get("method", "GET")
    return render_template(
        "index.html",
        app_name=__app_name__,
        version=__version__,
        methods=METHODS,
        form=form,
        body_enabled=body_allowed(method),
        view=view,
        response_tab=response_tab,
        binary_notice=BINARY_NOTICE,
        no_headers=NO_HEADERS,
    )


# ── Routes: Pages ────────────────────────────────────────────────────────────

@app.route("/")
def index():
    """Main GUI page."""
    return _render_index({"method": "GET", "url": "", "headers": "", "body": ""})


@app.route("/send", methods=["POST"])
def send():
    """Submit the request form through the proxy and render the result."""
    form = {
        "method": request.form.get("method", "GET"),
        "url": request.form.get("url", ""),
        "headers": request.form.get("headers", ""),
        "body": request.form.get("body", ""),
    }
    payload = {
        "url": form["url"],
        "method": form["method"],
        "headers": parse_header_lines(form["headers"]),
        "body": form["body"],
    }
    result = get_proxy_engine().handle_payload(payload)
    view = interpret(result.to_dict())
    tab = request.form.get("response_tab", "body")
    return _render_index(form, view=view, response_tab=tab if tab in ("body", "headers") else "body")


# ── Routes: API ──────────────────────────────────────────────────────────────

@app.route("/api/proxy", methods=["POST"])
def api_proxy():
    """Perform a proxied request described by the JSON body."""
    result = get_proxy_engine().handle(request.get_data())
    return jsonify(result.to_dict()), result.http_status


@app.route("/api/status")
def api_status():
    """Get current application status."""
    engine = get_proxy_engine()
    return jsonify({
        "version": __version__,
        "max_response_bytes": engine.max_response_bytes,
        "timeout": engine.timeout,
        "max_redirects": engine.max_redirects,
        "verify_tls": engine.verify_tls,
    })


@app.errorhandler(Exception)
def handle_error(e: Exception):
    """Keep API failures in the ``{"error": ...}`` shape."""
    if isinstance(e, HTTPException):
        if request.path.startswith("/api/"):
            return jsonify({"error": e.description}), e.code
        return e
    logger.exception(f"Unhandled error on {request.path}")
    return jsonify({"error": str(e) or "Request failed."}), 502


# ── Launch ───────────────────────────────────────────────────────────────────

def launch_gui(config: BlunderConfig, host: Optional[str] = None,
               port: Optional[int] = None, open_browser: Optional[bool] = None) -> None:
    """Run the GUI server and open it in the default browser."""
    _init_state(config)

    host = host or config.server.host
    port = port or config.server.port
    if open_browser is None:
        open_browser = config.server.open_browser
    url = f"http://{host}:{port}"

    # Suppress Flask request logging
    log = logging.getLogger("werkzeug")
    log.setLevel(logging.WARNING)

    print(f"\n  blunder client running at {url}")
    print("  Press Ctrl+C to stop\n")

    if open_browser:
        def _open():
            time.sleep(1.2)
            webbrowser.open(url)

        threading.Thread(target=_open, daemon=True).start()

    app.run(host=host, port=port, debug=False, threaded=True, use_reloader=False)
