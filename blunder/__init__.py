"""
blunder client — Minimal browser-based API client
=================================================

A small web UI plus a server-side proxy endpoint: the browser describes a
request, the proxy performs it (no CORS restrictions) and returns a
size-capped, JSON-safe view of the response.
"""

__version__ = "0.1.0"
__app_name__ = "blunder client"
