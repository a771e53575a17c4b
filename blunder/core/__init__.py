"""
blunder Core Module
"""

from blunder.core.interpret import ResponseView, interpret
from blunder.core.proxy import (
    MAX_RESPONSE_BYTES,
    InvalidInput,
    NetworkError,
    ProxyEngine,
    ProxyError,
)

__all__ = [
    "MAX_RESPONSE_BYTES",
    "InvalidInput",
    "NetworkError",
    "ProxyEngine",
    "ProxyError",
    "ResponseView",
    "interpret",
]
