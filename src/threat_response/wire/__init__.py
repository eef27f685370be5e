"""HTTP binding for the threat response engine."""
from __future__ import annotations

from threat_response.wire.http import create_http_handler, parse_request, render_response

__all__ = [
    "create_http_handler",
    "parse_request",
    "render_response",
]
