"""HTTP binding for the threat response engine.

This module adapts raw HTTP pieces to the engine and back:

* **parse_request** -- build a :class:`RequestDescriptor` from a method,
  raw path (with query string), headers and body bytes.
* **render_response** -- turn a :class:`DeceptiveResponse` into
  ``(status, headers, body)``.
* **create_http_handler** -- factory for an async handler suitable for
  ASGI applications, middleware or test harnesses.  The handler returns
  ``None`` when the request should be served normally.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable, Coroutine, Mapping
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlsplit

from threat_response.core.types import DeceptiveResponse, RequestDescriptor, RobotsViolation

if TYPE_CHECKING:
    from threat_response.engine import ThreatResponseEngine

logger = logging.getLogger(__name__)

DEFAULT_TRAP_PREFIXES: tuple[str, ...] = (
    "/admin/", "/backup/", "/config/", "/dashboard/", "/data/", "/debug/",
    "/internal/", "/logs/", "/private/", "/staging/",
)
DEFAULT_CALLBACK_PATH = "/api/canary-callback"
DEFAULT_SITEMAP_PATH = "/sitemap-extended.xml"
MAX_BODY_BYTES = 1_048_576

HTTPResult = tuple[int, dict[str, str], bytes]

HTTPHandler = Callable[
    [str, str, Mapping[str, str], bytes],
    Coroutine[Any, Any, HTTPResult | None],
]


def parse_request(
    method: str,
    raw_path: str,
    headers: Mapping[str, str],
    body: bytes = b"",
    *,
    source_origin: str | None = None,
) -> RequestDescriptor:
    """Normalise raw request pieces.

    Repeated query parameters become lists; a JSON object body is decoded,
    any other body is kept as text.  Never raises on client input.
    """
    parts = urlsplit(raw_path)
    query: dict[str, Any] = {}
    for key, values in parse_qs(parts.query, keep_blank_values=True).items():
        query[key] = values[0] if len(values) == 1 else values

    decoded: Any = None
    if body:
        text = body[:MAX_BODY_BYTES].decode("utf-8", errors="replace")
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            decoded = text
        if not isinstance(decoded, (dict, str)):
            decoded = text

    return RequestDescriptor(
        method=method.upper(),
        path=parts.path or "/",
        headers=dict(headers),
        query=query,
        body=decoded,
        source_origin=source_origin,
    )


def render_response(response: DeceptiveResponse) -> HTTPResult:
    return response.status, dict(response.headers), response.body


def create_http_handler(
    engine: ThreatResponseEngine,
    *,
    trap_prefixes: tuple[str, ...] = DEFAULT_TRAP_PREFIXES,
    callback_path: str = DEFAULT_CALLBACK_PATH,
    sitemap_path: str = DEFAULT_SITEMAP_PATH,
    base_url: str = "http://localhost",
) -> HTTPHandler:
    """Create an async handler routing requests through *engine*.

    Routes:

    * *callback_path* -- canary callbacks (GET/POST, otherwise 405).
    * *sitemap_path* -- trap sitemap.
    * any path under *trap_prefixes* -- crawl-policy violation.
    * everything else -- passive signal evaluation; ``None`` to proceed.
    """

    async def handler(
        method: str,
        raw_path: str,
        headers: Mapping[str, str],
        body: bytes = b"",
    ) -> HTTPResult | None:
        request = parse_request(method, raw_path, headers, body)

        if request.path == callback_path:
            if request.method not in ("GET", "POST"):
                return render_response(DeceptiveResponse.json(
                    405, {"error": "Method not allowed"}, {"Allow": "GET, POST"}
                ))
            return render_response(await engine.canary_callback(request))

        if request.path == sitemap_path:
            return render_response(engine.trap_sitemap(base_url))

        event = None
        if any(request.path.startswith(prefix) for prefix in trap_prefixes):
            event = RobotsViolation(path=request.path)

        verdict = await engine.handle(request, event)
        if verdict.proceed or verdict.response is None:
            return None
        return render_response(verdict.response)

    return handler
