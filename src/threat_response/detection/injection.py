"""SQL-injection heuristics.

A coarse signature list applied to every string source an attacker
controls: query values, JSON body values, the path and the cookie header.
It is tuned for recall on obvious probes (sqlmap, manual ``' OR 1=1``),
not for parsing SQL.
"""
from __future__ import annotations

import re
from collections.abc import Iterator
from typing import Any
from urllib.parse import unquote_plus

from threat_response.core.types import RequestDescriptor

INJECTION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"UNION\s+(?:ALL\s+)?SELECT",
        r"'\s*OR\s+['\"]?\d",
        r";\s*DROP\s+TABLE",
        r";\s*DELETE\s+FROM",
        r"'\s*;\s*--",
        r"SLEEP\s*\(\d+\)",
        r"BENCHMARK\s*\(",
        r"WAITFOR\s+DELAY",
        r"pg_sleep\s*\(",
        r"LOAD_FILE\s*\(",
        r"INTO\s+(?:OUT|DUMP)FILE",
        r"information_schema",
        r"sys\.database",
        r"0x[0-9a-f]{8,}",
        r"CHAR\s*\(\s*\d+(?:\s*,\s*\d+)*\s*\)",
    )
)

MAX_DEPTH = 4


def looks_like_injection(value: str) -> bool:
    return any(p.search(value) for p in INJECTION_PATTERNS)


def _strings(value: Any, depth: int = 0) -> Iterator[str]:
    if depth > MAX_DEPTH:
        return
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _strings(item, depth + 1)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _strings(item, depth + 1)


def injection_sources(request: RequestDescriptor) -> list[str]:
    """Names of the request sources that matched (``query``, ``body``, ...)."""
    matched: list[str] = []
    if any(looks_like_injection(v) for v in _strings(request.query)):
        matched.append("query")
    if any(looks_like_injection(v) for v in _strings(request.body)):
        matched.append("body")
    if looks_like_injection(unquote_plus(request.path)):
        matched.append("path")
    cookie = request.header("cookie")
    if cookie and looks_like_injection(cookie):
        matched.append("cookie")
    return matched


def detect_injection(request: RequestDescriptor) -> bool:
    return bool(injection_sources(request))
