"""Passive request signals and the honeytoken catalog.

:func:`derive_events` turns request features into incident events for
requests the routing layer did not explicitly flag.  Header-shape signals
(missing browser headers, a generic ``Accept``) are only reported when a
stronger signal is present, so ordinary API clients are never scored on
headers alone.
"""
from __future__ import annotations

from threat_response.core.types import (
    GenericAccept,
    HoneytokenAccess,
    IncidentEvent,
    InjectionProbe,
    MissingBrowserHeaders,
    RequestDescriptor,
    SuspiciousUserAgent,
)
from threat_response.detection.injection import injection_sources

HONEYTOKEN_KEYS: frozenset[str] = frozenset({
    "admin_backup",
    "admin-backup-hash",
    "db-credentials",
    "api-master-key",
    "backup-admin-password",
})

SUSPICIOUS_UA_MARKERS: tuple[str, ...] = (
    "sqlmap", "nikto", "wfuzz", "nmap", "masscan", "zgrab", "gobuster",
    "dirbuster", "nuclei", "curl", "wget", "python-requests", "python-urllib",
    "go-http-client", "libwww-perl", "httpclient", "scrapy",
)

BROWSER_HEADERS: tuple[str, ...] = ("accept-language", "accept-encoding")


def is_honeytoken(key: str) -> bool:
    return key.lower() in HONEYTOKEN_KEYS


def honeytoken_in(request: RequestDescriptor) -> str | None:
    """Return the honeytoken named by the path or ``key`` parameter, if any."""
    candidate = request.query.get("key")
    if isinstance(candidate, str) and is_honeytoken(candidate):
        return candidate.lower()
    for segment in request.path.split("/"):
        if segment and is_honeytoken(segment):
            return segment.lower()
    return None


def is_suspicious_user_agent(user_agent: str) -> bool:
    if not user_agent.strip():
        return True
    lowered = user_agent.lower()
    return any(marker in lowered for marker in SUSPICIOUS_UA_MARKERS)


def derive_events(request: RequestDescriptor) -> list[IncidentEvent]:
    """Incident events implied by *request*, strongest first."""
    events: list[IncidentEvent] = []

    sources = injection_sources(request)
    if sources:
        events.append(InjectionProbe(path=request.path, sources=sources))

    token = honeytoken_in(request)
    if token is not None:
        events.append(HoneytokenAccess(token_key=token))

    if is_suspicious_user_agent(request.user_agent):
        events.append(SuspiciousUserAgent(user_agent=request.user_agent[:200]))

    if not events:
        return events

    missing = [h for h in BROWSER_HEADERS if not request.header(h)]
    if len(missing) == len(BROWSER_HEADERS):
        events.append(MissingBrowserHeaders(missing=missing))

    accept = request.header("accept")
    if accept.strip() in ("", "*/*"):
        events.append(GenericAccept(accept=accept))

    return events
