"""Shared domain types for the threat response engine.

This module defines the enums, request/response value types and the tagged
incident-event variants shared by every component.

Key design decisions:
* Enums use *string* values so they serialise cleanly into the backing
  store and into log lines.
* Incident events are a discriminated union on ``kind``: each variant
  carries only the fields meaningful for its trigger.
* ``DeceptiveResponse`` is a plain slotted dataclass; it is built on the
  hot path and never validated.
"""
from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

# ---------------------------------------------------------------------------
# Threat tiers
# ---------------------------------------------------------------------------

class ThreatLevel(enum.StrEnum):
    """Discrete threat tier derived from a cumulative score.

    Ordering is ``CLEAN < WARN < TARPIT < BLOCK``; use :attr:`rank` (or the
    comparison operators) rather than comparing the string values.
    """

    CLEAN = "CLEAN"
    WARN = "WARN"
    TARPIT = "TARPIT"
    BLOCK = "BLOCK"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def __ge__(self, other: object) -> bool:
        if isinstance(other, ThreatLevel):
            return self.rank >= other.rank
        return NotImplemented

    def __gt__(self, other: object) -> bool:
        if isinstance(other, ThreatLevel):
            return self.rank > other.rank
        return NotImplemented

    def __le__(self, other: object) -> bool:
        if isinstance(other, ThreatLevel):
            return self.rank <= other.rank
        return NotImplemented

    def __lt__(self, other: object) -> bool:
        if isinstance(other, ThreatLevel):
            return self.rank < other.rank
        return NotImplemented


_LEVEL_RANK = {
    ThreatLevel.CLEAN: 0,
    ThreatLevel.WARN: 1,
    ThreatLevel.TARPIT: 2,
    ThreatLevel.BLOCK: 3,
}


class IncidentType(enum.StrEnum):
    """Reason codes recorded against an identity."""

    ROBOTS_VIOLATION = "robots_violation"
    HONEYTOKEN_ACCESS = "honeytoken_access"
    SUSPICIOUS_UA = "suspicious_ua"
    MISSING_BROWSER_HEADERS = "missing_browser_headers"
    GENERIC_ACCEPT = "generic_accept"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INJECTION_PROBE = "injection_probe"
    CANARY_DOCUMENT_OPENED = "canary_document_opened"


class Countermeasure(enum.StrEnum):
    """Countermeasures in selection precedence order (first wins)."""

    BLOCK = "block"
    OVERSIZED_PAYLOAD = "oversized_payload"
    SQL_BACKFIRE = "sql_backfire"
    CANARY_DOCUMENT = "canary_document"
    TARPIT = "tarpit"
    LOG_ONLY = "log_only"


def _utcnow() -> datetime:
    """Return the current UTC datetime with timezone information."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Request descriptor
# ---------------------------------------------------------------------------

class RequestDescriptor(BaseModel):
    """Framework-neutral view of an inbound request.

    Header names are normalised to lower case.  ``source_origin`` is the
    transport-level peer address when the adapter knows it; the forwarded
    header chain takes precedence (see :mod:`threat_response.identity`).
    """

    model_config = ConfigDict(frozen=True)

    method: str = "GET"
    path: str = "/"
    headers: dict[str, str] = Field(default_factory=dict)
    query: dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    source_origin: str | None = None

    @field_validator("headers", mode="before")
    @classmethod
    def _lower_header_names(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k).lower(): str(v) for k, v in value.items()}
        return value

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)

    @property
    def user_agent(self) -> str:
        return self.header("user-agent")


# ---------------------------------------------------------------------------
# Incident events (tagged variants)
# ---------------------------------------------------------------------------

class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> str:
        """Short label identifying what was touched (journal ``key`` field)."""
        return str(getattr(self, "kind"))

    def details(self) -> dict[str, Any]:
        return self.model_dump(exclude={"kind"})


class RobotsViolation(_Event):
    """A client requested a path the crawl policy disallows."""

    kind: Literal["robots_violation"] = "robots_violation"
    path: str

    @property
    def key(self) -> str:
        return f"robots:{self.path}"


class HoneytokenAccess(_Event):
    """A client touched a decoy credential or configuration key."""

    kind: Literal["honeytoken_access"] = "honeytoken_access"
    token_key: str

    @property
    def key(self) -> str:
        return self.token_key


class SuspiciousUserAgent(_Event):
    kind: Literal["suspicious_ua"] = "suspicious_ua"
    user_agent: str = ""


class MissingBrowserHeaders(_Event):
    kind: Literal["missing_browser_headers"] = "missing_browser_headers"
    missing: list[str] = Field(default_factory=list)


class GenericAccept(_Event):
    kind: Literal["generic_accept"] = "generic_accept"
    accept: str = ""


class RateLimitHit(_Event):
    kind: Literal["rate_limit_exceeded"] = "rate_limit_exceeded"
    path: str = ""


class InjectionProbe(_Event):
    """Injection heuristics matched one or more request sources."""

    kind: Literal["injection_probe"] = "injection_probe"
    path: str = ""
    sources: list[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return f"injection:{self.path}"


class CanaryOpened(_Event):
    """A previously served decoy document phoned home."""

    kind: Literal["canary_document_opened"] = "canary_document_opened"
    token: str
    document_path: str = ""
    event: str = "unknown"

    @property
    def key(self) -> str:
        return self.document_path or self.token


IncidentEvent = Annotated[
    RobotsViolation
    | HoneytokenAccess
    | SuspiciousUserAgent
    | MissingBrowserHeaders
    | GenericAccept
    | RateLimitHit
    | InjectionProbe
    | CanaryOpened,
    Field(discriminator="kind"),
]

incident_event_adapter: TypeAdapter[IncidentEvent] = TypeAdapter(IncidentEvent)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class DeceptiveResponse:
    """A fully-formed response handed back to the routing layer.

    ``delay_seconds`` is the tarpit hold the engine applies before the
    response is returned; adapters never sleep on their own.
    """

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    delay_seconds: float = 0.0

    @classmethod
    def json(
        cls, status: int, payload: Any, headers: dict[str, str] | None = None
    ) -> DeceptiveResponse:
        merged = {"Content-Type": "application/json"}
        merged.update(headers or {})
        return cls(status, merged, json.dumps(payload).encode())

    @classmethod
    def html(
        cls, status: int, text: str, headers: dict[str, str] | None = None
    ) -> DeceptiveResponse:
        merged = {"Content-Type": "text/html; charset=utf-8"}
        merged.update(headers or {})
        return cls(status, merged, text.encode())


@dataclass(slots=True)
class Verdict:
    """Outcome of :meth:`ThreatResponseEngine.handle`.

    ``proceed`` is ``True`` when the caller should serve the request
    normally; otherwise ``response`` is the deceptive response to send.
    """

    proceed: bool
    response: DeceptiveResponse | None = None
    countermeasure: Countermeasure | None = None
    identity: str | None = None
    score: int = 0
    level: ThreatLevel = ThreatLevel.CLEAN

    @classmethod
    def passthrough(cls, identity: str | None = None) -> Verdict:
        return cls(proceed=True, identity=identity)
