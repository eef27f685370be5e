"""Canary token protocol.

A canary document is a decoy HTML file served from a trap path.  Each
download embeds a fresh, unguessable token; when the document is opened
it calls back (a tracking pixel and a scripted POST carrying browser
fingerprint data) and the token transitions ``ISSUED -> OPENED``.

Callback responses depend only on the ``e`` query parameter: a valid,
unknown or malformed token all receive the same status, headers and body.
"""
from __future__ import annotations

import base64
import html
import logging
import math
import re
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from threat_response.core.config import ConfigRepository
from threat_response.core.errors import StoreError
from threat_response.core.interfaces import KVStore
from threat_response.core.types import (
    CanaryOpened,
    DeceptiveResponse,
    IncidentType,
    RequestDescriptor,
)
from threat_response.deception.randomness import DecoyRandom
from threat_response.detection.profiler import Incident, IncidentJournal
from threat_response.detection.threat_scoring import ThreatLedger
from threat_response.identity.hasher import IdentityHasher
from threat_response.response.alerting import AlertDispatcher, AlertEvent

logger = logging.getLogger(__name__)

CANARY_PREFIX = "canary:"
CALLBACKS_KEY = "canary-callbacks"
CANARY_TTL = 604_800
MAX_CALLBACKS = 500
DEFAULT_CALLBACK_PATH = "/api/canary-callback"

TOKEN_PATTERN = re.compile(r"^[a-f0-9]{32}$")
EVENT_PATTERN = re.compile(r"^[a-z]{1,16}$")
IPV4_PATTERN = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")

TRACKING_PIXEL = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAAC0lEQVQI12NgAAIABQABNl7BcQAAAABJRU5ErkJggg=="
)

MAX_NUMERIC = 1_000_000


@dataclass(frozen=True, slots=True)
class DecoyDocument:
    name: str
    path: str
    description: str
    content_type: str = "text/html"


DECOY_DOCUMENTS: tuple[DecoyDocument, ...] = (
    DecoyDocument("db-export.html", "/admin/backup/db-export.html", "Database export"),
    DecoyDocument("credentials.html", "/admin/backup/credentials.html", "Credentials file"),
    DecoyDocument("config-backup.html", "/config/backup/config-backup.html", "Configuration backup"),
    DecoyDocument("api-keys.html", "/private/api-keys.html", "API keys document"),
    DecoyDocument("admin-notes.html", "/internal/admin-notes.html", "Admin notes"),
)


def match_decoy_document(path: str) -> DecoyDocument | None:
    for doc in DECOY_DOCUMENTS:
        if path.endswith(doc.path) or doc.path in path:
            return doc
    return None


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _bounded_str(value: Any, limit: int) -> str | None:
    return value[:limit] if isinstance(value, str) else None


def _bounded_number(value: Any) -> float | int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or not 0 <= value <= MAX_NUMERIC:
        return None
    return value


def valid_ipv4(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    match = IPV4_PATTERN.match(value)
    return match is not None and all(0 <= int(octet) <= 255 for octet in match.groups())


class ClientFingerprint(BaseModel):
    """Browser-reported fingerprint; every field validated independently."""

    timezone: str | None = None
    language: str | None = None
    platform: str | None = None
    cores: float | None = None
    memory: float | None = None
    screen_width: float | None = None
    screen_height: float | None = None
    color_depth: float | None = None
    touch_support: bool | None = None
    canvas_hash: str | None = None
    real_network_identity: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], hasher: IdentityHasher) -> ClientFingerprint:
        real_ip = payload.get("realIp")
        touch = payload.get("touch")
        return cls(
            timezone=_bounded_str(payload.get("tz"), 100),
            language=_bounded_str(payload.get("lang"), 50),
            platform=_bounded_str(payload.get("plat"), 100),
            cores=_bounded_number(payload.get("cores")),
            memory=_bounded_number(payload.get("mem")),
            screen_width=_bounded_number(payload.get("sw")),
            screen_height=_bounded_number(payload.get("sh")),
            color_depth=_bounded_number(payload.get("cd")),
            touch_support=touch if isinstance(touch, bool) else None,
            canvas_hash=_bounded_str(payload.get("cvs"), 64),
            real_network_identity=hasher.hash(real_ip) if valid_ipv4(real_ip) else None,
        )


class CanaryFingerprint(BaseModel):
    token: str
    opener_identity: str
    downloader_identity: str = "unknown"
    user_agent: str = ""
    accept_language: str = ""
    event: str = "unknown"
    timestamp: datetime
    document_path: str = "unknown"
    client: ClientFingerprint | None = None


class CanaryRecord(BaseModel):
    """Stored state of one issued token."""

    token: str
    issuer_identity: str
    user_agent: str = ""
    issued_at: datetime
    document_path: str
    opened: bool = False
    opened_at: datetime | None = None
    last_opened_at: datetime | None = None
    open_count: int = 0
    opener_fingerprint: CanaryFingerprint | None = None


@dataclass(frozen=True, slots=True)
class CallbackResult:
    response: DeceptiveResponse
    fingerprint: CanaryFingerprint | None = None


def callback_response(event: str | None) -> DeceptiveResponse:
    """The response every callback receives, valid token or not."""
    if event == "img":
        return DeceptiveResponse(
            200,
            {"Content-Type": "image/png", "Cache-Control": "no-store"},
            TRACKING_PIXEL,
        )
    return DeceptiveResponse(204, {"Cache-Control": "no-store"})


# ---------------------------------------------------------------------------
# Decoy document
# ---------------------------------------------------------------------------

_DOCUMENT = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>Internal Document - {name}</title>
<style>
body{{font-family:Consolas,monospace;background:#1a1a2e;color:#c4c4c4;margin:2rem;line-height:1.6}}
h1{{color:#e94560;border-bottom:1px solid #333;padding-bottom:.5rem}}
table{{border-collapse:collapse;width:100%;margin:1rem 0}}
td,th{{border:1px solid #333;padding:.5rem;text-align:left}}
th{{background:#16213e;color:#e94560}}
.warn{{color:#ff6b35;font-size:.85rem;margin-top:2rem}}
.footer{{color:#555;font-size:.75rem;margin-top:3rem}}
</style>
</head>
<body>
<h1>CONFIDENTIAL - {name}</h1>
<p>Internal backup document. Last updated: {stamp}</p>
<table>
<tr><th>Key</th><th>Value</th></tr>
<tr><td>DB Host</td><td>prod-db.internal.cluster</td></tr>
<tr><td>DB User</td><td>admin_rw</td></tr>
<tr><td>DB Password</td><td>S3cure_Pr0d_{db_suffix}</td></tr>
<tr><td>API Master Key</td><td>sk_live_{api_key}</td></tr>
<tr><td>Backup Encryption</td><td>AES-256-GCM</td></tr>
</table>
<p class="warn">This document is monitored. Unauthorized access will be logged and reported.</p>
<p class="footer">Document ID: {token} | Generated: {stamp}</p>
<img src="{callback}&amp;e=img" width="1" height="1" style="position:absolute;left:-9999px" alt="">
<script>
(function(){{
  var d={{t:"{token}",ts:Date.now(),tz:Intl.DateTimeFormat().resolvedOptions().timeZone,
    lang:navigator.language,plat:navigator.platform,cores:navigator.hardwareConcurrency||0,
    mem:navigator.deviceMemory||0,sw:screen.width,sh:screen.height,cd:screen.colorDepth,
    touch:'ontouchstart' in window}};
  try{{var c=document.createElement('canvas');var g=c.getContext('2d');
    g.textBaseline='top';g.font='14px Arial';g.fillText('fp',2,2);
    d.cvs=c.toDataURL().slice(-32)}}catch(e){{}}
  try{{var r=new RTCPeerConnection({{iceServers:[{{urls:'stun:stun.l.google.com:19302'}}]}});
    r.createDataChannel('');r.createOffer().then(function(o){{r.setLocalDescription(o)}});
    r.onicecandidate=function(e){{if(e.candidate){{
      var m=e.candidate.candidate.match(/([0-9]{{1,3}}(\\.[0-9]{{1,3}}){{3}})/);
      if(m){{d.realIp=m[1];send()}}}}}}}}catch(e){{}}
  function send(){{var x=new XMLHttpRequest();x.open('POST',"{callback}&e=js");
    x.setRequestHeader('Content-Type','application/json');x.send(JSON.stringify(d))}}
  setTimeout(send,2000);
}})();
</script>
</body>
</html>"""


def render_canary_document(
    token: str,
    document_name: str,
    rng: DecoyRandom,
    *,
    callback_path: str = DEFAULT_CALLBACK_PATH,
) -> str:
    """Decoy HTML that phones home to *callback_path* with *token*."""
    return _DOCUMENT.format(
        name=html.escape(document_name),
        stamp=datetime.now(UTC).isoformat(),
        db_suffix=rng.hex(4),
        api_key=rng.hex(16),
        token=token,
        callback=f"{callback_path}?t={token}",
    )


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class CanaryTokenProtocol:
    """Issues canary tokens and processes their callbacks."""

    def __init__(
        self,
        store: KVStore,
        hasher: IdentityHasher,
        ledger: ThreatLedger,
        journal: IncidentJournal,
        alerts: AlertDispatcher,
        config: ConfigRepository,
        *,
        rng: DecoyRandom | None = None,
        clock: Callable[[], float] = time.time,
        callback_path: str = DEFAULT_CALLBACK_PATH,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._ledger = ledger
        self._journal = journal
        self._alerts = alerts
        self._config = config
        self._rng = rng or DecoyRandom()
        self._clock = clock
        self.callback_path = callback_path

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    async def issue(self, identity: str, document_path: str, user_agent: str = "") -> str:
        """Create a token for a document served to *identity*.

        Storage failure is tolerated: the token is still returned and the
        document still served, it simply cannot be correlated later.
        """
        token = secrets.token_hex(16)
        record = CanaryRecord(
            token=token,
            issuer_identity=identity,
            user_agent=user_agent[:200],
            issued_at=self._now(),
            document_path=document_path,
        )
        try:
            await self._store.set(
                f"{CANARY_PREFIX}{token}", record.model_dump(mode="json"), CANARY_TTL
            )
        except StoreError:
            logger.error("Canary token store unavailable; token %s not persisted", token[:8])
        return token

    async def serve(self, identity: str, request: RequestDescriptor) -> DeceptiveResponse | None:
        """Decoy document response if the request path is in the catalog."""
        doc = match_decoy_document(request.path)
        if doc is None:
            return None
        token = await self.issue(identity, request.path, request.user_agent)
        body = render_canary_document(token, doc.name, self._rng, callback_path=self.callback_path)
        logger.warning("Served canary document %s to %s", doc.name, identity[:12])
        return DeceptiveResponse.html(
            200,
            body,
            {
                "Content-Type": doc.content_type,
                "Content-Disposition": f'inline; filename="{doc.name}"',
                "Cache-Control": "no-store",
            },
        )

    async def _lookup(self, token: str) -> CanaryRecord | None:
        try:
            raw = await self._store.get(f"{CANARY_PREFIX}{token}")
        except StoreError:
            logger.error("Canary token store unavailable during callback")
            return None
        if raw is None:
            return None
        try:
            return CanaryRecord.model_validate(raw)
        except ValidationError:
            return None

    async def callback(self, request: RequestDescriptor) -> CallbackResult:
        """Process a phone-home request.

        Returns the uniform response plus the fingerprint when the token
        was known.  Never raises for client-controlled input.
        """
        raw_event = request.query.get("e")
        response = callback_response(raw_event if isinstance(raw_event, str) else None)

        token = request.query.get("t")
        if not isinstance(token, str) or not TOKEN_PATTERN.fullmatch(token):
            return CallbackResult(response)
        record = await self._lookup(token)
        if record is None:
            return CallbackResult(response)

        identity = self._hasher.identity_for(request)
        now = self._now()
        event = raw_event if isinstance(raw_event, str) and EVENT_PATTERN.fullmatch(raw_event) else "unknown"
        client = None
        if request.method.upper() == "POST" and isinstance(request.body, dict):
            client = ClientFingerprint.from_payload(request.body, self._hasher)
        fingerprint = CanaryFingerprint(
            token=token,
            opener_identity=identity,
            downloader_identity=record.issuer_identity or "unknown",
            user_agent=request.user_agent[:200],
            accept_language=request.header("accept-language")[:100],
            event=event,
            timestamp=now,
            document_path=record.document_path or "unknown",
            client=client,
        )

        await self._mark_opened(record, fingerprint, now)
        await self._record_callback(identity, fingerprint)
        logger.warning(
            "Canary callback: token=%s opener=%s event=%s",
            token[:8], identity[:12], event,
        )
        return CallbackResult(response, fingerprint)

    async def _mark_opened(
        self, record: CanaryRecord, fingerprint: CanaryFingerprint, now: datetime
    ) -> None:
        if not record.opened:
            record.opened = True
            record.opened_at = now
        record.last_opened_at = now
        record.open_count += 1
        record.opener_fingerprint = fingerprint
        try:
            await self._store.set(
                f"{CANARY_PREFIX}{record.token}", record.model_dump(mode="json"), CANARY_TTL
            )
        except StoreError:
            logger.error("Failed to persist canary open for %s", record.token[:8])

    async def _record_callback(self, identity: str, fingerprint: CanaryFingerprint) -> None:
        entry = fingerprint.model_dump(mode="json")
        try:
            await (
                self._store.batch()
                .lpush(CALLBACKS_KEY, entry)
                .ltrim(CALLBACKS_KEY, 0, MAX_CALLBACKS - 1)
                .execute()
            )
        except StoreError:
            logger.error("Canary callback log unavailable")

        config = await self._config.load()
        event = CanaryOpened(
            token=fingerprint.token,
            document_path=fingerprint.document_path,
            event=fingerprint.event,
        )
        outcome = await self._ledger.increment(
            identity, IncidentType.CANARY_DOCUMENT_OPENED, config=config
        )
        await self._journal.record_incident(identity, Incident(
            type=event.kind,
            key=event.key,
            method="GET" if fingerprint.event == "img" else "POST",
            user_agent=fingerprint.user_agent,
            threat_score=outcome.score,
            threat_level=outcome.level,
            timestamp=fingerprint.timestamp,
            details=event.details(),
        ))
        await self._journal.add_forensic_entry(identity, entry)

        if config.rules.alerting_enabled:
            try:
                await self._alerts.send(AlertEvent(
                    identity=identity,
                    category=str(IncidentType.CANARY_DOCUMENT_OPENED),
                    title="CANARY DOCUMENT OPENED",
                    severity="critical",
                    user_agent=fingerprint.user_agent,
                    threat_score=outcome.score,
                    threat_level=str(outcome.level),
                    timestamp=fingerprint.timestamp,
                    context={"document": fingerprint.document_path, "event": fingerprint.event},
                ))
            except Exception:
                logger.exception("Canary alert dispatch failed")

    async def get_record(self, token: str) -> CanaryRecord | None:
        return await self._lookup(token) if TOKEN_PATTERN.fullmatch(token) else None

    async def recent_callbacks(self, limit: int = 100) -> list[dict[str, Any]]:
        return await self._store.lrange(CALLBACKS_KEY, 0, max(1, limit) - 1)
