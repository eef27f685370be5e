"""Alert dispatcher and notification transports.

:class:`AlertDispatcher` deduplicates alerts per ``(identity, category)``
for five minutes, then fans out to every configured transport
concurrently.  Transport failures are logged and never propagated; if
the dedup marker cannot be read or written the alert is dropped.

Two HTTP transports are provided:

* :class:`WebhookTransport` -- chat-style webhook carrying one embed.
* :class:`EmailTransport` -- transactional email API (``POST /emails``).
"""
from __future__ import annotations

import asyncio
import html
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Literal, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field

from threat_response.core.errors import AlertDeliveryError, StoreError
from threat_response.core.interfaces import KVStore
from threat_response.core.types import _utcnow

logger = logging.getLogger(__name__)

DEDUP_PREFIX = "alert-dedup:"
DEDUP_TTL = 300

SEVERITY_COLORS = {
    "critical": 0xFF0000,
    "high": 0xFF6600,
}
DEFAULT_COLOR = 0xFFCC00


class AlertEvent(BaseModel):
    """A notification about one identity.

    ``category`` is the dedup dimension (e.g. the incident type); two
    alerts with the same identity and category within the dedup window
    collapse into one.
    """

    identity: str
    category: str
    title: str
    severity: Literal["critical", "high", "medium"] = "high"
    method: str = ""
    user_agent: str = ""
    threat_score: int | None = None
    threat_level: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    context: dict[str, Any] = Field(default_factory=dict)

    @property
    def dedup_key(self) -> str:
        return f"{DEDUP_PREFIX}{self.identity}:{self.category}"


@runtime_checkable
class AlertTransport(Protocol):
    """A notification channel.  ``send`` raises on delivery failure."""

    name: str

    async def send(self, alert: AlertEvent) -> None:
        ...


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class AlertDispatcher:
    """Deduplicating fan-out over zero or more transports."""

    def __init__(self, store: KVStore, transports: Sequence[AlertTransport] = ()) -> None:
        self._store = store
        self._transports = tuple(transports)

    @property
    def transports(self) -> tuple[AlertTransport, ...]:
        return self._transports

    async def send(self, alert: AlertEvent) -> bool:
        """Dispatch *alert*.  Returns ``True`` if it was fanned out."""
        key = alert.dedup_key
        try:
            # The first incr claims the window; only the claimant sets its TTL.
            claims = await self._store.incr(key)
            if claims != 1:
                logger.debug("Alert %s suppressed by dedup marker", alert.category)
                return False
            await self._store.expire(key, DEDUP_TTL)
        except StoreError:
            logger.error("Alert dedup store unavailable; dropping %s alert", alert.category)
            return False

        if not self._transports:
            return True
        results = await asyncio.gather(
            *(t.send(alert) for t in self._transports), return_exceptions=True
        )
        for transport, result in zip(self._transports, results):
            if isinstance(result, Exception):
                logger.error("Alert transport %s failed: %s", transport.name, result)
        return True


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

def _short(identity: str) -> str:
    return f"{identity[:12]}..." if identity else "-"


class WebhookTransport:
    """Posts a single embed to a chat webhook."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        site: str = "localhost",
        username: str = "Threat Response",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._site = site
        self._username = username
        self._timeout = timeout
        self._transport = transport

    def build_payload(self, alert: AlertEvent) -> dict[str, Any]:
        score = "-"
        if alert.threat_score is not None:
            score = f"{alert.threat_score} ({alert.threat_level or '?'})"
        fields = [
            {"name": "Event", "value": alert.category, "inline": True},
            {"name": "Method", "value": alert.method or "-", "inline": True},
            {"name": "Identity", "value": f"`{_short(alert.identity)}`", "inline": True},
            {
                "name": "User Agent",
                "value": f"`{alert.user_agent[:100]}`" if alert.user_agent else "-",
                "inline": False,
            },
            {"name": "Threat Score", "value": score, "inline": True},
            {"name": "Site", "value": self._site, "inline": True},
        ]
        fields.extend(
            {"name": str(k), "value": str(v)[:200], "inline": False}
            for k, v in alert.context.items()
        )
        return {
            "username": self._username,
            "embeds": [{
                "title": f"SECURITY ALERT - {alert.title}",
                "color": SEVERITY_COLORS.get(alert.severity, DEFAULT_COLOR),
                "fields": fields,
                "timestamp": alert.timestamp.isoformat(),
            }],
        }

    async def send(self, alert: AlertEvent) -> None:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(self._url, json=self.build_payload(alert))
        if response.is_error:
            raise AlertDeliveryError(
                f"Webhook returned HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )


class EmailTransport:
    """Sends alerts through a transactional email HTTP API."""

    name = "email"

    def __init__(
        self,
        api_key: str,
        recipient: str,
        *,
        sender: str = "alerts@localhost",
        site: str = "localhost",
        endpoint: str = "https://api.resend.com/emails",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._recipient = recipient
        self._sender = sender
        self._site = site
        self._endpoint = endpoint
        self._timeout = timeout
        self._transport = transport

    def build_payload(self, alert: AlertEvent) -> dict[str, Any]:
        rows = [
            ("Event", alert.category),
            ("Method", alert.method or "-"),
            ("Identity", alert.identity),
            ("User Agent", alert.user_agent or "-"),
            ("Threat Score", f"{alert.threat_score if alert.threat_score is not None else '-'} "
                             f"({alert.threat_level or '-'})"),
            ("Timestamp", alert.timestamp.isoformat()),
            ("Site", self._site),
        ]
        table = "".join(
            f"<tr><td><b>{html.escape(k)}</b></td><td>{html.escape(str(v))}</td></tr>"
            for k, v in rows
        )
        return {
            "from": self._sender,
            "to": self._recipient,
            "subject": f"[Threat Response] {alert.title} - {alert.category}",
            "html": (
                f"<h2>Threat Response Alert</h2>"
                f'<table border="1" cellpadding="6" style="border-collapse:collapse">{table}</table>'
            ),
        }

    async def send(self, alert: AlertEvent) -> None:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(
                self._endpoint, json=self.build_payload(alert), headers=headers
            )
        if response.is_error:
            raise AlertDeliveryError(
                f"Email API returned HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )
