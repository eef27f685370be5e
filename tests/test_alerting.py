"""Tests for the alert dispatcher and its HTTP transports."""
from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from threat_response.core.errors import AlertDeliveryError
from threat_response.core.interfaces import InMemoryKVStore
from threat_response.response.alerting import (
    DEDUP_TTL,
    AlertDispatcher,
    AlertEvent,
    AlertTransport,
    EmailTransport,
    WebhookTransport,
)

STAMP = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _alert(identity: str = "a" * 64, category: str = "honeytoken_access", **kwargs: Any) -> AlertEvent:
    defaults: dict[str, Any] = {
        "title": "HONEYTOKEN ACCESS",
        "severity": "high",
        "method": "GET",
        "user_agent": "curl/8.0",
        "threat_score": 5,
        "threat_level": "WARN",
        "timestamp": STAMP,
    }
    defaults.update(kwargs)
    return AlertEvent(identity=identity, category=category, **defaults)


class YieldingStore(InMemoryKVStore):
    """Gives up the event loop before every read and counter update."""

    async def get(self, key: str) -> Any | None:
        await asyncio.sleep(0)
        return await super().get(key)

    async def incr(self, key: str, amount: int = 1) -> int:
        await asyncio.sleep(0)
        return await super().incr(key, amount)


class CountingTransport:
    def __init__(self, name: str = "counting", *, fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.calls = 0

    async def send(self, alert: AlertEvent) -> None:
        self.calls += 1
        if self.fail:
            raise AlertDeliveryError("down")


# ===================================================================
# Dispatcher
# ===================================================================


class TestDispatcher:
    async def test_fans_out_to_all(self, store: InMemoryKVStore) -> None:
        a, b = CountingTransport("a"), CountingTransport("b")
        assert await AlertDispatcher(store, [a, b]).send(_alert())
        assert (a.calls, b.calls) == (1, 1)

    async def test_dedup_within_window(self, store: InMemoryKVStore, clock: Any) -> None:
        transport = CountingTransport()
        dispatcher = AlertDispatcher(store, [transport])
        assert await dispatcher.send(_alert())
        clock.advance(DEDUP_TTL - 1)
        assert not await dispatcher.send(_alert())
        assert transport.calls == 1
        clock.advance(1)
        assert await dispatcher.send(_alert())
        assert transport.calls == 2

    async def test_concurrent_sends_fan_out_once(self, clock: Any) -> None:
        transport = CountingTransport()
        dispatcher = AlertDispatcher(YieldingStore(clock=clock), [transport])
        alert = _alert()
        results = await asyncio.gather(dispatcher.send(alert), dispatcher.send(alert))
        assert sorted(results) == [False, True]
        assert transport.calls == 1

    async def test_suppressed_send_keeps_window(
        self, store: InMemoryKVStore, clock: Any
    ) -> None:
        dispatcher = AlertDispatcher(store)
        await dispatcher.send(_alert())
        clock.advance(100)
        assert not await dispatcher.send(_alert())
        assert store.ttl(_alert().dedup_key) == pytest.approx(DEDUP_TTL - 100)

    async def test_dedup_is_per_category(self, store: InMemoryKVStore) -> None:
        transport = CountingTransport()
        dispatcher = AlertDispatcher(store, [transport])
        await dispatcher.send(_alert(category="honeytoken_access"))
        await dispatcher.send(_alert(category="injection_probe"))
        await dispatcher.send(_alert(identity="b" * 64, category="honeytoken_access"))
        assert transport.calls == 3

    async def test_transport_failure_not_propagated(self, store: InMemoryKVStore) -> None:
        broken, healthy = CountingTransport("broken", fail=True), CountingTransport("healthy")
        assert await AlertDispatcher(store, [broken, healthy]).send(_alert())
        assert healthy.calls == 1

    async def test_no_transports(self, store: InMemoryKVStore) -> None:
        assert await AlertDispatcher(store).send(_alert())

    async def test_store_failure_drops_alert(self, failing_store: Any) -> None:
        transport = CountingTransport()
        assert not await AlertDispatcher(failing_store, [transport]).send(_alert())
        assert transport.calls == 0

    def test_transports_satisfy_protocol(self) -> None:
        assert isinstance(WebhookTransport("https://hooks.example/x"), AlertTransport)
        assert isinstance(EmailTransport("key", "ops@example.com"), AlertTransport)


# ===================================================================
# Webhook
# ===================================================================


class TestWebhookTransport:
    def test_payload(self) -> None:
        transport = WebhookTransport("https://hooks.example/x", site="shop.example")
        payload = transport.build_payload(_alert(context={"key": "admin_backup"}))
        embed = payload["embeds"][0]
        assert embed["title"] == "SECURITY ALERT - HONEYTOKEN ACCESS"
        assert embed["color"] == 0xFF6600
        names = [f["name"] for f in embed["fields"]]
        assert names[:6] == ["Event", "Method", "Identity", "User Agent", "Threat Score", "Site"]
        assert embed["fields"][2]["value"] == f"`{'a' * 12}...`"
        assert embed["fields"][4]["value"] == "5 (WARN)"
        assert {"name": "key", "value": "admin_backup", "inline": False} in embed["fields"]

    def test_critical_colour(self) -> None:
        payload = WebhookTransport("https://h").build_payload(_alert(severity="critical"))
        assert payload["embeds"][0]["color"] == 0xFF0000

    async def test_send_posts_json(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        transport = WebhookTransport(
            "https://hooks.example/x", transport=httpx.MockTransport(handler)
        )
        await transport.send(_alert())
        assert len(seen) == 1
        assert seen[0].method == "POST"
        assert json.loads(seen[0].content)["username"] == "Threat Response"

    async def test_send_raises_on_error_status(self) -> None:
        transport = WebhookTransport(
            "https://hooks.example/x",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        with pytest.raises(AlertDeliveryError) as exc_info:
            await transport.send(_alert())
        assert exc_info.value.details == {"status_code": 500}


# ===================================================================
# Email
# ===================================================================


class TestEmailTransport:
    def test_payload_escapes_values(self) -> None:
        transport = EmailTransport("key", "ops@example.com", sender="tr@example.com")
        payload = transport.build_payload(_alert(user_agent="<b>evil</b>"))
        assert payload["to"] == "ops@example.com"
        assert payload["from"] == "tr@example.com"
        assert payload["subject"] == "[Threat Response] HONEYTOKEN ACCESS - honeytoken_access"
        assert "&lt;b&gt;evil&lt;/b&gt;" in payload["html"]
        assert "<b>evil</b>" not in payload["html"]

    async def test_send_uses_bearer_token(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "msg_1"})

        transport = EmailTransport(
            "re_123", "ops@example.com", transport=httpx.MockTransport(handler)
        )
        await transport.send(_alert())
        assert seen[0].headers["Authorization"] == "Bearer re_123"
        assert seen[0].url == "https://api.resend.com/emails"

    async def test_send_raises_on_error_status(self) -> None:
        transport = EmailTransport(
            "re_123",
            "ops@example.com",
            transport=httpx.MockTransport(lambda request: httpx.Response(401)),
        )
        with pytest.raises(AlertDeliveryError):
            await transport.send(_alert())
