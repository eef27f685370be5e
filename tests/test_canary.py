"""Tests for the canary token protocol.

Tests cover:
- Token issuance, storage and retention
- Decoy document serving from the catalog
- The ISSUED -> OPENED transition and its idempotence
- Uniform callback responses for valid, unknown and malformed tokens
- Validation of client-reported fingerprint fields
- Scoring, journaling and alerting of the opener
"""
from __future__ import annotations

from typing import Any

import pytest

from threat_response.core.config import ConfigRepository
from threat_response.core.interfaces import InMemoryKVStore
from threat_response.core.types import RequestDescriptor
from threat_response.deception.canary import (
    CALLBACKS_KEY,
    CANARY_TTL,
    DECOY_DOCUMENTS,
    TRACKING_PIXEL,
    CanaryTokenProtocol,
    ClientFingerprint,
    callback_response,
    match_decoy_document,
    render_canary_document,
    valid_ipv4,
)
from threat_response.deception.randomness import DecoyRandom
from threat_response.detection.blocklist import BlockRegistry
from threat_response.detection.profiler import IncidentJournal
from threat_response.detection.threat_scoring import ThreatLedger
from threat_response.identity import IdentityHasher
from threat_response.response.alerting import AlertDispatcher, AlertEvent

DOWNLOADER = "id-downloader"
OPENER_ORIGIN = "198.51.100.20"
DOC_PATH = "/admin/backup/db-export.html"


class RecordingTransport:
    name = "recording"

    def __init__(self) -> None:
        self.sent: list[AlertEvent] = []

    async def send(self, alert: AlertEvent) -> None:
        self.sent.append(alert)


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def canary(
    store: InMemoryKVStore,
    hasher: IdentityHasher,
    ledger: ThreatLedger,
    journal: IncidentJournal,
    config_repo: ConfigRepository,
    transport: RecordingTransport,
    clock: Any,
) -> CanaryTokenProtocol:
    return CanaryTokenProtocol(
        store,
        hasher,
        ledger,
        journal,
        AlertDispatcher(store, [transport]),
        config_repo,
        rng=DecoyRandom(8),
        clock=clock,
    )


def _callback(token: Any, event: str = "img", *, method: str = "GET", body: Any = None) -> RequestDescriptor:
    query: dict[str, Any] = {"e": event}
    if token is not None:
        query["t"] = token
    return RequestDescriptor(
        method=method,
        path="/api/canary-callback",
        headers={
            "X-Forwarded-For": OPENER_ORIGIN,
            "User-Agent": "Mozilla/5.0 Firefox/121.0",
            "Accept-Language": "de-DE",
        },
        query=query,
        body=body,
    )


# ===================================================================
# Catalog and document
# ===================================================================


class TestCatalog:
    def test_match(self) -> None:
        doc = match_decoy_document(DOC_PATH)
        assert doc is not None
        assert doc.name == "db-export.html"

    def test_no_match(self) -> None:
        assert match_decoy_document("/admin/backup/") is None

    def test_every_document_matches_its_path(self) -> None:
        for doc in DECOY_DOCUMENTS:
            assert match_decoy_document(doc.path) == doc

    def test_document_embeds_callback(self) -> None:
        token = "a" * 32
        html = render_canary_document(token, "notes.html", DecoyRandom(1))
        assert f"/api/canary-callback?t={token}&amp;e=img" in html
        assert f"/api/canary-callback?t={token}&e=js" in html
        assert "CONFIDENTIAL - notes.html" in html


# ===================================================================
# Issuance
# ===================================================================


class TestIssue:
    async def test_token_shape_and_record(
        self, canary: CanaryTokenProtocol, store: InMemoryKVStore
    ) -> None:
        token = await canary.issue(DOWNLOADER, DOC_PATH, "curl/8.0")
        assert len(token) == 32
        int(token, 16)
        record = await canary.get_record(token)
        assert record is not None
        assert record.issuer_identity == DOWNLOADER
        assert record.document_path == DOC_PATH
        assert not record.opened
        assert store.ttl(f"canary:{token}") == pytest.approx(CANARY_TTL)

    async def test_tokens_unique(self, canary: CanaryTokenProtocol) -> None:
        tokens = {await canary.issue(DOWNLOADER, DOC_PATH) for _ in range(20)}
        assert len(tokens) == 20

    async def test_record_expires(self, canary: CanaryTokenProtocol, clock: Any) -> None:
        token = await canary.issue(DOWNLOADER, DOC_PATH)
        clock.advance(CANARY_TTL)
        assert await canary.get_record(token) is None

    async def test_issue_tolerates_store_failure(
        self,
        failing_store: Any,
        hasher: IdentityHasher,
    ) -> None:
        config = ConfigRepository(failing_store)
        canary = CanaryTokenProtocol(
            failing_store,
            hasher,
            ThreatLedger(failing_store, BlockRegistry(failing_store), config),
            IncidentJournal(failing_store),
            AlertDispatcher(failing_store),
            config,
        )
        token = await canary.issue(DOWNLOADER, DOC_PATH)
        assert len(token) == 32

    async def test_serve_catalog_path(self, canary: CanaryTokenProtocol) -> None:
        request = RequestDescriptor(path=DOC_PATH, headers={"User-Agent": "curl/8.0"})
        response = await canary.serve(DOWNLOADER, request)
        assert response is not None
        assert response.status == 200
        assert response.headers["Content-Disposition"] == 'inline; filename="db-export.html"'
        assert b"/api/canary-callback?t=" in response.body

    async def test_serve_other_path(self, canary: CanaryTokenProtocol) -> None:
        assert await canary.serve(DOWNLOADER, RequestDescriptor(path="/admin/")) is None


# ===================================================================
# Callbacks
# ===================================================================


class TestCallbackResponses:
    def test_img_event_gets_pixel(self) -> None:
        response = callback_response("img")
        assert response.status == 200
        assert response.body == TRACKING_PIXEL
        assert response.headers["Content-Type"] == "image/png"

    def test_other_events_get_no_content(self) -> None:
        assert callback_response("js").status == 204
        assert callback_response(None).status == 204

    @pytest.mark.parametrize("event", ["img", "js"])
    async def test_uniform_across_token_states(
        self, canary: CanaryTokenProtocol, event: str
    ) -> None:
        valid = await canary.issue(DOWNLOADER, DOC_PATH)
        responses = [
            (await canary.callback(_callback(token, event))).response
            for token in (valid, "f" * 32, "not-a-token", None, "A" * 32)
        ]
        first = responses[0]
        for response in responses[1:]:
            assert (response.status, response.headers, response.body) == (
                first.status, first.headers, first.body
            )


class TestCallbackState:
    async def test_first_callback_opens(self, canary: CanaryTokenProtocol) -> None:
        token = await canary.issue(DOWNLOADER, DOC_PATH)
        result = await canary.callback(_callback(token))
        assert result.fingerprint is not None
        assert result.fingerprint.downloader_identity == DOWNLOADER
        assert result.fingerprint.accept_language == "de-DE"
        record = await canary.get_record(token)
        assert record is not None
        assert record.opened
        assert record.open_count == 1

    async def test_repeat_callback_is_idempotent(
        self, canary: CanaryTokenProtocol, clock: Any
    ) -> None:
        token = await canary.issue(DOWNLOADER, DOC_PATH)
        await canary.callback(_callback(token))
        first = await canary.get_record(token)
        clock.advance(30)
        await canary.callback(_callback(token, "js"))
        second = await canary.get_record(token)
        assert first is not None and second is not None
        assert second.opened
        assert second.opened_at == first.opened_at
        assert second.last_opened_at > first.last_opened_at  # type: ignore[operator]
        assert second.open_count == 2
        assert second.opener_fingerprint is not None
        assert second.opener_fingerprint.event == "js"

    async def test_unknown_token_changes_nothing(
        self, canary: CanaryTokenProtocol, store: InMemoryKVStore
    ) -> None:
        result = await canary.callback(_callback("e" * 32))
        assert result.fingerprint is None
        assert await store.lrange(CALLBACKS_KEY, 0, -1) == []

    async def test_invalid_event_recorded_as_unknown(self, canary: CanaryTokenProtocol) -> None:
        token = await canary.issue(DOWNLOADER, DOC_PATH)
        result = await canary.callback(_callback(token, "<script>"))
        assert result.fingerprint is not None
        assert result.fingerprint.event == "unknown"

    async def test_callback_log(self, canary: CanaryTokenProtocol) -> None:
        token = await canary.issue(DOWNLOADER, DOC_PATH)
        await canary.callback(_callback(token))
        entries = await canary.recent_callbacks()
        assert len(entries) == 1
        assert entries[0]["token"] == token
        assert entries[0]["document_path"] == DOC_PATH

    async def test_opener_scored_and_journaled(
        self,
        canary: CanaryTokenProtocol,
        hasher: IdentityHasher,
        ledger: ThreatLedger,
        journal: IncidentJournal,
    ) -> None:
        token = await canary.issue(DOWNLOADER, DOC_PATH)
        await canary.callback(_callback(token))
        opener = hasher.hash(OPENER_ORIGIN)
        assert (await ledger.get_score(opener)).score == 5
        profile = await journal.get_profile(opener)
        assert profile is not None
        assert profile.incident_types == {"canary_document_opened": 1}
        assert profile.incidents[0].key == DOC_PATH
        assert len(profile.forensic_data) == 1

    async def test_alert_only_when_enabled(
        self,
        canary: CanaryTokenProtocol,
        config_repo: ConfigRepository,
        transport: RecordingTransport,
    ) -> None:
        token = await canary.issue(DOWNLOADER, DOC_PATH)
        await canary.callback(_callback(token))
        assert transport.sent == []

        await config_repo.save({"rules": {"alerting_enabled": True}})
        token2 = await canary.issue(DOWNLOADER, "/private/api-keys.html")
        await canary.callback(_callback(token2))
        assert len(transport.sent) == 1
        assert transport.sent[0].severity == "critical"
        assert transport.sent[0].context["document"] == "/private/api-keys.html"


# ===================================================================
# Fingerprint validation
# ===================================================================


class TestFingerprint:
    def test_valid_ipv4(self) -> None:
        assert valid_ipv4("10.0.0.3")
        assert not valid_ipv4("10.0.0.300")
        assert not valid_ipv4("10.0.0")
        assert not valid_ipv4(167772163)

    def test_fields_validated_independently(self, hasher: IdentityHasher) -> None:
        fp = ClientFingerprint.from_payload(
            {
                "tz": "Europe/Berlin",
                "lang": "x" * 80,
                "plat": 42,
                "cores": 8,
                "mem": float("inf"),
                "sw": 1920,
                "sh": 10**9,
                "cd": True,
                "touch": "yes",
                "cvs": "c" * 100,
                "realIp": "10.0.0.300",
            },
            hasher,
        )
        assert fp.timezone == "Europe/Berlin"
        assert fp.language == "x" * 50
        assert fp.platform is None
        assert fp.cores == 8
        assert fp.memory is None
        assert fp.screen_width == 1920
        assert fp.screen_height is None
        assert fp.color_depth is None
        assert fp.touch_support is None
        assert fp.canvas_hash == "c" * 64
        assert fp.real_network_identity is None

    def test_real_ip_is_hashed(self, hasher: IdentityHasher) -> None:
        fp = ClientFingerprint.from_payload({"realIp": "10.0.0.3"}, hasher)
        assert fp.real_network_identity == hasher.hash("10.0.0.3")

    async def test_post_payload_attached(self, canary: CanaryTokenProtocol) -> None:
        token = await canary.issue(DOWNLOADER, DOC_PATH)
        result = await canary.callback(
            _callback(token, "js", method="POST", body={"t": token, "tz": "UTC", "touch": False})
        )
        assert result.fingerprint is not None
        assert result.fingerprint.client is not None
        assert result.fingerprint.client.timezone == "UTC"
        assert result.fingerprint.client.touch_support is False

    async def test_get_has_no_client_payload(self, canary: CanaryTokenProtocol) -> None:
        token = await canary.issue(DOWNLOADER, DOC_PATH)
        result = await canary.callback(_callback(token, "img"))
        assert result.fingerprint is not None
        assert result.fingerprint.client is None
