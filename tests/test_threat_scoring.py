"""Tests for threat score classification and the score ledger.

Tests cover:
- Tier classification at and around every threshold
- Custom thresholds from configuration
- Increment / TTL refresh / expiry of the cumulative score
- Auto-block on reaching BLOCK (idempotent, independent of the hard-block rule)
- Neutral fallback when the backing store fails
"""
from __future__ import annotations

from typing import Any

import pytest

from threat_response.core.config import ConfigRepository, EngineConfig, ThreatTierThresholds
from threat_response.core.interfaces import InMemoryKVStore
from threat_response.core.types import IncidentType, ThreatLevel
from threat_response.detection.blocklist import BlockRegistry
from threat_response.detection.threat_scoring import (
    SCORE_TTL,
    ScoreOutcome,
    ThreatLedger,
    classify,
)

# ===================================================================
# Classification
# ===================================================================


class TestClassify:
    @pytest.mark.parametrize(
        ("score", "level"),
        [
            (0, ThreatLevel.CLEAN),
            (2, ThreatLevel.CLEAN),
            (3, ThreatLevel.WARN),
            (6, ThreatLevel.WARN),
            (7, ThreatLevel.TARPIT),
            (11, ThreatLevel.TARPIT),
            (12, ThreatLevel.BLOCK),
            (1000, ThreatLevel.BLOCK),
        ],
    )
    def test_default_thresholds(self, score: int, level: ThreatLevel) -> None:
        assert classify(score) is level

    def test_custom_thresholds(self) -> None:
        t = ThreatTierThresholds(warn=10, tarpit=20, block=30)
        assert classify(9, t) is ThreatLevel.CLEAN
        assert classify(20, t) is ThreatLevel.TARPIT
        assert classify(30, t) is ThreatLevel.BLOCK

    def test_monotonic(self) -> None:
        levels = [classify(s) for s in range(40)]
        assert all(a <= b for a, b in zip(levels, levels[1:]))


class TestThreatLevelOrdering:
    def test_rank_order(self) -> None:
        assert ThreatLevel.CLEAN < ThreatLevel.WARN < ThreatLevel.TARPIT < ThreatLevel.BLOCK

    def test_string_values(self) -> None:
        assert str(ThreatLevel.TARPIT) == "TARPIT"


# ===================================================================
# Ledger
# ===================================================================


class TestIncrement:
    async def test_uses_configured_weight(self, ledger: ThreatLedger) -> None:
        outcome = await ledger.increment("id-a", IncidentType.HONEYTOKEN_ACCESS)
        assert outcome.score == 5
        assert outcome.level is ThreatLevel.WARN
        assert outcome.reason == IncidentType.HONEYTOKEN_ACCESS

    async def test_explicit_points_override(self, ledger: ThreatLedger) -> None:
        outcome = await ledger.increment("id-a", IncidentType.ROBOTS_VIOLATION, points=8)
        assert outcome.score == 8
        assert outcome.level is ThreatLevel.TARPIT

    async def test_unknown_reason_uses_default_points(self, ledger: ThreatLedger) -> None:
        outcome = await ledger.increment("id-a", "brand_new_reason")
        assert outcome.score == 1

    async def test_accumulates(self, ledger: ThreatLedger) -> None:
        await ledger.increment("id-a", IncidentType.ROBOTS_VIOLATION)
        await ledger.increment("id-a", IncidentType.ROBOTS_VIOLATION)
        assert (await ledger.get_score("id-a")).score == 6

    async def test_each_increment_refreshes_ttl(
        self, ledger: ThreatLedger, store: InMemoryKVStore, clock: Any
    ) -> None:
        await ledger.increment("id-a", IncidentType.ROBOTS_VIOLATION)
        clock.advance(SCORE_TTL - 10)
        await ledger.increment("id-a", IncidentType.ROBOTS_VIOLATION)
        assert store.ttl("threat:id-a") == pytest.approx(SCORE_TTL)

    async def test_score_expires_after_inactivity(self, ledger: ThreatLedger, clock: Any) -> None:
        await ledger.increment("id-a", IncidentType.HONEYTOKEN_ACCESS)
        clock.advance(SCORE_TTL)
        assert (await ledger.get_score("id-a")).score == 0
        outcome = await ledger.increment("id-a", IncidentType.ROBOTS_VIOLATION)
        assert outcome.score == 3

    async def test_config_thresholds_apply(
        self, ledger: ThreatLedger, config_repo: ConfigRepository
    ) -> None:
        await config_repo.save({"thresholds": {"warn": 1, "tarpit": 2, "block": 50}})
        outcome = await ledger.increment("id-a", IncidentType.ROBOTS_VIOLATION)
        assert outcome.level is ThreatLevel.TARPIT


class TestAutoBlock:
    async def test_block_tier_creates_entry(
        self, ledger: ThreatLedger, registry: BlockRegistry
    ) -> None:
        outcome = await ledger.increment("id-a", IncidentType.INJECTION_PROBE, points=12)
        assert outcome.auto_blocked
        entry = await registry.get("id-a")
        assert entry is not None
        assert entry.auto_blocked
        assert entry.score == 12
        assert entry.reason == "auto: injection_probe (score 12)"

    async def test_repeat_is_idempotent(
        self, ledger: ThreatLedger, registry: BlockRegistry
    ) -> None:
        await ledger.increment("id-a", IncidentType.INJECTION_PROBE, points=12)
        first = await registry.get("id-a")
        await ledger.increment("id-a", IncidentType.INJECTION_PROBE, points=4)
        assert await registry.get("id-a") == first
        assert len(await registry.list_blocked()) == 1

    async def test_block_ttl_from_config(
        self,
        ledger: ThreatLedger,
        registry: BlockRegistry,
        config_repo: ConfigRepository,
        store: InMemoryKVStore,
    ) -> None:
        await config_repo.save({"rules": {"block_ttl_seconds": 3600}})
        await ledger.increment("id-a", IncidentType.INJECTION_PROBE, points=12)
        assert store.ttl("blocked:id-a") == pytest.approx(3600)

    async def test_auto_block_ignores_hard_block_rule(
        self, ledger: ThreatLedger, registry: BlockRegistry, config_repo: ConfigRepository
    ) -> None:
        # The rule picks the countermeasure; reaching BLOCK always writes the entry.
        await config_repo.save({"rules": {"hard_block_enabled": False}})
        outcome = await ledger.increment("id-a", IncidentType.INJECTION_PROBE, points=20)
        assert outcome.level is ThreatLevel.BLOCK
        assert outcome.auto_blocked
        entry = await registry.get("id-a")
        assert entry is not None
        assert entry.auto_blocked
        assert entry.score == 20


class TestDegradation:
    async def test_increment_falls_back_to_clean(self, failing_store: Any) -> None:
        ledger = ThreatLedger(
            failing_store, BlockRegistry(failing_store), ConfigRepository(failing_store)
        )
        outcome = await ledger.increment("id-a", IncidentType.HONEYTOKEN_ACCESS)
        assert outcome == ScoreOutcome(0, ThreatLevel.CLEAN, IncidentType.HONEYTOKEN_ACCESS, degraded=True)

    async def test_get_score_falls_back_to_clean(self, failing_store: Any) -> None:
        ledger = ThreatLedger(
            failing_store, BlockRegistry(failing_store), ConfigRepository(failing_store)
        )
        outcome = await ledger.get_score("id-a", config=EngineConfig())
        assert outcome.score == 0
        assert outcome.level is ThreatLevel.CLEAN
        assert outcome.degraded
