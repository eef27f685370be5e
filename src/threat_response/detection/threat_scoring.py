"""Threat score ledger.

Each identity carries a cumulative integer score that expires one hour
after its *last* increment (every increment refreshes the TTL, so a
persistent attacker never cools down).  The score maps onto a
:class:`ThreatLevel` through the configured thresholds; reaching ``BLOCK``
triggers an idempotent auto-block.

The ledger never raises: if the backing store fails the caller receives
``CLEAN`` / ``0`` so request handling can continue.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from threat_response.core.config import ConfigRepository, EngineConfig, ThreatTierThresholds
from threat_response.core.errors import StoreError
from threat_response.core.interfaces import KVStore
from threat_response.core.types import ThreatLevel
from threat_response.detection.blocklist import BlockRegistry

logger = logging.getLogger(__name__)

SCORE_PREFIX = "threat:"
SCORE_TTL = 3600


def classify(score: int, thresholds: ThreatTierThresholds | None = None) -> ThreatLevel:
    """Map *score* onto a tier: the highest threshold met wins."""
    t = thresholds or ThreatTierThresholds()
    if score >= t.block:
        return ThreatLevel.BLOCK
    if score >= t.tarpit:
        return ThreatLevel.TARPIT
    if score >= t.warn:
        return ThreatLevel.WARN
    return ThreatLevel.CLEAN


@dataclass(frozen=True, slots=True)
class ScoreOutcome:
    """Score and tier after a ledger operation.

    Attributes
    ----------
    score : int
        Cumulative score (0 when the ledger degraded).
    level : ThreatLevel
        Tier for *score* under the thresholds in force.
    reason : str | None
        Reason code of the increment, ``None`` for plain reads.
    auto_blocked : bool
        Whether this increment reached the block tier.
    degraded : bool
        ``True`` when the store failed and the neutral outcome was returned.
    """

    score: int
    level: ThreatLevel
    reason: str | None = None
    auto_blocked: bool = False
    degraded: bool = False

    @classmethod
    def neutral(cls, reason: str | None = None) -> ScoreOutcome:
        return cls(0, ThreatLevel.CLEAN, reason, degraded=True)


class ThreatLedger:
    """Per-identity cumulative threat scores."""

    __slots__ = ("_store", "_registry", "_config")

    def __init__(
        self, store: KVStore, registry: BlockRegistry, config: ConfigRepository
    ) -> None:
        self._store = store
        self._registry = registry
        self._config = config

    async def get_score(
        self, identity: str, *, config: EngineConfig | None = None
    ) -> ScoreOutcome:
        cfg = config or await self._config.load()
        try:
            raw = await self._store.get(f"{SCORE_PREFIX}{identity}")
        except StoreError:
            logger.error("Threat ledger unavailable; reporting CLEAN")
            return ScoreOutcome.neutral()
        score = int(raw or 0)
        return ScoreOutcome(score, classify(score, cfg.thresholds))

    async def increment(
        self,
        identity: str,
        reason: str,
        points: int | None = None,
        *,
        config: EngineConfig | None = None,
    ) -> ScoreOutcome:
        """Add points for *reason* and return the new score and tier.

        *points* overrides the configured weight for *reason*.  The
        increment and the TTL refresh are applied atomically.
        """
        cfg = config or await self._config.load()
        amount = cfg.weights.points_for(reason) if points is None else points
        key = f"{SCORE_PREFIX}{identity}"
        try:
            score, _ = await (
                self._store.batch().incr(key, amount).expire(key, SCORE_TTL).execute()
            )
        except StoreError:
            logger.error("Threat ledger unavailable; reporting CLEAN")
            return ScoreOutcome.neutral(reason)

        score = int(score)
        level = classify(score, cfg.thresholds)
        logger.debug("Score %s +%d (%s) -> %d %s", identity[:12], amount, reason, score, level)
        if level is not ThreatLevel.BLOCK:
            return ScoreOutcome(score, level, reason)

        try:
            await self._registry.ensure_blocked(
                identity,
                f"auto: {reason} (score {score})",
                score,
                cfg.rules.block_ttl_seconds,
            )
        except StoreError:
            logger.error("Auto-block of %s failed", identity[:12])
            return ScoreOutcome(score, level, reason)
        logger.warning("Auto-block threshold reached for %s (score=%d)", identity[:12], score)
        return ScoreOutcome(score, level, reason, auto_blocked=True)
