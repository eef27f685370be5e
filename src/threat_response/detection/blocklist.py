"""Block registry and attacker flags.

A block is a TTL'd record under ``blocked:<identity>`` plus membership in a
secondary index set used for enumeration.  The record's TTL is the source
of truth: enumeration removes index members whose record has expired.

Reads on the hot path (:meth:`BlockRegistry.is_blocked`,
:meth:`BlockRegistry.is_flagged`) fail **open**.  Administrative writes
propagate :class:`~threat_response.core.errors.StoreError`.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, Field, ValidationError, computed_field

from threat_response.core.errors import StoreError
from threat_response.core.interfaces import KVStore

logger = logging.getLogger(__name__)

BLOCK_PREFIX = "blocked:"
BLOCK_INDEX = "blocked-index"
FLAG_PREFIX = "flagged:"

DEFAULT_BLOCK_TTL = 604_800
MIN_BLOCK_TTL = 60
MAX_BLOCK_TTL = 2_592_000
MAX_REASON_LENGTH = 200
FLAG_TTL = 86_400


class BlockEntry(BaseModel):
    """A hard block against one identity."""

    identity: str
    reason: str = Field(max_length=MAX_REASON_LENGTH)
    blocked_at: datetime
    ttl_seconds: int
    auto_blocked: bool = False
    score: int | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def expires_at(self) -> datetime:
        return self.blocked_at + timedelta(seconds=self.ttl_seconds)


class BlockRegistry:
    """TTL'd hard blocks plus short-lived attacker flags."""

    def __init__(self, store: KVStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    # -- hot path -------------------------------------------------------

    async def is_blocked(self, identity: str) -> bool:
        """Return ``True`` if a live block exists.  ``False`` if the store fails."""
        try:
            return await self._store.get(f"{BLOCK_PREFIX}{identity}") is not None
        except StoreError:
            logger.error("Block lookup failed; allowing request")
            return False

    # -- administration -------------------------------------------------

    async def get(self, identity: str) -> BlockEntry | None:
        raw = await self._store.get(f"{BLOCK_PREFIX}{identity}")
        if raw is None:
            return None
        try:
            return BlockEntry.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed block record for %s", identity[:12])
            return None

    async def block(
        self,
        identity: str,
        reason: str = "manual",
        ttl_seconds: int = DEFAULT_BLOCK_TTL,
        *,
        auto_blocked: bool = False,
        score: int | None = None,
    ) -> BlockEntry:
        """Create (or replace) a block.

        Raises :class:`ValueError` when *reason* is longer than 200
        characters or *ttl_seconds* is outside ``[60, 2592000]``.
        """
        if len(reason) > MAX_REASON_LENGTH:
            raise ValueError(f"reason must be at most {MAX_REASON_LENGTH} characters")
        if not MIN_BLOCK_TTL <= ttl_seconds <= MAX_BLOCK_TTL:
            raise ValueError(
                f"ttl_seconds must be between {MIN_BLOCK_TTL} and {MAX_BLOCK_TTL}"
            )
        entry = BlockEntry(
            identity=identity,
            reason=reason,
            blocked_at=datetime.fromtimestamp(self._clock(), UTC),
            ttl_seconds=ttl_seconds,
            auto_blocked=auto_blocked,
            score=score,
        )
        await (
            self._store.batch()
            .set(f"{BLOCK_PREFIX}{identity}", entry.model_dump(mode="json"), ttl_seconds)
            .sadd(BLOCK_INDEX, identity)
            .execute()
        )
        logger.warning(
            "Blocked %s (reason=%s, auto=%s, ttl=%ds)",
            identity[:12], reason, auto_blocked, ttl_seconds,
        )
        return entry

    async def ensure_blocked(
        self, identity: str, reason: str, score: int, ttl_seconds: int = DEFAULT_BLOCK_TTL
    ) -> BlockEntry:
        """Auto-block *identity* unless a block already exists (idempotent)."""
        existing = await self.get(identity)
        if existing is not None:
            return existing
        return await self.block(
            identity, reason[:MAX_REASON_LENGTH], ttl_seconds, auto_blocked=True, score=score
        )

    async def unblock(self, identity: str) -> bool:
        """Remove a block.  Returns ``True`` if one existed."""
        existed = await self._store.get(f"{BLOCK_PREFIX}{identity}") is not None
        await (
            self._store.batch()
            .delete(f"{BLOCK_PREFIX}{identity}")
            .srem(BLOCK_INDEX, identity)
            .execute()
        )
        if existed:
            logger.warning("Unblocked %s", identity[:12])
        return existed

    async def list_blocked(self) -> list[BlockEntry]:
        """Return live blocks, newest first, pruning expired index members."""
        members = sorted(await self._store.smembers(BLOCK_INDEX))
        if not members:
            return []
        batch = self._store.batch()
        for identity in members:
            batch.get(f"{BLOCK_PREFIX}{identity}")
        records = await batch.execute()

        entries: list[BlockEntry] = []
        stale: list[str] = []
        for identity, raw in zip(members, records):
            if raw is None:
                stale.append(identity)
                continue
            try:
                entries.append(BlockEntry.model_validate(raw))
            except ValidationError:
                stale.append(identity)
        if stale:
            await self._store.srem(BLOCK_INDEX, *stale)
            logger.debug("Pruned %d expired block index entries", len(stale))
        entries.sort(key=lambda e: e.blocked_at, reverse=True)
        return entries

    # -- flags ----------------------------------------------------------

    async def flag(self, identity: str) -> None:
        """Mark *identity* as hostile for 24 hours (best effort)."""
        try:
            await self._store.set(f"{FLAG_PREFIX}{identity}", True, FLAG_TTL)
        except StoreError:
            logger.error("Failed to flag %s", identity[:12])

    async def is_flagged(self, identity: str) -> bool:
        try:
            return await self._store.get(f"{FLAG_PREFIX}{identity}") is not None
        except StoreError:
            return False
