"""Global circuit breaker.

Counts every request that reaches the engine in fixed windows.  When one
window's count exceeds the threshold the breaker trips: an
``under_attack`` flag is written with a cooldown TTL, and until it
expires every request is refused with 429.

The breaker fails **open**.  A store error lets the request through; the
per-identity limiter is the only component that denies on an outage.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable

from threat_response.core.errors import CircuitOpen, StoreError
from threat_response.core.interfaces import KVStore
from threat_response.core.types import DeceptiveResponse

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 500
DEFAULT_WINDOW_SECONDS = 10
DEFAULT_COOLDOWN_SECONDS = 300
UNDER_ATTACK_KEY = "under_attack"
COUNTER_PREFIX = "global-rate:"


class CircuitBreaker:
    """Site-wide flood gate over a :class:`KVStore`."""

    __slots__ = ("_store", "_threshold", "_window", "_cooldown", "_clock")

    def __init__(
        self,
        store: KVStore,
        *,
        threshold: int = DEFAULT_THRESHOLD,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if threshold < 1 or window_seconds < 1 or cooldown_seconds < 1:
            raise ValueError("threshold, window_seconds and cooldown_seconds must be positive")
        self._store = store
        self._threshold = threshold
        self._window = window_seconds
        self._cooldown = cooldown_seconds
        self._clock = clock

    async def is_open(self) -> bool:
        """``True`` while the ``under_attack`` flag is set."""
        try:
            return bool(await self._store.get(UNDER_ATTACK_KEY))
        except StoreError:
            logger.warning("Circuit breaker store unavailable; admitting request")
            return False

    async def check(self) -> DeceptiveResponse | None:
        """Count this request and return a 429 when the breaker is open."""
        try:
            if await self._store.get(UNDER_ATTACK_KEY):
                return self._denial()
            key = f"{COUNTER_PREFIX}{int(self._clock() // self._window)}"
            count, _ = await (
                self._store.batch()
                .incr(key)
                .expire(key, self._window * 2)
                .execute()
            )
            if int(count) > self._threshold:
                await self._store.set(UNDER_ATTACK_KEY, True, self._cooldown)
                logger.critical(
                    "Circuit breaker tripped: %d requests in %ds; refusing traffic for %ds",
                    count, self._window, self._cooldown,
                )
                return self._denial()
        except StoreError:
            logger.warning("Circuit breaker store unavailable; admitting request")
        return None

    async def reset(self) -> None:
        """Clear the ``under_attack`` flag ahead of its cooldown."""
        await self._store.delete(UNDER_ATTACK_KEY)
        logger.info("Circuit breaker reset")

    def _denial(self) -> DeceptiveResponse:
        err = CircuitOpen(details={"retry_after": self._cooldown})
        return DeceptiveResponse.json(
            err.http_status, err.to_dict(), {"Retry-After": str(self._cooldown)}
        )
