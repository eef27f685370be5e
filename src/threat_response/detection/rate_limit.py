"""Sliding-window rate limiter.

Approximates a true sliding window with two fixed windows: the count in
the previous window is weighted by how much of it still overlaps the
sliding window::

    estimated = previous * (1 - elapsed / window) + current

The limiter is the one component that fails **closed**: if the backing
store cannot be consulted the request is denied with a retry hint.
"""
from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from threat_response.core.errors import (
    RateLimiterUnavailable,
    RateLimitError,
    RateLimitExceeded,
    StoreError,
)
from threat_response.core.interfaces import KVStore
from threat_response.core.types import DeceptiveResponse

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5
DEFAULT_WINDOW_SECONDS = 10
KEY_PREFIX = "rl:"


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Result of a rate-limit admission check.

    Attributes
    ----------
    allowed : bool
        Whether the request may proceed.
    remaining : int
        Requests left in the current sliding window (0 when denied).
    retry_after : int
        Seconds the caller should wait before retrying (0 when allowed).
    unavailable : bool
        ``True`` when the denial is due to the store being unreachable.
    """

    allowed: bool
    remaining: int
    retry_after: int = 0
    unavailable: bool = False

    def error(self) -> RateLimitError | None:
        if self.allowed:
            return None
        if self.unavailable:
            return RateLimiterUnavailable(details={"retry_after": self.retry_after})
        return RateLimitExceeded(details={"retry_after": self.retry_after})

    def to_response(self) -> DeceptiveResponse | None:
        """429 / 503 response with ``Retry-After`` for a denial, else ``None``."""
        err = self.error()
        if err is None:
            return None
        return DeceptiveResponse.json(
            err.http_status,
            err.to_dict(),
            {"Retry-After": str(self.retry_after)},
        )


class SlidingWindowRateLimiter:
    """Per-identity admission control over a :class:`KVStore`."""

    __slots__ = ("_store", "_limit", "_window", "_prefix", "_clock")

    def __init__(
        self,
        store: KVStore,
        *,
        limit: int = DEFAULT_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        prefix: str = KEY_PREFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if limit < 1 or window_seconds < 1:
            raise ValueError("limit and window_seconds must be positive")
        self._store = store
        self._limit = limit
        self._window = window_seconds
        self._prefix = prefix
        self._clock = clock

    @property
    def limit(self) -> int:
        return self._limit

    async def check(self, identity: str) -> RateLimitDecision:
        now = self._clock()
        window_index = int(now // self._window)
        elapsed = now - window_index * self._window
        current_key = f"{self._prefix}{identity}:{window_index}"
        previous_key = f"{self._prefix}{identity}:{window_index - 1}"

        try:
            current, _, previous = await (
                self._store.batch()
                .incr(current_key)
                .expire(current_key, self._window * 2 + 1)
                .get(previous_key)
                .execute()
            )
        except StoreError:
            logger.error("Rate limiter store unavailable; denying request")
            return RateLimitDecision(
                allowed=False, remaining=0, retry_after=self._window, unavailable=True
            )

        weight = 1 - elapsed / self._window
        estimated = int(previous or 0) * weight + int(current)
        if estimated > self._limit:
            retry_after = max(1, math.ceil(self._window - elapsed))
            logger.debug("Rate limit exceeded for %s", identity[:12])
            return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)
        return RateLimitDecision(
            allowed=True, remaining=max(0, math.floor(self._limit - estimated))
        )

    async def allow(self, identity: str) -> bool:
        """Return ``True`` if *identity* may proceed (``False`` on store failure)."""
        return (await self.check(identity)).allowed
