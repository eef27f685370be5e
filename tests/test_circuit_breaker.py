"""Tests for the global circuit breaker.

Tests cover:
- Counting up to the threshold and tripping beyond it
- The cooldown flag and its expiry
- Window rollover
- Fail-open behaviour when the store is unavailable
"""
from __future__ import annotations

import json
from typing import Any

import pytest

from threat_response.core.interfaces import InMemoryKVStore
from threat_response.detection.circuit_breaker import (
    COUNTER_PREFIX,
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_THRESHOLD,
    UNDER_ATTACK_KEY,
    CircuitBreaker,
)


@pytest.fixture()
def breaker(store: InMemoryKVStore, clock: Any) -> CircuitBreaker:
    return CircuitBreaker(store, threshold=5, clock=clock)


class TestTrip:
    async def test_admits_up_to_threshold(self, breaker: CircuitBreaker) -> None:
        for _ in range(5):
            assert await breaker.check() is None
        assert not await breaker.is_open()

    async def test_trips_beyond_threshold(
        self, breaker: CircuitBreaker, store: InMemoryKVStore
    ) -> None:
        for _ in range(5):
            await breaker.check()
        response = await breaker.check()
        assert response is not None
        assert response.status == 429
        assert response.headers["Retry-After"] == str(DEFAULT_COOLDOWN_SECONDS)
        assert json.loads(response.body)["error"]["code"] == "TR-E303"
        assert await breaker.is_open()
        assert store.ttl(UNDER_ATTACK_KEY) == pytest.approx(DEFAULT_COOLDOWN_SECONDS)

    async def test_open_breaker_stops_counting(
        self, breaker: CircuitBreaker, store: InMemoryKVStore, clock: Any
    ) -> None:
        for _ in range(6):
            await breaker.check()
        for _ in range(10):
            assert await breaker.check() is not None
        assert await store.get(f"{COUNTER_PREFIX}{int(clock() // 10)}") == 6

    async def test_closes_after_cooldown(self, breaker: CircuitBreaker, clock: Any) -> None:
        for _ in range(6):
            await breaker.check()
        clock.advance(DEFAULT_COOLDOWN_SECONDS)
        assert not await breaker.is_open()
        assert await breaker.check() is None

    async def test_reset(self, breaker: CircuitBreaker) -> None:
        for _ in range(6):
            await breaker.check()
        await breaker.reset()
        assert await breaker.check() is None

    async def test_new_window_starts_fresh(self, breaker: CircuitBreaker, clock: Any) -> None:
        for _ in range(5):
            await breaker.check()
        clock.advance(10)
        for _ in range(5):
            assert await breaker.check() is None

    def test_defaults(self) -> None:
        assert DEFAULT_THRESHOLD == 500
        assert DEFAULT_COOLDOWN_SECONDS == 300

    @pytest.mark.parametrize(
        "kwargs", [{"threshold": 0}, {"window_seconds": 0}, {"cooldown_seconds": -1}]
    )
    def test_rejects_non_positive_settings(
        self, store: InMemoryKVStore, kwargs: dict[str, int]
    ) -> None:
        with pytest.raises(ValueError):
            CircuitBreaker(store, **kwargs)


class TestDegradation:
    async def test_fails_open(self, failing_store: Any) -> None:
        breaker = CircuitBreaker(failing_store, threshold=1)
        for _ in range(3):
            assert await breaker.check() is None
        assert not await breaker.is_open()
