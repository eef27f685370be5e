"""Shared fixtures for the threat response unit tests.

Every test runs against :class:`InMemoryKVStore` driven by a
:class:`FakeClock`, so TTL expiry, sliding windows and timestamps are
fully deterministic.  :class:`FailingKVStore` simulates an unreachable
backing store.
"""
from __future__ import annotations

from typing import Any

import pytest

from threat_response.core.config import ConfigRepository
from threat_response.core.errors import StoreUnavailable
from threat_response.core.interfaces import Batch, InMemoryKVStore
from threat_response.core.types import RequestDescriptor
from threat_response.deception.randomness import DecoyRandom
from threat_response.detection.blocklist import BlockRegistry
from threat_response.detection.profiler import IncidentJournal
from threat_response.detection.threat_scoring import ThreatLedger
from threat_response.engine import ThreatResponseEngine
from threat_response.identity import IdentityHasher

SALT = "unit-test-salt"
START = 1_700_000_000.0

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Chrome/120.0",
    "Accept": "text/html,application/xhtml+xml",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate, br",
}


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------

class FakeClock:
    """Callable clock returning seconds since the epoch."""

    def __init__(self, start: float = START) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingBatch(Batch):
    async def execute(self) -> list[Any]:
        raise StoreUnavailable(details={"operation": "batch"})


class FailingKVStore:
    """Backing store whose every operation times out."""

    def __init__(self) -> None:
        self.calls = 0

    def _fail(self) -> None:
        self.calls += 1
        raise StoreUnavailable()

    async def get(self, key: str) -> Any:
        self._fail()

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        self._fail()

    async def delete(self, key: str) -> None:
        self._fail()

    async def incr(self, key: str, amount: int = 1) -> int:
        self._fail()
        return 0

    async def expire(self, key: str, ttl_seconds: int) -> None:
        self._fail()

    async def lpush(self, key: str, value: Any) -> int:
        self._fail()
        return 0

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        self._fail()

    async def lrange(self, key: str, start: int, stop: int) -> list[Any]:
        self._fail()
        return []

    async def sadd(self, key: str, *members: str) -> int:
        self._fail()
        return 0

    async def srem(self, key: str, *members: str) -> int:
        self._fail()
        return 0

    async def smembers(self, key: str) -> set[str]:
        self._fail()
        return set()

    def batch(self) -> FailingBatch:
        self.calls += 1
        return FailingBatch()


class RecordingSleep:
    """Stands in for ``asyncio.sleep`` and records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def build_request(
    path: str = "/",
    *,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    query: dict[str, Any] | None = None,
    body: Any = None,
    origin: str = "203.0.113.7",
) -> RequestDescriptor:
    merged = dict(BROWSER_HEADERS if headers is None else headers)
    merged.setdefault("X-Forwarded-For", origin)
    return RequestDescriptor(
        method=method,
        path=path,
        headers=merged,
        query=query or {},
        body=body,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock: FakeClock) -> InMemoryKVStore:
    return InMemoryKVStore(clock=clock)


@pytest.fixture()
def failing_store() -> FailingKVStore:
    return FailingKVStore()


@pytest.fixture()
def hasher() -> IdentityHasher:
    return IdentityHasher(SALT)


@pytest.fixture()
def rng() -> DecoyRandom:
    return DecoyRandom(1234)


@pytest.fixture()
def config_repo(store: InMemoryKVStore) -> ConfigRepository:
    return ConfigRepository(store)


@pytest.fixture()
def registry(store: InMemoryKVStore, clock: FakeClock) -> BlockRegistry:
    return BlockRegistry(store, clock=clock)


@pytest.fixture()
def ledger(
    store: InMemoryKVStore, registry: BlockRegistry, config_repo: ConfigRepository
) -> ThreatLedger:
    return ThreatLedger(store, registry, config_repo)


@pytest.fixture()
def journal(store: InMemoryKVStore, clock: FakeClock) -> IncidentJournal:
    return IncidentJournal(store, clock=clock)


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def engine(
    store: InMemoryKVStore,
    hasher: IdentityHasher,
    rng: DecoyRandom,
    sleep: RecordingSleep,
    clock: FakeClock,
) -> ThreatResponseEngine:
    return ThreatResponseEngine(store, hasher, rng=rng, sleep=sleep, clock=clock)


@pytest.fixture()
def make_request() -> Any:
    """Factory for request descriptors with browser-like headers."""
    return build_request
