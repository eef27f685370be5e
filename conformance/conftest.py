"""Shared fixtures for threat response conformance tests.

Provides a deterministic clock, an in-memory store, an always-failing
store and the components built on top of them.
"""
from __future__ import annotations

from typing import Any

import pytest

from threat_response.core.config import ConfigRepository
from threat_response.core.errors import StoreUnavailable
from threat_response.core.interfaces import Batch, InMemoryKVStore
from threat_response.deception.randomness import DecoyRandom
from threat_response.detection.blocklist import BlockRegistry
from threat_response.detection.profiler import IncidentJournal
from threat_response.detection.threat_scoring import ThreatLedger
from threat_response.engine import ThreatResponseEngine
from threat_response.identity import IdentityHasher

SALT = "conformance-salt"


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------
class ManualClock:
    def __init__(self, now: float = 1_750_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _DeadBatch(Batch):
    async def execute(self) -> list[Any]:
        raise StoreUnavailable()


class UnreachableStore:
    """Every store operation raises :class:`StoreUnavailable`."""

    def __getattr__(self, name: str) -> Any:
        async def fail(*args: Any, **kwargs: Any) -> Any:
            raise StoreUnavailable(details={"operation": name})

        return fail

    def batch(self) -> _DeadBatch:
        return _DeadBatch()


class NoSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def store(clock: ManualClock) -> InMemoryKVStore:
    return InMemoryKVStore(clock=clock)


@pytest.fixture()
def unreachable_store() -> UnreachableStore:
    return UnreachableStore()


@pytest.fixture()
def config_repo(store: InMemoryKVStore) -> ConfigRepository:
    return ConfigRepository(store)


@pytest.fixture()
def registry(store: InMemoryKVStore, clock: ManualClock) -> BlockRegistry:
    return BlockRegistry(store, clock=clock)


@pytest.fixture()
def ledger(
    store: InMemoryKVStore, registry: BlockRegistry, config_repo: ConfigRepository
) -> ThreatLedger:
    return ThreatLedger(store, registry, config_repo)


@pytest.fixture()
def journal(store: InMemoryKVStore, clock: ManualClock) -> IncidentJournal:
    return IncidentJournal(store, clock=clock)


@pytest.fixture()
def hasher() -> IdentityHasher:
    return IdentityHasher(SALT)


@pytest.fixture()
def sleep() -> NoSleep:
    return NoSleep()


@pytest.fixture()
def engine(
    store: InMemoryKVStore, hasher: IdentityHasher, clock: ManualClock, sleep: NoSleep
) -> ThreatResponseEngine:
    return ThreatResponseEngine(
        store, hasher, rng=DecoyRandom(77), sleep=sleep, clock=clock
    )
