"""Backing-store interface and in-memory implementation.

Every stateful component persists through the single :class:`KVStore`
contract below.  Values passed to :meth:`KVStore.set` and
:meth:`KVStore.lpush` must be JSON-serialisable; set members are strings.

Implementations raise :class:`~threat_response.core.errors.StoreError`
(usually :class:`StoreUnavailable`) for every backend failure so callers
only ever catch one category.

:class:`InMemoryKVStore` is **not** shared across processes.  It is meant
for tests and single-process development; production deployments use
:class:`threat_response.core.redis_store.RedisKVStore`.
"""
from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

# ===================================================================
# Protocol definitions
# ===================================================================

@runtime_checkable
class KVStore(Protocol):
    """Key-value store with TTL, counters, capped lists and sets."""

    async def get(self, key: str) -> Any | None:
        """Return the decoded value at *key*, or ``None`` if absent/expired."""
        ...

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def incr(self, key: str, amount: int = 1) -> int:
        """Atomically add *amount* to the integer at *key*; return the new value."""
        ...

    async def expire(self, key: str, ttl_seconds: int) -> None:
        ...

    async def lpush(self, key: str, value: Any) -> int:
        """Prepend *value* to the list at *key*; return the new length."""
        ...

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        """Keep only the inclusive range ``[start, stop]`` of the list."""
        ...

    async def lrange(self, key: str, start: int, stop: int) -> list[Any]:
        ...

    async def sadd(self, key: str, *members: str) -> int:
        ...

    async def srem(self, key: str, *members: str) -> int:
        ...

    async def smembers(self, key: str) -> set[str]:
        ...

    def batch(self) -> Batch:
        """Return a :class:`Batch` whose queued operations run atomically."""
        ...


class Batch:
    """Queue of store operations executed as one atomic unit.

    Operations are recorded in order and run by :meth:`execute`, which
    returns one result per queued operation.  Used for the
    increment-then-expire pairs that must not be split.
    """

    OPERATIONS = frozenset({
        "get", "set", "delete", "incr", "expire",
        "lpush", "ltrim", "lrange", "sadd", "srem", "smembers",
    })

    def __init__(self) -> None:
        self.ops: list[tuple[str, tuple[Any, ...]]] = []

    def _queue(self, op: str, *args: Any) -> Batch:
        self.ops.append((op, args))
        return self

    def get(self, key: str) -> Batch:
        return self._queue("get", key)

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> Batch:
        return self._queue("set", key, value, ttl_seconds)

    def delete(self, key: str) -> Batch:
        return self._queue("delete", key)

    def incr(self, key: str, amount: int = 1) -> Batch:
        return self._queue("incr", key, amount)

    def expire(self, key: str, ttl_seconds: int) -> Batch:
        return self._queue("expire", key, ttl_seconds)

    def lpush(self, key: str, value: Any) -> Batch:
        return self._queue("lpush", key, value)

    def ltrim(self, key: str, start: int, stop: int) -> Batch:
        return self._queue("ltrim", key, start, stop)

    def lrange(self, key: str, start: int, stop: int) -> Batch:
        return self._queue("lrange", key, start, stop)

    def sadd(self, key: str, *members: str) -> Batch:
        return self._queue("sadd", key, *members)

    def srem(self, key: str, *members: str) -> Batch:
        return self._queue("srem", key, *members)

    def smembers(self, key: str) -> Batch:
        return self._queue("smembers", key)

    async def execute(self) -> list[Any]:
        raise NotImplementedError


# ===================================================================
# In-memory implementation
# ===================================================================

def _list_slice(items: list[Any], start: int, stop: int) -> list[Any]:
    """Inclusive-range slice with Redis semantics for negative indices."""
    length = len(items)
    if start < 0:
        start = max(length + start, 0)
    if stop < 0:
        stop = length + stop
    return items[start:stop + 1]


class InMemoryBatch(Batch):
    def __init__(self, store: InMemoryKVStore) -> None:
        super().__init__()
        self._store = store

    async def execute(self) -> list[Any]:
        # No awaits between operations: the batch runs atomically with
        # respect to other coroutines on the same loop.
        ops, self.ops = self.ops, []
        return [self._store._apply(op, args) for op, args in ops]


class InMemoryKVStore:
    """Dict-backed :class:`KVStore` with lazy TTL expiry.

    Values are round-tripped through JSON on write so callers observe the
    same decoding behaviour as with the Redis store.

    Parameters
    ----------
    clock:
        Returns the current time in seconds; inject a fake clock in tests
        to drive expiry deterministically.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, Any] = {}
        self._expires: dict[str, float] = {}

    # -- internals ----------------------------------------------------------

    def _live(self, key: str) -> bool:
        deadline = self._expires.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def _apply(self, op: str, args: tuple[Any, ...]) -> Any:
        if op not in Batch.OPERATIONS:
            raise ValueError(f"Unsupported store operation: {op}")
        return getattr(self, f"_{op}")(*args)

    def _get(self, key: str) -> Any | None:
        if not self._live(key):
            return None
        value = self._data[key]
        if isinstance(value, (list, set)):
            raise TypeError(f"Key {key!r} holds a collection")
        return json.loads(value)

    def _set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        self._data[key] = json.dumps(value)
        if ttl_seconds is None:
            self._expires.pop(key, None)
        else:
            self._expires[key] = self._clock() + ttl_seconds

    def _delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._expires.pop(key, None)

    def _incr(self, key: str, amount: int = 1) -> int:
        current = int(json.loads(self._data[key])) if self._live(key) else 0
        current += amount
        self._data[key] = json.dumps(current)
        return current

    def _expire(self, key: str, ttl_seconds: int) -> None:
        if self._live(key):
            self._expires[key] = self._clock() + ttl_seconds

    def _lpush(self, key: str, value: Any) -> int:
        self._live(key)
        items = self._data.setdefault(key, [])
        items.insert(0, json.dumps(value))
        return len(items)

    def _ltrim(self, key: str, start: int, stop: int) -> None:
        if self._live(key):
            self._data[key] = _list_slice(self._data[key], start, stop)

    def _lrange(self, key: str, start: int, stop: int) -> list[Any]:
        if not self._live(key):
            return []
        return [json.loads(v) for v in _list_slice(self._data[key], start, stop)]

    def _sadd(self, key: str, *members: str) -> int:
        if not self._live(key):
            self._data[key] = set()
        members_set: set[str] = self._data[key]
        added = len(set(members) - members_set)
        members_set.update(members)
        return added

    def _srem(self, key: str, *members: str) -> int:
        if not self._live(key):
            return 0
        members_set: set[str] = self._data[key]
        removed = len(members_set & set(members))
        members_set.difference_update(members)
        return removed

    def _smembers(self, key: str) -> set[str]:
        if not self._live(key):
            return set()
        return set(self._data[key])

    # -- KVStore ------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        return self._get(key)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        self._set(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        self._delete(key)

    async def incr(self, key: str, amount: int = 1) -> int:
        return self._incr(key, amount)

    async def expire(self, key: str, ttl_seconds: int) -> None:
        self._expire(key, ttl_seconds)

    async def lpush(self, key: str, value: Any) -> int:
        return self._lpush(key, value)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        self._ltrim(key, start, stop)

    async def lrange(self, key: str, start: int, stop: int) -> list[Any]:
        return self._lrange(key, start, stop)

    async def sadd(self, key: str, *members: str) -> int:
        return self._sadd(key, *members)

    async def srem(self, key: str, *members: str) -> int:
        return self._srem(key, *members)

    async def smembers(self, key: str) -> set[str]:
        return self._smembers(key)

    def batch(self) -> InMemoryBatch:
        return InMemoryBatch(self)

    def ttl(self, key: str) -> float | None:
        """Seconds until *key* expires, ``None`` if it has no TTL (test helper)."""
        if not self._live(key):
            return None
        deadline = self._expires.get(key)
        return None if deadline is None else deadline - self._clock()
