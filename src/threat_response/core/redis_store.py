"""Redis-backed :class:`~threat_response.core.interfaces.KVStore`.

Uses ``redis.asyncio`` with short socket timeouts so an unreachable server
surfaces as :class:`StoreUnavailable` instead of hanging the request path.
Batches map onto a ``MULTI``/``EXEC`` pipeline.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from threat_response.core.errors import StoreUnavailable
from threat_response.core.interfaces import Batch

logger = logging.getLogger(__name__)


@contextmanager
def _translate_errors(op: str) -> Iterator[None]:
    try:
        yield
    except (RedisError, OSError, asyncio.TimeoutError) as exc:
        logger.error("Redis %s failed: %s", op, type(exc).__name__)
        raise StoreUnavailable(details={"operation": op}) from exc


def _decode(raw: Any) -> Any | None:
    if raw is None:
        return None
    return json.loads(raw)


class RedisBatch(Batch):
    def __init__(self, store: RedisKVStore) -> None:
        super().__init__()
        self._store = store

    async def execute(self) -> list[Any]:
        ops, self.ops = self.ops, []
        if not ops:
            return []
        with _translate_errors("batch"):
            async with self._store.client.pipeline(transaction=True) as pipe:
                for op, args in ops:
                    self._store._queue(pipe, op, args)
                raw_results = await pipe.execute()
        return [self._store._post(op, raw) for (op, _), raw in zip(ops, raw_results)]


class RedisKVStore:
    """KVStore over a ``redis.asyncio.Redis`` client.

    The client must be created with ``decode_responses=True``; use
    :meth:`from_url` to get one configured with sensible timeouts.
    Keys are prefixed with *namespace* so several deployments can share a
    database.
    """

    def __init__(self, client: aioredis.Redis, *, namespace: str = "tr:") -> None:
        self.client = client
        self._ns = namespace

    @classmethod
    def from_url(
        cls, url: str, *, timeout: float = 2.0, namespace: str = "tr:"
    ) -> RedisKVStore:
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client, namespace=namespace)

    async def aclose(self) -> None:
        await self.client.aclose()

    def _k(self, key: str) -> str:
        return f"{self._ns}{key}"

    # -- command mapping ----------------------------------------------------

    def _queue(self, pipe: Any, op: str, args: tuple[Any, ...]) -> None:
        key, rest = self._k(args[0]), args[1:]
        if op == "get":
            pipe.get(key)
        elif op == "set":
            value, ttl = rest
            pipe.set(key, json.dumps(value), ex=ttl)
        elif op == "delete":
            pipe.delete(key)
        elif op == "incr":
            pipe.incrby(key, rest[0])
        elif op == "expire":
            pipe.expire(key, rest[0])
        elif op == "lpush":
            pipe.lpush(key, json.dumps(rest[0]))
        elif op == "ltrim":
            pipe.ltrim(key, rest[0], rest[1])
        elif op == "lrange":
            pipe.lrange(key, rest[0], rest[1])
        elif op == "sadd":
            pipe.sadd(key, *rest)
        elif op == "srem":
            pipe.srem(key, *rest)
        elif op == "smembers":
            pipe.smembers(key)
        else:
            raise ValueError(f"Unsupported store operation: {op}")

    @staticmethod
    def _post(op: str, raw: Any) -> Any:
        if op == "get":
            return _decode(raw)
        if op == "lrange":
            return [json.loads(item) for item in raw]
        if op == "smembers":
            return set(raw)
        if op in ("incr", "lpush", "sadd", "srem"):
            return int(raw)
        return None

    # -- KVStore ------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        with _translate_errors("get"):
            raw = await self.client.get(self._k(key))
        return _decode(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        with _translate_errors("set"):
            await self.client.set(self._k(key), json.dumps(value), ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        with _translate_errors("delete"):
            await self.client.delete(self._k(key))

    async def incr(self, key: str, amount: int = 1) -> int:
        with _translate_errors("incr"):
            return int(await self.client.incrby(self._k(key), amount))

    async def expire(self, key: str, ttl_seconds: int) -> None:
        with _translate_errors("expire"):
            await self.client.expire(self._k(key), ttl_seconds)

    async def lpush(self, key: str, value: Any) -> int:
        with _translate_errors("lpush"):
            return int(await self.client.lpush(self._k(key), json.dumps(value)))

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        with _translate_errors("ltrim"):
            await self.client.ltrim(self._k(key), start, stop)

    async def lrange(self, key: str, start: int, stop: int) -> list[Any]:
        with _translate_errors("lrange"):
            raw = await self.client.lrange(self._k(key), start, stop)
        return [json.loads(item) for item in raw]

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        with _translate_errors("sadd"):
            return int(await self.client.sadd(self._k(key), *members))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        with _translate_errors("srem"):
            return int(await self.client.srem(self._k(key), *members))

    async def smembers(self, key: str) -> set[str]:
        with _translate_errors("smembers"):
            return set(await self.client.smembers(self._k(key)))

    def batch(self) -> RedisBatch:
        return RedisBatch(self)
