"""Randomness for decoy content.

Decoy selection (which fake header, which padding, which tarpit delay) is
not security-sensitive, so it runs on :class:`random.Random`.  Routing all
of it through :class:`DecoyRandom` lets tests pin a seed and get
reproducible payloads.

Canary tokens are *not* drawn from here; they use :mod:`secrets`.
"""
from __future__ import annotations

import base64
import random
from collections.abc import Sequence
from typing import TypeVar

T = TypeVar("T")


class DecoyRandom:
    """Seedable source of decoy randomness."""

    __slots__ = ("_rng",)

    def __init__(self, seed: int | None = None) -> None:
        self._rng = random.Random(seed)

    def choice(self, items: Sequence[T]) -> T:
        return self._rng.choice(items)

    def sample(self, items: Sequence[T], k: int) -> list[T]:
        return self._rng.sample(list(items), min(k, len(items)))

    def randint(self, low: int, high: int) -> int:
        return self._rng.randint(low, high)

    def uniform(self, low: float, high: float) -> float:
        return self._rng.uniform(low, high)

    def hex(self, nbytes: int) -> str:
        """Return ``2 * nbytes`` lowercase hex characters."""
        return self._rng.randbytes(nbytes).hex()

    def b64(self, nbytes: int) -> str:
        return base64.b64encode(self._rng.randbytes(nbytes)).decode("ascii")
