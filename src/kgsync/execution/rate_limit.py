"""Request throttling shared across sync streams.

Streams publishing to the same GraphDB share one :class:`TokenBucketLimiter`;
the transport takes a token before every attempt, retries included, so the
combined request rate stays under ``rate`` with bursts of up to ``capacity``.

Example::

    limiter = TokenBucketLimiter(rate=5, capacity=10)
    transport = ResilientTransport(client, policy, limiter=limiter)
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class TokenBucketLimiter:
    """Bucket of ``capacity`` tokens refilled continuously at ``rate`` per second.

    The bucket starts full.  The lock makes ``try_acquire`` safe from
    threads as well as coroutines.
    """

    rate: float
    capacity: float

    _tokens: float = field(init=False)
    _stamp: float = field(default_factory=time.monotonic, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if not (self.rate > 0 and self.capacity > 0):
            raise ValueError(f"rate and capacity must be positive, got {self.rate}/{self.capacity}")
        self._tokens = self.capacity

    def _level(self) -> float:
        # Caller holds the lock.
        now = time.monotonic()
        self._tokens = min(self.capacity, self._tokens + (now - self._stamp) * self.rate)
        self._stamp = now
        return self._tokens

    def try_acquire(self, tokens: int = 1) -> bool:
        with self._lock:
            if self._level() < tokens:
                return False
            self._tokens -= tokens
            return True

    def get_wait_time(self, tokens: int = 1) -> float:
        """Seconds until ``tokens`` could be taken; 0.0 when they already can."""
        with self._lock:
            shortfall = tokens - self._level()
        return max(0.0, shortfall / self.rate)

    async def acquire(
        self,
        tokens: int = 1,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        while not self.try_acquire(tokens):
            await sleep(self.get_wait_time(tokens))

    @property
    def available_tokens(self) -> float:
        with self._lock:
            return self._level()


__all__ = ["TokenBucketLimiter"]
