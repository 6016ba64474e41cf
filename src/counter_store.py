"""
Shared named-integer counters backing the rate limiter.

The limiter only needs four primitives: atomic increment-by-N, get,
time-to-live query and "set expiry only if unset". RedisCounterStore
shares counters between processes; InMemoryCounterStore shares them
between limiters inside one process (and stands in for Redis in tests).
"""

import time
from typing import Callable, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from errors import BackingStoreUnavailable


class CounterStore:
    """Interface shared by the counter backends."""

    async def increment(self, key: str, amount: int) -> int:
        """Atomically add `amount` and return the new value."""
        raise NotImplementedError

    async def get(self, key: str) -> int:
        raise NotImplementedError

    async def ttl(self, key: str) -> Optional[float]:
        """Seconds until expiry, or None when the key is missing or has no expiry."""
        raise NotImplementedError

    async def expire_if_unset(self, key: str, seconds: float) -> bool:
        """Arm an expiry only when none is armed. Returns True if it was set."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryCounterStore(CounterStore):
    """Process-local counters with expiry, driven by an injectable clock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._values: Dict[str, int] = {}
        self._expiry: Dict[str, float] = {}

    def _purge(self, key: str) -> None:
        expiry = self._expiry.get(key)
        if expiry is not None and self._clock() >= expiry:
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    async def increment(self, key: str, amount: int) -> int:
        self._purge(key)
        self._values[key] = self._values.get(key, 0) + amount
        return self._values[key]

    async def get(self, key: str) -> int:
        self._purge(key)
        return self._values.get(key, 0)

    async def ttl(self, key: str) -> Optional[float]:
        self._purge(key)
        expiry = self._expiry.get(key)
        if key not in self._values or expiry is None:
            return None
        return max(0.0, expiry - self._clock())

    async def expire_if_unset(self, key: str, seconds: float) -> bool:
        self._purge(key)
        if key not in self._values or key in self._expiry:
            return False
        self._expiry[key] = self._clock() + seconds
        return True


class RedisCounterStore(CounterStore):
    """Counters in Redis, shared by every crawler process using the same URL."""

    def __init__(self, url: str):
        self.url = url
        self._client = aioredis.from_url(url, decode_responses=True)

    async def increment(self, key: str, amount: int) -> int:
        try:
            return int(await self._client.incrby(key, amount))
        except (RedisError, OSError) as exc:
            raise BackingStoreUnavailable(f"redis incrby {key} failed: {exc}") from exc

    async def get(self, key: str) -> int:
        try:
            value = await self._client.get(key)
        except (RedisError, OSError) as exc:
            raise BackingStoreUnavailable(f"redis get {key} failed: {exc}") from exc
        return int(value) if value is not None else 0

    async def ttl(self, key: str) -> Optional[float]:
        try:
            millis = int(await self._client.pttl(key))
        except (RedisError, OSError) as exc:
            raise BackingStoreUnavailable(f"redis pttl {key} failed: {exc}") from exc
        # -2: missing key, -1: no expiry
        if millis < 0:
            return None
        return millis / 1000.0

    async def expire_if_unset(self, key: str, seconds: float) -> bool:
        try:
            return bool(await self._client.pexpire(key, int(seconds * 1000), nx=True))
        except (RedisError, OSError) as exc:
            raise BackingStoreUnavailable(f"redis pexpire {key} failed: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()
