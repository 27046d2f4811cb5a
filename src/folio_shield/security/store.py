"""Rate-limit counter stores.

Every store implements fixed-window counting behind one interface:
``record(key, window_ms)`` increments the counter for ``key`` and returns the
count together with the start of the window it falls in.

``RedisRateLimitStore`` is shared between processes and atomic per key.
``MemoryRateLimitStore`` is process-local. ``FallbackRateLimitStore`` composes
the two: it prefers the shared store and switches to the local one while the
shared store is unreachable, reconnecting in the background.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[Any]]

# Errors that mean "shared store unavailable" rather than a programming bug.
STORE_ERRORS: tuple[type[BaseException], ...] = (RedisError, OSError, asyncio.TimeoutError)

# INCR + PEXPIRE on first hit, evaluated atomically server-side.
_RECORD_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""


def now_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True)
class RateLimitRecord:
    """Counter state for one key after recording a hit."""

    count: int
    window_start: float
    window_ms: int

    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_ms

    def retry_after_seconds(self, now_ms: float) -> int:
        """Seconds until the window resets, rounded up and never below one."""
        return max(1, math.ceil((self.reset_at - now_ms) / 1000.0))


class RateLimitStore(Protocol):
    async def record(self, key: str, window_ms: int) -> RateLimitRecord: ...

    async def decrement(self, key: str) -> None: ...

    async def cleanup(self) -> int: ...

    async def reset(self) -> None: ...


class MemoryRateLimitStore:
    """Process-local fixed-window counters.

    Only correct for a single instance; horizontally scaled deployments
    should configure the shared store.
    """

    def __init__(self, clock: Clock = now_ms) -> None:
        self._clock = clock
        self._windows: dict[str, list[float]] = {}

    def __len__(self) -> int:
        return len(self._windows)

    async def record(self, key: str, window_ms: int) -> RateLimitRecord:
        now = self._clock()
        entry = self._windows.get(key)
        if entry is None or now >= entry[1] + entry[2]:
            entry = [0, now, window_ms]
            self._windows[key] = entry
        entry[0] += 1
        return RateLimitRecord(count=int(entry[0]), window_start=entry[1], window_ms=int(entry[2]))

    async def decrement(self, key: str) -> None:
        entry = self._windows.get(key)
        if entry is not None and entry[0] > 0:
            entry[0] -= 1

    async def cleanup(self) -> int:
        """Drop windows that have already expired; returns how many were removed."""
        now = self._clock()
        expired = [key for key, (_, start, window) in self._windows.items() if now >= start + window]
        for key in expired:
            del self._windows[key]
        return len(expired)

    async def reset(self) -> None:
        self._windows.clear()


class RedisRateLimitStore:
    """Fixed-window counters kept in Redis, shared by every instance."""

    def __init__(self, client: Any, prefix: str = "rl:", clock: Clock = now_ms) -> None:
        self._client = client
        self._prefix = prefix
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisRateLimitStore:
        from redis import asyncio as redis_asyncio

        client = redis_asyncio.from_url(
            url,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )
        return cls(client, **kwargs)

    async def record(self, key: str, window_ms: int) -> RateLimitRecord:
        count, ttl = await self._client.eval(_RECORD_SCRIPT, 1, self._prefix + key, int(window_ms))
        now = self._clock()
        ttl = int(ttl) if int(ttl) >= 0 else int(window_ms)
        return RateLimitRecord(
            count=int(count),
            window_start=now - (window_ms - ttl),
            window_ms=int(window_ms),
        )

    async def decrement(self, key: str) -> None:
        await self._client.decr(self._prefix + key)

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def cleanup(self) -> int:
        # Keys expire server-side.
        return 0

    async def reset(self) -> None:
        # Shared counters belong to every instance; nothing is flushed locally.
        return None

    async def close(self) -> None:
        await self._client.aclose()


class FallbackRateLimitStore:
    """Shared store with automatic local fallback.

    While the shared store is down, requests are counted locally and a single
    background task retries the connection with a linear backoff capped at
    ``max_delay_ms``. After ``max_attempts`` failed reconnects the shared store
    is abandoned for the lifetime of the process.
    """

    def __init__(
        self,
        shared: RedisRateLimitStore | None,
        local: MemoryRateLimitStore | None = None,
        *,
        step_ms: int = 100,
        max_delay_ms: int = 3000,
        max_attempts: int = 10,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.shared = shared
        self.local = local or MemoryRateLimitStore()
        self.step_ms = step_ms
        self.max_delay_ms = max_delay_ms
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._shared_available = shared is not None
        self._given_up = False
        self._reconnect_task: asyncio.Task[None] | None = None

    @property
    def using_shared(self) -> bool:
        return self.shared is not None and self._shared_available

    @property
    def given_up(self) -> bool:
        return self._given_up

    def backoff_delay_ms(self, attempt: int) -> int:
        """Delay before reconnect ``attempt`` (1-based)."""
        return min(attempt * self.step_ms, self.max_delay_ms)

    async def record(self, key: str, window_ms: int) -> RateLimitRecord:
        if self.using_shared:
            try:
                return await self.shared.record(key, window_ms)  # type: ignore[union-attr]
            except STORE_ERRORS as exc:
                self._on_shared_failure(exc)
        return await self.local.record(key, window_ms)

    async def decrement(self, key: str) -> None:
        if self.using_shared:
            try:
                await self.shared.decrement(key)  # type: ignore[union-attr]
                return
            except STORE_ERRORS as exc:
                self._on_shared_failure(exc)
        await self.local.decrement(key)

    async def cleanup(self) -> int:
        return await self.local.cleanup()

    async def reset(self) -> None:
        await self.local.reset()

    async def close(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        if self.shared is not None:
            try:
                await self.shared.close()
            except STORE_ERRORS as exc:
                logger.debug("Ignoring error while closing shared store: %s", exc)

    async def wait_reconnected(self) -> None:
        """Wait for an in-flight reconnect loop to finish."""
        if self._reconnect_task is not None:
            await self._reconnect_task

    def _on_shared_failure(self, exc: BaseException) -> None:
        self._shared_available = False
        logger.warning("Shared rate-limit store unavailable, using local counters: %s", exc)
        if self._given_up:
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        for attempt in range(1, self.max_attempts + 1):
            await self._sleep(self.backoff_delay_ms(attempt) / 1000.0)
            try:
                await self.shared.ping()  # type: ignore[union-attr]
            except STORE_ERRORS as exc:
                logger.info(
                    "Shared rate-limit store reconnect attempt %d/%d failed: %s",
                    attempt,
                    self.max_attempts,
                    exc,
                )
                continue
            self._shared_available = True
            logger.info("Shared rate-limit store reconnected after %d attempt(s)", attempt)
            return

        self._given_up = True
        logger.error(
            "Shared rate-limit store connection failed after %d attempts; "
            "staying on local counters until restart",
            self.max_attempts,
        )
