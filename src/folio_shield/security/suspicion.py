"""Coarse per-IP burst detection and temporary bans.

A client can trip the detector while staying under every individual tier by
spreading requests across endpoints. Clients that keep getting rejected for
abuse collect strikes and are banned outright for a while.
"""

from __future__ import annotations

import math
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass


class SuspiciousActivityDetector:
    """Sliding-window request counter keyed by client IP.

    Timestamps older than the window are pruned on every check. Keys whose
    window has emptied are evicted by :meth:`evict_idle`, and the number of
    tracked keys is capped with least-recently-seen eviction.
    """

    def __init__(
        self,
        threshold: int = 100,
        window_seconds: float = 60.0,
        *,
        max_tracked_keys: int = 50_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.max_tracked_keys = max_tracked_keys
        self._clock = clock
        self._hits: OrderedDict[str, deque[float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._hits)

    def __contains__(self, key: object) -> bool:
        return key in self._hits

    def check(self, key: str) -> bool:
        """Record a request and return True if ``key`` exceeded the threshold."""
        now = self._clock()
        hits = self._hits.get(key)
        if hits is None:
            hits = deque()
            self._hits[key] = hits
        else:
            self._hits.move_to_end(key)
        self._prune(hits, now)
        hits.append(now)

        while len(self._hits) > self.max_tracked_keys:
            self._hits.popitem(last=False)

        return len(hits) > self.threshold

    def count(self, key: str) -> int:
        hits = self._hits.get(key)
        if hits is None:
            return 0
        self._prune(hits, self._clock())
        return len(hits)

    def evict_idle(self) -> int:
        """Remove keys with no timestamps left inside the window."""
        now = self._clock()
        idle = []
        for key, hits in self._hits.items():
            self._prune(hits, now)
            if not hits:
                idle.append(key)
        for key in idle:
            del self._hits[key]
        return len(idle)

    def reset(self) -> None:
        self._hits.clear()

    def _prune(self, hits: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()


@dataclass
class Ban:
    until: float
    reason: str


class TemporaryBanList:
    """Expiring per-IP bans fed by abuse strikes.

    ``strikes`` strikes inside ``strike_window_seconds`` ban the key for
    ``ban_seconds``. Expired bans are dropped lazily on lookup and in bulk by
    :meth:`evict_expired`.
    """

    def __init__(
        self,
        strikes: int = 20,
        strike_window_seconds: float = 600.0,
        ban_seconds: float = 86400.0,
        *,
        max_tracked_keys: int = 50_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.strikes = max(1, strikes)
        self.strike_window_seconds = strike_window_seconds
        self.ban_seconds = ban_seconds
        self.max_tracked_keys = max_tracked_keys
        self._clock = clock
        self._strikes: OrderedDict[str, deque[float]] = OrderedDict()
        self._bans: dict[str, Ban] = {}

    def __len__(self) -> int:
        return len(self._bans)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def get(self, key: str) -> Ban | None:
        ban = self._bans.get(key)
        if ban is not None and ban.until <= self._clock():
            del self._bans[key]
            return None
        return ban

    def retry_after(self, key: str) -> int | None:
        """Whole seconds until the ban on ``key`` lifts, rounded up."""
        ban = self.get(key)
        if ban is None:
            return None
        return max(1, math.ceil(ban.until - self._clock()))

    def ban(self, key: str, reason: str, duration: float | None = None) -> Ban:
        ban = Ban(until=self._clock() + (duration or self.ban_seconds), reason=reason)
        self._bans[key] = ban
        self._strikes.pop(key, None)
        return ban

    def strike(self, key: str, reason: str) -> Ban | None:
        """Record one strike; returns the new ban if this strike triggered one."""
        if self.get(key) is not None:
            return None
        now = self._clock()
        strikes = self._strikes.get(key)
        if strikes is None:
            strikes = deque()
            self._strikes[key] = strikes
        else:
            self._strikes.move_to_end(key)
        cutoff = now - self.strike_window_seconds
        while strikes and strikes[0] <= cutoff:
            strikes.popleft()
        strikes.append(now)

        while len(self._strikes) > self.max_tracked_keys:
            self._strikes.popitem(last=False)

        if len(strikes) >= self.strikes:
            return self.ban(key, reason)
        return None

    def evict_expired(self) -> int:
        """Drop lapsed bans and strike histories; returns the number of bans lifted."""
        now = self._clock()
        expired = [key for key, ban in self._bans.items() if ban.until <= now]
        for key in expired:
            del self._bans[key]

        cutoff = now - self.strike_window_seconds
        stale = [key for key, strikes in self._strikes.items() if not strikes or strikes[-1] <= cutoff]
        for key in stale:
            del self._strikes[key]
        return len(expired)

    def reset(self) -> None:
        self._strikes.clear()
        self._bans.clear()
