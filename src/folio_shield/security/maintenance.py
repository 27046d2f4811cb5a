"""Periodic eviction of stale limiter state."""

from __future__ import annotations

import logging

from folio_shield.security.pipeline import SecurityState
from folio_shield.services.workers import IntervalWorker

logger = logging.getLogger(__name__)


class SecurityMaintenanceWorker(IntervalWorker):
    """Sweeps expired local rate-limit windows, idle suspicion keys and lapsed bans."""

    name = "security-maintenance"

    def __init__(self, state: SecurityState, interval: float) -> None:
        super().__init__(interval)
        self.state = state

    async def tick(self) -> None:
        removed = await self.state.cleanup()
        logger.info(
            "Security cleanup completed: %d rate-limit window(s), %d suspicion key(s), "
            "%d ban(s) evicted",
            removed["rate_limit_windows"],
            removed["suspicion_keys"],
            removed["bans"],
        )
