from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from hana.logging import get_logger
from hana.service.rate_limit import RateLimiter
from hana.storage.models import SweepResult

logger = get_logger(__name__)

MIN_SWEEP_INTERVAL_SECONDS = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExpirySweeper:
    """Purges expired or revoked credential rows.

    Each run recomputes eligibility from the row's own expiry and revoked
    fields at the moment of the sweep, so running twice is harmless.
    """

    def __init__(
        self,
        store,
        *,
        limiters: Iterable[RateLimiter] = (),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.limiters = list(limiters)
        self._clock = clock

    def sweep(self) -> SweepResult:
        result = self.store.sweep_expired(now=self._clock())
        logger.info(
            "sweep_completed",
            refresh_tokens=result.refresh_tokens,
            sessions=result.sessions,
            verification_codes=result.verification_codes,
        )
        return result

    def prune_limiters(self) -> int:
        return sum(limiter.prune() for limiter in self.limiters)

    async def run_once(self) -> Optional[SweepResult]:
        """Sweep in a worker thread; failures are logged and reported as None."""
        try:
            result = await asyncio.to_thread(self.sweep)
            self.prune_limiters()
            return result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("sweep_failed", error_type=type(exc).__name__, error=str(exc))
            return None

    async def run_periodic(self, interval_seconds: float) -> None:
        """Background loop that sweeps every ``interval_seconds``."""

        interval = max(interval_seconds, MIN_SWEEP_INTERVAL_SECONDS)
        try:
            while True:
                await asyncio.sleep(interval)
                await self.run_once()
        except asyncio.CancelledError:
            logger.info("sweep_task_cancelled")
