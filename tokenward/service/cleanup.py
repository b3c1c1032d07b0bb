"""Background sweeper that purges stale refresh token records.

The scheduler is owned by whoever starts it (the app lifespan in production).
The first sweep runs as soon as it starts, then once per interval.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from tokenward.logging import get_logger

if TYPE_CHECKING:
    from tokenward.service.refresh_tokens import RefreshTokenService

logger = get_logger(__name__)

DEFAULT_INTERVAL_HOURS = 6.0


class TokenCleanupScheduler:
    """Periodically hard-deletes expired, idle and long-revoked tokens."""

    def __init__(
        self,
        service: "RefreshTokenService",
        *,
        interval_hours: float = DEFAULT_INTERVAL_HOURS,
    ) -> None:
        if interval_hours <= 0:
            raise ValueError("interval_hours must be positive")
        self.service = service
        self.interval_seconds = interval_hours * 3600
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> int:
        """Run a single sweep off the event loop and return the purge count."""
        purged = await asyncio.to_thread(self.service.purge_stale)
        self.runs += 1
        logger.info("token_cleanup_completed", tokens_purged=purged)
        return purged

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            logger.warning("token_cleanup_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("token_cleanup_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the loop; safe to call more than once."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("token_cleanup_stopped")

    async def _run_loop(self) -> None:
        try:
            while self._running:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error(
                        "token_cleanup_failed",
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("token_cleanup_task_cancelled")
            raise


async def start_cleanup_scheduler(
    service: "RefreshTokenService",
    *,
    interval_hours: float = DEFAULT_INTERVAL_HOURS,
) -> Callable[[], Awaitable[None]]:
    """Start a sweeper and return the coroutine function that stops it."""
    scheduler = TokenCleanupScheduler(service, interval_hours=interval_hours)
    await scheduler.start()
    return scheduler.stop
