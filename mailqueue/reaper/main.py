"""
Claim reaper for recovering messages held by crashed workers.

A worker that dies mid-sweep leaves its messages claimed. Once a claim
goes unrefreshed for longer than the claim TTL, the reaper clears the
owner so any worker can pick the message up again.
"""

import asyncio
import logging
import signal

from mailqueue.config import get_settings
from mailqueue.db import close_db, get_session_context, init_db
from mailqueue.db.repository import MessageRepository
from mailqueue.observability.logging import setup_logging
from mailqueue.observability.metrics import get_metrics, setup_metrics

logger = logging.getLogger(__name__)


class Reaper:
    """
    Claim reaper that releases expired claims.

    Runs periodically to:
    1. Find pending messages whose claimed_at is older than the claim TTL
    2. Clear their owner so they become claimable
    3. Refresh the queue depth gauge
    """

    def __init__(
        self,
        interval_seconds: float | None = None,
        claim_ttl_seconds: int | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            interval_seconds: Seconds between reaper runs.
            claim_ttl_seconds: Claim age after which a claim is released.
        """
        settings = get_settings()
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self.claim_ttl_seconds = claim_ttl_seconds
        self._running = False
        self._stop_event = asyncio.Event()
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True
        self._stop_event.clear()

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False
        self._stop_event.set()

    async def run_once(self) -> int:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Number of claims released.
        """
        async with get_session_context() as session:
            repo = MessageRepository(session, claim_ttl_seconds=self.claim_ttl_seconds)
            released = await repo.release_expired_claims()
            depth = await repo.get_queue_depth()

        self._metrics.record_claims_expired(released)
        self._metrics.update_queue_depth(depth)

        if released > 0:
            logger.warning(
                f"Released {released} expired claims",
                extra={"queue_depth": depth}
            )
        return released


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging()
    if settings.metrics_enabled:
        setup_metrics(settings.prometheus_port)
    await init_db()

    reaper = Reaper()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
