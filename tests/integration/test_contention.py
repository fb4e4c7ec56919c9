"""
Integration tests for several workers sharing one queue.
"""

import asyncio
from collections import Counter

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from mailqueue.db import get_session_context
from mailqueue.db.repository import MessageRepository
from mailqueue.producer import Mailer
from mailqueue.types.message import DeliveryResult
from mailqueue.worker.main import Worker, WorkerConfig

WORKER_COUNT = 4
MESSAGE_COUNT = 60
PRODUCER_COUNT = 3


class CountingTransport:
    """Counts deliveries per subject, optionally failing some first attempts."""

    def __init__(self, flaky_every: int = 0):
        self.flaky_every = flaky_every
        self.deliveries: Counter[str] = Counter()
        self.attempts: Counter[str] = Counter()

    async def __call__(self, payload: dict) -> DeliveryResult:
        subject = payload["subject"]
        self.attempts[subject] += 1
        await asyncio.sleep(0)

        index = int(subject.split("-")[1])
        if (
            self.flaky_every
            and index % self.flaky_every == 0
            and self.attempts[subject] == 1
        ):
            return DeliveryResult.failed("Temporary failure")

        self.deliveries[subject] += 1
        return DeliveryResult.ok()


async def produce(mailer: Mailer, producer: int) -> None:
    for index in range(producer, MESSAGE_COUNT, PRODUCER_COUNT):
        await mailer.send(
            to=f"user{index}@example.com",
            subject=f"message-{index}",
            body="Your report is ready.",
        )
        await asyncio.sleep(0)


async def wait_until_drained(timeout: float = 30.0) -> dict[str, int]:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        async with get_session_context() as session:
            stats = await MessageRepository(session).get_queue_stats()
        if stats["pending"] == 0 and sum(stats.values()) == MESSAGE_COUNT:
            return stats
        if loop.time() > deadline:
            raise AssertionError(f"Queue not drained: {stats}")
        await asyncio.sleep(0.05)


class TestWorkerContention:
    """Several workers and producers running at the same time."""

    async def _run(self, transport: CountingTransport) -> dict[str, int]:
        workers = [
            Worker(
                WorkerConfig(
                    worker_id=f"worker-{n}",
                    batch_size=5,
                    sweep_interval=0.05,
                    max_attempts=3,
                    claim_ttl_seconds=60,
                ),
                transport,
            )
            for n in range(WORKER_COUNT)
        ]
        tasks = [asyncio.create_task(worker.start()) for worker in workers]

        try:
            mailer = Mailer(default_from="reports@example.com")
            await asyncio.gather(
                *(produce(mailer, producer) for producer in range(PRODUCER_COUNT))
            )
            return await wait_until_drained()
        finally:
            for worker in workers:
                await worker.stop()
            await asyncio.wait_for(asyncio.gather(*tasks), timeout=10)

    @pytest.mark.asyncio
    async def test_each_message_delivered_once(self, queue_db: AsyncEngine):
        """Test that concurrent workers never deliver a message twice."""
        transport = CountingTransport()

        stats = await self._run(transport)

        assert stats == {"pending": 0, "sent": MESSAGE_COUNT, "failed": 0}
        assert len(transport.deliveries) == MESSAGE_COUNT
        assert set(transport.deliveries.values()) == {1}

    @pytest.mark.asyncio
    async def test_flaky_transport_settles_every_message(self, queue_db: AsyncEngine):
        """Test that retried messages still end up delivered exactly once."""
        transport = CountingTransport(flaky_every=3)

        stats = await self._run(transport)

        assert stats["sent"] + stats["failed"] == MESSAGE_COUNT
        assert stats == {"pending": 0, "sent": MESSAGE_COUNT, "failed": 0}
        assert set(transport.deliveries.values()) == {1}

        retried = [s for s, n in transport.attempts.items() if n == 2]
        assert len(retried) == MESSAGE_COUNT // 3
