"""
Worker process for delivering queued messages.

Each worker runs its own sweep loop: claim a batch, hand every message to
the transport, record the outcomes. Workers never talk to each other; all
coordination goes through the messages table.
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import Sequence
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mailqueue.config import Settings, get_settings
from mailqueue.constants import (
    DEFAULT_BATCH_SIZE,
    SPAN_CLAIM_BATCH,
    SPAN_DELIVER_MESSAGE,
    SPAN_RECORD_OUTCOMES,
)
from mailqueue.db import close_db, get_engine, get_session_context, init_db
from mailqueue.db.models import Message
from mailqueue.db.repository import MessageRepository
from mailqueue.observability.logging import bind_context, clear_context, setup_logging
from mailqueue.observability.metrics import get_metrics, setup_metrics
from mailqueue.observability.tracing import get_tracer, instrument_sqlalchemy
from mailqueue.types.message import DeliveryResult, SweepResult
from mailqueue.worker.claim import claim_batch
from mailqueue.worker.transports import Transport, deliver, resolve_transport

logger = logging.getLogger(__name__)

STORAGE_ERRORS = (SQLAlchemyError, OSError)

# Bookkeeping calls are idempotent, so retrying them cannot double-count.
_bookkeeping_retry = retry(
    retry=retry_if_exception_type(STORAGE_ERRORS),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, max=2),
    reraise=True,
)


def default_worker_id() -> str:
    return os.uname().nodename


@dataclass
class WorkerConfig:
    """
    Explicit worker configuration.

    Several workers with different configurations can share one process.
    """

    worker_id: str
    batch_size: int = DEFAULT_BATCH_SIZE
    sweep_interval: float = 3.0
    heartbeat_interval: float = 60.0
    max_attempts: int | None = None
    claim_ttl_seconds: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "WorkerConfig":
        settings = settings or get_settings()
        return cls(
            worker_id=settings.worker_id or default_worker_id(),
            batch_size=settings.worker_batch_size,
            sweep_interval=settings.worker_sweep_interval_seconds,
            heartbeat_interval=settings.worker_heartbeat_interval_seconds,
            max_attempts=settings.max_attempts,
            claim_ttl_seconds=settings.claim_ttl_seconds,
        )


class Worker:
    """
    Message worker that periodically sweeps the queue.

    Features:
    - Claims batches through the count/top-up/fetch protocol
    - Delivers a batch concurrently
    - Retries outcome bookkeeping on storage errors
    - Heartbeat to extend claims during slow deliveries
    - Graceful shutdown: the running sweep finishes, no new sweep starts
    """

    def __init__(self, config: WorkerConfig, transport: Transport):
        """
        Initialize the worker.

        Args:
            config: Worker identity, batch size and intervals.
            transport: Capability that delivers one message payload.
        """
        self.config = config
        self.worker_id = config.worker_id
        self._transport = transport

        self._running = False
        self._stop_event = asyncio.Event()
        self._in_flight: set[UUID] = set()
        self._heartbeat_task: asyncio.Task | None = None
        self._metrics = get_metrics()

    def _repo(self, session: AsyncSession) -> MessageRepository:
        return MessageRepository(
            session,
            max_attempts=self.config.max_attempts,
            claim_ttl_seconds=self.config.claim_ttl_seconds,
        )

    async def start(self) -> None:
        """Run sweeps until stop() is called."""
        bind_context(worker_id=self.worker_id)
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "batch_size": self.config.batch_size}
        )

        self._running = True
        self._stop_event.clear()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        try:
            while self._running:
                try:
                    await self.sweep()
                except Exception as e:
                    logger.exception(
                        f"Error in worker loop: {e}",
                        extra={"worker_id": self.worker_id}
                    )

                if not self._running:
                    break
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.config.sweep_interval,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})
        clear_context()

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stop_event.set()

    async def sweep(self) -> SweepResult:
        """
        Run one claim -> deliver -> record cycle.

        Returns:
            Counters for the sweep. An empty result means nothing was claimed.
        """
        batch = await self._claim()
        if not batch:
            return SweepResult()

        result = SweepResult(claimed=len(batch))
        self._in_flight = {message.id for message in batch}
        try:
            delivered = await asyncio.gather(
                *(self._deliver(message) for message in batch),
                return_exceptions=True,
            )
            outcomes = [self._as_result(m, r) for m, r in zip(batch, delivered)]

            succeeded = [m.id for m, r in zip(batch, outcomes) if r.success]
            failed = [m.id for m, r in zip(batch, outcomes) if not r.success]
            result.sent = len(succeeded)
            result.failed = len(failed)

            with get_tracer().start_as_current_span(SPAN_RECORD_OUTCOMES):
                await self._record_sent(succeeded)
                result.terminally_failed = await self._record_failed(failed)
        finally:
            self._in_flight = set()

        logger.info(
            "Sweep finished",
            extra={
                "worker_id": self.worker_id,
                "claimed": result.claimed,
                "sent": result.sent,
                "failed": result.failed,
                "terminally_failed": result.terminally_failed,
            }
        )
        return result

    async def _claim(self) -> Sequence[Message]:
        """Lease a batch; storage errors end the sweep early."""
        try:
            with get_tracer().start_as_current_span(SPAN_CLAIM_BATCH) as span:
                async with get_session_context() as session:
                    batch = await claim_batch(
                        self._repo(session),
                        owner=self.worker_id,
                        batch_size=self.config.batch_size,
                    )
                span.set_attribute("worker_id", self.worker_id)
                span.set_attribute("batch_size", len(batch))
        except STORAGE_ERRORS as e:
            logger.exception(
                f"Failed to claim a batch: {e}",
                extra={"worker_id": self.worker_id}
            )
            self._metrics.record_sweep_error(self.worker_id, "claim")
            return []

        self._metrics.record_claims_acquired(self.worker_id, len(batch))
        return batch

    def _as_result(
        self,
        message: Message,
        outcome: DeliveryResult | BaseException,
    ) -> DeliveryResult:
        """Count an unexpected error in one delivery as a failure of that message only."""
        if isinstance(outcome, DeliveryResult):
            return outcome
        if not isinstance(outcome, Exception):
            raise outcome
        logger.error(
            f"Delivery crashed: {outcome!r}",
            extra={"worker_id": self.worker_id, "message_id": str(message.id)}
        )
        return DeliveryResult.failed(f"Delivery error: {outcome}")

    async def _deliver(self, message: Message) -> DeliveryResult:
        with get_tracer().start_as_current_span(SPAN_DELIVER_MESSAGE) as span:
            span.set_attribute("message_id", str(message.id))
            span.set_attribute("failed_attempts", message.failed_attempts)

            result = await deliver(self._transport, message.payload)

            span.set_attribute("success", result.success)

        self._metrics.record_delivery(
            self.worker_id, result.success, (result.duration_ms or 0) / 1000
        )
        if not result.success:
            logger.warning(
                "Delivery failed",
                extra={
                    "message_id": str(message.id),
                    "error": result.error,
                    "attempt": message.failed_attempts + 1,
                }
            )
        return result

    @_bookkeeping_retry
    async def _mark_sent(self, message_ids: list[UUID]) -> int:
        async with get_session_context() as session:
            return await self._repo(session).record_sent(message_ids)

    @_bookkeeping_retry
    async def _mark_failed(self, message_ids: list[UUID]) -> int:
        async with get_session_context() as session:
            records = await self._repo(session).record_failed(
                self.worker_id, message_ids
            )
        return sum(1 for record in records if record.terminally_failed)

    async def _record_sent(self, message_ids: list[UUID]) -> None:
        if not message_ids:
            return
        try:
            await self._mark_sent(message_ids)
        except STORAGE_ERRORS:
            logger.exception(
                "Failed to mark messages as sent; they might get sent again",
                extra={"worker_id": self.worker_id, "message_count": len(message_ids)}
            )
            self._metrics.record_sweep_error(self.worker_id, "record_sent")

    async def _record_failed(self, message_ids: list[UUID]) -> int:
        if not message_ids:
            return 0
        try:
            terminal = await self._mark_failed(message_ids)
        except STORAGE_ERRORS:
            logger.exception(
                "Failed to mark messages as failed; they might get one extra attempt",
                extra={"worker_id": self.worker_id, "message_count": len(message_ids)}
            )
            self._metrics.record_sweep_error(self.worker_id, "record_failed")
            return 0

        self._metrics.record_terminal_failures(terminal)
        return terminal

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend claims on in-flight messages.

        This keeps slow deliveries from being released by the reaper or
        re-claimed by another worker.
        """
        while self._running:
            try:
                await asyncio.sleep(self.config.heartbeat_interval)

                if not self._in_flight:
                    continue

                async with get_session_context() as session:
                    extended = await self._repo(session).extend_claims(
                        self.worker_id, list(self._in_flight)
                    )
                logger.debug(
                    "Extended claims",
                    extra={"worker_id": self.worker_id, "message_count": extended}
                )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    if settings.metrics_enabled:
        setup_metrics(settings.prometheus_port)
    await init_db()
    if settings.otel_enabled:
        instrument_sqlalchemy(get_engine())

    worker = Worker(
        WorkerConfig.from_settings(settings),
        resolve_transport(settings.delivery_transport),
    )

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
