"""
Message repository for database operations.
Implements the queue store: enqueueing, claiming and outcome recording.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple, Sequence
from uuid import UUID

from sqlalchemy import and_, case, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.config import get_settings
from mailqueue.constants import MessageState
from mailqueue.db.models import Message

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FailureRecord(NamedTuple):
    """Post-update state of a message whose delivery failed."""

    id: UUID
    failed_attempts: int
    terminally_failed: bool


class MessageRepository:
    """
    Repository for message queue operations.

    Every state transition is a single conditional statement so that
    concurrent workers never need a read-modify-write round trip:
    - Claiming uses UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED)
      and re-checks claimability in the outer WHERE
    - Outcome recording only touches messages that are still pending
    - Failure recording is guarded by the claim owner, so a repeated call
      does not double-count attempts
    """

    def __init__(
        self,
        session: AsyncSession,
        max_attempts: int | None = None,
        claim_ttl_seconds: int | None = None,
    ):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            max_attempts: Failed attempts after which a message is abandoned.
            claim_ttl_seconds: Seconds after which an unrefreshed claim expires.
        """
        settings = get_settings()
        self._session = session
        self.max_attempts = max_attempts or settings.max_attempts
        self.claim_ttl = timedelta(
            seconds=claim_ttl_seconds or settings.claim_ttl_seconds
        )

    @staticmethod
    def _pending():
        return and_(
            Message.sent_at.is_(None),
            Message.terminally_failed.is_(False),
        )

    def _claimable(self, now: datetime):
        return and_(
            self._pending(),
            or_(
                Message.owner.is_(None),
                Message.claimed_at < now - self.claim_ttl,
            ),
        )

    async def enqueue(self, payload: dict[str, Any]) -> UUID:
        """
        Insert a new pending message.

        Args:
            payload: Opaque message content.

        Returns:
            The new message id.
        """
        stmt = insert(Message).values(payload=payload).returning(Message.id)
        result = await self._session.execute(stmt)
        message_id = result.scalar_one()

        logger.info("Enqueued message", extra={"message_id": str(message_id)})
        return message_id

    async def get_message(self, message_id: UUID) -> Message | None:
        """
        Get a message by ID.

        Args:
            message_id: The message UUID.

        Returns:
            The Message or None if not found.
        """
        stmt = (
            select(Message)
            .where(Message.id == message_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_owned_by(self, owner: str) -> int:
        """
        Count pending messages currently claimed by an owner.

        Args:
            owner: The worker identity.

        Returns:
            Number of pending messages owned by the worker.
        """
        stmt = (
            select(func.count())
            .select_from(Message)
            .where(and_(Message.owner == owner, self._pending()))
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def claim_unowned(self, owner: str, limit: int) -> list[UUID]:
        """
        Claim up to `limit` unowned pending messages for an owner.

        Messages whose claim has expired count as unowned. The candidate
        rows are locked with SKIP LOCKED and the outer WHERE re-checks
        claimability, so a message is never claimed by two owners at once.

        Args:
            owner: The worker identity.
            limit: Maximum number of messages to claim.

        Returns:
            Ids of the newly claimed messages.
        """
        if limit <= 0:
            return []

        now = utcnow()
        candidates = (
            select(Message.id)
            .where(self._claimable(now))
            .limit(limit)
            .with_for_update(skip_locked=True)
            .correlate(None)
        )
        stmt = (
            update(Message)
            .where(and_(Message.id.in_(candidates), self._claimable(now)))
            .values(owner=owner, claimed_at=now, updated_at=now)
            .returning(Message.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        claimed = list(result.scalars().all())

        if claimed:
            logger.info(
                f"Claimed {len(claimed)} messages",
                extra={"owner": owner, "message_count": len(claimed)}
            )
        return claimed

    async def fetch_owned_by(self, owner: str, limit: int) -> Sequence[Message]:
        """
        Fetch pending messages claimed by an owner.

        Args:
            owner: The worker identity.
            limit: Maximum number of messages to return.

        Returns:
            At most `limit` messages.
        """
        if limit <= 0:
            return []

        stmt = (
            select(Message)
            .where(and_(Message.owner == owner, self._pending()))
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def record_sent(self, message_ids: Sequence[UUID]) -> int:
        """
        Mark messages as sent and release their claims.

        Only pending messages are touched, which keeps sent_at write-once
        and makes the call safe to repeat.

        Args:
            message_ids: Ids of successfully delivered messages.

        Returns:
            Number of messages transitioned to sent.
        """
        if not message_ids:
            return 0

        now = utcnow()
        stmt = (
            update(Message)
            .where(and_(Message.id.in_(list(message_ids)), self._pending()))
            .values(sent_at=now, owner=None, claimed_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def record_failed(
        self,
        owner: str,
        message_ids: Sequence[UUID],
    ) -> list[FailureRecord]:
        """
        Count a failed delivery attempt and release the claims.

        Messages reaching max_attempts are marked terminally failed. The
        update only applies while `owner` still holds the claim, so
        repeating the call after a lost acknowledgement has no effect.

        Args:
            owner: The worker identity that attempted delivery.
            message_ids: Ids of messages whose delivery failed.

        Returns:
            Post-update attempt counters of the affected messages.
        """
        if not message_ids:
            return []

        now = utcnow()
        next_attempts = Message.failed_attempts + 1
        stmt = (
            update(Message)
            .where(
                and_(
                    Message.id.in_(list(message_ids)),
                    Message.owner == owner,
                    self._pending(),
                )
            )
            .values(
                failed_attempts=next_attempts,
                terminally_failed=case(
                    (next_attempts >= self.max_attempts, True),
                    else_=False,
                ),
                owner=None,
                claimed_at=None,
                updated_at=now,
            )
            .returning(
                Message.id,
                Message.failed_attempts,
                Message.terminally_failed,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        records = [FailureRecord(*row) for row in result.all()]

        for record in records:
            if record.terminally_failed:
                logger.warning(
                    f"Message abandoned after {record.failed_attempts} attempts",
                    extra={"message_id": str(record.id)}
                )
        return records

    async def extend_claims(self, owner: str, message_ids: Sequence[UUID]) -> int:
        """
        Refresh the claim timestamp on messages still owned by `owner`.

        Args:
            owner: The worker identity.
            message_ids: Ids of in-flight messages.

        Returns:
            Number of claims extended.
        """
        if not message_ids:
            return 0

        now = utcnow()
        stmt = (
            update(Message)
            .where(
                and_(
                    Message.id.in_(list(message_ids)),
                    Message.owner == owner,
                    self._pending(),
                )
            )
            .values(claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def release_expired_claims(self) -> int:
        """
        Release claims that have not been refreshed within the claim TTL.

        This is called by the reaper to recover from worker crashes.

        Returns:
            Number of released claims.
        """
        now = utcnow()
        stmt = (
            update(Message)
            .where(
                and_(
                    self._pending(),
                    Message.owner.is_not(None),
                    Message.claimed_at < now - self.claim_ttl,
                )
            )
            .values(owner=None, claimed_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(f"Released {count} expired claims")
        return count

    async def get_queue_depth(self) -> int:
        """
        Get the number of pending messages.

        Returns:
            Number of pending messages.
        """
        stmt = select(func.count()).select_from(Message).where(self._pending())
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def get_queue_stats(self) -> dict[str, int]:
        """
        Get message counts by logical state.

        Returns:
            Dictionary of state -> count, with every state present.
        """
        is_sent = Message.sent_at.is_not(None)
        stmt = (
            select(is_sent, Message.terminally_failed, func.count())
            .group_by(is_sent, Message.terminally_failed)
        )
        result = await self._session.execute(stmt)

        stats = {s.value: 0 for s in MessageState}
        for sent, terminal, count in result.all():
            if sent:
                stats[MessageState.SENT] += count
            elif terminal:
                stats[MessageState.FAILED] += count
            else:
                stats[MessageState.PENDING] += count
        return stats
