"""
SQLAlchemy database models.
Defines the messages table.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Uuid,
    false,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from mailqueue.constants import MessageState


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Message(Base):
    """
    Message model representing one outbound message in the queue.

    This is the authoritative source of truth for message state.
    Workers coordinate exclusively through this table.

    Key constraints:
    - sent_at and terminally_failed are write-once and mutually exclusive
    - owner and claimed_at form a cooperative lease, cleared on every
      exit from a claim
    - failed_attempts only ever increases
    """

    __tablename__ = "messages"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    # Opaque content: from, to, subject, body, body_mime
    payload: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
        default=dict,
    )

    # Claim management
    owner: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Outcome tracking
    sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    failed_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    terminally_failed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        # Index for claim polling over pending messages
        Index(
            "ix_messages_pending",
            "owner",
            "claimed_at",
            postgresql_where=text("sent_at IS NULL AND NOT terminally_failed"),
        ),
    )

    @property
    def state(self) -> MessageState:
        """Derive the logical state from the stored fields."""
        if self.sent_at is not None:
            return MessageState.SENT
        if self.terminally_failed:
            return MessageState.FAILED
        return MessageState.PENDING

    @property
    def is_pending(self) -> bool:
        """Check if the message may still be delivered."""
        return self.state == MessageState.PENDING

    def __repr__(self) -> str:
        return (
            f"Message(id={self.id}, state={self.state}, "
            f"owner={self.owner}, failed_attempts={self.failed_attempts})"
        )
