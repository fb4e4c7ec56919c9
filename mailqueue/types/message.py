"""
Message-related type definitions.
"""

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from mailqueue.constants import BodyMime


class EmailPayload(BaseModel):
    """
    Content of an outbound email.
    Stored as the opaque payload of a queued message.
    """

    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(alias="from")
    to: str
    subject: str
    body: str
    body_mime: BodyMime = BodyMime.TEXT

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the stored payload shape."""
        return self.model_dump(mode="json", by_alias=True)


class DeliveryResult(BaseModel):
    """
    Result of a delivery attempt.
    Returned by transports after handing a message off.
    """

    success: bool
    error: str | None = None
    duration_ms: float | None = None

    @classmethod
    def ok(cls) -> "DeliveryResult":
        return cls(success=True)

    @classmethod
    def failed(cls, error: str) -> "DeliveryResult":
        return cls(success=False, error=error)


@dataclass
class SweepResult:
    """Outcome counters of a single worker sweep."""

    claimed: int = 0
    sent: int = 0
    failed: int = 0
    terminally_failed: int = 0

    @property
    def is_empty(self) -> bool:
        """Check if the sweep found nothing to deliver."""
        return self.claimed == 0
