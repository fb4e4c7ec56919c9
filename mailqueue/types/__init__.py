"""
Type definitions for the mail queue.
"""

from mailqueue.types.message import (
    DeliveryResult,
    EmailPayload,
    SweepResult,
)

__all__ = [
    "EmailPayload",
    "DeliveryResult",
    "SweepResult",
]
