"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class MessageState(StrEnum):
    """
    Logical message states.

    State transitions:
    - PENDING -> SENT (delivery succeeded)
    - PENDING -> PENDING (delivery failed, attempts remain)
    - PENDING -> FAILED (max attempts reached)

    SENT and FAILED are absorbing.
    """

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class BodyMime(StrEnum):
    """Supported body content types."""

    TEXT = "text/plain"
    HTML = "text/html"


# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BATCH_SIZE = 10
DEFAULT_CLAIM_TTL_SECONDS = 300

# Metrics names
METRIC_QUEUE_DEPTH = "mail_queue_depth"
METRIC_MESSAGES_ENQUEUED = "messages_enqueued_total"
METRIC_MESSAGES_DELIVERED = "messages_delivered_total"
METRIC_MESSAGES_TERMINALLY_FAILED = "messages_terminally_failed_total"
METRIC_DELIVERY_DURATION = "message_delivery_duration_seconds"
METRIC_CLAIMS_ACQUIRED = "claims_acquired_total"
METRIC_CLAIMS_EXPIRED = "claims_expired_total"
METRIC_SWEEP_ERRORS = "sweep_errors_total"

# Trace span names
SPAN_CLAIM_BATCH = "claim_batch"
SPAN_DELIVER_MESSAGE = "deliver_message"
SPAN_RECORD_OUTCOMES = "record_outcomes"
SPAN_ENQUEUE_MESSAGE = "enqueue_message"
