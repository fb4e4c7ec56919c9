"""
Producer side of the queue.

Application code that needs to send a notification calls Mailer and
returns immediately; delivery happens later on whichever worker claims
the message.
"""

import logging
from uuid import UUID

from mailqueue.config import get_settings
from mailqueue.constants import SPAN_ENQUEUE_MESSAGE, BodyMime
from mailqueue.db import get_session_context
from mailqueue.db.repository import MessageRepository
from mailqueue.observability.metrics import get_metrics
from mailqueue.observability.tracing import get_tracer
from mailqueue.types.message import EmailPayload

logger = logging.getLogger(__name__)


class Mailer:
    """Queues outbound emails for the delivery workers."""

    def __init__(self, default_from: str | None = None):
        """
        Initialize the mailer.

        Args:
            default_from: Sender address used when none is given.
                Defaults to settings.email_from.
        """
        self.default_from = default_from or get_settings().email_from

    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        body_mime: BodyMime = BodyMime.TEXT,
        from_address: str | None = None,
    ) -> UUID:
        """
        Queue an email.

        Args:
            to: Recipient address.
            subject: Subject line.
            body: Message body.
            body_mime: Content type of the body.
            from_address: Sender address; defaults to default_from.

        Returns:
            Id of the queued message.
        """
        payload = EmailPayload(
            from_address=from_address or self.default_from,
            to=to,
            subject=subject,
            body=body,
            body_mime=body_mime,
        )
        return await self.enqueue(payload)

    async def enqueue(self, payload: EmailPayload) -> UUID:
        """
        Queue a prepared email payload.

        Args:
            payload: The email content.

        Returns:
            Id of the queued message.
        """
        with get_tracer().start_as_current_span(SPAN_ENQUEUE_MESSAGE):
            async with get_session_context() as session:
                message_id = await MessageRepository(session).enqueue(
                    payload.to_payload()
                )

        get_metrics().record_enqueued()
        logger.debug(
            "Queued email",
            extra={"message_id": str(message_id), "to": payload.to}
        )
        return message_id
