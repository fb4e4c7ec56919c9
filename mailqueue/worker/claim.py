"""
Batch claim protocol.

A worker leases its batch in three steps against the queue store:

1. count the pending messages it already owns (left over from an
   interrupted sweep, which are reused rather than re-claimed)
2. top that up to batch_size with claim_unowned, a single conditional
   update that only takes messages still unowned at write time
3. fetch up to batch_size of its owned messages

Step 2 never reads candidate ids first and writes ownership second, so two
workers racing between steps 1 and 2 cannot both claim a message.
"""

import logging
from typing import Sequence

from mailqueue.db.models import Message
from mailqueue.db.repository import MessageRepository

logger = logging.getLogger(__name__)


async def claim_batch(
    repo: MessageRepository,
    owner: str,
    batch_size: int,
) -> Sequence[Message]:
    """
    Lease up to batch_size pending messages for owner.

    The caller owns the session and commits after this returns.

    Args:
        repo: Repository bound to the caller's session.
        owner: The worker identity.
        batch_size: Maximum messages to hold at once.

    Returns:
        The messages to deliver in this sweep.
    """
    already = await repo.count_owned_by(owner)
    if already:
        logger.info(
            f"Resuming {already} previously claimed messages",
            extra={"owner": owner}
        )

    if already < batch_size:
        await repo.claim_unowned(owner, batch_size - already)

    return await repo.fetch_owned_by(owner, batch_size)
