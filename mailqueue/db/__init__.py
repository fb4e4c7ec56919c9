"""
Database module.
Contains database connection, models, and the queue store repository.
"""

from mailqueue.db.connection import (
    close_db,
    get_engine,
    get_session_context,
    get_test_engine,
    init_db,
)
from mailqueue.db.models import Base, Message
from mailqueue.db.repository import FailureRecord, MessageRepository

__all__ = [
    "get_session_context",
    "get_engine",
    "get_test_engine",
    "init_db",
    "close_db",
    "Message",
    "Base",
    "MessageRepository",
    "FailureRecord",
]
