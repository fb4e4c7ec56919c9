"""
Distributed Mail Queue

A database-backed outbound message queue that any number of worker processes
drain cooperatively, with storage-enforced claims, bounded retries and
crash recovery through claim expiry.
"""

__version__ = "1.0.0"
