"""
Worker module.
Contains the delivery worker, the claim protocol and the transport registry.
"""

from mailqueue.worker.main import Worker, WorkerConfig, run

__all__ = ["Worker", "WorkerConfig", "run"]
