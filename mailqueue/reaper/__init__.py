"""
Reaper module.
Contains the claim reaper for recovering messages from crashed workers.
"""

from mailqueue.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
