"""
Persistence for agent state, run audit, event last-fire and reminders.
"""

from .interfaces import StateStore
from .sqlite import SQLiteStateStore

__all__ = [
    "StateStore",
    "SQLiteStateStore",
]
