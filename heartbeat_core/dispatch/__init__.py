"""
Directive dispatchers.

Runtimes and the scheduler depend only on ``Dispatcher``; ``HttpDispatcher``
is the default concrete implementation.
"""

from .base import CallableDispatcher, DispatchError, Dispatcher
from .http import HttpDispatcher

__all__ = [
    "Dispatcher",
    "DispatchError",
    "CallableDispatcher",
    "HttpDispatcher",
]
