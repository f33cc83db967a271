"""
DISPATCH — Base Classes
=======================

Interface to the downstream dispatcher that executes a directive.

The dispatcher is opaque to this package: it may call an LLM, run
arbitrarily many tool calls and take minutes to return. Its only contract is

    dispatch(session_id, directive, principal_id) -> result text

Any exception it raises is treated as a transient failure by the caller; the
result text is inspected only for rate-limit signatures.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable


class DispatchError(Exception):
    """A directive could not be delivered or executed."""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class Dispatcher(ABC):
    """Abstract base for directive dispatchers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier used in logs, e.g. 'http'."""
        ...

    @abstractmethod
    def dispatch(self, session_id: Any, directive: str, principal_id: Any) -> str:
        """
        Execute a directive.

        Args:
            session_id: Opaque routing target (conversation / chat id).
            directive: Directive text.
            principal_id: Identity used for permission checks downstream.

        Returns:
            The dispatcher's result text.

        Raises:
            Exception: Any failure. Callers never let it escape a tick.
        """
        ...


class CallableDispatcher(Dispatcher):
    """Adapts a plain function ``fn(session_id, directive, principal_id) -> str``."""

    def __init__(self, fn: Callable[[Any, str, Any], str], name: str = "callable"):
        self._fn = fn
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def dispatch(self, session_id: Any, directive: str, principal_id: Any) -> str:
        result = self._fn(session_id, directive, principal_id)
        return "" if result is None else str(result)
