"""Agent definitions and directive builders."""

from .definitions import (
    CallableDirectiveBuilder,
    RotatingDirectiveBuilder,
    definition_from_config,
)

__all__ = [
    "RotatingDirectiveBuilder",
    "CallableDirectiveBuilder",
    "definition_from_config",
]
