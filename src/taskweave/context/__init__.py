"""Shared context primitives."""

from .shared import ContextEvent, EventKind, SharedContext

__all__ = ["ContextEvent", "EventKind", "SharedContext"]
