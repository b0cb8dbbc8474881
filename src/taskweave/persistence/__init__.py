"""Task snapshot stores. ``PostgresTaskStore`` lives in :mod:`taskweave.persistence.postgres`."""

from .store import InMemoryTaskStore, TaskSnapshot, TaskStore

__all__ = ["TaskSnapshot", "TaskStore", "InMemoryTaskStore"]
