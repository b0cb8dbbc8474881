"""Snapshot model and the in-process store."""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from ..context import SharedContext
from ..tasks.base import Subtask, Task


@dataclass
class TaskSnapshot:
    """Everything needed to resume a task in a later session."""

    task: Task
    subtasks: List[Subtask]
    context: SharedContext

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.task.to_dict(),
            "subtasks": [subtask.to_dict() for subtask in self.subtasks],
            "context": self.context.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskSnapshot":
        return cls(
            task=Task.from_dict(data["task"]),
            subtasks=[Subtask.from_dict(item) for item in data.get("subtasks", [])],
            context=SharedContext.from_dict(data["context"]),
        )

    def detached(self) -> "TaskSnapshot":
        """A copy that shares no mutable state with the running task."""

        return TaskSnapshot.from_dict(copy.deepcopy(self.to_dict()))


class TaskStore(Protocol):
    def save(self, snapshot: TaskSnapshot) -> None:  # pragma: no cover - interface
        ...

    def load(self, task_id: str) -> Optional[TaskSnapshot]:  # pragma: no cover - interface
        ...

    def list_tasks(self, limit: int = 200) -> List[Dict[str, Any]]:  # pragma: no cover - interface
        ...


class InMemoryTaskStore:
    """Keeps serialized snapshots in a dict; survives only as long as the process."""

    def __init__(self) -> None:
        self._snapshots: Dict[str, Dict[str, Any]] = {}
        self._updated: Dict[str, float] = {}
        self._lock = threading.Lock()

    def save(self, snapshot: TaskSnapshot) -> None:
        data = copy.deepcopy(snapshot.to_dict())
        with self._lock:
            # re-insert so dict order follows update order
            self._snapshots.pop(snapshot.task.id, None)
            self._snapshots[snapshot.task.id] = data
            self._updated[snapshot.task.id] = time.time()

    def load(self, task_id: str) -> Optional[TaskSnapshot]:
        with self._lock:
            data = self._snapshots.get(task_id)
        return TaskSnapshot.from_dict(data) if data is not None else None

    def list_tasks(self, limit: int = 200) -> List[Dict[str, Any]]:
        """Saved tasks, most recently updated first."""

        with self._lock:
            rows = [
                {
                    "task_id": task_id,
                    "description": data["task"]["description"],
                    "status": data["task"]["status"],
                    "updated_at": self._updated[task_id],
                }
                for task_id, data in reversed(self._snapshots.items())
            ]
        return rows[:limit]
