"""Task and subtask dataclasses used by the scheduler and runner."""

from __future__ import annotations

import itertools
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..context import SharedContext
from ..errors import PlanError

UPSTREAM_FAILED = "upstream dependency failed"
CANCELLED = "cancelled"
DECLINED = "declined"

_sequence = itertools.count()


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


class SubtaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SubtaskStatus.COMPLETED, SubtaskStatus.FAILED)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Subtask:
    """One independently trackable unit of work inside a task."""

    id: str
    description: str
    dependencies: Tuple[str, ...] = ()
    capabilities: Tuple[str, ...] = ()
    writes: Tuple[str, ...] = ()
    parent_id: Optional[str] = None
    status: SubtaskStatus = SubtaskStatus.PENDING
    failure_reason: Optional[str] = None
    result: Any = None
    sequence: int = field(default_factory=lambda: next(_sequence))
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def __post_init__(self) -> None:
        self.dependencies = tuple(dict.fromkeys(str(dep) for dep in self.dependencies))
        self.capabilities = tuple(self.capabilities)
        self.writes = tuple(self.writes)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "dependencies": list(self.dependencies),
            "capabilities": list(self.capabilities),
            "writes": list(self.writes),
            "parent_id": self.parent_id,
            "status": self.status.value,
            "failure_reason": self.failure_reason,
            "result": self.result,
            "sequence": self.sequence,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subtask":
        return cls(
            id=data["id"],
            description=data["description"],
            dependencies=tuple(data.get("dependencies", ())),
            capabilities=tuple(data.get("capabilities", ())),
            writes=tuple(data.get("writes", ())),
            parent_id=data.get("parent_id"),
            status=SubtaskStatus(data.get("status", SubtaskStatus.PENDING.value)),
            failure_reason=data.get("failure_reason"),
            result=data.get("result"),
            sequence=int(data.get("sequence", next(_sequence))),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
        )


@dataclass
class Task:
    """One user-submitted goal and the subtasks it owns."""

    id: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    subtask_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
            "subtask_ids": list(self.subtask_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            description=data["description"],
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            subtask_ids=list(data.get("subtask_ids", [])),
        )


@dataclass
class TaskResult:
    """Result of executing a task; completed outputs are kept on partial failure."""

    task: Task
    subtasks: Sequence[Subtask]
    context: SharedContext

    @property
    def success(self) -> bool:
        return self.task.status == TaskStatus.COMPLETED

    @property
    def outputs(self) -> Dict[str, Any]:
        return {st.id: st.result for st in self.subtasks if st.status == SubtaskStatus.COMPLETED}

    @property
    def failures(self) -> Dict[str, str]:
        return {st.id: st.failure_reason or "failed" for st in self.subtasks if st.status == SubtaskStatus.FAILED}


def build_subtasks(
    entries: Sequence[Dict[str, Any]],
    *,
    parent_id: Optional[str] = None,
    prefix: str = "sub",
) -> List[Subtask]:
    """Turn model-proposed subtask mappings into :class:`Subtask` objects.

    Dependencies may be given as ids or as 0-based indices into ``entries``.
    """

    ids: List[str] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise PlanError(f"Subtask #{index} must be an object")
        ids.append(str(entry.get("id") or new_id(prefix)))
    subtasks: List[Subtask] = []
    for index, entry in enumerate(entries):
        description = entry.get("description")
        if not isinstance(description, str) or not description.strip():
            raise PlanError(f"Subtask #{index} is missing a description", subtask_id=ids[index])
        dependencies = []
        for dep in entry.get("dependencies") or ():
            if isinstance(dep, str) and dep.isdigit() and dep not in ids:
                dep = int(dep)
            if isinstance(dep, int) and not isinstance(dep, bool):
                if not 0 <= dep < len(ids):
                    raise PlanError(f"Subtask #{index} depends on missing index {dep}", subtask_id=ids[index])
                dependencies.append(ids[dep])
            else:
                dependencies.append(str(dep))
        subtasks.append(
            Subtask(
                id=ids[index],
                description=description.strip(),
                dependencies=tuple(dependencies),
                capabilities=tuple(str(cap) for cap in entry.get("capabilities") or ()),
                writes=tuple(str(key) for key in entry.get("writes") or ()),
                parent_id=parent_id,
            )
        )
    return subtasks
