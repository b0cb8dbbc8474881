"""Task primitives and scheduling. The runner is in :mod:`taskweave.tasks.runner`."""

from .base import Subtask, SubtaskStatus, Task, TaskResult, TaskStatus
from .scheduler import DependencyScheduler

__all__ = ["Task", "TaskResult", "TaskStatus", "Subtask", "SubtaskStatus", "DependencyScheduler"]
