"""Task-scoped shared context: variables, artifacts and an audit event log."""

from __future__ import annotations

import base64
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class EventKind(str, Enum):
    TOOL_EXECUTION = "tool_execution"
    TOOL_ERROR = "tool_error"
    SECURITY = "security"
    DECISION = "decision"
    STATUS = "status"
    CONTEXT_CONFLICT = "context_conflict"
    SYSTEM = "system"


@dataclass(frozen=True)
class ContextEvent:
    timestamp: datetime
    kind: EventKind
    description: str
    payload: Optional[Dict[str, Any]] = None
    subtask_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind.value,
            "description": self.description,
            "payload": self.payload,
            "subtask_id": self.subtask_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContextEvent":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            kind=EventKind(data["kind"]),
            description=data["description"],
            payload=data.get("payload"),
            subtask_id=data.get("subtask_id"),
        )


class SharedContext:
    """Mutable store shared by reference between every subtask of one task.

    Variable and artifact writes are last-writer-wins under a per-key
    ``threading`` lock. Overwriting a key last written by a different subtask
    is recorded as a ``context_conflict`` event.
    """

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        self._variables: Dict[str, Any] = {}
        self._artifacts: Dict[str, bytes] = {}
        self._writers: Dict[str, Optional[str]] = {}
        self._events: List[ContextEvent] = []
        self._key_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._events_lock = threading.Lock()
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def _bump(self) -> None:
        with self._registry_lock:
            self._version += 1

    def _write(self, store: Dict[str, Any], slot: str, key: str, value: Any, writer: Optional[str]) -> None:
        with self._lock_for(f"{slot}:{key}"):
            previous_writer = self._writers.get(f"{slot}:{key}")
            overwritten = f"{slot}:{key}" in self._writers
            store[key] = value
            self._writers[f"{slot}:{key}"] = writer
        self._bump()
        if overwritten and writer is not None and previous_writer not in (None, writer):
            self.add_event(
                EventKind.CONTEXT_CONFLICT,
                f"{slot} '{key}' overwritten by {writer} (previous writer {previous_writer})",
                payload={"key": key, "slot": slot, "writer": writer, "previous_writer": previous_writer},
                subtask_id=writer,
            )

    # Variables -------------------------------------------------------------

    def set_variable(self, key: str, value: Any, *, writer: Optional[str] = None) -> None:
        self._write(self._variables, "variable", key, value, writer)

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self._variables.get(key, default)

    def variables(self) -> Dict[str, Any]:
        return dict(self._variables)

    def update(self, values: Dict[str, Any], *, writer: Optional[str] = None) -> None:
        for key, value in values.items():
            self.set_variable(key, value, writer=writer)

    # Artifacts -------------------------------------------------------------

    def add_artifact(self, name: str, data: bytes, *, writer: Optional[str] = None) -> None:
        if not isinstance(data, (bytes, bytearray)):
            raise TypeError(f"Artifact '{name}' must be bytes, got {type(data).__name__}")
        self._write(self._artifacts, "artifact", name, bytes(data), writer)

    def get_artifact(self, name: str) -> Optional[bytes]:
        return self._artifacts.get(name)

    def artifacts(self) -> Dict[str, bytes]:
        return dict(self._artifacts)

    # Events ----------------------------------------------------------------

    def add_event(
        self,
        kind: EventKind,
        description: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        subtask_id: Optional[str] = None,
    ) -> ContextEvent:
        event = ContextEvent(
            timestamp=datetime.now(timezone.utc),
            kind=kind,
            description=description,
            payload=payload,
            subtask_id=subtask_id,
        )
        with self._events_lock:
            self._events.append(event)
        return event

    def events(self, kinds: Optional[Iterable[EventKind]] = None) -> List[ContextEvent]:
        with self._events_lock:
            items = list(self._events)
        if kinds is None:
            return items
        wanted = set(kinds)
        return [event for event in items if event.kind in wanted]

    def recent_events(self, limit: int) -> List[ContextEvent]:
        with self._events_lock:
            return list(self._events[-limit:]) if limit > 0 else []

    # Persistence -----------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "version": self._version,
            "variables": self.variables(),
            "artifacts": {name: base64.b64encode(data).decode("ascii") for name, data in self._artifacts.items()},
            "events": [event.to_dict() for event in self.events()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SharedContext":
        context = cls(task_id=data["task_id"])
        context._variables = dict(data.get("variables", {}))
        context._artifacts = {
            name: base64.b64decode(encoded) for name, encoded in (data.get("artifacts") or {}).items()
        }
        context._events = [ContextEvent.from_dict(item) for item in data.get("events", [])]
        context._version = int(data.get("version", 0))
        return context
