"""Base classes for tools."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict

from ..context import SharedContext

if TYPE_CHECKING:  # pragma: no cover
    from ..retrieval import Retriever


class Capability(str, Enum):
    FILESYSTEM_READ = "filesystem-read"
    FILESYSTEM_WRITE = "filesystem-write"
    PROCESS_EXECUTION = "process-execution"


class ToolArguments(BaseModel):
    """Base for tool argument models; unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")


@dataclass
class ToolContext:
    """Handles passed to tool invocations."""

    task_id: str
    subtask_id: str
    iteration: int
    shared: SharedContext
    sandbox_root: Path
    command_timeout: float = 30.0
    max_output_bytes: int = 64 * 1024
    retriever: Optional["Retriever"] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def resolve(self, value: Optional[str]) -> Path:
        """Resolve a tool path argument against the sandbox root."""

        if not value:
            return self.sandbox_root
        candidate = Path(value).expanduser()
        if not candidate.is_absolute():
            candidate = self.sandbox_root / candidate
        return candidate.resolve()

    def display(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.sandbox_root)) or "."
        except ValueError:
            return str(path)


@dataclass
class ToolResult:
    """Result returned by a tool."""

    success: bool
    value: Any = None
    message: Optional[str] = None
    artifacts: Dict[str, bytes] = field(default_factory=dict)
    updates: Dict[str, Any] = field(default_factory=dict)

    def summary(self, limit: int = 2000) -> str:
        text = self.message or ""
        if self.value is not None:
            rendered = self.value if isinstance(self.value, str) else repr(self.value)
            text = f"{text}\n{rendered}" if text else rendered
        if len(text) > limit:
            text = text[:limit] + "\n...[truncated]..."
        return text


@dataclass
class ToolInvocation:
    """A model-proposed call, tied to the context version visible at call time."""

    tool: str
    arguments: Dict[str, Any]
    subtask_id: str
    context_version: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {"tool": self.tool, "arguments": self.arguments, "subtask_id": self.subtask_id}


class Tool:
    """Base tool class.

    Subclasses set ``name``, ``capability`` and ``arguments`` and implement
    either :meth:`run` or :meth:`invoke`.

    ``run`` is the hook for blocking work and executes in a worker thread. A
    thread cannot be interrupted, so when the awaiting subtask is cancelled or
    times out :meth:`invoke` sets ``context.cancel_event`` and long loops in
    ``run`` are expected to poll ``context.cancelled`` and return early.
    Tools that own a child process or are natively asynchronous override
    :meth:`invoke` instead so cancellation reaches them directly.
    """

    name: ClassVar[str]
    capability: ClassVar[Capability]
    arguments: ClassVar[Type[ToolArguments]] = ToolArguments
    description: str = ""

    def __init__(self, description: str | None = None) -> None:
        self.description = description or self.__class__.__doc__ or ""

    def schema(self) -> Dict[str, Any]:
        parameters = self.arguments.model_json_schema()
        parameters.pop("title", None)
        return {"name": self.name, "description": self.description.strip(), "parameters": parameters}

    def run(self, arguments: Any, context: ToolContext) -> ToolResult:  # pragma: no cover - abstract
        raise NotImplementedError

    async def invoke(self, arguments: Any, context: ToolContext) -> ToolResult:
        try:
            return await asyncio.to_thread(self.run, arguments, context)
        except asyncio.CancelledError:
            context.cancel_event.set()
            raise
