"""Turns a user goal into the initial subtask graph."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..errors import PlanError
from ..llm.parsing import extract_json_payload
from ..llm.provider import LLMProvider, PromptContext, call_provider
from ..retrieval import NullRetriever, Retriever
from ..security import command_segments
from ..tasks.base import Subtask, Task, build_subtasks
from ..tasks.scheduler import DependencyScheduler
from ..tools.base import Capability

logger = logging.getLogger(__name__)

# Goals opening with one of these run as a single shell subtask without asking the model.
SIMPLE_COMMANDS = (
    "cargo check",
    "cargo build",
    "cargo run",
    "cargo test",
    "cargo fmt",
    "cargo clippy",
    "pytest",
    "npm test",
    "git status",
)

_SIMPLE_GOAL = re.compile(
    r"^\s*(?:please\s+)?(?:(?:run|execute)\s+)?(?:the\s+)?(?P<command>"
    + "|".join(r"\s+".join(map(re.escape, command.split())) for command in SIMPLE_COMMANDS)
    + r")(?=\s|[.!,;:]|$)",
    re.IGNORECASE,
)

DECOMPOSITION_PROMPT = """You break a task down into smaller, manageable subtasks.

Think about what information must be gathered first, which steps depend on
others, and which verification steps are needed. Make each subtask specific,
actionable and self-contained.

Respond with JSON only:
{{"subtasks": [{{"id": "short-id", "description": "...", "dependencies": ["id of an earlier subtask"],
  "capabilities": ["filesystem-read" | "filesystem-write" | "process-execution"],
  "writes": ["context keys this subtask produces (optional)"]}}]}}

Tools the subtasks can use:
{tools}

Relevant entries from the code index:
{related}

Main task: {goal}
"""


class TaskDecomposer:
    """One model call that proposes subtasks, validated by the scheduler.

    Unparseable replies fall back to a single subtask holding the whole goal.
    Cycles and unknown dependencies are surfaced as :class:`PlanError`.
    """

    def __init__(
        self,
        llm_provider: LLMProvider,
        *,
        scheduler: DependencyScheduler | None = None,
        retriever: Retriever | None = None,
        tool_names: Iterable[str] = (),
        allowed_commands: Iterable[str] = (),
        timeout: float = 120.0,
        max_related: int = 5,
    ) -> None:
        self.llm_provider = llm_provider
        self.scheduler = scheduler or DependencyScheduler()
        self.retriever = retriever or NullRetriever()
        self.tool_names = list(tool_names)
        self.allowed_commands = set(allowed_commands)
        self.timeout = timeout
        self.max_related = max_related

    async def decompose(self, task: Task) -> List[Subtask]:
        command = self.simple_command(task.description)
        if command is not None:
            logger.info("Detected simple command '%s', skipping decomposition", command)
            subtasks = [
                Subtask(
                    id=f"{task.id}-cmd",
                    description=f"Execute command: {command}",
                    capabilities=(Capability.PROCESS_EXECUTION.value,),
                )
            ]
        else:
            prompt = self.build_prompt(task.description)
            context = PromptContext(task_id=task.id, subtask_id=None, iteration=1, purpose="decompose")
            response = await call_provider(self.llm_provider, prompt, context, timeout=self.timeout)
            subtasks = self.parse(task, response)
        self.scheduler.validate(subtasks)
        task.subtask_ids = [subtask.id for subtask in subtasks]
        logger.info("Decomposed task %s into %d subtasks", task.id, len(subtasks))
        return subtasks

    def simple_command(self, goal: str) -> Optional[str]:
        """Return the shell command to run directly, or ``None`` when the goal needs planning.

        The command must open the goal, optionally after "please", "run" or "execute".
        """

        match = _SIMPLE_GOAL.match(goal)
        if match is None:
            return None
        command = " ".join(match.group("command").lower().split())
        leading = command_segments(command)[0][0]
        if self.allowed_commands and leading not in self.allowed_commands:
            return None
        return command

    def build_prompt(self, goal: str) -> str:
        entries = self.retriever.search(goal, limit=self.max_related)
        related = "\n".join(f"- {entry.identifier} ({entry.score:.2f}): {entry.snippet}" for entry in entries)
        tools = ", ".join(self.tool_names)
        return DECOMPOSITION_PROMPT.format(tools=tools or "none", related=related or "- none", goal=goal)

    def parse(self, task: Task, response: str) -> List[Subtask]:
        payload = extract_json_payload(response)
        entries: Any = payload.get("subtasks") if isinstance(payload, dict) else payload
        if not isinstance(entries, list) or not entries:
            logger.warning("Decomposition reply had no subtasks; running the goal as one subtask")
            return [self._single(task)]
        normalized = self._normalize(entries)
        try:
            return build_subtasks(normalized, prefix=task.id)
        except PlanError:
            logger.debug("Rejected decomposition: %s", json.dumps(normalized, default=str))
            raise

    @staticmethod
    def _normalize(entries: Sequence[Any]) -> List[Dict[str, Any]]:
        normalized: List[Dict[str, Any]] = []
        for index, entry in enumerate(entries):
            if isinstance(entry, str):
                entry = {"description": entry}
            if not isinstance(entry, dict):
                raise PlanError(f"Subtask #{index} must be an object or a string")
            entry = dict(entry)
            if not isinstance(entry.get("description"), str) or not entry["description"].strip():
                entry["description"] = f"Subtask {index + 1}"
            normalized.append(entry)
        return normalized

    @staticmethod
    def _single(task: Task) -> Subtask:
        return Subtask(id=f"{task.id}-main", description=task.description)
