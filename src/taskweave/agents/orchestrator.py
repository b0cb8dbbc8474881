"""High-level orchestration: build collaborators from config and run goals."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from ..config import ComponentSpec, ProjectConfig, instantiate_from_path
from ..context import EventKind, SharedContext
from ..errors import ConfigError
from ..llm.provider import ConsoleEchoProvider, LLMProvider
from ..persistence.store import InMemoryTaskStore, TaskStore
from ..retrieval import NullRetriever, Retriever
from ..security import SecurityPolicy
from ..tasks.base import Subtask, SubtaskStatus, Task, TaskResult, TaskStatus, new_id
from ..tasks.runner import Confirm, TaskRunner
from ..tasks.scheduler import DependencyScheduler
from ..tools.builtin import register_builtin_tools
from ..tools.registry import ToolRegistry
from .base import Agent, PlanningConfig
from .decomposer import TaskDecomposer

logger = logging.getLogger(__name__)


class Orchestrator:
    """Builds the engine from a :class:`ProjectConfig` and runs user goals."""

    def __init__(
        self,
        project_config: ProjectConfig | None = None,
        *,
        llm_provider: LLMProvider | None = None,
        retriever: Retriever | None = None,
        store: TaskStore | None = None,
        listener: Callable[[Subtask], None] | None = None,
        confirm: Confirm | None = None,
    ) -> None:
        self.config = project_config or ProjectConfig()
        engine = self.config.engine
        self.tool_registry = ToolRegistry()
        register_builtin_tools(self.tool_registry)
        self.policy = SecurityPolicy.from_spec(self.config.security)
        self.llm_provider = llm_provider or self._build_provider(self.config.llm)
        self.retriever = retriever or self._build_retriever(self.config.retriever)
        self.store = store if store is not None else self._build_store()
        self.scheduler = DependencyScheduler()
        self.agent = Agent(
            llm_provider=self.llm_provider,
            tools=self.tool_registry,
            policy=self.policy,
            planning=PlanningConfig(
                max_iterations=engine.max_iterations,
                max_tool_retries=engine.max_tool_retries,
                decision_timeout=engine.decision_timeout_seconds,
                tool_timeout=engine.tool_timeout_seconds,
                context_window=engine.context_window,
            ),
            retriever=self.retriever,
        )
        self.decomposer = TaskDecomposer(
            self.llm_provider,
            scheduler=self.scheduler,
            retriever=self.retriever,
            tool_names=self.tool_registry.available(),
            allowed_commands=self.policy.allowed_commands,
            timeout=engine.decision_timeout_seconds,
        )
        self.runner = TaskRunner(
            self.agent,
            scheduler=self.scheduler,
            policy=self.policy,
            max_concurrent=engine.max_concurrent_subtasks,
            default_timeout=engine.default_timeout_seconds,
            store=self.store,
            listener=listener,
            confirm=confirm,
            confirm_timeout=engine.confirm_timeout_seconds,
            save_timeout=engine.save_timeout_seconds,
        )

    # Construction ------------------------------------------------------------

    @staticmethod
    def _build_provider(spec: ComponentSpec) -> LLMProvider:
        if not spec.type:
            return ConsoleEchoProvider()
        provider = instantiate_from_path(spec.type, **spec.params)
        if not hasattr(provider, "generate"):
            raise ConfigError(f"LLM provider '{spec.type}' has no generate() method")
        return provider

    @staticmethod
    def _build_retriever(spec: ComponentSpec) -> Retriever:
        if not spec.type:
            return NullRetriever()
        retriever = instantiate_from_path(spec.type, **spec.params)
        if not hasattr(retriever, "search"):
            raise ConfigError(f"Retriever '{spec.type}' has no search() method")
        return retriever

    def _build_store(self) -> Optional[TaskStore]:
        persistence = self.config.persistence
        if persistence.type == "none":
            return None
        if persistence.type == "postgres":
            from ..persistence.postgres import PostgresTaskStore

            return PostgresTaskStore(persistence.url)
        return InMemoryTaskStore()

    # Operations --------------------------------------------------------------

    async def plan(self, goal: str) -> tuple[Task, List[List[Subtask]]]:
        """Decompose ``goal`` and return the task with its waves, without executing."""

        task = Task(id=new_id("task"), description=goal)
        subtasks = await self.decomposer.decompose(task)
        return task, self.scheduler.plan(subtasks)

    async def run(self, goal: str) -> TaskResult:
        task = Task(id=new_id("task"), description=goal)
        logger.info("Running task %s: %s", task.id, goal)
        subtasks = await self.decomposer.decompose(task)
        return await self.runner.run(task, subtasks)

    async def execute(self, task: Task, subtasks: List[Subtask]) -> TaskResult:
        """Run an already decomposed task."""

        return await self.runner.run(task, subtasks)

    async def resume(self, task_id: str) -> TaskResult:
        """Continue a persisted task; completed subtasks keep their results."""

        if self.store is None:
            raise ConfigError("Resuming requires a persistence store")
        snapshot = await asyncio.to_thread(self.store.load, task_id)
        if snapshot is None:
            raise KeyError(f"No saved task '{task_id}'")
        context: SharedContext = snapshot.context
        reset = []
        for subtask in snapshot.subtasks:
            if subtask.status == SubtaskStatus.COMPLETED:
                continue
            subtask.status = SubtaskStatus.PENDING
            subtask.failure_reason = None
            subtask.started_at = None
            subtask.finished_at = None
            reset.append(subtask.id)
        context.add_event(
            EventKind.SYSTEM,
            f"task {task_id} resumed",
            payload={"reset": reset},
        )
        logger.info("Resuming task %s (%d subtasks to run)", task_id, len(reset))
        snapshot.task.status = TaskStatus.PENDING
        return await self.runner.run(snapshot.task, snapshot.subtasks, context)

    def list_tasks(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Saved tasks, most recently updated first."""

        if self.store is None:
            return []
        return self.store.list_tasks(limit)

    def cancel(self, task_id: str | None = None) -> None:
        """Cancel ``task_id``, or every task this orchestrator is running."""

        self.runner.cancel(task_id)
