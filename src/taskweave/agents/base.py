"""Per-subtask decision loop: ask the model, validate, gate, dispatch, record."""

from __future__ import annotations

import asyncio
import json
import logging
import textwrap
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..context import EventKind, SharedContext
from ..errors import (
    EngineError,
    FatalToolError,
    MalformedResponse,
    PlanError,
    PolicyViolation,
    RecoverableError,
    ResourceLimitExceeded,
    ToolExecutionError,
)
from ..llm.parsing import extract_json_payload
from ..llm.provider import LLMProvider, PromptContext, ProviderError, call_provider
from ..security import SecurityPolicy
from ..tasks.base import Subtask, SubtaskStatus, Task
from ..tools.base import Capability, ToolContext, ToolInvocation, ToolResult
from ..tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

FINAL_ACTIONS = {"final", "explain", "finish"}
SPAWN_ACTION = "spawn"
VALUE_PREVIEW = 1500

SpawnHandler = Callable[[Subtask, Sequence[Dict[str, Any]]], List[Subtask]]


@dataclass
class AgentAction:
    """Parsed output from the model."""

    thought: str
    action: str
    action_input: Any
    answer: str | None = None
    subtasks: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return self.action in FINAL_ACTIONS

    @property
    def is_spawn(self) -> bool:
        return self.action == SPAWN_ACTION


@dataclass
class PlanningConfig:
    max_iterations: int = 12
    max_tool_retries: int = 3
    decision_timeout: float = 120.0
    tool_timeout: float = 60.0
    context_window: int = 20


@dataclass
class ExecutionPlan:
    """Invocations performed so far for one subtask, plus the pending proposal."""

    subtask_id: str
    performed: List[ToolInvocation] = field(default_factory=list)
    proposed: Optional[ToolInvocation] = None

    def propose(self, invocation: ToolInvocation) -> None:
        self.proposed = invocation

    def complete(self) -> None:
        if self.proposed is not None:
            self.performed.append(self.proposed)
            self.proposed = None


@dataclass
class SubtaskOutcome:
    status: SubtaskStatus
    result: Any = None
    reason: Optional[str] = None
    iterations: int = 0
    error: Optional[Dict[str, Any]] = None
    plan: Optional[ExecutionPlan] = None


class Agent:
    """Drives subtasks through model-selected tool calls."""

    def __init__(
        self,
        llm_provider: LLMProvider,
        tools: ToolRegistry,
        policy: SecurityPolicy,
        planning: PlanningConfig | None = None,
        retriever: Any = None,
    ) -> None:
        self.llm_provider = llm_provider
        self.tools = tools
        self.policy = policy
        self.planning = planning or PlanningConfig()
        self.retriever = retriever

    async def run_subtask(
        self,
        task: Task,
        subtask: Subtask,
        context: SharedContext,
        *,
        spawn: SpawnHandler | None = None,
    ) -> SubtaskOutcome:
        loop = PlanningLoop(agent=self, task=task, subtask=subtask, context=context, spawn=spawn)
        return await loop.execute()


class PlanningLoop:
    """ReAct-style loop with one in-flight tool invocation at a time."""

    def __init__(
        self,
        agent: Agent,
        task: Task,
        subtask: Subtask,
        context: SharedContext,
        spawn: SpawnHandler | None = None,
    ) -> None:
        self.agent = agent
        self.task = task
        self.subtask = subtask
        self.context = context
        self.spawn = spawn
        self.plan = ExecutionPlan(subtask_id=subtask.id)
        self.feedback: Optional[str] = None
        self.written_keys: List[str] = []
        self.errors = 0
        self.last_result: Optional[ToolResult] = None

    async def execute(self) -> SubtaskOutcome:
        planning = self.agent.planning
        for iteration in range(1, planning.max_iterations + 1):
            prompt = self._build_prompt(iteration)
            prompt_context = PromptContext(task_id=self.task.id, subtask_id=self.subtask.id, iteration=iteration)
            try:
                response = await call_provider(
                    self.agent.llm_provider, prompt, prompt_context, timeout=planning.decision_timeout
                )
                action = self._parse_response(response)
            except (MalformedResponse, ProviderError) as exc:
                if self._recoverable(exc, None):
                    continue
                return self._fail(exc, iteration, None)

            self.context.add_event(
                EventKind.DECISION,
                f"{self.subtask.id} chose {action.action}",
                payload={"thought": action.thought, "action": action.action, "iteration": iteration},
                subtask_id=self.subtask.id,
            )
            if action.is_final:
                answer = action.answer if action.answer is not None else self._fallback_answer(action)
                return SubtaskOutcome(
                    status=SubtaskStatus.COMPLETED, result=answer, iterations=iteration, plan=self.plan
                )
            if action.is_spawn:
                error = self._spawn(action)
                if error is not None and not self._recoverable(error, None):
                    return self._fail(error, iteration, None)
                continue

            arguments = action.action_input if action.action_input is not None else {}
            invocation = ToolInvocation(
                tool=action.action,
                arguments=arguments if isinstance(arguments, dict) else {"input": arguments},
                subtask_id=self.subtask.id,
                context_version=self.context.version,
            )
            self.plan.propose(invocation)
            try:
                result = await self._invoke(invocation, iteration)
            except RecoverableError as exc:
                if self._recoverable(exc, invocation):
                    continue
                return self._fail(exc, iteration, invocation)
            except (PolicyViolation, FatalToolError) as exc:
                return self._fail(exc, iteration, invocation)

            self.plan.complete()
            if not result.success:
                failure = ToolExecutionError(result.message or f"{invocation.tool} failed", tool=invocation.tool)
                if self._recoverable(failure, invocation, result=result):
                    continue
                return self._fail(failure, iteration, invocation)
            self.errors = 0
            self._apply(invocation, result)

        return SubtaskOutcome(
            status=SubtaskStatus.FAILED,
            reason="max iterations reached without final answer",
            iterations=planning.max_iterations,
            plan=self.plan,
        )

    # Dispatch ----------------------------------------------------------------

    async def _invoke(self, invocation: ToolInvocation, iteration: int) -> ToolResult:
        policy = self.agent.policy
        tool_context = ToolContext(
            task_id=self.task.id,
            subtask_id=self.subtask.id,
            iteration=iteration,
            shared=self.context,
            sandbox_root=policy.sandbox_root,
            command_timeout=policy.command_timeout,
            max_output_bytes=policy.max_output_bytes,
            retriever=self.agent.retriever,
        )
        timeout = self.agent.planning.tool_timeout
        if invocation.tool in self.agent.tools:
            if self.agent.tools.resolve(invocation.tool).capability == Capability.PROCESS_EXECUTION:
                # the command bound is enforced by the tool itself; leave it room to clean up
                timeout = max(timeout, policy.command_timeout + 5)

        def gate(tool: Any, arguments: Any) -> None:
            policy.evaluate(invocation, tool, arguments, self.context)

        try:
            return await asyncio.wait_for(
                self.agent.tools.dispatch(invocation, tool_context, gate=gate), timeout=timeout
            )
        except asyncio.TimeoutError:
            raise ResourceLimitExceeded("duration", f"Tool {invocation.tool} exceeded {timeout:g}s") from None

    def _apply(self, invocation: ToolInvocation, result: ToolResult) -> None:
        self.last_result = result
        self.context.update(result.updates, writer=self.subtask.id)
        for name, data in result.artifacts.items():
            self.context.add_artifact(name, data, writer=self.subtask.id)
        self.written_keys.extend(key for key in result.updates if key not in self.written_keys)
        self.context.add_event(
            EventKind.TOOL_EXECUTION,
            f"{invocation.tool}: {result.message or 'ok'}",
            payload={**invocation.to_payload(), "success": True, "artifacts": sorted(result.artifacts)},
            subtask_id=self.subtask.id,
        )
        self.feedback = f"Tool {invocation.tool} => {result.summary(VALUE_PREVIEW)}"

    def _spawn(self, action: AgentAction) -> Optional[EngineError]:
        if self.spawn is None:
            return MalformedResponse("Spawning subtasks is not available here")
        try:
            children = self.spawn(self.subtask, action.subtasks)
        except PlanError as exc:
            return exc
        except ValueError as exc:
            return MalformedResponse(str(exc))
        self.feedback = "Spawned subtasks: " + ", ".join(child.id for child in children)
        return None

    # Error handling ----------------------------------------------------------

    def _recoverable(
        self,
        exc: EngineError,
        invocation: Optional[ToolInvocation],
        *,
        result: Optional[ToolResult] = None,
    ) -> bool:
        """Record a recoverable error and feed it back; False once retries are exhausted."""

        self.errors += 1
        payload: Dict[str, Any] = {"error": exc.to_payload(), "attempt": self.errors}
        if invocation is not None:
            payload.update(invocation.to_payload())
        if result is not None and result.value is not None:
            payload["value"] = result.value
        self.context.add_event(
            EventKind.TOOL_ERROR, f"{exc.kind}: {exc}", payload=payload, subtask_id=self.subtask.id
        )
        self.feedback = f"Error ({exc.kind}): {exc}"
        if result is not None and result.value is not None:
            self.feedback += f"\n{result.summary(VALUE_PREVIEW)}"
        logger.info("Subtask %s recoverable error %d: %s", self.subtask.id, self.errors, exc)
        return self.errors <= self.agent.planning.max_tool_retries

    def _fail(self, exc: EngineError, iteration: int, invocation: Optional[ToolInvocation]) -> SubtaskOutcome:
        error = exc.to_payload()
        if invocation is not None:
            error.update(invocation.to_payload())
        return SubtaskOutcome(
            status=SubtaskStatus.FAILED,
            reason=f"{exc.kind}: {exc}",
            iterations=iteration,
            error=error,
            plan=self.plan,
        )

    # Prompting ---------------------------------------------------------------

    def _fallback_answer(self, action: AgentAction) -> Any:
        if isinstance(action.action_input, str) and action.action_input:
            return action.action_input
        if self.last_result is not None:
            return self.last_result.summary(VALUE_PREVIEW)
        return action.thought

    def _build_prompt(self, iteration: int) -> str:
        tools_desc = "\n".join(json.dumps(schema) for schema in self.agent.tools.schemas())
        dependency_results = "\n".join(
            f"- {dep}: {_preview(self.context.get_variable(f'result:{dep}'))}" for dep in self.subtask.dependencies
        )
        own = "\n".join(f"- {key}: {_preview(self.context.get_variable(key))}" for key in self.written_keys[-5:])
        events = "\n".join(
            f"- [{event.kind.value}] {event.description}"
            for event in self.context.recent_events(self.agent.planning.context_window)
        )
        steps = "\n".join(f"- {inv.tool} {json.dumps(inv.arguments)}" for inv in self.plan.performed)
        header = textwrap.dedent(
            """
            You MUST respond using JSON with keys thought, action, input, answer.
            action is one tool name (input holds its arguments), "final" when the subtask is done (answer required),
            or "spawn" with a "subtasks" list of {id, description, dependencies, capabilities} to add follow-up work.
            """
        ).strip()
        sections = [
            f"You are executing subtask {self.subtask.id} of the task: {self.task.description}",
            f"Subtask: {self.subtask.description}",
            header,
            "Tools available:",
            tools_desc or "- none",
            "Results of dependencies:",
            dependency_results or "- none",
            "Context written by this subtask:",
            own or "- none",
            "Recent events:",
            events or "- none",
            "Steps taken:",
            steps or "- none",
            f"Last observation: {self.feedback or 'none'}",
            f"Iteration: {iteration}/{self.agent.planning.max_iterations}",
        ]
        return "\n".join(sections)

    def _parse_response(self, response: str) -> AgentAction:
        payload = extract_json_payload(response)
        if not isinstance(payload, dict):
            raise MalformedResponse("Response must be a JSON object with keys thought, action, input, answer")
        action = payload.get("action")
        if not isinstance(action, str) or not action.strip():
            raise MalformedResponse("Response is missing a string 'action'")
        subtasks = payload.get("subtasks") or []
        if not isinstance(subtasks, list) or not all(isinstance(item, dict) for item in subtasks):
            raise MalformedResponse("'subtasks' must be a list of objects")
        answer = payload.get("answer")
        return AgentAction(
            thought=str(payload.get("thought", "")),
            action=action.strip(),
            action_input=payload.get("input"),
            answer=answer if answer is None or isinstance(answer, str) else json.dumps(answer),
            subtasks=subtasks,
        )


def _preview(value: Any, limit: int = VALUE_PREVIEW) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    if len(text) > limit:
        return text[:limit] + "...[truncated]"
    return text
