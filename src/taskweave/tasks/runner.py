"""Task runner: admission, bounded concurrency, cancellation and failure propagation."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from ..context import EventKind, SharedContext
from ..errors import Cancelled, Declined, PlanError, PolicyViolation
from ..persistence.store import TaskSnapshot, TaskStore
from .base import (
    CANCELLED,
    DECLINED,
    UPSTREAM_FAILED,
    Subtask,
    SubtaskStatus,
    Task,
    TaskResult,
    TaskStatus,
    build_subtasks,
)
from .scheduler import DependencyScheduler

logger = logging.getLogger(__name__)

Listener = Callable[[Subtask], None]
Confirm = Callable[[Subtask], Union[bool, Awaitable[bool]]]


@dataclass
class _TaskRun:
    """State of one ``TaskRunner.run`` call."""

    task: Task
    context: SharedContext
    subtasks: Dict[str, Subtask]
    running: Dict[asyncio.Future, Subtask] = field(default_factory=dict)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    confirm_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel_requested: bool = False
    dirty: bool = False

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(task=self.task, subtasks=list(self.subtasks.values()), context=self.context)


class TaskRunner:
    """Executes the subtasks of a task through an :class:`~taskweave.agents.base.Agent`.

    Ready subtasks are admitted in creation order while fewer than
    ``max_concurrent`` are running. A failed subtask never blocks its
    siblings; subtasks depending on it are failed without being started.
    One runner may execute several tasks concurrently; each ``run`` call
    keeps its own subtask table and cancellation flag.

    When ``confirm`` is given, every subtask must be approved before it
    starts. Approvals are requested one at a time per task and bounded by
    ``confirm_timeout``; a refused or unanswered subtask fails as
    ``"declined"``. Snapshots go to ``store`` from a worker thread, at most
    once per scheduling pass, each bounded by ``save_timeout``.
    """

    def __init__(
        self,
        agent: Any,
        *,
        scheduler: DependencyScheduler | None = None,
        policy: Any = None,
        max_concurrent: int = 4,
        default_timeout: float = 300.0,
        store: TaskStore | None = None,
        listener: Listener | None = None,
        confirm: Confirm | None = None,
        confirm_timeout: float = 300.0,
        save_timeout: float = 30.0,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.agent = agent
        self.scheduler = scheduler or DependencyScheduler()
        self.policy = policy
        self.max_concurrent = max_concurrent
        self.default_timeout = default_timeout
        self.store = store
        self.listener = listener
        self.confirm = confirm
        self.confirm_timeout = confirm_timeout
        self.save_timeout = save_timeout
        self._runs: Dict[str, _TaskRun] = {}

    @property
    def active_tasks(self) -> List[str]:
        return list(self._runs)

    def cancel(self, task_id: str | None = None) -> None:
        """Request cancellation of ``task_id``, or of every running task.

        Does nothing for tasks that are not running.
        """

        if task_id is None:
            targets = list(self._runs.values())
        else:
            targets = [self._runs[task_id]] if task_id in self._runs else []
        for run in targets:
            logger.info("Cancellation requested for task %s", run.task.id)
            run.cancel_requested = True
            run.wakeup.set()

    async def run(
        self,
        task: Task,
        subtasks: Sequence[Subtask],
        context: SharedContext | None = None,
    ) -> TaskResult:
        if task.id in self._runs:
            raise PlanError(f"Task {task.id} is already running")
        self.scheduler.validate(subtasks)
        ordered = {st.id: st for st in sorted(subtasks, key=lambda st: st.sequence)}
        run = _TaskRun(task=task, context=context or SharedContext(task.id), subtasks=ordered)
        task.subtask_ids = list(ordered)
        task.status = TaskStatus.RUNNING
        run.context.add_event(
            EventKind.SYSTEM,
            f"task {task.id} started with {len(ordered)} subtasks",
            payload={"task_id": task.id, "description": task.description},
        )
        run.dirty = True
        self._runs[task.id] = run
        try:
            await self._loop(run)
        except asyncio.CancelledError:
            logger.info("Task %s cancelled externally", task.id)
            await self._abort(run)
            await self._flush(run)
            raise
        finally:
            self._runs.pop(task.id, None)

        if run.cancel_requested and task.status != TaskStatus.CANCELLED:
            await self._abort(run)
        self._fail_unscheduled(run)
        task.status = self._final_status(run)
        run.context.add_event(
            EventKind.SYSTEM,
            f"task {task.id} finished with status {task.status.value}",
            payload={"task_id": task.id, "status": task.status.value},
        )
        run.dirty = True
        await self._flush(run)
        logger.info("Task %s finished: %s", task.id, task.status.value)
        return TaskResult(task=task, subtasks=list(run.subtasks.values()), context=run.context)

    async def _loop(self, run: _TaskRun) -> None:
        while True:
            if run.cancel_requested:
                await self._abort(run)
                return
            self._schedule(run)
            await self._flush(run)
            if not run.running:
                return
            # Woken by a finished subtask, a spawn or cancel().
            waiter = asyncio.ensure_future(run.wakeup.wait())
            try:
                done, _ = await asyncio.wait(set(run.running) | {waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                waiter.cancel()
            run.wakeup.clear()
            for future in done:
                if future in run.running:
                    self._finish(run, run.running.pop(future), future)

    # Admission ---------------------------------------------------------------

    def _schedule(self, run: _TaskRun) -> None:
        # A denied subtask fails its dependents and may release write-hint holds.
        while True:
            self._propagate_failures(run)
            if not self._admit(run):
                return

    def _admit(self, run: _TaskRun) -> bool:
        """Start ready subtasks while slots are free; True if any was denied."""

        denied = False
        for subtask in self.scheduler.ready(run.subtasks.values()):
            if len(run.running) >= self.max_concurrent:
                break
            if self.policy is not None:
                try:
                    self.policy.check_capabilities(subtask.capabilities)
                except PolicyViolation as exc:
                    run.context.add_event(
                        EventKind.SECURITY,
                        f"denied subtask {subtask.id}: {exc}",
                        payload={"decision": "denied", "error": exc.to_payload()},
                        subtask_id=subtask.id,
                    )
                    self._mark_failed(run, subtask, f"{exc.kind}: {exc}", error=exc.to_payload())
                    denied = True
                    continue
            subtask.status = SubtaskStatus.IN_PROGRESS
            subtask.started_at = time.time()
            run.dirty = True
            self._notify(subtask)
            logger.debug("Admitted %s (%d running)", subtask.id, len(run.running) + 1)
            run.running[asyncio.ensure_future(self._execute(run, subtask))] = subtask
        return denied

    async def _execute(self, run: _TaskRun, subtask: Subtask) -> Any:
        def spawn(parent: Subtask, entries: Sequence[Dict[str, Any]]) -> List[Subtask]:
            return self._spawn(run, parent, entries)

        if self.confirm is not None:
            await self._confirm(run, subtask)
        return await asyncio.wait_for(
            self.agent.run_subtask(run.task, subtask, run.context, spawn=spawn),
            timeout=self.default_timeout,
        )

    async def _confirm(self, run: _TaskRun, subtask: Subtask) -> None:
        async with run.confirm_lock:
            if inspect.iscoroutinefunction(self.confirm):
                pending = self.confirm(subtask)
            else:
                pending = asyncio.to_thread(self.confirm, subtask)
            try:
                approved = await asyncio.wait_for(pending, timeout=self.confirm_timeout)
                if inspect.isawaitable(approved):
                    approved = await asyncio.wait_for(approved, timeout=self.confirm_timeout)
            except asyncio.TimeoutError:
                raise Declined(f"no answer within {self.confirm_timeout:g}s", timed_out=True) from None
        if not approved:
            raise Declined()
        run.context.add_event(
            EventKind.SYSTEM, f"{subtask.id} approved", payload={"decision": "approved"}, subtask_id=subtask.id
        )

    def _spawn(self, run: _TaskRun, parent: Subtask, entries: Sequence[Dict[str, Any]]) -> List[Subtask]:
        if not entries:
            raise PlanError("spawn requires a non-empty 'subtasks' list")
        children = build_subtasks(entries, parent_id=parent.id)
        self.scheduler.extend(list(run.subtasks.values()), children)
        for child in children:
            run.subtasks[child.id] = child
            run.task.subtask_ids.append(child.id)
            self._notify(child)
        run.context.add_event(
            EventKind.SYSTEM,
            f"{parent.id} spawned {len(children)} subtasks",
            payload={"parent_id": parent.id, "subtasks": [child.to_dict() for child in children]},
            subtask_id=parent.id,
        )
        logger.info("Subtask %s spawned %s", parent.id, ", ".join(child.id for child in children))
        run.dirty = True
        run.wakeup.set()
        return children

    # Completion --------------------------------------------------------------

    def _finish(self, run: _TaskRun, subtask: Subtask, future: asyncio.Future) -> None:
        if future.cancelled():
            self._mark_failed(run, subtask, CANCELLED)
            return
        exc = future.exception()
        if isinstance(exc, Declined):
            self._mark_failed(run, subtask, DECLINED, error=exc.to_payload())
            return
        if isinstance(exc, asyncio.TimeoutError):
            self._mark_failed(run, subtask, f"timed out after {self.default_timeout:g}s")
            return
        if exc is not None:
            logger.error("Subtask %s crashed", subtask.id, exc_info=exc)
            error = exc.to_payload() if hasattr(exc, "to_payload") else {"kind": type(exc).__name__}
            self._mark_failed(run, subtask, f"{type(exc).__name__}: {exc}", error=error)
            return
        outcome = future.result()
        if outcome.status == SubtaskStatus.COMPLETED:
            subtask.status = SubtaskStatus.COMPLETED
            subtask.result = outcome.result
            subtask.finished_at = time.time()
            run.context.set_variable(f"result:{subtask.id}", outcome.result, writer=subtask.id)
            run.context.add_event(
                EventKind.STATUS,
                f"{subtask.id} completed",
                payload={"status": subtask.status.value, "iterations": outcome.iterations},
                subtask_id=subtask.id,
            )
            run.dirty = True
            self._notify(subtask)
            return
        self._mark_failed(
            run, subtask, outcome.reason or "failed", error=outcome.error, iterations=outcome.iterations
        )

    def _mark_failed(
        self,
        run: _TaskRun,
        subtask: Subtask,
        reason: str,
        *,
        error: Optional[Dict[str, Any]] = None,
        iterations: Optional[int] = None,
    ) -> None:
        subtask.status = SubtaskStatus.FAILED
        subtask.failure_reason = reason
        subtask.finished_at = time.time()
        payload: Dict[str, Any] = {"status": subtask.status.value, "reason": reason}
        if error:
            payload["error"] = error
        if iterations is not None:
            payload["iterations"] = iterations
        run.context.add_event(
            EventKind.STATUS, f"{subtask.id} failed: {reason}", payload=payload, subtask_id=subtask.id
        )
        logger.warning("Subtask %s failed: %s", subtask.id, reason)
        run.dirty = True
        self._notify(subtask)

    def _propagate_failures(self, run: _TaskRun) -> None:
        changed = True
        while changed:
            changed = False
            for subtask in run.subtasks.values():
                if subtask.status != SubtaskStatus.PENDING:
                    continue
                failed = [
                    dep
                    for dep in subtask.dependencies
                    if run.subtasks[dep].status == SubtaskStatus.FAILED
                ]
                if failed:
                    self._mark_failed(run, subtask, UPSTREAM_FAILED, error={"failed_dependencies": failed})
                    changed = True

    async def _abort(self, run: _TaskRun) -> None:
        for future in run.running:
            future.cancel()
        if run.running:
            await asyncio.gather(*run.running, return_exceptions=True)
        cancelled = Cancelled()
        for future, subtask in list(run.running.items()):
            if future.cancelled():
                self._mark_failed(run, subtask, CANCELLED, error=cancelled.to_payload())
            else:
                self._finish(run, subtask, future)
        run.running.clear()
        for subtask in run.subtasks.values():
            if subtask.status == SubtaskStatus.PENDING:
                self._mark_failed(run, subtask, CANCELLED, error=cancelled.to_payload())
        run.task.status = TaskStatus.CANCELLED

    def _fail_unscheduled(self, run: _TaskRun) -> None:
        for subtask in run.subtasks.values():
            if subtask.status == SubtaskStatus.PENDING:
                self._mark_failed(run, subtask, "never became ready")

    @staticmethod
    def _final_status(run: _TaskRun) -> TaskStatus:
        if run.cancel_requested:
            return TaskStatus.CANCELLED
        statuses = [st.status for st in run.subtasks.values()]
        if all(status == SubtaskStatus.COMPLETED for status in statuses):
            return TaskStatus.COMPLETED
        if any(status == SubtaskStatus.COMPLETED for status in statuses):
            return TaskStatus.PARTIAL
        return TaskStatus.FAILED

    # Observers ---------------------------------------------------------------

    def _notify(self, subtask: Subtask) -> None:
        if self.listener is not None:
            self.listener(subtask)

    async def _flush(self, run: _TaskRun) -> None:
        if self.store is None or not run.dirty:
            return
        run.dirty = False
        snapshot = run.snapshot().detached()
        try:
            await asyncio.wait_for(asyncio.to_thread(self.store.save, snapshot), timeout=self.save_timeout)
        except asyncio.TimeoutError:
            logger.warning("Saving task %s took longer than %gs", run.task.id, self.save_timeout)
        except Exception:
            logger.exception("Failed to persist snapshot for task %s", run.task.id)
