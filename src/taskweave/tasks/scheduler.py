"""Dependency scheduling: graph validation and wave decomposition."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from ..errors import CycleDetected, PlanError, UnknownDependency
from .base import Subtask, SubtaskStatus

logger = logging.getLogger(__name__)

Edge = Tuple[str, str]


class DependencyScheduler:
    """Builds waves of subtasks whose dependencies are satisfied.

    Subtasks that declare overlapping ``writes`` keys are ordered by creation
    sequence through implicit edges, so two writers of the same context key
    never run at the same time. Hints that would contradict the explicit
    graph are dropped and the key falls back to last-writer-wins.
    """

    def __init__(self, *, serialize_shared_writes: bool = True) -> None:
        self.serialize_shared_writes = serialize_shared_writes

    def validate(self, subtasks: Sequence[Subtask]) -> None:
        self.plan(subtasks)

    def plan(self, subtasks: Sequence[Subtask]) -> List[List[Subtask]]:
        """Return the waves for ``subtasks`` or raise a planning error."""

        by_id = self._index(subtasks)
        explicit = [(dep, st.id) for st in subtasks for dep in st.dependencies]
        waves = self._kahn(by_id, explicit)
        hints = self.write_hints(subtasks)
        if hints:
            waves = self._kahn(by_id, explicit + hints)
        logger.debug("Planned %d subtasks into %d waves", len(by_id), len(waves))
        return waves

    def extend(self, existing: Sequence[Subtask], new: Sequence[Subtask]) -> List[List[Subtask]]:
        """Validate ``new`` subtasks against the current graph.

        Existing dependency sets are never modified; completed waves stay
        valid because new subtasks can only point at existing ones, never the
        other way round. Returns the waves containing the new subtasks.
        """

        taken = {st.id for st in existing}
        for subtask in new:
            if subtask.id in taken:
                raise PlanError(f"Subtask id '{subtask.id}' already exists", subtask_id=subtask.id)
            taken.add(subtask.id)
        waves = self.plan(list(existing) + list(new))
        new_ids = {st.id for st in new}
        return [[st for st in wave if st.id in new_ids] for wave in waves if any(st.id in new_ids for st in wave)]

    def ready(self, subtasks: Iterable[Subtask]) -> List[Subtask]:
        """Pending subtasks whose dependencies are all completed, in creation order.

        A subtask held back by a write hint waits until the earlier writer is
        terminal, whatever its outcome.
        """

        items = list(subtasks)
        status = {st.id: st.status for st in items}
        held: Dict[str, Set[str]] = {}
        for before, after in self.write_hints(items):
            held.setdefault(after, set()).add(before)
        eligible = []
        for subtask in items:
            if subtask.status != SubtaskStatus.PENDING:
                continue
            if not all(status.get(dep) == SubtaskStatus.COMPLETED for dep in subtask.dependencies):
                continue
            if not all(status[dep].is_terminal for dep in held.get(subtask.id, ())):
                continue
            eligible.append(subtask)
        return sorted(eligible, key=lambda st: st.sequence)

    def write_hints(self, subtasks: Sequence[Subtask]) -> List[Edge]:
        """Implicit ``(earlier, later)`` edges between writers of the same key."""

        if not self.serialize_shared_writes:
            return []
        writers = sorted((st for st in subtasks if st.writes), key=lambda st: st.sequence)
        if len(writers) < 2:
            return []
        ancestors = self._ancestors(subtasks)
        hints: List[Edge] = []
        for index, later in enumerate(writers):
            for earlier in writers[:index]:
                if not set(earlier.writes) & set(later.writes):
                    continue
                if later.id in ancestors.get(earlier.id, set()):
                    continue
                hints.append((earlier.id, later.id))
        if not hints:
            return []
        explicit = [(dep, st.id) for st in subtasks for dep in st.dependencies]
        try:
            self._kahn({st.id: st for st in subtasks}, explicit + hints)
        except CycleDetected:
            logger.warning("Write-ordering hints conflict with declared dependencies; using last-writer-wins")
            return []
        return hints

    # Internal helpers ------------------------------------------------------

    @staticmethod
    def _index(subtasks: Sequence[Subtask]) -> Dict[str, Subtask]:
        by_id: Dict[str, Subtask] = {}
        for subtask in subtasks:
            if subtask.id in by_id:
                raise PlanError(f"Duplicate subtask id '{subtask.id}'", subtask_id=subtask.id)
            by_id[subtask.id] = subtask
        for subtask in subtasks:
            for dep in subtask.dependencies:
                if dep == subtask.id:
                    raise CycleDetected([subtask.id])
                if dep not in by_id:
                    raise UnknownDependency(subtask.id, dep)
        return by_id

    @staticmethod
    def _kahn(by_id: Dict[str, Subtask], edges: Sequence[Edge]) -> List[List[Subtask]]:
        in_degree: Dict[str, int] = {sid: 0 for sid in by_id}
        successors: Dict[str, Set[str]] = {sid: set() for sid in by_id}
        for before, after in edges:
            if after not in successors[before]:
                successors[before].add(after)
                in_degree[after] += 1

        waves: List[List[Subtask]] = []
        frontier = [sid for sid, degree in in_degree.items() if degree == 0]
        while frontier:
            wave = sorted((by_id[sid] for sid in frontier), key=lambda st: st.sequence)
            waves.append(wave)
            next_frontier: List[str] = []
            for subtask in wave:
                for succ in successors[subtask.id]:
                    in_degree[succ] -= 1
                    if in_degree[succ] == 0:
                        next_frontier.append(succ)
            frontier = next_frontier

        remaining = {sid for sid, degree in in_degree.items() if degree > 0}
        if remaining:
            # Peel off nodes that are merely downstream of a cycle.
            on_cycle = set(remaining)
            changed = True
            while changed:
                changed = False
                for sid in list(on_cycle):
                    if not successors[sid] & on_cycle:
                        on_cycle.discard(sid)
                        changed = True
            raise CycleDetected(on_cycle or remaining)
        return waves

    @staticmethod
    def _ancestors(subtasks: Sequence[Subtask]) -> Dict[str, Set[str]]:
        deps = {st.id: set(st.dependencies) for st in subtasks}
        found: Dict[str, Set[str]] = {}
        for sid in deps:
            seen: Set[str] = set()
            stack = list(deps[sid])
            while stack:
                current = stack.pop()
                if current in seen:
                    continue
                seen.add(current)
                stack.extend(deps.get(current, ()))
            found[sid] = seen
        return found
