import pytest

from taskweave.errors import CycleDetected, PlanError, UnknownDependency
from taskweave.tasks.base import Subtask, SubtaskStatus
from taskweave.tasks.scheduler import DependencyScheduler


def make(subtask_id, *dependencies, writes=()):
    return Subtask(id=subtask_id, description=f"do {subtask_id}", dependencies=dependencies, writes=writes)


def ids(waves):
    return [[subtask.id for subtask in wave] for wave in waves]


def test_plan_groups_independent_subtasks_into_waves():
    a, b = make("a"), make("b")
    c = make("c", "a", "b")
    d = make("d", "c")

    waves = DependencyScheduler().plan([d, c, b, a])

    assert ids(waves) == [["a", "b"], ["c"], ["d"]]


def test_cycle_names_only_the_subtasks_on_the_cycle():
    a = make("a", "b")
    b = make("b", "a")
    c = make("c", "a")

    with pytest.raises(CycleDetected) as excinfo:
        DependencyScheduler().plan([a, b, c])

    assert excinfo.value.ids == ["a", "b"]
    assert excinfo.value.to_payload()["kind"] == "cycle_detected"


def test_self_reference_is_a_cycle():
    with pytest.raises(CycleDetected) as excinfo:
        DependencyScheduler().validate([make("a", "a")])
    assert excinfo.value.ids == ["a"]


def test_unknown_dependency_is_rejected():
    with pytest.raises(UnknownDependency) as excinfo:
        DependencyScheduler().validate([make("a", "missing")])
    assert excinfo.value.dependency == "missing"
    assert excinfo.value.subtask_id == "a"


def test_duplicate_ids_are_rejected():
    with pytest.raises(PlanError):
        DependencyScheduler().plan([make("a"), make("a")])


def test_ready_returns_pending_subtasks_with_completed_dependencies_in_creation_order():
    a, b, c, d = make("a"), make("b", "a"), make("c", "b"), make("d")
    a.status = SubtaskStatus.COMPLETED

    ready = DependencyScheduler().ready([d, c, b, a])

    assert [subtask.id for subtask in ready] == ["b", "d"]


def test_ready_does_not_release_dependents_of_failed_subtasks():
    a, b = make("a"), make("b", "a")
    a.status = SubtaskStatus.FAILED

    assert DependencyScheduler().ready([a, b]) == []


def test_overlapping_writes_are_serialized_in_creation_order():
    a = make("a", writes=("report",))
    b = make("b", writes=("report",))
    c = make("c", writes=("other",))
    scheduler = DependencyScheduler()

    assert ids(scheduler.plan([a, b, c])) == [["a", "c"], ["b"]]
    assert [st.id for st in scheduler.ready([a, b, c])] == ["a", "c"]

    a.status = SubtaskStatus.FAILED
    assert [st.id for st in scheduler.ready([a, b, c])] == ["b", "c"]


def test_write_hints_can_be_disabled():
    a = make("a", writes=("report",))
    b = make("b", writes=("report",))

    waves = DependencyScheduler(serialize_shared_writes=False).plan([a, b])

    assert ids(waves) == [["a", "b"]]


def test_write_hint_never_reverses_a_declared_dependency():
    a = make("a", writes=("report",))
    b = make("b", writes=("report",))
    a.dependencies = ("b",)

    waves = DependencyScheduler().plan([a, b])

    assert ids(waves) == [["b"], ["a"]]


def test_extend_keeps_completed_waves_and_returns_new_waves():
    a = make("a")
    b = make("b", "a")
    a.status = SubtaskStatus.COMPLETED
    scheduler = DependencyScheduler()

    new_waves = scheduler.extend([a, b], [make("c", "b"), make("e", "a")])

    assert ids(new_waves) == [["e"], ["c"]]
    assert a.dependencies == () and b.dependencies == ("a",)


def test_extend_rejects_reused_ids_and_cycles_among_new_subtasks():
    scheduler = DependencyScheduler()
    existing = [make("a")]

    with pytest.raises(PlanError):
        scheduler.extend(existing, [make("a")])
    with pytest.raises(CycleDetected):
        scheduler.extend(existing, [make("x", "y"), make("y", "x")])
