import asyncio

import pytest

from taskweave.agents.orchestrator import Orchestrator
from taskweave.config import ProjectConfig
from taskweave.context import SharedContext
from taskweave.errors import ConfigError
from taskweave.llm.provider import ConsoleEchoProvider, StaticResponseProvider
from taskweave.persistence import InMemoryTaskStore, TaskSnapshot
from taskweave.tasks.base import Subtask, SubtaskStatus, Task, TaskStatus


def make_config(sandbox, extra=""):
    return ProjectConfig.from_yaml(
        f"""
name: test-project
engine:
  max_concurrent_subtasks: 2
security:
  sandbox_root: {sandbox}
{extra}
"""
    )


def test_orchestrator_initialization(sandbox):
    orchestrator = Orchestrator(make_config(sandbox))

    assert orchestrator.config.name == "test-project"
    assert isinstance(orchestrator.llm_provider, ConsoleEchoProvider)
    assert isinstance(orchestrator.store, InMemoryTaskStore)
    assert orchestrator.runner.max_concurrent == 2
    assert orchestrator.policy.sandbox_root == sandbox
    assert "bash" in orchestrator.tool_registry


def test_provider_is_built_from_config(sandbox):
    config = make_config(
        sandbox,
        """
llm:
  provider: taskweave.llm.provider:StaticResponseProvider
  params:
    responses:
      - '{"subtasks": [{"id": "look", "description": "list the files"}]}'
      - '{"action": "list_directory", "input": {"path": "."}}'
      - '{"action": "final", "answer": "found notes.txt"}'
persistence:
  type: none
""",
    )
    (sandbox / "notes.txt").write_text("hi\n")
    orchestrator = Orchestrator(config)

    result = asyncio.run(orchestrator.run("what files are there?"))

    assert orchestrator.store is None
    assert result.success
    assert result.outputs == {"look": "found notes.txt"}
    assert result.context.get_variable("ls:.") == ["notes.txt"]


def test_bad_provider_path_raises_config_error(sandbox):
    config = make_config(sandbox, "llm:\n  provider: taskweave.nowhere:Provider\n")

    with pytest.raises(ConfigError):
        Orchestrator(config)


def test_plan_returns_waves_without_running(sandbox):
    provider = StaticResponseProvider(
        [{"subtasks": [{"id": "a", "description": "read"}, {"id": "b", "description": "edit", "dependencies": ["a"]}]}]
    )
    orchestrator = Orchestrator(make_config(sandbox), llm_provider=provider)

    task, waves = asyncio.run(orchestrator.plan("fix the bug"))

    assert [[st.id for st in wave] for wave in waves] == [["a"], ["b"]]
    assert task.subtask_ids == ["a", "b"]
    assert len(provider.prompts) == 1


def test_resume_skips_completed_subtasks(sandbox):
    store = InMemoryTaskStore()
    task = Task(id="task-resume", description="two step job", status=TaskStatus.RUNNING, subtask_ids=["a", "b"])
    first = Subtask(id="a", description="collect", status=SubtaskStatus.COMPLETED, result="collected 3")
    second = Subtask(id="b", description="summarize", dependencies=("a",), status=SubtaskStatus.IN_PROGRESS)
    context = SharedContext(task.id)
    context.set_variable("result:a", "collected 3", writer="a")
    store.save(TaskSnapshot(task=task, subtasks=[first, second], context=context))

    provider = StaticResponseProvider([{"action": "final", "answer": "summary ready"}])
    orchestrator = Orchestrator(make_config(sandbox), llm_provider=provider, store=store)

    result = asyncio.run(orchestrator.resume("task-resume"))

    assert result.task.status == TaskStatus.COMPLETED
    assert result.outputs == {"a": "collected 3", "b": "summary ready"}
    assert len(provider.prompts) == 1
    assert "collected 3" in provider.prompts[0]
    assert store.load("task-resume").task.status == TaskStatus.COMPLETED


def test_resume_unknown_task(sandbox):
    orchestrator = Orchestrator(make_config(sandbox), llm_provider=StaticResponseProvider([]))

    with pytest.raises(KeyError):
        asyncio.run(orchestrator.resume("missing"))


def test_resume_requires_a_store(sandbox):
    config = make_config(sandbox, "persistence:\n  type: none\n")
    orchestrator = Orchestrator(config, llm_provider=StaticResponseProvider([]))

    with pytest.raises(ConfigError):
        asyncio.run(orchestrator.resume("anything"))


def test_confirmation_is_passed_to_the_runner(sandbox):
    asked = []

    def confirm(subtask):
        asked.append(subtask.id)
        return False

    provider = StaticResponseProvider([{"subtasks": [{"id": "edit", "description": "rewrite the parser"}]}])
    orchestrator = Orchestrator(make_config(sandbox), llm_provider=provider, confirm=confirm)

    result = asyncio.run(orchestrator.run("fix the parser"))

    assert orchestrator.runner.confirm is confirm
    assert orchestrator.runner.confirm_timeout == 300.0
    assert asked == ["edit"]
    assert result.failures == {"edit": "declined"}
    assert len(provider.prompts) == 1


def test_list_tasks_reads_the_store(sandbox):
    provider = StaticResponseProvider(
        [{"subtasks": [{"id": "look", "description": "look around"}]}, {"action": "final", "answer": "seen"}]
    )
    orchestrator = Orchestrator(make_config(sandbox), llm_provider=provider)

    result = asyncio.run(orchestrator.run("survey the sandbox"))
    rows = orchestrator.list_tasks()

    assert [row["task_id"] for row in rows] == [result.task.id]
    assert rows[0]["description"] == "survey the sandbox"
    assert rows[0]["status"] == "completed"
    assert Orchestrator(make_config(sandbox, "persistence:\n  type: none\n")).list_tasks() == []
