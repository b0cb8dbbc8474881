import asyncio

import pytest

from taskweave.agents.decomposer import TaskDecomposer
from taskweave.errors import CycleDetected, UnknownDependency
from taskweave.llm.provider import StaticResponseProvider
from taskweave.retrieval import RetrievedEntry, StaticRetriever
from taskweave.tasks.base import Task


def decompose(response, goal="refactor the parser", **options):
    provider = StaticResponseProvider([response])
    decomposer = TaskDecomposer(provider, **options)
    task = Task(id="task-1", description=goal)
    return asyncio.run(decomposer.decompose(task)), provider, task


def test_dependencies_may_be_indices_or_ids():
    subtasks, _, task = decompose(
        {
            "subtasks": [
                {"id": "find", "description": "locate the parser module", "capabilities": ["filesystem-read"]},
                {"description": "rewrite the tokenizer", "dependencies": [0], "writes": ["tokenizer"]},
                {"id": "test", "description": "run the tests", "dependencies": ["find", "1"]},
            ]
        }
    )

    find, rewrite, check = subtasks
    assert rewrite.dependencies == ("find",)
    assert check.dependencies == ("find", rewrite.id)
    assert find.capabilities == ("filesystem-read",)
    assert rewrite.writes == ("tokenizer",)
    assert task.subtask_ids == ["find", rewrite.id, "test"]


def test_fenced_json_list_is_accepted():
    subtasks, _, _ = decompose('Plan:\n```json\n["read the code", "write the fix"]\n```')

    assert [subtask.description for subtask in subtasks] == ["read the code", "write the fix"]


def test_unparseable_reply_falls_back_to_single_subtask():
    subtasks, _, _ = decompose("I would start by reading the code.")

    assert len(subtasks) == 1
    assert subtasks[0].description == "refactor the parser"


def test_cycles_are_surfaced():
    with pytest.raises(CycleDetected) as excinfo:
        decompose(
            {
                "subtasks": [
                    {"id": "a", "description": "first", "dependencies": ["b"]},
                    {"id": "b", "description": "second", "dependencies": ["a"]},
                ]
            }
        )
    assert excinfo.value.ids == ["a", "b"]


def test_unknown_dependencies_are_surfaced():
    with pytest.raises(UnknownDependency):
        decompose({"subtasks": [{"id": "a", "description": "first", "dependencies": ["zzz"]}]})


def test_simple_command_skips_the_model():
    subtasks, provider, _ = decompose(
        {"subtasks": []}, goal="Please run cargo test for me", allowed_commands=["cargo", "ls"]
    )

    assert provider.prompts == []
    assert [subtask.description for subtask in subtasks] == ["Execute command: cargo test"]
    assert subtasks[0].capabilities == ("process-execution",)


def test_simple_command_requires_allowed_leading_token():
    decomposer = TaskDecomposer(StaticResponseProvider([]), allowed_commands=["ls"])
    assert decomposer.simple_command("run cargo build") is None
    assert decomposer.simple_command("summarize the readme") is None


@pytest.mark.parametrize(
    "goal",
    [
        "Write pytest tests for the parser module",
        "Explain why cargo test fails on CI",
        "run pytest-benchmark against the parser",
        "document the git status output format",
    ],
)
def test_simple_command_only_matches_at_the_start_of_the_goal(goal):
    decomposer = TaskDecomposer(StaticResponseProvider([]))
    assert decomposer.simple_command(goal) is None


def test_simple_command_accepts_leading_verbs():
    decomposer = TaskDecomposer(StaticResponseProvider([]))
    assert decomposer.simple_command("pytest") == "pytest"
    assert decomposer.simple_command("Execute the  NPM   test suite") == "npm test"
    assert decomposer.simple_command("run git status.") == "git status"


def test_prompt_includes_retrieved_snippets_and_tools():
    retriever = StaticRetriever([RetrievedEntry("src/parser.py", 0.8, "parser tokenizer class")])
    _, provider, _ = decompose(
        {"subtasks": [{"description": "go"}]}, retriever=retriever, tool_names=["grep", "read_file"]
    )

    prompt = provider.prompts[0]
    assert "src/parser.py (0.80): parser tokenizer class" in prompt
    assert "grep, read_file" in prompt
    assert "Main task: refactor the parser" in prompt
