import asyncio
import json

import pytest

from taskweave.context import SharedContext
from taskweave.security import SecurityPolicy
from taskweave.tools.base import ToolContext


class ScriptedProvider:
    """Async provider that answers per subtask id and tracks concurrent calls."""

    def __init__(self, scripts=None, delay=0.0):
        self.scripts = {key: list(value) for key, value in (scripts or {}).items()}
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.calls = []
        self.prompts = {}

    async def generate(self, prompt, context):
        self.calls.append(context.subtask_id)
        self.prompts.setdefault(context.subtask_id, []).append(prompt)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        script = self.scripts.get(context.subtask_id)
        if not script:
            reply = {"thought": "nothing left", "action": "final", "answer": f"{context.subtask_id} done"}
        elif len(script) > 1:
            reply = script.pop(0)
        else:
            reply = script[0]
        return reply if isinstance(reply, str) else json.dumps(reply)


@pytest.fixture
def shared():
    return SharedContext("task-test")


@pytest.fixture
def sandbox(tmp_path):
    return tmp_path.resolve()


@pytest.fixture
def tool_context(sandbox, shared):
    return ToolContext(task_id="task-test", subtask_id="s1", iteration=1, shared=shared, sandbox_root=sandbox)


@pytest.fixture
def policy(sandbox):
    return SecurityPolicy(
        sandbox_root=sandbox,
        allowed_commands=["echo", "ls", "cat", "sleep", "yes", "grep"],
        denied_commands=["sudo", "rm"],
        command_timeout=5,
    )
