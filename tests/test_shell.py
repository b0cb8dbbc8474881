import asyncio
import os
import time

import pytest

from taskweave.errors import ResourceLimitExceeded
from taskweave.tools.base import ToolContext
from taskweave.tools.builtin import ShellArgs, ShellTool

pytestmark = pytest.mark.skipif(os.name != "posix", reason="requires a POSIX shell")


def make_context(sandbox, shared, **limits):
    return ToolContext(task_id="task-test", subtask_id="s1", iteration=1, shared=shared, sandbox_root=sandbox, **limits)


def test_command_output_and_exit_code(sandbox, shared):
    result = asyncio.run(ShellTool().invoke(ShellArgs(command="echo hello"), make_context(sandbox, shared)))

    assert result.success
    assert result.value["code"] == 0
    assert result.value["stdout"] == "hello\n"
    assert result.updates["bash:echo hello"]["stdout"] == "hello\n"


def test_non_zero_exit_is_a_failed_result(sandbox, shared):
    result = asyncio.run(ShellTool().invoke(ShellArgs(command="cat missing.txt"), make_context(sandbox, shared)))

    assert not result.success
    assert result.value["code"] != 0
    assert "missing.txt" in result.value["stderr"]


def test_runs_in_requested_working_directory(sandbox, shared):
    (sandbox / "pkg").mkdir()
    (sandbox / "pkg" / "marker").write_text("")

    result = asyncio.run(
        ShellTool().invoke(ShellArgs(command="ls", working_directory="pkg"), make_context(sandbox, shared))
    )

    assert result.value["stdout"].split() == ["marker"]


def test_timeout_kills_command_and_keeps_partial_output(sandbox, shared):
    context = make_context(sandbox, shared, command_timeout=0.5)
    started = time.monotonic()

    with pytest.raises(ResourceLimitExceeded) as excinfo:
        asyncio.run(ShellTool().invoke(ShellArgs(command="echo started; sleep 10"), context))

    assert excinfo.value.limit == "duration"
    assert "started" in excinfo.value.partial_output
    assert time.monotonic() - started < 5


def test_output_over_limit_kills_command(sandbox, shared):
    context = make_context(sandbox, shared, max_output_bytes=1000)

    with pytest.raises(ResourceLimitExceeded) as excinfo:
        asyncio.run(ShellTool().invoke(ShellArgs(command="yes"), context))

    assert excinfo.value.limit == "output"
    assert 0 < len(excinfo.value.partial_output) <= 1000


def test_cancellation_kills_the_process(sandbox, shared):
    context = make_context(sandbox, shared, command_timeout=30)

    async def scenario():
        job = asyncio.ensure_future(ShellTool().invoke(ShellArgs(command="sleep 30"), context))
        await asyncio.sleep(0.3)
        job.cancel()
        with pytest.raises(asyncio.CancelledError):
            await job

    started = time.monotonic()
    asyncio.run(scenario())
    assert time.monotonic() - started < 5
