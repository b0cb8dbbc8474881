import pytest

from taskweave.context import EventKind
from taskweave.errors import CapabilityNotAllowed, CommandNotAllowed, PathEscapesSandbox
from taskweave.security import SecurityPolicy, command_segments, split_substitutions
from taskweave.tools.base import ToolInvocation
from taskweave.tools.builtin import EditFileArgs, EditFileTool, ReadFileArgs, ReadFileTool, ShellArgs, ShellTool


def test_command_segments_split_on_control_operators():
    segments = command_segments("ls -la && cat a.txt | grep x; echo done")

    assert segments == [["ls", "-la"], ["cat", "a.txt"], ["grep", "x"], ["echo", "done"]]


def test_every_segment_must_start_with_an_allowed_command(policy):
    policy.check_command("ls -la | grep py && echo ok")
    policy.check_command("LC_ALL=C ls")

    with pytest.raises(CommandNotAllowed) as excinfo:
        policy.check_command("echo hi && curl http://example.com")
    assert excinfo.value.token == "curl"


def test_newlines_separate_commands(policy):
    assert command_segments("ls\ncat a.txt") == [["ls"], ["cat", "a.txt"]]

    with pytest.raises(CommandNotAllowed) as excinfo:
        policy.check_command("echo hi\nwget http://example.com")
    assert excinfo.value.token == "wget"


def test_split_substitutions_unwraps_nested_commands():
    outer, inner = split_substitutions('echo "$(cat `ls notes`)" done')

    assert outer == 'echo "_" done'
    assert inner == ["ls notes", "cat _"]


@pytest.mark.parametrize(
    "command, token",
    [
        ("echo `rm -rf somedir`", "rm"),
        ('echo "$(rm -rf somedir)"', "rm"),
        ("echo $(cat a.txt | sudo tee /etc/hosts)", "sudo"),
        ("echo `wget http://example.com`", "wget"),
        ("$(which ls) -la", "_"),
    ],
)
def test_command_substitutions_are_checked(policy, command, token):
    with pytest.raises(CommandNotAllowed) as excinfo:
        policy.check_command(command)
    assert excinfo.value.token == token


def test_allowed_substitutions_pass(policy):
    policy.check_command('echo "files: $(ls | grep py)"')
    policy.check_command("echo `cat notes.txt`")


def test_unterminated_substitution_is_rejected(policy):
    with pytest.raises(CommandNotAllowed):
        policy.check_command("echo `rm -rf somedir")
    with pytest.raises(CommandNotAllowed):
        policy.check_command("echo $((1 + 2))")


def test_denied_tokens_are_rejected_anywhere_in_a_segment(policy):
    with pytest.raises(CommandNotAllowed) as excinfo:
        policy.check_command("ls; rm -rf build")
    assert excinfo.value.token == "rm"

    with pytest.raises(CommandNotAllowed) as excinfo:
        policy.check_command("echo x | sudo tee /etc/hosts")
    assert excinfo.value.token == "sudo"


def test_empty_and_unparseable_commands_are_rejected(policy):
    with pytest.raises(CommandNotAllowed):
        policy.check_command("   ")
    with pytest.raises(CommandNotAllowed):
        policy.check_command("echo 'unterminated")


def test_paths_must_stay_inside_the_sandbox(policy, sandbox):
    assert policy.check_path("src/app.py") == sandbox / "src" / "app.py"

    with pytest.raises(PathEscapesSandbox):
        policy.check_path("../outside.txt")
    with pytest.raises(PathEscapesSandbox):
        policy.check_path("/etc/passwd")


def test_evaluate_logs_denied_invocation_with_arguments(policy, shared):
    arguments = {"command": "curl http://example.com"}
    invocation = ToolInvocation(tool="bash", arguments=arguments, subtask_id="s1")

    with pytest.raises(CommandNotAllowed):
        policy.evaluate(invocation, ShellTool(), ShellArgs(**arguments), shared)

    events = shared.events(kinds=[EventKind.SECURITY])
    assert len(events) == 1
    assert events[0].payload["decision"] == "denied"
    assert events[0].payload["arguments"] == arguments
    assert events[0].payload["error"]["kind"] == "command_not_allowed"


def test_evaluate_logs_allowed_invocation(policy, shared):
    invocation = ToolInvocation(tool="read_file", arguments={"file_path": "a.txt"}, subtask_id="s1")

    policy.evaluate(invocation, ReadFileTool(), ReadFileArgs(file_path="a.txt"), shared)

    assert shared.events(kinds=[EventKind.SECURITY])[0].payload["decision"] == "allowed"


def test_file_tool_paths_are_confined(policy, shared):
    invocation = ToolInvocation(tool="read_file", arguments={"file_path": "../../etc/passwd"}, subtask_id="s1")

    with pytest.raises(PathEscapesSandbox):
        policy.evaluate(invocation, ReadFileTool(), ReadFileArgs(file_path="../../etc/passwd"), shared)


def test_working_directory_is_confined(policy, shared):
    arguments = ShellArgs(command="ls", working_directory="..")
    invocation = ToolInvocation(tool="bash", arguments=arguments.model_dump(), subtask_id="s1")

    with pytest.raises(PathEscapesSandbox):
        policy.evaluate(invocation, ShellTool(), arguments, shared)


def test_capabilities_outside_policy_are_rejected(sandbox, shared):
    policy = SecurityPolicy(sandbox_root=sandbox, allowed_capabilities=["filesystem-read"])
    policy.check_capabilities(["filesystem-read"])

    with pytest.raises(CapabilityNotAllowed) as excinfo:
        policy.check_capabilities(["filesystem-read", "process-execution"])
    assert excinfo.value.capabilities == ["process-execution"]

    arguments = EditFileArgs(file_path="a.txt", old_string="", new_string="x")
    invocation = ToolInvocation(tool="edit_file", arguments=arguments.model_dump(), subtask_id="s1")
    with pytest.raises(CapabilityNotAllowed):
        policy.evaluate(invocation, EditFileTool(), arguments, shared)
