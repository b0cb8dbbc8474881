from typer.testing import CliRunner

from taskweave import cli
from taskweave.cli import app

runner = CliRunner()


def test_tools_command_lists_builtin_tools():
    result = runner.invoke(app, ["tools"])

    assert result.exit_code == 0
    assert "bash" in result.output
    assert "glob" in result.output


def test_run_reports_bad_config(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("engine: {max_concurrent_subtasks: 0}\n")

    result = runner.invoke(app, ["run", "do something", "--config", str(path)])

    assert result.exit_code == 2


def test_plan_command_renders_waves(tmp_path):
    path = tmp_path / "project.yaml"
    path.write_text(
        f"""
security:
  sandbox_root: {tmp_path}
llm:
  provider: taskweave.llm.provider:StaticResponseProvider
  params:
    responses:
      - '{{"subtasks": [{{"id": "scan", "description": "scan files"}}]}}'
"""
    )

    result = runner.invoke(app, ["plan", "audit the repo", "--config", str(path)])

    assert result.exit_code == 0
    assert "scan" in result.output


def test_plan_reports_unknown_provider(tmp_path):
    path = tmp_path / "project.yaml"
    path.write_text("llm:\n  provider: taskweave.nowhere:Provider\n")

    result = runner.invoke(app, ["plan", "audit the repo", "--config", str(path)])

    assert result.exit_code == 2


def write_config(tmp_path, responses):
    path = tmp_path / "project.yaml"
    lines = "\n".join(f"      - '{response}'" for response in responses)
    path.write_text(
        f"""
security:
  sandbox_root: {tmp_path}
llm:
  provider: taskweave.llm.provider:StaticResponseProvider
  params:
    responses:
{lines}
"""
    )
    return path


def test_run_with_confirm_asks_before_each_subtask(tmp_path, monkeypatch):
    asked = []

    def refuse(subtask):
        asked.append(subtask.id)
        return False

    monkeypatch.setattr(cli, "_ask_approval", refuse)
    path = write_config(tmp_path, ['{"subtasks": [{"id": "scan", "description": "scan files"}]}'])

    result = runner.invoke(app, ["run", "audit the repo", "--confirm", "--config", str(path)])

    assert result.exit_code == 1
    assert asked == ["scan"]
    assert "declined" in result.output


def test_resume_unknown_task_exits_with_usage_error(tmp_path):
    path = write_config(tmp_path, ['{"action": "final", "answer": "unused"}'])

    result = runner.invoke(app, ["resume", "task-missing", "--config", str(path)])

    assert result.exit_code == 2
    assert "task-missing" in result.output


def test_history_lists_saved_tasks(tmp_path, monkeypatch):
    rows = [{"task_id": "task-1", "description": "audit the repo", "status": "partial", "updated_at": 1700000000.0}]
    monkeypatch.setattr(cli.Orchestrator, "list_tasks", lambda self, limit: rows[:limit])

    result = runner.invoke(app, ["history", "--limit", "5"])

    assert result.exit_code == 0
    assert "task-1" in result.output
    assert "partial" in result.output
