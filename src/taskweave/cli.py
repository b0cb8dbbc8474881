"""Command line interface for the task engine."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table

from .agents.orchestrator import Orchestrator
from .config import ProjectConfig
from .errors import EngineError, PlanError
from .tasks.base import Subtask, SubtaskStatus, TaskResult

app = typer.Typer(help="Autonomous task-execution engine")
console = Console()

STATUS_STYLES = {
    SubtaskStatus.PENDING: "[yellow]pending",
    SubtaskStatus.IN_PROGRESS: "[cyan]running...",
    SubtaskStatus.COMPLETED: "[green]completed",
    SubtaskStatus.FAILED: "[red]failed",
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )


def _load_config(config_path: Optional[Path]) -> ProjectConfig:
    config = ProjectConfig.from_file(config_path) if config_path else ProjectConfig()
    return config.apply_environment()


def _build_orchestrator(config_path: Optional[Path], **kwargs) -> Orchestrator:
    try:
        return Orchestrator(_load_config(config_path), **kwargs)
    except EngineError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=2) from exc


def _render_plan(waves) -> None:
    plan = Table(title="Execution Plan", show_lines=True)
    plan.add_column("Wave")
    plan.add_column("Subtask ID")
    plan.add_column("Depends on")
    plan.add_column("Description")
    for index, wave in enumerate(waves, start=1):
        for subtask in wave:
            plan.add_row(str(index), subtask.id, ", ".join(subtask.dependencies) or "-", subtask.description)
    console.print(plan)


def _render_result(result: TaskResult, show_events: bool) -> None:
    table = Table(title=f"Task {result.task.id}: {result.task.status.value}", show_lines=True)
    table.add_column("Subtask ID")
    table.add_column("Status")
    table.add_column("Output")
    for subtask in result.subtasks:
        output = subtask.result if subtask.status == SubtaskStatus.COMPLETED else subtask.failure_reason
        rendered = output if isinstance(output, str) else json.dumps(output, default=str)
        table.add_row(subtask.id, STATUS_STYLES[subtask.status], rendered or "")
    console.print(table)
    if show_events:
        console.rule("Event log")
        for event in result.context.events():
            scope = f" ({event.subtask_id})" if event.subtask_id else ""
            console.print(f"[dim]{event.timestamp:%H:%M:%S}[/] [bold]{event.kind.value}[/]{scope} {event.description}")


def _progress_listener(progress: Progress) -> Callable[[Subtask], None]:
    rows: Dict[str, int] = {}

    def on_change(subtask: Subtask) -> None:
        if subtask.id not in rows:
            rows[subtask.id] = progress.add_task(
                f"{subtask.id} - {subtask.description}", status=STATUS_STYLES[subtask.status], start=False
            )
        row = rows[subtask.id]
        progress.update(row, status=STATUS_STYLES[subtask.status])
        if subtask.status == SubtaskStatus.IN_PROGRESS:
            progress.start_task(row)

    return on_change


def _new_progress() -> Progress:
    return Progress(
        SpinnerColumn(style="cyan"),
        TextColumn("[progress.description]{task.description}"),
        TextColumn("{task.fields[status]}"),
        console=console,
        transient=False,
    )


def _ask_approval(subtask: Subtask) -> bool:
    return Confirm.ask(f"Run subtask [bold]{subtask.id}[/]: {subtask.description}?", console=console, default=True)


def _cancel_on_interrupt(orchestrator: Orchestrator) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
    except NotImplementedError:  # pragma: no cover - windows event loops
        pass


def _finish(result: TaskResult, show_events: bool) -> None:
    _render_result(result, show_events)
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def run(
    goal: str = typer.Argument(..., help="What the engine should accomplish"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML configuration"),
    show_events: bool = typer.Option(False, help="Print the shared-context event log"),
    confirm: bool = typer.Option(False, "--confirm", help="Ask before each subtask starts"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Decompose GOAL into subtasks and execute them."""

    _configure_logging(verbose)
    progress = _new_progress()
    orchestrator = _build_orchestrator(
        config_path, listener=_progress_listener(progress), confirm=_ask_approval if confirm else None
    )
    console.print(f"[bold green]Running project[/] {orchestrator.config.name}")

    async def main() -> TaskResult:
        _cancel_on_interrupt(orchestrator)
        task, waves = await orchestrator.plan(goal)
        _render_plan(waves)
        subtasks = [subtask for wave in waves for subtask in wave]
        with progress:
            return await orchestrator.execute(task, subtasks)

    try:
        result = asyncio.run(main())
    except PlanError as exc:
        console.print(f"[red]Could not plan the task:[/] {exc}")
        raise typer.Exit(code=2) from exc
    _finish(result, show_events)


@app.command()
def resume(
    task_id: str = typer.Argument(..., help="Id of a saved task"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML configuration"),
    show_events: bool = typer.Option(False, help="Print the shared-context event log"),
    confirm: bool = typer.Option(False, "--confirm", help="Ask before each subtask starts"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Continue a saved task; completed subtasks are not run again."""

    _configure_logging(verbose)
    progress = _new_progress()
    orchestrator = _build_orchestrator(
        config_path, listener=_progress_listener(progress), confirm=_ask_approval if confirm else None
    )

    async def main() -> TaskResult:
        _cancel_on_interrupt(orchestrator)
        with progress:
            return await orchestrator.resume(task_id)

    try:
        result = asyncio.run(main())
    except (EngineError, KeyError) as exc:
        console.print(f"[red]Cannot resume {task_id}:[/] {exc}")
        raise typer.Exit(code=2) from exc
    _finish(result, show_events)


@app.command()
def plan(
    goal: str = typer.Argument(..., help="Goal to decompose"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML configuration"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Show the subtask waves for GOAL without executing anything."""

    _configure_logging(verbose)
    orchestrator = _build_orchestrator(config_path)
    try:
        _, waves = asyncio.run(orchestrator.plan(goal))
    except PlanError as exc:
        console.print(f"[red]Could not plan the task:[/] {exc}")
        raise typer.Exit(code=2) from exc
    _render_plan(waves)


@app.command()
def history(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML configuration"),
    limit: int = typer.Option(20, help="Number of tasks to show"),
) -> None:
    """List saved tasks, most recent first."""

    orchestrator = _build_orchestrator(config_path)
    table = Table(title="Saved tasks", show_lines=True)
    table.add_column("Task ID")
    table.add_column("Status")
    table.add_column("Updated")
    table.add_column("Description")
    for row in orchestrator.list_tasks(limit):
        updated = datetime.fromtimestamp(row["updated_at"]).strftime("%Y-%m-%d %H:%M:%S")
        table.add_row(row["task_id"], row["status"], updated, row["description"])
    console.print(table)


@app.command()
def tools(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML configuration"),
) -> None:
    """List the built-in tools with their capability and arguments."""

    orchestrator = _build_orchestrator(config_path)
    table = Table(title="Tools", show_lines=True)
    table.add_column("Name")
    table.add_column("Capability")
    table.add_column("Arguments")
    table.add_column("Description")
    for name, tool in orchestrator.tool_registry.available().items():
        arguments = ", ".join(tool.schema()["parameters"].get("properties", {}))
        table.add_row(name, tool.capability.value, arguments, (tool.description.strip().splitlines() or [""])[0])
    console.print(table)


if __name__ == "__main__":  # pragma: no cover
    app()
