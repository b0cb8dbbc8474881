"""Built-in filesystem, search and shell tools."""

from __future__ import annotations

import asyncio
import difflib
import fnmatch
import os
import re
import signal
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from pydantic import Field, model_validator

from ..errors import AmbiguousMatch, InvalidArguments, NoMatch, ResourceLimitExceeded
from .base import Capability, Tool, ToolArguments, ToolContext, ToolResult
from .registry import ToolRegistry

IGNORED_DIRECTORIES = {".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv", "target", ".mypy_cache"}
MAX_RESULTS = 200
MAX_GREP_FILE_BYTES = 1024 * 1024
READ_CHUNK = 4096


def _expand_braces(pattern: str) -> List[str]:
    """Expand one level of ``{a,b}`` alternatives, which fnmatch and pathlib lack."""

    match = re.search(r"\{([^{}]*)\}", pattern)
    if not match:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end() :]
    expanded: List[str] = []
    for option in match.group(1).split(","):
        expanded.extend(_expand_braces(f"{head}{option}{tail}"))
    return expanded


def _is_ignored(path: Path, root: Path) -> bool:
    try:
        parts = path.relative_to(root).parts
    except ValueError:
        parts = path.parts
    return any(part in IGNORED_DIRECTORIES for part in parts)


def _walk_files(root: Path) -> Iterator[Path]:
    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRECTORIES)
        for name in sorted(files):
            yield Path(current) / name


def _looks_binary(path: Path) -> bool:
    with path.open("rb") as handle:
        return b"\0" in handle.read(1024)


def _summarize(label: str, result: Dict[str, Any], *, limit: int = 1200) -> str:
    output = (result.get("stdout") or result.get("stderr") or "").strip()
    if not output:
        output = "<no output>"
    if len(output) > limit:
        output = output[:limit] + "\n...[truncated]..."
    status = "ok" if result.get("code") == 0 else f"exit {result.get('code')}"
    return f"{label} ({status}):\n{output}"


class ListDirectoryArgs(ToolArguments):
    path: str = Field(".", description="Directory to list, relative to the sandbox root")
    ignore: List[str] = Field(default_factory=list, description="Glob patterns to leave out (e.g. ['*.tmp'])")


class ListDirectoryTool(Tool):
    """List files and directories at a path. Directories are listed first and end with '/'."""

    name = "list_directory"
    capability = Capability.FILESYSTEM_READ
    arguments = ListDirectoryArgs

    def run(self, arguments: ListDirectoryArgs, context: ToolContext) -> ToolResult:
        target = context.resolve(arguments.path)
        if not target.exists():
            return ToolResult(success=False, message=f"Path not found: {arguments.path}")
        if not target.is_dir():
            return ToolResult(success=False, message=f"Not a directory: {arguments.path}")
        entries = []
        for child in target.iterdir():
            if child.name in IGNORED_DIRECTORIES:
                continue
            if any(fnmatch.fnmatch(child.name, pattern) for pattern in arguments.ignore):
                continue
            entries.append(child)
        entries.sort(key=lambda p: (not p.is_dir(), p.name))
        listing = [f"{p.name}/" if p.is_dir() else p.name for p in entries[:MAX_RESULTS]]
        message = f"{len(entries)} entries in {context.display(target)}"
        if len(entries) > MAX_RESULTS:
            message += f" (showing first {MAX_RESULTS})"
        return ToolResult(
            success=True,
            value=listing,
            message=message,
            updates={f"ls:{context.display(target)}": listing},
        )


class GlobArgs(ToolArguments):
    pattern: str = Field(..., min_length=1, description="Glob pattern, e.g. '**/*.py' or 'src/**/*.{js,ts}'")
    path: str = Field(".", description="Directory to search in")
    query: Optional[str] = Field(None, description="Optional natural-language query for semantic file lookup")


class GlobTool(Tool):
    """Find files whose path matches a glob pattern. Use when the intent is to locate files."""

    name = "glob"
    capability = Capability.FILESYSTEM_READ
    arguments = GlobArgs

    def run(self, arguments: GlobArgs, context: ToolContext) -> ToolResult:
        base = context.resolve(arguments.path)
        if not base.is_dir():
            return ToolResult(success=False, message=f"Not a directory: {arguments.path}")
        if Path(arguments.pattern).is_absolute():
            raise InvalidArguments(self.name, "pattern", "must be relative to 'path'")
        found: Dict[Path, None] = {}
        for pattern in _expand_braces(arguments.pattern):
            for match in base.glob(pattern):
                if context.cancelled:
                    return ToolResult(success=False, message=f"glob cancelled after {len(found)} match(es)")
                match = match.resolve()
                # '..' segments in the pattern must not leave the search base
                if base not in match.parents or _is_ignored(match, base):
                    continue
                found[match] = None
        ordered = sorted(found, key=lambda p: (not p.is_dir(), str(p)))
        paths = [context.display(p) for p in ordered[:MAX_RESULTS]]
        value: Dict[str, Any] = {"paths": paths}
        if arguments.query and context.retriever is not None:
            value["related"] = [
                {"identifier": entry.identifier, "score": entry.score, "snippet": entry.snippet}
                for entry in context.retriever.search(arguments.query)
            ]
        message = f"Found {len(ordered)} path(s) matching {arguments.pattern}" if ordered else (
            f"No files found matching {arguments.pattern}"
        )
        return ToolResult(success=True, value=value, message=message, updates={f"glob:{arguments.pattern}": paths})


class GrepArgs(ToolArguments):
    pattern: str = Field(..., min_length=1, description="Regular expression to search for in file contents")
    path: str = Field(".", description="Directory or file to search")
    include: Optional[str] = Field(None, description="File name glob to include, e.g. '*.py' or '*.{ts,tsx}'")


class GrepTool(Tool):
    """Search file contents with a regular expression. Returns path:line: text matches."""

    name = "grep"
    capability = Capability.FILESYSTEM_READ
    arguments = GrepArgs

    def run(self, arguments: GrepArgs, context: ToolContext) -> ToolResult:
        try:
            regex = re.compile(arguments.pattern)
        except re.error as exc:
            raise InvalidArguments(self.name, "pattern", f"is not a valid regular expression: {exc}") from exc
        base = context.resolve(arguments.path)
        if not base.exists():
            return ToolResult(success=False, message=f"Path not found: {arguments.path}")
        includes = _expand_braces(arguments.include) if arguments.include else []
        candidates: Iterable[Path] = [base] if base.is_file() else _walk_files(base)
        matches: List[str] = []
        files_matched = 0
        for scanned, path in enumerate(candidates):
            if context.cancelled:
                return ToolResult(success=False, message=f"grep cancelled after {scanned} file(s)")
            if includes and not any(fnmatch.fnmatch(path.name, pattern) for pattern in includes):
                continue
            try:
                if path.stat().st_size > MAX_GREP_FILE_BYTES or _looks_binary(path):
                    continue
                lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
            except OSError:
                continue
            hit = False
            for number, line in enumerate(lines, start=1):
                if regex.search(line):
                    hit = True
                    if len(matches) < MAX_RESULTS:
                        matches.append(f"{context.display(path)}:{number}: {line.strip()}")
            files_matched += hit
        message = f"{len(matches)} match(es) in {files_matched} file(s)"
        if len(matches) >= MAX_RESULTS:
            message += f" (capped at {MAX_RESULTS})"
        return ToolResult(success=True, value=matches, message=message, updates={f"grep:{arguments.pattern}": matches})


class ReadFileArgs(ToolArguments):
    file_path: str = Field(..., min_length=1, description="Path of the file to read")
    offset: int = Field(0, ge=0, description="Line number to start reading from (0-based)")
    limit: Optional[int] = Field(None, ge=1, description="Maximum number of lines to read")


class ReadFileTool(Tool):
    """Read a text file, optionally a window of lines. Lines are returned numbered."""

    name = "read_file"
    capability = Capability.FILESYSTEM_READ
    arguments = ReadFileArgs

    def run(self, arguments: ReadFileArgs, context: ToolContext) -> ToolResult:
        path = context.resolve(arguments.file_path)
        if not path.exists():
            return ToolResult(success=False, message=f"File {arguments.file_path} not found")
        if not path.is_file():
            return ToolResult(success=False, message=f"{arguments.file_path} is not a regular file")
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        end = len(lines) if arguments.limit is None else arguments.offset + arguments.limit
        window = lines[arguments.offset : end]
        numbered = "\n".join(f"{arguments.offset + i + 1:6}\t{line}" for i, line in enumerate(window))
        content = "\n".join(window)
        return ToolResult(
            success=True,
            value=numbered,
            message=f"Read {len(window)} of {len(lines)} lines from {context.display(path)}",
            updates={f"file:{context.display(path)}": content},
        )


class EditFileArgs(ToolArguments):
    file_path: str = Field(..., min_length=1, description="Path of the file to edit")
    old_string: str = Field(..., description="Exact text to replace, including whitespace. Empty creates a new file")
    new_string: str = Field(..., description="Replacement text")

    @model_validator(mode="after")
    def _check_change(self) -> "EditFileArgs":
        if self.old_string and self.old_string == self.new_string:
            raise ValueError("old_string and new_string must differ")
        return self


class EditFileTool(Tool):
    """Edit a file by replacing one exact occurrence of old_string with new_string."""

    name = "edit_file"
    capability = Capability.FILESYSTEM_WRITE
    arguments = EditFileArgs

    def run(self, arguments: EditFileArgs, context: ToolContext) -> ToolResult:
        path = context.resolve(arguments.file_path)
        shown = context.display(path)
        if not arguments.old_string:
            if path.exists():
                return ToolResult(success=False, message=f"{shown} already exists; provide old_string to edit it")
            path.parent.mkdir(parents=True, exist_ok=True)
            self._write(path, arguments.new_string)
            return ToolResult(success=True, value=f"Created {shown}", message=f"Created {shown}")
        if not path.is_file():
            return ToolResult(success=False, message=f"File {arguments.file_path} not found")

        original = path.read_text(encoding="utf-8")
        occurrences = original.count(arguments.old_string)
        if occurrences == 0:
            raise NoMatch(shown)
        if occurrences > 1:
            raise AmbiguousMatch(shown, occurrences)
        updated = original.replace(arguments.old_string, arguments.new_string, 1)
        self._write(path, updated)
        diff = "\n".join(
            difflib.unified_diff(
                original.splitlines(), updated.splitlines(), fromfile=f"a/{shown}", tofile=f"b/{shown}", lineterm=""
            )
        )
        return ToolResult(
            success=True,
            value=diff,
            message=f"Edited {shown}",
            artifacts={f"diff:{shown}": diff.encode("utf-8")},
        )

    @staticmethod
    def _write(path: Path, text: str) -> None:
        fd, temp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            if path.exists():
                os.chmod(temp, path.stat().st_mode)
            os.replace(temp, path)
        except BaseException:
            Path(temp).unlink(missing_ok=True)
            raise


class ShellArgs(ToolArguments):
    command: str = Field(..., min_length=1, description="Shell command to execute")
    working_directory: str = Field(".", description="Working directory, relative to the sandbox root")
    timeout: Optional[float] = Field(None, gt=0, description="Seconds before the command is killed")


class _OutputBudget:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.used = 0
        self.exceeded = False


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass


class ShellTool(Tool):
    """Execute a shell command in the sandbox. Output size and duration are bounded."""

    name = "bash"
    capability = Capability.PROCESS_EXECUTION
    arguments = ShellArgs

    async def invoke(self, arguments: ShellArgs, context: ToolContext) -> ToolResult:
        cwd = context.resolve(arguments.working_directory)
        if not cwd.is_dir():
            return ToolResult(success=False, message=f"Working directory not found: {arguments.working_directory}")
        timeout = context.command_timeout
        if arguments.timeout is not None:
            timeout = min(timeout, arguments.timeout)

        started = time.monotonic()
        process = await asyncio.create_subprocess_shell(
            arguments.command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=os.name == "posix",
        )
        stdout, stderr = bytearray(), bytearray()
        budget = _OutputBudget(context.max_output_bytes)

        async def drain(stream: Optional[asyncio.StreamReader], sink: bytearray) -> None:
            if stream is None:
                return
            while True:
                chunk = await stream.read(READ_CHUNK)
                if not chunk:
                    return
                room = max(budget.limit - budget.used, 0)
                sink.extend(chunk[:room])
                budget.used += len(chunk)
                if budget.used > budget.limit:
                    budget.exceeded = True
                    _kill_process_group(process)
                    return

        def partial() -> str:
            return (bytes(stdout) + bytes(stderr)).decode("utf-8", errors="replace")

        try:
            await asyncio.wait_for(
                asyncio.gather(drain(process.stdout, stdout), drain(process.stderr, stderr), process.wait()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            _kill_process_group(process)
            await process.wait()
            raise ResourceLimitExceeded(
                "duration", f"Command exceeded {timeout:g}s and was killed", partial_output=partial()
            ) from None
        except asyncio.CancelledError:
            _kill_process_group(process)
            await process.wait()
            raise
        if budget.exceeded:
            raise ResourceLimitExceeded(
                "output",
                f"Command produced more than {budget.limit} bytes of output and was killed",
                partial_output=partial(),
            )

        result = {
            "code": process.returncode,
            "stdout": stdout.decode("utf-8", errors="replace"),
            "stderr": stderr.decode("utf-8", errors="replace"),
            "duration": round(time.monotonic() - started, 3),
        }
        return ToolResult(
            success=process.returncode == 0,
            value=result,
            message=_summarize(arguments.command, result),
            updates={f"bash:{arguments.command}": {"code": result["code"], "stdout": result["stdout"]}},
        )


BUILTIN_TOOLS = (ListDirectoryTool, GlobTool, GrepTool, ReadFileTool, EditFileTool, ShellTool)


def register_builtin_tools(registry: ToolRegistry) -> None:
    """Register the built-in tool set."""

    for tool_cls in BUILTIN_TOOLS:
        registry.register(tool_cls(), overwrite=True)


def default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    register_builtin_tools(registry)
    return registry
