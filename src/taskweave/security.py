"""Pre-dispatch security gate for tool invocations."""

from __future__ import annotations

import logging
import re
import shlex
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from .config import ALL_CAPABILITIES, SecuritySpec
from .context import EventKind, SharedContext
from .errors import CapabilityNotAllowed, CommandNotAllowed, PathEscapesSandbox, PolicyViolation
from .tools.base import Capability, Tool, ToolInvocation

logger = logging.getLogger(__name__)

CONTROL_OPERATORS = {";", "&&", "||", "|", "&", "(", ")", ";;", "|&"}
PATH_FIELDS = ("path", "file_path", "working_directory")
# Innermost backtick or $(...) command substitution.
_SUBSTITUTION = re.compile(r"`((?:[^`$]|\$(?!\())*)`|\$\(([^()`]*)\)")


def command_segments(command: str) -> List[List[str]]:
    """Split a shell command into simple commands on control operators."""

    # shlex treats newlines as whitespace; they separate commands in a shell.
    lexer = shlex.shlex(command.replace("\n", " ; "), posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    segments: List[List[str]] = [[]]
    for token in lexer:
        if token in CONTROL_OPERATORS:
            segments.append([])
        else:
            segments[-1].append(token)
    return [segment for segment in segments if segment]


def split_substitutions(command: str) -> Tuple[str, List[str]]:
    """Replace command substitutions with a placeholder word and return their inner commands.

    Nested substitutions are unwrapped innermost first. Raises ``ValueError``
    when a substitution is left unterminated or cannot be unwrapped.
    """

    inner: List[str] = []
    while True:
        match = _SUBSTITUTION.search(command)
        if match is None:
            break
        inner.append(match.group(1) if match.group(1) is not None else match.group(2))
        command = f"{command[: match.start()]}_{command[match.end() :]}"
    if "`" in command or "$(" in command:
        raise ValueError("unterminated or unsupported command substitution")
    return command, inner


def _leading_command(segment: Sequence[str]) -> Optional[str]:
    for token in segment:
        # Skip leading VAR=value assignments.
        if "=" in token and not token.startswith("=") and token.split("=", 1)[0].isidentifier():
            continue
        return Path(token).name
    return None


class SecurityPolicy:
    """Allow/deny lists, sandbox confinement and resource bounds.

    Every evaluation is appended to the shared context event log, whether the
    invocation is allowed or denied.
    """

    def __init__(
        self,
        *,
        sandbox_root: str | Path = ".",
        allowed_commands: Iterable[str] = (),
        denied_commands: Iterable[str] = (),
        command_timeout: float = 30.0,
        max_output_bytes: int = 64 * 1024,
        allowed_capabilities: Iterable[str] = ALL_CAPABILITIES,
    ) -> None:
        self.sandbox_root = Path(sandbox_root).expanduser().resolve()
        self.allowed_commands = frozenset(allowed_commands)
        self.denied_commands = frozenset(denied_commands)
        self.command_timeout = command_timeout
        self.max_output_bytes = max_output_bytes
        self.allowed_capabilities = frozenset(allowed_capabilities)

    @classmethod
    def from_spec(cls, spec: SecuritySpec) -> "SecurityPolicy":
        return cls(
            sandbox_root=spec.sandbox_root,
            allowed_commands=spec.allowed_commands,
            denied_commands=spec.denied_commands,
            command_timeout=spec.command_timeout_seconds,
            max_output_bytes=spec.max_output_bytes,
            allowed_capabilities=spec.allowed_capabilities,
        )

    def check_capabilities(self, capabilities: Iterable[str]) -> None:
        missing = [cap for cap in capabilities if cap not in self.allowed_capabilities]
        if missing:
            raise CapabilityNotAllowed(missing)

    def evaluate(self, invocation: ToolInvocation, tool: Tool, arguments: Any, context: SharedContext) -> None:
        """Raise a :class:`PolicyViolation` if the invocation must not run."""

        try:
            if tool.capability.value not in self.allowed_capabilities:
                raise CapabilityNotAllowed([tool.capability.value])
            for field in PATH_FIELDS:
                value = getattr(arguments, field, None)
                if isinstance(value, str):
                    self.check_path(value)
            if tool.capability == Capability.PROCESS_EXECUTION:
                self.check_command(arguments.command)
        except PolicyViolation as exc:
            logger.warning("Denied %s for %s: %s", invocation.tool, invocation.subtask_id, exc)
            context.add_event(
                EventKind.SECURITY,
                f"denied {invocation.tool}: {exc}",
                payload={"decision": "denied", **invocation.to_payload(), "error": exc.to_payload()},
                subtask_id=invocation.subtask_id,
            )
            raise
        context.add_event(
            EventKind.SECURITY,
            f"allowed {invocation.tool}",
            payload={"decision": "allowed", **invocation.to_payload()},
            subtask_id=invocation.subtask_id,
        )

    def check_command(self, command: str) -> None:
        """Check every simple command, including those inside command substitutions."""

        try:
            outer, inner = split_substitutions(command)
            segments = command_segments(outer)
            segments.extend(segment for sub in inner for segment in command_segments(sub))
        except ValueError as exc:
            raise CommandNotAllowed(command, command, reason=f"cannot be parsed: {exc}") from exc
        if not segments:
            raise CommandNotAllowed(command, "", reason="is empty")
        for segment in segments:
            leading = _leading_command(segment)
            if leading is None:
                raise CommandNotAllowed(command, " ".join(segment), reason="has no command")
            names = {Path(token).name for token in segment}
            denied = sorted(names & self.denied_commands)
            if denied:
                raise CommandNotAllowed(command, denied[0], reason="is on the deny-list")
            if leading not in self.allowed_commands:
                raise CommandNotAllowed(command, leading)

    def check_path(self, value: str) -> Path:
        candidate = Path(value).expanduser()
        if not candidate.is_absolute():
            candidate = self.sandbox_root / candidate
        resolved = candidate.resolve()
        if resolved != self.sandbox_root and self.sandbox_root not in resolved.parents:
            raise PathEscapesSandbox(value, str(self.sandbox_root))
        return resolved
