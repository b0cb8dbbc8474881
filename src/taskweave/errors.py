"""Error hierarchy shared by the scheduler, tools, policy and runner."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class EngineError(RuntimeError):
    """Base class for every error raised by the engine."""

    kind = "engine_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        payload.update(self.details)
        return payload


class ConfigError(EngineError):
    """Raised when configuration files are invalid."""

    kind = "config_error"


# Planning errors -----------------------------------------------------------


class PlanError(EngineError):
    """The subtask graph cannot be scheduled."""

    kind = "plan_error"


class CycleDetected(PlanError):
    kind = "cycle_detected"

    def __init__(self, ids: Iterable[str]) -> None:
        self.ids = sorted(set(ids))
        super().__init__(f"Dependency cycle between subtasks: {', '.join(self.ids)}", ids=self.ids)


class UnknownDependency(PlanError):
    kind = "unknown_dependency"

    def __init__(self, subtask_id: str, dependency: str) -> None:
        self.subtask_id = subtask_id
        self.dependency = dependency
        super().__init__(
            f"Subtask '{subtask_id}' depends on unknown subtask '{dependency}'",
            subtask_id=subtask_id,
            dependency=dependency,
        )


# Recoverable errors: fed back into the decision loop ----------------------


class RecoverableError(EngineError):
    """Errors the model can correct by proposing a different invocation."""

    kind = "recoverable_error"


class UnknownTool(RecoverableError):
    kind = "unknown_tool"

    def __init__(self, name: str, available: Iterable[str] = ()) -> None:
        self.name = name
        choices = sorted(available)
        hint = f" (available: {', '.join(choices)})" if choices else ""
        super().__init__(f"Unknown tool '{name}'{hint}", tool=name)


class InvalidArguments(RecoverableError):
    kind = "invalid_arguments"

    def __init__(self, tool: str, field: str, reason: str) -> None:
        self.tool = tool
        self.field = field
        super().__init__(
            f"Invalid arguments for '{tool}': field '{field}' {reason}",
            tool=tool,
            field=field,
            reason=reason,
        )


class MalformedResponse(RecoverableError):
    kind = "malformed_response"


class ToolExecutionError(RecoverableError):
    """A tool could not complete, but retrying with other arguments may work."""

    kind = "tool_execution_error"


class NoMatch(RecoverableError):
    kind = "no_match"

    def __init__(self, file_path: str) -> None:
        super().__init__(f"old_string was not found verbatim in {file_path}", file_path=file_path)


class AmbiguousMatch(RecoverableError):
    kind = "ambiguous_match"

    def __init__(self, file_path: str, occurrences: int) -> None:
        super().__init__(
            f"old_string occurs {occurrences} times in {file_path}; include more context to make it unique",
            file_path=file_path,
            occurrences=occurrences,
        )


# Fatal errors: the subtask fails without retry -----------------------------


class PolicyViolation(EngineError):
    """Rejected by the security policy. Never retried."""

    kind = "policy_violation"


class CommandNotAllowed(PolicyViolation):
    kind = "command_not_allowed"

    def __init__(self, command: str, token: str, reason: str = "is not on the allow-list") -> None:
        self.command = command
        self.token = token
        super().__init__(f"Command '{token}' {reason}", command=command, token=token)


class PathEscapesSandbox(PolicyViolation):
    kind = "path_escapes_sandbox"

    def __init__(self, path: str, root: str) -> None:
        self.path = path
        self.root = root
        super().__init__(f"Path '{path}' resolves outside the sandbox root '{root}'", path=path, root=root)


class CapabilityNotAllowed(PolicyViolation):
    kind = "capability_not_allowed"

    def __init__(self, capabilities: Iterable[str]) -> None:
        self.capabilities = sorted(capabilities)
        super().__init__(
            f"Capabilities not permitted by policy: {', '.join(self.capabilities)}",
            capabilities=self.capabilities,
        )


class FatalToolError(EngineError):
    kind = "fatal_tool_error"


class ResourceLimitExceeded(FatalToolError):
    kind = "resource_limit_exceeded"

    def __init__(self, limit: str, message: str, partial_output: Optional[str] = None) -> None:
        self.limit = limit
        self.partial_output = partial_output or ""
        super().__init__(message, limit=limit, partial_output=self.partial_output)


class Cancelled(EngineError):
    kind = "cancelled"

    def __init__(self, message: str = "cancelled") -> None:
        super().__init__(message)


class Declined(EngineError):
    """The operator did not approve a subtask before it started."""

    kind = "declined"

    def __init__(self, message: str = "declined by operator", **details: Any) -> None:
        super().__init__(message, **details)
