"""Registry that keeps track of available tools."""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from ..errors import InvalidArguments, UnknownTool
from .base import Tool, ToolArguments, ToolContext, ToolInvocation, ToolResult

Gate = Callable[[Tool, ToolArguments], None]


class ToolRegistry:
    """Name-keyed table of tools with schema validation and dispatch."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: Dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool, *, overwrite: bool = False) -> None:
        if tool.name in self._tools and not overwrite:
            raise ValueError(f"Tool {tool.name} already registered")
        self._tools[tool.name] = tool

    def resolve(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownTool(name, self._tools) from None

    def validate(self, name: str, arguments: Any) -> ToolArguments:
        tool = self.resolve(name)
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, Mapping):
            raise InvalidArguments(name, "input", f"must be an object, got {type(arguments).__name__}")
        try:
            return tool.arguments.model_validate(dict(arguments))
        except ValidationError as exc:
            error = exc.errors()[0]
            field = ".".join(str(part) for part in error.get("loc", ())) or "input"
            raise InvalidArguments(name, field, error.get("msg", "is invalid").lower()) from exc

    async def dispatch(
        self,
        invocation: ToolInvocation,
        context: ToolContext,
        *,
        gate: Optional[Gate] = None,
    ) -> ToolResult:
        """Resolve, validate, pass through ``gate`` and invoke."""

        tool = self.resolve(invocation.tool)
        arguments = self.validate(invocation.tool, invocation.arguments)
        if gate is not None:
            gate(tool, arguments)
        return await tool.invoke(arguments, context)

    def schemas(self) -> List[Dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def available(self) -> Dict[str, Tool]:
        return dict(self._tools)
