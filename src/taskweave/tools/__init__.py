"""Tool abstractions and registries."""

from .base import Capability, Tool, ToolContext, ToolInvocation, ToolResult
from .builtin import default_registry
from .registry import ToolRegistry

__all__ = ["Capability", "Tool", "ToolContext", "ToolInvocation", "ToolResult", "ToolRegistry", "default_registry"]
