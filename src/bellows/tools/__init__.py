from bellows.tools.registry import ToolRegistry
from bellows.tools.tool import InitContext, Tool, ToolContext, ToolResult, define_tool

__all__ = ["ToolRegistry", "Tool", "InitContext", "ToolContext", "ToolResult", "define_tool"]
