import logging
from typing import Any, Callable

from bellows.agents import AgentConfig
from bellows.llm import transform
from bellows.llm.provider import ModelInfo
from bellows.permission import is_disabled
from bellows.tools.tool import InitContext, Tool, ToolContext, ToolResult, define_tool

logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self):
        self.tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self.tools[tool.id] = tool

    def register_tool(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        implementation: Callable[..., Any],
    ) -> Tool:
        """Register a plain function taking the tool arguments as keywords."""

        def execute(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
            result = implementation(**args)
            if isinstance(result, ToolResult):
                return result
            return ToolResult(output=result if isinstance(result, str) else str(result))

        tool = define_tool(name, description, parameters, execute)
        self.register(tool)
        return tool

    def get(self, name: str) -> Tool | None:
        return self.tools.get(name)

    def names(self) -> list[str]:
        return list(self.tools.keys())

    def enabled(self, agent: AgentConfig | None) -> list[Tool]:
        if agent is None:
            return list(self.tools.values())
        return [t for t in self.tools.values() if not is_disabled(agent.permission, t.id)]

    def tool_schemas(
        self, agent: AgentConfig | None = None, model: ModelInfo | None = None
    ) -> list[dict[str, Any]]:
        schemas = []
        for tool in self.enabled(agent):
            info = tool.init(InitContext(agent=agent))
            parameters = info.parameters_schema()
            if model is not None:
                parameters = transform.schema(model, parameters)
            schemas.append(
                {
                    "type": "function",
                    "function": {
                        "name": tool.id,
                        "description": info.description,
                        "parameters": parameters,
                    },
                }
            )
        logger.debug(f"Resolved {len(schemas)} tools for agent {agent.name if agent else '-'}")
        return schemas
