"""Tool contract: ``init`` describes a tool for an agent, ``run`` executes it.

Parameters are declared either as a pydantic model (validated) or as a raw JSON
schema dict (only ``required`` keys are checked).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel, ValidationError

from common.cancel import CancellationToken

from bellows.errors import PermissionDeniedError
from bellows.permission import PermissionRequest
from bellows.tools.truncation import truncate_output

if TYPE_CHECKING:
    from bellows.agents import AgentConfig


@dataclass
class InitContext:
    agent: AgentConfig | None = None


@dataclass
class ToolResult:
    output: str
    title: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    attachments: list[dict[str, Any]] = field(default_factory=list)


class ToolContext:
    """Execution context handed to a running tool."""

    def __init__(
        self,
        session_id: str,
        message_id: str,
        call_id: str,
        agent: str,
        cancel: CancellationToken | None = None,
        on_metadata: Callable[[str | None, dict[str, Any]], None] | None = None,
        on_ask: Callable[[PermissionRequest], bool] | None = None,
    ):
        self.session_id = session_id
        self.message_id = message_id
        self.call_id = call_id
        self.agent = agent
        self.cancel = cancel or CancellationToken()
        self._on_metadata = on_metadata
        self._on_ask = on_ask

    def metadata(self, title: str | None = None, metadata: dict[str, Any] | None = None) -> None:
        if self._on_metadata is not None:
            self._on_metadata(title, metadata or {})

    def ask(
        self,
        permission: str,
        patterns: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        request = PermissionRequest(
            session_id=self.session_id,
            message_id=self.message_id,
            call_id=self.call_id,
            permission=permission,
            patterns=tuple(patterns or ()),
            metadata=metadata or {},
        )
        if self._on_ask is None or not self._on_ask(request):
            raise PermissionDeniedError(permission, ", ".join(patterns or []) or None)


Parameters = type[BaseModel] | dict[str, Any]
ExecuteFn = Callable[[Any, ToolContext], ToolResult | str]


@dataclass
class InitializedTool:
    id: str
    description: str
    parameters: Parameters
    execute: ExecuteFn
    truncate: bool = True

    def parameters_schema(self) -> dict[str, Any]:
        if isinstance(self.parameters, dict):
            return self.parameters
        schema = self.parameters.model_json_schema()
        schema.pop("title", None)
        for prop in schema.get("properties", {}).values():
            prop.pop("title", None)
        return schema

    def validate(self, args: dict[str, Any]) -> Any:
        if isinstance(self.parameters, dict):
            missing = [k for k in self.parameters.get("required", []) if k not in args]
            if missing:
                raise ValueError(self._invalid(f"missing required fields {missing}"))
            return args
        try:
            return self.parameters.model_validate(args)
        except ValidationError as e:
            raise ValueError(self._invalid(str(e))) from e

    def _invalid(self, detail: str) -> str:
        return (
            f"The {self.id} tool was called with invalid arguments: {detail}.\n"
            "Please rewrite the input so it satisfies the expected schema."
        )

    def run(self, args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        params = self.validate(args)
        ctx.cancel.raise_if_cancelled()
        result = self.execute(params, ctx)
        if isinstance(result, str):
            result = ToolResult(output=result)
        if self.truncate and "truncated" not in result.metadata:
            truncated = truncate_output(result.output)
            result.output = truncated.content
            result.metadata["truncated"] = truncated.truncated
            if truncated.output_path is not None:
                result.metadata["output_path"] = str(truncated.output_path)
        return result


@dataclass
class Tool:
    id: str
    init: Callable[[InitContext], InitializedTool]


def define_tool(
    id: str,
    description: str | Callable[[InitContext], str],
    parameters: Parameters,
    execute: ExecuteFn,
    truncate: bool = True,
) -> Tool:
    def init(ctx: InitContext) -> InitializedTool:
        text = description(ctx) if callable(description) else description
        return InitializedTool(
            id=id,
            description=text,
            parameters=parameters,
            execute=execute,
            truncate=truncate,
        )

    return Tool(id=id, init=init)
