"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

from typing import Any

from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, ConfigDict, Field

from agentic_qa.errors import UnknownToolError


class ToolSpec(BaseModel):
    """Published, immutable contract of one external tool."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str = Field(min_length=1, pattern=r"^[a-zA-Z0-9_-]+$")
    description: str
    args_schema: type[BaseModel]
    endpoint: str
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    principal: str = "default"
    tags: tuple[str, ...] = ()

    def validate_parameters(self, payload: dict[str, Any]) -> BaseModel:
        """Raise pydantic `ValidationError` when `payload` breaks the schema."""
        return self.args_schema.model_validate(payload)

    def as_tool_schema(self) -> dict[str, Any]:
        tool = convert_to_openai_tool(self.args_schema)
        tool["function"]["name"] = self.name
        tool["function"]["description"] = self.description
        return tool


class ToolRegistry:
    """Maps tool names to their published specs; ToolInvoker only borrows them."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec:
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownToolError(f"Unknown tool: {name}")
        return spec

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def as_tool_schemas(self) -> list[dict[str, Any]]:
        """OpenAI-style tool definitions to bind to a chat model."""
        return [spec.as_tool_schema() for spec in self._tools.values()]

