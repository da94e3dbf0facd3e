"""Data models for discovered tools, tool calls, results and server reports."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolInfo(BaseModel):
    """A tool in the global catalog. Immutable after discovery."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    server: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)
    client: Optional[Any] = Field(default=None, exclude=True, repr=False)

    def declares(self, argument: str) -> bool:
        """Whether the input schema declares a top-level ``argument``."""
        return argument in (self.input_schema.get("properties") or {})

    def schema_text(self) -> str:
        """The input schema as indented JSON."""
        return json.dumps(self.input_schema or {}, indent=2, sort_keys=True)

    def manifest_text(self) -> str:
        """Block describing this tool inside the system prompt."""
        schema = self.schema_text().replace("\n", "\n  ")
        return (
            f"\nTool Name: {self.name}\n"
            f"  Description: {self.description}\n"
            f"  Input Schema (JSON):\n  {schema}\n"
        )

    def function_definition(self) -> Dict[str, Any]:
        """Provider-native function definition (OpenAI tool format)."""
        parameters = self.input_schema or {"type": "object", "properties": {}}
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


class ToolCall(BaseModel):
    """A tool invocation proposed by the LLM."""

    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    raw: str = ""

    def to_json(self) -> str:
        return json.dumps({"tool": self.tool, "args": self.args})


class CallResult(BaseModel):
    """Text result of a ``tools/call`` request."""

    content: str = ""
    is_error: bool = False


class ServerReport(BaseModel):
    """Startup outcome for one configured MCP server."""

    name: str
    transport: str = ""
    status: str = "pending"  # ready | failed | disabled
    stage: str = ""
    error: str = ""
    tools: List[str] = Field(default_factory=list)
    conflicts: List[str] = Field(default_factory=list)

    @property
    def summary(self) -> str:
        if self.status == "failed":
            return f"failed({self.stage}: {self.error})"
        return self.status
