"""MCP payload models exchanged inside JSON-RPC params and results."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "mcphost"
CLIENT_VERSION = "0.1.0"


class MCPModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_params(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Implementation(MCPModel):
    name: str
    version: str


class ServerCapabilities(MCPModel):
    """Capability markers advertised by a server at initialize time."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    tools: dict[str, Any] | None = None
    resources: dict[str, Any] | None = None
    prompts: dict[str, Any] | None = None


class InitializeParams(MCPModel):
    protocol_version: str = PROTOCOL_VERSION
    capabilities: dict[str, Any] = Field(default_factory=dict)
    client_info: Implementation = Field(
        default_factory=lambda: Implementation(name=CLIENT_NAME, version=CLIENT_VERSION)
    )


class InitializeResult(MCPModel):
    protocol_version: str
    capabilities: ServerCapabilities = Field(default_factory=ServerCapabilities)
    server_info: Implementation


class ToolInfo(MCPModel):
    """One tool advertised by `tools/list`."""

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object"})


class Content(MCPModel):
    """Content item; only `text` is interpreted, other fields pass through."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: str
    text: str | None = None


class ToolCallResult(MCPModel):
    content: list[Content] = Field(default_factory=list)
    is_error: bool | None = None

    def text(self) -> str:
        """Join every text content item with newlines."""
        return "\n".join(item.text for item in self.content if item.text is not None)


class Resource(MCPModel):
    uri: str
    name: str
    description: str | None = None
    mime_type: str | None = None


class ResourceContent(MCPModel):
    uri: str
    mime_type: str | None = None
    text: str | None = None


class PromptArgument(MCPModel):
    name: str
    description: str | None = None
    required: bool | None = None


class Prompt(MCPModel):
    name: str
    description: str | None = None
    arguments: list[PromptArgument] | None = None


class PromptMessage(MCPModel):
    role: str
    content: Content
