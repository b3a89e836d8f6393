"""MCP API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from mcphost.mcp.registry import ServerStatus


class AddMCPServerRequest(BaseModel):
    """Launch and register MCP server payload."""

    name: str
    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class MCPServerResponse(BaseModel):
    """MCP server status payload."""

    name: str
    status: ServerStatus
    last_error: str | None
    tool_count: int
    resource_count: int
    prompt_count: int
    connected_at: datetime
    server_info: str | None


class MCPServersResponse(BaseModel):
    """Collection of MCP servers."""

    items: list[MCPServerResponse]


class MCPToolResponse(BaseModel):
    server: str
    name: str
    description: str | None
    input_schema: dict[str, Any]


class MCPResourceResponse(BaseModel):
    server: str
    uri: str
    name: str
    description: str | None
    mime_type: str | None


class MCPPromptResponse(BaseModel):
    server: str
    name: str
    description: str | None
    arguments: list[str]


class InvokeToolRequest(BaseModel):
    """Tool invocation payload."""

    arguments: dict[str, Any] | None = None


class MCPToolCallResponse(BaseModel):
    """Result of one tool call; `is_error` mirrors the server's flag."""

    server: str
    tool: str
    is_error: bool
    text: str
    content: list[dict[str, Any]]


class ReadResourceRequest(BaseModel):
    uri: str


class MCPResourceContentsResponse(BaseModel):
    server: str
    uri: str
    contents: list[dict[str, Any]]


class GetPromptRequest(BaseModel):
    arguments: dict[str, str] | None = None


class MCPPromptMessagesResponse(BaseModel):
    server: str
    prompt: str
    messages: list[dict[str, Any]]


class MCPGenerationResponse(BaseModel):
    generation: int
    server_count: int
    tool_count: int
