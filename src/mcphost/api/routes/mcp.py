"""MCP registry routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from mcphost.api.deps import get_registry
from mcphost.api.schemas.mcp import (
    AddMCPServerRequest,
    GetPromptRequest,
    InvokeToolRequest,
    MCPGenerationResponse,
    MCPPromptMessagesResponse,
    MCPPromptResponse,
    MCPResourceContentsResponse,
    MCPResourceResponse,
    MCPServerResponse,
    MCPServersResponse,
    MCPToolCallResponse,
    MCPToolResponse,
    ReadResourceRequest,
)
from mcphost.config import ServerConfig
from mcphost.mcp.errors import (
    MCPAuthorizationError,
    MCPError,
    MCPServerNotFoundError,
    MCPToolNotFoundError,
    MCPValidationError,
)
from mcphost.mcp.registry import MCPRegistry, ServerSummary

router = APIRouter(prefix="/api/v1/mcp", tags=["mcp"])


def _as_response(server: ServerSummary) -> MCPServerResponse:
    return MCPServerResponse(
        name=server.name,
        status=server.status,
        last_error=server.last_error,
        tool_count=server.tool_count,
        resource_count=server.resource_count,
        prompt_count=server.prompt_count,
        connected_at=server.connected_at,
        server_info=server.server_info,
    )


def _http_error(exc: MCPError) -> HTTPException:
    if isinstance(exc, MCPServerNotFoundError | MCPToolNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, MCPAuthorizationError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, MCPValidationError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


async def _require_server(registry: MCPRegistry, name: str) -> MCPServerResponse:
    server = await registry.get(name)
    if server is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Server not found")
    return _as_response(server)


@router.get("/servers", response_model=MCPServersResponse)
async def list_mcp_servers(
    registry: MCPRegistry = Depends(get_registry),
) -> MCPServersResponse:
    return MCPServersResponse(
        items=[_as_response(server) for server in await registry.list_servers()]
    )


@router.get("/servers/{name}", response_model=MCPServerResponse)
async def get_mcp_server(
    name: str,
    registry: MCPRegistry = Depends(get_registry),
) -> MCPServerResponse:
    return await _require_server(registry, name)


@router.post("/servers", response_model=MCPServerResponse, status_code=status.HTTP_201_CREATED)
async def add_mcp_server(
    request: AddMCPServerRequest,
    registry: MCPRegistry = Depends(get_registry),
) -> MCPServerResponse:
    config = ServerConfig(command=request.command, args=tuple(request.args), env=request.env)
    try:
        await registry.add_server(request.name, config)
    except MCPError as exc:
        raise _http_error(exc) from exc
    return await _require_server(registry, request.name.strip())


@router.delete("/servers/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_mcp_server(
    name: str,
    registry: MCPRegistry = Depends(get_registry),
) -> None:
    try:
        await registry.remove_server(name)
    except MCPError as exc:
        raise _http_error(exc) from exc


@router.post("/servers/{name}/reconnect", response_model=MCPServerResponse)
async def reconnect_mcp_server(
    name: str,
    registry: MCPRegistry = Depends(get_registry),
) -> MCPServerResponse:
    try:
        await registry.reconnect_server(name)
    except MCPError as exc:
        raise _http_error(exc) from exc
    return await _require_server(registry, name.strip())


@router.get("/tools", response_model=list[MCPToolResponse])
async def mcp_tools(registry: MCPRegistry = Depends(get_registry)) -> list[MCPToolResponse]:
    return [
        MCPToolResponse(
            server=entry.server,
            name=entry.tool.name,
            description=entry.tool.description,
            input_schema=entry.tool.input_schema,
        )
        for entry in await registry.list_tools()
    ]


@router.get("/resources", response_model=list[MCPResourceResponse])
async def mcp_resources(
    registry: MCPRegistry = Depends(get_registry),
) -> list[MCPResourceResponse]:
    return [
        MCPResourceResponse(
            server=entry.server,
            uri=entry.resource.uri,
            name=entry.resource.name,
            description=entry.resource.description,
            mime_type=entry.resource.mime_type,
        )
        for entry in await registry.list_resources()
    ]


@router.get("/prompts", response_model=list[MCPPromptResponse])
async def mcp_prompts(registry: MCPRegistry = Depends(get_registry)) -> list[MCPPromptResponse]:
    return [
        MCPPromptResponse(
            server=entry.server,
            name=entry.prompt.name,
            description=entry.prompt.description,
            arguments=[argument.name for argument in entry.prompt.arguments or []],
        )
        for entry in await registry.list_prompts()
    ]


@router.post("/servers/{name}/tools/{tool}/call", response_model=MCPToolCallResponse)
async def call_mcp_tool(
    name: str,
    tool: str,
    request: InvokeToolRequest,
    registry: MCPRegistry = Depends(get_registry),
) -> MCPToolCallResponse:
    try:
        result = await registry.call_tool(name, tool, request.arguments)
    except MCPError as exc:
        raise _http_error(exc) from exc
    return MCPToolCallResponse(
        server=name,
        tool=tool,
        is_error=bool(result.is_error),
        text=result.text(),
        content=[item.model_dump(mode="json", by_alias=True) for item in result.content],
    )


@router.post("/servers/{name}/resources/read", response_model=MCPResourceContentsResponse)
async def read_mcp_resource(
    name: str,
    request: ReadResourceRequest,
    registry: MCPRegistry = Depends(get_registry),
) -> MCPResourceContentsResponse:
    try:
        contents = await registry.read_resource(name, request.uri)
    except MCPError as exc:
        raise _http_error(exc) from exc
    return MCPResourceContentsResponse(
        server=name,
        uri=request.uri,
        contents=[item.to_params() for item in contents],
    )


@router.post("/servers/{name}/prompts/{prompt}", response_model=MCPPromptMessagesResponse)
async def get_mcp_prompt(
    name: str,
    prompt: str,
    request: GetPromptRequest,
    registry: MCPRegistry = Depends(get_registry),
) -> MCPPromptMessagesResponse:
    try:
        messages = await registry.get_prompt(name, prompt, request.arguments)
    except MCPError as exc:
        raise _http_error(exc) from exc
    return MCPPromptMessagesResponse(
        server=name,
        prompt=prompt,
        messages=[message.to_params() for message in messages],
    )


@router.get("/generation", response_model=MCPGenerationResponse)
async def mcp_generation(registry: MCPRegistry = Depends(get_registry)) -> MCPGenerationResponse:
    return MCPGenerationResponse(
        generation=registry.generation(),
        server_count=await registry.server_count(),
        tool_count=await registry.total_tool_count(),
    )
