"""Multi-server MCP registry with reader-writer topology changes."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from mcphost.config import ConfiguredServer, RegistrySettings, ServerConfig
from mcphost.mcp.client import MCPClient
from mcphost.mcp.errors import (
    MCPAuthorizationError,
    MCPError,
    MCPFramingError,
    MCPServerNotFoundError,
    MCPToolNotFoundError,
    MCPTransportError,
    MCPValidationError,
    MutatingAction,
)
from mcphost.mcp.locks import ReadWriteLock
from mcphost.mcp.policy import AllowAllPolicy, MutationPolicy
from mcphost.mcp.transport import StdioTransport
from mcphost.mcp.types import (
    Prompt,
    PromptMessage,
    Resource,
    ResourceContent,
    ToolCallResult,
    ToolInfo,
)

logger = logging.getLogger(__name__)

TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
SERVER_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")

type MCPConnector = Callable[[str, ServerConfig], Awaitable[MCPClient]]


class ServerStatus(StrEnum):
    """Call-time health of a registered server."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"


@dataclass(slots=True)
class ServerState:
    """Connected server, its client, and everything discovered from it."""

    name: str
    config: ServerConfig
    client: MCPClient
    tools: list[ToolInfo]
    resources: list[Resource] = field(default_factory=list)
    prompts: list[Prompt] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    status: ServerStatus = ServerStatus.HEALTHY
    last_error: str | None = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(slots=True, frozen=True)
class ServerSummary:
    """Read-only view of one registered server."""

    name: str
    tool_count: int
    resource_count: int
    prompt_count: int
    status: ServerStatus
    last_error: str | None
    connected_at: datetime
    server_info: str | None


@dataclass(slots=True, frozen=True)
class RegisteredTool:
    server: str
    tool: ToolInfo


@dataclass(slots=True, frozen=True)
class RegisteredResource:
    server: str
    resource: Resource


@dataclass(slots=True, frozen=True)
class RegisteredPrompt:
    server: str
    prompt: Prompt


@dataclass(slots=True)
class _Discovery:
    client: MCPClient
    tools: list[ToolInfo]
    resources: list[Resource]
    prompts: list[Prompt]


def stdio_connector(settings: RegistrySettings) -> MCPConnector:
    """Connector that launches each server as a stdio subprocess."""

    async def connect(name: str, config: ServerConfig) -> MCPClient:
        transport = await StdioTransport.spawn(
            config.command,
            config.args,
            config.env,
            label=name,
            close_timeout=settings.close_timeout_seconds,
            line_limit=settings.max_line_bytes,
        )
        return MCPClient(transport, name=name)

    return connect


class MCPRegistry:
    """Own every connected MCP server and route calls to them.

    The server map sits behind a reader-writer lock: listings and call
    dispatch take it shared and only long enough to find an entry, while
    add/remove/reconnect take it exclusively only to validate and commit.
    Process spawning and the handshake run with no lock held. Each entry has
    its own lock, so a slow call to one server never delays another.
    """

    def __init__(
        self,
        settings: RegistrySettings | None = None,
        *,
        connector: MCPConnector | None = None,
        policy: MutationPolicy | None = None,
    ) -> None:
        self._settings = settings or RegistrySettings()
        self._connector = connector or stdio_connector(self._settings)
        self._policy = policy or AllowAllPolicy()
        self._servers: dict[str, ServerState] = {}
        self._lock = ReadWriteLock()
        self._generation = 0

    @property
    def settings(self) -> RegistrySettings:
        return self._settings

    def generation(self) -> int:
        """Counter bumped by every successful add, remove and reconnect."""
        return self._generation

    async def add_server(self, name: str, config: ServerConfig) -> list[ToolInfo]:
        """Connect, discover, validate and register one server."""
        key = self._normalize_name(name)
        self._authorize("add", key)
        async with self._lock.read():
            self._check_can_register(key)

        logger.info("adding MCP server %s", key)
        discovery = await self._connect(key, config)
        committed = False
        try:
            async with self._lock.write():
                self._check_can_register(key)
                self._validate_tools(key, discovery.tools)
                self._servers[key] = ServerState(
                    name=key,
                    config=config,
                    client=discovery.client,
                    tools=discovery.tools,
                    resources=discovery.resources,
                    prompts=discovery.prompts,
                )
                self._generation += 1
                committed = True
        finally:
            if not committed:
                await self._close_quietly(discovery.client, key)
        logger.info(
            "MCP server %s added with %d tools (generation %d)",
            key,
            len(discovery.tools),
            self._generation,
        )
        return list(discovery.tools)

    async def add_servers(self, servers: Iterable[ConfiguredServer]) -> dict[str, MCPError]:
        """Add each configured server, collecting failures instead of raising."""
        failures: dict[str, MCPError] = {}
        for entry in servers:
            try:
                await self.add_server(entry.name, entry.config)
            except MCPError as exc:
                logger.warning("could not add MCP server %s: %s", entry.name, exc)
                failures[entry.name] = exc
        return failures

    async def remove_server(self, name: str) -> None:
        """Evict one server and close its transport."""
        key = name.strip()
        self._authorize("remove", key)
        async with self._lock.write():
            state = self._servers.pop(key, None)
            if state is None:
                raise MCPServerNotFoundError(key)
            self._generation += 1
        logger.info("MCP server %s removed (generation %d)", key, self._generation)
        await self._close_quietly(state.client, key)

    async def reconnect_server(self, name: str) -> list[ToolInfo]:
        """Relaunch one server with its original config and swap the client in place."""
        key = name.strip()
        self._authorize("reconnect", key)
        async with self._lock.read():
            state = self._servers.get(key)
            if state is None:
                raise MCPServerNotFoundError(key)
            config = state.config

        logger.info("reconnecting MCP server %s", key)
        discovery = await self._connect(key, config)
        old_client: MCPClient | None = None
        try:
            async with self._lock.write():
                current = self._servers.get(key)
                if current is None:
                    raise MCPServerNotFoundError(key)
                if current is not state:
                    msg = f"MCP server '{key}' was replaced while reconnecting"
                    raise MCPValidationError(msg)
                self._validate_tools(key, discovery.tools, replacing=key)
                old_client = current.client
                current.client = discovery.client
                current.tools = discovery.tools
                current.resources = discovery.resources
                current.prompts = discovery.prompts
                current.status = ServerStatus.HEALTHY
                current.last_error = None
                current.connected_at = datetime.now(UTC)
                self._generation += 1
        finally:
            if old_client is None:
                await self._close_quietly(discovery.client, key)
        logger.info(
            "MCP server %s reconnected with %d tools (generation %d)",
            key,
            len(discovery.tools),
            self._generation,
        )
        await self._close_quietly(old_client, key)
        return list(discovery.tools)

    async def close_all(self) -> None:
        """Evict and close every server; used when the host shuts down."""
        async with self._lock.write():
            states = list(self._servers.values())
            self._servers.clear()
            if states:
                self._generation += 1
        await asyncio.gather(*(self._close_quietly(s.client, s.name) for s in states))

    async def get(self, name: str) -> ServerSummary | None:
        async with self._lock.read():
            state = self._servers.get(name)
            return self._summary(state) if state is not None else None

    async def list_servers(self) -> list[ServerSummary]:
        async with self._lock.read():
            return [self._summary(self._servers[name]) for name in sorted(self._servers)]

    async def list_tools(self) -> list[RegisteredTool]:
        async with self._lock.read():
            return [
                RegisteredTool(server=name, tool=tool)
                for name in sorted(self._servers)
                for tool in self._servers[name].tools
            ]

    async def list_resources(self) -> list[RegisteredResource]:
        async with self._lock.read():
            return [
                RegisteredResource(server=name, resource=resource)
                for name in sorted(self._servers)
                for resource in self._servers[name].resources
            ]

    async def list_prompts(self) -> list[RegisteredPrompt]:
        async with self._lock.read():
            return [
                RegisteredPrompt(server=name, prompt=prompt)
                for name in sorted(self._servers)
                for prompt in self._servers[name].prompts
            ]

    async def server_count(self) -> int:
        async with self._lock.read():
            return len(self._servers)

    async def total_tool_count(self) -> int:
        async with self._lock.read():
            return sum(len(state.tools) for state in self._servers.values())

    async def find_tool_server(self, tool: str) -> str | None:
        """Return the name of the server exposing `tool`, if any."""
        async with self._lock.read():
            for name, state in self._servers.items():
                if any(info.name == tool for info in state.tools):
                    return name
        return None

    async def call_tool(
        self,
        server: str,
        tool: str,
        arguments: dict[str, Any] | None = None,
    ) -> ToolCallResult:
        async with self._lock.read():
            state = self._require(server)
            if not any(info.name == tool for info in state.tools):
                raise MCPToolNotFoundError(tool, server=server)
        logger.debug("calling MCP tool %s on %s", tool, server)
        return await self._dispatch(state, lambda client: client.call_tool(tool, arguments))

    async def call_registered_tool(
        self,
        tool: str,
        arguments: dict[str, Any] | None = None,
    ) -> ToolCallResult:
        """Dispatch by tool name alone; names are unique across the registry."""
        server = await self.find_tool_server(tool)
        if server is None:
            raise MCPToolNotFoundError(tool)
        return await self.call_tool(server, tool, arguments)

    async def read_resource(self, server: str, uri: str) -> list[ResourceContent]:
        async with self._lock.read():
            state = self._require(server)
        return await self._dispatch(state, lambda client: client.read_resource(uri))

    async def get_prompt(
        self,
        server: str,
        name: str,
        arguments: dict[str, str] | None = None,
    ) -> list[PromptMessage]:
        async with self._lock.read():
            state = self._require(server)
        return await self._dispatch(state, lambda client: client.get_prompt(name, arguments))

    async def _dispatch[T](
        self,
        state: ServerState,
        operation: Callable[[MCPClient], Awaitable[T]],
    ) -> T:
        async with state.lock:
            client = state.client
            try:
                result = await operation(client)
            except (MCPTransportError, MCPFramingError) as exc:
                # Degraded servers stay registered until reconnected or removed.
                if state.client is client:
                    state.status = ServerStatus.DEGRADED
                    state.last_error = str(exc)
                logger.warning("MCP server %s degraded: %s", state.name, exc)
                raise
            if state.client is client and state.status is not ServerStatus.HEALTHY:
                state.status = ServerStatus.HEALTHY
                state.last_error = None
            return result

    async def _connect(self, name: str, config: ServerConfig) -> _Discovery:
        client = await self._connector(name, config)
        try:
            await client.initialize()
            tools = await client.list_tools()
            capabilities = client.capabilities
            resources: list[Resource] = []
            prompts: list[Prompt] = []
            if capabilities is not None and capabilities.resources is not None:
                resources = await client.list_resources()
            if capabilities is not None and capabilities.prompts is not None:
                prompts = await client.list_prompts()
        except BaseException:
            await self._close_quietly(client, name)
            raise
        logger.debug(
            "MCP server %s advertised %d tools, %d resources, %d prompts",
            name,
            len(tools),
            len(resources),
            len(prompts),
        )
        return _Discovery(client=client, tools=tools, resources=resources, prompts=prompts)

    def _authorize(self, action: MutatingAction, name: str) -> None:
        decision = self._policy.authorize(action, name)
        if not decision.allowed:
            logger.warning("%s of MCP server %s denied: %s", action, name, decision.reason)
            raise MCPAuthorizationError(action, name, decision.reason or "denied by policy")

    def _check_can_register(self, name: str) -> None:
        if name in self._servers:
            msg = f"MCP server '{name}' is already registered"
            raise MCPValidationError(msg)
        if len(self._servers) >= self._settings.server_cap:
            msg = f"server cap of {self._settings.server_cap} reached"
            raise MCPValidationError(msg)

    def _validate_tools(
        self,
        name: str,
        tools: list[ToolInfo],
        *,
        replacing: str | None = None,
    ) -> None:
        seen: set[str] = set()
        for tool in tools:
            if not TOOL_NAME_PATTERN.fullmatch(tool.name):
                msg = f"MCP server '{name}' tool {tool.name!r} has an invalid name"
                raise MCPValidationError(msg)
            if tool.name in seen:
                msg = f"MCP server '{name}' advertises tool '{tool.name}' twice"
                raise MCPValidationError(msg)
            seen.add(tool.name)
            if tool.name in self._settings.reserved_tool_names:
                msg = f"MCP server '{name}' tool '{tool.name}' collides with a builtin tool name"
                raise MCPValidationError(msg)

        existing = 0
        for other_name, state in self._servers.items():
            if other_name == replacing:
                continue
            existing += len(state.tools)
            for tool in state.tools:
                if tool.name in seen:
                    msg = (
                        f"MCP server '{name}' tool '{tool.name}' collides with "
                        f"a tool of server '{other_name}'"
                    )
                    raise MCPValidationError(msg)

        if existing + len(tools) > self._settings.tool_cap:
            msg = (
                f"MCP server '{name}' would exceed the tool cap: "
                f"current {existing}, new {len(tools)}, cap {self._settings.tool_cap}"
            )
            raise MCPValidationError(msg)

    def _require(self, name: str) -> ServerState:
        state = self._servers.get(name)
        if state is None:
            raise MCPServerNotFoundError(name)
        return state

    @staticmethod
    def _normalize_name(name: str) -> str:
        key = name.strip()
        if not key:
            msg = "MCP server name must not be empty"
            raise MCPValidationError(msg)
        if not SERVER_NAME_PATTERN.fullmatch(key):
            msg = f"MCP server name {key!r} has invalid characters"
            raise MCPValidationError(msg)
        return key

    @staticmethod
    def _summary(state: ServerState) -> ServerSummary:
        info = state.client.server_info
        return ServerSummary(
            name=state.name,
            tool_count=len(state.tools),
            resource_count=len(state.resources),
            prompt_count=len(state.prompts),
            status=state.status,
            last_error=state.last_error,
            connected_at=state.connected_at,
            server_info=f"{info.name} {info.version}" if info is not None else None,
        )

    @staticmethod
    async def _close_quietly(client: MCPClient | None, name: str) -> None:
        if client is None:
            return
        try:
            await client.close()
        except Exception:  # noqa: BLE001
            logger.exception("error while closing MCP server %s", name)


class GenerationCache[T]:
    """Recompute a value derived from the registry only when its generation moves."""

    def __init__(
        self,
        registry: MCPRegistry,
        build: Callable[[MCPRegistry], Awaitable[T]],
    ) -> None:
        self._registry = registry
        self._build = build
        self._generation: int | None = None
        self._value: T | None = None
        self.builds = 0

    async def get(self) -> T:
        generation = self._registry.generation()
        if self._generation != generation or self._value is None:
            self._value = await self._build(self._registry)
            self._generation = generation
            self.builds += 1
        return self._value

    def invalidate(self) -> None:
        self._generation = None
