"""Typed MCP client bound to a single server connection."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from mcphost.mcp.errors import (
    MCPPaginationLimitExceeded,
    MCPProtocolError,
)
from mcphost.mcp.protocol import JsonRpcNotification, JsonRpcRequest
from mcphost.mcp.transport import MCPTransport
from mcphost.mcp.types import (
    Implementation,
    InitializeParams,
    InitializeResult,
    MCPModel,
    Prompt,
    PromptMessage,
    Resource,
    ResourceContent,
    ServerCapabilities,
    ToolCallResult,
    ToolInfo,
)

logger = logging.getLogger(__name__)

MAX_PAGES = 100


class MCPClient:
    """Issue MCP operations over one transport, one round-trip at a time.

    The stdio framing is not multiplexed, so every request/response pair runs
    under `_lock`: a second call's request is written only after the previous
    response has been read.
    """

    def __init__(self, transport: MCPTransport, *, name: str = "mcp") -> None:
        self._transport = transport
        self._name = name
        self._lock = asyncio.Lock()
        self._next_id = 1
        self._initialize_result: InitializeResult | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def transport(self) -> MCPTransport:
        return self._transport

    @property
    def initialized(self) -> bool:
        return self._initialize_result is not None

    @property
    def server_info(self) -> Implementation | None:
        if self._initialize_result is None:
            return None
        return self._initialize_result.server_info

    @property
    def capabilities(self) -> ServerCapabilities | None:
        if self._initialize_result is None:
            return None
        return self._initialize_result.capabilities

    @property
    def protocol_version(self) -> str | None:
        if self._initialize_result is None:
            return None
        return self._initialize_result.protocol_version

    async def initialize(self) -> InitializeResult:
        """Run the initialize handshake and send `notifications/initialized`."""
        logger.debug("starting MCP handshake with %s", self._name)
        async with self._lock:
            raw = await self._round_trip("initialize", InitializeParams().to_params())
            result = self._parse(InitializeResult, raw, "initialize")
            await self._transport.send_notification(
                JsonRpcNotification(method="notifications/initialized")
            )
        self._initialize_result = result
        logger.debug(
            "MCP server %s initialized: protocol=%s server=%s",
            self._name,
            result.protocol_version,
            result.server_info.name,
        )
        return result

    async def list_tools(self) -> list[ToolInfo]:
        return await self._list_paginated("tools/list", "tools", ToolInfo)

    async def list_resources(self) -> list[Resource]:
        return await self._list_paginated("resources/list", "resources", Resource)

    async def list_prompts(self) -> list[Prompt]:
        return await self._list_paginated("prompts/list", "prompts", Prompt)

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
    ) -> ToolCallResult:
        """Call one tool; `isError` results are returned, not raised."""
        logger.debug("calling tool %s on %s", name, self._name)
        params: dict[str, Any] = {"name": name}
        if arguments is not None:
            params["arguments"] = arguments
        raw = await self._request("tools/call", params)
        return self._parse(ToolCallResult, raw, "tools/call")

    async def read_resource(self, uri: str) -> list[ResourceContent]:
        logger.debug("reading resource %s from %s", uri, self._name)
        raw = await self._request("resources/read", {"uri": uri})
        return self._parse_items(raw, "contents", ResourceContent, "resources/read")

    async def get_prompt(
        self,
        name: str,
        arguments: dict[str, str] | None = None,
    ) -> list[PromptMessage]:
        logger.debug("getting prompt %s from %s", name, self._name)
        params: dict[str, Any] = {"name": name}
        if arguments is not None:
            params["arguments"] = arguments
        raw = await self._request("prompts/get", params)
        return self._parse_items(raw, "messages", PromptMessage, "prompts/get")

    async def close(self) -> None:
        logger.debug("closing MCP client %s", self._name)
        await self._transport.close()

    async def _list_paginated[T: MCPModel](
        self,
        method: str,
        key: str,
        model: type[T],
    ) -> list[T]:
        items: list[T] = []
        cursor: str | None = None
        for page in range(1, MAX_PAGES + 1):
            params = {"cursor": cursor} if cursor is not None else None
            raw = await self._request(method, params)
            items.extend(self._parse_items(raw, key, model, method))
            next_cursor = raw.get("nextCursor") if isinstance(raw, dict) else None
            if next_cursor is None:
                logger.debug("%s from %s: %d items in %d pages", method, self._name, len(items), page)
                return items
            if not isinstance(next_cursor, str):
                msg = f"{method} returned a non-string cursor"
                raise MCPProtocolError(msg)
            cursor = next_cursor
        raise MCPPaginationLimitExceeded(method, MAX_PAGES)

    async def _request(self, method: str, params: dict[str, Any] | None) -> Any:
        if self._initialize_result is None:
            msg = f"{method} called on {self._name} before initialize"
            raise MCPProtocolError(msg)
        async with self._lock:
            return await self._round_trip(method, params)

    async def _round_trip(self, method: str, params: dict[str, Any] | None) -> Any:
        request_id = self._next_id
        self._next_id += 1
        await self._transport.send_request(
            JsonRpcRequest(id=request_id, method=method, params=params)
        )
        response = await self._transport.receive()
        if response.id != request_id:
            msg = f"{method}: expected response id {request_id!r}, got {response.id!r}"
            raise MCPProtocolError(msg)
        if response.error is not None:
            msg = f"{method} failed: {response.error.message}"
            raise MCPProtocolError(msg, code=response.error.code, data=response.error.data)
        if not response.has_result:
            msg = f"{method} response missing result"
            raise MCPProtocolError(msg)
        return response.result

    @staticmethod
    def _parse[T: MCPModel](model: type[T], raw: Any, method: str) -> T:
        try:
            return model.model_validate(raw)
        except ValidationError as exc:
            msg = f"invalid {method} result: {exc.errors()[0]['msg']}"
            raise MCPProtocolError(msg) from exc

    @classmethod
    def _parse_items[T: MCPModel](
        cls,
        raw: Any,
        key: str,
        model: type[T],
        method: str,
    ) -> list[T]:
        if not isinstance(raw, dict):
            msg = f"invalid {method} result: expected an object"
            raise MCPProtocolError(msg)
        values = raw.get(key)
        if not isinstance(values, list):
            msg = f"{method} result missing '{key}' list"
            raise MCPProtocolError(msg)
        return [cls._parse(model, value, method) for value in values]
