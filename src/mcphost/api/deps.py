"""Shared API dependency providers."""

from __future__ import annotations

from fastapi import Request

from mcphost.mcp.registry import MCPRegistry


def get_registry(request: Request) -> MCPRegistry:
    registry: MCPRegistry = request.app.state.registry
    return registry
