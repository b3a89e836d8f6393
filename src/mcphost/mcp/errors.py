"""Typed error taxonomy for MCP transports, clients, and the registry."""

from __future__ import annotations

from typing import Any, Literal

type TransportErrorCategory = Literal[
    "spawn_error",
    "broken_pipe",
    "closed",
    "io_error",
]
type MutatingAction = Literal["add", "remove", "reconnect"]


class MCPError(RuntimeError):
    """Base class for every caller-facing MCP failure."""


class MCPTransportError(MCPError):
    """Transport failure with explicit category."""

    def __init__(self, message: str, *, category: TransportErrorCategory) -> None:
        super().__init__(message)
        self.category = category


class MCPFramingError(MCPError):
    """Raised when a line off the wire cannot be decoded into a message."""


class MCPProtocolError(MCPError):
    """Server-reported error or a response that breaks the protocol contract."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class MCPPaginationLimitExceeded(MCPError):
    """Raised when a server keeps returning cursors past the page bound."""

    def __init__(self, method: str, pages: int) -> None:
        super().__init__(f"{method} did not terminate within {pages} pages")
        self.method = method
        self.pages = pages


class MCPValidationError(MCPError):
    """Raised when add/reconnect results would break registry invariants."""


class MCPServerNotFoundError(MCPError):
    """Raised when an operation names a server that is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"MCP server '{name}' not found")
        self.name = name


class MCPToolNotFoundError(MCPError):
    """Raised when a tool is not exposed by the addressed server."""

    def __init__(self, tool: str, *, server: str | None = None) -> None:
        if server is None:
            message = f"MCP tool '{tool}' not found"
        else:
            message = f"MCP tool '{tool}' not found on server '{server}'"
        super().__init__(message)
        self.tool = tool
        self.server = server


class MCPAuthorizationError(MCPError):
    """Raised when the mutation policy denies a registry change."""

    def __init__(self, action: MutatingAction, server: str, reason: str) -> None:
        super().__init__(f"{action} of MCP server '{server}' denied: {reason}")
        self.action = action
        self.server = server
        self.reason = reason
