"""Transport layer for MCP JSON-RPC traffic.

`MCPTransport` is the capability set the client depends on. `StdioTransport`
is the one concrete variant: it owns a child process and speaks
newline-delimited JSON over its stdin/stdout, while a background task drains
stderr into the module logger for the whole lifetime of the connection.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Mapping, Sequence
from typing import Protocol

from mcphost.mcp.errors import MCPFramingError, MCPTransportError
from mcphost.mcp.protocol import (
    METHOD_NOT_FOUND,
    JsonRpcError,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    OutgoingMessage,
    decode_message,
    encode_message,
)

logger = logging.getLogger(__name__)

DEFAULT_CLOSE_TIMEOUT_SECONDS = 5.0
DEFAULT_LINE_LIMIT_BYTES = 16 * 1024 * 1024


class MCPTransport(Protocol):
    """Async transport protocol for one MCP server connection."""

    async def send_request(self, request: JsonRpcRequest) -> None:
        """Write one request; its response is read with `receive`."""

    async def send_notification(self, notification: JsonRpcNotification) -> None:
        """Write one notification; no response follows."""

    async def receive(self) -> JsonRpcResponse:
        """Read the next response off the wire."""

    async def close(self) -> None:
        """Release every resource; repeated calls are no-ops."""


class StdioTransport:
    """JSON-RPC over the standard streams of a child process."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        label: str,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT_SECONDS,
    ) -> None:
        if process.stdin is None or process.stdout is None or process.stderr is None:
            msg = "StdioTransport requires piped stdin, stdout and stderr"
            raise ValueError(msg)
        self._label = label
        self._close_timeout = close_timeout
        self._process: asyncio.subprocess.Process | None = process
        self._stdin: asyncio.StreamWriter | None = process.stdin
        self._stdout: asyncio.StreamReader | None = process.stdout
        self._closed = asyncio.Event()
        self._stderr_task: asyncio.Task[None] | None = asyncio.create_task(
            self._drain_stderr(process.stderr),
            name=f"mcp-stderr-{label}",
        )
        self._pid = process.pid

    @classmethod
    async def spawn(
        cls,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        *,
        label: str | None = None,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT_SECONDS,
        line_limit: int = DEFAULT_LINE_LIMIT_BYTES,
    ) -> StdioTransport:
        """Start `command` with `env` merged over the parent environment."""
        name = label or command
        logger.info("spawning MCP server %s: %s with %d args", name, command, len(args))
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **(env or {})},
                limit=line_limit,
            )
        except OSError as exc:
            msg = f"failed to spawn MCP server {name!r} ({command}): {exc}"
            raise MCPTransportError(msg, category="spawn_error") from exc
        logger.debug("MCP server %s started with pid %s", name, process.pid)
        return cls(process, label=name, close_timeout=close_timeout)

    @property
    def label(self) -> str:
        return self._label

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def send_request(self, request: JsonRpcRequest) -> None:
        logger.debug("%s <- request id=%r method=%s", self._label, request.id, request.method)
        await self._write_line(request)

    async def send_notification(self, notification: JsonRpcNotification) -> None:
        logger.debug("%s <- notification method=%s", self._label, notification.method)
        await self._write_line(notification)

    async def receive(self) -> JsonRpcResponse:
        while True:
            stdout = self._stdout
            if stdout is None or self._closed.is_set():
                msg = f"transport for {self._label} is closed"
                raise MCPTransportError(msg, category="closed")
            line = await self._readline(stdout)
            if not line:
                if self._closed.is_set():
                    msg = f"transport for {self._label} closed while awaiting a response"
                    raise MCPTransportError(msg, category="closed")
                msg = f"{self._label} closed its output stream"
                raise MCPFramingError(msg)
            text = line.strip()
            if not text:
                continue
            logger.debug("%s -> %s", self._label, text[:500])
            message = decode_message(text)
            if isinstance(message, JsonRpcNotification):
                logger.debug("%s sent notification %s, skipping", self._label, message.method)
                continue
            if isinstance(message, JsonRpcRequest):
                await self._reject_server_request(message)
                continue
            return message

    async def close(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return
        self._closed.set()
        stdin, self._stdin = self._stdin, None
        self._stdout = None
        drain_task, self._stderr_task = self._stderr_task, None
        logger.info("closing MCP transport %s (pid %s)", self._label, process.pid)

        # A child that stopped reading keeps its stdin pipe open until it
        # exits, so the pipe is awaited only after the bounded process wait.
        if stdin is not None:
            stdin.close()

        if drain_task is not None:
            drain_task.cancel()
            await asyncio.wait({drain_task})

        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=self._close_timeout)
        except TimeoutError:
            logger.warning(
                "MCP server %s did not exit within %.1fs, killing it",
                self._label,
                self._close_timeout,
            )
            try:
                process.kill()
            except ProcessLookupError:
                logger.debug("%s exited before kill", self._label)
            returncode = await process.wait()
        logger.info("MCP server %s exited with status %s", self._label, returncode)

        if stdin is not None:
            try:
                await asyncio.wait_for(stdin.wait_closed(), timeout=self._close_timeout)
            except TimeoutError:
                logger.warning("stdin pipe of %s did not close after exit", self._label)
            except OSError:
                logger.debug("%s stdin was broken at close", self._label)

    async def _write_line(self, message: OutgoingMessage) -> None:
        stdin = self._stdin
        if stdin is None or self._closed.is_set():
            msg = f"transport for {self._label} is closed"
            raise MCPTransportError(msg, category="closed")
        if stdin.is_closing():
            msg = f"stdin of {self._label} is no longer writable"
            raise MCPTransportError(msg, category="broken_pipe")
        data = (encode_message(message) + "\n").encode("utf-8")
        try:
            stdin.write(data)
            drained = await self._unless_closed(stdin.drain())
        except (BrokenPipeError, ConnectionResetError) as exc:
            msg = f"broken pipe while writing to {self._label}: {exc}"
            raise MCPTransportError(msg, category="broken_pipe") from exc
        except OSError as exc:
            msg = f"write to {self._label} failed: {exc}"
            raise MCPTransportError(msg, category="io_error") from exc
        if drained is None:
            msg = f"transport for {self._label} closed while writing"
            raise MCPTransportError(msg, category="closed")

    async def _reject_server_request(self, request: JsonRpcRequest) -> None:
        logger.debug(
            "%s sent request %s (id=%r), answering method not found",
            self._label,
            request.method,
            request.id,
        )
        await self._write_line(
            JsonRpcResponse(
                id=request.id,
                error=JsonRpcError(
                    code=METHOD_NOT_FOUND,
                    message=f"Method not found: {request.method}",
                ),
            )
        )

    async def _unless_closed[T](self, operation: Awaitable[T]) -> asyncio.Future[T] | None:
        """Run `operation` until it finishes or the transport closes.

        Returns the finished future, or None when `close()` won the race.
        """
        task = asyncio.ensure_future(operation)
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({task, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait({task})
        if task.cancelled():
            return None
        task.result()
        return task

    async def _readline(self, stdout: asyncio.StreamReader) -> bytes:
        try:
            read = await self._unless_closed(stdout.readline())
            if read is None:
                return b""
            return read.result()
        except ValueError as exc:
            msg = f"{self._label} sent a line longer than the reader limit"
            raise MCPFramingError(msg) from exc
        except OSError as exc:
            msg = f"read from {self._label} failed: {exc}"
            raise MCPTransportError(msg, category="io_error") from exc

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.debug("%s stderr: dropped an oversized line", self._label)
                continue
            if not line:
                return
            logger.debug("%s stderr: %s", self._label, line.decode("utf-8", "replace").rstrip())
