"""FastAPI app entrypoint."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from mcphost.api.routes.mcp import router as mcp_router
from mcphost.config import RegistrySettings, load_mcp_configs
from mcphost.log import configure_logging
from mcphost.mcp.registry import MCPRegistry


def create_app(
    registry: MCPRegistry | None = None,
    *,
    settings: RegistrySettings | None = None,
    workspace_dir: Path | None = None,
) -> FastAPI:
    """Build the management API around `registry`.

    When `workspace_dir` is given, servers from its `.mcp.json` (or the global
    one) are added at startup; failures are logged and skipped.
    """
    owned = registry or MCPRegistry(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if workspace_dir is not None:
            await owned.add_servers(load_mcp_configs(workspace_dir))
        try:
            yield
        finally:
            await owned.close_all()

    app = FastAPI(title="mcphost API", version="0.1.0", lifespan=lifespan)
    app.state.registry = owned
    app.include_router(mcp_router)

    @app.get("/api/v1/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


def run() -> None:
    configure_logging(os.environ.get("MCPHOST_LOG_LEVEL", "INFO"))
    app = create_app(workspace_dir=Path.cwd())
    uvicorn.run(app, host="127.0.0.1", port=8000, reload=False)
