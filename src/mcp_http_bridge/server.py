import logging
from contextlib import asynccontextmanager
from typing import Any, Protocol

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from mcp import types
from mcp.server.lowlevel import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from mcp_http_bridge.envelope import MISSING_SESSION, error_response

logger = logging.getLogger(__name__)

BRIDGE_NAME = "mcp-http-bridge"
BRIDGE_VERSION = "1.0.0"

HEALTH_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class ToolBackend(Protocol):
    async def list_tools(
        self, params: types.PaginatedRequestParams | None = None
    ) -> types.ListToolsResult: ...

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        *,
        meta: dict[str, Any] | None = None,
    ) -> types.CallToolResult: ...


def create_session_server(backend: ToolBackend) -> Server:
    """A protocol server for one HTTP session, forwarding tools to `backend`.

    Handlers are installed on `request_handlers` directly so backend results
    (pagination cursors, structured content, error flags) pass through as-is.
    """
    server = Server(BRIDGE_NAME, version=BRIDGE_VERSION)

    async def list_tools(request: types.ListToolsRequest) -> types.ServerResult:
        return types.ServerResult(await backend.list_tools(request.params))

    async def call_tool(request: types.CallToolRequest) -> types.ServerResult:
        params = request.params
        logger.info("tools/call %s", params.name)
        meta = params.meta.model_dump(exclude_none=True) if params.meta else None
        return types.ServerResult(
            await backend.call_tool(params.name, params.arguments, meta=meta)
        )

    server.request_handlers[types.ListToolsRequest] = list_tools
    server.request_handlers[types.CallToolRequest] = call_tool
    return server


def initialization_options(server: Server) -> InitializationOptions:
    return server.create_initialization_options(
        notification_options=NotificationOptions(tools_changed=True)
    )


def create_app(gateway, *, endpoint_url: str, path: str) -> FastAPI:
    """FastAPI app exposing `/health` and the session gateway at `path`."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with gateway.run():
            yield

    app = FastAPI(lifespan=lifespan)
    app.state.gateway = gateway

    @app.api_route("/health", methods=HEALTH_METHODS, include_in_schema=False)
    async def health() -> dict[str, Any]:
        return {"ok": True, "endpoint": endpoint_url}

    async def not_found(request: Request, exc: Exception) -> JSONResponse:
        return error_response(404, MISSING_SESSION, "Not found")

    app.add_exception_handler(404, not_found)
    app.add_route(path, gateway, methods=None, include_in_schema=False)
    return app
