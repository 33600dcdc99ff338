import logging
from pathlib import Path
from typing import Any

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import Tool

from mcp_http_bridge.endpoint_store import DEFAULT_CONFIG_PATH, read_config
from mcp_http_bridge.results import unwrap_tool_result

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:8080/mcp"


def resolve_endpoint(endpoint: str | None, config_path: Path = DEFAULT_CONFIG_PATH) -> str:
    if endpoint:
        return endpoint
    return read_config(config_path).endpoint or DEFAULT_ENDPOINT


class BridgeClient:
    """Thin async wrapper around a running bridge endpoint."""

    def __init__(self, endpoint: str | None = None, config_path: Path = DEFAULT_CONFIG_PATH):
        self.endpoint = resolve_endpoint(endpoint, config_path)

    async def list_tools(self) -> list[Tool]:
        async with streamablehttp_client(self.endpoint) as (read, write, _):
            async with ClientSession(read, write) as session:
                await session.initialize()
                tools: list[Tool] = []
                cursor = None
                while True:
                    result = await session.list_tools(cursor=cursor)
                    tools.extend(result.tools)
                    cursor = result.nextCursor
                    if not cursor:
                        return tools

    async def call(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        logger.info("Calling %s via %s", name, self.endpoint)
        async with streamablehttp_client(self.endpoint) as (read, write, _):
            async with ClientSession(read, write) as session:
                await session.initialize()
                result = await session.call_tool(name, arguments or {})
                if result.isError:
                    raise RuntimeError(f"Tool {name} failed: {unwrap_tool_result(result)}")
                return unwrap_tool_result(result)
