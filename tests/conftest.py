"""Shared fixtures: an in-memory tool backend and a TestClient for the gateway."""

import socket
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from mcp import types
from mcp.shared.exceptions import McpError

from mcp_http_bridge.gateway import SessionGateway
from mcp_http_bridge.server import create_app
from mcp_http_bridge.sessions import SessionRegistry

FAKE_BACKEND = str(Path(__file__).parent / "fake_backend.py")
PYTHON = sys.executable

MCP_HEADERS = {
    "accept": "application/json, text/event-stream",
    "content-type": "application/json",
}


class FakeBackend:
    """Stands in for BackendConnector; records every forwarded call."""

    def __init__(self):
        self.tools = [
            types.Tool(
                name="echo",
                description="Echo the given text back.",
                inputSchema={"type": "object", "properties": {"text": {"type": "string"}}},
            ),
            types.Tool(
                name="build",
                description="Build the active scheme.",
                inputSchema={"type": "object", "properties": {}},
            ),
        ]
        self.calls: list[tuple[str, dict | None]] = []
        self.metas: list[dict | None] = []
        self.list_params: list[types.PaginatedRequestParams | None] = []

    async def list_tools(self, params=None) -> types.ListToolsResult:
        self.list_params.append(params)
        return types.ListToolsResult(tools=self.tools)

    async def call_tool(self, name, arguments=None, *, meta=None) -> types.CallToolResult:
        self.calls.append((name, arguments))
        self.metas.append(meta)
        if name == "explode":
            raise McpError(types.ErrorData(code=types.INVALID_PARAMS, message="no such tool"))
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=f"{name} ok")],
            structuredContent={"tool": name, "arguments": arguments},
        )


def free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def rpc(method: str, request_id: int | None = None, params: dict | None = None) -> dict:
    message = {"jsonrpc": "2.0", "method": method}
    if request_id is not None:
        message["id"] = request_id
    if params is not None:
        message["params"] = params
    return message


def initialize_request(request_id: int = 1) -> dict:
    return rpc(
        "initialize",
        request_id,
        {
            "protocolVersion": types.LATEST_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "pytest", "version": "0.0.0"},
        },
    )


def session_headers(session_id: str) -> dict:
    return {
        **MCP_HEADERS,
        "mcp-session-id": session_id,
        "mcp-protocol-version": types.LATEST_PROTOCOL_VERSION,
    }


def open_session(client: TestClient, path: str = "/mcp") -> str:
    """Run the initialize handshake and return the issued session id."""
    response = client.post(path, json=initialize_request(), headers=MCP_HEADERS)
    assert response.status_code == 200, response.text
    session_id = response.headers["mcp-session-id"]
    notified = client.post(
        path, json=rpc("notifications/initialized"), headers=session_headers(session_id)
    )
    assert notified.status_code == 202
    return session_id


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def gateway(backend):
    return SessionGateway(backend, SessionRegistry(), json_response=True)


@pytest.fixture
def client(gateway):
    app = create_app(gateway, endpoint_url="http://127.0.0.1:8080/mcp", path="/mcp")
    with TestClient(app) as test_client:
        yield test_client
