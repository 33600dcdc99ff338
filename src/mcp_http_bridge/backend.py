import asyncio
import logging
import os
import shlex
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.shared.session import RequestResponder

from mcp_http_bridge.errors import (
    BackendCallError,
    BackendConnectError,
    describe_error,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendErrorEvent:
    """An asynchronous error reported by the shared backend channel."""

    error: Exception
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def message(self) -> str:
        return describe_error(self.error)


ErrorSubscriber = Callable[[BackendErrorEvent], None]


def log_backend_error(event: BackendErrorEvent) -> None:
    logger.error("Backend stdio MCP error: %s", event.message)


class BackendConnector:
    """The single MCP client connection to the tool provider subprocess.

    Every session forwards through this one ClientSession; the session matches
    responses to requests by id, so concurrent calls need no locking. Channel
    errors are published to subscribers and never close or reopen the channel.
    """

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
    ):
        self._params = StdioServerParameters(
            command=command,
            args=list(args or []),
            env=dict(os.environ) if env is None else env,
        )
        self._session: ClientSession | None = None
        self._owner: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[types.InitializeResult] | None = None
        self._closing = asyncio.Event()
        self._subscribers: list[ErrorSubscriber] = [log_backend_error]
        self.server_info: types.Implementation | None = None

    @property
    def command_line(self) -> str:
        return shlex.join([self._params.command, *self._params.args])

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    def subscribe(self, subscriber: ErrorSubscriber) -> Callable[[], None]:
        """Register for channel errors; returns a callable that unsubscribes."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    async def connect(self) -> types.InitializeResult:
        if self._owner is not None:
            raise RuntimeError("Backend connector is already connected")

        self._ready = asyncio.get_running_loop().create_future()
        # The stdio client's task group must be entered and exited by the same
        # task, so a dedicated task owns the channel for its whole life.
        self._owner = asyncio.create_task(self._own_channel(), name="backend-channel")
        try:
            result = await self._ready
        except Exception as exc:
            await asyncio.gather(self._owner, return_exceptions=True)
            raise BackendConnectError(self.command_line, exc) from exc

        self.server_info = result.serverInfo
        logger.info(
            "Connected to backend %s %s via `%s`",
            result.serverInfo.name,
            result.serverInfo.version,
            self.command_line,
        )
        return result

    async def _own_channel(self) -> None:
        assert self._ready is not None
        try:
            async with stdio_client(self._params) as (read_stream, write_stream):
                async with ClientSession(
                    read_stream, write_stream, message_handler=self._on_message
                ) as session:
                    result = await session.initialize()
                    self._session = session
                    self._ready.set_result(result)
                    await self._closing.wait()
        except Exception as exc:
            if not self._ready.done():
                self._ready.set_exception(exc)
            else:
                self._publish(exc)
        finally:
            self._session = None
            if not self._ready.done():
                self._ready.cancel()

    async def _on_message(
        self,
        message: RequestResponder[types.ServerRequest, types.ClientResult]
        | types.ServerNotification
        | Exception,
    ) -> None:
        if isinstance(message, Exception):
            self._publish(message)

    def _publish(self, error: Exception) -> None:
        event = BackendErrorEvent(error)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("Backend error subscriber failed")

    def _require_session(self, method: str) -> ClientSession:
        if self._session is None:
            raise BackendCallError(method, RuntimeError("backend is not connected"))
        return self._session

    async def list_tools(
        self, params: types.PaginatedRequestParams | None = None
    ) -> types.ListToolsResult:
        session = self._require_session("tools/list")
        try:
            return await session.list_tools(params=params)
        except McpError:
            raise
        except Exception as exc:
            raise BackendCallError("tools/list", exc) from exc

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        *,
        meta: dict[str, Any] | None = None,
    ) -> types.CallToolResult:
        session = self._require_session("tools/call")
        logger.debug("Forwarding tools/call %s", name)
        try:
            return await session.call_tool(name, arguments or {}, meta=meta)
        except McpError:
            raise
        except Exception as exc:
            raise BackendCallError("tools/call", exc) from exc

    async def close(self) -> None:
        """Close the client session and stop the subprocess. Idempotent."""
        owner, self._owner = self._owner, None
        if owner is None:
            return
        self._closing.set()
        await owner
        logger.info("Backend channel closed")
