"""HTTP front door: routes streamable-HTTP MCP requests to per-session servers."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.streamable_http import (
    MCP_SESSION_ID_HEADER,
    StreamableHTTPServerTransport,
)
from starlette.requests import Request
from starlette.types import Message, Receive, Scope, Send

from mcp_http_bridge.envelope import (
    INTERNAL_ERROR,
    MISSING_SESSION,
    MISSING_SESSION_MESSAGE,
    error_response,
    is_initialize_request,
)
from mcp_http_bridge.errors import SessionRoutingError, describe_error
from mcp_http_bridge.server import ToolBackend, create_session_server, initialization_options
from mcp_http_bridge.sessions import Session, SessionRegistry

logger = logging.getLogger(__name__)

SESSION_CLOSE_GRACE_SECONDS = 5.0


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """Hand an already-read request body to the transport, then defer to `receive`."""
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


def _header(message: Message, name: bytes) -> bytes | None:
    for key, value in message.get("headers", []):
        if key.lower() == name:
            return value
    return None


class SessionGateway:
    """ASGI app mounted at the bridge endpoint path.

    Sessions run inside the task group opened by `run()`, which the FastAPI
    lifespan holds open for the life of the listener.
    """

    def __init__(
        self,
        backend: ToolBackend,
        registry: SessionRegistry,
        *,
        json_response: bool = False,
    ):
        self.backend = backend
        self.registry = registry
        self.json_response = json_response
        self._task_group: TaskGroup | None = None

    @asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            try:
                yield
            finally:
                await self.close_all()
                self._task_group = None
                tg.cancel_scope.cancel()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        response_started = False

        async def tracked_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self._route(scope, receive, tracked_send)
        except SessionRoutingError as exc:
            logger.debug("Rejected request: %s", exc)
            if not response_started:
                response = error_response(400, MISSING_SESSION, str(exc))
                await response(scope, receive, send)
        except Exception as exc:
            logger.exception("Unhandled error while serving %s", scope.get("path"))
            if not response_started:
                response = error_response(500, INTERNAL_ERROR, describe_error(exc))
                await response(scope, receive, send)

    async def _route(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        method = request.method.upper()
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if method == "POST":
            body = await request.body()
            replay = _replay_body(body, receive)
            session = self.registry.lookup(session_id)
            if session is not None:
                await self._forward(session, scope, replay, send)
                return
            if session_id is None and is_initialize_request(body):
                await self._open_session(scope, replay, send)
                return
            raise SessionRoutingError(MISSING_SESSION_MESSAGE)

        if method in ("GET", "DELETE"):
            session = self.registry.lookup(session_id)
            if session is None:
                raise SessionRoutingError("Bad Request: invalid or missing session id")
            await self._forward(session, scope, receive, send)
            return

        response = error_response(405, MISSING_SESSION, "Method not allowed")
        response.headers["allow"] = "GET, POST, DELETE"
        await response(scope, receive, send)

    async def _forward(
        self, session: Session, scope: Scope, receive: Receive, send: Send
    ) -> None:
        await session.transport.handle_request(scope, receive, send)
        # DELETE terminates the transport; stop routing to it right away
        if session.transport.is_terminated:
            self.registry.remove(session.session_id)

    async def _open_session(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self._task_group is None:
            raise RuntimeError("Session gateway is not running")

        session_id = uuid4().hex
        transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=self.json_response,
        )
        session = Session(session_id, create_session_server(self.backend), transport)
        await self._task_group.start(self._run_session, session)

        confirmation = session_id.encode()

        async def registering_send(message: Message) -> None:
            if (
                message["type"] == "http.response.start"
                and message["status"] < 400
                and _header(message, MCP_SESSION_ID_HEADER.encode()) == confirmation
            ):
                self.registry.insert(session)
            await send(message)

        try:
            await transport.handle_request(scope, receive, registering_send)
        finally:
            if session_id not in self.registry:
                logger.warning("Initialization did not confirm session %s", session_id)
                with anyio.CancelScope(shield=True):
                    await transport.terminate()

    async def _run_session(
        self,
        session: Session,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        try:
            async with session.transport.connect() as (read_stream, write_stream):
                task_status.started()
                try:
                    await session.server.run(
                        read_stream,
                        write_stream,
                        initialization_options(session.server),
                    )
                except Exception:
                    logger.exception("Session %s server crashed", session.session_id)
        finally:
            self.registry.remove(session.session_id)
            session.closed.set()

    async def close_all(self) -> None:
        """Terminate every active session and wait for them to report closed."""
        sessions = self.registry.drain()
        for session in sessions:
            try:
                await session.transport.terminate()
            except Exception:
                logger.warning(
                    "Failed to close session %s", session.session_id, exc_info=True
                )
        with anyio.move_on_after(SESSION_CLOSE_GRACE_SECONDS) as scope:
            for session in sessions:
                await session.closed.wait()
        if scope.cancelled_caught:
            logger.warning("Timed out waiting for sessions to close")
