import asyncio
import contextlib
import logging
import signal
import socket
import sys

import uvicorn

from mcp_http_bridge.backend import BackendConnector
from mcp_http_bridge.endpoint_store import save_endpoint
from mcp_http_bridge.errors import BridgeError, ConfigError, EndpointPersistError
from mcp_http_bridge.gateway import SessionGateway
from mcp_http_bridge.server import ToolBackend, create_app
from mcp_http_bridge.sessions import SessionRegistry
from mcp_http_bridge.settings import BridgeSettings, load_settings

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class _Listener(uvicorn.Server):
    """uvicorn server that leaves signal handling to BridgeLifecycle."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def bind_listener(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    return socket.create_server((host, port), family=family)


class BridgeLifecycle:
    """Starts and stops one bridge instance.

    start(): connect the backend (fatal on failure), bind the listener, then
    install SIGINT/SIGTERM handlers on the running loop. stop(): drain
    sessions, close the listener, close the backend. stop() is idempotent.
    """

    def __init__(self, settings: BridgeSettings, backend: ToolBackend | None = None):
        self.settings = settings
        self.backend = backend or BackendConnector(
            settings.backend_command, settings.backend_args
        )
        self.registry = SessionRegistry()
        self.gateway = SessionGateway(
            self.backend, self.registry, json_response=settings.json_response
        )
        self.app = create_app(
            self.gateway, endpoint_url=settings.endpoint_url, path=settings.path
        )
        self._listener: _Listener | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._signal_task: asyncio.Task[None] | None = None
        self._installed_signals: list[signal.Signals] = []
        self._serving = False
        self._stopping = False
        self._stopped = asyncio.Event()

    @property
    def endpoint_url(self) -> str:
        return self.settings.endpoint_url

    @property
    def is_serving(self) -> bool:
        return self._serving and not self._stopping

    @property
    def handles_signals(self) -> bool:
        return bool(self._installed_signals)

    async def start(self) -> None:
        await self.backend.connect()
        try:
            await self._start_listener()
        except BaseException:
            await self._close_listener()
            await self.backend.close()
            raise

        self._install_signal_handlers()
        self._serving = True
        suffix = " (saved as default endpoint)" if self.settings.persist_endpoint else ""
        logger.info("MCP bridge listening on %s%s", self.endpoint_url, suffix)
        if isinstance(self.backend, BackendConnector):
            logger.info("Backend stdio: %s", self.backend.command_line)

    async def _start_listener(self) -> None:
        settings = self.settings
        if settings.persist_endpoint:
            try:
                save_endpoint(settings.endpoint_url, settings.config_path)
            except OSError as exc:
                raise EndpointPersistError(settings.config_path, exc) from exc

        sock = bind_listener(settings.host, settings.port)
        config = uvicorn.Config(
            self.app,
            log_level=settings.log_level.lower(),
            log_config=None,
            lifespan="on",
            timeout_graceful_shutdown=5,
        )
        self._listener = _Listener(config)
        self._serve_task = asyncio.create_task(
            self._listener.serve(sockets=[sock]), name="bridge-listener"
        )
        while not self._listener.started:
            if self._serve_task.done():
                self._serve_task.result()
                raise RuntimeError("HTTP listener exited during startup")
            await asyncio.sleep(0.05)

    async def run(self) -> None:
        """Start, then wait until a signal or stop() completes the shutdown."""
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True
        logger.info("Shutting down MCP bridge")
        try:
            self._remove_signal_handlers()
            await self.gateway.close_all()
            await self._close_listener()
            try:
                await self.backend.close()
            except Exception:
                logger.warning("Failed to close backend channel", exc_info=True)
        finally:
            self._stopped.set()

    async def _close_listener(self) -> None:
        if self._listener is None or self._serve_task is None:
            return
        self._listener.should_exit = True
        try:
            await self._serve_task
        except Exception:
            logger.warning("HTTP listener did not close cleanly", exc_info=True)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                loop.add_signal_handler(sig, self._on_signal, sig)
                self._installed_signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        while self._installed_signals:
            loop.remove_signal_handler(self._installed_signals.pop())

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._signal_task is not None:
            return
        logger.info("Received %s", sig.name)
        self._signal_task = asyncio.get_running_loop().create_task(self.stop())


async def run_bridge(settings: BridgeSettings) -> None:
    await BridgeLifecycle(settings).run()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO, format="%(levelname)s:%(name)s: %(message)s"
    )
    try:
        settings = load_settings()
    except ConfigError as exc:
        logger.error("%s", exc)
        sys.exit(2)
    logging.getLogger().setLevel(settings.log_level)

    try:
        asyncio.run(run_bridge(settings))
    except BridgeError as exc:
        logger.error("%s", exc)
        sys.exit(1)
    except OSError as exc:
        logger.error(
            "Unable to listen on %s:%s: %s", settings.host, settings.port, exc
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
