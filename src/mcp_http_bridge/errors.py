from mcp.shared.exceptions import McpError
from mcp.types import INTERNAL_ERROR, ErrorData


class BridgeError(Exception):
    """Base class for errors raised by the bridge itself."""


class ConfigError(BridgeError, ValueError):
    """Invalid endpoint configuration; raised before any socket is opened."""


class BackendConnectError(BridgeError):
    """The tool provider subprocess could not be started or initialized."""

    def __init__(self, command_line: str, cause: BaseException):
        self.command_line = command_line
        self.cause = cause
        super().__init__(
            "\n".join(
                [
                    f"Unable to connect to the tool provider via `{command_line}`.",
                    "Check the following and try again:",
                    "1) The tool provider executable is installed and on PATH.",
                    "2) The application backing the tool provider is running.",
                    "3) The environment (developer directory, credentials) points "
                    "to the right installation.",
                    f"Original error: {describe_error(cause)}",
                ]
            )
        )


class EndpointPersistError(BridgeError):
    """The endpoint could not be written to the CLI config file."""

    def __init__(self, path, cause: BaseException):
        self.path = path
        self.cause = cause
        super().__init__(
            f"Unable to save the bridge endpoint to {path}: {describe_error(cause)}. "
            "Check that the directory exists and is writable, or set "
            "MCP_BRIDGE_PERSIST_ENDPOINT=false to skip saving it."
        )


class BackendCallError(McpError):
    """A forwarded call failed on the shared channel.

    Subclasses McpError so the per-session MCP server answers the request with
    a JSON-RPC error instead of tearing the session down.
    """

    def __init__(self, method: str, cause: BaseException):
        self.method = method
        super().__init__(
            ErrorData(
                code=INTERNAL_ERROR,
                message=f"Backend {method} failed: {describe_error(cause)}",
            )
        )


class SessionRoutingError(BridgeError):
    """A request carried no session, or a session id that is not active."""


def describe_error(exc: BaseException) -> str:
    # anyio task groups wrap failures in exception groups
    if isinstance(exc, BaseExceptionGroup) and len(exc.exceptions) == 1:
        return describe_error(exc.exceptions[0])
    return str(exc) or type(exc).__name__
