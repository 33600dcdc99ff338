"""JSON-RPC envelopes used by the HTTP front door for protocol-level failures."""

from typing import Any

from mcp import types
from pydantic import ValidationError
from starlette.responses import JSONResponse

MISSING_SESSION = -32000
INTERNAL_ERROR = types.INTERNAL_ERROR

MISSING_SESSION_MESSAGE = "Bad Request: missing valid session"


def error_envelope(code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "error": {"code": code, "message": message},
        "id": None,
    }


def error_response(status_code: int, code: int, message: str) -> JSONResponse:
    return JSONResponse(error_envelope(code, message), status_code=status_code)


def is_initialize_request(body: bytes) -> bool:
    """True when the raw POST body is a single JSON-RPC `initialize` request."""
    if not body:
        return False
    try:
        message = types.JSONRPCMessage.model_validate_json(body)
    except ValidationError:
        return False
    return (
        isinstance(message.root, types.JSONRPCRequest)
        and message.root.method == "initialize"
    )
