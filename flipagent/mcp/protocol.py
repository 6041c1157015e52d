"""JSON-RPC 2.0 constants and envelope helpers for the MCP wire protocol."""

from __future__ import annotations

from typing import Any

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Server-defined range
RATE_LIMITED = -32000

# Method vocabulary shared by both roles
METHOD_INITIALIZE = "initialize"
METHOD_INITIALIZED = "notifications/initialized"
METHOD_PING = "ping"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CALL = "tools/call"
METHOD_RESOURCES_LIST = "resources/list"
METHOD_RESOURCE_TEMPLATES_LIST = "resources/templates/list"
METHOD_RESOURCES_READ = "resources/read"
METHOD_PROMPTS_LIST = "prompts/list"
METHOD_PROMPTS_GET = "prompts/get"


def make_request(request_id: int | str, method: str, params: dict | None = None) -> dict[str, Any]:
    """Build a request envelope. ``params`` is omitted when None."""
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: dict | None = None) -> dict[str, Any]:
    """Build a one-way notification envelope (no ``id``)."""
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_result(request_id: int | str | None, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error(request_id: int | str | None, code: int, message: str, data: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def is_valid_id(value: Any) -> bool:
    """Request IDs are strings or integers (bool is rejected)."""
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, str))


def is_valid_envelope(message: Any) -> bool:
    """Check the JSON-RPC 2.0 envelope of a decoded frame.

    Accepted shapes:
      * request       -- ``method`` (str) with a string/integer ``id``
      * notification  -- ``method`` (str) without ``id``
      * response      -- ``id`` plus ``result`` or ``error``
    """
    if not isinstance(message, dict):
        return False
    if message.get("jsonrpc") != JSONRPC_VERSION:
        return False

    if "method" in message:
        if not isinstance(message["method"], str):
            return False
        return "id" not in message or is_valid_id(message["id"])

    if "id" not in message:
        return False
    if message["id"] is not None and not is_valid_id(message["id"]):
        return False
    if "result" in message:
        return True
    error = message.get("error")
    return isinstance(error, dict)


def is_notification(message: dict) -> bool:
    return "id" not in message


def is_request(message: dict) -> bool:
    return "method" in message and "id" in message


def is_response(message: dict) -> bool:
    return "method" not in message and "id" in message
