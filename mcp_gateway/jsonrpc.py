"""
JSON-RPC 2.0 envelope for the gateway's MCP endpoint.

Successful tool calls are returned as an MCP CallToolResult (text content
plus structuredContent). Failed calls become JSON-RPC errors with a code
per failure kind; `error.data.kind` carries the stable kind string.

Custom codes live in the implementation-defined server error range
(-32000 to -32099):

    Unauthorized  -32001
    Forbidden     -32003
    UnknownTool   -32004
    Timeout       -32008
    Cancelled     -32009
"""

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from mcp import types

from mcp_gateway.dispatcher import ToolCallRequest
from mcp_gateway.registry import ToolDescriptor
from mcp_gateway.results import ErrorKind, ToolResult

JSONRPC_VERSION = "2.0"

UNAUTHORIZED = -32001
FORBIDDEN = -32003
UNKNOWN_TOOL = -32004
TIMEOUT = -32008
CANCELLED = -32009

ERROR_CODES: dict[ErrorKind, int] = {
    ErrorKind.MALFORMED_REQUEST: types.INVALID_REQUEST,
    ErrorKind.UNAUTHORIZED: UNAUTHORIZED,
    ErrorKind.UNKNOWN_TOOL: UNKNOWN_TOOL,
    ErrorKind.VALIDATION_ERROR: types.INVALID_PARAMS,
    ErrorKind.FORBIDDEN: FORBIDDEN,
    ErrorKind.TIMEOUT: TIMEOUT,
    ErrorKind.CANCELLED: CANCELLED,
    ErrorKind.INTERNAL_ERROR: types.INTERNAL_ERROR,
}


class JsonRpcError(Exception):
    """A request that cannot be answered with a result."""

    def __init__(self, code: int, message: str, *, request_id: Any = None, data: Any = None):
        self.code = code
        self.message = message
        self.request_id = request_id
        self.data = data
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        return error_response(self.request_id, self.code, self.message, self.data)


@dataclass(frozen=True)
class JsonRpcMessage:
    """One decoded JSON-RPC request or notification (id is None)."""

    method: str
    id: Any = None
    params: Mapping[str, Any] = field(default_factory=dict)
    is_notification: bool = False


def parse_message(body: Any) -> JsonRpcMessage:
    """
    Validate a decoded request body.

    Raises:
        JsonRpcError(INVALID_REQUEST): not a single JSON-RPC 2.0 request object
    """
    if isinstance(body, list):
        raise JsonRpcError(types.INVALID_REQUEST, "Batch requests are not supported")
    if not isinstance(body, dict):
        raise JsonRpcError(types.INVALID_REQUEST, "Request must be a JSON object")

    request_id = body.get("id")
    if body.get("jsonrpc") != JSONRPC_VERSION:
        raise JsonRpcError(types.INVALID_REQUEST, "Unsupported JSON-RPC version", request_id=request_id)

    method = body.get("method")
    if not isinstance(method, str) or not method:
        raise JsonRpcError(types.INVALID_REQUEST, "Missing method", request_id=request_id)

    params = body.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise JsonRpcError(types.INVALID_REQUEST, "Params must be an object", request_id=request_id)

    return JsonRpcMessage(
        method=method,
        id=request_id,
        params=params,
        is_notification="id" not in body,
    )


def to_tool_call(message: JsonRpcMessage, token: str) -> ToolCallRequest:
    """
    Build a ToolCallRequest from tools/call params.

    MCP lets clients omit `arguments` for tools without parameters; an
    explicit null or a non-object is passed through for the dispatcher to
    reject as malformed.
    """
    name = message.params.get("name")
    arguments = message.params.get("arguments", {})
    return ToolCallRequest(
        id=message.id,
        tool_name=name if isinstance(name, str) else "",
        arguments=arguments,
        token=token,
    )


def success_response(request_id: Any, result: Mapping[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": dict(result)}


def error_response(request_id: Any, code: int, message: str, data: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


def tool_result_response(request_id: Any, result: ToolResult) -> dict[str, Any]:
    if result.ok:
        text = json.dumps(dict(result.payload), default=str)
        structured = json.loads(text)
        call_result = types.CallToolResult(
            content=[types.TextContent(type="text", text=text)],
            structuredContent=structured,
            isError=False,
        )
        body = call_result.model_dump(mode="json", by_alias=True, exclude_none=True)
        # exclude_none is for the envelope; null values in the payload stay.
        body["structuredContent"] = structured
        return success_response(request_id, body)

    data = {"kind": result.kind.value, "retryable": result.kind.retryable}
    if result.details:
        data["details"] = dict(result.details)
    return error_response(request_id, ERROR_CODES[result.kind], result.message, data)


def unauthorized_response(request_id: Any, message: str) -> dict[str, Any]:
    return error_response(
        request_id,
        UNAUTHORIZED,
        message,
        {"kind": ErrorKind.UNAUTHORIZED.value, "retryable": False},
    )


def tool_listing(tools: Iterable[ToolDescriptor]) -> dict[str, Any]:
    listing = types.ListToolsResult(
        tools=[
            types.Tool(
                name=tool.name,
                description=tool.description or None,
                inputSchema=dict(tool.input_schema),
            )
            for tool in tools
        ]
    )
    return listing.model_dump(mode="json", by_alias=True, exclude_none=True)


def initialize_result(server_name: str, server_version: str, instructions: str) -> dict[str, Any]:
    result = types.InitializeResult(
        protocolVersion=types.LATEST_PROTOCOL_VERSION,
        capabilities=types.ServerCapabilities(tools=types.ToolsCapability(listChanged=False)),
        serverInfo=types.Implementation(name=server_name, version=server_version),
        instructions=instructions,
    )
    return result.model_dump(mode="json", by_alias=True, exclude_none=True)
