"""Capability server wire protocol.

Messages are JSON-RPC 2.0 objects, one per line, UTF-8 encoded and ``\\n``
terminated. The client drives three methods (``initialize``, ``tools/call`` and
``tools/list``) and accepts the ``notify/tools-changed`` notification from the
server at any time.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from winlock.errors import ProtocolError

PROTOCOL_VERSION = 2
JSONRPC_VERSION = "2.0"

METHOD_INITIALIZE = "initialize"
METHOD_INITIALIZED = "notify/initialized"
METHOD_TOOLS_CALL = "tools/call"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CHANGED = "notify/tools-changed"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


@dataclass(frozen=True)
class ToolSpec:
    """One catalog entry advertised by a capability server."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object"})

    def to_payload(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}

    @classmethod
    def from_payload(cls, payload: object) -> ToolSpec:
        if not isinstance(payload, dict):
            raise ProtocolError(f"tool entry must be an object, got {type(payload).__name__}")
        name = payload.get("name")
        if not isinstance(name, str) or not name:
            raise ProtocolError("tool entry is missing a name")
        description = payload.get("description") or ""
        schema = payload.get("inputSchema") or {"type": "object"}
        if not isinstance(schema, dict):
            raise ProtocolError(f"tool {name!r} has a non-object input schema")
        return cls(name=name, description=str(description), input_schema=schema)


@dataclass(frozen=True)
class ErrorObject:
    code: int
    message: str
    data: Any = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload


@dataclass(frozen=True)
class Request:
    id: int | str
    method: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Notification:
    method: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Response:
    id: int | str | None
    result: Any = None
    error: ErrorObject | None = None


Message: TypeAlias = Request | Notification | Response


def encode(message: Message) -> str:
    payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION}
    if isinstance(message, Request):
        payload.update(id=message.id, method=message.method, params=message.params)
    elif isinstance(message, Notification):
        payload.update(method=message.method, params=message.params)
    else:
        payload["id"] = message.id
        if message.error is not None:
            payload["error"] = message.error.to_payload()
        else:
            payload["result"] = message.result
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"


def decode(line: str) -> Message:
    """Parse one framed line; any shape violation raises ``ProtocolError``."""
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"invalid json: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ProtocolError("message must be a json object")
    if payload.get("jsonrpc") != JSONRPC_VERSION:
        raise ProtocolError("missing or unsupported jsonrpc version")

    params = payload.get("params", {})
    if params is None:
        params = {}
    method = payload.get("method")
    if method is not None:
        if not isinstance(method, str):
            raise ProtocolError("method must be a string")
        if not isinstance(params, dict):
            raise ProtocolError("params must be an object")
        if "id" in payload:
            return Request(id=_message_id(payload["id"]), method=method, params=params)
        return Notification(method=method, params=params)

    if "id" not in payload:
        raise ProtocolError("message is neither a request, a notification nor a response")
    has_result = "result" in payload
    has_error = "error" in payload
    if has_result == has_error:
        raise ProtocolError("response must carry exactly one of result or error")
    message_id = None if payload["id"] is None else _message_id(payload["id"])
    if has_error:
        return Response(id=message_id, error=_error_object(payload["error"]))
    return Response(id=message_id, result=payload["result"])


def parse_catalog(value: object) -> dict[str, ToolSpec]:
    """Catalog keyed by tool name, in the server's advertised order."""
    if not isinstance(value, list):
        raise ProtocolError("tool catalog must be a list")
    catalog: dict[str, ToolSpec] = {}
    for item in value:
        spec = ToolSpec.from_payload(item)
        catalog[spec.name] = spec
    return catalog


def is_compatible(server_version: int, client_version: int = PROTOCOL_VERSION, *, window: int = 0) -> bool:
    return abs(server_version - client_version) <= window


def _message_id(value: object) -> int | str:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ProtocolError(f"invalid message id: {value!r}")
    return value


def _error_object(value: object) -> ErrorObject:
    if not isinstance(value, dict):
        raise ProtocolError("error must be an object")
    code = value.get("code")
    message = value.get("message")
    if not isinstance(code, int) or not isinstance(message, str):
        raise ProtocolError("error must carry an integer code and a string message")
    return ErrorObject(code=code, message=message, data=value.get("data"))
