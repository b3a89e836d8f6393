"""JSON-RPC 2.0 envelopes and newline-delimited wire encoding."""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, StrictInt, StrictStr, ValidationError, model_validator

from mcphost.mcp.errors import MCPFramingError

type JSONValue = None | bool | int | float | str | list[JSONValue] | dict[str, JSONValue]
type JSONObject = dict[str, JSONValue]

RequestId = StrictInt | StrictStr
JSONRPC_VERSION = "2.0"
METHOD_NOT_FOUND = -32601


class JsonRpcError(BaseModel):
    """Error object carried by a failed response."""

    code: int
    message: str
    data: Any = None

    def to_wire(self) -> JSONObject:
        payload: JSONObject = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload


class JsonRpcRequest(BaseModel):
    """Request expecting exactly one response with the same id."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: RequestId
    method: str
    params: dict[str, Any] | None = None

    def to_wire(self) -> JSONObject:
        payload: JSONObject = {"jsonrpc": self.jsonrpc, "id": self.id, "method": self.method}
        if self.params is not None:
            payload["params"] = self.params
        return payload


class JsonRpcNotification(BaseModel):
    """Fire-and-forget message; servers never answer it."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    method: str
    params: dict[str, Any] | None = None

    def to_wire(self) -> JSONObject:
        payload: JSONObject = {"jsonrpc": self.jsonrpc, "method": self.method}
        if self.params is not None:
            payload["params"] = self.params
        return payload


class JsonRpcResponse(BaseModel):
    """Success (`result`) XOR failure (`error`) answer to one request."""

    jsonrpc: str = JSONRPC_VERSION
    id: RequestId | None
    result: Any = None
    error: JsonRpcError | None = None

    @model_validator(mode="before")
    @classmethod
    def _reject_result_and_error(cls, data: Any) -> Any:
        if isinstance(data, dict) and "result" in data and data.get("error") is not None:
            msg = "response carries both result and error"
            raise ValueError(msg)
        return data

    @model_validator(mode="after")
    def _require_id_on_success(self) -> JsonRpcResponse:
        if self.id is None and self.error is None:
            msg = "success response without id"
            raise ValueError(msg)
        return self

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def has_result(self) -> bool:
        return "result" in self.model_fields_set and self.result is not None

    def to_wire(self) -> JSONObject:
        payload: JSONObject = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            payload["error"] = self.error.to_wire()
        elif self.result is not None:
            payload["result"] = self.result
        return payload


type OutgoingMessage = JsonRpcRequest | JsonRpcNotification | JsonRpcResponse


def encode_message(message: OutgoingMessage) -> str:
    """Encode one envelope as a single JSON line (without the trailing newline)."""
    return json.dumps(message.to_wire(), separators=(",", ":"), ensure_ascii=False)


type IncomingMessage = JsonRpcResponse | JsonRpcRequest | JsonRpcNotification


def _load_object(line: str | bytes) -> dict[str, Any]:
    try:
        payload = json.loads(line)
    except ValueError as exc:
        msg = f"invalid JSON on the wire: {exc}"
        raise MCPFramingError(msg) from exc
    if not isinstance(payload, dict):
        msg = f"expected a JSON object, got {type(payload).__name__}"
        raise MCPFramingError(msg)
    return payload


def _validate[T: BaseModel](model: type[T], payload: dict[str, Any], kind: str) -> T:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        msg = f"invalid JSON-RPC {kind}: {exc.errors()[0]['msg']}"
        raise MCPFramingError(msg) from exc


def decode_response(line: str | bytes) -> JsonRpcResponse:
    """Decode one wire line into a response, raising `MCPFramingError` on bad input."""
    return _validate(JsonRpcResponse, _load_object(line), "response")


def decode_message(line: str | bytes) -> IncomingMessage:
    """Decode any line a server may write.

    A line with `method` is server-initiated: a notification when it has no
    id, a request when it has one. Anything else must be a response.
    """
    payload = _load_object(line)
    if "method" not in payload:
        return _validate(JsonRpcResponse, payload, "response")
    if "id" in payload:
        return _validate(JsonRpcRequest, payload, "request")
    return _validate(JsonRpcNotification, payload, "notification")
