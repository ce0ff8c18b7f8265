"""JSON-RPC 2.0 envelope codec for skill invocation.

Request::

    {"jsonrpc": "2.0", "method": <skill_id>, "params": {...}, "id": <correlation_id>,
     "meta": {"thid": <thread id>}}

Response::

    {"jsonrpc": "2.0", "result": <value>, "id": <correlation_id>}
    {"jsonrpc": "2.0", "error": {"code": -32000, "message": "...", "data": ...}, "id": ...}

The codec only checks the envelope. Payload content is opaque here.
"""

from __future__ import annotations

import json
from typing import Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ProtocolViolationError

JSONRPC_VERSION = "2.0"

# Standard JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000

RawMessage = Union[bytes, bytearray, str, Mapping[str, Any]]


class RequestMeta(BaseModel):
    """Optional request metadata."""

    model_config = ConfigDict(extra="allow")

    thid: Optional[str] = Field(default=None, description="Thread/session id")


class JsonRpcRequest(BaseModel):
    """A skill invocation request."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    method: str = Field(..., min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    id: str = Field(..., min_length=1)
    meta: Optional[RequestMeta] = None

    def to_bytes(self) -> bytes:
        return json.dumps(self.model_dump(exclude_none=True), allow_nan=False).encode("utf-8")


class JsonRpcErrorObject(BaseModel):
    """The ``error`` member of a failed response."""

    code: int
    message: str
    data: Optional[Any] = None


class JsonRpcResponse(BaseModel):
    """A response envelope carrying exactly one of ``result`` or ``error``."""

    jsonrpc: Literal["2.0"] = JSONRPC_VERSION
    id: Optional[str] = None
    result: Optional[Any] = None
    error: Optional[JsonRpcErrorObject] = None

    @model_validator(mode="before")
    @classmethod
    def _exactly_one_outcome(cls, data: Any) -> Any:
        if isinstance(data, dict):
            has_result = "result" in data
            has_error = "error" in data and data["error"] is not None
            if has_result == has_error:
                raise ValueError("response must contain exactly one of 'result' or 'error'")
            raw_id = data.get("id")
            if isinstance(raw_id, int) and not isinstance(raw_id, bool):
                data = {**data, "id": str(raw_id)}
        return data

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_bytes(self) -> bytes:
        payload: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            payload["error"] = self.error.model_dump(exclude_none=True)
        else:
            payload["result"] = self.result
        return json.dumps(payload, allow_nan=False).encode("utf-8")


def _load(raw: RawMessage) -> Any:
    if isinstance(raw, Mapping):
        return dict(raw)
    text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
    return json.loads(text)


def encode_request(
    skill_id: str,
    params: Mapping[str, Any],
    correlation_id: str,
    thread_id: Optional[str] = None,
) -> bytes:
    """Encode a skill invocation as a JSON-RPC request."""
    request = JsonRpcRequest(
        method=skill_id,
        params=dict(params),
        id=correlation_id,
        meta=RequestMeta(thid=thread_id) if thread_id else None,
    )
    return request.to_bytes()


def decode_request(raw: RawMessage) -> JsonRpcRequest:
    """Decode a JSON-RPC request envelope.

    Raises:
        ProtocolViolationError: If the payload is not a valid request
    """
    try:
        data = _load(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolViolationError("request is not valid JSON", {"code": PARSE_ERROR}) from exc
    try:
        return JsonRpcRequest.model_validate(data)
    except PydanticValidationError as exc:
        raise ProtocolViolationError(
            "invalid request envelope",
            {"code": INVALID_REQUEST, "errors": exc.errors(include_url=False)},
        ) from exc


def encode_result(correlation_id: Optional[str], value: Any) -> bytes:
    """Encode a successful response."""
    return JsonRpcResponse(id=correlation_id, result=value).to_bytes()


def encode_error(
    correlation_id: Optional[str],
    code: int,
    message: str,
    data: Optional[Any] = None,
) -> bytes:
    """Encode an error response."""
    return JsonRpcResponse(
        id=correlation_id,
        error=JsonRpcErrorObject(code=code, message=message, data=data),
    ).to_bytes()


def decode_response(raw: RawMessage) -> JsonRpcResponse:
    """Decode a JSON-RPC response envelope.

    Raises:
        ProtocolViolationError: If the payload is not valid JSON, is not an
            object, lacks an id, or does not carry exactly one of
            ``result``/``error``
    """
    try:
        data = _load(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolViolationError("response is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ProtocolViolationError("response is not a JSON object")
    if data.get("id") is None:
        raise ProtocolViolationError("response has no id")
    try:
        return JsonRpcResponse.model_validate(data)
    except PydanticValidationError as exc:
        raise ProtocolViolationError(
            "invalid response envelope",
            {"errors": exc.errors(include_url=False)},
        ) from exc
