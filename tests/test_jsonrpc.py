"""Tests for the JSON-RPC envelope codec."""

import json

import pytest

from capability_bridge.errors import ProtocolViolationError
from capability_bridge.jsonrpc import (
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    decode_request,
    decode_response,
    encode_error,
    encode_request,
    encode_result,
)


def test_request_round_trip_preserves_skill_arguments_and_id() -> None:
    params = {"a": 10, "b": 5, "nested": {"values": [1, 2.5, None, "x"]}}

    raw = encode_request("multiply_numbers", params, "req-1", thread_id="thread-9")
    request = decode_request(raw)

    assert request.method == "multiply_numbers"
    assert request.params == params
    assert request.id == "req-1"
    assert request.meta is not None
    assert request.meta.thid == "thread-9"


def test_request_wire_shape() -> None:
    payload = json.loads(encode_request("add", {"a": 1, "b": 2}, "req-2"))

    assert payload == {"jsonrpc": "2.0", "method": "add", "params": {"a": 1, "b": 2}, "id": "req-2"}


def test_decode_request_rejects_bad_json() -> None:
    with pytest.raises(ProtocolViolationError) as excinfo:
        decode_request(b"{nope")

    assert excinfo.value.details["code"] == PARSE_ERROR


def test_decode_request_rejects_bad_envelope() -> None:
    with pytest.raises(ProtocolViolationError) as excinfo:
        decode_request({"jsonrpc": "1.0", "method": "add", "id": "x"})

    assert excinfo.value.details["code"] == INVALID_REQUEST


def test_result_round_trip() -> None:
    response = decode_response(encode_result("req-1", 50))

    assert response.id == "req-1"
    assert response.result == 50
    assert not response.is_error


def test_null_result_is_still_a_result() -> None:
    response = decode_response(encode_result("req-1", None))

    assert not response.is_error
    assert response.result is None


def test_error_round_trip() -> None:
    response = decode_response(
        encode_error("req-1", METHOD_NOT_FOUND, "Method not found", {"method": "divide"})
    )

    assert response.is_error
    assert response.error is not None
    assert response.error.code == METHOD_NOT_FOUND
    assert response.error.data == {"method": "divide"}


def test_integer_ids_are_normalised_to_strings() -> None:
    response = decode_response({"jsonrpc": "2.0", "id": 7, "result": "ok"})

    assert response.id == "7"


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[]",
        json.dumps({"jsonrpc": "2.0", "result": 1}),
        json.dumps({"jsonrpc": "2.0", "id": "x"}),
        json.dumps({"jsonrpc": "2.0", "id": "x", "result": 1, "error": {"code": 1, "message": "m"}}),
        json.dumps({"jsonrpc": "2.0", "id": "x", "error": {"message": "no code"}}),
    ],
)
def test_decode_response_violations(raw: object) -> None:
    with pytest.raises(ProtocolViolationError):
        decode_response(raw)


@pytest.mark.parametrize("value", [float("nan"), float("inf")])
def test_non_finite_numbers_are_not_encoded(value: float) -> None:
    with pytest.raises(ValueError):
        encode_request("multiply_numbers", {"a": value, "b": 1}, "req-3")
    with pytest.raises(ValueError):
        encode_result("req-3", value)
