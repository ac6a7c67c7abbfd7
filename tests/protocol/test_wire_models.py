"""Tests for wire models and message classification."""

from __future__ import annotations

import pytest

from toolbridge.protocol.errors import (
    ErrorCode,
    InvalidParamsError,
    InvalidRequestError,
    MethodNotFoundError,
    ParseError,
    RateLimitedError,
    RemoteError,
    FieldError,
)
from toolbridge.protocol.models import (
    CallToolParams,
    CallToolResult,
    ErrorObject,
    InitializeParams,
    Notification,
    ProgressParams,
    Request,
    Response,
    parse_message,
)


class TestParseMessage:
    def test_request(self) -> None:
        msg = parse_message({"jsonrpc": "2.0", "id": 1, "method": "ping"})
        assert isinstance(msg, Request)
        assert msg.id == 1
        assert msg.params == {}

    def test_string_ids_are_allowed(self) -> None:
        msg = parse_message({"jsonrpc": "2.0", "id": "abc", "method": "ping"})
        assert isinstance(msg, Request)
        assert msg.id == "abc"

    def test_notification(self) -> None:
        msg = parse_message({"jsonrpc": "2.0", "method": "notifications/initialized"})
        assert isinstance(msg, Notification)

    def test_response_result(self) -> None:
        msg = parse_message({"jsonrpc": "2.0", "id": 7, "result": {"ok": True}})
        assert isinstance(msg, Response)
        assert not msg.is_error

    def test_response_error(self) -> None:
        msg = parse_message({"jsonrpc": "2.0", "id": 7, "error": {"code": -32601, "message": "nope"}})
        assert isinstance(msg, Response)
        assert msg.is_error
        assert msg.error == ErrorObject(code=-32601, message="nope")

    def test_json_text(self) -> None:
        msg = parse_message('{"jsonrpc": "2.0", "id": 2, "method": "tools/list"}')
        assert isinstance(msg, Request)

    def test_invalid_json(self) -> None:
        with pytest.raises(ParseError):
            parse_message("{not json")

    def test_non_object(self) -> None:
        with pytest.raises(InvalidRequestError):
            parse_message([1, 2])

    def test_wrong_version_keeps_id(self) -> None:
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_message({"jsonrpc": "1.0", "id": 9, "method": "ping"})
        assert exc_info.value.data == {"id": 9}

    def test_response_with_both_outcomes(self) -> None:
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_message({"jsonrpc": "2.0", "id": 1, "result": {}, "error": {"code": 1, "message": "x"}})
        assert exc_info.value.data == {"id": None}

    def test_malformed_response_carries_no_reply_id(self) -> None:
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_message({"jsonrpc": "2.0", "id": 7, "result": "pong"})
        assert exc_info.value.data == {"id": None}

    def test_unclassifiable(self) -> None:
        with pytest.raises(InvalidRequestError, match="neither"):
            parse_message({"jsonrpc": "2.0", "id": 1})


class TestWireShapes:
    def test_request_omits_empty_params(self) -> None:
        assert Request(id=1, method="ping").to_wire() == {"jsonrpc": "2.0", "id": 1, "method": "ping"}

    def test_error_response(self) -> None:
        wire = Response(id=3, error=ErrorObject(code=-32600, message="bad")).to_wire()
        assert wire == {"jsonrpc": "2.0", "id": 3, "error": {"code": -32600, "message": "bad"}}

    def test_initialize_params_aliases(self) -> None:
        params = InitializeParams.model_validate(
            {"protocolVersion": "2025-06-18", "capabilities": {"tools": {"listChanged": True}},
             "clientInfo": {"name": "c", "version": "1"}}
        )
        assert params.capabilities["tools"].list_changed is True
        assert params.to_wire()["clientInfo"] == {"name": "c", "version": "1"}

    def test_call_tool_params_meta(self) -> None:
        params = CallToolParams.model_validate(
            {"name": "echo", "arguments": {"text": "hi"}, "_meta": {"progressToken": 5}}
        )
        assert params.meta == {"progressToken": 5}

    def test_call_tool_result_wire(self) -> None:
        wire = CallToolResult.error("boom", ErrorCode.TIMEOUT).to_wire()
        assert wire == {
            "content": [{"type": "text", "text": "boom"}],
            "isError": True,
            "_meta": {"errorCode": -32005},
        }

    def test_call_tool_result_round_trip_content(self) -> None:
        result = CallToolResult.model_validate(
            {"content": [{"type": "text", "text": "a"}, {"type": "binary", "data": "AA==", "mimeType": "image/png"}]}
        )
        assert result.text == "a"
        assert result.content[1].mime_type == "image/png"

    def test_progress_params(self) -> None:
        wire = ProgressParams(invocation_id=1, completed=3, total=10).to_wire()
        assert wire == {"invocationId": 1, "completed": 3.0, "total": 10.0}


class TestErrors:
    def test_codes(self) -> None:
        assert ErrorCode.PARSE_ERROR == -32700
        assert ErrorCode.REQUEST_CANCELLED == -32800
        assert MethodNotFoundError("x").to_error().code == -32601

    def test_invalid_params_lists_fields(self) -> None:
        err = InvalidParamsError([FieldError(field="text", message="too long")])
        assert err.message == "Invalid params: text: too long"
        assert err.to_error().data == {"errors": [{"field": "text", "message": "too long"}]}

    def test_rate_limited_data(self) -> None:
        err = RateLimitedError("alice", 12.3456)
        assert err.to_error().data == {"retryAfter": 12.346}

    def test_remote_error_from_wire(self) -> None:
        err = RemoteError.from_error(ErrorObject(code=-32002, message="slow down", data={"retryAfter": 1}))
        assert err.code == -32002
        assert err.data == {"retryAfter": 1}
        assert str(err) == "slow down"
