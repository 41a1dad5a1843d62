"""
Tests for the line-delimited JSON-RPC message codec.
"""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from mcpfleet.core.errors import MalformedMessageError
from mcpfleet.core.message import (
    JSONRPC_VERSION,
    METHOD_NOT_FOUND,
    MessageKind,
    RpcMessage,
)


class TestRpcMessage:
    """Test message construction."""

    def test_create_request(self):
        msg = RpcMessage.create_request("tools/call", {"name": "add"}, 7)
        assert msg.jsonrpc == JSONRPC_VERSION
        assert msg.id == 7
        assert msg.method == "tools/call"
        assert msg.params == {"name": "add"}
        assert msg.kind is MessageKind.REQUEST

    def test_create_request_default_params(self):
        msg = RpcMessage.create_request("tools/list", msg_id=1)
        assert msg.params == {}

    def test_create_notification_has_no_id(self):
        msg = RpcMessage.create_notification("notifications/initialized")
        assert msg.kind is MessageKind.NOTIFICATION
        assert "id" not in msg.to_dict()

    def test_create_response(self):
        msg = RpcMessage.create_response({"tools": []}, 3)
        assert msg.kind is MessageKind.RESPONSE
        assert msg.is_response
        assert msg.result == {"tools": []}

    def test_create_error(self):
        msg = RpcMessage.create_error(METHOD_NOT_FOUND, "Method not found", 4, data="x")
        assert msg.kind is MessageKind.ERROR
        assert msg.is_response
        assert msg.error_code == METHOD_NOT_FOUND
        assert msg.error_message == "Method not found"
        assert msg.error["data"] == "x"

    def test_error_message_default(self):
        msg = RpcMessage(id=1, error={})
        assert msg.error_message == "Unknown error"
        assert msg.error_code is None


class TestEncoding:
    """Test pack()."""

    def test_pack_is_one_line(self):
        data = RpcMessage.create_request("tools/call", {"text": "a\nb"}, 1).pack()
        assert data.endswith(b"\n")
        assert data.count(b"\n") == 1
        assert json.loads(data) == {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "tools/call",
            "params": {"text": "a\nb"},
        }

    def test_pack_is_compact(self):
        data = RpcMessage.create_response(1, 1).pack()
        assert b" " not in data

    def test_pack_sanitizes_values(self):
        msg = RpcMessage.create_response(
            {"nan": float("nan"), "inf": float("inf"), 1: (1, 2), "raw": b"hi"}, 1
        )
        decoded = json.loads(msg.pack())
        assert decoded["result"] == {"nan": None, "inf": None, "1": [1, 2], "raw": "hi"}

    def test_error_with_null_id(self):
        decoded = json.loads(RpcMessage.create_error(-32700, "Parse error").pack())
        assert decoded["id"] is None


class TestDecoding:
    """Test unpack() and envelope validation."""

    def test_unpack_response(self):
        msg = RpcMessage.unpack(b'{"jsonrpc":"2.0","id":5,"result":{"ok":true}}\n')
        assert msg.id == 5
        assert msg.result == {"ok": True}
        assert msg.kind is MessageKind.RESPONSE

    def test_unpack_null_result_is_response(self):
        msg = RpcMessage.unpack('{"jsonrpc":"2.0","id":5,"result":null}')
        assert msg.kind is MessageKind.RESPONSE
        assert msg.result is None

    def test_unpack_string_id(self):
        msg = RpcMessage.unpack('{"jsonrpc":"2.0","id":"abc","result":1}')
        assert msg.id == "abc"

    def test_unpack_error(self):
        msg = RpcMessage.unpack(
            '{"jsonrpc":"2.0","id":2,"error":{"code":-32603,"message":"boom"}}'
        )
        assert msg.kind is MessageKind.ERROR
        assert msg.error_message == "boom"

    def test_unpack_notification(self):
        msg = RpcMessage.unpack('{"jsonrpc":"2.0","method":"notifications/progress"}')
        assert msg.kind is MessageKind.NOTIFICATION

    def test_unpack_request(self):
        msg = RpcMessage.unpack('{"jsonrpc":"2.0","id":1,"method":"ping"}')
        assert msg.kind is MessageKind.REQUEST

    def test_unpack_keeps_unknown_fields(self):
        msg = RpcMessage.unpack('{"jsonrpc":"2.0","id":1,"result":1,"extra":"x"}')
        assert msg.extras == {"extra": "x"}
        assert json.loads(msg.pack())["extra"] == "x"

    def test_unpack_reserved_names_stay_out_of_attributes(self):
        msg = RpcMessage.unpack(
            b'{"jsonrpc":"2.0","id":5,"result":1,"kind":"x",'
            b'"is_response":false,"error_code":7,"extras":[],"to_dict":0}'
        )
        assert msg.kind is MessageKind.RESPONSE
        assert msg.is_response
        assert msg.error_code is None
        assert msg.extras["kind"] == "x"
        assert msg.extras["extras"] == []
        assert msg.to_dict()["to_dict"] == 0

    @pytest.mark.parametrize(
        "line",
        [
            b"",
            b"   \n",
            b"not json",
            b"\xff\xfe",
            b"[1, 2]",
            b'{"id":1,"result":1}',
            b'{"jsonrpc":"1.0","id":1,"result":1}',
            b'{"jsonrpc":"2.0","id":true,"result":1}',
            b'{"jsonrpc":"2.0","id":[1],"result":1}',
            b'{"jsonrpc":"2.0","id":1}',
            b'{"jsonrpc":"2.0","id":1,"result":1,"error":{}}',
            b'{"jsonrpc":"2.0","id":1,"error":"bad"}',
            b'{"jsonrpc":"2.0","id":1,"method":5}',
        ],
    )
    def test_malformed(self, line):
        with pytest.raises(MalformedMessageError):
            RpcMessage.unpack(line)

    def test_malformed_is_value_error(self):
        with pytest.raises(ValueError):
            RpcMessage.unpack(b"{")

    def test_repr(self):
        assert "tools/list" in repr(RpcMessage.create_request("tools/list", msg_id=1))
