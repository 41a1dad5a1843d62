"""
Message handling for the line-delimited JSON-RPC protocol spoken over stdio.
"""

import json
import math
from enum import Enum
from typing import Any, Dict, Optional, Union

from .errors import MalformedMessageError


JSONRPC_VERSION = "2.0"

# Standard JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class MessageKind(Enum):
    """Shapes a protocol message can take."""

    REQUEST = "request"
    RESPONSE = "response"
    ERROR = "error"
    NOTIFICATION = "notification"


def _sanitize_for_json(obj: Any) -> Any:
    """Sanitize object so it encodes as strict JSON.

    Handles:
    - NaN/Infinity → null
    - Non-string keys → string conversion
    - Tuples and sets → lists
    - Bytes → UTF-8 text (lossy)
    """
    if isinstance(obj, dict):
        return {str(k): _sanitize_for_json(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple, set, frozenset)):
        return [_sanitize_for_json(v) for v in obj]
    elif isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return None
        return obj
    elif isinstance(obj, (bytes, bytearray)):
        return bytes(obj).decode("utf-8", errors="replace")
    return obj


class RpcMessage:
    """
    Message container for the stdio protocol.

    Fields (present depending on kind):
    - jsonrpc: str = "2.0"
    - id: int | str | None = correlation id (absent for notifications)
    - method: str = method name (requests and notifications)
    - params: dict = method parameters
    - result: Any = response payload
    - error: dict = {code, message, data?} for error responses

    Any other top-level keys are kept in ``extras`` and written back on pack().
    """

    FIELDS = ("jsonrpc", "id", "method", "params", "result", "error")

    def __init__(self, **kwargs):
        self.jsonrpc = JSONRPC_VERSION
        self.id: Optional[Union[int, str]] = None
        self.extras: Dict[str, Any] = {}

        for key, value in kwargs.items():
            if key in self.FIELDS:
                setattr(self, key, value)
            else:
                self.extras[key] = value

    @classmethod
    def create_request(
        cls,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        msg_id: Optional[Union[int, str]] = None,
    ) -> "RpcMessage":
        """Create a request message."""
        return cls(id=msg_id, method=method, params=params or {})

    @classmethod
    def create_notification(
        cls, method: str, params: Optional[Dict[str, Any]] = None
    ) -> "RpcMessage":
        """Create a notification (a request without an id)."""
        msg = cls(method=method, params=params or {})
        del msg.id
        return msg

    @classmethod
    def create_response(cls, result: Any, msg_id: Union[int, str]) -> "RpcMessage":
        """Create a success response."""
        return cls(id=msg_id, result=result)

    @classmethod
    def create_error(
        cls,
        code: int,
        message: str,
        msg_id: Optional[Union[int, str]] = None,
        data: Any = None,
    ) -> "RpcMessage":
        """Create an error response."""
        error: Dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        return cls(id=msg_id, error=error)

    @property
    def kind(self) -> MessageKind:
        if hasattr(self, "method"):
            if "id" in self.__dict__:
                return MessageKind.REQUEST
            return MessageKind.NOTIFICATION
        if hasattr(self, "error"):
            return MessageKind.ERROR
        return MessageKind.RESPONSE

    @property
    def is_response(self) -> bool:
        return self.kind in (MessageKind.RESPONSE, MessageKind.ERROR)

    @property
    def error_message(self) -> str:
        error = getattr(self, "error", None) or {}
        return str(error.get("message", "Unknown error"))

    @property
    def error_code(self) -> Optional[int]:
        error = getattr(self, "error", None) or {}
        return error.get("code")

    def to_dict(self) -> dict:
        """Convert to plain dict."""
        data = dict(self.extras)
        data.update(
            (key, getattr(self, key)) for key in self.FIELDS if key in self.__dict__
        )
        return data

    def pack(self) -> bytes:
        """Encode as one newline-terminated JSON line."""
        data = _sanitize_for_json(self.to_dict())
        line = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
        return (line + "\n").encode("utf-8")

    @classmethod
    def unpack(cls, data: Union[bytes, str]) -> "RpcMessage":
        """Decode one line into a message, validating the envelope."""
        if isinstance(data, (bytes, bytearray)):
            try:
                data = bytes(data).decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedMessageError(f"Message is not valid UTF-8: {e}")
        if not isinstance(data, str):
            raise MalformedMessageError(f"Expected bytes or str, got {type(data)}")

        text = data.strip()
        if not text:
            raise MalformedMessageError("Empty message data")

        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedMessageError(f"Invalid JSON: {e}")

        if not isinstance(decoded, dict):
            raise MalformedMessageError(
                f"Expected JSON object, got {type(decoded).__name__}"
            )
        if decoded.get("jsonrpc") != JSONRPC_VERSION:
            raise MalformedMessageError(
                f"Unsupported jsonrpc version: {decoded.get('jsonrpc')!r}"
            )

        msg_id = decoded.get("id")
        if msg_id is not None and (
            isinstance(msg_id, bool) or not isinstance(msg_id, (int, str))
        ):
            raise MalformedMessageError(f"Invalid message id: {msg_id!r}")

        has_method = "method" in decoded
        has_result = "result" in decoded
        has_error = "error" in decoded

        if has_method:
            if not isinstance(decoded["method"], str):
                raise MalformedMessageError("Field 'method' must be a string")
        elif has_result == has_error:
            raise MalformedMessageError(
                "Response must carry exactly one of 'result' or 'error'"
            )
        if has_error and not isinstance(decoded["error"], dict):
            raise MalformedMessageError("Field 'error' must be an object")

        message = cls(**decoded)
        if has_method and "id" not in decoded:
            del message.id
        return message

    def __repr__(self) -> str:
        return f"RpcMessage({self.to_dict()!r})"
