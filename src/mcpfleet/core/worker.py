"""
Worker-side protocol server for writing fleet workers in Python.
"""

import asyncio
import inspect
import json
import sys
import traceback
from typing import Any, Callable, Dict, List, Optional

from .errors import MalformedMessageError
from .message import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    MessageKind,
    RpcMessage,
)

_OPERATION_ATTR = "_mcpfleet_operation"
_RESOURCE_ATTR = "_mcpfleet_resource"


class InvalidParamsError(Exception):
    """Request parameters do not match what the handler expects."""


def operation(
    name: Optional[str] = None,
    *,
    description: str = "",
    input_schema: Optional[Dict[str, Any]] = None,
):
    """
    Mark a worker method as a callable operation.

    Usable bare (``@operation``) or with arguments
    (``@operation(description=..., input_schema=...)``). The description
    defaults to the first line of the docstring.
    """

    def decorate(func):
        setattr(
            func,
            _OPERATION_ATTR,
            {
                "name": name or func.__name__,
                "description": description or _first_line(func),
                "inputSchema": input_schema or {"type": "object", "properties": {}},
            },
        )
        return func

    if callable(name):
        func, name = name, None
        return decorate(func)
    return decorate


def resource(
    uri: str,
    *,
    name: Optional[str] = None,
    description: str = "",
    mime_type: str = "text/plain",
):
    """Mark a zero-argument worker method as the reader of a resource."""

    def decorate(func):
        setattr(
            func,
            _RESOURCE_ATTR,
            {
                "uri": uri,
                "name": name or func.__name__,
                "description": description or _first_line(func),
                "mimeType": mime_type,
            },
        )
        return func

    return decorate


def _first_line(func: Callable) -> str:
    doc = inspect.getdoc(func) or ""
    return doc.split("\n", 1)[0]


class StdioWorker:
    """
    Base class for worker scripts served over stdin/stdout.

    Workers inherit from this class and decorate the methods the client may
    call. stdout carries protocol lines only; print() inside a handler goes
    to stderr, which the client forwards as log events.

    Usage:
        class MathWorker(StdioWorker):
            @operation(description="Add two numbers")
            def add(self, a, b):
                return a + b

        if __name__ == "__main__":
            MathWorker().run()
    """

    def __init__(self):
        self._operations: Dict[str, Callable] = {}
        self._operation_meta: Dict[str, Dict[str, Any]] = {}
        self._resources: Dict[str, Callable] = {}
        self._resource_meta: Dict[str, Dict[str, Any]] = {}
        self._protocol_out = None
        self._tasks: set = set()

        for attr in dir(type(self)):
            member = getattr(type(self), attr, None)
            if callable(member) and hasattr(member, _OPERATION_ATTR):
                meta = getattr(member, _OPERATION_ATTR)
                self._operations[meta["name"]] = getattr(self, attr)
                self._operation_meta[meta["name"]] = meta
            if callable(member) and hasattr(member, _RESOURCE_ATTR):
                meta = getattr(member, _RESOURCE_ATTR)
                self._resources[meta["uri"]] = getattr(self, attr)
                self._resource_meta[meta["uri"]] = meta

        self._methods = {
            "tools/list": self._tools_list,
            "resources/list": self._resources_list,
            "tools/call": self._tools_call,
            "resources/read": self._resources_read,
            "ping": self._ping,
        }

    def list_operations(self) -> List[Dict[str, Any]]:
        """Operation descriptors as sent in tools/list."""
        return [dict(meta) for meta in self._operation_meta.values()]

    def list_resources(self) -> List[Dict[str, Any]]:
        """Resource descriptors as sent in resources/list."""
        return [dict(meta) for meta in self._resource_meta.values()]

    # Protocol methods

    async def _tools_list(self, params: Dict[str, Any]) -> Any:
        return {"tools": self.list_operations()}

    async def _resources_list(self, params: Dict[str, Any]) -> Any:
        return {"resources": self.list_resources()}

    async def _ping(self, params: Dict[str, Any]) -> Any:
        return {}

    async def _tools_call(self, params: Dict[str, Any]) -> Any:
        name = params.get("name")
        func = self._operations.get(name)
        if func is None:
            raise InvalidParamsError(f"Unknown tool: {name}")

        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise InvalidParamsError("'arguments' must be an object")
        try:
            inspect.signature(func).bind(**arguments)
        except TypeError as e:
            raise InvalidParamsError(f"Invalid arguments for {name}: {e}")

        result = await self._invoke(func, **arguments)
        if isinstance(result, dict) and "content" in result:
            return result
        return {"content": [{"type": "text", "text": _to_text(result)}]}

    async def _resources_read(self, params: Dict[str, Any]) -> Any:
        uri = params.get("uri")
        func = self._resources.get(uri)
        if func is None:
            raise InvalidParamsError(f"Unknown resource: {uri}")

        result = await self._invoke(func)
        if isinstance(result, dict) and "contents" in result:
            return result
        meta = self._resource_meta[uri]
        return {
            "contents": [
                {"uri": uri, "mimeType": meta["mimeType"], "text": _to_text(result)}
            ]
        }

    @staticmethod
    async def _invoke(func: Callable, *args, **kwargs) -> Any:
        # Sync handlers run in a thread so concurrent requests keep flowing
        if inspect.iscoroutinefunction(func):
            return await func(*args, **kwargs)
        return await asyncio.to_thread(func, *args, **kwargs)

    # Message handling

    async def handle_message(self, data: bytes) -> Optional[RpcMessage]:
        """
        Handle one input line and return the response to send, if any.

        Notifications and stray responses produce no reply.
        """
        try:
            message = RpcMessage.unpack(data)
        except MalformedMessageError as e:
            return RpcMessage.create_error(PARSE_ERROR, str(e), None)

        if message.kind is not MessageKind.REQUEST:
            return None

        handler = self._methods.get(message.method)
        if handler is None:
            return RpcMessage.create_error(
                METHOD_NOT_FOUND, f"Method not found: {message.method}", message.id
            )

        params = getattr(message, "params", None) or {}
        try:
            if not isinstance(params, dict):
                raise InvalidParamsError("'params' must be an object")
            result = await handler(params)
            return RpcMessage.create_response(result, message.id)
        except InvalidParamsError as e:
            return RpcMessage.create_error(INVALID_PARAMS, str(e), message.id)
        except Exception as e:
            error_msg = f"{type(e).__name__}: {str(e)}"
            return RpcMessage.create_error(
                INTERNAL_ERROR, error_msg, message.id, data=traceback.format_exc()
            )

    def _send(self, response: RpcMessage) -> None:
        try:
            data = response.pack()
        except (TypeError, ValueError) as e:
            data = RpcMessage.create_error(
                INTERNAL_ERROR, f"Unserializable response: {e}", response.id
            ).pack()
        try:
            self._protocol_out.write(data)
            self._protocol_out.flush()
        except (BrokenPipeError, ValueError) as e:
            print(f"CRITICAL: Failed to send response: {e}", file=sys.stderr)

    async def _respond(self, line: bytes) -> None:
        response = await self.handle_message(line)
        if response is not None:
            self._send(response)

    async def serve(self) -> None:
        """Read requests from stdin until EOF, handling them concurrently."""
        if not hasattr(self, "_methods"):
            raise RuntimeError(
                f"{self.__class__.__name__}.__init__() must call super().__init__()"
            )

        # Keep the real stdout for protocol lines; everything printed goes to stderr
        self._protocol_out = sys.stdout.buffer
        sys.stdout = sys.stderr
        stdin = sys.stdin.buffer

        try:
            while True:
                line = await asyncio.to_thread(stdin.readline)
                if not line:
                    break
                if not line.strip():
                    continue
                task = asyncio.get_running_loop().create_task(self._respond(line))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            for task in list(self._tasks):
                task.cancel()
            sys.stdout = sys.__stdout__

    def run(self) -> None:
        """Serve until stdin closes."""
        try:
            asyncio.run(self.serve())
        except KeyboardInterrupt:
            pass


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return json.dumps(value, default=str)
