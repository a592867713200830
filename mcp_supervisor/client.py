"""
JSON-RPC 2.0 client over one Transport: request/response correlation,
the MCP initialize handshake and notification routing.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from .errors import (JSONRPCError, MCPConnectionError, ProtocolError,
                     RequestTimeoutError, ToolExecutionError)
from .signals import Signal, disconnect_all
from .transport import Transport

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO      = {"name": "mcp-supervisor", "version": "0.1.0"}
DEFAULT_TIMEOUT  = 30.0          # seconds

METHOD_NOT_FOUND = -32601


class MCPClient:
    """Protocol layer above a connected Transport.

    Request ids are strictly increasing integers. Each pending id maps to one
    future; whichever of response, timeout or disconnect arrives first settles
    it and removes the entry.
    """

    def __init__(self,
                 transport: Transport,
                 client_info: Optional[Dict[str, str]] = None,
                 request_timeout: float = DEFAULT_TIMEOUT,
                 label: str = "mcp"):
        self.transport       = transport
        self.client_info     = dict(client_info or CLIENT_INFO)
        self.request_timeout = request_timeout
        self.label           = label

        self.connected     = Signal("connected")
        self.initialized   = Signal("initialized")
        self.disconnected  = Signal("disconnected")
        self.error         = Signal("error")
        self.notification  = Signal("notification")
        self.tools_changed = Signal("tools_changed")
        self.stderr        = Signal("stderr")

        self.server_info: Optional[Dict[str, Any]] = None
        self.server_capabilities: Dict[str, Any] = {}
        self._initialized = False
        self._next_id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._replies: Set[asyncio.Task] = set()

        transport.connected.connect(self._on_transport_connected)
        transport.message.connect(self._on_message)
        transport.error.connect(self._on_transport_error)
        transport.disconnected.connect(self._on_transport_disconnected)
        transport.stderr.connect(self.stderr.emit)

    # ---------------------------------------------------------------- state
    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    @property
    def is_initialized(self) -> bool:
        return self._initialized and self.transport.is_connected

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ---------------------------------------------------------------- lifecycle
    async def connect(self, timeout: Optional[float] = None) -> Any:
        """Open the transport and run the initialize handshake."""
        await self.transport.connect()
        try:
            result = await self.request("initialize", {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities":    {"tools": {}},
                "clientInfo":      self.client_info,
            }, timeout=timeout)
            await self.notify("notifications/initialized")
        except BaseException:
            await self.transport.disconnect()
            raise

        if isinstance(result, dict):
            self.server_info = result.get("serverInfo")
            self.server_capabilities = result.get("capabilities") or {}
        self._initialized = True
        logger.debug("%s: handshake complete (%s)", self.label, self.server_info)
        self.initialized.emit(result)
        return result

    async def disconnect(self) -> None:
        await self.transport.disconnect()
        # transports that were never connected emit nothing
        self._reject_all(MCPConnectionError("Connection closed"))
        self._initialized = False

    # ---------------------------------------------------------------- requests
    async def request(self, method: str, params: Optional[Dict[str, Any]] = None,
                      timeout: Optional[float] = None) -> Any:
        if not self.transport.is_connected:
            raise MCPConnectionError("Client not connected")

        self._next_id += 1
        request_id = self._next_id
        timeout = timeout if timeout is not None else self.request_timeout
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending[request_id] = future
        self._timers[request_id] = loop.call_later(
            timeout, self._settle, request_id, None, RequestTimeoutError(method, timeout))

        envelope: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            envelope["params"] = params
        try:
            await self.transport.send(envelope)
            return await future
        finally:
            # covers send failures and callers cancelling the await
            self._discard(request_id)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        if not self.transport.is_connected:
            raise MCPConnectionError("Client not connected")
        envelope: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            envelope["params"] = params
        await self.transport.send(envelope)

    async def list_tools(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        result = await self.request("tools/list", {}, timeout=timeout)
        tools = result.get("tools") if isinstance(result, dict) else None
        return tools if isinstance(tools, list) else []

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None,
                        timeout: Optional[float] = None) -> Any:
        """Invoke a tool and return its ``content`` list.

        A result flagged ``isError`` raises ToolExecutionError with the text
        the server reported.
        """
        result = await self.request("tools/call",
                                    {"name": name, "arguments": arguments or {}},
                                    timeout=timeout)
        if not isinstance(result, dict):
            return []
        content = result.get("content") or []
        if result.get("isError"):
            raise ToolExecutionError(self.label, name, _content_text(content) or "tool reported an error")
        return content

    # ---------------------------------------------------------------- settlement
    def _settle(self, request_id: int, result: Any = None,
                exc: Optional[BaseException] = None) -> None:
        future = self._pending.pop(request_id, None)
        timer = self._timers.pop(request_id, None)
        if timer:
            timer.cancel()
        if future is None or future.done():
            return
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)

    def _discard(self, request_id: int) -> None:
        self._pending.pop(request_id, None)
        timer = self._timers.pop(request_id, None)
        if timer:
            timer.cancel()

    def _reject_all(self, exc: BaseException) -> None:
        for request_id in list(self._pending):
            self._settle(request_id, exc=exc)

    # ---------------------------------------------------------------- inbound
    def _on_message(self, message: Dict[str, Any]) -> None:
        request_id = message.get("id")
        method = message.get("method")

        if request_id is not None and request_id in self._pending:
            error = message.get("error")
            if error is not None:
                if isinstance(error, dict):
                    exc = JSONRPCError(error.get("code", -32603), error.get("message", "Unknown error"),
                                       error.get("data"))
                else:
                    exc = JSONRPCError(-32603, str(error))
                self._settle(request_id, exc=exc)
            else:
                self._settle(request_id, message.get("result"))
            return

        if isinstance(method, str):
            if request_id is not None:
                self._answer_server_request(request_id, method)
            else:
                self._route_notification(method, message.get("params") or {})
            return

        if request_id is not None:
            self.error.emit(ProtocolError(f"Received response for unknown request ID: {request_id}"))
        else:
            self.error.emit(ProtocolError(f"Invalid JSON-RPC message: {message!r:.200}"))

    def _route_notification(self, method: str, params: Dict[str, Any]) -> None:
        if method == "notifications/tools/list_changed":
            self.tools_changed.emit()
        self.notification.emit(method, params)

    def _answer_server_request(self, request_id: Any, method: str) -> None:
        if method == "ping":
            reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "result": {}}
        else:
            reply = {"jsonrpc": "2.0", "id": request_id,
                     "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"}}
        task = asyncio.ensure_future(self._send_quietly(reply))
        self._replies.add(task)
        task.add_done_callback(self._replies.discard)

    async def _send_quietly(self, message: Dict[str, Any]) -> None:
        try:
            await self.transport.send(message)
        except MCPConnectionError as e:
            logger.debug("%s: could not answer server request: %s", self.label, e)

    def _on_transport_connected(self) -> None:
        self.connected.emit()

    def _on_transport_error(self, exc: BaseException) -> None:
        self.error.emit(exc)

    def _on_transport_disconnected(self, info: Dict[str, Any]) -> None:
        self._initialized = False
        self._reject_all(MCPConnectionError("Connection closed"))
        self.disconnected.emit(info)

    def close(self) -> None:
        """Detach from the transport and drop every listener."""
        self.transport.remove_all_listeners()
        disconnect_all(self.connected, self.initialized, self.disconnected, self.error,
                       self.notification, self.tools_changed, self.stderr)


def _content_text(content: Any) -> str:
    if not isinstance(content, list):
        return str(content)
    parts = [item.get("text", "") for item in content
             if isinstance(item, dict) and item.get("type") == "text"]
    return "\n".join(p for p in parts if p)
