"""
Tests for MCPClient: correlation, timeouts, notifications and the handshake.
"""
import asyncio
import sys

import pytest

from mcp_supervisor.client import PROTOCOL_VERSION, MCPClient
from mcp_supervisor.errors import (JSONRPCError, MCPConnectionError, ProtocolError,
                                   RequestTimeoutError, ToolExecutionError)
from mcp_supervisor.tests.conftest import FAKE_SERVER, wait_until
from mcp_supervisor.transport import StdioTransport, Transport


class LoopbackTransport(Transport):
    """In-memory transport; the test plays the server through ``reply``."""

    def __init__(self):
        super().__init__("loopback")
        self.sent = []

    async def connect(self):
        self._finished = False
        self._connected = True
        self.connected.emit()

    async def send(self, message):
        if not self._connected:
            raise MCPConnectionError("Transport not connected")
        self.sent.append(message)

    async def disconnect(self):
        if self._connected:
            self._finish({"code": 0})

    def reply(self, message):
        self.message.emit(message)


async def connected_client(**kwargs):
    transport = LoopbackTransport()
    await transport.connect()
    return transport, MCPClient(transport, **kwargs)


class TestCorrelation:
    async def test_ids_increase_and_results_resolve(self):
        transport, client = await connected_client()
        first = asyncio.ensure_future(client.request("a"))
        second = asyncio.ensure_future(client.request("b", {"x": 1}))
        await wait_until(lambda: len(transport.sent) == 2)
        assert [m["id"] for m in transport.sent] == [1, 2]
        assert "params" not in transport.sent[0]
        assert transport.sent[1]["params"] == {"x": 1}

        # answered out of order
        transport.reply({"jsonrpc": "2.0", "id": 2, "result": "two"})
        transport.reply({"jsonrpc": "2.0", "id": 1, "result": "one"})
        assert await first == "one"
        assert await second == "two"
        assert client.pending_count == 0

    async def test_null_result_is_a_success(self):
        transport, client = await connected_client()
        pending = asyncio.ensure_future(client.request("a"))
        await wait_until(lambda: transport.sent)
        transport.reply({"jsonrpc": "2.0", "id": 1, "result": None})
        assert await pending is None

    async def test_error_response_raises(self):
        transport, client = await connected_client()
        pending = asyncio.ensure_future(client.request("a"))
        await wait_until(lambda: transport.sent)
        transport.reply({"jsonrpc": "2.0", "id": 1,
                         "error": {"code": -32602, "message": "bad params", "data": {"k": 1}}})
        with pytest.raises(JSONRPCError) as exc:
            await pending
        assert exc.value.code == -32602
        assert exc.value.data == {"k": 1}

    async def test_resolved_exactly_once(self):
        transport, client = await connected_client()
        pending = asyncio.ensure_future(client.request("a"))
        await wait_until(lambda: transport.sent)
        errors = []
        client.error.connect(errors.append)
        transport.reply({"jsonrpc": "2.0", "id": 1, "result": "first"})
        transport.reply({"jsonrpc": "2.0", "id": 1, "result": "second"})
        assert await pending == "first"
        assert len(errors) == 1
        assert isinstance(errors[0], ProtocolError)
        assert "unknown request ID: 1" in str(errors[0])

    async def test_unknown_id_reports_protocol_error(self):
        transport, client = await connected_client()
        errors = []
        client.error.connect(errors.append)
        transport.reply({"jsonrpc": "2.0", "id": 99, "result": {}})
        assert len(errors) == 1
        assert isinstance(errors[0], ProtocolError)

    async def test_timeout_clears_pending(self):
        transport, client = await connected_client(request_timeout=0.05)
        with pytest.raises(RequestTimeoutError, match="Request timeout: slow"):
            await client.request("slow")
        assert client.pending_count == 0
        # a late reply is just an unknown id
        errors = []
        client.error.connect(errors.append)
        transport.reply({"jsonrpc": "2.0", "id": 1, "result": {}})
        assert len(errors) == 1

    async def test_caller_cancellation_clears_pending(self):
        transport, client = await connected_client()
        pending = asyncio.ensure_future(client.request("a"))
        await wait_until(lambda: transport.sent)
        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending
        assert client.pending_count == 0

    async def test_disconnect_rejects_all_pending(self):
        transport, client = await connected_client()
        a = asyncio.ensure_future(client.request("a"))
        b = asyncio.ensure_future(client.request("b"))
        await wait_until(lambda: len(transport.sent) == 2)
        seen = []
        client.disconnected.connect(seen.append)
        await client.disconnect()
        for fut in (a, b):
            with pytest.raises(MCPConnectionError, match="Connection closed"):
                await fut
        assert client.pending_count == 0
        assert seen == [{"code": 0}]

    async def test_request_when_not_connected(self):
        client = MCPClient(LoopbackTransport())
        with pytest.raises(MCPConnectionError):
            await client.request("a")
        assert client.pending_count == 0


class TestInbound:
    async def test_list_changed_notification(self):
        transport, client = await connected_client()
        changed, notes = [], []
        client.tools_changed.connect(lambda: changed.append(True))
        client.notification.connect(lambda method, params: notes.append(method))
        transport.reply({"jsonrpc": "2.0", "method": "notifications/tools/list_changed"})
        transport.reply({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}})
        assert changed == [True]
        assert notes == ["notifications/tools/list_changed", "notifications/message"]

    async def test_ping_from_server_is_answered(self):
        transport, client = await connected_client()
        transport.reply({"jsonrpc": "2.0", "id": "srv-1", "method": "ping"})
        await wait_until(lambda: transport.sent)
        assert transport.sent[0] == {"jsonrpc": "2.0", "id": "srv-1", "result": {}}

    async def test_unsupported_server_request_gets_method_not_found(self):
        transport, client = await connected_client()
        transport.reply({"jsonrpc": "2.0", "id": 7, "method": "sampling/createMessage"})
        await wait_until(lambda: transport.sent)
        assert transport.sent[0]["error"]["code"] == -32601

    async def test_response_wins_over_method_field(self):
        # an echoing peer sends our request straight back
        transport, client = await connected_client()
        pending = asyncio.ensure_future(client.request("tools/list", {}))
        await wait_until(lambda: transport.sent)
        transport.reply(dict(transport.sent[0]))
        assert await pending is None

    async def test_transport_errors_forwarded(self):
        transport, client = await connected_client()
        errors = []
        client.error.connect(errors.append)
        transport._dispatch_frame("garbage")
        assert len(errors) == 1 and isinstance(errors[0], ProtocolError)


class TestTools:
    async def test_list_tools_without_tools_key(self):
        transport, client = await connected_client()
        pending = asyncio.ensure_future(client.list_tools())
        await wait_until(lambda: transport.sent)
        transport.reply({"jsonrpc": "2.0", "id": 1, "result": {}})
        assert await pending == []

    async def test_call_tool_is_error(self):
        transport, client = await connected_client()
        pending = asyncio.ensure_future(client.call_tool("fail"))
        await wait_until(lambda: transport.sent)
        assert transport.sent[0]["params"] == {"name": "fail", "arguments": {}}
        transport.reply({"jsonrpc": "2.0", "id": 1,
                         "result": {"content": [{"type": "text", "text": "boom"}], "isError": True}})
        with pytest.raises(ToolExecutionError, match="boom"):
            await pending


class TestHandshake:
    async def test_handshake_with_fixture_server(self):
        client = MCPClient(StdioTransport(sys.executable, [FAKE_SERVER], shutdown_timeout=1.0))
        result = await client.connect()
        try:
            assert result["protocolVersion"] == PROTOCOL_VERSION
            assert client.server_info == {"name": "fake", "version": "1.0"}
            assert client.is_initialized
            tools = await client.list_tools()
            assert [t["name"] for t in tools] == ["echo", "add", "fail", "touch_tools"]
            content = await client.call_tool("echo", {"text": "hi"})
            assert content == [{"type": "text", "text": "hi"}]
        finally:
            await client.disconnect()
        assert not client.is_initialized

    async def test_handshake_sends_initialized_notification(self):
        transport = LoopbackTransport()
        client = MCPClient(transport)

        async def answer():
            await wait_until(lambda: transport.sent)
            transport.reply({"jsonrpc": "2.0", "id": 1, "result": {"capabilities": {"tools": {}}}})

        responder = asyncio.ensure_future(answer())
        await client.connect()
        await responder
        init, note = transport.sent
        assert init["method"] == "initialize"
        assert init["params"]["protocolVersion"] == PROTOCOL_VERSION
        assert init["params"]["capabilities"] == {"tools": {}}
        assert note == {"jsonrpc": "2.0", "method": "notifications/initialized"}

    async def test_handshake_timeout_leaves_nothing_pending(self):
        client = MCPClient(StdioTransport(sys.executable, [FAKE_SERVER, "--hang"], shutdown_timeout=1.0))
        with pytest.raises(RequestTimeoutError, match="initialize"):
            await client.connect(timeout=0.2)
        assert client.pending_count == 0
        assert not client.transport.is_connected

    async def test_echo_process_yields_no_tools(self):
        client = MCPClient(StdioTransport("cat", shutdown_timeout=1.0))
        await client.connect(timeout=2.0)
        try:
            assert await client.list_tools(timeout=2.0) == []
        finally:
            await client.disconnect()
