"""
Tests for MCPServer: start/stop sequencing, crash recovery, health and stderr.
"""
import asyncio

import pytest
import pytest_asyncio

from mcp_supervisor.config import build_config
from mcp_supervisor.errors import (InvalidStateError, MCPConnectionError,
                                   ServerNotRunningError, ToolExecutionError)
from mcp_supervisor.models import ServerHealth, ServerStatus
from mcp_supervisor.server import MCPServer, restart_delay
from mcp_supervisor.tests.conftest import fake_server_config, wait_until


def record(server):
    seen = {"status": [], "health": [], "restart": [], "tools": [], "errors": []}
    server.status_changed.connect(lambda new, old: seen["status"].append(new))
    server.health_changed.connect(lambda new, old: seen["health"].append(new))
    server.restart_attempt.connect(lambda *args: seen["restart"].append(args))
    server.tools_discovered.connect(seen["tools"].append)
    server.error.connect(seen["errors"].append)
    return seen


@pytest_asyncio.fixture
async def fake():
    server = MCPServer(fake_server_config())
    yield server
    await server.close()


def test_restart_delay():
    assert [restart_delay(n) for n in (0, 1, 2, 3, 4, 5, 10)] == \
        [1000, 2000, 4000, 8000, 16000, 30000, 30000]


class TestLifecycle:
    async def test_start_transitions_once(self, fake):
        seen = record(fake)
        await fake.start()
        assert seen["status"] == [ServerStatus.STARTING, ServerStatus.RUNNING]
        assert seen["health"] == [ServerHealth.HEALTHY]
        assert fake.is_running() and fake.is_healthy()
        assert [t["name"] for t in seen["tools"][0]] == ["echo", "add", "fail", "touch_tools"]
        assert fake.stats.tool_count == 4
        assert fake.stats.pid is not None

    async def test_stop(self, fake):
        await fake.start()
        seen = record(fake)
        await fake.stop()
        assert seen["status"] == [ServerStatus.STOPPING, ServerStatus.STOPPED]
        assert fake.health is ServerHealth.UNKNOWN
        assert fake.client is None and fake.stats.pid is None
        await fake.stop()  # already stopped
        assert seen["status"] == [ServerStatus.STOPPING, ServerStatus.STOPPED]

    async def test_echo_process_runs_with_no_tools(self):
        server = MCPServer(build_config({"id": "echo-server", "name": "Echo", "command": "cat",
                                         "shutdownTimeout": 1000}))
        seen = record(server)
        try:
            await server.start()
            assert server.status is ServerStatus.RUNNING
            assert seen["tools"] == [[]]
        finally:
            await server.close()

    async def test_start_twice_is_rejected(self, fake):
        await fake.start()
        with pytest.raises(InvalidStateError, match="Cannot start server 'fake' in running state"):
            await fake.start()

    async def test_disabled_server_cannot_start(self):
        server = MCPServer(fake_server_config(enabled=False))
        with pytest.raises(InvalidStateError):
            await server.start()
        assert server.status is ServerStatus.STOPPED

    async def test_start_failure_is_failed(self):
        server = MCPServer(fake_server_config("fake", "--crash"))
        seen = record(server)
        with pytest.raises(MCPConnectionError):
            await server.start()
        assert server.status is ServerStatus.FAILED
        assert seen["errors"]
        assert server.stats.error_count >= 1
        assert seen["restart"] == []
        # stop() makes a failed server startable again
        await server.stop()
        assert server.status is ServerStatus.STOPPED

    async def test_startup_timeout(self):
        server = MCPServer(fake_server_config("fake", "--hang", startupTimeout=1000))
        with pytest.raises(MCPConnectionError, match="Startup timeout after 1000ms"):
            await server.start()
        assert server.status is ServerStatus.FAILED
        assert server.transport is None

    async def test_manual_restart(self, fake):
        fake._sleep = _no_sleep
        await fake.start()
        generation = fake.generation
        await fake.restart()
        assert fake.is_running()
        assert fake.generation > generation
        assert fake.stats.restart_count == 0

    async def test_update_config_applies_on_next_start(self, fake):
        cfg = fake.update_config({"name": "Renamed"})
        assert cfg.name == "Renamed" and fake.name == "Renamed"


async def _no_sleep(_seconds):
    return None


class TestCrashRecovery:
    async def test_crash_schedules_backoff_restart(self, fake):
        delays = []
        gate = asyncio.Event()

        async def held_sleep(seconds):
            delays.append(seconds)
            await gate.wait()

        fake._sleep = held_sleep
        await fake.start()
        seen = record(fake)
        fake.transport.proc.kill()

        await wait_until(lambda: seen["restart"])
        assert seen["restart"] == [(1, 3, 2000)]
        assert seen["status"][:2] == [ServerStatus.CRASHED, ServerStatus.RESTARTING]
        assert fake.health is ServerHealth.UNHEALTHY
        assert fake.stats.restart_count == 1
        assert delays == [2.0]

        gate.set()
        await wait_until(fake.is_running)
        # a completed start resets the counter
        assert fake.stats.restart_count == 0
        assert fake.is_healthy()

    async def test_stop_cancels_pending_restart(self, fake):
        fake._sleep = lambda seconds: asyncio.Event().wait()
        await fake.start()
        fake.transport.proc.kill()
        await wait_until(lambda: fake.status is ServerStatus.RESTARTING)
        await fake.stop()
        assert fake.status is ServerStatus.STOPPED
        await asyncio.sleep(0.05)
        assert fake.status is ServerStatus.STOPPED

    async def test_disabled_during_backoff_does_not_relaunch(self, fake):
        gate = asyncio.Event()

        async def held_sleep(seconds):
            await gate.wait()

        fake._sleep = held_sleep
        await fake.start()
        fake.transport.proc.kill()
        await wait_until(lambda: fake.status is ServerStatus.RESTARTING)
        fake.update_config({"enabled": False})
        gate.set()
        await wait_until(lambda: fake.status is ServerStatus.STOPPED)
        await asyncio.sleep(0.05)
        assert fake.status is ServerStatus.STOPPED
        assert fake.transport is None

    async def test_restarts_exhausted_marks_failed(self):
        server = MCPServer(fake_server_config(maxRestarts=1))
        server._sleep = _no_sleep
        seen = record(server)
        try:
            await server.start()
            # every following launch dies during the handshake
            server.config = fake_server_config("fake", "--crash", maxRestarts=1)
            server.transport.proc.kill()
            await wait_until(lambda: server.status is ServerStatus.FAILED)
            assert seen["restart"] == [(1, 1, 2000)]
            assert ServerStatus.CRASHED in seen["status"]
        finally:
            await server.close()

    async def test_without_auto_restart_stays_crashed(self):
        server = MCPServer(fake_server_config(autoRestart=False))
        seen = record(server)
        try:
            await server.start()
            server.transport.proc.kill()
            await wait_until(lambda: server.status is ServerStatus.CRASHED)
            await asyncio.sleep(0.1)
            assert server.status is ServerStatus.CRASHED
            assert seen["restart"] == []
            # a crashed server can be started by hand
            await server.start()
            assert server.is_running()
        finally:
            await server.close()


class TestHealth:
    async def test_probe_success(self, fake):
        await fake.start()
        assert await fake.perform_health_check() is True

    async def test_probe_on_stopped_server(self, fake):
        assert await fake.perform_health_check() is False

    async def test_threshold_without_auto_restart(self):
        server = MCPServer(fake_server_config(autoRestart=False))
        try:
            await server.start()
            server._note_probe(False)
            server._note_probe(False)
            assert server.health is ServerHealth.HEALTHY
            assert server.consecutive_failures == 2
            server._note_probe(False)
            assert server.health is ServerHealth.UNHEALTHY
            assert server.status is ServerStatus.RUNNING
            server._note_probe(True)
            assert server.is_healthy()
            assert server.consecutive_failures == 0
        finally:
            await server.close()

    async def test_threshold_with_auto_restart_crashes(self, fake):
        fake._sleep = lambda seconds: asyncio.Event().wait()
        await fake.start()
        seen = record(fake)
        for _ in range(3):
            fake._note_probe(False)
        assert seen["status"][0] is ServerStatus.CRASHED
        await wait_until(lambda: seen["restart"])
        assert seen["restart"] == [(1, 3, 2000)]

    async def test_periodic_probe_failure_crashes_and_restarts(self):
        server = MCPServer(fake_server_config("fake", "--hang-tools",
                                              healthCheck={"timeout": 1000, "failureThreshold": 1}))
        # below the configurable minimum, so set on the built model
        health = server.config.health_check.model_copy(update={"interval": 50})
        server.config = server.config.model_copy(update={"health_check": health})
        server._sleep = lambda seconds: asyncio.Event().wait()
        seen = record(server)
        try:
            await server.start()
            await wait_until(lambda: seen["restart"])
            assert seen["status"][:3] == [ServerStatus.STARTING, ServerStatus.RUNNING,
                                          ServerStatus.CRASHED]
            assert seen["restart"] == [(1, 3, 2000)]
            assert server.status is ServerStatus.RESTARTING
        finally:
            await server.close()

    async def test_client_error_while_running_counts_as_failed_probe(self):
        server = MCPServer(fake_server_config("fake", "--garble-calls", autoRestart=False,
                                              healthCheck={"failureThreshold": 1}))
        seen = record(server)
        try:
            await server.start()
            assert server.consecutive_failures == 0
            await server.call_tool("echo", {"text": "x"})
            await wait_until(lambda: server.health is ServerHealth.UNHEALTHY)
            assert server.consecutive_failures == 1
            assert server.status is ServerStatus.RUNNING
            assert seen["errors"]
        finally:
            await server.close()

    async def test_hanging_probe_fails(self):
        server = MCPServer(fake_server_config("fake", "--hang-tools",
                                              healthCheck={"timeout": 1000}))
        try:
            await server.start()
            assert await server.perform_health_check() is False
        finally:
            await server.close()


class TestTools:
    async def test_call_tool_counts(self, fake):
        await fake.start()
        content = await fake.call_tool("add", {"a": 2, "b": 3})
        assert content == [{"type": "text", "text": "5"}]
        assert fake.stats.tool_call_count == 1
        assert fake.stats.last_tool_call is not None

    async def test_call_tool_error_result(self, fake):
        await fake.start()
        with pytest.raises(ToolExecutionError, match="boom"):
            await fake.call_tool("fail")

    async def test_not_running(self, fake):
        with pytest.raises(ServerNotRunningError):
            await fake.call_tool("echo", {"text": "x"})
        with pytest.raises(ServerNotRunningError):
            await fake.list_tools()

    async def test_list_changed_notification(self, fake):
        await fake.start()
        changed = []
        fake.tools_changed.connect(lambda: changed.append(True))
        await fake.call_tool("touch_tools")
        await wait_until(lambda: changed)


class TestDiagnostics:
    async def test_stderr_buffer(self):
        server = MCPServer(fake_server_config("fake", "--stderr"))
        try:
            await server.start()
            await wait_until(lambda: server.stderr_buffer)
            assert server.stderr_buffer[0]["line"] == "[fake:stderr] fake server starting"
            info = server.info()
            assert info["stderr_output"][0]["line"].endswith("fake server starting")
        finally:
            await server.close()

    async def test_info(self, fake):
        await fake.start()
        info = fake.info()
        assert info["id"] == "fake"
        assert info["status"] == "running"
        assert info["health"] == "healthy"
        assert info["transport"] == "stdio"
        assert info["tool_count"] == 4
        assert info["max_restarts"] == 3
        assert info["pid"] == fake.stats.pid

    def test_custom_paths_prepended(self):
        server = MCPServer(fake_server_config(env={"PATH": "/usr/bin"}), custom_paths=["/opt/tools"])
        assert server._environment()["PATH"].startswith("/opt/tools")
