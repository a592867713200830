"""
One supervised MCP server: a Transport + MCPClient pair bound to a validated
ServerConfig, with an explicit status/health state machine, a periodic
liveness probe and bounded exponential-backoff restarts.
"""
from __future__ import annotations

import asyncio
import datetime
import logging
import os
from typing import Any, Dict, List, Optional

from .client import DEFAULT_TIMEOUT, MCPClient
from .config import ConfigInput, ServerConfig, merge_config
from .errors import (InvalidStateError, MCPConnectionError, MCPSupervisorError,
                     ServerNotRunningError)
from .models import ServerHealth, ServerStats, ServerStatus
from .signals import Signal, disconnect_all
from .transport import StdioTransport, Transport, WebSocketTransport

logger        = logging.getLogger(__name__)
stderr_logger = logging.getLogger("mcp_supervisor.stderr")

# ---- constants -------------------------------------------------------------
RESTART_BASE_MS  = 1000
RESTART_CAP_MS   = 30000
RESTART_PAUSE    = 1.0      # s – between stop and start in restart()
KILL_GRACE       = 2.0      # s – on top of shutdownTimeout for the disconnect guard
STDERR_LIMIT     = 1000     # lines kept per server
STDERR_TAIL      = 50       # lines shown by info()


def restart_delay(restart_count: int) -> int:
    """Backoff in ms before restart attempt number *restart_count*."""
    return min(RESTART_BASE_MS * 2 ** restart_count, RESTART_CAP_MS)


def _now() -> datetime.datetime:
    return datetime.datetime.now()


# ==================================================================== MCPServer
class MCPServer:
    def __init__(self,
                 config: ServerConfig,
                 custom_paths: Optional[List[str]] = None,
                 request_timeout: float = DEFAULT_TIMEOUT):
        self.config          = config
        self.custom_paths    = list(custom_paths or [])
        self.request_timeout = request_timeout

        self.status  = ServerStatus.STOPPED
        self.health  = ServerHealth.UNKNOWN
        self.stats   = ServerStats()
        self.transport: Optional[Transport] = None
        self.client: Optional[MCPClient] = None
        self.stderr_buffer: List[Dict[str, str]] = []

        self.status_changed   = Signal("status_changed")
        self.health_changed   = Signal("health_changed")
        self.error            = Signal("error")
        self.restart_attempt  = Signal("restart")
        self.tools_discovered = Signal("tools_discovered")
        self.tools_changed    = Signal("tools_changed")
        self.stats_updated    = Signal("stats_updated")

        self._generation = 0
        self._failures   = 0
        self._health_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._sleep = asyncio.sleep

    # ---------------------------------------------------------------- properties
    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def generation(self) -> int:
        """Bumped on every start and stop; lets callers spot stale results."""
        return self._generation

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def is_running(self) -> bool:
        return self.status is ServerStatus.RUNNING

    def is_healthy(self) -> bool:
        return self.status is ServerStatus.RUNNING and self.health is ServerHealth.HEALTHY

    # ---------------------------------------------------------------- state
    def _set_status(self, new: ServerStatus) -> None:
        previous = self.status
        if new is previous:
            return
        self.status = new
        logger.debug("%s: %s -> %s", self.id, previous.value, new.value)
        self.status_changed.emit(new, previous)

    def _set_health(self, new: ServerHealth) -> None:
        previous = self.health
        if new is previous:
            return
        self.health = new
        self.health_changed.emit(new, previous)

    def _record_error(self, exc: BaseException) -> None:
        self.stats.error_count += 1
        self.stats.last_error = _now()
        self.stats.last_error_message = str(exc) or type(exc).__name__
        self.stats_updated.emit(self.stats)

    # ---------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        if not self.config.enabled:
            raise InvalidStateError(self.id, "disabled", action="start")
        if self.status not in (ServerStatus.STOPPED, ServerStatus.CRASHED):
            raise InvalidStateError(self.id, self.status, action="start")
        self._cancel_restart()
        await self._launch(automatic=False)

    async def stop(self) -> None:
        if self.status in (ServerStatus.STOPPED, ServerStatus.STOPPING):
            return
        self._generation += 1
        self._cancel_restart()
        if self.status is ServerStatus.FAILED:
            # nothing is running; leaving failed makes the server startable again
            await self._teardown()
            self._set_status(ServerStatus.STOPPED)
            self._set_health(ServerHealth.UNKNOWN)
            return

        self._set_status(ServerStatus.STOPPING)
        await self._teardown()
        self._set_status(ServerStatus.STOPPED)
        self._set_health(ServerHealth.UNKNOWN)
        logger.info("%s ↓", self.id)

    async def restart(self) -> None:
        """Stop, pause, start again. Manual: restartCount is not consumed."""
        await self.stop()
        await self._sleep(RESTART_PAUSE)
        await self.start()

    def update_config(self, patch: ConfigInput) -> ServerConfig:
        """Merge *patch* into the config (re-validated). Takes effect on next start."""
        self.config = merge_config(self.config, patch)
        return self.config

    async def close(self) -> None:
        """Stop and drop every listener; the instance is not reused afterwards."""
        await self.stop()
        disconnect_all(self.status_changed, self.health_changed, self.error, self.restart_attempt,
                       self.tools_discovered, self.tools_changed, self.stats_updated)

    # ---------------------------------------------------------------- start sequence
    async def _launch(self, automatic: bool) -> None:
        self._generation += 1
        generation = self._generation
        self._failures = 0
        self._set_status(ServerStatus.STARTING)
        logger.info("%s: starting (%s)", self.id, self.config.transport_type)

        try:
            self._build_channel()
            timeout = self.config.startup_timeout / 1000
            try:
                await asyncio.wait_for(self.client.connect(), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise MCPConnectionError(f"Startup timeout after {self.config.startup_timeout}ms") from e
            self._check_current(generation)

            self.stats.start_time = _now()
            self.stats.pid = self.transport.pid
            self._start_health_loop()

            tools = await self.client.list_tools(timeout=timeout)
            self._check_current(generation)
            if not self.transport.is_connected:
                raise MCPConnectionError("Connection lost during start-up")
        except asyncio.CancelledError:
            if generation == self._generation:
                await self._teardown()
                self._set_status(ServerStatus.STOPPED)
            raise
        except Exception as e:
            if generation != self._generation:
                # stopped underneath us; stop() owns the status now
                raise
            await self._teardown()
            self._record_error(e)
            logger.error("%s failed to start: %s", self.id, e)
            self.error.emit(e)
            if automatic and self.config.auto_restart:
                self._set_status(ServerStatus.CRASHED)
                self._schedule_recovery()
            else:
                self._set_status(ServerStatus.FAILED)
            if isinstance(e, MCPSupervisorError):
                raise
            raise MCPConnectionError(f"Failed to start server '{self.id}': {e}") from e

        self.stats.restart_count = 0
        self.stats.tool_count = len(tools)
        self.stats.last_tool_discovery = _now()
        self._set_status(ServerStatus.RUNNING)
        self._set_health(ServerHealth.HEALTHY)
        logger.info("%s ↑ (%s)", self.id, self.config.transport_type)
        self.stats_updated.emit(self.stats)
        self.tools_discovered.emit(tools)

    def _check_current(self, generation: int) -> None:
        if generation != self._generation:
            raise MCPConnectionError(f"Start of server '{self.id}' was aborted")

    def _build_channel(self) -> None:
        cfg = self.config
        startup  = cfg.startup_timeout / 1000
        shutdown = cfg.shutdown_timeout / 1000
        if cfg.transport_type == "sse":
            transport: Transport = WebSocketTransport(cfg.transport.url,
                                                      startup_timeout=startup,
                                                      shutdown_timeout=shutdown,
                                                      label=cfg.id)
        else:
            transport = StdioTransport(cfg.command, cfg.args, self._environment(), cfg.cwd,
                                       startup_timeout=startup,
                                       shutdown_timeout=shutdown,
                                       label=cfg.id)
        client = MCPClient(transport, request_timeout=self.request_timeout, label=cfg.id)
        client.stderr.connect(self._on_stderr)
        client.error.connect(lambda exc, c=client: self._on_client_error(c, exc))
        client.disconnected.connect(lambda info, c=client: self._on_disconnected(c, info))
        client.tools_changed.connect(lambda c=client: self._on_tools_changed(c))
        self.transport, self.client = transport, client

    def _environment(self) -> Dict[str, str]:
        env = dict(self.config.env)
        if self.custom_paths:
            base = env.get("PATH") or os.environ.get("PATH", "")
            env["PATH"] = os.pathsep.join([*self.custom_paths, base]) if base else os.pathsep.join(self.custom_paths)
        return env

    async def _teardown(self) -> None:
        self._cancel_health()
        client, self.client = self.client, None
        self.transport = None
        self.stats.pid = None
        if client is None:
            return
        guard = self.config.shutdown_timeout / 1000 + KILL_GRACE
        try:
            await asyncio.wait_for(client.disconnect(), timeout=guard)
        except asyncio.TimeoutError:
            logger.warning("%s: disconnect did not finish within %.1fs", self.id, guard)
        except MCPSupervisorError as e:
            logger.warning("%s: error during disconnect: %s", self.id, e)
        finally:
            client.close()

    # ---------------------------------------------------------------- failures
    def _on_disconnected(self, client: MCPClient, info: Dict[str, Any]) -> None:
        if client is not self.client or self.status is not ServerStatus.RUNNING:
            return
        code = info.get("code") if isinstance(info, dict) else None
        self._fail_running(MCPConnectionError(f"Connection lost (exit code {code})"))

    def _on_client_error(self, client: MCPClient, exc: BaseException) -> None:
        if client is not self.client:
            return
        self._record_error(exc)
        self.error.emit(exc)
        if self.status is ServerStatus.RUNNING:
            logger.warning("%s: %s", self.id, exc)
            self._note_probe(False)

    def _on_tools_changed(self, client: MCPClient) -> None:
        if client is self.client and self.status is ServerStatus.RUNNING:
            self.tools_changed.emit()

    def _fail_running(self, exc: BaseException) -> None:
        """The running channel is gone (or judged dead): crash and maybe recover."""
        self._generation += 1
        self._record_error(exc)
        logger.error("%s crashed: %s", self.id, exc)
        self.error.emit(exc)
        self._set_status(ServerStatus.CRASHED)
        self._set_health(ServerHealth.UNHEALTHY)
        self._schedule_recovery()

    def _schedule_recovery(self) -> None:
        self._cancel_restart()
        self._restart_task = asyncio.ensure_future(self._recover())

    async def _recover(self) -> None:
        await asyncio.shield(self._teardown())
        if not self.config.auto_restart:
            logger.info("%s: auto-restart disabled, leaving crashed", self.id)
            return
        if self.stats.restart_count >= self.config.max_restarts:
            logger.error("%s exceeded max restarts (%d), marking as failed",
                         self.id, self.config.max_restarts)
            self._set_status(ServerStatus.FAILED)
            return

        self.stats.restart_count += 1
        self.stats.last_restart = _now()
        delay = restart_delay(self.stats.restart_count)
        self._set_status(ServerStatus.RESTARTING)
        logger.warning("%s: restart %d/%d in %dms", self.id,
                       self.stats.restart_count, self.config.max_restarts, delay)
        self.restart_attempt.emit(self.stats.restart_count, self.config.max_restarts, delay)
        self.stats_updated.emit(self.stats)

        await self._sleep(delay / 1000)
        if self.status is not ServerStatus.RESTARTING:
            return
        if not self.config.enabled:
            logger.info("%s: disabled while waiting to restart", self.id)
            self._set_status(ServerStatus.STOPPED)
            self._set_health(ServerHealth.UNKNOWN)
            return
        try:
            await self._launch(automatic=True)
        except MCPSupervisorError:
            pass  # already recorded; _launch decided what happens next

    def _cancel_restart(self) -> None:
        task, self._restart_task = self._restart_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ---------------------------------------------------------------- health
    def _start_health_loop(self) -> None:
        self._cancel_health()
        self._health_task = asyncio.ensure_future(self._health_loop())

    def _cancel_health(self) -> None:
        task, self._health_task = self._health_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _health_loop(self) -> None:
        interval = self.config.health_check.interval / 1000
        while True:
            await asyncio.sleep(interval)
            if self.status is not ServerStatus.RUNNING:
                continue
            ok = await self.perform_health_check()
            if self.status is ServerStatus.RUNNING:
                self._note_probe(ok)

    async def perform_health_check(self) -> bool:
        """One liveness probe (``tools/list``); True when the server answered."""
        if self.client is None or self.status is not ServerStatus.RUNNING:
            return False
        try:
            await self.client.list_tools(timeout=self.config.health_check.timeout / 1000)
            return True
        except (MCPSupervisorError, asyncio.TimeoutError) as e:
            logger.warning("%s: health check failed: %s", self.id, e)
            return False

    def _note_probe(self, ok: bool) -> None:
        if ok:
            self._failures = 0
            self._set_health(ServerHealth.HEALTHY)
            return
        self._failures += 1
        threshold = self.config.health_check.failure_threshold
        if self._failures < threshold:
            return
        logger.warning("%s failed health check %d times consecutively", self.id, self._failures)
        self._set_health(ServerHealth.UNHEALTHY)
        if self.config.auto_restart:
            self._fail_running(MCPConnectionError(
                f"Health check failed {self._failures} times consecutively"))

    # ---------------------------------------------------------------- tools
    async def list_tools(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        if self.client is None or self.status is not ServerStatus.RUNNING:
            raise ServerNotRunningError(self.id, self.status)
        return await self.client.list_tools(timeout=timeout)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None,
                        timeout: Optional[float] = None) -> Any:
        if self.client is None or self.status is not ServerStatus.RUNNING:
            raise ServerNotRunningError(self.id, self.status)
        self.stats.tool_call_count += 1
        self.stats.last_tool_call = _now()
        self.stats_updated.emit(self.stats)
        return await self.client.call_tool(name, arguments, timeout=timeout)

    # ---------------------------------------------------------------- diagnostics
    def _on_stderr(self, text: str) -> None:
        line = f"[{self.id}:stderr] {text}"
        stderr_logger.debug(line)
        self.stderr_buffer.append({"timestamp": _now().isoformat(), "line": line})
        if len(self.stderr_buffer) > STDERR_LIMIT:
            del self.stderr_buffer[:len(self.stderr_buffer) - STDERR_LIMIT]

    def info(self) -> Dict[str, Any]:
        return {
            "id":            self.id,
            "name":          self.name,
            "status":        self.status.value,
            "health":        self.health.value,
            "transport":     self.config.transport_type,
            "enabled":       self.config.enabled,
            "pid":           self.stats.pid,
            "uptime":        round(self.stats.uptime, 1) if self.stats.uptime is not None else None,
            "restart_count": self.stats.restart_count,
            "max_restarts":  self.config.max_restarts,
            "tool_count":    self.stats.tool_count,
            "last_error":    self.stats.last_error_message,
            "stats":         self.stats.to_dict(),
            "stderr_output": self.stderr_buffer[-STDERR_TAIL:],
        }

    def __repr__(self) -> str:
        return f"<MCPServer {self.id} {self.status.value}/{self.health.value}>"
