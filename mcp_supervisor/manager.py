"""
Registry of named MCP servers: lifecycle, configuration persistence,
cross-server tool aggregation and tool-call routing.
"""
from __future__ import annotations

import asyncio
import datetime
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .client import DEFAULT_TIMEOUT
from .config import (ConfigInput, ServerConfig, SupervisorSettings, build_config,
                     merge_config, normalize_config)
from .discovery import ToolDiscovery
from .errors import (ConfigValidationError, DuplicateServerError, MCPSupervisorError,
                     ServerNotFoundError, ServerNotRunningError, StorageNotConfiguredError,
                     ToolArgumentError, ToolExecutionError)
from .models import (ConnectionTestResult, ManagerStats, ServerHealth, ServerStats,
                     ServerStatus, ToolMetadata)
from .schema import normalize_arguments, sanitize_tool_schema, validate_arguments
from .server import MCPServer
from .signals import Signal, disconnect_all
from .storage import ConfigStorage

logger = logging.getLogger(__name__)

_OFFLINE = (ServerStatus.STOPPED, ServerStatus.CRASHED, ServerStatus.FAILED, ServerStatus.RESTARTING)


class ServerManager:
    def __init__(self,
                 storage: Optional[ConfigStorage] = None,
                 settings: Optional[SupervisorSettings] = None,
                 discovery: Optional[ToolDiscovery] = None):
        self.settings  = settings or SupervisorSettings()
        self.storage   = storage
        self.discovery = discovery or ToolDiscovery(
            cache_ttl=self.settings.cache_ttl,
            discovery_timeout=self.settings.discovery_timeout,
            discovery_interval=self.settings.discovery_interval,
            max_tools_per_server=self.settings.max_tools_per_server,
            validate_schemas=self.settings.validate_schemas,
            auto_discovery=self.settings.auto_discovery,
        )
        self.servers: Dict[str, MCPServer] = {}
        self.custom_paths: List[str] = []
        self.started_at = time.time()
        self.last_config_save: Optional[datetime.datetime] = None

        self.auto_save_enabled = True
        self.auto_save_delay   = self.settings.auto_save_delay   # ms
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._loading = False
        self._tasks: set = set()

        self.server_added          = Signal("server_added")
        self.server_removed        = Signal("server_removed")
        self.server_status_changed = Signal("server_status_changed")
        self.server_health_changed = Signal("server_health_changed")
        self.server_error          = Signal("server_error")
        self.server_restart        = Signal("server_restart")
        self.tools_discovered      = Signal("tools_discovered")
        self.configuration_saved   = Signal("configuration_saved")
        self.configuration_loaded  = Signal("configuration_loaded")
        self.error                 = Signal("error")

    @property
    def request_timeout(self) -> float:
        return self.settings.request_timeout / 1000 if self.settings.request_timeout else DEFAULT_TIMEOUT

    # ---------------------------------------------------------------- registry
    def _require(self, server_id: str) -> MCPServer:
        server = self.servers.get(server_id)
        if server is None:
            raise ServerNotFoundError(server_id)
        return server

    def _prepare(self, server_id: str, config: ConfigInput) -> ServerConfig:
        try:
            data = normalize_config(config)
        except (TypeError, ValueError) as e:
            raise ConfigValidationError([f"Configuration must be a mapping: {e}"]) from e
        data["id"] = server_id
        if not data.get("name"):
            data["name"] = server_id
        return build_config(data)

    async def add_server(self, server_id: str, config: ConfigInput) -> ServerConfig:
        """Validate and register a server; auto-start it when enabled and autoRestart.

        Nothing is registered when the id is taken or the config is invalid.
        """
        if server_id in self.servers:
            raise DuplicateServerError(server_id)
        cfg = self._prepare(server_id, config)

        server = MCPServer(cfg, self.custom_paths, request_timeout=self.request_timeout)
        self._wire(server)
        self.servers[server_id] = server
        logger.info("%s: registered (%s)", server_id, cfg.transport_type)

        if cfg.enabled and cfg.auto_restart:
            try:
                await server.start()
            except MCPSupervisorError as e:
                logger.warning("%s: auto-start failed: %s", server_id, e)

        self.server_added.emit(server_id, cfg)
        self._schedule_save()
        return cfg

    async def remove_server(self, server_id: str) -> None:
        server = self._require(server_id)
        try:
            await server.stop()
        except MCPSupervisorError as e:
            logger.warning("%s: error stopping server during removal: %s", server_id, e)
        self.discovery.stop_auto_discovery(server_id)
        self.discovery.clear_server_cache(server_id)
        await server.close()
        del self.servers[server_id]
        logger.info("%s: removed", server_id)
        self.server_removed.emit(server_id)
        self._schedule_save()

    async def update_server_config(self, server_id: str, patch: ConfigInput) -> ServerConfig:
        """Merge *patch*; a running server is stopped and, if still enabled, restarted.

        Disabling a server that is crashed or waiting to restart cancels the recovery.
        """
        server = self._require(server_id)
        new_cfg = merge_config(server.config, patch)
        was_running = server.is_running()
        recovering = server.status in (ServerStatus.CRASHED, ServerStatus.RESTARTING)
        if was_running or (recovering and not new_cfg.enabled):
            await server.stop()
        server.config = new_cfg
        if was_running and new_cfg.enabled:
            await server.start()
        self._schedule_save()
        return new_cfg

    def set_custom_paths(self, paths: List[str]) -> None:
        """Directories prepended to PATH for stdio servers (effective on next start)."""
        self.custom_paths = list(paths)
        for server in self.servers.values():
            server.custom_paths = list(paths)

    # ---------------------------------------------------------------- lifecycle
    async def start_server(self, server_id: str) -> None:
        server = self._require(server_id)
        if server.is_running():
            logger.debug("%s: already running", server_id)
            return
        await server.start()

    async def stop_server(self, server_id: str) -> None:
        await self._require(server_id).stop()

    async def restart_server(self, server_id: str) -> None:
        await self._require(server_id).restart()

    async def settle_all(self, action: str, ids: List[str],
                         op: Callable[[str], Awaitable[Any]]) -> Dict[str, Optional[BaseException]]:
        """Run *op* for every id concurrently; one failure never aborts the rest."""
        results = await asyncio.gather(*(op(i) for i in ids), return_exceptions=True)
        outcome: Dict[str, Optional[BaseException]] = {}
        for server_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.warning("%s: %s failed: %s", server_id, action, result)
                self.server_error.emit(server_id, result)
                outcome[server_id] = result
            else:
                outcome[server_id] = None
        return outcome

    async def start_all_servers(self) -> Dict[str, Optional[BaseException]]:
        ids = [i for i, s in self.servers.items() if s.config.enabled]
        return await self.settle_all("start", ids, self.start_server)

    async def stop_all_servers(self) -> Dict[str, Optional[BaseException]]:
        return await self.settle_all("stop", list(self.servers), self.stop_server)

    async def shutdown(self) -> None:
        """Release everything. Call once when the host application exits."""
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
            await self._autosave()
        self.discovery.stop_all_auto_discovery()
        await self.stop_all_servers()
        for server in self.servers.values():
            await server.close()
        self.servers.clear()
        self.discovery.clear_all_cache()
        for task in list(self._tasks):
            task.cancel()
        disconnect_all(self.server_added, self.server_removed, self.server_status_changed,
                       self.server_health_changed, self.server_error, self.server_restart,
                       self.tools_discovered, self.configuration_saved, self.configuration_loaded,
                       self.error)
        logger.info("Server manager shut down")

    # ---------------------------------------------------------------- server events
    def _wire(self, server: MCPServer) -> None:
        sid = server.id
        server.status_changed.connect(lambda new, prev: self._on_status(server, new, prev))
        server.health_changed.connect(lambda new, prev: self.server_health_changed.emit(sid, new, prev))
        server.error.connect(lambda exc: self.server_error.emit(sid, exc))
        server.restart_attempt.connect(
            lambda attempt, limit, delay: self.server_restart.emit(sid, attempt, limit, delay))
        server.tools_discovered.connect(lambda raw: self._on_tools(server, raw))
        server.tools_changed.connect(lambda: self._spawn(self._refresh_quietly(server)))

    def _on_status(self, server: MCPServer, new: ServerStatus, prev: ServerStatus) -> None:
        if new in _OFFLINE:
            self.discovery.stop_auto_discovery(server.id)
            self.discovery.clear_server_cache(server.id)
        self.server_status_changed.emit(server.id, new, prev)

    def _on_tools(self, server: MCPServer, raw_tools: List[Dict[str, Any]]) -> None:
        tools = self.discovery.ingest(server.id, server.name, raw_tools, server.config.tags)
        self.tools_discovered.emit(server.id, len(tools))
        self.discovery.start_auto_discovery(server)

    async def _refresh_quietly(self, server: MCPServer) -> None:
        try:
            tools = await self.discovery.refresh_tools(server)
        except MCPSupervisorError as e:
            logger.warning("%s: refresh after list_changed failed: %s", server.id, e)
            return
        self.tools_discovered.emit(server.id, len(tools))

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ---------------------------------------------------------------- tools
    async def refresh_server_tools(self, server_id: str) -> List[ToolMetadata]:
        server = self._require(server_id)
        if not server.is_running():
            raise ServerNotRunningError(server_id, server.status)
        tools = await self.discovery.refresh_tools(server)
        server.stats.tool_count = len(tools)
        server.stats.last_tool_discovery = datetime.datetime.now()
        self.tools_discovered.emit(server_id, len(tools))
        return tools

    async def refresh_all_tools(self) -> Dict[str, List[ToolMetadata]]:
        """Rediscover every registered server; failed or stopped servers map to []."""
        ids = list(self.servers)
        results = await asyncio.gather(*(self.refresh_server_tools(i) for i in ids),
                                       return_exceptions=True)
        out: Dict[str, List[ToolMetadata]] = {}
        for server_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                if not isinstance(result, ServerNotRunningError):
                    logger.warning("%s: tool refresh failed: %s", server_id, result)
                    self.server_error.emit(server_id, result)
                out[server_id] = []
            else:
                out[server_id] = result
        return out

    def get_tools_from_server(self, server_id: str) -> List[ToolMetadata]:
        self._require(server_id)
        return self.discovery.get_tools_from_server(server_id)

    def get_all_discovered_tools(self, sanitize: bool = False) -> List[Dict[str, Any]]:
        """Tool schemas of every running server, ready to hand to an LLM."""
        out = []
        for server_id, server in self.servers.items():
            if not server.is_running():
                continue
            for tool in self.discovery.get_tools_from_server(server_id):
                schema = tool.to_schema()
                if sanitize:
                    schema = sanitize_tool_schema(schema)
                schema["serverId"] = tool.server_id
                schema["serverName"] = tool.server_name
                out.append(schema)
        return out

    async def execute_tool_call(self, server_id: str, tool_name: str, params: Any = None) -> Any:
        server = self._require(server_id)
        if not server.is_running():
            raise ServerNotRunningError(server_id, server.status)

        try:
            arguments = normalize_arguments(params)
        except TypeError as e:
            raise ToolArgumentError(server_id, tool_name, str(e)) from e
        tool = self.discovery.get_tool(server_id, tool_name)
        if tool is not None:
            problems = validate_arguments(arguments, tool.input_schema)
            if problems:
                raise ToolArgumentError(server_id, tool_name, "; ".join(problems))

        started = time.monotonic()
        try:
            result = await server.call_tool(tool_name, arguments)
        except ToolExecutionError:
            self._record_call(server_id, tool_name, False, started)
            raise
        except MCPSupervisorError as e:
            self._record_call(server_id, tool_name, False, started)
            raise ToolExecutionError(server_id, tool_name, str(e)) from e
        self._record_call(server_id, tool_name, True, started)
        return result

    def _record_call(self, server_id: str, tool_name: str, success: bool, started: float) -> None:
        elapsed_ms = (time.monotonic() - started) * 1000
        self.discovery.update_tool_stats(server_id, tool_name, success, elapsed_ms)
        if not success:
            logger.warning("%s: tool '%s' failed after %.0fms", server_id, tool_name, elapsed_ms)

    async def test_server_connection(self, config: ConfigInput) -> ConnectionTestResult:
        """Start a throwaway server outside the registry and count its tools."""
        started = time.monotonic()
        data = normalize_config(config)
        if data.get("id") and not data.get("name"):
            data["name"] = data["id"]
        try:
            cfg = build_config(data)
        except ConfigValidationError as e:
            return ConnectionTestResult(False, error=f"Configuration errors: {', '.join(e.errors)}")

        server = MCPServer(cfg, self.custom_paths, request_timeout=self.request_timeout)
        try:
            await server.start()
            tools = await server.list_tools()
            return ConnectionTestResult(True, tool_count=len(tools),
                                        latency=(time.monotonic() - started) * 1000)
        except Exception as e:
            return ConnectionTestResult(False, error=str(e) or type(e).__name__,
                                        latency=(time.monotonic() - started) * 1000)
        finally:
            try:
                await server.close()
            except Exception as e:
                logger.warning("%s: error cleaning up test server: %s", cfg.id, e)

    # ---------------------------------------------------------------- queries
    def get_server(self, server_id: str) -> Optional[MCPServer]:
        return self.servers.get(server_id)

    def has_server(self, server_id: str) -> bool:
        return server_id in self.servers

    def get_server_ids(self) -> List[str]:
        return list(self.servers)

    def get_server_count(self) -> int:
        return len(self.servers)

    def get_server_config(self, server_id: str) -> ServerConfig:
        return self._require(server_id).config

    def get_all_server_configs(self) -> List[ServerConfig]:
        return [s.config for s in self.servers.values()]

    def get_server_status(self, server_id: str) -> ServerStatus:
        return self._require(server_id).status

    def get_server_health(self, server_id: str) -> ServerHealth:
        return self._require(server_id).health

    def get_server_stats(self, server_id: str) -> ServerStats:
        return self._require(server_id).stats

    def get_server_statuses(self) -> Dict[str, ServerStatus]:
        return {i: s.status for i, s in self.servers.items()}

    def get_manager_stats(self) -> ManagerStats:
        servers = list(self.servers.values())
        return ManagerStats(
            total_servers=len(servers),
            running_servers=sum(1 for s in servers if s.is_running()),
            healthy_servers=sum(1 for s in servers if s.is_healthy()),
            total_tools=len(self.get_all_discovered_tools()),
            uptime=time.time() - self.started_at,
            last_config_save=self.last_config_save,
        )

    async def perform_health_check(self) -> Dict[str, bool]:
        ids = list(self.servers)
        results = await asyncio.gather(*(self.servers[i].perform_health_check() for i in ids),
                                       return_exceptions=True)
        out = {}
        for server_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                self.server_error.emit(server_id, result)
                out[server_id] = False
            else:
                out[server_id] = bool(result)
        return out

    # ---------------------------------------------------------------- persistence
    def set_storage(self, storage: Optional[ConfigStorage]) -> None:
        self.storage = storage

    def set_auto_save(self, enabled: bool, delay_ms: Optional[int] = None) -> None:
        self.auto_save_enabled = enabled
        if delay_ms is not None:
            self.auto_save_delay = delay_ms
        if not enabled and self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None

    def _schedule_save(self) -> None:
        if not self.auto_save_enabled or self.storage is None or self._loading:
            return
        if self._save_handle is not None:
            self._save_handle.cancel()
        loop = asyncio.get_running_loop()
        self._save_handle = loop.call_later(self.auto_save_delay / 1000, self._fire_save)

    def _fire_save(self) -> None:
        self._save_handle = None
        self._spawn(self._autosave())

    async def _autosave(self) -> None:
        try:
            await self.save_configuration()
        except Exception as e:
            logger.warning("Auto-save failed: %s", e)
            self.error.emit(e)

    async def save_configuration(self) -> None:
        if self.storage is None:
            raise StorageNotConfiguredError()
        await self.storage.save([s.config.to_dict() for s in self.servers.values()])
        self.last_config_save = datetime.datetime.now()
        logger.debug("Saved %d server configurations", len(self.servers))
        self.configuration_saved.emit()

    async def load_configuration(self) -> int:
        """Register every stored config independently; returns how many were added."""
        if self.storage is None:
            raise StorageNotConfiguredError()
        try:
            configs = await self.storage.load()
        except Exception as e:
            logger.error("Failed to load server configurations: %s", e)
            self.error.emit(e)
            self.configuration_loaded.emit(0)
            return 0

        loaded = 0
        self._loading = True
        try:
            for cfg in configs:
                server_id = cfg.get("id") if isinstance(cfg, dict) else None
                if not server_id:
                    logger.warning("Skipping stored configuration without id: %r", cfg)
                    continue
                try:
                    await self.add_server(server_id, cfg)
                    loaded += 1
                except MCPSupervisorError as e:
                    logger.warning("%s: failed to load configuration: %s", server_id, e)
                    self.error.emit(e)
        finally:
            self._loading = False
        logger.info("Loaded %d/%d server configurations", loaded, len(configs))
        self.configuration_loaded.emit(loaded)
        return loaded
