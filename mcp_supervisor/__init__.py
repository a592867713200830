"""
Client-side supervisor for Model Context Protocol (MCP) tool servers.

    manager = ServerManager(storage=JsonFileStorage("mcp_servers.json"))
    await manager.load_configuration()
    tools = manager.get_all_discovered_tools()
    result = await manager.execute_tool_call("filesystem", "read_file", {"path": "README.md"})
    await manager.shutdown()
"""
from .client import MCPClient
from .config import (SERVER_TEMPLATES, ServerConfig, SupervisorSettings, build_config,
                     load_settings, merge_config, validate_config)
from .discovery import ToolDiscovery
from .errors import (ConfigValidationError, DuplicateServerError, InvalidStateError,
                     JSONRPCError, MCPConnectionError, MCPSupervisorError, ProtocolError,
                     RequestTimeoutError, ServerNotFoundError, ServerNotRunningError,
                     StorageNotConfiguredError, ToolArgumentError, ToolExecutionError)
from .manager import ServerManager
from .models import (ConnectionTestResult, ServerHealth, ServerStats, ServerStatus,
                     ToolMetadata)
from .server import MCPServer
from .signals import Signal
from .storage import ConfigStorage, JsonFileStorage, MemoryStorage
from .transport import StdioTransport, Transport, WebSocketTransport

__version__ = "0.1.0"

__all__ = [
    "MCPClient", "MCPServer", "ServerManager", "ToolDiscovery", "Signal",
    "Transport", "StdioTransport", "WebSocketTransport",
    "ServerConfig", "SupervisorSettings", "SERVER_TEMPLATES",
    "build_config", "merge_config", "validate_config", "load_settings",
    "ConfigStorage", "JsonFileStorage", "MemoryStorage",
    "ServerStatus", "ServerHealth", "ServerStats", "ToolMetadata", "ConnectionTestResult",
    "MCPSupervisorError", "ConfigValidationError", "MCPConnectionError", "ProtocolError",
    "RequestTimeoutError", "JSONRPCError", "ToolExecutionError", "ToolArgumentError",
    "ServerNotFoundError", "ServerNotRunningError", "DuplicateServerError",
    "InvalidStateError", "StorageNotConfiguredError",
]
