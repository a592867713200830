"""
Exception taxonomy for the MCP supervisor.
"""
from __future__ import annotations

from typing import Any, List, Optional


class MCPSupervisorError(Exception):
    """Base class for every error raised by this package"""


class ConfigValidationError(MCPSupervisorError):
    """A server configuration was rejected before anything was spawned"""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"Invalid MCP server configuration: {', '.join(self.errors)}")


class MCPConnectionError(MCPSupervisorError):
    """Transport-level failure (spawn, connect, write, closed channel)"""


class ProtocolError(MCPSupervisorError):
    """Malformed or unmatched JSON-RPC envelope"""


class RequestTimeoutError(MCPSupervisorError):
    def __init__(self, method: str, timeout: float):
        self.method  = method
        self.timeout = timeout
        super().__init__(f"Request timeout: {method} (after {timeout:g}s)")


class JSONRPCError(MCPSupervisorError):
    """Error object returned by the remote side of a request"""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code    = code
        self.message = message
        self.data    = data
        super().__init__(message)


class ToolExecutionError(MCPSupervisorError):
    def __init__(self, server_id: str, tool_name: str, message: str):
        self.server_id = server_id
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' on server '{server_id}' failed: {message}")


class ToolArgumentError(ToolExecutionError):
    """Arguments did not match the tool's declared input schema"""


class ServerNotFoundError(MCPSupervisorError):
    def __init__(self, server_id: str):
        self.server_id = server_id
        super().__init__(f"Server with ID '{server_id}' not found")


class ServerNotRunningError(MCPSupervisorError):
    def __init__(self, server_id: str, status: Any):
        self.server_id = server_id
        self.status    = status
        super().__init__(f"Server '{server_id}' is not running (status: {_value(status)})")


class DuplicateServerError(MCPSupervisorError):
    def __init__(self, server_id: str):
        self.server_id = server_id
        super().__init__(f"Server with ID '{server_id}' already exists")


class InvalidStateError(MCPSupervisorError):
    def __init__(self, server_id: str, status: Any, action: str = "start"):
        self.server_id = server_id
        self.status    = status
        super().__init__(f"Cannot {action} server '{server_id}' in {_value(status)} state")


class StorageNotConfiguredError(MCPSupervisorError):
    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "No storage backend configured")


def _value(status: Any) -> str:
    return getattr(status, "value", str(status))
