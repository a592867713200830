"""
Data models for the MCP supervisor
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional
from enum import Enum


class ServerStatus(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"
    FAILED = "failed"
    RESTARTING = "restarting"


class ServerHealth(Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ServerStats:
    """Runtime counters for one server"""
    restart_count: int = 0
    tool_count: int = 0
    tool_call_count: int = 0
    error_count: int = 0
    pid: Optional[int] = None
    start_time: Optional[datetime] = None
    last_restart: Optional[datetime] = None
    last_tool_discovery: Optional[datetime] = None
    last_tool_call: Optional[datetime] = None
    last_error: Optional[datetime] = None
    last_error_message: Optional[str] = None

    @property
    def uptime(self) -> Optional[float]:
        """Seconds since the last successful start"""
        if self.start_time is None:
            return None
        return (datetime.now() - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["uptime"] = round(self.uptime, 1) if self.uptime is not None else None
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


@dataclass
class ToolUsageStats:
    call_count: int = 0
    success_rate: float = 1.0
    last_used: Optional[datetime] = None
    average_execution_time: Optional[float] = None  # milliseconds


@dataclass
class ToolMetadata:
    """A tool schema enriched with discovery metadata.

    ``server_id``/``server_name`` are lookup references only; the tool does not
    hold its server.
    """
    name: str
    description: str
    input_schema: Dict[str, Any]
    server_id: str
    server_name: str
    discovered_at: datetime
    last_updated: datetime
    schema_hash: str
    category: str = "general"
    tags: List[str] = field(default_factory=list)
    stats: ToolUsageStats = field(default_factory=ToolUsageStats)

    def to_schema(self) -> Dict[str, Any]:
        """Plain MCP tool schema, the shape handed to an LLM"""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.to_schema(),
            "serverId": self.server_id,
            "serverName": self.server_name,
            "discoveredAt": self.discovered_at.isoformat(),
            "lastUpdated": self.last_updated.isoformat(),
            "schemaHash": self.schema_hash,
            "category": self.category,
            "tags": list(self.tags),
            "stats": {
                "callCount": self.stats.call_count,
                "successRate": self.stats.success_rate,
                "lastUsed": self.stats.last_used.isoformat() if self.stats.last_used else None,
                "averageExecutionTime": self.stats.average_execution_time,
            },
        }


@dataclass
class ToolCacheEntry:
    tool: ToolMetadata
    expires_at: float  # absolute, time.time() based
    version: int = 1


@dataclass
class ConnectionTestResult:
    """Result of ServerManager.test_server_connection"""
    success: bool
    error: Optional[str] = None
    tool_count: Optional[int] = None
    latency: Optional[float] = None  # milliseconds


@dataclass
class ManagerStats:
    total_servers: int
    running_servers: int
    healthy_servers: int
    total_tools: int
    uptime: float
    last_config_save: Optional[datetime] = None
