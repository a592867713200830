"""
Server configuration: pydantic models, defaults, validation and engine settings.

Persisted/wire form uses camelCase keys (``maxRestarts``, ``healthCheck.failureThreshold``);
Python code uses the snake_case attributes. Both spellings are accepted on input.
"""
from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union
from urllib.parse import urlparse

import toml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .errors import ConfigValidationError

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------- defaults
DEFAULT_HEALTH_CHECK: Dict[str, int] = {
    "interval":         30000,   # ms
    "timeout":          5000,    # ms
    "failureThreshold": 3,
}

DEFAULT_SERVER_CONFIG: Dict[str, Any] = {
    "autoRestart":     True,
    "maxRestarts":     3,
    "startupTimeout":  10000,    # ms
    "shutdownTimeout": 5000,     # ms
    "enabled":         True,
    "transport":       {"type": "stdio"},
    "env":             {},
    "args":            [],
    "tags":            [],
    "healthCheck":     DEFAULT_HEALTH_CHECK,
}

ID_PATTERN   = re.compile(r"^[a-zA-Z0-9_-]+$")
URL_SCHEMES  = ("http", "https", "ws", "wss")
TRANSPORTS   = ("stdio", "sse")

# snake_case spellings accepted on input
_SNAKE_KEYS = {
    "auto_restart":      "autoRestart",
    "max_restarts":      "maxRestarts",
    "startup_timeout":   "startupTimeout",
    "shutdown_timeout":  "shutdownTimeout",
    "health_check":      "healthCheck",
    "failure_threshold": "failureThreshold",
}


# ==================================================================== models
class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class HealthCheckConfig(_CamelModel):
    interval: int = DEFAULT_HEALTH_CHECK["interval"]
    timeout: int = DEFAULT_HEALTH_CHECK["timeout"]
    failure_threshold: int = DEFAULT_HEALTH_CHECK["failureThreshold"]


class TransportConfig(_CamelModel):
    type: Literal["stdio", "sse"] = "stdio"
    url: Optional[str] = None


class ServerConfig(_CamelModel):
    """Validated, immutable configuration of one MCP server.

    Build instances with :func:`build_config`; constructing the model directly
    skips the cross-field rules in :func:`validate_config`.
    """
    id: str
    name: str
    description: Optional[str] = None
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    auto_restart: bool = DEFAULT_SERVER_CONFIG["autoRestart"]
    max_restarts: int = DEFAULT_SERVER_CONFIG["maxRestarts"]
    startup_timeout: int = DEFAULT_SERVER_CONFIG["startupTimeout"]
    shutdown_timeout: int = DEFAULT_SERVER_CONFIG["shutdownTimeout"]
    enabled: bool = DEFAULT_SERVER_CONFIG["enabled"]
    transport: TransportConfig = Field(default_factory=TransportConfig)
    tags: List[str] = Field(default_factory=list)
    version: Optional[str] = None
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)

    @property
    def transport_type(self) -> str:
        return self.transport.type

    def to_dict(self) -> Dict[str, Any]:
        """camelCase dict, the persisted form"""
        return self.model_dump(by_alias=True, exclude_none=True)


ConfigInput = Union[ServerConfig, Mapping[str, Any]]


# ==================================================================== helpers
def normalize_config(data: ConfigInput) -> Dict[str, Any]:
    """Return a camelCase deep copy of *data*."""
    if isinstance(data, ServerConfig):
        return data.to_dict()
    out: Dict[str, Any] = {}
    for key, value in dict(data).items():
        key = _SNAKE_KEYS.get(key, key)
        if key == "healthCheck" and isinstance(value, Mapping):
            value = {_SNAKE_KEYS.get(k, k): v for k, v in value.items()}
        out[key] = copy.deepcopy(value)
    # flat {"url": ...} / {"type": "sse"} layout of mcp_servers.json
    if "transport" not in out and ("url" in out or out.get("type") in TRANSPORTS):
        t_type = out.pop("type", None) or ("sse" if "url" in out else "stdio")
        out["transport"] = {"type": t_type}
        if "url" in out:
            out["transport"]["url"] = out.pop("url")
    elif isinstance(out.get("transport"), str):
        out["transport"] = {"type": out["transport"]}
    return out


def with_defaults(data: ConfigInput) -> Dict[str, Any]:
    """Overlay *data* on DEFAULT_SERVER_CONFIG (nested tables merged, not replaced)."""
    partial = normalize_config(data)
    merged = copy.deepcopy(DEFAULT_SERVER_CONFIG)
    for key, value in partial.items():
        if key in ("healthCheck", "transport") and isinstance(value, Mapping):
            merged[key] = {**merged.get(key, {}), **value}
        else:
            merged[key] = value
    return merged


def _is_valid_url(url: Any) -> bool:
    if not isinstance(url, str):
        return False
    parsed = urlparse(url)
    return parsed.scheme in URL_SCHEMES and bool(parsed.netloc)


def _in_range(value: Any, low: int, high: int) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and low <= value <= high


# ==================================================================== validation
def validate_config(data: ConfigInput) -> List[str]:
    """Return every problem with *data* (empty list when valid). Never raises."""
    try:
        cfg = with_defaults(data)
    except (TypeError, ValueError) as e:
        return [f"Configuration must be a mapping: {e}"]
    errors: List[str] = []

    server_id = cfg.get("id")
    if not server_id:
        errors.append("Server ID is required")
    elif not isinstance(server_id, str) or not ID_PATTERN.match(server_id):
        errors.append("Server ID must contain only alphanumeric characters, hyphens, and underscores")

    name = cfg.get("name")
    if name is None or name == "":
        errors.append("Server name is required")
    elif not isinstance(name, str) or not name.strip():
        errors.append("Server name cannot be empty")

    transport = cfg.get("transport")
    if not isinstance(transport, Mapping):
        errors.append('Transport type must be either "stdio" or "sse"')
        transport = {}
    t_type = transport.get("type")
    if t_type not in TRANSPORTS:
        errors.append('Transport type must be either "stdio" or "sse"')
    if t_type == "stdio":
        command = cfg.get("command")
        if not command:
            errors.append("Server command is required for STDIO transport")
        elif not isinstance(command, str) or not command.strip():
            errors.append("Server command cannot be empty")
    if t_type == "sse" and not transport.get("url"):
        errors.append("URL is required for SSE transport")
    if transport.get("url") and not _is_valid_url(transport.get("url")):
        errors.append("Transport URL must be a valid URL")

    if not _in_range(cfg.get("maxRestarts"), 0, 100):
        errors.append("Max restarts must be between 0 and 100")
    if not _in_range(cfg.get("startupTimeout"), 1000, 60000):
        errors.append("Startup timeout must be between 1 and 60 seconds")
    if not _in_range(cfg.get("shutdownTimeout"), 1000, 30000):
        errors.append("Shutdown timeout must be between 1 and 30 seconds")

    health = cfg.get("healthCheck")
    if not isinstance(health, Mapping):
        errors.append("Health check configuration must be a table")
    else:
        if not _in_range(health.get("interval"), 5000, 300000):
            errors.append("Health check interval must be between 5 seconds and 5 minutes")
        if not _in_range(health.get("timeout"), 1000, 30000):
            errors.append("Health check timeout must be between 1 and 30 seconds")
        if not _in_range(health.get("failureThreshold"), 1, 10):
            errors.append("Health check failure threshold must be between 1 and 10")

    env = cfg.get("env")
    if not isinstance(env, Mapping) or any(
            not isinstance(k, str) or not isinstance(v, str) for k, v in env.items()):
        errors.append("Environment variables must be strings")

    args = cfg.get("args")
    if not isinstance(args, list):
        errors.append("Arguments must be an array of strings")
    elif any(not isinstance(a, str) for a in args):
        errors.append("All arguments must be strings")

    if errors:
        return errors

    # type-level checks the rules above do not cover (tags, enabled, ...)
    try:
        ServerConfig.model_validate(cfg)
    except ValidationError as e:
        for err in e.errors():
            loc = ".".join(str(p) for p in err["loc"])
            errors.append(f"{loc}: {err['msg']}")
    return errors


def build_config(data: ConfigInput) -> ServerConfig:
    """Validate *data* as one unit and return the complete configuration."""
    if isinstance(data, ServerConfig):
        data = data.to_dict()
    errors = validate_config(data)
    if errors:
        raise ConfigValidationError(errors)
    return ServerConfig.model_validate(with_defaults(data))


def merge_config(config: ServerConfig, patch: ConfigInput) -> ServerConfig:
    """Apply *patch* on top of *config* and re-validate. The id cannot change."""
    patch = normalize_config(patch)
    if "id" in patch and patch["id"] != config.id:
        raise ConfigValidationError(["Server ID cannot be changed"])
    merged = config.to_dict()
    for key, value in patch.items():
        if key in ("healthCheck", "transport") and isinstance(value, Mapping):
            merged[key] = {**merged.get(key, {}), **value}
        else:
            merged[key] = value
    return build_config(merged)


# ==================================================================== templates
SERVER_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "everything-server": {
        "name": "Everything Server",
        "description": "Test server with various tool examples",
        "command": "npx",
        "args": ["@modelcontextprotocol/server-everything"],
        "tags": ["test", "examples"],
    },
    "filesystem-server": {
        "name": "Filesystem Server",
        "description": "Server for file system operations",
        "command": "npx",
        "args": ["@modelcontextprotocol/server-filesystem"],
        "tags": ["filesystem", "files"],
    },
    "git-server": {
        "name": "Git Server",
        "description": "Server for Git operations",
        "command": "npx",
        "args": ["@modelcontextprotocol/server-git"],
        "tags": ["git", "version-control"],
    },
    "postgres-server": {
        "name": "PostgreSQL Server",
        "description": "Server for PostgreSQL database operations",
        "command": "npx",
        "args": ["@modelcontextprotocol/server-postgres"],
        "tags": ["database", "postgresql"],
    },
}


def from_template(template: str, server_id: str, **overrides) -> ServerConfig:
    if template not in SERVER_TEMPLATES:
        raise KeyError(f"Unknown server template '{template}'")
    return build_config({**SERVER_TEMPLATES[template], "id": server_id, **overrides})


# ==================================================================== engine settings
@dataclass
class SupervisorSettings:
    """Engine-wide knobs. Times are in milliseconds unless noted."""
    cache_ttl: int = 300000
    discovery_timeout: int = 10000
    discovery_interval: int = 60000
    auto_discovery: bool = False
    max_tools_per_server: int = 100
    validate_schemas: bool = True
    request_timeout: int = 30000
    auto_save_delay: int = 1000
    port: int = 5859
    config_path: str = "mcp_servers.json"


def load_settings(settings_file: Union[str, Path] = "settings.toml") -> SupervisorSettings:
    """Load the ``[mcp]`` table of a TOML settings file over the defaults."""
    settings = SupervisorSettings()
    try:
        with open(settings_file, "r", encoding="utf-8") as f:
            data = toml.load(f)
    except FileNotFoundError:
        logger.info("Settings file %s not found, using defaults", settings_file)
        return settings
    except toml.TomlDecodeError as e:
        logger.error("Error parsing %s: %s", settings_file, e)
        return settings

    table = data.get("mcp", {})
    known = {f.name for f in fields(SupervisorSettings)}
    for key, value in table.items():
        key = key.replace("-", "_")
        if key in known:
            setattr(settings, key, value)
        else:
            logger.warning("Ignoring unknown setting mcp.%s", key)
    return settings
