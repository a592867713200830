"""
Persistence port for server configurations.

The manager only needs ``load()`` and ``save(configs)``; anything with those two
coroutines can be injected. Two adapters ship here.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Mapping, Protocol, Union

logger = logging.getLogger(__name__)


class ConfigStorage(Protocol):
    async def load(self) -> List[Dict[str, Any]]: ...

    async def save(self, configs: List[Dict[str, Any]]) -> None: ...


class MemoryStorage:
    """Keeps the last saved list in memory; counts saves."""

    def __init__(self, configs: Union[List[Mapping[str, Any]], None] = None):
        self.configs: List[Dict[str, Any]] = [dict(c) for c in (configs or [])]
        self.save_count = 0

    async def load(self) -> List[Dict[str, Any]]:
        return [dict(c) for c in self.configs]

    async def save(self, configs: List[Dict[str, Any]]) -> None:
        self.configs = [dict(c) for c in configs]
        self.save_count += 1


class JsonFileStorage:
    """``{"mcpServers": {id: config}}`` file, the layout of mcp_servers.json.

    The id lives in the key; a config read back gets it re-attached.
    """

    def __init__(self, path: Union[str, Path] = "mcp_servers.json"):
        self.path = Path(path)

    async def load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            logger.info("Config file %s not found, using empty configuration", self.path)
            return []
        data = json.loads(self.path.read_text(encoding="utf-8"))
        servers = data.get("mcpServers", {}) if isinstance(data, dict) else {}
        if not isinstance(servers, dict):
            raise ValueError(f"{self.path}: 'mcpServers' must be an object")
        configs = []
        for server_id, spec in servers.items():
            if not isinstance(spec, dict):
                logger.warning("Skipping malformed entry '%s' in %s", server_id, self.path)
                continue
            configs.append({**spec, "id": server_id})
        return configs

    async def save(self, configs: List[Dict[str, Any]]) -> None:
        servers = {}
        for cfg in configs:
            cfg = dict(cfg)
            servers[cfg.pop("id")] = cfg
        payload = json.dumps({"mcpServers": servers}, indent=2)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug("Saved %d server configs to %s", len(servers), self.path)
