"""
Per-server TTL cache of tool schemas.

Every ``tools/list`` result, whether fetched here or reported by a server at
start-up, goes through :meth:`ToolDiscovery.ingest`, the single place where raw
records become ToolMetadata.
"""
from __future__ import annotations

import asyncio
import datetime
import functools
import hashlib
import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import tiktoken

from .errors import RequestTimeoutError, ServerNotRunningError
from .models import ToolCacheEntry, ToolMetadata, ToolUsageStats
from .schema import validate_tool_schema
from .signals import Signal

logger = logging.getLogger(__name__)

CATEGORY_RULES = (
    ("filesystem",      ("file", "read", "write")),
    ("version-control", ("git", "commit", "branch")),
    ("database",        ("db", "sql", "query")),
    ("network",         ("http", "api", "request")),
)


@functools.lru_cache(maxsize=1)
def _tokenizer():
    return tiktoken.get_encoding("cl100k_base")


def schema_hash(tool: Dict[str, Any]) -> str:
    """Content fingerprint of the parts of a tool an LLM sees."""
    payload = json.dumps({
        "name": tool.get("name"),
        "description": tool.get("description") or "",
        "inputSchema": tool.get("inputSchema") or {},
    }, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def infer_category(name: str, description: str = "") -> str:
    name = name.lower()
    for category, words in CATEGORY_RULES:
        if any(w in name for w in words):
            return category
    description = (description or "").lower()
    if "search" in description or "find" in description:
        return "search"
    return "general"


class ToolDiscovery:
    """TTL cache keyed by server id, then tool name.

    Times given to the constructor are milliseconds. *clock* returns seconds
    (``time.time`` by default) and is injectable for tests.
    """

    def __init__(self,
                 cache_ttl: int = 300000,
                 discovery_timeout: int = 10000,
                 discovery_interval: int = 60000,
                 max_tools_per_server: int = 100,
                 validate_schemas: bool = True,
                 auto_discovery: bool = False,
                 clock: Callable[[], float] = time.time):
        self.cache_ttl            = cache_ttl
        self.discovery_timeout    = discovery_timeout
        self.discovery_interval   = discovery_interval
        self.max_tools_per_server = max_tools_per_server
        self.validate_schemas     = validate_schemas
        self.auto_discovery       = auto_discovery
        self.clock                = clock

        self._cache: Dict[str, Dict[str, ToolCacheEntry]] = {}
        self._expiry: Dict[str, float] = {}
        self._epoch: Dict[str, int] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._auto_tasks: Dict[str, asyncio.Task] = {}
        self._hits = 0
        self._misses = 0

        self.tools_discovered = Signal("tools_discovered")
        self.tool_added       = Signal("tool_added")
        self.tool_updated     = Signal("tool_updated")
        self.tool_removed     = Signal("tool_removed")
        self.discovery_error  = Signal("discovery_error")
        self.cache_updated    = Signal("cache_updated")

    # ---------------------------------------------------------------- discovery
    async def discover_tools(self, server, force: bool = False) -> List[ToolMetadata]:
        """Cached tools of *server*, or a fresh ``tools/list`` when expired.

        Concurrent callers for the same server share one in-flight probe.
        """
        server_id = server.id
        if not force and self._is_fresh(server_id):
            self._hits += 1
            return self.get_tools_from_server(server_id)
        self._misses += 1

        pending = self._inflight.get(server_id)
        if pending is None:
            pending = asyncio.ensure_future(self._discover(server, self._epoch.get(server_id, 0)))
            self._inflight[server_id] = pending
            pending.add_done_callback(functools.partial(self._forget_inflight, server_id))
        return await asyncio.shield(pending)

    async def refresh_tools(self, server) -> List[ToolMetadata]:
        """Invalidate *server*'s cache and rediscover, diffing against the old entries."""
        self.expire_server_cache(server.id)
        return await self.discover_tools(server, force=True)

    async def discover_tools_from_servers(self, servers: Iterable[Any]) -> Dict[str, List[ToolMetadata]]:
        """Discover every server concurrently; a failure yields [] for that server only."""
        servers = list(servers)
        results = await asyncio.gather(*(self.discover_tools(s) for s in servers),
                                       return_exceptions=True)
        out: Dict[str, List[ToolMetadata]] = {}
        for server, result in zip(servers, results):
            if isinstance(result, BaseException):
                logger.warning("%s: tool discovery failed: %s", server.id, result)
                out[server.id] = []
            else:
                out[server.id] = result
        return out

    async def _discover(self, server, epoch: int) -> List[ToolMetadata]:
        server_id = server.id
        try:
            if not server.is_running():
                raise ServerNotRunningError(server_id, server.status)
            generation = server.generation
            timeout = self.discovery_timeout / 1000
            try:
                raw = await asyncio.wait_for(server.list_tools(timeout=timeout), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise RequestTimeoutError("tools/list", timeout) from e
        except Exception as e:
            self.discovery_error.emit(server_id, e)
            raise

        if (server.generation != generation or not server.is_running()
                or self._epoch.get(server_id, 0) != epoch):
            logger.debug("%s: discarding stale discovery result", server_id)
            return []
        return self.ingest(server_id, server.name, raw, server.config.tags)

    def _forget_inflight(self, server_id: str, future: asyncio.Future) -> None:
        if self._inflight.get(server_id) is future:
            del self._inflight[server_id]
        if not future.cancelled():
            # retrieved here so an unawaited failure is not reported as lost
            future.exception()

    def ingest(self, server_id: str, server_name: str, raw_tools: List[Any],
               tags: Iterable[str] = ()) -> List[ToolMetadata]:
        """Convert raw ``tools/list`` records, diff against the cache and replace it."""
        valid = []
        for raw in raw_tools or []:
            if self.validate_schemas and not validate_tool_schema(raw):
                logger.warning("%s: skipping invalid tool schema %r", server_id,
                               raw.get("name") if isinstance(raw, dict) else raw)
                continue
            if not isinstance(raw, dict) or not raw.get("name"):
                continue
            valid.append(raw)
        if len(valid) > self.max_tools_per_server:
            logger.warning("%s: %d tools exceed the limit of %d, truncating",
                           server_id, len(valid), self.max_tools_per_server)
            valid = valid[:self.max_tools_per_server]

        previous = self._cache.get(server_id, {})
        now = datetime.datetime.now()
        expires_at = self.clock() + self.cache_ttl / 1000
        entries: Dict[str, ToolCacheEntry] = {}

        for raw in valid:
            name = raw["name"]
            digest = schema_hash(raw)
            old = previous.get(name)
            changed = old is not None and old.tool.schema_hash != digest
            tool = ToolMetadata(
                name=name,
                description=raw.get("description") or "",
                input_schema=raw.get("inputSchema") or {"type": "object", "properties": {}},
                server_id=server_id,
                server_name=server_name,
                discovered_at=old.tool.discovered_at if old else now,
                last_updated=now if (changed or old is None) else old.tool.last_updated,
                schema_hash=digest,
                category=infer_category(name, raw.get("description") or ""),
                tags=list(tags),
                stats=old.tool.stats if old else ToolUsageStats(),
            )
            version = (old.version + 1 if changed else old.version) if old else 1
            entries[name] = ToolCacheEntry(tool=tool, expires_at=expires_at, version=version)
            if old is None:
                self.tool_added.emit(tool)
            elif changed:
                self.tool_updated.emit(tool, old.tool)

        for name in previous:
            if name not in entries:
                self.tool_removed.emit(server_id, name)

        self._cache[server_id] = entries
        self._expiry[server_id] = expires_at
        tools = [e.tool for e in entries.values()]
        logger.debug("%s: cached %d tools", server_id, len(tools))
        self.tools_discovered.emit(server_id, tools)
        self.cache_updated.emit(server_id, len(tools))
        return tools

    # ---------------------------------------------------------------- queries
    def _is_fresh(self, server_id: str) -> bool:
        expiry = self._expiry.get(server_id)
        return expiry is not None and self.clock() < expiry

    def get_tools_from_server(self, server_id: str) -> List[ToolMetadata]:
        now = self.clock()
        return [e.tool for e in self._cache.get(server_id, {}).values() if e.expires_at > now]

    def get_all_tools(self) -> List[ToolMetadata]:
        tools: List[ToolMetadata] = []
        for server_id in list(self._cache):
            tools.extend(self.get_tools_from_server(server_id))
        return tools

    def get_tool(self, server_id: str, name: str) -> Optional[ToolMetadata]:
        entry = self._cache.get(server_id, {}).get(name)
        if entry is None or entry.expires_at <= self.clock():
            return None
        return entry.tool

    def search_tools(self, query: str) -> List[ToolMetadata]:
        q = query.lower()
        return [t for t in self.get_all_tools()
                if q in t.name.lower()
                or q in t.description.lower()
                or any(q in tag.lower() for tag in t.tags)]

    def get_tools_by_category(self, category: str) -> List[ToolMetadata]:
        return [t for t in self.get_all_tools() if t.category == category]

    def server_ids(self) -> List[str]:
        return list(self._cache)

    # ---------------------------------------------------------------- stats
    def update_tool_stats(self, server_id: str, name: str, success: bool,
                          duration_ms: Optional[float] = None) -> bool:
        """Fold one call into the tool's usage stats. False when the tool is unknown."""
        entry = self._cache.get(server_id, {}).get(name)
        if entry is None:
            return False
        stats = entry.tool.stats
        stats.call_count += 1
        n = stats.call_count
        stats.success_rate = (stats.success_rate * (n - 1) + (1.0 if success else 0.0)) / n
        stats.last_used = datetime.datetime.now()
        if duration_ms is not None:
            if stats.average_execution_time is None:
                stats.average_execution_time = float(duration_ms)
            else:
                stats.average_execution_time += (duration_ms - stats.average_execution_time) / n
        return True

    def get_cache_stats(self) -> Dict[str, Any]:
        now = self.clock()
        total = expired = 0
        for entries in self._cache.values():
            for entry in entries.values():
                total += 1
                if entry.expires_at <= now:
                    expired += 1
        lookups = self._hits + self._misses
        return {
            "total_servers": len(self._cache),
            "total_tools":   total - expired,
            "expired_tools": expired,
            "hits":          self._hits,
            "misses":        self._misses,
            "hit_rate":      self._hits / lookups if lookups else 0.0,
        }

    def token_count(self, server_id: Optional[str] = None) -> int:
        """cl100k_base tokens of the serialized tool schemas (one server or all)."""
        tools = self.get_tools_from_server(server_id) if server_id else self.get_all_tools()
        if not tools:
            return 0
        return len(_tokenizer().encode(json.dumps([t.to_schema() for t in tools])))

    # ---------------------------------------------------------------- invalidation
    def expire_server_cache(self, server_id: str) -> None:
        """Mark every entry of *server_id* expired but keep it as the diff baseline."""
        now = self.clock()
        for entry in self._cache.get(server_id, {}).values():
            entry.expires_at = now
        if server_id in self._expiry:
            self._expiry[server_id] = now
        self._epoch[server_id] = self._epoch.get(server_id, 0) + 1
        self._inflight.pop(server_id, None)

    def clear_server_cache(self, server_id: str) -> None:
        self._cache.pop(server_id, None)
        self._expiry.pop(server_id, None)
        self._epoch[server_id] = self._epoch.get(server_id, 0) + 1
        # a probe already in flight finishes but its result is dropped
        self._inflight.pop(server_id, None)
        self.cache_updated.emit(server_id, 0)

    def clear_all_cache(self) -> None:
        for server_id in list(set(self._cache) | set(self._inflight)):
            self.clear_server_cache(server_id)
        self._hits = self._misses = 0

    # ---------------------------------------------------------------- auto discovery
    def start_auto_discovery(self, server) -> None:
        if not self.auto_discovery:
            return
        self.stop_auto_discovery(server.id)
        self._auto_tasks[server.id] = asyncio.ensure_future(self._auto_loop(server))

    def stop_auto_discovery(self, server_id: str) -> None:
        task = self._auto_tasks.pop(server_id, None)
        if task and not task.done():
            task.cancel()

    def stop_all_auto_discovery(self) -> None:
        for server_id in list(self._auto_tasks):
            self.stop_auto_discovery(server_id)

    async def _auto_loop(self, server) -> None:
        while True:
            await asyncio.sleep(self.discovery_interval / 1000)
            if not server.is_running():
                continue
            try:
                await self.discover_tools(server)
            except Exception as e:
                logger.warning("%s: auto-discovery failed: %s", server.id, e)
