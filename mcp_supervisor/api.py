"""
aiohttp control façade over a ServerManager.

GET  /status                 per-server info
GET  /tools, /list_tools     per-server tool schemas + token counts
POST /start/{id} /stop/{id} /restart/{id}   ("all" for every server)
POST /call_tool              {"server", "name", "arguments"}
POST /add_server /delete_server /test_server
POST /kill                   stop everything and end `serve`
"""
from __future__ import annotations

import asyncio
import dataclasses
import datetime
import enum
import json
import logging
from typing import Any, Dict, Optional, Tuple

from aiohttp import web
from aiohttp_cors import ResourceOptions
from aiohttp_cors import setup as cors_setup

from .errors import (ConfigValidationError, DuplicateServerError, InvalidStateError,
                     MCPSupervisorError, ServerNotFoundError, ServerNotRunningError,
                     ToolArgumentError)
from .manager import ServerManager

logger = logging.getLogger(__name__)

MANAGER_KEY = web.AppKey("manager", ServerManager)
STOP_KEY    = web.AppKey("stop_event", asyncio.Event)
TASKS_KEY   = web.AppKey("background_tasks", set)


class MCPEncoder(json.JSONEncoder):
    def default(self, obj):
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return dataclasses.asdict(obj)
        if hasattr(obj, "model_dump"):
            return obj.model_dump(by_alias=True, exclude_none=True)
        if isinstance(obj, enum.Enum):
            return obj.value
        if isinstance(obj, (datetime.datetime, datetime.date)):
            return obj.isoformat()
        if isinstance(obj, BaseException):
            return str(obj)
        return super().default(obj)


def _dumps(obj: Any) -> str:
    return json.dumps(obj, cls=MCPEncoder)


def _reply(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


_ERROR_STATUS: Tuple[Tuple[type, int], ...] = (
    (ServerNotFoundError,   404),
    (DuplicateServerError,  409),
    (ServerNotRunningError, 409),
    (InvalidStateError,     409),
    (ConfigValidationError, 400),
    (ToolArgumentError,     400),
)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except json.JSONDecodeError:
        return _reply({"success": False, "error": "Invalid JSON in request body"}, status=400)
    except MCPSupervisorError as e:
        status = next((code for cls, code in _ERROR_STATUS if isinstance(e, cls)), 500)
        body: Dict[str, Any] = {"success": False, "error": str(e)}
        if isinstance(e, ConfigValidationError):
            body["errors"] = e.errors
        if status == 500:
            logger.error("%s %s failed: %s", request.method, request.path, e)
        return _reply(body, status=status)


def build_app(manager: ServerManager, stop_event: asyncio.Event) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[MANAGER_KEY] = manager
    app[STOP_KEY] = stop_event
    app[TASKS_KEY] = set()

    cors = cors_setup(app, defaults={
        "*": ResourceOptions(
            allow_credentials=True,
            expose_headers="*",
            allow_headers="*",
            allow_methods="*",
        ),
    })

    app.router.add_get ("/status",         _status)
    app.router.add_get ("/tools",          _tools)
    app.router.add_get ("/list_tools",     _tools)
    app.router.add_post("/start/{n}",      _start)
    app.router.add_post("/stop/{n}",       _stop)
    app.router.add_post("/restart/{n}",    _restart)
    app.router.add_post("/call_tool",      _call_tool)
    app.router.add_post("/add_server",     _add_server)
    app.router.add_post("/delete_server",  _delete_server)
    app.router.add_post("/test_server",    _test_server)
    app.router.add_post("/kill",           _kill)

    for route in list(app.router.routes()):
        cors.add(route)
    return app


# ==================================================================== handlers
def _status_payload(mgr: ServerManager) -> Dict[str, Any]:
    return {sid: server.info() for sid, server in mgr.servers.items()}


async def _status(req: web.Request) -> web.Response:
    return _reply(_status_payload(req.app[MANAGER_KEY]))


async def _tools(req: web.Request) -> web.Response:
    mgr = req.app[MANAGER_KEY]
    ids = [sid for sid, s in mgr.servers.items() if s.is_running()]
    await mgr.discovery.discover_tools_from_servers(mgr.servers[sid] for sid in ids)

    out: Dict[str, Any] = {}
    for sid, server in mgr.servers.items():
        if not server.is_running():
            out[sid] = {"tools": [], "error": f"server is {server.status.value}"}
            continue
        tools = mgr.discovery.get_tools_from_server(sid)
        out[sid] = {
            "tools":       [t.to_schema() for t in tools],
            "tool_count":  len(tools),
            "token_count": mgr.discovery.token_count(sid),
        }
    return _reply(out)


async def _each(req: web.Request, action: str) -> web.Response:
    mgr = req.app[MANAGER_KEY]
    target = req.match_info["n"]
    if target == "all":
        ids = list(mgr.servers)
        op = getattr(mgr, f"{action}_server")
        await mgr.settle_all(action, ids, op)
    else:
        await getattr(mgr, f"{action}_server")(target)
    return _reply(_status_payload(mgr))


async def _start(req: web.Request) -> web.Response:
    return await _each(req, "start")


async def _stop(req: web.Request) -> web.Response:
    return await _each(req, "stop")


async def _restart(req: web.Request) -> web.Response:
    return await _each(req, "restart")


async def _call_tool(req: web.Request) -> web.Response:
    mgr = req.app[MANAGER_KEY]
    body = await req.json()
    name = body.get("name")
    if not name:
        return _reply({"success": False, "error": "Tool name is required"}, status=400)
    server_id = body.get("server") or _owner_of(mgr, name)
    if server_id is None:
        raise web.HTTPNotFound(text=f"tool {name!r} not found")
    content = await mgr.execute_tool_call(server_id, name, body.get("arguments", {}))
    return _reply({"server": server_id, "name": name, "content": content})


def _owner_of(mgr: ServerManager, tool_name: str) -> Optional[str]:
    for tool in mgr.discovery.get_all_tools():
        if tool.name == tool_name:
            return tool.server_id
    return None


def _extract_server(body: Dict[str, Any]) -> Tuple[Optional[str], Dict[str, Any]]:
    """Accept ``{"mcpServers": {id: cfg}}``, ``{"id", "config"}`` or a flat config."""
    if isinstance(body.get("jsonConfig"), str):
        body = json.loads(body["jsonConfig"])
    servers = body.get("mcpServers")
    if isinstance(servers, dict):
        if len(servers) != 1:
            raise ConfigValidationError(["When using mcpServers format, exactly one server must be provided"])
        server_id, cfg = next(iter(servers.items()))
        return server_id, dict(cfg)
    if isinstance(body.get("config"), dict):
        return body.get("id") or body.get("name"), {"name": body.get("name"), **body["config"]}
    return body.get("id"), dict(body)


async def _add_server(req: web.Request) -> web.Response:
    mgr = req.app[MANAGER_KEY]
    server_id, cfg = _extract_server(await req.json())
    if not server_id:
        raise ConfigValidationError(["Server ID is required"])
    cfg = {k: v for k, v in cfg.items() if v is not None}
    config = await mgr.add_server(server_id, cfg)
    server = mgr.servers[server_id]
    return _reply({
        "success":  True,
        "message":  "Server added successfully",
        "server":   config.to_dict(),
        "status":   server.status.value,
        "added_at": datetime.datetime.now().isoformat(),
    }, status=201)


async def _delete_server(req: web.Request) -> web.Response:
    mgr = req.app[MANAGER_KEY]
    body = await req.json()
    server_id = body.get("id") or body.get("name")
    if not server_id:
        raise ConfigValidationError(["Server ID is required"])
    config = mgr.get_server_config(server_id)
    await mgr.remove_server(server_id)
    return _reply({
        "success":    True,
        "message":    "Server deleted successfully",
        "server":     config.to_dict(),
        "deleted_at": datetime.datetime.now().isoformat(),
    })


async def _test_server(req: web.Request) -> web.Response:
    mgr = req.app[MANAGER_KEY]
    server_id, cfg = _extract_server(await req.json())
    if server_id:
        cfg["id"] = server_id
    result = await mgr.test_server_connection(cfg)
    return _reply(result)


async def _kill(req: web.Request) -> web.Response:
    mgr, stop_event = req.app[MANAGER_KEY], req.app[STOP_KEY]

    async def delayed_shutdown():
        # let the response leave first
        await asyncio.sleep(0.1)
        await mgr.stop_all_servers()
        stop_event.set()

    task = asyncio.ensure_future(delayed_shutdown())
    tasks = req.app[TASKS_KEY]
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return _reply({"status": "shutting-down"})
