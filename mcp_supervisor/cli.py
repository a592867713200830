"""
mcp-supervisor command line.

    mcp-supervisor serve [--port N] [--config mcp_servers.json] [--settings settings.toml]
    mcp-supervisor status | tools | kill
    mcp-supervisor start ID | stop ID
    mcp-supervisor call ID TOOL [--args JSON]
    mcp-supervisor test --config-json JSON
    mcp-supervisor tools-dump OUTPUT [ID]

Everything except ``serve`` talks to a running ``serve`` over HTTP.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from aiohttp import web
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import http_client
from .api import MCPEncoder, build_app
from .config import SupervisorSettings, load_settings
from .errors import MCPSupervisorError
from .manager import ServerManager
from .storage import JsonFileStorage

logger = logging.getLogger(__name__)
console = Console()

SHUTDOWN_GRACE = 30.0   # s


def setup_logging(verbose: bool = False):
    """Setup logging configuration"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%H:%M:%S'
    )


# ==================================================================== serve
async def run_serve(settings: SupervisorSettings, port: int, config_path: str):
    manager = ServerManager(storage=JsonFileStorage(config_path), settings=settings)
    await manager.load_configuration()
    await manager.start_all_servers()

    stop_event = asyncio.Event()
    runner = web.AppRunner(build_app(manager, stop_event))
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    logger.info("API http://127.0.0.1:%d  – Ctrl-C to quit", port)

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

    await stop_event.wait()
    logger.info("shutting down …")
    try:
        await asyncio.wait_for(manager.shutdown(), timeout=SHUTDOWN_GRACE)
    except asyncio.TimeoutError:
        logger.warning("Shutdown timed out after %.0fs", SHUTDOWN_GRACE)
    await runner.cleanup()
    logger.info("Shutdown complete")


# ==================================================================== rendering
def render_status(data: Dict[str, Any]) -> None:
    if not data:
        console.print("No servers configured.")
        return
    table = Table(title="MCP servers")
    for col in ("ID", "Status", "Health", "PID", "Restarts", "Tools", "Last error"):
        table.add_column(col)
    colors = {"running": "green", "failed": "red", "crashed": "red", "restarting": "yellow"}
    for sid, info in sorted(data.items()):
        state = info.get("status", "?")
        color = colors.get(state, "white")
        table.add_row(
            sid,
            f"[{color}]{state}[/{color}]",
            info.get("health", "?"),
            str(info.get("pid") or "-"),
            f"{info.get('restart_count', 0)}/{info.get('max_restarts', 0)}",
            str(info.get("tool_count", 0)),
            info.get("last_error") or "",
        )
    console.print(table)


def render_tools(data: Dict[str, Any]) -> None:
    for sid, entry in sorted(data.items()):
        tools = entry.get("tools", [])
        if "error" in entry:
            console.print(f"[red]✗[/red] [bold]{sid}[/bold]: {entry['error']}")
            continue
        lines = [f"[bold]{t['name']}[/bold]  {t.get('description', '')}" for t in tools]
        title = f"{sid} – {len(tools)} tools, {entry.get('token_count', 0)} tokens"
        console.print(Panel("\n".join(lines) or "(no tools)", title=title))


# ==================================================================== commands
def _cmd_tools_dump(url: str, output: str, target: str) -> None:
    all_tools = http_client.list_tools(url)
    if target == "all":
        tools = all_tools
    else:
        tools = {target: all_tools.get(target, {"error": "Not found", "tools": []})}
    with open(output, "w", encoding="utf-8") as f:
        json.dump(tools, f, indent=2)
    console.print(f"[bright_green]✓[/bright_green] Tools schema dumped to {output}")


def _parser():
    p = argparse.ArgumentParser(prog="mcp-supervisor", description="Supervise a fleet of MCP servers")
    p.add_argument("--port", type=int, default=None, help="Control API port (default from settings, 5859)")
    p.add_argument("--settings", default="settings.toml", help="TOML settings file with an [mcp] table")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="Run the supervisor and its HTTP API")
    serve.add_argument("--config", default=None, help="Server config file (mcp_servers.json layout)")

    sub.add_parser("status", help="Show server status")
    sub.add_parser("tools", help="List tools of every running server")
    sub.add_parser("kill", help="Stop all servers and the supervisor")
    for verb in ("start", "stop", "restart"):
        sc = sub.add_parser(verb, help=f"{verb.capitalize()} a server ('all' for every server)")
        sc.add_argument("target")

    call = sub.add_parser("call", help="Call a tool")
    call.add_argument("server")
    call.add_argument("tool")
    call.add_argument("--args", default="{}", help="Tool arguments as a JSON object")

    test = sub.add_parser("test", help="Try a server config without registering it")
    test.add_argument("--config-json", required=True, help="Server config as JSON")

    dump = sub.add_parser("tools-dump", help="Write tool schemas to a JSON file")
    dump.add_argument("output_file", help="Path to output JSON file")
    dump.add_argument("target", nargs="?", default="all", help="Optional: server id (default: all)")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    a = _parser().parse_args(argv)
    setup_logging(a.verbose)
    settings = load_settings(a.settings)
    port = a.port or settings.port
    url = f"http://127.0.0.1:{port}"

    try:
        if a.cmd == "serve":
            asyncio.run(run_serve(settings, port, a.config or settings.config_path))
        elif a.cmd == "status":
            render_status(http_client.status(url))
        elif a.cmd == "tools":
            render_tools(http_client.list_tools(url))
        elif a.cmd in ("start", "stop", "restart"):
            render_status(getattr(http_client, a.cmd)(a.target, server=url))
        elif a.cmd == "kill":
            http_client.kill(url)
            console.print("Supervisor is shutting down")
        elif a.cmd == "call":
            result = http_client.call_tool(a.tool, json.loads(a.args), target=a.server, server=url)
            console.print_json(json.dumps(result, cls=MCPEncoder))
        elif a.cmd == "test":
            result = http_client.test_server(json.loads(a.config_json), server=url)
            mark = "[bright_green]✓[/bright_green]" if result.get("success") else "[red]✗[/red]"
            console.print(f"{mark} {json.dumps(result)}")
            return 0 if result.get("success") else 1
        elif a.cmd == "tools-dump":
            _cmd_tools_dump(url, a.output_file, a.target)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON:[/red] {e}")
        return 2
    except MCPSupervisorError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
