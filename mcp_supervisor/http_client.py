"""
Thin synchronous client for the control façade in ``api.py``.

Used by the CLI and by hosts that run the supervisor as a separate process.
"""
from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple

import requests

from .errors import MCPConnectionError, MCPSupervisorError

DEFAULT_URL = "http://127.0.0.1:5859"

# base url -> (response, timestamp)
_list_tools_cache: Dict[str, Tuple[Dict[str, Any], float]] = {}
_CACHE_DURATION = 30  # s


def clear_cache(server: Optional[str] = None) -> None:
    """Clear cached tool listings for one façade URL or all of them."""
    if server:
        _list_tools_cache.pop(server, None)
    else:
        _list_tools_cache.clear()


def _url(server: str, path: str) -> str:
    return f"{server.rstrip('/')}/{path.lstrip('/')}"


def _unwrap(response: requests.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        body = {"error": response.text}
    if response.status_code >= 400:
        message = body.get("error") if isinstance(body, dict) else None
        raise MCPSupervisorError(message or f"HTTP {response.status_code}")
    return body


def _get(server: str, path: str, timeout: float = 5) -> Any:
    try:
        return _unwrap(requests.get(_url(server, path), timeout=timeout))
    except requests.ConnectionError as e:
        raise MCPConnectionError(f"Could not connect to {server} (is it running?)") from e
    except requests.RequestException as e:
        raise MCPConnectionError(f"Request to {server}{path} failed: {e}") from e


def _post(server: str, path: str, payload: Optional[Dict[str, Any]] = None, timeout: float = 30) -> Any:
    try:
        return _unwrap(requests.post(_url(server, path), json=payload or {}, timeout=timeout))
    except requests.ConnectionError as e:
        raise MCPConnectionError(f"Could not connect to {server} (is it running?)") from e
    except requests.RequestException as e:
        raise MCPConnectionError(f"Request to {server}{path} failed: {e}") from e


def status(server: str = DEFAULT_URL) -> Dict[str, Any]:
    return _get(server, "/status")


def list_tools(server: str = DEFAULT_URL) -> Dict[str, Any]:
    """Per-server tool listing, cached briefly to spare the supervisor."""
    now = time.time()
    cached = _list_tools_cache.get(server)
    if cached and now - cached[1] < _CACHE_DURATION:
        return cached[0]
    try:
        response = _get(server, "/list_tools")
    except MCPSupervisorError:
        # stale data beats no data
        if cached:
            return cached[0]
        raise
    _list_tools_cache[server] = (response, now)
    return response


def call_tool(name: str, arguments: Optional[Dict[str, Any]] = None,
              target: Optional[str] = None, server: str = DEFAULT_URL) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"name": name, "arguments": arguments or {}}
    if target:
        payload["server"] = target
    return _post(server, "/call_tool", payload)


def start(target: str = "all", server: str = DEFAULT_URL) -> Dict[str, Any]:
    return _post(server, f"/start/{target}")


def stop(target: str = "all", server: str = DEFAULT_URL) -> Dict[str, Any]:
    return _post(server, f"/stop/{target}")


def restart(target: str, server: str = DEFAULT_URL) -> Dict[str, Any]:
    return _post(server, f"/restart/{target}")


def add_server(server_id: str, config: Dict[str, Any], server: str = DEFAULT_URL) -> Dict[str, Any]:
    clear_cache(server)
    return _post(server, "/add_server", {"mcpServers": {server_id: config}})


def delete_server(server_id: str, server: str = DEFAULT_URL) -> Dict[str, Any]:
    clear_cache(server)
    return _post(server, "/delete_server", {"id": server_id})


def test_server(config: Dict[str, Any], server: str = DEFAULT_URL) -> Dict[str, Any]:
    return _post(server, "/test_server", config, timeout=90)


def kill(server: str = DEFAULT_URL) -> Dict[str, Any]:
    return _post(server, "/kill")
