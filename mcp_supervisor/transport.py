"""
Byte/frame-level channels to one MCP server.

StdioTransport   – spawns the server, newline-delimited JSON over stdin/stdout,
                   stderr forwarded as diagnostic text.
WebSocketTransport – persistent socket (aiohttp), one JSON document per frame.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shlex
import signal
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import MCPConnectionError, ProtocolError
from .signals import Signal, disconnect_all

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024
STDERR_LINE_LIMIT = 4096   # longer stderr lines are forwarded truncated


# ==================================================================== base
class Transport:
    """Common surface: connect / send / disconnect plus event signals."""

    def __init__(self, label: str = "mcp"):
        self.label        = label
        self.connected    = Signal("connected")
        self.message      = Signal("message")
        self.error        = Signal("error")
        self.disconnected = Signal("disconnected")
        self.stderr       = Signal("stderr")
        self._connected   = False
        self._finished    = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def pid(self) -> Optional[int]:
        return None

    async def connect(self) -> None:
        raise NotImplementedError

    async def send(self, message: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def disconnect(self) -> None:
        raise NotImplementedError

    def remove_all_listeners(self) -> None:
        disconnect_all(self.connected, self.message, self.error, self.disconnected, self.stderr)

    # ---------------------------------------------------------------- helpers
    def _dispatch_frame(self, text: str) -> None:
        """Parse one frame; malformed input is reported, never fatal."""
        if not text.strip():
            return
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            self.error.emit(ProtocolError(f"Failed to parse message: {text[:200]}"))
            return
        if not isinstance(message, dict):
            self.error.emit(ProtocolError(f"Message is not a JSON object: {text[:200]}"))
            return
        self.message.emit(message)

    def _finish(self, info: Optional[Dict[str, Any]] = None) -> None:
        """Mark the channel closed and announce it exactly once."""
        self._connected = False
        if self._finished:
            return
        self._finished = True
        self.disconnected.emit(info or {})


# ==================================================================== stdio
class StdioTransport(Transport):
    def __init__(self,
                 command: str,
                 args: Optional[List[str]] = None,
                 env: Optional[Dict[str, str]] = None,
                 cwd: Optional[str] = None,
                 startup_timeout: float = 5.0,
                 shutdown_timeout: float = 3.0,
                 label: str = "mcp"):
        super().__init__(label)
        self.command          = command
        self.args             = list(args or [])
        self.env              = dict(env or {})
        self.cwd              = cwd
        self.startup_timeout  = startup_timeout
        self.shutdown_timeout = shutdown_timeout
        self.proc: Optional[asyncio.subprocess.Process] = None
        self._buffer          = b""
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    async def connect(self) -> None:
        if self._connected:
            raise MCPConnectionError("Transport already connected")
        argv = [*shlex.split(self.command), *self.args]
        env  = {**os.environ, **self.env}
        try:
            self.proc = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                    cwd=self.cwd,
                    start_new_session=True,
                ),
                timeout=self.startup_timeout,
            )
        except asyncio.TimeoutError as e:
            raise MCPConnectionError(f"Connection timeout spawning {argv[0]!r}") from e
        except (OSError, ValueError) as e:
            raise MCPConnectionError(f"Failed to spawn {argv[0]!r}: {e}") from e

        self._buffer    = b""
        self._finished  = False
        self._connected = True
        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        logger.debug("%s: spawned %s (pid %s)", self.label, argv, self.proc.pid)
        self.connected.emit()

    async def send(self, message: Dict[str, Any]) -> None:
        if not self._connected or not self.proc or not self.proc.stdin:
            raise MCPConnectionError("Transport not connected")
        data = (json.dumps(message) + "\n").encode("utf-8")
        try:
            # one write per message keeps frames whole between event-loop turns
            self.proc.stdin.write(data)
            await self.proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            raise MCPConnectionError(f"Write failed: {e}") from e

    async def disconnect(self) -> None:
        proc = self.proc
        if not proc:
            return
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.send_signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning("%s: did not exit after SIGTERM, killing (pid %s)", self.label, proc.pid)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        for task in (self._stdout_task, self._stderr_task):
            if task and not task.done():
                try:
                    await asyncio.wait_for(asyncio.shield(task), timeout=1.0)
                except (asyncio.TimeoutError, asyncio.CancelledError):
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
        if proc.stdin:
            with contextlib.suppress(Exception):
                proc.stdin.close()
        self._stdout_task = self._stderr_task = None
        self.proc = None
        self._finish({"code": proc.returncode, "signal": _signal_name(proc.returncode)})

    # ---------------------------------------------------------------- readers
    def _feed(self, chunk: bytes) -> None:
        self._buffer += chunk
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            self._dispatch_frame(line.decode("utf-8", errors="replace"))

    async def _read_stdout(self) -> None:
        proc = self.proc
        try:
            while True:
                chunk = await proc.stdout.read(READ_CHUNK)
                if not chunk:
                    break
                self._feed(chunk)
            if self._buffer.strip():
                tail, self._buffer = self._buffer, b""
                self._dispatch_frame(tail.decode("utf-8", errors="replace"))
            code = await proc.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("%s: stdout reader failed: %s", self.label, e)
            self.error.emit(MCPConnectionError(str(e)))
            code = proc.returncode
        if self.proc is proc:
            self._finish({"code": code, "signal": _signal_name(code)})

    async def _read_stderr(self) -> None:
        stream = self.proc.stderr
        pending = b""
        overflow = False
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            *lines, pending = (pending + chunk).split(b"\n")
            for line in lines:
                if overflow:
                    # rest of a line already forwarded in truncated form
                    overflow = False
                    continue
                self._emit_stderr(line)
            if len(pending) > STDERR_LINE_LIMIT:
                if not overflow:
                    self._emit_stderr(pending)
                    overflow = True
                pending = b""
        if pending and not overflow:
            self._emit_stderr(pending)

    def _emit_stderr(self, line: bytes) -> None:
        if len(line) > STDERR_LINE_LIMIT:
            line = line[:STDERR_LINE_LIMIT] + b" ..."
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            self.stderr.emit(text)


def _signal_name(code: Optional[int]) -> Optional[str]:
    if code is None or code >= 0:
        return None
    try:
        return signal.Signals(-code).name
    except ValueError:
        return None


# ==================================================================== websocket
class WebSocketTransport(Transport):
    def __init__(self,
                 url: str,
                 headers: Optional[Dict[str, str]] = None,
                 startup_timeout: float = 5.0,
                 shutdown_timeout: float = 3.0,
                 label: str = "mcp"):
        super().__init__(label)
        self.url              = url
        self.headers          = dict(headers or {})
        self.startup_timeout  = startup_timeout
        self.shutdown_timeout = shutdown_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        if self._connected:
            raise MCPConnectionError("Transport already connected")
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, headers=self.headers),
                timeout=self.startup_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await self._session.close()
            self._session = None
            raise MCPConnectionError(f"Failed to connect to {self.url}: {e or type(e).__name__}") from e

        self._finished  = False
        self._connected = True
        self._reader    = asyncio.create_task(self._read_loop())
        self.connected.emit()

    async def send(self, message: Dict[str, Any]) -> None:
        if not self._connected or not self._ws:
            raise MCPConnectionError("Transport not connected")
        try:
            await self._ws.send_str(json.dumps(message))
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
            raise MCPConnectionError(f"Write failed: {e}") from e

    async def disconnect(self) -> None:
        if not self._ws and not self._session:
            return
        ws, session = self._ws, self._session
        self._ws = self._session = None
        if ws is not None and not ws.closed:
            with contextlib.suppress(asyncio.TimeoutError, aiohttp.ClientError):
                await asyncio.wait_for(ws.close(), timeout=self.shutdown_timeout)
        if self._reader and not self._reader.done():
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        self._reader = None
        if session is not None:
            await session.close()
        self._finish({"code": ws.close_code if ws is not None else None})

    async def _read_loop(self) -> None:
        ws = self._ws
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                self._dispatch_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.BINARY:
                self._dispatch_frame(msg.data.decode("utf-8", errors="replace"))
            elif msg.type == aiohttp.WSMsgType.ERROR:
                self.error.emit(MCPConnectionError(f"WebSocket error: {ws.exception()}"))
        if self._ws is ws:
            self._finish({"code": ws.close_code})
