import asyncio
import sys
from pathlib import Path

import pytest
import pytest_asyncio

from mcp_supervisor.config import build_config
from mcp_supervisor.manager import ServerManager
from mcp_supervisor.storage import MemoryStorage

FAKE_SERVER = str(Path(__file__).parent / "fake_mcp_server.py")


def fake_config(server_id="fake", *flags, **overrides):
    """camelCase config dict that runs the fixture server with *flags*."""
    cfg = {
        "id": server_id,
        "name": server_id,
        "command": sys.executable,
        "args": [FAKE_SERVER, *flags],
        "startupTimeout": 5000,
        "shutdownTimeout": 1000,
    }
    cfg.update(overrides)
    return cfg


def fake_server_config(server_id="fake", *flags, **overrides):
    return build_config(fake_config(server_id, *flags, **overrides))


async def wait_until(predicate, timeout=5.0, interval=0.02):
    """Poll *predicate* until it is truthy or *timeout* seconds pass."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest_asyncio.fixture
async def manager(storage):
    mgr = ServerManager(storage=storage)
    mgr.set_auto_save(True, delay_ms=20)
    yield mgr
    await mgr.shutdown()
