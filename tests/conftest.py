import asyncio
from typing import List, Optional, Tuple

import pytest
import pytest_asyncio

from ftchat.common import now
from ftchat.config import ServerConfig
from ftchat.registry import Registry
from ftchat.server import ChatServer

LINE_TIMEOUT = 2.0


class FakeMember:
    """Stand-in for a connection: records what the registry sends it."""

    def __init__(self, identity: str, registry: Registry, host: str = "127.0.0.1", port: int = 12345):
        self.identity: Optional[str] = identity
        self.host = host
        self.port = port
        self.registry = registry
        self.last_activity = now()
        self.active = True
        self.sent: List[str] = []
        self.close_reasons: List[str] = []

    def is_active(self) -> bool:
        return self.active

    def send(self, line: str) -> None:
        if self.active:
            self.sent.append(line)

    async def close(self, reason: str) -> None:
        if not self.active:
            return
        self.active = False
        self.close_reasons.append(reason)
        await self.registry.remove(self.identity, reason, member=self)


@pytest.fixture
def registry():
    return Registry(history_length=20)


@pytest.fixture
def make_member(registry):
    def _make(identity: str, **kwargs) -> FakeMember:
        return FakeMember(identity, registry, **kwargs)
    return _make


def make_config(**overrides) -> ServerConfig:
    values = dict(
        host="127.0.0.1",
        port=0,
        client_timeout=60.0,
        activity_check_interval=60.0,
        send_timeout=1.0,
        shutdown_grace=0.5,
    )
    values.update(overrides)
    return ServerConfig(**values)


@pytest_asyncio.fixture
async def server():
    srv = ChatServer(make_config())
    await srv.start()
    try:
        yield srv
    finally:
        await srv.stop("test finished")


# -----------------------------
# Line-protocol client helpers
# -----------------------------
async def recv(reader: asyncio.StreamReader, timeout: float = LINE_TIMEOUT) -> Optional[str]:
    data = await asyncio.wait_for(reader.readline(), timeout)
    if not data:
        return None
    return data.decode("utf-8").rstrip("\r\n")


async def send(writer: asyncio.StreamWriter, line: str) -> None:
    writer.write((line + "\n").encode("utf-8"))
    await writer.drain()


async def recv_until(reader: asyncio.StreamReader, expected: str) -> List[str]:
    """Read lines until ``expected`` arrives; returns everything read, ``expected`` included."""
    seen: List[str] = []
    while True:
        line = await recv(reader)
        if line is None:
            raise AssertionError(f"stream closed before {expected!r}; got {seen!r}")
        seen.append(line)
        if line == expected:
            return seen


async def join(srv: ChatServer, name: str) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    reader, writer = await asyncio.open_connection("127.0.0.1", srv.port)
    assert await recv(reader) == "SUBMITNAME"
    await send(writer, name)
    assert await recv(reader) == f"NAMEACCEPTED {name}"
    await wait_for_member(srv, name)
    return reader, writer


async def wait_for_member(srv: ChatServer, name: str, present: bool = True) -> None:
    for _ in range(200):
        if (name in srv.registry) == present:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{name} presence never became {present}")
