import asyncio
import errno
import json
from typing import Any, Dict, List

import pytest

from yeelight_lan_bridge.connection import FramedConnection, parse_line
from yeelight_lan_bridge.exceptions import ConnectionFailed, HostUnreachable
from yeelight_lan_bridge.models import Endpoint


class _LineServer:
    """Loopback TCP server recording the lines it receives."""

    def __init__(self) -> None:
        self.lines: List[bytes] = []
        self.writers: List[asyncio.StreamWriter] = []
        self.received = asyncio.Event()
        self.server: Any = None
        self.port = 0

    async def start(self) -> "_LineServer":
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint("127.0.0.1", self.port)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writers.append(writer)
        while True:
            line = await reader.readline()
            if not line:
                break
            self.lines.append(line)
            self.received.set()
        writer.close()

    async def send(self, payload: bytes) -> None:
        for writer in self.writers:
            writer.write(payload)
            await writer.drain()

    def drop_clients(self) -> None:
        for writer in self.writers:
            writer.close()
        self.writers.clear()

    async def stop(self) -> None:
        self.drop_clients()
        self.server.close()
        await self.server.wait_closed()


async def _until(predicate: Any, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def test_parse_line_accepts_only_json_objects() -> None:
    assert parse_line(b'{"id":1,"result":["ok"]}\r\n') == {"id": 1, "result": ["ok"]}
    assert parse_line(b"\r\n") is None
    assert parse_line(b"not json\r\n") is None
    assert parse_line(b"[1,2,3]\n") is None
    assert parse_line(b"\xff\xfe\n") is None


@pytest.mark.asyncio
async def test_open_is_idempotent_and_frames_json() -> None:
    server = await _LineServer().start()
    opened: List[bool] = []
    connection = FramedConnection(server.endpoint, on_opened=lambda: opened.append(True))
    try:
        assert await connection.open() is True
        assert await connection.open() is False
        assert opened == [True]

        await connection.send({"id": 1, "method": "set_power", "params": ["on", "smooth", 400]})
        await asyncio.wait_for(server.received.wait(), timeout=1.0)

        line = server.lines[0]
        assert line.endswith(b"\r\n")
        assert json.loads(line) == {"id": 1, "method": "set_power", "params": ["on", "smooth", 400]}
    finally:
        connection.close()
        await server.stop()


@pytest.mark.asyncio
async def test_inbound_messages_skip_malformed_lines() -> None:
    server = await _LineServer().start()
    messages: List[Dict[str, Any]] = []
    connection = FramedConnection(server.endpoint, on_message=messages.append)
    try:
        await connection.open()
        await _until(lambda: server.writers)
        await server.send(
            b'{"id":1,"result":["ok"]}\r\n'
            b"garbage\r\n"
            b"[1,2]\r\n"
            b'{"method":"props","params":{"power":"on"}}\r\n'
        )
        await _until(lambda: len(messages) == 2)
        assert messages == [
            {"id": 1, "result": ["ok"]},
            {"method": "props", "params": {"power": "on"}},
        ]
        assert connection.is_open
    finally:
        connection.close()
        await server.stop()


@pytest.mark.asyncio
async def test_close_notifies_once() -> None:
    server = await _LineServer().start()
    closed: List[bool] = []
    connection = FramedConnection(server.endpoint, on_message=lambda _: None, on_closed=closed.append)
    try:
        await connection.open()
        connection.close()
        connection.close()
        await asyncio.sleep(0.01)
        assert closed == [False]
        assert not connection.is_open
        with pytest.raises(ConnectionFailed):
            await connection.send({"id": 2, "method": "get_prop", "params": ["power"]})
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_remote_close_notifies_and_allows_reopen() -> None:
    server = await _LineServer().start()
    closed: List[bool] = []
    connection = FramedConnection(server.endpoint, on_message=lambda _: None, on_closed=closed.append)
    try:
        await connection.open()
        await _until(lambda: server.writers)
        server.drop_clients()
        await _until(lambda: len(closed) == 1)
        assert not connection.is_open

        assert await connection.open() is True
        assert connection.is_open
    finally:
        connection.close()
        await server.stop()


@pytest.mark.asyncio
async def test_refused_connect_raises_connection_failed() -> None:
    server = await _LineServer().start()
    endpoint = server.endpoint
    await server.stop()

    connection = FramedConnection(endpoint)
    with pytest.raises(ConnectionFailed) as excinfo:
        await connection.open()
    assert not isinstance(excinfo.value, HostUnreachable)


@pytest.mark.asyncio
async def test_unreachable_host_is_distinguished(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _unreachable(*_: Any, **__: Any) -> Any:
        raise OSError(errno.EHOSTUNREACH, "No route to host")

    monkeypatch.setattr(asyncio, "open_connection", _unreachable)

    connection = FramedConnection(Endpoint("192.168.1.250"))
    with pytest.raises(HostUnreachable) as excinfo:
        await connection.open()
    assert excinfo.value.errno == errno.EHOSTUNREACH


@pytest.mark.asyncio
async def test_messages_iterates_alongside_router_until_close() -> None:
    server = await _LineServer().start()
    routed: List[Dict[str, Any]] = []
    connection = FramedConnection(server.endpoint, on_message=routed.append)
    try:
        await connection.open()
        await _until(lambda: server.writers)

        async def _collect() -> List[Dict[str, Any]]:
            return [message async for message in connection.messages()]

        collector = asyncio.create_task(_collect())
        await asyncio.sleep(0.01)
        await server.send(b'{"id":5,"result":["ok"]}\r\nnoise\r\n{"method":"props","params":{"bright":"10"}}\r\n')
        await _until(lambda: len(routed) == 2)
        server.drop_clients()

        iterated = await asyncio.wait_for(collector, timeout=1.0)
        assert iterated == routed
        assert iterated[1] == {"method": "props", "params": {"bright": "10"}}
    finally:
        connection.close()
        await server.stop()


@pytest.mark.asyncio
async def test_messages_without_router_ends_on_local_close() -> None:
    server = await _LineServer().start()
    connection = FramedConnection(server.endpoint)
    try:
        await connection.open()
        await _until(lambda: server.writers)
        iterator = connection.messages().__aiter__()
        pending = asyncio.ensure_future(iterator.__anext__())
        await asyncio.sleep(0.01)
        await server.send(b'{"method":"props","params":{"power":"off"}}\r\n')
        assert await asyncio.wait_for(pending, timeout=1.0) == {"method": "props", "params": {"power": "off"}}

        connection.close()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(iterator.__anext__(), timeout=1.0)
        assert [message async for message in connection.messages()] == []
    finally:
        await server.stop()
