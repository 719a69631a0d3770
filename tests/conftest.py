import asyncio
import json
import struct
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from wsproto import ConnectionType, WSConnection
from wsproto.connection import ConnectionState
from wsproto.events import (
    AcceptConnection, BytesMessage, CloseConnection, Event, Request,
    TextMessage
)

from discord_session import ERLPACK_AVAILABLE, open_stream


requires_etf = pytest.mark.skipif(not ERLPACK_AVAILABLE, reason='erlpack is not installed')


async def eventually(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until the predicate holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, 'Condition was never met'
        await asyncio.sleep(0.01)


class FakeClient:
    """Server side of one WebSocket connection made by a session."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.ws = WSConnection(ConnectionType.SERVER)

        self.request: Optional[Request] = None
        self.close_code: Optional[int] = None
        self.messages: List[Dict[str, Any]] = []

        self.finished = asyncio.Event()
        self._pending: Deque[Event] = deque()
        self._text = ''

    async def _next_event(self) -> Event:
        while not self._pending:
            data = await self.reader.read(65536)
            self.ws.receive_data(data or None)
            self._pending.extend(self.ws.events())

            if not data and not self._pending:
                raise EOFError('Client disconnected')

        return self._pending.popleft()

    async def handshake(self) -> None:
        event = await self._next_event()
        assert isinstance(event, Request)
        self.request = event
        await self._write(self.ws.send(AcceptConnection()))

    async def _write(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def send(self, payload: Dict[str, Any]) -> None:
        await self._write(self.ws.send(TextMessage(json.dumps(payload))))

    async def send_bytes(self, data: bytes, *, message_finished: bool = True) -> None:
        await self._write(self.ws.send(BytesMessage(data, message_finished=message_finished)))

    async def dispatch(self, name: str, data: Any, sequence: int) -> None:
        await self.send({'op': 0, 'd': data, 's': sequence, 't': name})

    async def receive(self, timeout: float = 5.0) -> Optional[Dict[str, Any]]:
        """Receive the next JSON payload, None when the client closed."""
        while True:
            event = await asyncio.wait_for(self._next_event(), timeout)

            if isinstance(event, TextMessage):
                self._text += event.data
                if not event.message_finished:
                    continue

                payload = json.loads(self._text)
                self._text = ''
                self.messages.append(payload)
                return payload

            elif isinstance(event, CloseConnection):
                self.close_code = event.code
                if self.ws.state is ConnectionState.REMOTE_CLOSING:
                    await self._write(self.ws.send(event.response()))
                return None

    async def expect(self, op: int, timeout: float = 5.0) -> Dict[str, Any]:
        """Receive payloads until one with the opcode arrives."""
        while True:
            payload = await self.receive(timeout)
            assert payload is not None, f'Connection closed while waiting for op {op}'
            if payload['op'] == op:
                return payload

    async def wait_closed(self, timeout: float = 5.0) -> Optional[int]:
        """Receive until the client closes, returns the close code."""
        try:
            while await self.receive(timeout) is not None:
                pass
        except EOFError:
            pass
        return self.close_code

    async def close(self, code: int) -> None:
        """Start the closing handshake from the server side."""
        await self._write(self.ws.send(CloseConnection(code)))

    def abort(self) -> None:
        self.writer.transport.abort()
        self.finished.set()


class StallingWriter:
    """Stream writer whose peer stops reading once `stalled` is set."""

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer
        self._never = asyncio.Event()
        self.stalled = False

    def __getattr__(self, name: str) -> Any:
        return getattr(self._writer, name)

    def write(self, data: bytes) -> None:
        if not self.stalled:
            self._writer.write(data)

    async def drain(self) -> None:
        if self.stalled:
            await self._never.wait()
        await self._writer.drain()


class StallingConnector:
    """Connector handing out `StallingWriter`s, one per connection."""

    def __init__(self) -> None:
        self.writers: List[StallingWriter] = []

    async def __call__(
        self, host: str, port: int, *, secure: bool
    ) -> Tuple[asyncio.StreamReader, StallingWriter]:
        reader, writer = await open_stream(host, port, secure=secure)
        stalling = StallingWriter(writer)
        self.writers.append(stalling)
        return reader, stalling


class FakeServer:
    """WebSocket server on localhost standing in for Discord."""

    def __init__(self) -> None:
        self.clients: 'asyncio.Queue[FakeClient]' = asyncio.Queue()
        self._all: List[FakeClient] = []
        self.port = 0

    @property
    def uri(self) -> str:
        return f'ws://127.0.0.1:{self.port}'

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._accept, '127.0.0.1', 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        client = FakeClient(reader, writer)
        self._all.append(client)
        try:
            await client.handshake()
        except EOFError:
            return
        await self.clients.put(client)
        await client.finished.wait()

    async def accept(self, timeout: float = 5.0) -> FakeClient:
        return await asyncio.wait_for(self.clients.get(), timeout)

    async def close(self) -> None:
        self.server.close()
        for client in self._all:
            client.abort()
        await self.server.wait_closed()


class FakeMediaServer(asyncio.DatagramProtocol):
    """UDP endpoint of a voice server, answering IP discovery."""

    def __init__(self) -> None:
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.peer: Optional[Tuple[str, int]] = None
        self.packets: 'asyncio.Queue[bytes]' = asyncio.Queue()
        self.keepalives = 0
        self.echo = True

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore

    @property
    def port(self) -> int:
        assert self.transport is not None
        return self.transport.get_extra_info('sockname')[1]

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.peer = addr
        assert self.transport is not None

        if len(data) == 74 and data[:2] == b'\x00\x01':
            ssrc = struct.unpack_from('>I', data, 4)[0]
            response = struct.pack('>HHI64sH', 2, 70, ssrc, addr[0].encode(), addr[1])
            self.transport.sendto(response, addr)
        elif len(data) == 8:
            self.keepalives += 1
            if self.echo:
                self.transport.sendto(data, addr)
        else:
            self.packets.put_nowait(data)

    def send(self, data: bytes) -> None:
        assert self.transport is not None and self.peer is not None
        self.transport.sendto(data, self.peer)

    async def packet(self, timeout: float = 5.0) -> bytes:
        return await asyncio.wait_for(self.packets.get(), timeout)


@pytest_asyncio.fixture
async def gateway_server():
    server = FakeServer()
    await server.start()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def voice_server():
    server = FakeServer()
    await server.start()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def media_server():
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        FakeMediaServer, local_addr=('127.0.0.1', 0)
    )
    yield protocol
    transport.close()
