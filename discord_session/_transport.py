"""Network layer used by the sessions.

The sans-I/O connections only consume and produce bytes, this module moves
those bytes over asyncio streams (the WebSocket) and datagram endpoints (voice
audio). Sessions accept replacements of `open_stream` and `open_datagram` which
makes it possible to test them against in-process servers.
"""

import asyncio
import logging
import ssl
from typing import Optional, Tuple, Union, cast

from wsproto.utilities import LocalProtocolError, RemoteProtocolError

from ._conn import BaseConnection

__all__ = (
    'open_stream',
    'WebSocketStream',
    'MediaProtocol',
    'MediaSocket',
    'open_datagram',
)


_log = logging.getLogger(__name__)

READ_SIZE = 65536


async def open_stream(
    host: str,
    port: int,
    *,
    secure: bool
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open the TCP socket of a WebSocket, wrapped in TLS when `secure`."""
    context = ssl.create_default_context() if secure else None
    return await asyncio.open_connection(
        host, port, ssl=context, server_hostname=host if secure else None
    )


class WebSocketStream:
    """Pumps bytes between one sans-I/O connection and an asyncio stream."""

    def __init__(
        self,
        conn: BaseConnection,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter
    ) -> None:
        self.conn = conn
        self.reader = reader
        self.writer = writer

        # Sends from different tasks must not interleave
        self._lock = asyncio.Lock()

    async def send(self, data: Optional[bytes]) -> None:
        if not data:
            return

        async with self._lock:
            self.writer.write(data)
            await self.writer.drain()

    async def receive_some(self) -> None:
        """Read once from the socket and feed it to the connection.

        Responses the connection generates (pongs, heartbeats) are sent right
        away. Decoded events are left in the connection's `events()`.

        Raises:
            CloseDiscordConnection: The WebSocket was closed.
            ConnectionRejected: The WebSocket upgrade was refused.
            EOFError: The socket was closed before the WebSocket was open.
            ConnectionError: The peer violated the WebSocket protocol.
        """
        data = await self.reader.read(READ_SIZE)

        try:
            responses = self.conn.receive(data or None)
        except (LocalProtocolError, RemoteProtocolError) as exc:
            raise ConnectionError(f'WebSocket protocol error: {exc}') from exc

        for response in responses:
            await self.send(response)

        if not data:
            # wsproto raises CloseDiscordConnection on EOF once the WebSocket
            # is open, this happens during the HTTP handshake.
            raise EOFError('Connection closed by the peer')

    def abort(self) -> None:
        """Close the socket immediately, without a closing handshake."""
        # Also effective after close(), which waits for the buffer to drain
        self.writer.transport.abort()

    async def close(self, timeout: Optional[float] = None) -> None:
        """Close the socket, aborting it if it takes longer than `timeout`.

        Closing waits for buffered data to be written, which never happens
        when the peer has stopped reading.
        """
        if self.writer.is_closing():
            return

        self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), timeout)
        except asyncio.TimeoutError:
            _log.debug('Socket did not close in time, aborting it.')
            self.abort()
        except (OSError, ssl.SSLError) as exc:
            # The socket is closed either way
            _log.debug('Error while closing the socket: %r', exc)


class MediaProtocol(asyncio.DatagramProtocol):
    """Datagram protocol putting received packets on a bounded queue.

    When the queue is full the newest packets are dropped and counted, audio
    that cannot be consumed in time is worthless anyway. Errors are put on the
    queue so that whoever is waiting for a packet fails immediately.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.queue: 'asyncio.Queue[Union[bytes, Exception]]' = asyncio.Queue(maxsize)

        self.dropped = 0
        self.last_received: Optional[float] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = cast(asyncio.DatagramTransport, transport)
        _log.debug('UDP endpoint created.')

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.last_received = asyncio.get_running_loop().time()

        try:
            self.queue.put_nowait(data)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped % 100 == 1:
                _log.warning('UDP receive queue is full, dropped %s packets.', self.dropped)

    def error_received(self, exc: Exception) -> None:
        _log.warning('UDP error: %r', exc)
        self._propagate_error(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            _log.warning('UDP endpoint lost: %r', exc)
            self._propagate_error(exc)
        else:
            _log.debug('UDP endpoint closed.')
            self._propagate_error(ConnectionAbortedError('UDP endpoint closed'))
        self.transport = None

    def _propagate_error(self, exc: Exception) -> None:
        try:
            self.queue.put_nowait(exc)
        except asyncio.QueueFull:
            # The error is more important than the oldest packet
            self.queue.get_nowait()
            self.queue.put_nowait(exc)


class MediaSocket:
    """UDP endpoint connected to one voice server."""

    def __init__(
        self,
        transport: asyncio.DatagramTransport,
        protocol: MediaProtocol,
        address: Tuple[str, int]
    ) -> None:
        self.transport = transport
        self.protocol = protocol
        self.address = address

    @property
    def closed(self) -> bool:
        return self.transport.is_closing()

    @property
    def dropped(self) -> int:
        """Amount of received packets dropped because the queue was full."""
        return self.protocol.dropped

    @property
    def last_received(self) -> Optional[float]:
        """Loop time of the last received datagram."""
        return self.protocol.last_received

    def send(self, packet: bytes) -> None:
        if self.transport.is_closing():
            raise ConnectionAbortedError('UDP endpoint closed')

        # sendto() never blocks, the kernel drops what it can't buffer
        self.transport.sendto(packet)

    async def receive(self, timeout: Optional[float] = None) -> bytes:
        """Wait for the next datagram.

        Raises:
            asyncio.TimeoutError: Nothing was received within `timeout`.
            OSError: The endpoint failed or was closed.
        """
        item = await asyncio.wait_for(self.protocol.queue.get(), timeout)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        if not self.transport.is_closing():
            self.transport.close()


async def open_datagram(host: str, port: int, *, queue_size: int = 256) -> MediaSocket:
    """Create a UDP endpoint connected to the voice server."""
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: MediaProtocol(queue_size), remote_addr=(host, port)
    )
    _log.debug('Opened UDP endpoint to %s:%s.', host, port)
    return MediaSocket(
        cast(asyncio.DatagramTransport, transport), cast(MediaProtocol, protocol), (host, port)
    )
