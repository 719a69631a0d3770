import asyncio
import logging
import time
from typing import (
    Any, AsyncIterator, Awaitable, Callable, List, Optional, Tuple, Union
)

from ._backoff import ErrorKind, classify, fatal_error
from ._codec import Payload
from ._config import VoiceConfig
from ._conn import RESUME_CLOSE_CODE
from ._crypto import EncryptionMode, choose_mode, create_mode
from ._errors import (
    CloseDiscordConnection, CodecError, FatalSessionError, HeartbeatTimeout,
    Malformed, SessionError
)
from ._events import (
    ClientDisconnect, SpeakingUpdate, StateChanged, VoiceCredentials,
    get_or_closed
)
from ._heartbeat import Heartbeat
from ._opcode import VoiceOpcode
from ._rtp import (
    RTP_HEADER_SIZE, DiscoveryResult, VoicePacket, build_discovery_packet,
    build_keepalive_packet, is_rtcp, parse_discovery_packet
)
from ._transport import MediaSocket, WebSocketStream, open_datagram, open_stream
from ._voice import (
    SILENCE_FRAME, AudioPacketizer, SpeakingTracker, VoiceConnection,
    VoiceState
)

__all__ = (
    'VoiceSession',
)


_log = logging.getLogger(__name__)

SAMPLE_RATE = 48000

VoiceEvent = Union[SpeakingUpdate, ClientDisconnect, StateChanged]


class VoiceSession:
    """A connection to a voice server, sending and receiving Opus audio.

    The session is usually created by `GatewaySession.join_voice()`, which
    gathers the credentials from the gateway. Audio is sent with
    `send_audio()` in frames of `frame_duration` and received as decrypted
    `VoicePacket`s through `receive_audio()` or `audio()`.

    Voice connections cannot be resumed, whenever the connection drops the
    whole handshake is repeated which negotiates a new SSRC and secret key.
    """

    def __init__(
        self,
        credentials: VoiceCredentials,
        config: Optional[VoiceConfig] = None,
        *,
        connector: Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]] = open_stream,
        datagram_factory: Callable[..., Awaitable[MediaSocket]] = open_datagram,
    ) -> None:
        if credentials.endpoint is None:
            raise ValueError('Voice credentials are missing the endpoint')

        self.credentials = credentials
        self.config = config = config or VoiceConfig()

        self._connector = connector
        self._datagram_factory = datagram_factory

        self._conn = VoiceConnection(
            credentials.endpoint,
            server_id=credentials.guild_id,
            user_id=credentials.user_id,
            session_id=credentials.session_id,
            token=credentials.token,
            dispatch_handled=True,
            close_codes=config.close_codes,
        )
        self._backoff = config.backoff.create()
        self._heartbeat = Heartbeat(
            self._send_heartbeat, on_dead=self._heartbeat_dead,
            jitter=config.heartbeat_jitter, name='voice heartbeat',
        )

        self._state = VoiceState.DISCONNECTED
        self._stream: Optional[WebSocketStream] = None
        self._runner: Optional['asyncio.Task[None]'] = None
        # Set by the media tasks to make the current connection reconnect
        self._epoch_error: Optional[BaseException] = None

        self._socket: Optional[MediaSocket] = None
        self._mode: Optional[EncryptionMode] = None
        self._packetizer: Optional[AudioPacketizer] = None
        self._tracker = SpeakingTracker(config.silence_threshold)
        self._next_frame: Optional[float] = None

        self._audio: 'asyncio.Queue[bytes]' = asyncio.Queue(config.audio_queue_size)
        self._received: 'asyncio.Queue[VoicePacket]' = asyncio.Queue(config.receive_queue_size)
        self._events: 'asyncio.Queue[VoiceEvent]' = asyncio.Queue(config.event_queue_size)

        self._ready = asyncio.Event()
        self._closed = asyncio.Event()
        self._closing = False
        self._error: Optional[FatalSessionError] = None

        self.dropped_packets = 0

    def __repr__(self) -> str:
        return (
            f'<VoiceSession guild_id={self.credentials.guild_id!r} '
            f'state={self._state.name} ssrc={self.ssrc}>'
        )

    async def __aenter__(self) -> 'VoiceSession':
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def state(self) -> VoiceState:
        return self._state

    @property
    def ssrc(self) -> Optional[int]:
        return self._conn.ssrc

    @property
    def mode(self) -> Optional[str]:
        """Name of the encryption mode in use."""
        return self._mode.name if self._mode is not None else None

    @property
    def speaking(self) -> bool:
        return self._tracker.speaking

    @property
    def latency(self) -> float:
        return self._heartbeat.latency

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def start(self) -> None:
        if self._runner is not None:
            raise RuntimeError('Voice session has already been started')

        self._runner = asyncio.get_running_loop().create_task(
            self._run(), name=f'voice-session-{self.credentials.guild_id}'
        )

    async def connect(self, *, timeout: Optional[float] = None) -> None:
        """Start the session and wait until audio can be sent.

        Raises:
            FatalSessionError: The session failed before becoming READY.
            asyncio.TimeoutError: It took longer than `timeout`.
        """
        if self._runner is None:
            await self.start()

        ready = asyncio.ensure_future(self._ready.wait())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, closed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            ready.cancel()
            closed.cancel()

        if not done:
            raise asyncio.TimeoutError()

        if not self._ready.is_set():
            if self._error is not None:
                raise self._error
            raise RuntimeError('Voice session was closed before becoming READY')

    async def wait_closed(self) -> Optional[FatalSessionError]:
        await self._closed.wait()
        return self._error

    async def close(self) -> None:
        """Disconnect from the voice server.

        The secret key is zeroed immediately, any queued audio is discarded.
        """
        if self._closing:
            await self._closed.wait()
            return

        self._closing = True
        _log.info('Closing voice session for guild %s.', self.credentials.guild_id)

        runner = self._runner
        if runner is not None and not runner.done():
            stream = self._stream
            if stream is not None and self._conn.open:
                timeout = self.config.shutdown_timeout
                loop = asyncio.get_running_loop()
                deadline = loop.time() + timeout
                try:
                    await asyncio.wait_for(stream.send(self._conn.close(1000)), timeout)
                    await asyncio.wait_for(asyncio.shield(runner), max(deadline - loop.time(), 0))
                except (asyncio.TimeoutError, OSError) as exc:
                    _log.debug('Voice server did not complete the closing handshake: %r', exc)
                    stream.abort()

            if not runner.done():
                runner.cancel()
                await asyncio.wait({runner})

        self._discard_media()
        self._conn.reconnect()

        while not self._audio.empty():
            self._audio.get_nowait()

        self._finish(None)

    async def leave(self) -> None:
        """Close the session after leaving the voice channel."""
        await self.close()

    def update(self, credentials: VoiceCredentials) -> None:
        """Apply new credentials, Discord moved us to another voice server.

        Reconnects when the voice server or token changed.
        """
        if credentials.endpoint is None:
            # Discord is still allocating the new server
            return

        previous, self.credentials = self.credentials, credentials
        if (
            previous.endpoint == credentials.endpoint
            and previous.token == credentials.token
            and previous.session_id == credentials.session_id
        ):
            return

        _log.info('Voice server for guild %s changed, reconnecting.', credentials.guild_id)
        self._conn.update(
            credentials.endpoint, session_id=credentials.session_id, token=credentials.token
        )
        self._fail_epoch(ConnectionResetError('Voice server changed'))

    async def send_audio(self, opus: bytes) -> None:
        """Queue one Opus frame of `frame_duration` to be sent.

        Frames are paced in real time, this waits when the queue is full.

        Raises:
            ValueError: The frame is larger than `config.max_frame_size`.
            RuntimeError: The session has been closed.
        """
        if self._closing or self._closed.is_set():
            raise RuntimeError('Cannot send audio on a closed voice session')

        if len(opus) > self.config.max_frame_size:
            raise ValueError(
                f'Opus frame of {len(opus)} bytes exceeds {self.config.max_frame_size} bytes'
            )

        await self._audio.put(bytes(opus))

    async def receive_audio(self) -> Optional[VoicePacket]:
        """Wait for the next decrypted voice packet.

        Returns:
            The packet, or None once the session has been closed.
        """
        return await get_or_closed(self._received, self._closed)

    async def audio(self) -> AsyncIterator[VoicePacket]:
        """Iterate over received voice packets until the session is closed."""
        while True:
            packet = await self.receive_audio()
            if packet is None:
                return
            yield packet

    async def events(self) -> AsyncIterator[VoiceEvent]:
        """Iterate over voice events until the session is closed.

        Raises:
            FatalSessionError: The session stopped because of a fatal error.
        """
        while True:
            event = await get_or_closed(self._events, self._closed)
            if event is None:
                if self._error is not None:
                    raise self._error
                return
            yield event

    def _put_event(self, event: VoiceEvent) -> None:
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            _log.warning('Voice event queue is full, dropped %s.', type(event).__name__)

    def _set_state(self, state: VoiceState) -> None:
        if state is self._state:
            return

        previous, self._state = self._state, state
        _log.debug('Voice state %s -> %s.', previous.name, state.name)
        self._put_event(StateChanged(previous, state))

    def _finish(self, error: Optional[FatalSessionError]) -> None:
        if self._closed.is_set():
            return

        self._heartbeat.stop()
        self._error = error
        self._set_state(VoiceState.DISCONNECTED)
        self._closed.set()

    def _discard_media(self) -> None:
        """Forget everything tied to the current voice connection."""
        if self._socket is not None:
            self._socket.close()
            self._socket = None

        if self._mode is not None:
            self._mode.close()
            self._mode = None

        self._packetizer = None
        self._tracker.reset()
        self._next_frame = None

    def _fail_epoch(self, exc: BaseException) -> None:
        """Make the current connection fail with `exc` and reconnect."""
        stream = self._stream
        if stream is None:
            return

        if self._epoch_error is None:
            self._epoch_error = exc
        stream.abort()

    async def _send_heartbeat(self) -> None:
        stream = self._stream
        if stream is None or self._conn.closing:
            return

        await stream.send(self._conn.heartbeat(int(time.time() * 1000)))

    async def _heartbeat_dead(self) -> None:
        stream = self._stream
        if stream is None:
            return

        if self._epoch_error is None:
            self._epoch_error = HeartbeatTimeout('Voice heartbeat was not acknowledged')

        try:
            await asyncio.wait_for(
                stream.send(self._conn.close(RESUME_CLOSE_CODE, resume=True)),
                self.config.shutdown_timeout
            )
        except (asyncio.TimeoutError, OSError) as exc:
            _log.debug('Could not send the closing frame: %r', exc)
        finally:
            stream.abort()

    async def _run(self) -> None:
        try:
            while not self._closing:
                try:
                    await self._run_once()
                except Exception as exc:
                    if self._closing:
                        return

                    if classify(exc) is ErrorKind.FATAL:
                        raise

                    self._set_state(VoiceState.DISCONNECTED)

                    delay = self._backoff.delay(resume=self._conn.should_resume is not False)
                    _log.warning(
                        'Voice connection lost (%r), reconnecting in %.2fs.', exc, delay
                    )
                    await asyncio.sleep(delay)
                else:
                    return
        except Exception as exc:
            if isinstance(exc, SessionError):
                _log.error('Voice session stopped: %s', exc)
            else:
                _log.exception('Voice session stopped unexpectedly.')

            error = fatal_error(exc)
            self._discard_media()
            self._finish(error)

    async def _run_once(self) -> None:
        self._conn.reconnect()
        self._discard_media()
        self._epoch_error = None

        host, port = self._conn.destination
        _log.info('Connecting to voice server %s:%s.', host, port)

        reader, writer = await asyncio.wait_for(
            self._connector(host, port, secure=self._conn.secure),
            self.config.connect_timeout
        )
        stream = WebSocketStream(self._conn, reader, writer)
        self._stream = stream
        media: List['asyncio.Task[None]'] = []

        try:
            await stream.send(self._conn.connect())
            self._set_state(VoiceState.HANDSHAKING)

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.config.connect_timeout

            while True:
                try:
                    if self._state is not VoiceState.READY:
                        await asyncio.wait_for(
                            stream.receive_some(), max(deadline - loop.time(), 0)
                        )
                    else:
                        await stream.receive_some()
                except Exception as exc:
                    if self._epoch_error is not None:
                        raise self._epoch_error from exc

                    if isinstance(exc, CloseDiscordConnection):
                        try:
                            await asyncio.wait_for(
                                stream.send(exc.data), self.config.shutdown_timeout
                            )
                        except (asyncio.TimeoutError, OSError) as err:
                            _log.debug('Could not reply to the closing frame: %r', err)

                        if self._closing:
                            return
                    raise

                for payload in self._conn.events():
                    await self._handle_payload(stream, payload)

                if self._state is VoiceState.READY and not media:
                    socket, mode, packetizer = self._socket, self._mode, self._packetizer
                    if socket is None or mode is None or packetizer is None:
                        raise RuntimeError('Voice session is READY without a media path')

                    media = [
                        loop.create_task(
                            self._media(self._sender(stream, socket, packetizer)),
                            name='voice-sender'
                        ),
                        loop.create_task(
                            self._media(self._receiver(socket, mode)), name='voice-receiver'
                        ),
                        loop.create_task(
                            self._media(self._keepalive(socket)), name='voice-keepalive'
                        ),
                    ]
        finally:
            self._heartbeat.stop()
            for task in media:
                task.cancel()
            if media:
                await asyncio.wait(media)

            self._stream = None
            await stream.close(self.config.shutdown_timeout)

    async def _handle_payload(self, stream: WebSocketStream, payload: Payload) -> None:
        if payload.op is VoiceOpcode.HELLO:
            interval = self._conn.heartbeat_interval
            if interval is None:
                raise RuntimeError('HELLO was handled without a heartbeat interval')
            self._heartbeat.start(interval)
            await stream.send(self._conn.identify())

        elif payload.op is VoiceOpcode.READY:
            self._set_state(VoiceState.SELECTING)
            await self._select_protocol(stream)

        elif payload.op is VoiceOpcode.SESSION_DESCRIPTION:
            self._start_media()
            # Announces our SSRC to the other clients
            await stream.send(self._conn.speaking(False))

            _log.info(
                'Voice session for guild %s is ready, using %s.',
                self.credentials.guild_id, self.mode
            )
            self._backoff.reset()
            self._set_state(VoiceState.READY)
            self._ready.set()

        elif payload.op is VoiceOpcode.HEARTBEAT_ACK:
            self._heartbeat.record_ack()

        elif payload.op is VoiceOpcode.SPEAKING:
            data = payload.data if isinstance(payload.data, dict) else {}
            if 'user_id' in data and 'ssrc' in data:
                self._put_event(SpeakingUpdate(
                    str(data['user_id']), int(data['ssrc']), data.get('speaking', 0)
                ))

        elif payload.op is VoiceOpcode.CLIENT_DISCONNECT:
            data = payload.data if isinstance(payload.data, dict) else {}
            if 'user_id' in data:
                self._put_event(ClientDisconnect(str(data['user_id'])))

        else:
            _log.debug('Received voice %s.', payload.op.name)

    async def _select_protocol(self, stream: WebSocketStream) -> None:
        ip, port, ssrc = self._conn.ip, self._conn.port, self._conn.ssrc
        if ip is None or port is None or ssrc is None:
            raise Malformed('Voice READY is missing the UDP address or SSRC')

        mode = choose_mode(self._conn.modes, self.config.mode_preference)

        self._socket = socket = await self._datagram_factory(
            ip, port, queue_size=self.config.receive_queue_size
        )
        result = await self._discover(socket, ssrc)
        _log.debug('Discovered external address %s:%s.', result.address, result.port)

        await stream.send(self._conn.select_protocol(result.address, result.port, mode))

    async def _discover(self, socket: MediaSocket, ssrc: int) -> DiscoveryResult:
        """Find our external address through the voice server."""
        socket.send(build_discovery_packet(ssrc))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.discovery_timeout
        while True:
            data = await socket.receive(max(deadline - loop.time(), 0))
            try:
                return parse_discovery_packet(data)
            except Malformed as exc:
                _log.debug('Ignoring datagram during IP discovery: %s', exc)

    def _start_media(self) -> None:
        name, ssrc = self._conn.mode, self._conn.ssrc
        if name is None or ssrc is None:
            raise RuntimeError('Session description received before READY')

        key = self._conn.take_secret_key()
        try:
            self._mode = mode = create_mode(name, key)
        finally:
            for i in range(len(key)):
                key[i] = 0

        self._packetizer = AudioPacketizer(ssrc, mode)
        self._tracker.reset()
        self._next_frame = None

    async def _media(self, coro: Awaitable[None]) -> None:
        try:
            await coro
        except Exception as exc:
            if self._closing:
                return

            _log.warning('Voice media failed: %r', exc)
            self._fail_epoch(exc)

    async def _send_frame(
        self,
        socket: MediaSocket,
        packetizer: AudioPacketizer,
        opus: bytes
    ) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        duration = self.config.frame_duration

        if self._next_frame is None or now - self._next_frame > duration * 5:
            # Fell too far behind, don't burst to catch up
            self._next_frame = now
        elif self._next_frame > now:
            await asyncio.sleep(self._next_frame - now)

        socket.send(packetizer.packet(opus, int(SAMPLE_RATE * duration)))
        self._next_frame += duration

    async def _sender(
        self,
        stream: WebSocketStream,
        socket: MediaSocket,
        packetizer: AudioPacketizer
    ) -> None:
        loop = asyncio.get_running_loop()

        while True:
            timeout = self.config.silence_threshold if self._tracker.speaking else None
            try:
                opus = await asyncio.wait_for(self._audio.get(), timeout)
            except asyncio.TimeoutError:
                if self._tracker.idle(loop.time()):
                    for _ in range(self.config.silence_frames):
                        await self._send_frame(socket, packetizer, SILENCE_FRAME)
                    await stream.send(self._conn.speaking(False))
                continue

            if self._tracker.frame(loop.time()):
                await stream.send(self._conn.speaking(True))

            await self._send_frame(socket, packetizer, opus)

    async def _receiver(self, socket: MediaSocket, mode: EncryptionMode) -> None:
        while True:
            data = await socket.receive()

            # Keepalive echoes and RTCP reports carry no audio
            if len(data) <= RTP_HEADER_SIZE or is_rtcp(data):
                continue

            if len(data) > self.config.max_packet_size:
                self.dropped_packets += 1
                _log.debug('Dropping voice packet of %s bytes.', len(data))
                continue

            try:
                packet = mode.decrypt(data)
            except CodecError as exc:
                self.dropped_packets += 1
                _log.debug('Dropping voice packet: %s', exc)
                continue

            try:
                self._received.put_nowait(packet)
            except asyncio.QueueFull:
                self.dropped_packets += 1

    async def _keepalive(self, socket: MediaSocket) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        counter = 0

        while True:
            await asyncio.sleep(self.config.keepalive_interval)

            if self.config.udp_timeout is not None:
                last = socket.last_received or started
                if loop.time() - last > self.config.udp_timeout:
                    raise ConnectionError(
                        f'No UDP packets received for {self.config.udp_timeout}s'
                    )

            socket.send(build_keepalive_packet(counter))
            counter += 1
