import asyncio
import logging
from collections import deque
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional,
    Tuple, Union
)

from ._backoff import ErrorKind, classify, fatal_error
from ._codec import Payload
from ._config import GatewayConfig, VoiceConfig
from ._conn import RESUME_CLOSE_CODE, GatewayConnection, GatewayState
from ._errors import (
    CloseDiscordConnection, FatalSessionError, HeartbeatTimeout, SessionError
)
from ._events import (
    Dispatch, StateChanged, VoiceCredentials, VoiceServerAssigned,
    get_or_closed
)
from ._heartbeat import Heartbeat
from ._opcode import Opcode
from ._transport import WebSocketStream, open_datagram, open_stream
from ._voice_session import VoiceSession

__all__ = (
    'GatewaySession',
)


_log = logging.getLogger(__name__)


GatewayEvent = Union[Dispatch, StateChanged, VoiceServerAssigned]
Connector = Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class GatewaySession:
    """A connection to the Discord gateway kept alive in the background.

    The session reconnects on its own when the connection drops, resuming the
    session where possible, until `close()` is called or a fatal error occurs.

    Example:

        async with GatewaySession(GatewayConfig(token, intents)) as session:
            async for event in session.events():
                if isinstance(event, Dispatch) and event.name == 'MESSAGE_CREATE':
                    ...
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        connector: Connector = open_stream,
        datagram_factory: Callable[..., Awaitable[Any]] = open_datagram,
    ) -> None:
        self.config = config

        self._connector = connector
        self._datagram_factory = datagram_factory

        self._conn = GatewayConnection(
            config.uri,
            encoding=config.encoding,
            compress='zlib-stream' if config.compress == 'zlib-stream' else False,
            dispatch_handled=True,
            close_codes=config.close_codes,
        )
        self._backoff = config.backoff.create()
        self._heartbeat = Heartbeat(
            self._send_heartbeat, on_dead=self._heartbeat_dead,
            jitter=config.heartbeat_jitter, name='gateway heartbeat',
        )

        self._state = GatewayState.DISCONNECTED
        self._stream: Optional[WebSocketStream] = None
        self._runner: Optional['asyncio.Task[None]'] = None
        # Whether the heartbeat declared the current connection dead
        self._zombied = False

        self._events: 'asyncio.Queue[GatewayEvent]' = asyncio.Queue(config.event_queue_size)
        # Events waiting for room in the queue, the read loop never waits on the caller
        self._backlog: Deque[GatewayEvent] = deque()
        self._delivery: Optional['asyncio.Task[None]'] = None
        self._outbound: 'asyncio.Queue[Payload]' = asyncio.Queue(config.outbound_queue_size)
        # Command taken off the queue which still has to be sent
        self._unsent: Optional[Payload] = None

        self._ready = asyncio.Event()
        self._closed = asyncio.Event()
        self._closing = False
        self._error: Optional[FatalSessionError] = None

        self._voice: Dict[str, VoiceSession] = {}
        self._voice_pending: Dict[str, Dict[str, Any]] = {}
        self._joins: Dict[str, 'asyncio.Future[VoiceCredentials]'] = {}

    def __repr__(self) -> str:
        return f'<GatewaySession state={self._state.name} session_id={self.session_id!r}>'

    async def __aenter__(self) -> 'GatewaySession':
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def state(self) -> GatewayState:
        return self._state

    @property
    def session_id(self) -> Optional[str]:
        return self._conn.session_id

    @property
    def sequence(self) -> Optional[int]:
        return self._conn.sequence

    @property
    def resume_url(self) -> Optional[str]:
        return self._conn.resume_url

    @property
    def user_id(self) -> Optional[str]:
        return self._conn.user_id

    @property
    def latency(self) -> float:
        """Seconds between the last heartbeat and its acknowledgement."""
        return self._heartbeat.latency

    @property
    def dropped_frames(self) -> int:
        return self._conn.dropped_frames

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def voice_sessions(self) -> Dict[str, VoiceSession]:
        return dict(self._voice)

    async def start(self) -> None:
        """Start connecting in the background."""
        if self._runner is not None:
            raise RuntimeError('Gateway session has already been started')

        self._runner = asyncio.get_running_loop().create_task(
            self._run(), name='gateway-session'
        )

    async def connect(self, *, timeout: Optional[float] = None) -> None:
        """Start the session and wait until it is READY.

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
            raise RuntimeError('Gateway session was closed before becoming READY')

    async def wait_closed(self) -> Optional[FatalSessionError]:
        """Wait until the session has stopped.

        Returns:
            The fatal error that stopped the session, None if it was closed.
        """
        await self._closed.wait()
        return self._error

    async def close(self) -> None:
        """Close the session and every voice session it spawned.

        A normal closure is sent, which means the session cannot be resumed
        afterwards. This completes within the configured `shutdown_timeout`
        even if Discord doesn't reply.
        """
        if self._closing:
            await self._closed.wait()
            return

        self._closing = True
        _log.info('Closing gateway session.')

        await self._close_voice()

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
                    _log.debug('Gateway did not complete the closing handshake: %r', exc)
                    stream.abort()

            if not runner.done():
                runner.cancel()
                await asyncio.wait({runner})

        self._conn.invalidate()
        self._finish(None)

    async def events(self) -> AsyncIterator[GatewayEvent]:
        """Iterate over events in the order they were received.

        The iterator stops when the session is closed.

        Raises:
            FatalSessionError: The session stopped because of a fatal error.
        """
        while True:
            event = await get_or_closed(self._events, self._closed)
            if event is None and self._backlog:
                event = self._backlog.popleft()

            if event is None:
                if self._error is not None:
                    raise self._error
                return
            yield event

    async def send(self, payload: Payload) -> None:
        """Queue a command to be sent once the session is READY.

        This waits when too many commands are already queued.
        """
        if self._closing or self._closed.is_set():
            raise RuntimeError('Cannot send commands on a closed gateway session')

        await self._outbound.put(payload)

    async def update_presence(
        self,
        *,
        status: str = 'online',
        activities: Optional[List[Dict[str, Any]]] = None,
        afk: bool = False,
        since: Optional[int] = None,
    ) -> None:
        await self.send(Payload(Opcode.PRESENCE_UPDATE, {
            'since': since,
            'activities': activities or [],
            'status': status,
            'afk': afk,
        }))

    async def update_voice_state(
        self,
        guild_id: str,
        channel_id: Optional[str],
        *,
        self_mute: bool = False,
        self_deaf: bool = False,
    ) -> None:
        await self.send(Payload(Opcode.VOICE_STATE_UPDATE, {
            'guild_id': guild_id,
            'channel_id': channel_id,
            'self_mute': self_mute,
            'self_deaf': self_deaf,
        }))

    async def request_guild_members(
        self,
        guild_id: str,
        *,
        query: str = '',
        limit: int = 0,
        presences: bool = False,
        user_ids: Optional[List[str]] = None,
        nonce: Optional[str] = None,
    ) -> None:
        data: Dict[str, Any] = {'guild_id': guild_id, 'limit': limit, 'presences': presences}
        if user_ids is not None:
            data['user_ids'] = user_ids
        else:
            data['query'] = query
        if nonce is not None:
            data['nonce'] = nonce

        await self.send(Payload(Opcode.REQUEST_GUILD_MEMBERS, data))

    async def join_voice(
        self,
        guild_id: str,
        channel_id: str,
        *,
        config: Optional[VoiceConfig] = None,
        self_mute: bool = False,
        self_deaf: bool = False,
        timeout: float = 30.0,
    ) -> VoiceSession:
        """Join a voice channel and connect to its voice server.

        If there's already a voice session in the guild, this moves it to the
        other channel instead.

        Raises:
            asyncio.TimeoutError: Discord didn't assign a voice server in time.
            FatalSessionError: The voice session could not be established.
        """
        guild_id = str(guild_id)

        existing = self._voice.get(guild_id)
        if existing is not None and not existing.closed:
            await self.update_voice_state(
                guild_id, channel_id, self_mute=self_mute, self_deaf=self_deaf
            )
            return existing

        future = asyncio.get_running_loop().create_future()
        self._joins[guild_id] = future
        self._voice_pending.pop(guild_id, None)

        try:
            await self.update_voice_state(
                guild_id, channel_id, self_mute=self_mute, self_deaf=self_deaf
            )
            credentials = await asyncio.wait_for(future, timeout)
        finally:
            self._joins.pop(guild_id, None)

        voice = VoiceSession(
            credentials, config,
            connector=self._connector, datagram_factory=self._datagram_factory,
        )
        self._voice[guild_id] = voice

        try:
            await voice.connect()
        except BaseException:
            self._voice.pop(guild_id, None)
            await voice.close()
            raise

        return voice

    async def leave_voice(self, guild_id: str) -> None:
        """Disconnect from voice in the guild."""
        guild_id = str(guild_id)

        self._voice_pending.pop(guild_id, None)
        voice = self._voice.pop(guild_id, None)
        if voice is not None:
            await voice.leave()

        await self.update_voice_state(guild_id, None)

    async def _close_voice(self) -> None:
        voices = list(self._voice.values())
        self._voice.clear()

        for voice in voices:
            await voice.leave()

        for future in self._joins.values():
            if not future.done():
                future.cancel()

    def _set_state(self, state: GatewayState) -> None:
        if state is self._state:
            return

        previous, self._state = self._state, state
        _log.debug('Gateway state %s -> %s.', previous.name, state.name)

        self._emit(StateChanged(previous, state))

    def _emit(self, event: GatewayEvent) -> None:
        """Hand an event to the caller without blocking the read loop.

        Events that don't fit in the queue are kept in the backlog, in order,
        until the caller catches up. Heartbeats and voice assignments keep
        being processed meanwhile.
        """
        if not self._backlog:
            try:
                self._events.put_nowait(event)
                return
            except asyncio.QueueFull:
                _log.debug('Event queue is full, delivering events in the background.')

        self._backlog.append(event)
        if len(self._backlog) % self.config.event_queue_size == 0:
            _log.warning('Events are not being consumed, %s are waiting.', len(self._backlog))

        if not self._closed.is_set() and (self._delivery is None or self._delivery.done()):
            self._delivery = asyncio.get_running_loop().create_task(
                self._deliver(), name='gateway-events'
            )

    async def _deliver(self) -> None:
        while self._backlog:
            await self._events.put(self._backlog[0])
            # Only removed once queued, events() takes over after closing
            self._backlog.popleft()

    def _finish(self, error: Optional[FatalSessionError]) -> None:
        if self._closed.is_set():
            return

        self._heartbeat.stop()
        self._error = error
        self._set_state(GatewayState.DISCONNECTED)

        if self._delivery is not None:
            self._delivery.cancel()
            self._delivery = None
        self._closed.set()

    async def _send_heartbeat(self) -> None:
        stream = self._stream
        if stream is None or self._conn.closing:
            # A closing handshake is in progress, skip this heartbeat
            return

        await stream.send(self._conn.heartbeat())

    async def _heartbeat_dead(self) -> None:
        """Terminate a zombied connection so that the read loop fails."""
        stream = self._stream
        if stream is None:
            return

        self._zombied = True
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

                    kind = classify(exc)
                    if kind is ErrorKind.FATAL:
                        raise

                    self._set_state(GatewayState.DISCONNECTED)

                    delay = self._backoff.delay(resume=self._conn.can_resume)
                    _log.warning(
                        'Gateway connection lost (%r), reconnecting in %.2fs.', exc, delay
                    )
                    await asyncio.sleep(delay)
                else:
                    # This only returns once the session is closing
                    return
        except Exception as exc:
            if isinstance(exc, SessionError):
                _log.error('Gateway session stopped: %s', exc)
            else:
                _log.exception('Gateway session stopped unexpectedly.')

            error = fatal_error(exc)

            self._conn.invalidate()
            self._finish(error)
            await self._close_voice()

    async def _run_once(self) -> None:
        self._conn.reconnect()
        self._zombied = False

        host, port = self._conn.destination
        _log.info('Connecting to the gateway at %s:%s.', host, port)

        reader, writer = await asyncio.wait_for(
            self._connector(host, port, secure=self._conn.secure),
            self.config.connect_timeout
        )
        stream = WebSocketStream(self._conn, reader, writer)
        self._stream = stream
        sender: Optional['asyncio.Task[None]'] = None

        try:
            await stream.send(self._conn.connect())
            self._set_state(GatewayState.HANDSHAKING)

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.config.connect_timeout

            while True:
                try:
                    if self._conn.heartbeat_interval is None:
                        await asyncio.wait_for(
                            stream.receive_some(), max(deadline - loop.time(), 0)
                        )
                    else:
                        await stream.receive_some()
                except Exception as exc:
                    # The sequence already moved past these, a RESUME won't replay them
                    await self._flush_dispatches()

                    if self._zombied:
                        raise HeartbeatTimeout('Heartbeat was not acknowledged') from exc

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

                if self._conn.state is GatewayState.READY and sender is None:
                    sender = loop.create_task(self._sender(stream), name='gateway-sender')
        finally:
            self._heartbeat.stop()
            if sender is not None:
                sender.cancel()
                await asyncio.wait({sender})

            self._stream = None
            await stream.close(self.config.shutdown_timeout)

    async def _sender(self, stream: WebSocketStream) -> None:
        while True:
            if self._unsent is None:
                self._unsent = await self._outbound.get()

            payload = self._unsent
            _log.debug('Sending %s.', payload.op.name)
            try:
                await stream.send(self._conn.send(payload))
            except (OSError, RuntimeError) as exc:
                # Kept for the next connection, the read loop notices the failure
                _log.debug('Could not send %s: %r', payload.op.name, exc)
                return

            self._unsent = None

    async def _handle_payload(self, stream: WebSocketStream, payload: Payload) -> None:
        if payload.op is Opcode.HELLO:
            interval = self._conn.heartbeat_interval
            if interval is None:
                raise RuntimeError('HELLO was handled without a heartbeat interval')
            self._heartbeat.start(interval)

            if self._conn.can_resume:
                _log.info('Resuming session at sequence %s.', self._conn.sequence)
                await stream.send(self._conn.resume(self.config.token))
            else:
                _log.info('Identifying with the gateway.')
                await stream.send(self._conn.identify(
                    token=self.config.token,
                    intents=self.config.intents,
                    properties=self.config.properties,
                    compress=self.config.compress is True,
                    large_threshold=self.config.large_threshold,
                    shard=self.config.shard,
                    presence=self.config.presence,
                ))
            self._set_state(self._conn.state)

        elif payload.op is Opcode.HEARTBEAT_ACK:
            self._heartbeat.record_ack()

        elif payload.op is Opcode.DISPATCH:
            await self._dispatch(payload)

        else:
            _log.debug('Received %s.', payload.op.name)

    async def _flush_dispatches(self) -> None:
        for payload in self._conn.events():
            if payload.op is Opcode.DISPATCH:
                await self._dispatch(payload)

    async def _dispatch(self, payload: Payload) -> None:
        if payload.name in ('READY', 'RESUMED'):
            _log.info('Gateway session is %s.', payload.name)
            self._backoff.reset()
            self._set_state(GatewayState.READY)
            self._ready.set()

        self._emit(Dispatch(payload.name or '', payload.data, payload.sequence))

        if payload.name == 'VOICE_STATE_UPDATE':
            await self._voice_state_update(payload.data)
        elif payload.name == 'VOICE_SERVER_UPDATE':
            await self._voice_server_update(payload.data)

    async def _voice_state_update(self, data: Dict[str, Any]) -> None:
        if self.user_id is None or str(data.get('user_id')) != self.user_id:
            return

        guild_id = str(data.get('guild_id'))
        channel_id = data.get('channel_id')

        if channel_id is None:
            # Disconnected from voice, either by us or someone else
            self._voice_pending.pop(guild_id, None)
            voice = self._voice.pop(guild_id, None)
            if voice is not None:
                await voice.leave()
            return

        pending = self._voice_pending.setdefault(guild_id, {})
        pending['session_id'] = data.get('session_id')
        pending['channel_id'] = str(channel_id)
        await self._assign_voice(guild_id, server_update=False)

    async def _voice_server_update(self, data: Dict[str, Any]) -> None:
        guild_id = str(data.get('guild_id'))

        pending = self._voice_pending.setdefault(guild_id, {})
        pending['token'] = data.get('token')
        # A null endpoint means the voice server went away and Discord is
        # allocating a new one, another update follows.
        pending['endpoint'] = data.get('endpoint')
        await self._assign_voice(guild_id, server_update=True)

    async def _assign_voice(self, guild_id: str, *, server_update: bool) -> None:
        pending = self._voice_pending[guild_id]

        if not all(pending.get(key) for key in ('session_id', 'channel_id', 'token', 'endpoint')):
            return

        if pending.get('assigned') and not server_update:
            credentials = self._credentials(guild_id, pending)
            voice = self._voice.get(guild_id)
            if voice is not None:
                voice.update(credentials)
            return

        pending['assigned'] = True
        credentials = self._credentials(guild_id, pending)
        _log.info('Voice server assigned for guild %s.', guild_id)

        self._emit(VoiceServerAssigned(credentials))

        voice = self._voice.get(guild_id)
        if voice is not None:
            voice.update(credentials)

        future = self._joins.get(guild_id)
        if future is not None and not future.done():
            future.set_result(credentials)

    def _credentials(self, guild_id: str, pending: Dict[str, Any]) -> VoiceCredentials:
        return VoiceCredentials(
            guild_id=guild_id,
            channel_id=pending['channel_id'],
            user_id=str(self.user_id),
            session_id=pending['session_id'],
            token=pending['token'],
            endpoint=pending['endpoint'],
        )
