import enum
import logging
from collections import deque
from typing import (
    Any, Deque, Dict, Generator, List, Optional, Sequence, Tuple, Type, Union
)
from urllib.parse import urlencode, urlsplit

from wsproto import ConnectionType, WSConnection
from wsproto.connection import ConnectionState
from wsproto.events import (
    BytesMessage, CloseConnection, Event, Ping, RejectConnection, Request,
    TextMessage
)

from ._codec import (
    ERLPACK_AVAILABLE, Payload, ZlibStreamInflator, decode_frame,
    encode_frame, inflate_payload
)
from ._errors import (
    CloseDiscordConnection, CodecError, ConnectionRejected, Malformed
)
from ._opcode import (
    GATEWAY_CLOSE_CODES, CloseCodeTable, ClosePolicy, Opcode, VoiceOpcode
)

__all__ = (
    'GatewayState',
    'BaseConnection',
    'GatewayConnection',
)


_log = logging.getLogger(__name__)


# Closing with 1000 or 1001 invalidates the session on Discord's side, any
# other code keeps it around to be resumed.
RESUME_CLOSE_CODE = 1008


class GatewayState(enum.Enum):
    DISCONNECTED = 'disconnected'
    HANDSHAKING = 'handshaking'
    IDENTIFYING = 'identifying'
    RESUMING = 'resuming'
    READY = 'ready'
    CLOSING = 'closing'


def split_uri(uri: str) -> Tuple[bool, str, int, str]:
    """Split a WebSocket URI into whether it's secure, host, port and path.

    URIs without a scheme are assumed to be secure WebSockets.
    """
    if '://' not in uri:
        uri = 'wss://' + uri

    parts = urlsplit(uri)
    secure = parts.scheme in ('wss', 'https')

    if not parts.hostname:
        raise ValueError(f'Invalid WebSocket URI {uri!r}')

    return secure, parts.hostname, parts.port or (443 if secure else 80), parts.path or '/'


class BaseConnection:
    """Sans-I/O WebSocket connection to one of Discord's gateways.

    This wraps a `wsproto.WSConnection` object, decoding and encoding the
    JSON (or ETF) envelope. Subclasses implement the specific protocol in
    `_handle_event()`.
    """

    opcodes: Type[Union[Opcode, VoiceOpcode]] = Opcode

    uri: str
    encoding: str
    compress: Union[str, bool]
    close_codes: CloseCodeTable

    should_resume: Optional[bool]
    heartbeat_interval: Optional[float]
    dropped_frames: int

    def __init__(
        self,
        uri: str,
        *,
        encoding: str = 'json',
        compress: Union[str, bool] = False,
        dispatch_handled: bool = False,
        close_codes: CloseCodeTable = GATEWAY_CLOSE_CODES,
    ) -> None:
        if encoding not in ('json', 'etf'):
            raise ValueError(f"encoding must be 'json' or 'etf', got {encoding!r}")

        if encoding == 'etf' and not ERLPACK_AVAILABLE:
            raise ValueError("ETF encoding not available without 'erlpack' installed")

        # Validates the URI early instead of when connecting
        split_uri(uri)

        self.uri = uri
        self.encoding = encoding
        self.compress = compress
        self.close_codes = close_codes

        self.dispatch_handled = dispatch_handled

        self.should_resume = None
        self.dropped_frames = 0

        self._events: Deque[Payload] = deque()  # Buffer of events received

        # This will initialize the rest of the attributes
        self.reconnect()

    @property
    def query_params(self) -> str:
        """Query parameters to add to the URL depending on values chosen."""
        raise NotImplementedError()

    @property
    def connect_uri(self) -> str:
        """The URI that the next connection should be opened to."""
        return self.uri

    @property
    def secure(self) -> bool:
        """Whether TLS should be used for the TCP socket."""
        return split_uri(self.connect_uri)[0]

    @property
    def destination(self) -> Tuple[str, int]:
        """Generate a destination to connect to in the form of a tuple.

        The tuple has two items representing the host and port to open a TCP
        socket to.
        """
        _, host, port, _ = split_uri(self.connect_uri)
        return host, port

    @property
    def target(self) -> str:
        """The request target (path and query) of the upgrade request."""
        return split_uri(self.connect_uri)[3] + '?' + self.query_params

    @property
    def closing(self) -> bool:
        """Whether the connection is closing.

        When this is true no heartbeat should be sent as a closing handshake
        is in progress. The best course of action is to simply skip sending
        the heartbeat and sleep another heartbeat interval.
        """
        return self._proto.state in {
            ConnectionState.CLOSED, ConnectionState.LOCAL_CLOSING,
            ConnectionState.REMOTE_CLOSING
        }

    @property
    def open(self) -> bool:
        """Whether the WebSocket is open and commands can be sent."""
        return self._proto.state is ConnectionState.OPEN

    def _encode(self, payload: Payload) -> Event:
        """Prepare a payload to be sent to the gateway.

        This method will encode the payload in the configured encoding - either
        a JSON TextMessage Frame or ETF BytesMessage frame.
        """
        data = encode_frame(payload, encoding=self.encoding)
        if isinstance(data, str):
            return TextMessage(data)
        return BytesMessage(data)

    def reconnect(self) -> None:
        """Reinitialize the connection.

        This should be called when the TCP socket is re-established and will
        reset the internal state of the WebSocket to handle a new connection.

        The `should_resume` attribute is not reset, it has been set when
        disconnecting and decides what to do after reconnecting.
        """
        self._proto = WSConnection(ConnectionType.CLIENT)

        self.heartbeat_interval = None

        self._bytes_buffer = bytearray()
        self._text_buffer = ''
        self._inflator = ZlibStreamInflator()

    def events(self) -> Generator[Payload, None, None]:
        """Generator that yields events which have been received.

        In general it is recommended to call this in a for-loop anytime data
        has been received as to handle whatever was received.

        This will consume an internal deque until no more items can be removed
        and return, meaning that events are removed when retrieved so that no
        duplicates appear.
        """
        while True:
            try:
                yield self._events.popleft()
            except IndexError:
                # There are no more events to consume
                return

    def connect(self) -> bytes:
        """Generate the switching protocols bytes to convert to a WebSocket."""
        host, port = self.destination
        default_port = 443 if self.secure else 80
        if port != default_port:
            host = f'{host}:{port}'

        return self._proto.send(Request(host=host, target=self.target))

    def send(self, payload: Payload) -> bytes:
        """Generate the bytes to send an arbitrary payload.

        Raises:
            RuntimeError: The WebSocket isn't open.
        """
        if not self.open:
            raise RuntimeError(f'Cannot send {payload.op!r} while the WebSocket is not open')

        return self._proto.send(self._encode(payload))

    def close(self, code: int = 1001, *, resume: bool = False) -> bytes:
        """Generate the bytes to send a closing frame to the WebSocket.

        After having sent this you should continue receiving bytes and calling
        `receive()` until `CloseDiscordConnection` is raised at which point the
        TCP socket should be closed.

        Parameters:
            code:
                The reasoning of closing the WebSocket as close code. Both 1000
                and 1001 (default) close the session which means when
                reconnecting a new session has to be created using an IDENTIFY.
            resume:
                Whether the session should be resumed after reconnecting. The
                close code should not be 1000 or 1001 in that case.

        Returns:
            The bytes to send, empty if the connection is already closing.
        """
        self.should_resume = resume

        if self.closing:
            return b''

        return self._proto.send(CloseConnection(code))

    def _decode_message(self, event: Union[TextMessage, BytesMessage]) -> Optional[Payload]:
        """Decode a WebSocket message, None if more data is needed."""
        if isinstance(event, TextMessage):
            # Compressed message will only show up as ByteMessage events,
            # we can interpret this as a full JSON payload.
            self._text_buffer += event.data

            if not event.message_finished:
                return None

            raw: Union[str, bytes, bytearray] = self._text_buffer
            self._text_buffer = ''
            return decode_frame(raw, encoding='json', opcodes=self.opcodes)

        if self.compress == 'zlib-stream':
            # A payload can span multiple messages, the suffix decides
            inflated = self._inflator.feed(event.data)
            if inflated is None:
                return None
            return decode_frame(inflated, encoding=self.encoding, opcodes=self.opcodes)

        self._bytes_buffer.extend(event.data)

        if not event.message_finished:
            return None

        raw = self._bytes_buffer
        self._bytes_buffer = bytearray()

        if self.compress is True:
            return decode_frame(inflate_payload(raw), encoding=self.encoding, opcodes=self.opcodes)

        elif self.encoding == 'etf':
            return decode_frame(raw, encoding='etf', opcodes=self.opcodes)

        raise Malformed('Received bytes message when no compression specified')

    def _handle_event(self, event: Payload) -> Tuple[Optional[bool], Optional[bytes]]:
        """Handle a Discord event and potentially send a response.

        It returns a tuple, the first item is a bool whether the event should
        be returned to the user (None to discard it altogether) and the second
        item is a potential response in bytes.
        """
        raise NotImplementedError()

    def _closed(self, event: CloseConnection) -> ClosePolicy:
        """Update the state after the closing handshake, returns the policy."""
        if self.should_resume is None:
            # This wasn't initiated by us, the close code tells what to do
            policy = self.close_codes.lookup(event.code)
            self.should_resume = policy is ClosePolicy.RESUME
            return policy

        return ClosePolicy.RESUME if self.should_resume else ClosePolicy.REIDENTIFY

    def receive(self, data: Optional[bytes]) -> List[bytes]:
        """Receive data from the WebSocket.

        This method may return new data to send back, in cases such as PING
        frames or HEARTBEAT events which require an immediate HEARTBEAT command
        be sent back to it.

        Frames that cannot be decoded are dropped and counted in
        `dropped_frames`, they never interrupt the connection.

        Parameters:
            data: The bytes received from the TCP socket, None on EOF.

        Raises:
            ConnectionRejected: Discord refused the WebSocket upgrade.
            CloseDiscordConnection:
                The WebSocket has been closed and the TCP socket should be
                closed after sending the `data` attribute (if not None).

        Returns:
            A list of bytes to respond back with. See `events()` for how to
            get the events received.
        """
        # WSProto uses None instead of an empty byte string.
        if data is not None and len(data) == 0:
            data = None

        self._proto.receive_data(data)

        res = []

        for event in self._proto.events():
            if isinstance(event, Ping):
                res.append(self._proto.send(event.response()))
                continue

            elif isinstance(event, RejectConnection):
                raise ConnectionRejected(event)

            elif isinstance(event, CloseConnection):
                policy = self._closed(event)

                if self._proto.state == ConnectionState.CLOSED:
                    # We initiated the closing and have now received a reply,
                    # WSProto yields a CloseConnection to the initiatior (us)
                    raise CloseDiscordConnection(None, event.code, event.reason, policy)
                else:
                    # It should be ConnectionState.REMOTE_CLOSING and we need
                    # to reply to the closure
                    raise CloseDiscordConnection(
                        self._proto.send(event.response()), event.code, event.reason, policy
                    )

            elif not isinstance(event, (TextMessage, BytesMessage)):
                # Any other event we have received shouldn't be decoded.
                continue

            try:
                payload = self._decode_message(event)
                if payload is None:
                    continue

                dispatch, response = self._handle_event(payload)
            except CodecError as exc:
                self._drop(exc, res)
                continue
            except (KeyError, TypeError, ValueError) as exc:
                # The envelope was fine but the inner data was not
                self._drop(Malformed(f'Unexpected payload data: {exc!r}'), res)
                continue

            if dispatch is None:
                # Discarded, even with `dispatch_handled`
                continue

            if self.dispatch_handled or dispatch:
                self._events.append(payload)

            if response is not None:
                res.append(response)

        return res

    def _drop(self, exc: CodecError, res: List[bytes]) -> None:
        self.dropped_frames += 1
        _log.warning('Dropping frame that could not be decoded: %s', exc)

        if self._inflator.broken and not self.closing:
            # The zlib context is shared by the whole connection and there is
            # no way to resynchronize it other than reconnecting.
            res.append(self.close(RESUME_CLOSE_CODE, resume=True))


class GatewayConnection(BaseConnection):
    """Main class representing a connection to the Discord gateway.

    This wraps a `wsproto.WSConnection` object to provide an sans-I/O
    implementation that should be wrapped with a network layer, such as
    `GatewaySession`.

    Attributes:
        uri: The URI that was configured to connect to.
        encoding: Either 'json' or 'etf' for the encoding used.
        compress:
            If a boolean, indicates whether to use payload compression. On the
            other hand, if a string indicates the transport compression to use
            (can only be 'zlib-stream' at the moment).
        state: Where in the connection lifecycle this connection is.
        session_id: The session ID from Discord.
        sequence: Current sequence of events, used when resuming.
        resume_url: Alternate gateway URI to RESUME the session at.
        user_id: ID of the user logged in, from the READY event.
        heartbeat_interval: Amount of seconds to sleep between heartbeats.
        should_resume:
            Whether the session should be resumed after reconnecting, None if
            the connection wasn't closed.
    """

    opcodes = Opcode

    state: GatewayState

    session_id: Optional[str]
    sequence: Optional[int]
    resume_url: Optional[str]
    user_id: Optional[str]

    def __init__(
        self,
        uri: str,
        *,
        encoding: str = 'json',
        compress: Union[str, bool] = False,
        dispatch_handled: bool = False,
        close_codes: CloseCodeTable = GATEWAY_CLOSE_CODES,
    ) -> None:
        """Initialize a Discord Connection.

        The parameters passed here will be used when initializing the WebSocket
        connection to Discord.

        Parameters:
            uri:
                URI to open a websocket to. This should be requested from the
                Get Gateway or Get Gateway Bot endpoints.
            encoding:
                Encoding to use, either JSON or binary ETF. If using ETF the
                client cannot send compressed messages to the server.
                Snowflakes are also transmitted as 64-bit integers as opposed
                to strings. Either 'json' for JSON, or 'etf' for binary ETF.
            compress:
                Transport compression to use, this is different from payload
                compression and both cannot be used at the same time. Payload
                compression is specified when IDENTIFYing. Specify
                'zlib-stream' for transport compression.
            dispatch_handled:
                Whether to dispatch automatically handled events. Examples of
                these types of events are HEARTBEAT_ACK and RECONNECT. When
                this is set to False these events are not dispatched.
            close_codes:
                How to treat each close code, whether to RESUME, IDENTIFY
                again or give up.
        """
        self.session_id = None
        self.sequence = None
        self.resume_url = None
        self.user_id = None

        super().__init__(
            uri, encoding=encoding, compress=compress,
            dispatch_handled=dispatch_handled, close_codes=close_codes,
        )

    @property
    def query_params(self) -> str:
        quote: Dict[str, Any] = {'v': 10, 'encoding': self.encoding}
        if self.compress == 'zlib-stream':
            quote['compress'] = self.compress
        return urlencode(quote)

    @property
    def can_resume(self) -> bool:
        """Whether the next connection should RESUME rather than IDENTIFY."""
        return self.session_id is not None and self.should_resume is not False

    @property
    def connect_uri(self) -> str:
        if self.resume_url is not None and self.can_resume:
            return self.resume_url
        return self.uri

    def reconnect(self) -> None:
        """Reinitialize the connection.

        This should be called when the TCP socket is re-established and will
        reset the internal state of the WebSocket to handle a new connection.

        If the previous connection was closed in a way that doesn't allow
        resuming, the session is discarded here.
        """
        if self.should_resume is False:
            self.invalidate()

        super().reconnect()
        self.state = GatewayState.DISCONNECTED

    def invalidate(self) -> None:
        """Discard the session, the next connection has to IDENTIFY."""
        self.session_id = None
        self.sequence = None
        self.resume_url = None

    def connect(self) -> bytes:
        """Generate the switching protocols bytes to convert to a WebSocket.

        The next step in the bootstrapping process is to continously receive
        and send data until an HELLO event and the first HEARTBEAT command
        has been sent.
        """
        self.state = GatewayState.HANDSHAKING
        return super().connect()

    def close(self, code: int = 1001, *, resume: bool = False) -> bytes:
        if not self.closing:
            self.state = GatewayState.CLOSING
        return super().close(code, resume=resume)

    def heartbeat(self) -> bytes:
        """Generate a HEARTBEAT command to send.

        Tracking whether the HEARTBEAT was acknowledged is left to the caller,
        see `Heartbeat`, HEARTBEAT_ACK events are dispatched when
        `dispatch_handled` is enabled.
        """
        return self.send(Payload(Opcode.HEARTBEAT, self.sequence))

    def _closed(self, event: CloseConnection) -> ClosePolicy:
        policy = super()._closed(event)
        self.state = GatewayState.DISCONNECTED
        return policy

    def _handle_event(self, event: Payload) -> Tuple[Optional[bool], Optional[bytes]]:
        """Handle a Discord event and potentially send a response.

        Because there are several ways that data can be received this has been
        separated into another internal method. It returns a tuple, the first
        item is a bool whether the event should be returned to the user and the
        second item is a potential response in bytes. Duplicate dispatches
        return None, they are never returned.
        """
        if event.sequence is not None:
            if (
                event.op is Opcode.DISPATCH and self.sequence is not None
                and event.sequence <= self.sequence
            ):
                # Already delivered before a RESUME replayed it
                _log.debug('Skipping duplicate dispatch with sequence %s.', event.sequence)
                return None, None

            self.sequence = event.sequence

        if event.op is Opcode.HEARTBEAT:
            # Discord has sent a HEARTBEAT and expects an immediate response
            return False, None if self.closing else self.heartbeat()

        elif event.op is Opcode.HEARTBEAT_ACK:
            # Acknowlegment of our heartbeat
            return False, None

        elif event.op is Opcode.HELLO:
            # Discord sends the interval in milliseconds
            self.heartbeat_interval = event.data['heartbeat_interval'] / 1000
            return True, None

        elif event.op is Opcode.DISPATCH and event.name == 'READY':
            self.session_id = event.data['session_id']
            self.resume_url = event.data.get('resume_gateway_url')
            user = event.data.get('user')
            if isinstance(user, dict):
                self.user_id = str(user.get('id'))
            self.state = GatewayState.READY
            return True, None

        elif event.op is Opcode.DISPATCH and event.name == 'RESUMED':
            self.state = GatewayState.READY
            return True, None

        elif event.op is Opcode.RECONNECT:
            # Discord wants us to reconnect and resume, because of how the
            # WebSocket protocol works the server will respond with a
            # CloseConnection message and we raise the CloseDiscordConnection
            # exception there.
            # There really isn't a completely fitting error code here
            return False, self.close(RESUME_CLOSE_CODE, resume=True)

        elif event.op is Opcode.INVALID_SESSION:
            # This is documented to be sent if:
            # - The gateway could not initialize a session from an IDENTIFY
            # - The gateway could not resume a session
            # - The gateway has invalidated an active session
            # The 'd' key indicates whether we should resume
            return False, self.close(RESUME_CLOSE_CODE, resume=bool(event.data))

        elif event.op is Opcode.UNKNOWN:
            _log.debug('Received unknown opcode %s.', event.raw_op)

        return True, None

    def identify(
        self,
        *,
        token: str,
        intents: int,
        properties: Dict[str, Any],
        compress: bool = False,
        large_threshold: Optional[int] = None,
        shard: Optional[Sequence[int]] = None,
        presence: Optional[Dict[str, Any]] = None,
    ) -> bytes:
        """Generate an initial IDENTIFY payload.

        Consider using `resume()` if possible, there is a ratelimit on how
        often you can IDENTIFY.

        Parameters:
            token: The Discord authorization token to IDENTIFY with.
            intents: Intents indicating what events will be received.
            properties: Properties about the connection.
            compress: Whether to use payload compression.
            large_threshold: How big a guild has to be to be considered large.
            shard: A two-integer tuple specifying the shard ID.
            presence: Initial presence information to start with.

        Returns:
            The bytes returned should be directly sent to the TCP socket.
        """
        self.should_resume = None  # Reset the state for the next reconnection
        self.invalidate()

        data: Dict[str, Any] = {
            'token': token,
            'intents': intents,
            'properties': properties
        }

        if compress:
            if self.compress == 'zlib-stream':
                raise ValueError('Payload compression cannot be combined with transport compression')
            data['compress'] = True
            self.compress = True

        if large_threshold is not None:
            data['large_threshold'] = large_threshold

        if shard is not None:
            data['shard'] = list(shard)

        if presence is not None:
            data['presence'] = presence

        payload = self.send(Payload(Opcode.IDENTIFY, data))
        self.state = GatewayState.IDENTIFYING
        return payload

    def resume(self, token: str) -> bytes:
        """Generate a RESUME command from the current state.

        Parameters:
            token: The Discord authorization token to RESUME with.

        Raises:
            RuntimeError: There is no session to resume.

        Returns:
            The bytes to send to the TCP socket.
        """
        if self.session_id is None:
            raise RuntimeError('Cannot RESUME without a session, IDENTIFY instead')

        self.should_resume = None

        payload = self.send(Payload(Opcode.RESUME, {
            'token': token,
            'session_id': self.session_id,
            'seq': self.sequence
        }))
        self.state = GatewayState.RESUMING
        return payload

    def presence_update(
        self,
        *,
        status: str = 'online',
        activities: Optional[List[Dict[str, Any]]] = None,
        afk: bool = False,
        since: Optional[int] = None,
    ) -> bytes:
        """Generate a PRESENCE_UPDATE command."""
        return self.send(Payload(Opcode.PRESENCE_UPDATE, {
            'since': since,
            'activities': activities or [],
            'status': status,
            'afk': afk,
        }))

    def voice_state_update(
        self,
        guild_id: Optional[str],
        channel_id: Optional[str],
        *,
        self_mute: bool = False,
        self_deaf: bool = False,
    ) -> bytes:
        """Generate a VOICE_STATE_UPDATE command to join, move or leave.

        Passing None as `channel_id` disconnects from voice in the guild.
        """
        return self.send(Payload(Opcode.VOICE_STATE_UPDATE, {
            'guild_id': guild_id,
            'channel_id': channel_id,
            'self_mute': self_mute,
            'self_deaf': self_deaf,
        }))

    def request_guild_members(
        self,
        guild_id: str,
        *,
        query: str = '',
        limit: int = 0,
        presences: bool = False,
        user_ids: Optional[List[str]] = None,
        nonce: Optional[str] = None,
    ) -> bytes:
        """Generate a REQUEST_GUILD_MEMBERS command.

        Members are received in GUILD_MEMBERS_CHUNK dispatch events.
        """
        data: Dict[str, Any] = {'guild_id': guild_id, 'limit': limit, 'presences': presences}

        if user_ids is not None:
            data['user_ids'] = user_ids
        else:
            data['query'] = query

        if nonce is not None:
            data['nonce'] = nonce

        return self.send(Payload(Opcode.REQUEST_GUILD_MEMBERS, data))
