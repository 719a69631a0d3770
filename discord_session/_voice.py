import enum
import logging
from typing import List, Optional, Tuple, Union

from wsproto.events import CloseConnection

from ._codec import Payload
from ._conn import BaseConnection
from ._crypto import EncryptionMode
from ._opcode import VOICE_CLOSE_CODES, CloseCodeTable, ClosePolicy, VoiceOpcode
from ._rtp import RTPHeader

__all__ = (
    'VoiceState',
    'VoiceConnection',
    'AudioPacketizer',
    'SpeakingTracker',
    'SILENCE_FRAME',
    'normalize_endpoint',
)


_log = logging.getLogger(__name__)


# Opus encoding of 20ms of silence, sent after a burst of audio so that the
# decoders on the other end don't interpolate the last frame.
SILENCE_FRAME = b'\xf8\xff\xfe'

# Speaking flag of the microphone, voice gateway v4
SPEAKING_MICROPHONE = 1 << 0


class VoiceState(enum.Enum):
    DISCONNECTED = 'disconnected'
    HANDSHAKING = 'handshaking'
    SELECTING = 'selecting'
    READY = 'ready'
    CLOSING = 'closing'


def normalize_endpoint(endpoint: str) -> str:
    """Turn the endpoint of a VOICE_SERVER_UPDATE into a WebSocket URI.

    Discord sends the endpoint without a scheme and sometimes with a port of
    80, which would be wrong for a secure WebSocket. Endpoints with an explicit
    scheme are used as-is.
    """
    endpoint = endpoint.strip()
    if not endpoint:
        raise ValueError('Voice endpoint cannot be empty')

    if '://' in endpoint:
        return endpoint

    endpoint = endpoint.rstrip('/')
    if endpoint.endswith(':80'):
        endpoint = endpoint[:-3]

    return f'wss://{endpoint}/'


class VoiceConnection(BaseConnection):
    """Sans-I/O connection to a voice gateway.

    The voice gateway negotiates the UDP connection used for audio. It never
    resumes, every new connection identifies again and negotiates a new SSRC
    and secret key.

    Attributes:
        state: Where in the handshake this connection is.
        ssrc: Synchronization source assigned by the voice server.
        ip: Address of the UDP endpoint to send audio to.
        port: Port of the UDP endpoint.
        modes: Encryption modes offered by the voice server.
        mode: The encryption mode confirmed by the voice server.
        heartbeat_interval: Amount of seconds to sleep between heartbeats.
    """

    opcodes = VoiceOpcode

    state: VoiceState

    ssrc: Optional[int]
    ip: Optional[str]
    port: Optional[int]
    modes: List[str]
    mode: Optional[str]

    def __init__(
        self,
        endpoint: str,
        *,
        server_id: str,
        user_id: str,
        session_id: str,
        token: str,
        dispatch_handled: bool = False,
        close_codes: CloseCodeTable = VOICE_CLOSE_CODES,
    ) -> None:
        self.server_id = server_id
        self.user_id = user_id
        self.session_id = session_id
        self._token = token

        self._secret_key: Optional[bytearray] = None

        super().__init__(
            normalize_endpoint(endpoint), encoding='json', compress=False,
            dispatch_handled=dispatch_handled, close_codes=close_codes,
        )

    def __repr__(self) -> str:
        return f'<VoiceConnection uri={self.uri!r} state={self.state.name} ssrc={self.ssrc}>'

    @property
    def query_params(self) -> str:
        return 'v=4'

    def reconnect(self) -> None:
        """Reinitialize the connection.

        Everything negotiated with the previous connection is discarded,
        including a secret key that was never claimed.
        """
        super().reconnect()
        self.state = VoiceState.DISCONNECTED

        self.ssrc = None
        self.ip = None
        self.port = None
        self.modes = []
        self.mode = None

        self._discard_key()

    def update(self, endpoint: str, *, session_id: str, token: str) -> None:
        """Point the connection at a new voice server, applied on reconnect."""
        self.uri = normalize_endpoint(endpoint)
        self.session_id = session_id
        self._token = token

    def _discard_key(self) -> None:
        if self._secret_key is not None:
            for i in range(len(self._secret_key)):
                self._secret_key[i] = 0
            self._secret_key = None

    def take_secret_key(self) -> bytearray:
        """Claim the secret key from the last SESSION_DESCRIPTION.

        The key is handed over exactly once, the caller is responsible for
        zeroing it (see `EncryptionMode.close()`).

        Raises:
            RuntimeError: There's no key to claim.
        """
        if self._secret_key is None:
            raise RuntimeError('No secret key has been received')

        key, self._secret_key = self._secret_key, None
        return key

    def connect(self) -> bytes:
        self.state = VoiceState.HANDSHAKING
        return super().connect()

    def close(self, code: int = 1000, *, resume: bool = False) -> bytes:
        if not self.closing:
            self.state = VoiceState.CLOSING
        return super().close(code, resume=resume)

    def _closed(self, event: CloseConnection) -> ClosePolicy:
        policy = super()._closed(event)
        self.state = VoiceState.DISCONNECTED
        return policy

    def identify(self) -> bytes:
        """Generate the IDENTIFY command, sent after receiving HELLO."""
        self.should_resume = None

        return self.send(Payload(VoiceOpcode.IDENTIFY, {
            'server_id': self.server_id,
            'user_id': self.user_id,
            'session_id': self.session_id,
            'token': self._token,
        }))

    def select_protocol(self, address: str, port: int, mode: str) -> bytes:
        """Generate the SELECT_PROTOCOL command.

        Parameters:
            address: The external address found through IP discovery.
            port: The external port found through IP discovery.
            mode: The encryption mode to use, one of `modes`.
        """
        if self.state is not VoiceState.SELECTING:
            raise RuntimeError(f'Cannot select a protocol while {self.state.name}')

        if mode not in self.modes:
            raise ValueError(f'Encryption mode {mode!r} was not offered')

        return self.send(Payload(VoiceOpcode.SELECT_PROTOCOL, {
            'protocol': 'udp',
            'data': {'address': address, 'port': port, 'mode': mode},
        }))

    def heartbeat(self, nonce: int) -> bytes:
        """Generate a HEARTBEAT command, the server echoes the nonce back."""
        return self.send(Payload(VoiceOpcode.HEARTBEAT, nonce))

    def speaking(self, flag: Union[bool, int], *, delay: int = 0) -> bytes:
        """Generate a SPEAKING command.

        This has to be sent before audio is sent, and once after the
        SESSION_DESCRIPTION to announce the SSRC.
        """
        if self.ssrc is None:
            raise RuntimeError('Cannot send SPEAKING before READY')

        if isinstance(flag, bool):
            flag = SPEAKING_MICROPHONE if flag else 0

        return self.send(Payload(VoiceOpcode.SPEAKING, {
            'speaking': flag,
            'delay': delay,
            'ssrc': self.ssrc,
        }))

    def _handle_event(self, event: Payload) -> Tuple[bool, Optional[bytes]]:
        if event.op is VoiceOpcode.HELLO:
            self.heartbeat_interval = event.data['heartbeat_interval'] / 1000
            return True, None

        elif event.op is VoiceOpcode.READY:
            self.ssrc = int(event.data['ssrc'])
            self.ip = str(event.data['ip'])
            self.port = int(event.data['port'])
            self.modes = list(event.data['modes'])
            self.state = VoiceState.SELECTING
            return True, None

        elif event.op is VoiceOpcode.SESSION_DESCRIPTION:
            # The key never leaves this object through the event queue
            key = bytearray(event.data.pop('secret_key'))
            self._discard_key()
            self._secret_key = key
            self.mode = event.data['mode']
            self.state = VoiceState.READY
            return True, None

        elif event.op is VoiceOpcode.HEARTBEAT_ACK:
            return False, None

        elif event.op is VoiceOpcode.UNKNOWN:
            _log.debug('Received unknown voice opcode %s.', event.raw_op)

        return True, None


class AudioPacketizer:
    """Turns Opus frames into encrypted RTP packets for one SSRC.

    The sequence and timestamp increase with every packet and wrap around at
    16 and 32 bits respectively.
    """

    __slots__ = ('ssrc', 'mode', 'sequence', 'timestamp')

    def __init__(
        self,
        ssrc: int,
        mode: EncryptionMode,
        *,
        sequence: int = 0,
        timestamp: int = 0
    ) -> None:
        self.ssrc = ssrc
        self.mode = mode
        self.sequence = sequence & 0xFFFF
        self.timestamp = timestamp & 0xFFFFFFFF

    def packet(self, opus: bytes, samples: int = 960) -> bytes:
        """Build the next packet, `samples` is the amount per channel in the frame."""
        header = RTPHeader(self.sequence, self.timestamp, self.ssrc)
        data = self.mode.encrypt(header, opus)

        self.sequence = (self.sequence + 1) & 0xFFFF
        self.timestamp = (self.timestamp + samples) & 0xFFFFFFFF
        return data


class SpeakingTracker:
    """Decides when the speaking state has to be sent.

    Attributes:
        threshold: Seconds without frames after which speaking stops.
        speaking: Whether the voice server was last told we're speaking.
    """

    __slots__ = ('threshold', 'speaking', '_last_frame')

    def __init__(self, threshold: float) -> None:
        self.threshold = threshold
        self.speaking = False
        self._last_frame: Optional[float] = None

    def frame(self, now: float) -> bool:
        """Record a frame being sent.

        Returns:
            True when speaking has to be sent before this frame.
        """
        self._last_frame = now
        if self.speaking:
            return False

        self.speaking = True
        return True

    def idle(self, now: float) -> bool:
        """Check whether the burst of audio has ended.

        Returns:
            True exactly once when the time since the last frame exceeds the
            threshold, speaking should stop.
        """
        if not self.speaking or self._last_frame is None:
            return False

        if now - self._last_frame <= self.threshold:
            return False

        self.speaking = False
        return True

    def reset(self) -> None:
        self.speaking = False
        self._last_frame = None
