import platform
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from ._backoff import ExponentialBackoff
from ._codec import ERLPACK_AVAILABLE
from ._crypto import MAX_OVERHEAD, SUPPORTED_MODES
from ._opcode import GATEWAY_CLOSE_CODES, VOICE_CLOSE_CODES, CloseCodeTable
from ._rtp import RTP_HEADER_SIZE

__all__ = (
    'BackoffConfig',
    'GatewayConfig',
    'VoiceConfig',
    'default_properties',
)


def default_properties() -> Dict[str, Any]:
    """Connection properties sent when IDENTIFYing."""
    return {
        'os': platform.system().lower(),
        'browser': 'discord-session',
        'device': 'discord-session',
    }


@dataclass(frozen=True)
class BackoffConfig:
    """Bounds of the reconnection backoff.

    Attributes:
        base: Delay ceiling of the first non-resume attempt in seconds.
        maximum: Upper bound of any delay in seconds.
        resume_delay: Fixed delay before promptly resuming after a close.
        max_attempts:
            Consecutive failed attempts after which reconnecting is given up
            as fatal. None retries forever, until the caller cancels.
    """

    base: float = 1.0
    maximum: float = 60.0
    resume_delay: float = 0.5
    max_attempts: Optional[int] = None

    def __post_init__(self) -> None:
        # Let ExponentialBackoff do the validation
        self.create()

    def create(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            self.base, self.maximum,
            resume_delay=self.resume_delay, max_attempts=self.max_attempts,
        )


def _check_positive(**values: Optional[float]) -> None:
    for name, value in values.items():
        if value is not None and value <= 0:
            raise ValueError(f'{name} must be positive, got {value!r}')


@dataclass(frozen=True)
class GatewayConfig:
    """Configuration of a `GatewaySession`.

    Attributes:
        token: The Discord authorization token.
        intents: Intents indicating what events will be received.
        uri: Gateway URI, from the Get Gateway (Bot) endpoint.
        encoding: Either 'json' or 'etf'.
        compress:
            'zlib-stream' for transport compression, True for payload
            compression or False for none.
        properties: Identify connection properties, see `default_properties()`.
        shard: A two-integer tuple of the shard ID and shard count.
        presence: Initial presence information.
        large_threshold: Member count at which a guild is considered large.
        heartbeat_jitter: Fraction of the interval to delay the first beat with.
        backoff: Reconnection backoff bounds.
        close_codes: Classification of close codes, see `CloseCodeTable`.
        event_queue_size: Amount of events buffered for the caller.
        outbound_queue_size: Amount of commands buffered for sending.
        connect_timeout: Seconds to wait for the socket and the HELLO.
        shutdown_timeout: Upper bound of seconds `close()` waits on the peer.
    """

    token: str
    intents: int
    uri: str = 'wss://gateway.discord.gg'
    encoding: str = 'json'
    compress: Union[str, bool] = 'zlib-stream'
    properties: Dict[str, Any] = field(default_factory=default_properties)
    shard: Optional[Tuple[int, int]] = None
    presence: Optional[Dict[str, Any]] = None
    large_threshold: Optional[int] = None
    heartbeat_jitter: float = 1.0
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    close_codes: CloseCodeTable = GATEWAY_CLOSE_CODES
    event_queue_size: int = 1024
    outbound_queue_size: int = 128
    connect_timeout: float = 30.0
    shutdown_timeout: float = 5.0

    def __post_init__(self) -> None:
        if self.encoding not in ('json', 'etf'):
            raise ValueError(f"encoding must be 'json' or 'etf', got {self.encoding!r}")

        if self.encoding == 'etf' and not ERLPACK_AVAILABLE:
            raise ValueError("ETF encoding not available without 'erlpack' installed")

        if self.compress not in ('zlib-stream', True, False):
            raise ValueError(f'Unknown compression {self.compress!r}')

        if not 0.0 <= self.heartbeat_jitter <= 1.0:
            raise ValueError('heartbeat_jitter must be between 0 and 1')

        _check_positive(
            event_queue_size=self.event_queue_size,
            outbound_queue_size=self.outbound_queue_size,
            connect_timeout=self.connect_timeout,
            shutdown_timeout=self.shutdown_timeout,
        )


@dataclass(frozen=True)
class VoiceConfig:
    """Configuration of a `VoiceSession`.

    Attributes:
        mode_preference: Encryption modes in order of preference.
        heartbeat_jitter: Fraction of the interval to delay the first beat with.
        backoff: Reconnection backoff bounds.
        close_codes: Classification of voice close codes.
        audio_queue_size: Amount of outbound Opus frames buffered.
        receive_queue_size: Amount of inbound voice packets buffered.
        event_queue_size: Amount of signaling events buffered.
        frame_duration: Seconds of audio in one Opus frame.
        silence_threshold:
            Seconds without outbound frames after which speaking stops.
        silence_frames: Opus silence frames sent before speaking stops.
        keepalive_interval: Seconds between UDP keepalives.
        udp_timeout:
            Seconds without any inbound datagram (keepalive echoes included)
            after which the UDP path is considered dead. None disables this.
        discovery_timeout: Seconds to wait for the IP discovery response.
        max_packet_size:
            Largest datagram to send or expect, see `max_frame_size` for the
            Opus frames this leaves room for.
        connect_timeout: Seconds to wait for the voice connection to be ready.
        shutdown_timeout: Upper bound of seconds `close()` waits on the peer.
    """

    mode_preference: Tuple[str, ...] = SUPPORTED_MODES
    heartbeat_jitter: float = 1.0
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    close_codes: CloseCodeTable = VOICE_CLOSE_CODES
    audio_queue_size: int = 50
    receive_queue_size: int = 256
    event_queue_size: int = 256
    frame_duration: float = 0.02
    silence_threshold: float = 0.1
    silence_frames: int = 5
    keepalive_interval: float = 5.0
    udp_timeout: Optional[float] = 60.0
    discovery_timeout: float = 5.0
    max_packet_size: int = 1460
    connect_timeout: float = 30.0
    shutdown_timeout: float = 5.0

    def __post_init__(self) -> None:
        if not self.mode_preference:
            raise ValueError('mode_preference cannot be empty')

        unknown = set(self.mode_preference).difference(SUPPORTED_MODES)
        if unknown:
            raise ValueError(f"Unsupported encryption modes: {', '.join(sorted(unknown))}")

        if not 0.0 <= self.heartbeat_jitter <= 1.0:
            raise ValueError('heartbeat_jitter must be between 0 and 1')

        if self.silence_frames < 0:
            raise ValueError('silence_frames cannot be negative')

        _check_positive(
            audio_queue_size=self.audio_queue_size,
            receive_queue_size=self.receive_queue_size,
            event_queue_size=self.event_queue_size,
            frame_duration=self.frame_duration,
            silence_threshold=self.silence_threshold,
            keepalive_interval=self.keepalive_interval,
            udp_timeout=self.udp_timeout,
            discovery_timeout=self.discovery_timeout,
            max_packet_size=self.max_packet_size,
            connect_timeout=self.connect_timeout,
            shutdown_timeout=self.shutdown_timeout,
        )

        if self.max_frame_size <= 0:
            raise ValueError(
                f'max_packet_size must be larger than {RTP_HEADER_SIZE + MAX_OVERHEAD}'
            )

    @property
    def max_frame_size(self) -> int:
        """Largest Opus frame that fits in `max_packet_size` in any mode."""
        return self.max_packet_size - RTP_HEADER_SIZE - MAX_OVERHEAD
