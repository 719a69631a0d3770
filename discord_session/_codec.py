import zlib
from typing import Any, Dict, NamedTuple, Optional, Type, Union

from ._errors import DecompressionFailed, Malformed
from ._opcode import Opcode, VoiceOpcode

try:
    from erlpack import pack as etf_pack
    from erlpack import unpack as etf_unpack
    ERLPACK_AVAILABLE = True
except ImportError:
    # There is no fallback, we raise an exception later on.
    ERLPACK_AVAILABLE = False

try:
    from ujson import dumps as json_dumps
    from ujson import loads as json_loads
except ImportError:
    from json import dumps as json_dumps
    from json import loads as json_loads


__all__ = (
    'ERLPACK_AVAILABLE',
    'ZLIB_SUFFIX',
    'Payload',
    'encode_frame',
    'decode_frame',
    'inflate_payload',
    'ZlibStreamInflator',
)


ZLIB_SUFFIX = b'\x00\x00\xff\xff'


class Payload(NamedTuple):
    """A decoded gateway or voice gateway frame.

    The `op` attribute is the closed enum variant for the opcode (which may be
    UNKNOWN for opcodes added after this library was written) and `raw_op`
    the integer that was sent over the wire.
    """

    op: Union[Opcode, VoiceOpcode]
    data: Any = None
    sequence: Optional[int] = None
    name: Optional[str] = None
    raw_op: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Build the `{op, d, s?, t?}` envelope sent over the wire."""
        if self.raw_op is not None:
            op = self.raw_op
        elif self.op < 0:
            raise ValueError('Cannot encode an UNKNOWN opcode without raw_op')
        else:
            op = int(self.op)

        envelope: Dict[str, Any] = {'op': op, 'd': self.data}
        if self.sequence is not None:
            envelope['s'] = self.sequence
        if self.name is not None:
            envelope['t'] = self.name
        return envelope


def encode_frame(payload: Payload, *, encoding: str = 'json') -> Union[str, bytes]:
    """Encode a payload in the configured encoding.

    JSON is returned as a string (to be sent as a text message) while ETF is
    returned as bytes (to be sent as a binary message).
    """
    if encoding == 'json':
        return json_dumps(payload.to_dict())
    elif encoding == 'etf':
        if not ERLPACK_AVAILABLE:
            raise ValueError("ETF encoding not available without 'erlpack' installed")
        return etf_pack(payload.to_dict())
    raise ValueError(f'Unknown encoding {encoding!r}')


def decode_frame(
    raw: Union[str, bytes, bytearray],
    *,
    encoding: str = 'json',
    opcodes: Type[Union[Opcode, VoiceOpcode]] = Opcode
) -> Payload:
    """Decode one complete (already decompressed) frame.

    Parameters:
        raw: The text or bytes of the frame.
        encoding: Either 'json' or 'etf'.
        opcodes: The opcode enum to interpret the `op` field with.

    Raises:
        Malformed: The frame isn't a valid envelope.

    Returns:
        The decoded payload.
    """
    if encoding == 'json':
        try:
            obj = json_loads(raw)
        except ValueError as exc:
            raise Malformed(f'Invalid JSON frame: {exc}') from exc
    elif encoding == 'etf':
        if not ERLPACK_AVAILABLE:
            raise ValueError("ETF encoding not available without 'erlpack' installed")
        try:
            obj = etf_unpack(bytes(raw))
        except Exception as exc:
            # erlpack doesn't document what it raises
            raise Malformed(f'Invalid ETF frame: {exc}') from exc
    else:
        raise ValueError(f'Unknown encoding {encoding!r}')

    if not isinstance(obj, dict):
        raise Malformed(f'Expected an object, got {type(obj).__name__}')

    op = obj.get('op')
    if not isinstance(op, int) or isinstance(op, bool):
        raise Malformed(f'Invalid opcode {op!r}')

    sequence = obj.get('s')
    if sequence is not None and (not isinstance(sequence, int) or isinstance(sequence, bool)):
        raise Malformed(f'Invalid sequence {sequence!r}')

    name = obj.get('t')
    if name is not None and not isinstance(name, str):
        # ETF sends atoms and binaries, either can be coerced
        name = name.decode('utf-8') if isinstance(name, bytes) else str(name)

    return Payload(opcodes(op), obj.get('d'), sequence, name, op)


def inflate_payload(data: Union[bytes, bytearray]) -> bytes:
    """Decompress a single payload-compressed message."""
    try:
        return zlib.decompress(data)
    except zlib.error as exc:
        raise DecompressionFailed(str(exc)) from exc


class ZlibStreamInflator:
    """Incremental inflater for the 'zlib-stream' transport compression.

    The whole connection shares one zlib context, and a single payload may be
    split over several chunks. Chunks are buffered until the buffer ends with
    the Z_SYNC_FLUSH suffix, which marks the end of a payload, regardless of
    how the chunks lined up with WebSocket messages.

    One inflater must be used per connection and recreated (`reset()`) when
    reconnecting.
    """

    __slots__ = ('_buffer', '_inflator', 'broken')

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._buffer = bytearray()
        self._inflator = zlib.decompressobj()
        self.broken = False

    @property
    def pending(self) -> int:
        """Amount of buffered bytes still waiting for the suffix."""
        return len(self._buffer)

    def feed(self, chunk: Union[bytes, bytearray]) -> Optional[bytes]:
        """Feed a chunk of compressed data.

        Returns:
            The decompressed payload if the chunk completed one, otherwise None
            when more chunks are needed.

        Raises:
            DecompressionFailed:
                The data couldn't be inflated. The zlib context is now broken
                and every following call raises as well, the connection has to
                be re-established to recover.
        """
        if self.broken:
            raise DecompressionFailed('The zlib stream is broken and needs to be reset')

        self._buffer.extend(chunk)

        if len(self._buffer) < 4 or self._buffer[-4:] != ZLIB_SUFFIX:
            # It isn't the end of the payload and there will be more coming
            return None

        try:
            return self._inflator.decompress(self._buffer)
        except zlib.error as exc:
            self.broken = True
            raise DecompressionFailed(str(exc)) from exc
        finally:
            self._buffer = bytearray()
