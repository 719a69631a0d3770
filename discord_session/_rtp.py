import struct
from typing import NamedTuple, Union

from ._errors import Malformed

__all__ = (
    'RTP_HEADER_SIZE',
    'RTP_PAYLOAD_TYPE',
    'DISCOVERY_PACKET_SIZE',
    'RTPHeader',
    'VoicePacket',
    'DiscoveryResult',
    'is_rtcp',
    'strip_extension',
    'build_discovery_packet',
    'parse_discovery_packet',
    'build_keepalive_packet',
)


RTP_HEADER_SIZE = 12
RTP_VERSION = 2
RTP_PAYLOAD_TYPE = 0x78

DISCOVERY_PACKET_SIZE = 74
DISCOVERY_REQUEST = 0x1
DISCOVERY_RESPONSE = 0x2

_HEADER = struct.Struct('>BBHII')
_DISCOVERY = struct.Struct('>HHI64sH')
_EXTENSION = struct.Struct('>HH')

Buffer = Union[bytes, bytearray, memoryview]


class RTPHeader(NamedTuple):
    """Fixed RTP header prepended to every voice packet.

    https://www.rfc-editor.org/rfc/rfc3550#section-5.1
    """

    sequence: int
    timestamp: int
    ssrc: int
    extension: bool = False
    csrc_count: int = 0
    payload_type: int = RTP_PAYLOAD_TYPE

    @property
    def size(self) -> int:
        """Length in bytes of the header, including any CSRC identifiers."""
        return RTP_HEADER_SIZE + 4 * self.csrc_count

    def pack(self) -> bytes:
        # Discord never expects CSRCs from clients, they're only parsed.
        flags = RTP_VERSION << 6
        if self.extension:
            flags |= 0x10

        return _HEADER.pack(
            flags, self.payload_type,
            self.sequence & 0xFFFF, self.timestamp & 0xFFFFFFFF, self.ssrc
        )

    @classmethod
    def unpack(cls, packet: Buffer) -> 'RTPHeader':
        """Parse the header at the start of a packet.

        Raises:
            Malformed: Not an RTP voice packet.
        """
        if len(packet) < RTP_HEADER_SIZE:
            raise Malformed(f'Packet too short for an RTP header ({len(packet)} bytes)')

        flags, payload_type, sequence, timestamp, ssrc = _HEADER.unpack_from(packet)

        if flags >> 6 != RTP_VERSION:
            raise Malformed(f'Unsupported RTP version {flags >> 6}')

        if payload_type & 0x7F != RTP_PAYLOAD_TYPE:
            raise Malformed(f'Unexpected RTP payload type {payload_type & 0x7F:#x}')

        header = cls(
            sequence, timestamp, ssrc,
            extension=bool(flags & 0x10),
            csrc_count=flags & 0x0F,
            payload_type=payload_type & 0x7F,
        )
        if len(packet) < header.size:
            raise Malformed('Packet too short for its CSRC list')
        return header


class VoicePacket(NamedTuple):
    """A decrypted voice packet handed to the caller.

    Packets aren't guaranteed to arrive in order, the `sequence` and
    `timestamp` can be used to reorder them or discard stale frames.
    """

    ssrc: int
    sequence: int
    timestamp: int
    opus: bytes


class DiscoveryResult(NamedTuple):
    ssrc: int
    address: str
    port: int


def is_rtcp(packet: Buffer) -> bool:
    """Whether the datagram is an RTCP packet (sender/receiver reports)."""
    return len(packet) >= 2 and 200 <= packet[1] <= 204


def strip_extension(plaintext: bytes, *, preamble_length: int = -1) -> bytes:
    """Remove the RTP header extension from decrypted data.

    In the older encryption modes the whole extension is encrypted, the
    `rtpsize` modes however leave the 4-byte extension preamble unencrypted
    and pass its length in words as `preamble_length`.
    """
    if preamble_length < 0:
        if len(plaintext) < _EXTENSION.size:
            raise Malformed('Missing RTP header extension')
        _, preamble_length = _EXTENSION.unpack_from(plaintext)
        plaintext = plaintext[_EXTENSION.size:]

    offset = 4 * preamble_length
    if len(plaintext) < offset:
        raise Malformed('RTP header extension longer than the packet')
    return plaintext[offset:]


def build_discovery_packet(ssrc: int) -> bytes:
    """Build the UDP IP discovery request.

    https://discord.com/developers/docs/topics/voice-connections#ip-discovery
    """
    return _DISCOVERY.pack(DISCOVERY_REQUEST, DISCOVERY_PACKET_SIZE - 4, ssrc, b'', 0)


def parse_discovery_packet(packet: Buffer) -> DiscoveryResult:
    """Parse the response to the IP discovery request.

    Raises:
        Malformed: The datagram isn't a discovery response.
    """
    if len(packet) < DISCOVERY_PACKET_SIZE:
        raise Malformed(f'Discovery response too short ({len(packet)} bytes)')

    kind, _, ssrc, address, port = _DISCOVERY.unpack_from(packet)
    if kind != DISCOVERY_RESPONSE:
        raise Malformed(f'Unexpected discovery packet type {kind:#x}')

    # The address is a null-terminated ASCII string
    try:
        ip = address.split(b'\x00', 1)[0].decode('ascii')
    except UnicodeDecodeError as exc:
        raise Malformed('Discovery address is not ASCII') from exc

    if not ip:
        raise Malformed('Discovery response is missing the address')

    return DiscoveryResult(ssrc, ip, port)


def build_keepalive_packet(counter: int) -> bytes:
    """Build the UDP keepalive, Discord echoes these back."""
    return struct.pack('>Q', counter & 0xFFFFFFFFFFFFFFFF)

