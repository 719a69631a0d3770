"""Voice packet encryption modes.

The encryption itself is delegated to PyNaCl, this module only concerns itself
with how each mode lays out the nonce and the packet.
"""

import logging
import struct
from typing import ClassVar, Dict, Iterable, Optional, Sequence, Tuple, Type

import nacl.secret
import nacl.utils
from nacl.exceptions import CryptoError

from ._errors import AuthenticationFailed, FatalSessionError, Malformed, NonceExhausted
from ._rtp import RTPHeader, VoicePacket, strip_extension

__all__ = (
    'KEY_SIZE',
    'MAX_OVERHEAD',
    'EncryptionMode',
    'XSalsa20Poly1305',
    'XSalsa20Poly1305Suffix',
    'XSalsa20Poly1305Lite',
    'XChaCha20Poly1305RTPSize',
    'SUPPORTED_MODES',
    'create_mode',
    'choose_mode',
)


_log = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 24
MAX_NONCE = 0xFFFFFFFF

_COUNTER = struct.Struct('>I')
_EXTENSION = struct.Struct('>HH')


class EncryptionMode:
    """Base class for the encryption modes negotiated with the voice server.

    An instance owns the secret key of exactly one voice connection. The key
    is kept in a mutable buffer so that `close()` can zero it, it is never
    included in the repr.
    """

    name: ClassVar[str]
    # Bytes added to the Opus frame besides the RTP header
    overhead: ClassVar[int]

    __slots__ = ('_key', '_last_received')

    def __init__(self, secret_key: Iterable[int]) -> None:
        key = bytearray(secret_key)
        if len(key) != KEY_SIZE:
            raise ValueError(f'Secret key must be {KEY_SIZE} bytes, got {len(key)}')

        self._key: Optional[bytearray] = key
        # Last accepted nonce per SSRC, used by counter-based modes
        self._last_received: Dict[int, int] = {}

    def __repr__(self) -> str:
        return f'<{type(self).__name__} name={self.name!r} closed={self.closed}>'

    @property
    def closed(self) -> bool:
        return self._key is None

    @property
    def key(self) -> bytes:
        if self._key is None:
            raise RuntimeError('Encryption mode has been closed')
        return bytes(self._key)

    def close(self) -> None:
        """Zero the secret key and make this mode unusable."""
        if self._key is not None:
            for i in range(len(self._key)):
                self._key[i] = 0
            self._key = None
        self._last_received.clear()

    def encrypt(self, header: RTPHeader, opus: bytes) -> bytes:
        """Encrypt an Opus frame and return the complete packet to send."""
        raise NotImplementedError()

    def decrypt(self, packet: bytes) -> VoicePacket:
        """Verify and decrypt a received packet.

        Raises:
            Malformed: The packet isn't a voice packet.
            AuthenticationFailed:
                The packet was tampered with, forged, truncated or reuses an
                old nonce. It must be dropped.
        """
        header = RTPHeader.unpack(packet)
        if len(packet) < header.size + nacl.secret.SecretBox.MACBYTES:
            raise AuthenticationFailed('Packet too short to be authenticated')

        try:
            opus = self._open(header, memoryview(packet))
        except CryptoError as exc:
            raise AuthenticationFailed(f'Packet from SSRC {header.ssrc} failed verification') from exc
        return VoicePacket(header.ssrc, header.sequence, header.timestamp, opus)

    def _open(self, header: RTPHeader, packet: memoryview) -> bytes:
        raise NotImplementedError()

    def _box(self) -> nacl.secret.SecretBox:
        return nacl.secret.SecretBox(self.key)

    def _check_nonce(self, ssrc: int, nonce: int) -> None:
        last = self._last_received.get(ssrc)
        if last is not None and nonce <= last:
            raise AuthenticationFailed(
                f'Replayed or out-of-order nonce {nonce} from SSRC {ssrc}'
            )


class _CounterMode(EncryptionMode):
    """Modes using an incrementing 32-bit counter as the nonce."""

    __slots__ = ('_nonce',)

    def __init__(self, secret_key: Iterable[int]) -> None:
        super().__init__(secret_key)
        self._nonce = 0

    @property
    def nonce(self) -> int:
        """The nonce that will be used for the next packet."""
        return self._nonce

    def _next_nonce(self) -> Tuple[bytes, bytes]:
        """Allocate a fresh nonce.

        Returns:
            A tuple of the full 24-byte nonce and the 4-byte trailer appended
            to the packet.
        """
        if self._nonce > MAX_NONCE:
            raise NonceExhausted('Nonce counter exhausted, the key must be renegotiated')

        trailer = _COUNTER.pack(self._nonce)
        self._nonce += 1
        return trailer + bytes(NONCE_SIZE - 4), trailer

    def _split_trailer(self, header: RTPHeader, packet: memoryview) -> Tuple[int, bytes, memoryview]:
        if len(packet) < header.size + 4 + nacl.secret.SecretBox.MACBYTES:
            raise AuthenticationFailed('Packet too short to be authenticated')

        trailer = bytes(packet[-4:])
        counter = _COUNTER.unpack(trailer)[0]
        self._check_nonce(header.ssrc, counter)
        return counter, trailer + bytes(NONCE_SIZE - 4), packet[:-4]

    def _accept(self, ssrc: int, counter: int) -> None:
        self._last_received[ssrc] = counter


class XSalsa20Poly1305(EncryptionMode):
    """The nonce is the RTP header padded with zeroes."""

    name = 'xsalsa20_poly1305'
    overhead = nacl.secret.SecretBox.MACBYTES

    __slots__ = ()

    def encrypt(self, header: RTPHeader, opus: bytes) -> bytes:
        packed = header.pack()
        nonce = packed + bytes(NONCE_SIZE - len(packed))
        return packed + self._box().encrypt(bytes(opus), nonce).ciphertext

    def _open(self, header: RTPHeader, packet: memoryview) -> bytes:
        nonce = bytes(packet[:12]) + bytes(NONCE_SIZE - 12)
        data = self._box().decrypt(bytes(packet[header.size:]), nonce)
        return strip_extension(data) if header.extension else data


class XSalsa20Poly1305Suffix(EncryptionMode):
    """A random 24-byte nonce is appended to the packet."""

    name = 'xsalsa20_poly1305_suffix'
    overhead = nacl.secret.SecretBox.MACBYTES + NONCE_SIZE

    __slots__ = ()

    def encrypt(self, header: RTPHeader, opus: bytes) -> bytes:
        nonce = nacl.utils.random(NONCE_SIZE)
        return header.pack() + self._box().encrypt(bytes(opus), nonce).ciphertext + nonce

    def _open(self, header: RTPHeader, packet: memoryview) -> bytes:
        if len(packet) < header.size + NONCE_SIZE:
            raise AuthenticationFailed('Packet too short to contain a nonce')

        nonce = bytes(packet[-NONCE_SIZE:])
        data = self._box().decrypt(bytes(packet[header.size:-NONCE_SIZE]), nonce)
        return strip_extension(data) if header.extension else data


class XSalsa20Poly1305Lite(_CounterMode):
    """A 32-bit incrementing nonce is appended to the packet."""

    name = 'xsalsa20_poly1305_lite'
    overhead = nacl.secret.SecretBox.MACBYTES + 4

    __slots__ = ()

    def encrypt(self, header: RTPHeader, opus: bytes) -> bytes:
        nonce, trailer = self._next_nonce()
        return header.pack() + self._box().encrypt(bytes(opus), nonce).ciphertext + trailer

    def _open(self, header: RTPHeader, packet: memoryview) -> bytes:
        counter, nonce, packet = self._split_trailer(header, packet)
        data = self._box().decrypt(bytes(packet[header.size:]), nonce)
        self._accept(header.ssrc, counter)
        return strip_extension(data) if header.extension else data


class XChaCha20Poly1305RTPSize(_CounterMode):
    """AEAD mode where the unencrypted RTP header is the associated data.

    Only the RTP header and the extension preamble are left unencrypted, the
    extension body is part of the ciphertext.
    """

    name = 'aead_xchacha20_poly1305_rtpsize'
    overhead = nacl.secret.Aead.MACBYTES + 4

    __slots__ = ()

    def _aead(self) -> nacl.secret.Aead:
        return nacl.secret.Aead(self.key)

    def encrypt(self, header: RTPHeader, opus: bytes) -> bytes:
        packed = header.pack()
        nonce, trailer = self._next_nonce()
        return packed + self._aead().encrypt(bytes(opus), packed, nonce).ciphertext + trailer

    def _open(self, header: RTPHeader, packet: memoryview) -> bytes:
        counter, nonce, packet = self._split_trailer(header, packet)

        aad_size = header.size
        preamble_length = -1
        if header.extension:
            if len(packet) < aad_size + _EXTENSION.size:
                raise Malformed('Missing RTP header extension')
            _, preamble_length = _EXTENSION.unpack_from(packet, aad_size)
            aad_size += _EXTENSION.size

        data = self._aead().decrypt(bytes(packet[aad_size:]), bytes(packet[:aad_size]), nonce)
        self._accept(header.ssrc, counter)

        if preamble_length >= 0:
            return strip_extension(data, preamble_length=preamble_length)
        return data


_MODES: Dict[str, Type[EncryptionMode]] = {
    mode.name: mode for mode in (
        XChaCha20Poly1305RTPSize,
        XSalsa20Poly1305Lite,
        XSalsa20Poly1305Suffix,
        XSalsa20Poly1305,
    )
}

# Ordered by preference, counter-based nonces first as they never repeat
SUPPORTED_MODES: Tuple[str, ...] = tuple(_MODES)

MAX_OVERHEAD = max(mode.overhead for mode in _MODES.values())


def create_mode(name: str, secret_key: Iterable[int]) -> EncryptionMode:
    """Instantiate the encryption mode confirmed by the voice server."""
    try:
        cls = _MODES[name]
    except KeyError:
        raise FatalSessionError(f'Unsupported encryption mode {name!r}') from None
    return cls(secret_key)


def choose_mode(offered: Iterable[str], preference: Sequence[str] = SUPPORTED_MODES) -> str:
    """Pick the first preferred mode that the voice server offered.

    Raises:
        FatalSessionError: There are no modes in common.
    """
    offered = set(offered)
    for mode in preference:
        if mode in offered and mode in _MODES:
            _log.debug('Selected encryption mode %s out of %s.', mode, ', '.join(sorted(offered)))
            return mode

    raise FatalSessionError(
        f"No supported encryption mode offered (got {', '.join(sorted(offered)) or 'none'})"
    )
