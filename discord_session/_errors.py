from typing import List, Optional, Tuple

from wsproto.events import RejectConnection

from ._opcode import ClosePolicy

__all__ = (
    'SessionError',
    'CodecError',
    'Malformed',
    'DecompressionFailed',
    'AuthenticationFailed',
    'NonceExhausted',
    'CloseDiscordConnection',
    'ConnectionRejected',
    'HeartbeatTimeout',
    'FatalSessionError',
    'ReconnectExhausted',
)


class SessionError(Exception):
    """Base class for all exceptions raised by discord-session."""


class CodecError(SessionError):
    """A single frame or packet could not be decoded.

    These are never fatal to the session, the offending unit of work is
    dropped and counted.
    """


class Malformed(CodecError):
    """The frame or packet could not be parsed."""


class DecompressionFailed(CodecError):
    """The zlib stream could not be inflated."""


class AuthenticationFailed(CodecError):
    """A voice packet failed authenticated decryption.

    This covers tampered or forged ciphertext, truncated packets as well as
    replayed nonces. The packet must never reach the audio decoder.
    """


class NonceExhausted(SessionError):
    """The nonce counter of an encryption mode would wrap around.

    Reusing a nonce breaks the guarantees of the encryption so the key has to
    be renegotiated by reconnecting.
    """


class CloseDiscordConnection(SessionError):
    """Signalling exception notifying the socket should be closed.

    The `data` attribute contains any potentially last bytes to send before
    closing the TCP socket - or None indicating that nothing should be sent.

    The `code` attribute is the close code and the `reason` attribute optionally
    contains the reason of the closure. `policy` is how the close code was
    classified, which decides whether the session can be resumed.
    """

    code: Optional[int]
    reason: Optional[str]
    policy: ClosePolicy

    data: Optional[bytes]

    def __init__(
        self,
        data: Optional[bytes],
        code: Optional[int] = None,
        reason: Optional[str] = None,
        policy: ClosePolicy = ClosePolicy.RESUME,
    ) -> None:
        super().__init__(
            f"{code if code is not None else ''}{' - '+reason if reason else ''}"
        )

        self.code = code
        self.reason = reason
        self.policy = policy

        self.data = data


class ConnectionRejected(SessionError):
    """Exception raised when the connection to Discord was rejected.

    This means that Discord rejected the WebSocket upgrade request. Whether
    this can be recovered from depends on the status code, server errors and
    ratelimits are retried while anything else is considered fatal.
    """

    code: int
    headers: List[Tuple[bytes, bytes]]

    def __init__(self, event: RejectConnection) -> None:
        super().__init__(
            f'Discord rejected the WebSocket connection - Error code {event.status_code}'
        )

        self.code = event.status_code
        self.headers = list(event.headers)


class HeartbeatTimeout(SessionError):
    """The last heartbeat was never acknowledged, the connection is dead."""


class FatalSessionError(SessionError):
    """Terminal error, the session will not be reconnected.

    Examples are invalid credentials, close codes which Discord documents as
    not to be reconnected or an encryption handshake that can never succeed.
    """

    code: Optional[int]
    reason: Optional[str]

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        reason: Optional[str] = None
    ) -> None:
        super().__init__(message)

        self.code = code
        self.reason = reason


class ReconnectExhausted(FatalSessionError):
    """The configured ceiling of reconnection attempts was reached."""

    attempts: int

    def __init__(self, attempts: int) -> None:
        super().__init__(f'Gave up reconnecting after {attempts} attempts')

        self.attempts = attempts
