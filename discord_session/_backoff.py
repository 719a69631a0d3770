import asyncio
import enum
import random
from typing import Callable, Optional

from ._errors import (
    CloseDiscordConnection, CodecError, ConnectionRejected, FatalSessionError,
    HeartbeatTimeout, NonceExhausted, ReconnectExhausted
)
from ._opcode import ClosePolicy

__all__ = (
    'ErrorKind',
    'classify',
    'fatal_error',
    'ExponentialBackoff',
)


class ErrorKind(enum.Enum):
    TRANSIENT = 'transient'
    """Retried automatically, invisible to the caller."""

    PROTOCOL = 'protocol'
    """The single frame or packet is dropped, the session continues."""

    FATAL = 'fatal'
    """The session is stopped and the error surfaced to the caller."""


def classify(exc: BaseException) -> ErrorKind:
    """Classify an exception according to how a session should react.

    Unknown exceptions are considered fatal, reconnecting in a loop on a
    programming error would only hide it.
    """
    if isinstance(exc, FatalSessionError):
        return ErrorKind.FATAL

    if isinstance(exc, CloseDiscordConnection):
        if exc.policy is ClosePolicy.FATAL:
            return ErrorKind.FATAL
        return ErrorKind.TRANSIENT

    if isinstance(exc, ConnectionRejected):
        # Server errors and ratelimits are worth retrying, an invalid request
        # will be just as invalid the next time.
        if exc.code >= 500 or exc.code == 429:
            return ErrorKind.TRANSIENT
        return ErrorKind.FATAL

    if isinstance(exc, CodecError):
        return ErrorKind.PROTOCOL

    if isinstance(exc, (HeartbeatTimeout, NonceExhausted)):
        return ErrorKind.TRANSIENT

    # ConnectionError and socket.gaierror are both subclasses of OSError
    if isinstance(exc, (OSError, EOFError, asyncio.TimeoutError)):
        return ErrorKind.TRANSIENT

    return ErrorKind.FATAL


def fatal_error(exc: BaseException) -> FatalSessionError:
    """Convert the exception that stopped a session to a `FatalSessionError`.

    The original exception is kept as the `__cause__`.
    """
    if isinstance(exc, FatalSessionError):
        return exc

    if isinstance(exc, CloseDiscordConnection):
        err = FatalSessionError(
            f'Connection closed with code {exc.code}', code=exc.code, reason=exc.reason
        )
    elif isinstance(exc, ConnectionRejected):
        err = FatalSessionError(str(exc), code=exc.code)
    else:
        err = FatalSessionError(f'Unexpected error: {exc!r}')

    err.__cause__ = exc
    return err


class ExponentialBackoff:
    """Exponential backoff with jitter.

    The first attempt after a resumable close waits `resume_delay` since
    Discord expects a prompt RESUME, after that the delay doubles with every
    failed attempt up to `maximum`. Each delay is randomised within the upper
    half of the computed ceiling so that many clients don't reconnect in
    lockstep.

    Call `reset()` once a connection has been successfully established.
    """

    base: float
    maximum: float
    resume_delay: float
    max_attempts: Optional[int]

    attempts: int

    __slots__ = ('base', 'maximum', 'resume_delay', 'max_attempts', 'attempts', '_rng')

    def __init__(
        self,
        base: float = 1.0,
        maximum: float = 60.0,
        *,
        resume_delay: float = 0.5,
        max_attempts: Optional[int] = None,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> None:
        if base <= 0 or maximum < base:
            raise ValueError('Expected 0 < base <= maximum')

        if resume_delay < 0:
            raise ValueError('resume_delay cannot be negative')

        if max_attempts is not None and max_attempts < 1:
            raise ValueError('max_attempts must be at least 1')

        self.base = base
        self.maximum = maximum
        self.resume_delay = resume_delay
        self.max_attempts = max_attempts

        self.attempts = 0
        self._rng = rng

    def reset(self) -> None:
        self.attempts = 0

    def delay(self, *, resume: bool = False) -> float:
        """Compute the delay before the next attempt and count it.

        Parameters:
            resume: Whether the next attempt will try to RESUME.

        Raises:
            ReconnectExhausted: The attempt ceiling has been reached.

        Returns:
            The amount of seconds to sleep before reconnecting.
        """
        if self.max_attempts is not None and self.attempts >= self.max_attempts:
            raise ReconnectExhausted(self.attempts)

        self.attempts += 1

        if resume and self.attempts == 1:
            return self.resume_delay

        # Limit the exponent, the ceiling is reached long before anyway
        exponent = min(self.attempts - 1, 32)
        ceiling = min(self.maximum, self.base * 2 ** exponent)
        return ceiling / 2 + self._rng(0, ceiling / 2)
