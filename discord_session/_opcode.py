import enum
from typing import Dict, Iterator, Mapping, Optional, Union

__all__ = (
    'Opcode',
    'VoiceOpcode',
    'CloseCode',
    'VoiceCloseCode',
    'ClosePolicy',
    'CloseCodeTable',
    'GATEWAY_CLOSE_CODES',
    'VOICE_CLOSE_CODES',
    'should_reconnect',
)


class Opcode(enum.IntEnum):
    UNKNOWN = -1

    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    PRESENCE_UPDATE = 3
    VOICE_STATE_UPDATE = 4
    RESUME = 6
    RECONNECT = 7
    REQUEST_GUILD_MEMBERS = 8
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11

    @classmethod
    def _missing_(cls, value: object) -> 'Opcode':
        # Discord adds opcodes over time, these shouldn't break decoding
        return cls.UNKNOWN


class VoiceOpcode(enum.IntEnum):
    UNKNOWN = -1

    IDENTIFY = 0
    SELECT_PROTOCOL = 1
    READY = 2
    HEARTBEAT = 3
    SESSION_DESCRIPTION = 4
    SPEAKING = 5
    HEARTBEAT_ACK = 6
    RESUME = 7
    HELLO = 8
    RESUMED = 9
    CLIENT_DISCONNECT = 13

    @classmethod
    def _missing_(cls, value: object) -> 'VoiceOpcode':
        return cls.UNKNOWN


class CloseCode(enum.IntEnum):
    GENERIC_ERROR = 4000
    UNKNOWN_OPCODE = 4001
    DECODING_ERROR = 4002
    NOT_AUTHENTICATED = 4003
    AUTHENTICATION_FAILED = 4004
    ALREADY_AUTHENTICATED = 4005
    INVALID_SEQ = 4007
    RATE_LIMITED = 4008
    SESSION_TIMED_OUT = 4009
    INVALID_SHARD = 4010
    SHARDING_REQUIRED = 4011
    INVALID_API_VERSION = 4012
    INVALID_INTENTS = 4013
    DISALLOWED_INTENTS = 4014


class VoiceCloseCode(enum.IntEnum):
    UNKNOWN_OPCODE = 4001
    DECODING_ERROR = 4002
    NOT_AUTHENTICATED = 4003
    AUTHENTICATION_FAILED = 4004
    ALREADY_AUTHENTICATED = 4005
    SESSION_INVALID = 4006
    SESSION_TIMED_OUT = 4009
    SERVER_NOT_FOUND = 4011
    UNKNOWN_PROTOCOL = 4012
    DISCONNECTED = 4014
    SERVER_CRASHED = 4015
    UNKNOWN_ENCRYPTION_MODE = 4016
    BAD_REQUEST = 4020
    RATE_LIMITED = 4021
    CALL_TERMINATED = 4022


class ClosePolicy(enum.Enum):
    """What to do after the connection was closed with a specific code."""

    RESUME = 'resume'
    """Reconnect and RESUME, the session survives."""

    REIDENTIFY = 'reidentify'
    """Reconnect but discard the session and IDENTIFY from scratch."""

    FATAL = 'fatal'
    """Do not reconnect."""


class CloseCodeTable(Mapping[int, ClosePolicy]):
    """Mapping of close codes to the policy to apply.

    Discord adds close codes over time, which is why this is configuration
    rather than a hard-coded `if`-chain. Lookups of codes missing from the
    table return the `default` policy.

    Tables are immutable, use `with_overrides()` to derive a new one.
    """

    __slots__ = ('_codes', 'default')

    def __init__(
        self,
        codes: Mapping[int, ClosePolicy],
        *,
        default: ClosePolicy = ClosePolicy.RESUME
    ) -> None:
        self._codes: Dict[int, ClosePolicy] = {int(k): v for k, v in codes.items()}
        self.default = default

    def __getitem__(self, code: int) -> ClosePolicy:
        return self._codes[code]

    def __iter__(self) -> Iterator[int]:
        return iter(self._codes)

    def __len__(self) -> int:
        return len(self._codes)

    def __repr__(self) -> str:
        return f'CloseCodeTable({self._codes!r}, default={self.default!r})'

    def __hash__(self) -> int:
        # Mapping sets __hash__ to None but tables are immutable
        return hash((frozenset(self._codes.items()), self.default))

    def lookup(self, code: Optional[int]) -> ClosePolicy:
        """Resolve the policy of a close code, this never raises.

        A close code of None means that the connection dropped without a
        closing handshake, which is always considered resumable.
        """
        if code is None:
            return ClosePolicy.RESUME

        return self._codes.get(int(code), self.default)

    def with_overrides(
        self,
        overrides: Mapping[int, ClosePolicy],
        *,
        default: Optional[ClosePolicy] = None
    ) -> 'CloseCodeTable':
        """Create a new table with some codes re-classified."""
        codes = dict(self._codes)
        codes.update(overrides)
        return CloseCodeTable(codes, default=default or self.default)


# https://discord.com/developers/docs/topics/opcodes-and-status-codes#gateway-gateway-close-event-codes
GATEWAY_CLOSE_CODES = CloseCodeTable({
    # Normal closures end the session on Discord's side as well
    1000: ClosePolicy.REIDENTIFY,
    1001: ClosePolicy.REIDENTIFY,
    CloseCode.GENERIC_ERROR: ClosePolicy.RESUME,
    CloseCode.UNKNOWN_OPCODE: ClosePolicy.RESUME,
    CloseCode.DECODING_ERROR: ClosePolicy.RESUME,
    CloseCode.NOT_AUTHENTICATED: ClosePolicy.REIDENTIFY,
    CloseCode.AUTHENTICATION_FAILED: ClosePolicy.FATAL,
    CloseCode.ALREADY_AUTHENTICATED: ClosePolicy.RESUME,
    CloseCode.INVALID_SEQ: ClosePolicy.REIDENTIFY,
    CloseCode.RATE_LIMITED: ClosePolicy.RESUME,
    CloseCode.SESSION_TIMED_OUT: ClosePolicy.REIDENTIFY,
    CloseCode.INVALID_SHARD: ClosePolicy.FATAL,
    CloseCode.SHARDING_REQUIRED: ClosePolicy.FATAL,
    CloseCode.INVALID_API_VERSION: ClosePolicy.FATAL,
    CloseCode.INVALID_INTENTS: ClosePolicy.FATAL,
    CloseCode.DISALLOWED_INTENTS: ClosePolicy.FATAL,
})


# https://discord.com/developers/docs/topics/opcodes-and-status-codes#voice-voice-close-event-codes
VOICE_CLOSE_CODES = CloseCodeTable({
    1000: ClosePolicy.REIDENTIFY,
    1001: ClosePolicy.REIDENTIFY,
    VoiceCloseCode.UNKNOWN_OPCODE: ClosePolicy.RESUME,
    VoiceCloseCode.DECODING_ERROR: ClosePolicy.RESUME,
    VoiceCloseCode.NOT_AUTHENTICATED: ClosePolicy.REIDENTIFY,
    VoiceCloseCode.AUTHENTICATION_FAILED: ClosePolicy.FATAL,
    VoiceCloseCode.ALREADY_AUTHENTICATED: ClosePolicy.RESUME,
    VoiceCloseCode.SESSION_INVALID: ClosePolicy.FATAL,
    VoiceCloseCode.SESSION_TIMED_OUT: ClosePolicy.REIDENTIFY,
    VoiceCloseCode.SERVER_NOT_FOUND: ClosePolicy.FATAL,
    VoiceCloseCode.UNKNOWN_PROTOCOL: ClosePolicy.FATAL,
    # Kicked, moved out or the channel was deleted
    VoiceCloseCode.DISCONNECTED: ClosePolicy.FATAL,
    VoiceCloseCode.SERVER_CRASHED: ClosePolicy.RESUME,
    VoiceCloseCode.UNKNOWN_ENCRYPTION_MODE: ClosePolicy.FATAL,
    VoiceCloseCode.BAD_REQUEST: ClosePolicy.REIDENTIFY,
    VoiceCloseCode.RATE_LIMITED: ClosePolicy.RESUME,
    VoiceCloseCode.CALL_TERMINATED: ClosePolicy.FATAL,
})


def should_reconnect(
    code: Union[int, CloseCode, None],
    table: CloseCodeTable = GATEWAY_CLOSE_CODES
) -> bool:
    """Utility function to determine if the connection should be reconnected.

    This function looks up the given code in a table of known codes and
    recommendations for whether or not to reconnect.

    The implementation of this function is designed to be conservative in
    returning False, this means that when True is returned it may still not be
    completely safe to reconnect.

    Parameters:
        code:
            The close code to check for. If this is None then True will always
            be returned.
        table:
            The close code table to consult, defaults to the gateway's.

    Returns:
        Whether to reconnect to the gateway. False is used conservatively and
        if returned the gateway should **not** be reconnected.
    """
    return table.lookup(code) is not ClosePolicy.FATAL
