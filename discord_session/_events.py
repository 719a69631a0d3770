import asyncio
import enum
from typing import Any, NamedTuple, Optional, TypeVar, Union

__all__ = (
    'Dispatch',
    'StateChanged',
    'VoiceCredentials',
    'VoiceServerAssigned',
    'SpeakingUpdate',
    'ClientDisconnect',
    'get_or_closed',
)


T = TypeVar('T')


async def get_or_closed(queue: 'asyncio.Queue[T]', closed: asyncio.Event) -> Optional[T]:
    """Get the next item of the queue, None once `closed` is set and it's empty.

    Items queued before closing are still returned.
    """
    while True:
        if not queue.empty():
            return queue.get_nowait()

        if closed.is_set():
            return None

        getter = asyncio.ensure_future(queue.get())
        waiter = asyncio.ensure_future(closed.wait())
        try:
            await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not getter.done():
                getter.cancel()

        if getter.done() and not getter.cancelled():
            return getter.result()


class Dispatch(NamedTuple):
    """A DISPATCH event from the gateway, in the order it was received."""

    name: str
    data: Any
    sequence: Optional[int]


class StateChanged(NamedTuple):
    previous: enum.Enum
    current: enum.Enum


class VoiceCredentials(NamedTuple):
    """Everything needed to open a voice connection.

    These are assembled from the VOICE_STATE_UPDATE of the logged in user and
    the VOICE_SERVER_UPDATE which Discord sends after joining a channel. The
    token must never be logged.
    """

    guild_id: str
    channel_id: Optional[str]
    user_id: str
    session_id: str
    token: str
    endpoint: Optional[str]

    def __repr__(self) -> str:
        return (
            f'VoiceCredentials(guild_id={self.guild_id!r}, channel_id={self.channel_id!r}, '
            f'user_id={self.user_id!r}, endpoint={self.endpoint!r})'
        )


class VoiceServerAssigned(NamedTuple):
    credentials: VoiceCredentials


class SpeakingUpdate(NamedTuple):
    """Another user in the voice channel started or stopped speaking.

    The SSRC maps received `VoicePacket`s to the user sending them.
    """

    user_id: str
    ssrc: int
    speaking: Union[int, bool]


class ClientDisconnect(NamedTuple):
    user_id: str
