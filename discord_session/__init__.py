"""Client implementation of the Discord gateway and voice connections.

The protocol is implemented sans-I/O, meaning that `GatewayConnection` and
`VoiceConnection` implement no I/O (network) and operate purely on the bytes
given using `wsproto`. They can be reused for libraries implemented in a
threading fashion or asyncio/trio/curio.

On top of that `GatewaySession` and `VoiceSession` drive the connections using
asyncio, taking care of heartbeating, reconnecting and the voice UDP socket.
"""

from ._backoff import *
from ._codec import *
from ._config import *
from ._conn import *
from ._crypto import *
from ._errors import *
from ._events import *
from ._heartbeat import *
from ._opcode import *
from ._rtp import *
from ._session import *
from ._transport import *
from ._voice import *
from ._voice_session import *
