import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional

__all__ = ('Heartbeat',)


_log = logging.getLogger(__name__)


class Heartbeat:
    """Cancellable periodic heartbeat with acknowledgement tracking.

    The timer runs as its own task so that a stalled read loop cannot
    suppress the liveness check. When a heartbeat is due while the previous
    one still hasn't been acknowledged, the connection is declared dead:
    `is_alive()` starts returning False, `on_dead` is awaited and the timer
    stops. Reconnecting requires starting the timer again.

    Attributes:
        interval: Seconds between heartbeats, None when not started.
        ack_pending: Whether a heartbeat was sent and not yet acknowledged.
        latency: Seconds between the last heartbeat and its acknowledgement.
    """

    interval: Optional[float]
    ack_pending: bool
    latency: float

    def __init__(
        self,
        beat: Callable[[], Awaitable[None]],
        *,
        on_dead: Callable[[], Awaitable[None]],
        jitter: float = 1.0,
        rng: Callable[[], float] = random.random,
        name: str = 'heartbeat',
    ) -> None:
        """Create a heartbeat timer.

        Parameters:
            beat: Coroutine function sending one heartbeat.
            on_dead: Coroutine function called once the connection is dead.
            jitter:
                Fraction of the interval to randomly delay the first heartbeat
                with. Discord asks for the full interval (1.0) so that clients
                reconnecting at the same time don't heartbeat in lockstep.
            rng: Source of randomness in [0, 1), replaceable for tests.
            name: Used in log messages and the task name.
        """
        if not 0.0 <= jitter <= 1.0:
            raise ValueError('jitter must be between 0 and 1')

        self._beat = beat
        self._on_dead = on_dead
        self.jitter = jitter
        self._rng = rng
        self.name = name

        self._task: Optional['asyncio.Task[None]'] = None
        self._alive = True
        self._last_send = 0.0

        self.interval = None
        self.ack_pending = False
        self.latency = float('inf')

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval: float) -> 'asyncio.Task[None]':
        """Start beating every `interval` seconds.

        Any previously running timer is stopped first, the acknowledgement
        state is reset.

        Returns:
            The task handle running the timer.
        """
        if interval <= 0:
            raise ValueError('interval must be positive')

        self.stop()

        self.interval = interval
        self.ack_pending = False
        self._alive = True

        self._task = asyncio.get_running_loop().create_task(
            self._run(interval), name=self.name
        )
        return self._task

    def stop(self) -> None:
        """Stop the timer, this is safe to call multiple times."""
        if self._task is not None:
            if self._task is not asyncio.current_task():
                self._task.cancel()
            self._task = None

    def record_ack(self) -> None:
        """Record the acknowledgement of the last heartbeat."""
        if self.ack_pending:
            self.latency = time.perf_counter() - self._last_send

            if self.interval is not None and self.latency > self.interval:
                _log.warning("Can't keep up, %s is %.1fs behind.", self.name, self.latency)

        self.ack_pending = False

    def is_alive(self) -> bool:
        """Whether the connection is considered alive."""
        return self._alive

    async def _send(self) -> None:
        self.ack_pending = True
        self._last_send = time.perf_counter()
        await self._beat()

    async def _run(self, interval: float) -> None:
        await asyncio.sleep(interval * self.jitter * self._rng())

        while True:
            if self.ack_pending:
                _log.warning('%s was not acknowledged, the connection is dead.', self.name)
                self._alive = False
                self._task = None
                await self._on_dead()
                return

            _log.debug('Sending %s.', self.name)
            try:
                await asyncio.wait_for(self._send(), interval)
            except asyncio.TimeoutError:
                # Still unacknowledged, the next iteration declares it dead
                _log.warning('Sending %s did not complete in time.', self.name)
                continue
            except Exception as exc:
                # The read loop notices the broken connection on its own
                _log.warning('Failed to send %s, stopping: %r', self.name, exc)
                self._task = None
                return

            await asyncio.sleep(interval)
