import asyncio

import pytest

from discord_session import Heartbeat


class Recorder:
    def __init__(self) -> None:
        self.beats = 0
        self.dead = asyncio.Event()

    async def beat(self) -> None:
        self.beats += 1

    async def on_dead(self) -> None:
        self.dead.set()


@pytest.mark.asyncio
async def test_first_beat_jittered() -> None:
    recorder = Recorder()
    heartbeat = Heartbeat(recorder.beat, on_dead=recorder.on_dead, rng=lambda: 0.5)

    heartbeat.start(0.2)
    await asyncio.sleep(0.05)
    assert recorder.beats == 0

    await asyncio.sleep(0.1)
    assert recorder.beats == 1
    heartbeat.stop()


@pytest.mark.asyncio
async def test_acknowledged() -> None:
    recorder = Recorder()
    heartbeat = Heartbeat(recorder.beat, on_dead=recorder.on_dead, jitter=0.0)

    heartbeat.start(0.05)
    for _ in range(4):
        await asyncio.sleep(0.03)
        heartbeat.record_ack()

    assert recorder.beats >= 2
    assert heartbeat.is_alive()
    assert heartbeat.latency < 0.05
    assert not recorder.dead.is_set()
    heartbeat.stop()


@pytest.mark.asyncio
async def test_missed_ack() -> None:
    recorder = Recorder()
    heartbeat = Heartbeat(recorder.beat, on_dead=recorder.on_dead, jitter=0.0)

    heartbeat.start(0.02)
    await asyncio.wait_for(recorder.dead.wait(), 1)

    assert recorder.beats == 1
    assert not heartbeat.is_alive()
    assert not heartbeat.running


@pytest.mark.asyncio
async def test_stuck_beat() -> None:
    recorder = Recorder()

    async def stuck() -> None:
        recorder.beats += 1
        await asyncio.Event().wait()

    heartbeat = Heartbeat(stuck, on_dead=recorder.on_dead, jitter=0.0)

    heartbeat.start(0.05)
    await asyncio.wait_for(recorder.dead.wait(), 1)

    assert recorder.beats == 1
    assert not heartbeat.is_alive()


@pytest.mark.asyncio
async def test_restart_resets() -> None:
    recorder = Recorder()
    heartbeat = Heartbeat(recorder.beat, on_dead=recorder.on_dead, jitter=0.0)

    heartbeat.start(0.02)
    await asyncio.wait_for(recorder.dead.wait(), 1)

    heartbeat.start(10)
    assert heartbeat.is_alive()
    assert heartbeat.running
    heartbeat.stop()
    assert not heartbeat.running


@pytest.mark.asyncio
async def test_stop_cancels() -> None:
    recorder = Recorder()
    heartbeat = Heartbeat(recorder.beat, on_dead=recorder.on_dead, jitter=0.0)

    task = heartbeat.start(0.02)
    await asyncio.sleep(0)
    heartbeat.stop()
    heartbeat.stop()

    await asyncio.sleep(0.05)
    assert task.cancelled()
    assert not recorder.dead.is_set()


@pytest.mark.asyncio
async def test_send_failure_stops() -> None:
    async def beat() -> None:
        raise ConnectionResetError()

    recorder = Recorder()
    heartbeat = Heartbeat(beat, on_dead=recorder.on_dead, jitter=0.0)

    task = heartbeat.start(0.02)
    await asyncio.wait_for(task, 1)

    assert not heartbeat.running
    assert not recorder.dead.is_set()


def test_invalid() -> None:
    with pytest.raises(ValueError):
        Heartbeat(Recorder().beat, on_dead=Recorder().on_dead, jitter=2.0)
