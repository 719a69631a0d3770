import asyncio
from typing import Any, Dict, Sequence, Tuple

import pytest

from discord_session import (
    SILENCE_FRAME, BackoffConfig, ClientDisconnect, FatalSessionError,
    RTPHeader, SpeakingUpdate, VoiceConfig, VoiceCredentials, VoiceSession,
    VoiceState, XChaCha20Poly1305RTPSize
)

from conftest import (
    FakeClient, FakeMediaServer, FakeServer, StallingConnector, eventually
)


KEY = bytes(range(32))


def credentials(uri: str, token: str = 'voice-token') -> VoiceCredentials:
    return VoiceCredentials(
        guild_id='1', channel_id='2', user_id='1234',
        session_id='voice-session', token=token, endpoint=uri,
    )


def voice_config(**kwargs: Any) -> VoiceConfig:
    kwargs.setdefault('silence_threshold', 0.05)
    return VoiceConfig(
        heartbeat_jitter=0.0,
        backoff=BackoffConfig(base=0.01, maximum=0.05, resume_delay=0.0),
        connect_timeout=5.0, shutdown_timeout=1.0, **kwargs
    )


async def handshake(
    server: FakeServer,
    media: FakeMediaServer,
    *,
    modes: Sequence[str] = ('xsalsa20_poly1305', 'aead_xchacha20_poly1305_rtpsize'),
) -> Tuple[FakeClient, Dict[str, Any], Dict[str, Any]]:
    """Accept a voice connection and bring it to READY.

    Returns the client with the IDENTIFY and SELECT_PROTOCOL received.
    """
    client = await server.accept()
    await client.send({'op': 8, 'd': {'heartbeat_interval': 45000}})
    identify = await client.expect(0)

    await client.send({'op': 2, 'd': {
        'ssrc': 1234, 'ip': '127.0.0.1', 'port': media.port, 'modes': list(modes),
    }})
    select = await client.expect(1)

    await client.send({'op': 4, 'd': {
        'mode': select['d']['data']['mode'], 'secret_key': list(KEY),
    }})
    return client, identify, select


@pytest.fixture()
def config() -> VoiceConfig:
    return voice_config()


@pytest.mark.asyncio
async def test_handshake(
    voice_server: FakeServer,
    media_server: FakeMediaServer,
    config: VoiceConfig
) -> None:
    voice = VoiceSession(credentials(voice_server.uri), config)
    await voice.start()

    client, identify, select = await handshake(voice_server, media_server)

    assert client.request is not None and client.request.target == '/?v=4'
    assert identify['d'] == {
        'server_id': '1', 'user_id': '1234', 'session_id': 'voice-session', 'token': 'voice-token',
    }

    assert select['d']['protocol'] == 'udp'
    assert select['d']['data']['mode'] == 'aead_xchacha20_poly1305_rtpsize'
    # The address discovered through the voice server
    assert media_server.peer is not None
    assert select['d']['data']['address'] == media_server.peer[0]
    assert select['d']['data']['port'] == media_server.peer[1]

    # SSRC announcement after SESSION_DESCRIPTION
    speaking = await client.expect(5)
    assert speaking['d'] == {'speaking': 0, 'delay': 0, 'ssrc': 1234}

    await asyncio.wait_for(voice.connect(), 5)
    assert voice.state is VoiceState.READY
    assert voice.ssrc == 1234
    assert voice.mode == 'aead_xchacha20_poly1305_rtpsize'

    _, code = await asyncio.gather(voice.close(), client.wait_closed())
    assert code == 1000
    assert voice.closed
    assert voice.mode is None
    assert await voice.receive_audio() is None


@pytest.mark.asyncio
async def test_send_audio(
    voice_server: FakeServer,
    media_server: FakeMediaServer,
    config: VoiceConfig
) -> None:
    voice = VoiceSession(credentials(voice_server.uri), config)
    await voice.start()

    client, _, _ = await handshake(voice_server, media_server)
    await client.expect(5)
    await asyncio.wait_for(voice.connect(), 5)

    await voice.send_audio(b'opus frame')

    speaking = await client.expect(5)
    assert speaking['d']['speaking'] == 1
    assert speaking['d']['ssrc'] == 1234

    decoder = XChaCha20Poly1305RTPSize(KEY)

    packet = decoder.decrypt(await media_server.packet())
    assert packet.ssrc == 1234
    assert packet.opus == b'opus frame'

    # The burst of audio ends with silence and speaking stops
    silence = [decoder.decrypt(await media_server.packet()) for _ in range(config.silence_frames)]
    assert [frame.opus for frame in silence] == [SILENCE_FRAME] * config.silence_frames
    assert [frame.sequence for frame in silence] == list(range(1, config.silence_frames + 1))
    assert silence[0].timestamp == 960

    stopped = await client.expect(5)
    assert stopped['d']['speaking'] == 0
    assert not voice.speaking

    await asyncio.gather(voice.close(), client.wait_closed())

    with pytest.raises(RuntimeError):
        await voice.send_audio(b'opus frame')


@pytest.mark.asyncio
async def test_receive_audio(
    voice_server: FakeServer,
    media_server: FakeMediaServer,
    config: VoiceConfig
) -> None:
    voice = VoiceSession(credentials(voice_server.uri), config)
    await voice.start()

    client, _, _ = await handshake(voice_server, media_server)
    await asyncio.wait_for(voice.connect(), 5)

    encoder = XChaCha20Poly1305RTPSize(KEY)
    media_server.send(encoder.encrypt(RTPHeader(7, 6720, 999), b'hello'))

    packet = await asyncio.wait_for(voice.receive_audio(), 5)
    assert packet is not None
    assert (packet.ssrc, packet.sequence, packet.timestamp) == (999, 7, 6720)
    assert packet.opus == b'hello'

    forged = bytearray(encoder.encrypt(RTPHeader(8, 7680, 999), b'hello'))
    forged[14] ^= 0x01
    media_server.send(bytes(forged))
    await eventually(lambda: voice.dropped_packets == 1)

    # RTCP and short datagrams are ignored, not counted
    media_server.send(b'\x80\xc8' + bytes(26))
    media_server.send(encoder.encrypt(RTPHeader(9, 8640, 999), b'again'))

    packet = await asyncio.wait_for(voice.receive_audio(), 5)
    assert packet is not None and packet.opus == b'again'
    assert voice.dropped_packets == 1

    await asyncio.gather(voice.close(), client.wait_closed())


@pytest.mark.asyncio
async def test_events(
    voice_server: FakeServer,
    media_server: FakeMediaServer,
    config: VoiceConfig
) -> None:
    voice = VoiceSession(credentials(voice_server.uri), config)
    await voice.start()

    client, _, _ = await handshake(voice_server, media_server)
    await asyncio.wait_for(voice.connect(), 5)

    await client.send({'op': 5, 'd': {'user_id': '42', 'ssrc': 999, 'speaking': 1}})
    await client.send({'op': 13, 'd': {'user_id': '42'}})
    await client.send({'op': 99, 'd': None})

    received = []

    async def collect() -> None:
        async for event in voice.events():
            if isinstance(event, (SpeakingUpdate, ClientDisconnect)):
                received.append(event)
                if len(received) == 2:
                    return

    await asyncio.wait_for(collect(), 5)
    assert received == [SpeakingUpdate('42', 999, 1), ClientDisconnect('42')]

    await asyncio.gather(voice.close(), client.wait_closed())


@pytest.mark.asyncio
async def test_reconnect_identifies(
    voice_server: FakeServer,
    media_server: FakeMediaServer,
    config: VoiceConfig
) -> None:
    voice = VoiceSession(credentials(voice_server.uri), config)
    await voice.start()

    client, _, _ = await handshake(voice_server, media_server)
    await asyncio.wait_for(voice.connect(), 5)

    await client.close(4015)

    # Voice connections cannot resume, a new handshake is done
    client, identify, _ = await handshake(voice_server, media_server)
    assert identify['op'] == 0
    assert identify['d']['session_id'] == 'voice-session'

    await eventually(lambda: voice.state is VoiceState.READY)
    assert voice.mode == 'aead_xchacha20_poly1305_rtpsize'

    await client.close(4014)

    error = await asyncio.wait_for(voice.wait_closed(), 5)
    assert isinstance(error, FatalSessionError)
    assert error.code == 4014
    assert voice.mode is None

    with pytest.raises(FatalSessionError):
        async for _ in voice.events():
            pass


@pytest.mark.asyncio
async def test_update_credentials(
    voice_server: FakeServer,
    media_server: FakeMediaServer,
    config: VoiceConfig
) -> None:
    voice = VoiceSession(credentials(voice_server.uri), config)
    await voice.start()

    client, _, _ = await handshake(voice_server, media_server)
    await asyncio.wait_for(voice.connect(), 5)

    # Nothing changed, nothing happens
    voice.update(credentials(voice_server.uri))
    voice.update(credentials(voice_server.uri)._replace(endpoint=None))
    assert voice.state is VoiceState.READY

    voice.update(credentials(voice_server.uri, token='new-token'))

    client, identify, _ = await handshake(voice_server, media_server)
    assert identify['d']['token'] == 'new-token'

    await eventually(lambda: voice.state is VoiceState.READY)
    await asyncio.gather(voice.close(), client.wait_closed())


@pytest.mark.asyncio
async def test_no_common_mode(voice_server: FakeServer, media_server: FakeMediaServer) -> None:
    voice = VoiceSession(credentials(voice_server.uri), voice_config())
    await voice.start()

    client = await voice_server.accept()
    await client.send({'op': 8, 'd': {'heartbeat_interval': 45000}})
    await client.expect(0)
    await client.send({'op': 2, 'd': {
        'ssrc': 1234, 'ip': '127.0.0.1', 'port': media_server.port,
        'modes': ['aead_aes256_gcm_rtpsize'],
    }})

    with pytest.raises(FatalSessionError):
        await asyncio.wait_for(voice.connect(), 5)

    assert voice.closed


@pytest.mark.asyncio
async def test_udp_timeout(voice_server: FakeServer, media_server: FakeMediaServer) -> None:
    config = voice_config(keepalive_interval=0.05, udp_timeout=0.1)
    voice = VoiceSession(credentials(voice_server.uri), config)
    await voice.start()

    client, _, _ = await handshake(voice_server, media_server)
    await asyncio.wait_for(voice.connect(), 5)
    await eventually(lambda: media_server.keepalives > 0)

    # Without keepalive echoes the UDP path is considered dead
    media_server.echo = False

    client, identify, _ = await handshake(voice_server, media_server)
    assert identify['op'] == 0
    media_server.echo = True

    await asyncio.gather(voice.close(), client.wait_closed())


def test_missing_endpoint() -> None:
    with pytest.raises(ValueError):
        VoiceSession(credentials('ws://127.0.0.1')._replace(endpoint=None))


@pytest.mark.asyncio
async def test_max_packet_size(voice_server: FakeServer, media_server: FakeMediaServer) -> None:
    config = voice_config(max_packet_size=200)
    voice = VoiceSession(credentials(voice_server.uri), config)
    await voice.start()

    client, _, _ = await handshake(voice_server, media_server)
    await asyncio.wait_for(voice.connect(), 5)

    with pytest.raises(ValueError):
        await voice.send_audio(bytes(config.max_frame_size + 1))

    await voice.send_audio(bytes(config.max_frame_size))
    packet = await media_server.packet()
    assert len(packet) <= 200

    # Larger datagrams are dropped before decryption
    encoder = XChaCha20Poly1305RTPSize(KEY)
    media_server.send(encoder.encrypt(RTPHeader(1, 960, 999), bytes(300)))
    await eventually(lambda: voice.dropped_packets == 1)

    media_server.send(encoder.encrypt(RTPHeader(2, 1920, 999), b'hello'))
    received = await asyncio.wait_for(voice.receive_audio(), 5)
    assert received is not None and received.opus == b'hello'

    await asyncio.gather(voice.close(), client.wait_closed())


@pytest.mark.asyncio
async def test_close_stalled_peer(
    voice_server: FakeServer,
    media_server: FakeMediaServer,
    config: VoiceConfig
) -> None:
    connector = StallingConnector()
    voice = VoiceSession(credentials(voice_server.uri), config, connector=connector)
    await voice.start()

    await handshake(voice_server, media_server)
    await asyncio.wait_for(voice.connect(), 5)

    connector.writers[0].stalled = True

    # shutdown_timeout is 1 second
    await asyncio.wait_for(voice.close(), 3)
    assert voice.closed
