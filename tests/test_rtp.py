import struct

import pytest

from discord_session import (
    DISCOVERY_PACKET_SIZE, RTP_HEADER_SIZE, Malformed, RTPHeader,
    build_discovery_packet, build_keepalive_packet, is_rtcp,
    parse_discovery_packet, strip_extension
)


class TestHeader:
    def test_pack(self) -> None:
        packed = RTPHeader(1, 960, 42).pack()

        assert len(packed) == RTP_HEADER_SIZE
        assert packed[:2] == b'\x80\x78'
        assert struct.unpack('>HII', packed[2:]) == (1, 960, 42)

    def test_wraps(self) -> None:
        packed = RTPHeader(0x10000, 0x100000000, 1).pack()

        assert struct.unpack('>HI', packed[2:8]) == (0, 0)

    def test_unpack(self) -> None:
        header = RTPHeader.unpack(RTPHeader(7, 1920, 99).pack() + b'payload')

        assert header == RTPHeader(7, 1920, 99)
        assert header.size == RTP_HEADER_SIZE

    def test_extension_and_csrcs(self) -> None:
        packet = b'\x92\x78' + struct.pack('>HII', 1, 2, 3) + bytes(8)
        header = RTPHeader.unpack(packet)

        assert header.extension
        assert header.csrc_count == 2
        assert header.size == RTP_HEADER_SIZE + 8

    @pytest.mark.parametrize('packet', (
        b'\x80\x78\x00',
        b'\x40\x78' + bytes(10),
        b'\x80\x60' + bytes(10),
        b'\x82\x78' + bytes(10),
    ))
    def test_malformed(self, packet: bytes) -> None:
        with pytest.raises(Malformed):
            RTPHeader.unpack(packet)


class TestRTCP:
    @pytest.mark.parametrize('payload_type', (200, 201, 204))
    def test_rtcp(self, payload_type: int) -> None:
        assert is_rtcp(bytes([0x80, payload_type]) + bytes(6))

    def test_voice(self) -> None:
        assert not is_rtcp(RTPHeader(1, 1, 1).pack())


class TestExtension:
    def test_with_preamble(self) -> None:
        data = b'\xbe\xde\x00\x01' + b'\x10\xff\x00\x00' + b'opus'

        assert strip_extension(data) == b'opus'

    def test_known_length(self) -> None:
        assert strip_extension(b'\x10\xff\x00\x00opus', preamble_length=1) == b'opus'

    def test_too_long(self) -> None:
        with pytest.raises(Malformed):
            strip_extension(b'\xbe\xde\x00\x08opus')


class TestDiscovery:
    def test_request(self) -> None:
        packet = build_discovery_packet(1234)

        assert len(packet) == DISCOVERY_PACKET_SIZE
        assert struct.unpack_from('>HHI', packet) == (1, 70, 1234)
        assert packet[8:] == bytes(66)

    def test_response(self) -> None:
        packet = struct.pack('>HHI64sH', 2, 70, 1234, b'203.0.113.7', 50004)

        result = parse_discovery_packet(packet)
        assert result.ssrc == 1234
        assert result.address == '203.0.113.7'
        assert result.port == 50004

    def test_too_short(self) -> None:
        with pytest.raises(Malformed):
            parse_discovery_packet(bytes(20))

    def test_not_response(self) -> None:
        with pytest.raises(Malformed):
            parse_discovery_packet(build_discovery_packet(1234))

    def test_missing_address(self) -> None:
        with pytest.raises(Malformed):
            parse_discovery_packet(struct.pack('>HHI64sH', 2, 70, 1234, b'', 50004))


def test_keepalive() -> None:
    assert build_keepalive_packet(5) == struct.pack('>Q', 5)
    assert len(build_keepalive_packet(2 ** 64)) == 8
