import pytest

from discord_session import (
    GATEWAY_CLOSE_CODES, VOICE_CLOSE_CODES, CloseCode, CloseCodeTable,
    ClosePolicy, Opcode, VoiceCloseCode, VoiceOpcode, should_reconnect
)


def test_unknown_opcodes() -> None:
    assert Opcode(5) is Opcode.UNKNOWN
    assert VoiceOpcode(42) is VoiceOpcode.UNKNOWN
    assert Opcode(10) is Opcode.HELLO
    assert VoiceOpcode(8) is VoiceOpcode.HELLO


class TestGatewayCodes:
    @pytest.mark.parametrize('code', (
        CloseCode.GENERIC_ERROR, CloseCode.UNKNOWN_OPCODE, CloseCode.DECODING_ERROR,
        CloseCode.ALREADY_AUTHENTICATED, CloseCode.RATE_LIMITED,
    ))
    def test_resumable(self, code: int) -> None:
        assert GATEWAY_CLOSE_CODES.lookup(code) is ClosePolicy.RESUME

    @pytest.mark.parametrize('code', (
        1000, 1001, CloseCode.NOT_AUTHENTICATED, CloseCode.INVALID_SEQ,
        CloseCode.SESSION_TIMED_OUT,
    ))
    def test_reidentify(self, code: int) -> None:
        assert GATEWAY_CLOSE_CODES.lookup(code) is ClosePolicy.REIDENTIFY

    @pytest.mark.parametrize('code', (
        CloseCode.AUTHENTICATION_FAILED, CloseCode.INVALID_SHARD,
        CloseCode.SHARDING_REQUIRED, CloseCode.INVALID_API_VERSION,
        CloseCode.INVALID_INTENTS, CloseCode.DISALLOWED_INTENTS,
    ))
    def test_fatal(self, code: int) -> None:
        assert GATEWAY_CLOSE_CODES.lookup(code) is ClosePolicy.FATAL
        assert not should_reconnect(code)

    def test_unknown(self) -> None:
        assert GATEWAY_CLOSE_CODES.lookup(4999) is ClosePolicy.RESUME
        assert GATEWAY_CLOSE_CODES.lookup(None) is ClosePolicy.RESUME
        assert should_reconnect(None)


class TestVoiceCodes:
    def test_server_crashed(self) -> None:
        assert VOICE_CLOSE_CODES.lookup(VoiceCloseCode.SERVER_CRASHED) is ClosePolicy.RESUME

    def test_disconnected(self) -> None:
        assert VOICE_CLOSE_CODES.lookup(VoiceCloseCode.DISCONNECTED) is ClosePolicy.FATAL
        assert not should_reconnect(4014, VOICE_CLOSE_CODES)

    def test_differs_from_gateway(self) -> None:
        # 4006 is a fatal session error in voice and unused in the gateway
        assert VOICE_CLOSE_CODES.lookup(4006) is ClosePolicy.FATAL
        assert GATEWAY_CLOSE_CODES.lookup(4006) is ClosePolicy.RESUME


class TestTable:
    def test_overrides(self) -> None:
        table = GATEWAY_CLOSE_CODES.with_overrides({4000: ClosePolicy.FATAL, 4100: ClosePolicy.FATAL})

        assert table.lookup(4000) is ClosePolicy.FATAL
        assert table.lookup(4100) is ClosePolicy.FATAL
        # The original is left untouched
        assert GATEWAY_CLOSE_CODES.lookup(4000) is ClosePolicy.RESUME

    def test_default(self) -> None:
        table = CloseCodeTable({}, default=ClosePolicy.REIDENTIFY)

        assert table.lookup(4000) is ClosePolicy.REIDENTIFY
        assert table.with_overrides({}, default=ClosePolicy.FATAL).lookup(4000) is ClosePolicy.FATAL

    def test_mapping(self) -> None:
        table = CloseCodeTable({4000: ClosePolicy.RESUME})

        assert dict(table) == {4000: ClosePolicy.RESUME}
        assert len(table) == 1
        assert hash(table) == hash(CloseCodeTable({4000: ClosePolicy.RESUME}))
