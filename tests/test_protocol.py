"""Frame-level protocol tests -- no serial port involved.

Covers checksum, telegram encode/decode, raw <-> physical scaling, the
device error table and the ASCII reply parsers.
"""

import struct

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from hcs import (
    ERROR_REASONS,
    OBJ_NOMINAL_VOLTAGE,
    OBJ_SET_VOLTAGE,
    OBJ_STATUS_ACTUAL,
    ChecksumError,
    Direction,
    FrameError,
    checksum,
    decode_telegram,
    encode_setpoint,
    encode_telegram,
    error_reason,
    parse_getd,
    parse_gets,
    physical_to_raw,
    raw_to_physical,
)


# ---------------------------------------------------------------------------
# Checksum
# ---------------------------------------------------------------------------

class TestChecksum:

    def test_is_plain_byte_sum(self):
        frame = bytes([0xF1, 0x00, 0x32, 0x0B, 0xE7])
        assert checksum(frame) == 0xF1 + 0x32 + 0x0B + 0xE7

    def test_wraps_at_16_bits(self):
        frame = b"\xFF" * 300  # 76500
        assert checksum(frame) == 76500 % 65536

    def test_empty(self):
        assert checksum(b"") == 0

    def test_appended_checksum_validates(self):
        frame = encode_telegram(Direction.SEND, OBJ_SET_VOLTAGE, b"\x0B\xE7")
        assert decode_telegram(frame).payload == b"\x0B\xE7"

    def test_every_single_bit_flip_is_detected(self):
        frame = encode_telegram(Direction.SEND, OBJ_SET_VOLTAGE, b"\x0B\xE7")
        for index in range(len(frame)):
            for bit in range(8):
                damaged = bytearray(frame)
                damaged[index] ^= 1 << bit
                with pytest.raises((ChecksumError, FrameError)):
                    decode_telegram(bytes(damaged))


# ---------------------------------------------------------------------------
# Telegram layout
# ---------------------------------------------------------------------------

class TestEncodeTelegram:

    def test_query_nominal_voltage(self):
        """RECEIVE object 2, expecting 4 bytes: header 0x20|0x40|0x10|3."""
        frame = encode_telegram(Direction.RECEIVE, OBJ_NOMINAL_VOLTAGE, length=4)
        assert frame == bytes([0x73, 0x00, 0x02, 0x00, 0x75])

    def test_set_voltage(self):
        """SEND object 50 with raw 0x0BE7: header 0x20|0xC0|0x10|1."""
        frame = encode_telegram(Direction.SEND, OBJ_SET_VOLTAGE, b"\x0B\xE7")
        assert frame[:5] == bytes([0xF1, 0x00, 0x32, 0x0B, 0xE7])
        assert frame[5:] == (0xF1 + 0x32 + 0x0B + 0xE7).to_bytes(2, "big")

    def test_status_query_length(self):
        frame = encode_telegram(Direction.RECEIVE, OBJ_STATUS_ACTUAL, length=6)
        assert frame[0] & 0x0F == 5
        assert len(frame) == 5

    def test_payload_too_long(self):
        with pytest.raises(ValueError):
            encode_telegram(Direction.SEND, 0, bytes(17))


class TestDecodeTelegram:

    @pytest.mark.parametrize("direction", [Direction.SEND, Direction.RECEIVE, Direction.REPLY])
    @pytest.mark.parametrize("size", [0, 1, 2, 6, 15, 16])
    def test_round_trip(self, direction, size):
        payload = bytes(range(0x30, 0x30 + size))
        telegram = decode_telegram(encode_telegram(direction, 54, payload))
        assert (telegram.direction, telegram.obj, telegram.payload) == (direction, 54, payload)
        assert telegram.address == 0

    def test_too_short(self):
        with pytest.raises(FrameError):
            decode_telegram(bytes([0x73, 0x00, 0x73]))

    def test_too_long(self):
        with pytest.raises(FrameError):
            decode_telegram(bytes(22))

    def test_length_nibble_mismatch(self):
        body = bytes([0xF0, 0x00, 0x32, 0x0B, 0xE7])  # announces 1 byte, carries 2
        with pytest.raises(FrameError):
            decode_telegram(body + checksum(body).to_bytes(2, "big"))

    def test_reserved_transmission_type(self):
        body = bytes([0x30, 0x00, 0x32, 0x01])
        with pytest.raises(FrameError):
            decode_telegram(body + checksum(body).to_bytes(2, "big"))

    def test_error_code(self):
        telegram = decode_telegram(encode_telegram(Direction.REPLY, 0xFF, b"\x15"))
        assert telegram.error_code == 0x15

    def test_no_error_code_on_data_reply(self):
        telegram = decode_telegram(encode_telegram(Direction.REPLY, 50, b"\x0B\xE7"))
        assert telegram.error_code is None


# ---------------------------------------------------------------------------
# Unit scaling
# ---------------------------------------------------------------------------

class TestScaling:

    def test_full_scale(self):
        assert raw_to_physical(25600, 42.0) == 42.0

    def test_set_voltage_encoding_truncates(self):
        assert physical_to_raw(5.0, 42.0) == int(5.0 * 25600 / 42.0) == 3047

    @pytest.mark.parametrize("nominal", [42.0, 84.0, 10.0, 4.0])
    def test_round_trip_within_one_step(self, nominal):
        step = nominal / 25600
        for i in range(101):
            value = nominal * i / 100
            back = raw_to_physical(physical_to_raw(value, nominal), nominal)
            assert abs(back - value) <= step + 1e-9

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            physical_to_raw(-0.1, 42.0)

    def test_overflow_rejected(self):
        with pytest.raises(ValueError):
            physical_to_raw(42.0 * 3, 42.0)


# ---------------------------------------------------------------------------
# Device error table
# ---------------------------------------------------------------------------

class TestErrorReasons:

    @pytest.mark.parametrize("code,text", [
        (0x00, "No error"),
        (0x03, "Check sum incorrect"),
        (0x04, "Start delimiter incorrect"),
        (0x05, "Wrong address for output"),
        (0x07, "Object not defined"),
        (0x08, "Object length incorrect"),
        (0x09, "Read/Write permissions violated, no access"),
        (0x15, 'Device is in "Lock" state'),
        (0x30, "Upper limit of object exceeded"),
        (0x31, "Lower limit of object exceeded"),
    ])
    def test_known_codes(self, code, text):
        assert error_reason(code) == text

    def test_table_size(self):
        assert len(ERROR_REASONS) == 10

    @pytest.mark.parametrize("code", [0x01, 0x02, 0x10, 0x99, 0xFE])
    def test_unknown_code_falls_back(self, code):
        assert error_reason(code) == "No error"


# ---------------------------------------------------------------------------
# ASCII replies
# ---------------------------------------------------------------------------

class TestAsciiParsing:

    def test_getd_fields(self):
        reading = parse_getd("1205012000\n")
        assert reading.voltage == 120 / 10
        assert reading.current == 12 / 1000
        assert reading.current_limited is False

    def test_getd_current_limited(self):
        reading = parse_getd("050015001\n")
        assert reading.voltage == 5.0
        assert reading.current == 150 / 1000
        assert reading.current_limited is True

    def test_getd_too_short(self):
        with pytest.raises(FrameError):
            parse_getd("120\n")

    def test_getd_missing_flag(self):
        with pytest.raises(FrameError):
            parse_getd("12050120\n")

    def test_getd_not_numeric(self):
        with pytest.raises(FrameError):
            parse_getd("1x050120001\n")

    def test_gets_fields(self):
        assert parse_gets("120150\n") == (12.0, 1.5)

    def test_gets_too_short(self):
        with pytest.raises(FrameError):
            parse_gets("1201\n")

    def test_encode_setpoint(self):
        assert encode_setpoint(1.5, 100) == "150"
        assert encode_setpoint(5.0, 10) == "050"
        assert encode_setpoint(0.0, 10) == "000"

    def test_encode_setpoint_out_of_range(self):
        with pytest.raises(ValueError):
            encode_setpoint(100.0, 10)
        with pytest.raises(ValueError):
            encode_setpoint(-1.0, 10)


def test_float_layout():
    """Nominal values travel as big-endian IEEE 754."""
    assert struct.pack(">f", 42.0) == bytes([0x42, 0x28, 0x00, 0x00])
