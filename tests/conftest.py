"""Shared fixtures for HCS tests."""

import struct
from unittest.mock import patch

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import hcs
from hcs import Direction, EAPS2000, PPS11360, SerialTransport, decode_telegram, encode_telegram


class FakeSerial:
    """Stand-in for serial.Serial.

    Every write is recorded and handed to ``responder``; whatever it returns
    is queued for the next reads.
    """

    def __init__(self, responder=None):
        self.responder = responder
        self.writes = []
        self.rx = bytearray()
        self.is_open = True
        self.fd = 42

    @property
    def written(self) -> bytes:
        return b"".join(self.writes)

    @property
    def in_waiting(self) -> int:
        return len(self.rx)

    def feed(self, data: bytes):
        self.rx += data

    def write(self, data):
        data = bytes(data)
        self.writes.append(data)
        if self.responder is not None:
            self.rx += self.responder(data)
        return len(data)

    def read(self, size=1):
        chunk = bytes(self.rx[:size])
        del self.rx[:size]
        return chunk

    def flush(self):
        pass

    def reset_input_buffer(self):
        self.rx.clear()

    def close(self):
        self.is_open = False


class EASimulator:
    """Answers EA-PS2000 telegrams like a PS 2042-10 B.

    The actual status echoes the set values, as a supply with no load
    connected would.
    """

    def __init__(self, nominal_voltage=42.0, nominal_current=10.0, nominal_power=160.0):
        self.strings = {
            hcs.OBJ_DEVICE_TYPE: b"PS 2042-10 B",
            hcs.OBJ_SERIAL_NO: b"1234567890",
            hcs.OBJ_ARTICLE_NO: b"39200112",
            hcs.OBJ_MANUFACTURER: b"EA Elektro-Auto",
            hcs.OBJ_SOFTWARE_VERSION: b"V2.01 01.03.2014",
        }
        self.floats = {
            hcs.OBJ_NOMINAL_VOLTAGE: nominal_voltage,
            hcs.OBJ_NOMINAL_CURRENT: nominal_current,
            hcs.OBJ_NOMINAL_POWER: nominal_power,
        }
        self.words = {
            hcs.OBJ_SET_VOLTAGE: 0,
            hcs.OBJ_SET_CURRENT: 0,
            hcs.OBJ_OVP_THRESHOLD: 28160,  # 110 %
            hcs.OBJ_OCP_THRESHOLD: 28160,
        }
        self.remote = False
        self.output_on = False
        self.current_limited = False
        self.error_code = None
        self.corrupt = False
        self.received = []

    def __call__(self, frame: bytes) -> bytes:
        telegram = decode_telegram(frame)
        self.received.append(telegram)
        if self.error_code is not None:
            return self.reply(hcs.OBJ_ERROR, bytes([self.error_code]))
        if telegram.direction == Direction.SEND:
            self.apply(telegram)
            return self.reply(hcs.OBJ_ERROR, b"\x00")
        return self.reply(telegram.obj, self.read(telegram.obj))

    def status(self) -> bytes:
        state = 0x01 if self.output_on else 0x00
        if self.current_limited:
            state |= 0x04
        return bytes([0x01 if self.remote else 0x00, state]) + struct.pack(
            ">HH", self.words[hcs.OBJ_SET_VOLTAGE], self.words[hcs.OBJ_SET_CURRENT]
        )

    def read(self, obj: int) -> bytes:
        if obj in (hcs.OBJ_STATUS_ACTUAL, hcs.OBJ_STATUS_SET):
            return self.status()
        if obj in self.strings:
            return self.strings[obj].ljust(16, b"\x00")
        if obj in self.floats:
            return struct.pack(">f", self.floats[obj])
        return struct.pack(">H", self.words[obj])

    def apply(self, telegram):
        if telegram.obj == hcs.OBJ_CONTROL:
            mask, value = telegram.payload
            if mask & 0x10:
                self.remote = bool(value & 0x10)
            if mask & 0x01:
                self.output_on = bool(value & 0x01)
        else:
            self.words[telegram.obj] = struct.unpack(">H", telegram.payload)[0]

    def reply(self, obj: int, payload: bytes) -> bytes:
        frame = encode_telegram(Direction.REPLY, obj, payload)
        if self.corrupt:
            frame = frame[:-1] + bytes([frame[-1] ^ 0x01])
        return frame


class PPSSimulator:
    """Answers Voltcraft PPS commands once a full CR-terminated line arrived."""

    def __init__(self):
        self.line = bytearray()
        self.commands = []
        self.getd = b"1205012000"
        self.gets = b"120150"

    def __call__(self, data: bytes) -> bytes:
        self.line += data
        if not self.line.endswith(b"\r"):
            return b""
        command = self.line[:-1].decode("ascii")
        self.line.clear()
        self.commands.append(command)
        if command == "GETD":
            return self.getd + b"\rOK\r"
        if command == "GETS":
            return self.gets + b"\rOK\r"
        return b"OK\r"


@pytest.fixture
def make_transport():
    """Open a SerialTransport on top of a FakeSerial."""

    def _make(fake, baudrate=115200):
        with patch("hcs._capture_line_settings", return_value=None), \
                patch("hcs.serial.Serial", return_value=fake):
            transport = SerialTransport("/dev/fake", baudrate)
            transport.open()
        return transport

    return _make


@pytest.fixture
def ea_device():
    return EASimulator()


@pytest.fixture
def ea_serial(ea_device):
    return FakeSerial(responder=ea_device)


@pytest.fixture
def ea_psu(ea_serial):
    """An EAPS2000 opened on the simulator, settle delays disabled."""
    with patch("hcs._capture_line_settings", return_value=None), \
            patch("hcs.serial.Serial", return_value=ea_serial):
        psu = EAPS2000("/dev/fake", settle_delay=0)
        psu.open()
    yield psu
    if psu.is_open:
        psu.close()


@pytest.fixture
def pps_device():
    return PPSSimulator()


@pytest.fixture
def pps_serial(pps_device):
    return FakeSerial(responder=pps_device)


@pytest.fixture
def pps_psu(pps_serial):
    with patch("hcs._capture_line_settings", return_value=None), \
            patch("hcs.serial.Serial", return_value=pps_serial):
        psu = PPS11360("/dev/fake")
        psu.open()
    yield psu
    if psu.is_open:
        psu.close()
