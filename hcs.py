#!/usr/bin/env python3
"""
HCS: bench power supply control over a serial link.

Two device families are supported, each with its own wire protocol:

- Elektro-Automatik PS 2000 series: binary object-addressed telegrams,
  115200 baud, odd parity, 16-bit additive checksum.
- Voltcraft PPS series: carriage-return terminated ASCII commands, 9600
  baud, every reply ends with ``OK``.

Both are driven through the same :class:`PowerSupply` interface.

Requires: pyserial (`pip install pyserial`)
"""

import logging
import os
import struct
import sys
import termios
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import NamedTuple, Optional

import serial

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
DEVICE_ENV = "HCS_DEVICE"
DEFAULT_DEVICE = "/dev/ttyUSB0"

# Pause before reading a telegram reply and again after the exchange.
SETTLE_DELAY = 0.05  # 50 ms


def default_device() -> str:
    """Device node to open when the caller does not name one."""
    return os.environ.get(DEVICE_ENV) or DEFAULT_DEVICE


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class PSUError(Exception):
    """Base class for every failure raised by this module."""


class TransportError(PSUError, IOError):
    """Byte-stream level failure on the serial line."""


class TransportOpenError(TransportError):
    pass


class TransportReadError(TransportError):
    pass


class ShortWriteError(TransportError):
    def __init__(self, written: int, expected: int):
        super().__init__(
            f"Failed to send sufficient bytes: {written} out of {expected}"
        )
        self.written = written
        self.expected = expected


class ProtocolError(PSUError):
    """A frame could not be parsed. The session has to be reopened."""


class ChecksumError(ProtocolError):
    pass


class FrameError(ProtocolError):
    pass


class BufferExhaustedError(ProtocolError):
    pass


class DeviceError(PSUError):
    """The power supply answered with an error telegram."""

    def __init__(self, code: int):
        self.code = code
        self.reason = error_reason(code)
        super().__init__(f"PSU reported error: {self.reason} (0x{code:02X})")


class UnsupportedError(PSUError, NotImplementedError):
    def __init__(self, operation: str, model: str):
        super().__init__(f"{operation} is not supported by {model}")
        self.operation = operation
        self.model = model


class DeviceClosedError(PSUError):
    pass


# ---------------------------------------------------------------------------
# Serial transport
# ---------------------------------------------------------------------------
def _capture_line_settings(port: str):
    """Return the termios attributes *port* has before we reconfigure it."""
    fd = os.open(port, os.O_RDWR | os.O_NOCTTY | os.O_NONBLOCK)
    try:
        return termios.tcgetattr(fd)
    except termios.error:
        logger.debug("%s has no terminal settings to preserve", port)
        return None
    finally:
        os.close(fd)


class SerialTransport:
    """Owns one serial port for the lifetime of a device session.

    The port runs raw: 8 data bits, one stop bit, no flow control, reads
    return as soon as a byte is available. Whatever line settings the node
    had before :meth:`open` are put back by :meth:`close`.
    """

    def __init__(self, port: str, baudrate: int,
                 parity: str = serial.PARITY_NONE,
                 timeout: Optional[float] = None):
        self.port = port
        self.baudrate = baudrate
        self.parity = parity
        self.timeout = timeout
        self._ser: Optional[serial.Serial] = None
        self._saved_attrs = None

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    def open(self):
        if self._ser is not None:
            raise TransportOpenError(f'"{self.port}" is already open')
        try:
            saved = _capture_line_settings(self.port)
            ser = serial.Serial(
                self.port, self.baudrate,
                bytesize=serial.EIGHTBITS, parity=self.parity,
                stopbits=serial.STOPBITS_ONE, timeout=self.timeout,
                xonxoff=False, rtscts=False, dsrdtr=False,
            )
        except (OSError, serial.SerialException) as exc:
            raise TransportOpenError(
                f'Failed to open "{self.port}": {exc}'
            ) from exc

        # Drop anything the device sent before we were listening
        ser.reset_input_buffer()
        self._ser = ser
        self._saved_attrs = saved
        logger.info("Opened %s at %d baud", self.port, self.baudrate)

    def close(self):
        """Restore the original line settings and release the port."""
        ser = self._ser
        if ser is None:
            return
        self._ser = None
        try:
            if self._saved_attrs is not None and ser.is_open:
                ser.reset_input_buffer()
                termios.tcsetattr(ser.fd, termios.TCSANOW, self._saved_attrs)
        except termios.error as exc:
            logger.warning("Could not restore settings of %s: %s", self.port, exc)
        finally:
            self._saved_attrs = None
            ser.close()
        logger.info("Closed %s", self.port)

    def _require_open(self) -> serial.Serial:
        if self._ser is None:
            raise TransportError(f'"{self.port}" is not open')
        return self._ser

    def read_exact(self, size: int) -> bytes:
        """Read exactly *size* bytes, looping over partial reads."""
        ser = self._require_open()
        buf = bytearray()
        while len(buf) < size:
            try:
                chunk = ser.read(size - len(buf))
            except serial.SerialException as exc:
                raise TransportReadError(
                    f"Read from {self.port} failed: {exc}"
                ) from exc
            if not chunk:
                raise TransportReadError(
                    f"Read from {self.port} made no progress "
                    f"({len(buf)} of {size} bytes)"
                )
            buf += chunk
        return bytes(buf)

    def read_available(self, limit: int) -> bytes:
        """Read at least one and at most *limit* bytes."""
        ser = self._require_open()
        try:
            size = max(1, min(limit, ser.in_waiting))
            chunk = ser.read(size)
        except (OSError, serial.SerialException) as exc:
            raise TransportReadError(f"Read from {self.port} failed: {exc}") from exc
        if not chunk:
            raise TransportReadError(f"Read from {self.port} made no progress")
        return chunk

    def write_all(self, data: bytes):
        ser = self._require_open()
        try:
            written = ser.write(data)
            ser.flush()
        except serial.SerialException as exc:
            raise TransportError(f"Write to {self.port} failed: {exc}") from exc
        if written != len(data):
            raise ShortWriteError(written or 0, len(data))


# ---------------------------------------------------------------------------
# EA-PS2000 telegrams
# ---------------------------------------------------------------------------
CAST_TYPE = 0x20
ADDRESSED = 0x10


class Direction(IntEnum):
    """Transmission type, bits 7-6 of the telegram header."""

    RECEIVE = 0x40  # query data
    REPLY = 0x80    # answer from the device
    SEND = 0xC0     # send data


# Object codes
OBJ_DEVICE_TYPE = 0
OBJ_SERIAL_NO = 1
OBJ_NOMINAL_VOLTAGE = 2
OBJ_NOMINAL_CURRENT = 3
OBJ_NOMINAL_POWER = 4
OBJ_ARTICLE_NO = 6
OBJ_MANUFACTURER = 8
OBJ_SOFTWARE_VERSION = 9
OBJ_DEVICE_CLASS = 19
OBJ_OVP_THRESHOLD = 38
OBJ_OCP_THRESHOLD = 39
OBJ_SET_VOLTAGE = 50
OBJ_SET_CURRENT = 51
OBJ_CONTROL = 54
OBJ_STATUS_ACTUAL = 71
OBJ_STATUS_SET = 72

# Replies addressed to this object carry an error code as payload
OBJ_ERROR = 0xFF

# Control register payloads: mask byte, value byte
CTRL_REMOTE_ON = b"\x10\x10"
CTRL_REMOTE_OFF = b"\x10\x00"
CTRL_OUTPUT_ON = b"\x01\x01"
CTRL_OUTPUT_OFF = b"\x01\x00"

ERR_NONE = 0x00
ERROR_REASONS = {
    ERR_NONE: "No error",
    0x03: "Check sum incorrect",
    0x04: "Start delimiter incorrect",
    0x05: "Wrong address for output",
    0x07: "Object not defined",
    0x08: "Object length incorrect",
    0x09: "Read/Write permissions violated, no access",
    0x15: 'Device is in "Lock" state',
    0x30: "Upper limit of object exceeded",
    0x31: "Lower limit of object exceeded",
}

MAX_PAYLOAD = 16
TELEGRAM_BUFFER_SIZE = 3 + MAX_PAYLOAD + 2
STRING_LENGTH = 16
STATUS_LENGTH = 6
FLOAT_LENGTH = 4
WORD_LENGTH = 2

# Raw set/actual values are percentages of the nominal rating: 25600 == 100 %
RAW_FULL_SCALE = 25600


def error_reason(code: int) -> str:
    """Human-readable text for a device error code."""
    return ERROR_REASONS.get(code, ERROR_REASONS[ERR_NONE])


def checksum(frame: bytes) -> int:
    """Plain 16-bit sum of all bytes. The device does not use a CRC."""
    return sum(frame) & 0xFFFF


def header_byte(direction: int, length: int) -> int:
    return CAST_TYPE | direction | ADDRESSED | ((length - 1) & 0x0F)


def encode_telegram(direction: int, obj: int, payload: bytes = b"",
                    length: Optional[int] = None) -> bytes:
    """Build a wire telegram: header | address | object | payload | checksum.

    *length* goes into the header nibble and defaults to the payload
    length. Queries carry no payload and use it to announce the size of
    the expected answer.
    """
    if len(payload) > MAX_PAYLOAD:
        raise ValueError(f"Payload of {len(payload)} bytes exceeds {MAX_PAYLOAD}")
    if length is None:
        length = len(payload)
    body = bytes([header_byte(direction, length), 0x00, obj & 0xFF]) + bytes(payload)
    return body + checksum(body).to_bytes(2, "big")


@dataclass
class Telegram:
    direction: Direction
    obj: int
    payload: bytes
    address: int = 0
    header: int = 0

    @property
    def error_code(self) -> Optional[int]:
        """Error code of an error telegram, None for ordinary replies."""
        if self.obj == OBJ_ERROR and self.payload:
            return self.payload[0]
        return None


def decode_telegram(frame: bytes) -> Telegram:
    """Parse and validate one complete telegram."""
    if len(frame) < 5:
        raise FrameError(f"Telegram too short: {len(frame)} bytes")
    if len(frame) > TELEGRAM_BUFFER_SIZE:
        raise FrameError(f"Telegram too long: {len(frame)} bytes")

    expected = checksum(frame[:-2])
    received = int.from_bytes(frame[-2:], "big")
    if expected != received:
        raise ChecksumError(
            f"Message invalid, checksum 0x{received:04X} != 0x{expected:04X}"
        )

    header = frame[0]
    try:
        direction = Direction(header & 0xC0)
    except ValueError:
        raise FrameError(f"Reserved transmission type in header 0x{header:02X}") from None

    payload = bytes(frame[3:-2])
    if payload and (header & 0x0F) != len(payload) - 1:
        raise FrameError(
            f"Header announces {(header & 0x0F) + 1} bytes, "
            f"telegram carries {len(payload)}"
        )
    return Telegram(direction, frame[2], payload, frame[1], header)


def raw_to_physical(raw: int, nominal: float) -> float:
    return raw * nominal / RAW_FULL_SCALE


def physical_to_raw(value: float, nominal: float) -> int:
    """Scale volts/amps to the device's 16-bit percentage encoding."""
    if value < 0:
        raise ValueError(f"Value {value} must be non-negative")
    raw = int(value * RAW_FULL_SCALE / nominal)
    if raw > 0xFFFF:
        raise ValueError(f"Value {value} out of range for nominal {nominal}")
    return raw


class TelegramCodec:
    """Request/response exchange of EA-PS2000 telegrams on one transport.

    A request is assembled in a buffer owned by the codec::

        codec.start(Direction.SEND, 2)
        codec.set_object(OBJ_SET_VOLTAGE)
        codec.push(0x0B)
        codec.push(0xE7)
        reply = codec.send()

    or in one go with :meth:`request`.
    """

    def __init__(self, transport: SerialTransport, settle_delay: float = SETTLE_DELAY):
        self._transport = transport
        self._settle_delay = settle_delay
        self._frame = bytearray(TELEGRAM_BUFFER_SIZE)
        self._size = 0
        self._started = False
        self._faulted = False

    @property
    def frame(self) -> bytes:
        """Bytes currently held in the buffer."""
        return bytes(self._frame[:self._size])

    @property
    def faulted(self) -> bool:
        return self._faulted

    def start(self, direction: int, payload_len: int):
        if not 0 <= payload_len <= MAX_PAYLOAD:
            raise ValueError(f"Payload length must be 0-{MAX_PAYLOAD}, got {payload_len}")
        self._frame[0] = header_byte(direction, payload_len)
        self._frame[1] = 0x00
        self._size = 2
        self._started = True

    def set_object(self, code: int):
        self.push(code)

    def push(self, value: int):
        if not self._started:
            raise FrameError("No telegram started")
        # Keep two bytes free for the checksum
        if self._size >= TELEGRAM_BUFFER_SIZE - 2:
            raise FrameError("Telegram buffer full")
        self._frame[self._size] = value & 0xFF
        self._size += 1

    def send(self) -> Telegram:
        """Send the assembled telegram and return the validated reply."""
        if self._faulted:
            raise ProtocolError("Connection is out of sync, reopen the device")
        if not self._started or self._size < 3:
            raise FrameError("No telegram started")
        if self._size + 2 > TELEGRAM_BUFFER_SIZE:
            raise FrameError("Telegram buffer full")

        crc = checksum(self._frame[:self._size])
        self._frame[self._size] = (crc >> 8) & 0xFF
        self._frame[self._size + 1] = crc & 0xFF
        self._size += 2
        self._started = False

        frame = self.frame
        logger.debug("TX %s", frame.hex(" "))
        self._transport.write_all(frame)

        # Header 0 marks the buffer as waiting for the answer
        self._frame[0] = 0
        time.sleep(self._settle_delay)
        reply = self.receive()

        code = reply.error_code
        if code:
            raise DeviceError(code)
        time.sleep(self._settle_delay)
        return reply

    def receive(self) -> Telegram:
        head = self._transport.read_exact(3)
        total = 3 + (head[0] & 0x0F) + 1 + 2
        frame = head + self._transport.read_exact(total - 3)

        self._frame[:total] = frame
        self._size = total
        self._started = False
        logger.debug("RX %s", frame.hex(" "))
        try:
            return decode_telegram(frame)
        except ProtocolError:
            self._faulted = True
            raise

    def request(self, direction: int, obj: int, payload: bytes = b"",
                length: Optional[int] = None) -> Telegram:
        self.start(direction, len(payload) if length is None else length)
        self.set_object(obj)
        for value in payload:
            self.push(value)
        return self.send()


# ---------------------------------------------------------------------------
# Voltcraft PPS ASCII protocol
# ---------------------------------------------------------------------------
CMD_GETD = "GETD"  # actual voltage, current, limit flag
CMD_GETS = "GETS"  # set voltage and current
CMD_VOLT = "VOLT"
CMD_CURR = "CURR"
CMD_SOUT = "SOUT"

ASCII_TERMINATOR = b"OK\n"
ASCII_MAX_REPLY = 1024

# (start, end, divisor) of each field in a reply body
GETD_VOLTAGE = (0, 3, 10)
GETD_CURRENT = (4, 7, 1000)
GETD_LIMIT = (8, 9)
GETS_VOLTAGE = (0, 3, 10)
GETS_CURRENT = (3, 6, 100)


class GetdReading(NamedTuple):
    voltage: float
    current: float
    current_limited: bool


def _decimal_field(body: str, start: int, end: int, divisor: int) -> float:
    text = body[start:end]
    if len(text) != end - start or not text.isdigit():
        raise FrameError(f"Invalid reply: field [{start}:{end}] of {body!r}")
    return int(text) / divisor


def parse_getd(body: str) -> GetdReading:
    """Split a GETD reply into actual voltage, current and limit flag."""
    voltage = _decimal_field(body, *GETD_VOLTAGE)
    current = _decimal_field(body, *GETD_CURRENT)
    flag = body[GETD_LIMIT[0]:GETD_LIMIT[1]]
    if not flag or flag == "\n":
        raise FrameError(f"Invalid reply: no limit flag in {body!r}")
    return GetdReading(voltage, current, flag != "0")


def parse_gets(body: str) -> tuple[float, float]:
    return _decimal_field(body, *GETS_VOLTAGE), _decimal_field(body, *GETS_CURRENT)


def encode_setpoint(value: float, scale: int) -> str:
    """Three zero-padded digits of value * scale, as VOLT/CURR expect."""
    digits = int(round(value * scale))
    if not 0 <= digits <= 999:
        raise ValueError(f"Value {value} out of range [0, {999 / scale}]")
    return f"{digits:03d}"


class AsciiProtocol:
    """Command/response framing of the Voltcraft PPS serial protocol."""

    def __init__(self, transport: SerialTransport):
        self._transport = transport
        self._faulted = False

    def send(self, command: str, arg=None):
        if self._faulted:
            raise ProtocolError("Connection is out of sync, reopen the device")
        logger.debug("TX %s%s", command, "" if arg is None else arg)
        self._transport.write_all(command.encode("ascii"))
        if arg is not None:
            self._transport.write_all(str(arg).encode("ascii"))
        self._transport.write_all(b"\r")

    def receive(self, max_len: int = ASCII_MAX_REPLY) -> bytes:
        """Read until the reply ends with ``OK``; CR is turned into LF."""
        buf = bytearray()
        while not buf.endswith(ASCII_TERMINATOR):
            if len(buf) >= max_len:
                self._faulted = True
                raise BufferExhaustedError(
                    f"No reply terminator within {max_len} bytes"
                )
            chunk = self._transport.read_available(max_len - len(buf))
            buf += chunk.replace(b"\r", b"\n")
        logger.debug("RX %r", bytes(buf))
        return bytes(buf)

    def query(self, command: str, arg=None, max_len: int = ASCII_MAX_REPLY) -> str:
        """Send a command and return its reply without the terminator."""
        self.send(command, arg)
        reply = self.receive(max_len)
        return reply[:-len(ASCII_TERMINATOR)].decode("ascii", errors="replace")


# ---------------------------------------------------------------------------
# Power supply drivers
# ---------------------------------------------------------------------------
class OperatingMode(str, Enum):
    OFF = "Off"
    CV = "CV"
    CC = "CC"


class NominalRatings(NamedTuple):
    voltage: float
    current: float
    power: float


class PowerSupply(ABC):
    """Capability interface shared by all supported power supplies.

    Usage::

        with EAPS2000("/dev/ttyACM0") as psu:
            psu.set_voltage(5.0)
            psu.enable_output()
            print(psu.get_voltage_actual())

    Every getter performs a fresh exchange with the device; nothing but
    the nominal ratings is cached.
    """

    model = "power supply"
    baudrate = 9600
    parity = serial.PARITY_NONE

    def __init__(self, port: Optional[str] = None, timeout: Optional[float] = None):
        self._port = port
        self._timeout = timeout
        self._transport: Optional[SerialTransport] = None

    @property
    def port(self) -> Optional[str]:
        return self._port

    @property
    def is_open(self) -> bool:
        return self._transport is not None

    # -- Context manager -----------------------------------------------------

    def __enter__(self):
        if not self.is_open:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.is_open:
            return False
        if exc_type is None:
            self.close()
            return False
        # Keep the original exception, the close failure only gets logged
        try:
            self.close()
        except PSUError as exc:
            logger.warning("Closing %s after %s failed: %s",
                           self.model, exc_type.__name__, exc)
        return False

    # -- Discovery -----------------------------------------------------------

    @staticmethod
    @abstractmethod
    def matches(vendor_id: str, product_id: str) -> bool:
        """True if a USB vendor/product id pair belongs to this family."""

    # -- Lifecycle -----------------------------------------------------------

    def open(self, port: Optional[str] = None):
        """Open the serial port and take over the device.

        Falls back to ``$HCS_DEVICE`` and then ``/dev/ttyUSB0`` when no
        port was given here or to the constructor.
        """
        if self._transport is not None:
            raise PSUError(f"{self.model} is already open on {self._port}")
        if port is not None:
            self._port = port
        if self._port is None:
            self._port = default_device()

        transport = SerialTransport(self._port, self.baudrate,
                                    parity=self.parity, timeout=self._timeout)
        transport.open()
        self._transport = transport
        try:
            self._initialize()
        except PSUError:
            self._transport = None
            transport.close()
            raise

    def close(self):
        """Hand control back to the device and close the port."""
        if self._transport is None:
            raise DeviceClosedError("Close device: Device already closed")
        try:
            self._uninitialize()
        finally:
            self._transport.close()
            self._transport = None

    def _initialize(self):
        pass

    def _uninitialize(self):
        pass

    def _require_open(self) -> SerialTransport:
        if self._transport is None:
            raise DeviceClosedError(f"{self.model} is not open")
        return self._transport

    # -- Set points and readings ---------------------------------------------

    @abstractmethod
    def get_voltage(self) -> float:
        """Voltage set point in volts."""

    @abstractmethod
    def set_voltage(self, volts: float):
        pass

    @abstractmethod
    def get_current(self) -> float:
        """Current limit in amps."""

    @abstractmethod
    def set_current(self, amps: float):
        pass

    @abstractmethod
    def get_voltage_actual(self) -> float:
        """Measured output voltage in volts."""

    @abstractmethod
    def get_current_actual(self) -> float:
        """Measured output current in amps."""

    @abstractmethod
    def enable_output(self):
        pass

    @abstractmethod
    def disable_output(self):
        pass

    # -- Optional capabilities -----------------------------------------------

    def get_output_enabled(self) -> bool:
        raise UnsupportedError("Reading the output state", self.model)

    def get_over_voltage(self) -> float:
        raise UnsupportedError("Over-voltage protection", self.model)

    def set_over_voltage(self, volts: float):
        raise UnsupportedError("Over-voltage protection", self.model)

    def get_over_current(self) -> float:
        raise UnsupportedError("Over-current protection", self.model)

    def set_over_current(self, amps: float):
        raise UnsupportedError("Over-current protection", self.model)

    def get_operating_mode(self) -> OperatingMode:
        raise UnsupportedError("Reading the operating mode", self.model)

    # -- Report --------------------------------------------------------------

    def _identify(self) -> dict:
        return {}

    def describe(self) -> dict:
        """Snapshot of identification, set points and readings.

        Capabilities the device lacks are reported as None.
        """
        report = {"model": self.model, "port": self._port}
        report.update(self._identify())

        optional = (
            ("over_voltage", self.get_over_voltage),
            ("over_current", self.get_over_current),
            ("output_on", self.get_output_enabled),
            ("mode", self.get_operating_mode),
        )
        for key, getter in optional:
            try:
                report[key] = getter()
            except UnsupportedError:
                report[key] = None
        if report["mode"] is not None:
            report["mode"] = report["mode"].value

        report["voltage_setpoint"] = self.get_voltage()
        report["current_setpoint"] = self.get_current()
        voltage = self.get_voltage_actual()
        current = self.get_current_actual()
        report["output_voltage"] = voltage
        report["output_current"] = current
        report["output_power"] = voltage * current
        return report


class EAPS2000(PowerSupply):
    """Elektro-Automatik PS 2000 B series, telegram protocol."""

    model = "EA-PS2000"
    baudrate = 115200
    parity = serial.PARITY_ODD

    VENDOR_ID = "232e"
    PRODUCT_ID = "0010"

    def __init__(self, port: Optional[str] = None, timeout: Optional[float] = None,
                 settle_delay: float = SETTLE_DELAY):
        super().__init__(port, timeout)
        self._settle_delay = settle_delay
        self._codec: Optional[TelegramCodec] = None
        self._nominal: Optional[NominalRatings] = None

    @staticmethod
    def matches(vendor_id: str, product_id: str) -> bool:
        return (vendor_id.lower() == EAPS2000.VENDOR_ID
                and product_id.lower() == EAPS2000.PRODUCT_ID)

    @property
    def nominal(self) -> NominalRatings:
        """Nominal voltage, current and power read when the device opened."""
        if self._nominal is None:
            raise DeviceClosedError(f"{self.model} is not open")
        return self._nominal

    # -- Lifecycle -----------------------------------------------------------

    def _initialize(self):
        self._codec = TelegramCodec(self._transport, self._settle_delay)
        self._nominal = NominalRatings(
            voltage=self._read_float(OBJ_NOMINAL_VOLTAGE),
            current=self._read_float(OBJ_NOMINAL_CURRENT),
            power=self._read_float(OBJ_NOMINAL_POWER),
        )
        logger.info("%s nominal ratings: %.2f V, %.2f A, %.2f W",
                    self.model, *self._nominal)
        self.enable_remote()

    def _uninitialize(self):
        try:
            if self._codec.faulted:
                logger.warning("%s link is out of sync, not releasing remote control",
                               self.model)
            else:
                self.disable_remote()
        finally:
            self._codec = None
            self._nominal = None

    def enable_remote(self):
        """Take remote control; the front panel is locked until released."""
        self._write(OBJ_CONTROL, CTRL_REMOTE_ON)
        self._read_status(OBJ_STATUS_ACTUAL)

    def disable_remote(self):
        self._write(OBJ_CONTROL, CTRL_REMOTE_OFF)

    # -- Telegram helpers ----------------------------------------------------

    def _telegrams(self) -> TelegramCodec:
        self._require_open()
        return self._codec

    def _query(self, obj: int, length: int) -> bytes:
        reply = self._telegrams().request(Direction.RECEIVE, obj, length=length)
        if len(reply.payload) < length:
            raise FrameError(
                f"Object {obj} answered {len(reply.payload)} bytes, expected {length}"
            )
        return reply.payload

    def _write(self, obj: int, payload: bytes):
        self._telegrams().request(Direction.SEND, obj, payload)

    def _read_float(self, obj: int) -> float:
        return struct.unpack_from(">f", self._query(obj, FLOAT_LENGTH))[0]

    def _read_string(self, obj: int) -> str:
        data = self._query(obj, STRING_LENGTH).split(b"\x00", 1)[0]
        return data.decode("ascii", errors="replace").strip()

    def _read_word(self, obj: int) -> int:
        return struct.unpack_from(">H", self._query(obj, WORD_LENGTH))[0]

    def _read_status(self, obj: int) -> bytes:
        return self._query(obj, STATUS_LENGTH)

    def _write_word(self, obj: int, raw: int):
        self._write(obj, struct.pack(">H", raw))

    def _status_voltage(self, obj: int) -> float:
        raw = struct.unpack_from(">H", self._read_status(obj), 2)[0]
        return raw_to_physical(raw, self.nominal.voltage)

    def _status_current(self, obj: int) -> float:
        raw = struct.unpack_from(">H", self._read_status(obj), 4)[0]
        return raw_to_physical(raw, self.nominal.current)

    # -- Set points and readings ---------------------------------------------

    def get_voltage(self) -> float:
        return self._status_voltage(OBJ_STATUS_SET)

    def get_current(self) -> float:
        return self._status_current(OBJ_STATUS_SET)

    def get_voltage_actual(self) -> float:
        return self._status_voltage(OBJ_STATUS_ACTUAL)

    def get_current_actual(self) -> float:
        return self._status_current(OBJ_STATUS_ACTUAL)

    def set_voltage(self, volts: float):
        """Set the voltage set point. Validates against the nominal voltage."""
        nominal = self.nominal.voltage
        if volts < 0 or volts > nominal:
            raise ValueError(f"Voltage {volts:.3f}V out of range [0, {nominal:.1f}V]")
        self._write_word(OBJ_SET_VOLTAGE, physical_to_raw(volts, nominal))

    def set_current(self, amps: float):
        """Set the current limit. Validates against the nominal current."""
        nominal = self.nominal.current
        if amps < 0 or amps > nominal:
            raise ValueError(f"Current {amps:.3f}A out of range [0, {nominal:.1f}A]")
        self._write_word(OBJ_SET_CURRENT, physical_to_raw(amps, nominal))

    def get_over_voltage(self) -> float:
        return raw_to_physical(self._read_word(OBJ_OVP_THRESHOLD), self.nominal.voltage)

    def set_over_voltage(self, volts: float):
        self._write_word(OBJ_OVP_THRESHOLD, physical_to_raw(volts, self.nominal.voltage))

    def get_over_current(self) -> float:
        return raw_to_physical(self._read_word(OBJ_OCP_THRESHOLD), self.nominal.current)

    def set_over_current(self, amps: float):
        self._write_word(OBJ_OCP_THRESHOLD, physical_to_raw(amps, self.nominal.current))

    # -- Output --------------------------------------------------------------

    def enable_output(self):
        self._write(OBJ_CONTROL, CTRL_OUTPUT_ON)

    def disable_output(self):
        self._write(OBJ_CONTROL, CTRL_OUTPUT_OFF)

    def get_output_enabled(self) -> bool:
        return bool(self._read_status(OBJ_STATUS_ACTUAL)[1] & 0x01)

    def get_operating_mode(self) -> OperatingMode:
        state = self._read_status(OBJ_STATUS_ACTUAL)[1]
        if not state & 0x01:
            return OperatingMode.OFF
        # bit 2 set -> CC
        return OperatingMode.CC if state & 0x04 else OperatingMode.CV

    # -- Report --------------------------------------------------------------

    def _identify(self) -> dict:
        nominal = self.nominal
        return {
            "device_type": self._read_string(OBJ_DEVICE_TYPE),
            "manufacturer": self._read_string(OBJ_MANUFACTURER),
            "article_no": self._read_string(OBJ_ARTICLE_NO),
            "serial_no": self._read_string(OBJ_SERIAL_NO),
            "software_version": self._read_string(OBJ_SOFTWARE_VERSION),
            "nominal_voltage": nominal.voltage,
            "nominal_current": nominal.current,
            "nominal_power": nominal.power,
        }


class PPS11360(PowerSupply):
    """Voltcraft PPS series, ASCII protocol.

    The device has no protection thresholds, output-state or operating-mode
    queries over serial; those raise :class:`UnsupportedError`.
    """

    model = "Voltcraft PPS"
    baudrate = 9600

    VENDOR_ID = "10c4"
    PRODUCT_ID = "ea60"

    def __init__(self, port: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(port, timeout)
        self._protocol: Optional[AsciiProtocol] = None

    @staticmethod
    def matches(vendor_id: str, product_id: str) -> bool:
        return vendor_id == PPS11360.VENDOR_ID and product_id == PPS11360.PRODUCT_ID

    def _initialize(self):
        self._protocol = AsciiProtocol(self._transport)

    def _uninitialize(self):
        self._protocol = None

    def _command(self, command: str, arg=None) -> str:
        self._require_open()
        return self._protocol.query(command, arg)

    def _read_setpoints(self) -> tuple[float, float]:
        return parse_gets(self._command(CMD_GETS))

    def read_display(self) -> GetdReading:
        """Measured voltage, current and whether the current limit is active."""
        return parse_getd(self._command(CMD_GETD))

    def get_voltage(self) -> float:
        return self._read_setpoints()[0]

    def get_current(self) -> float:
        return self._read_setpoints()[1]

    def get_voltage_actual(self) -> float:
        return self.read_display().voltage

    def get_current_actual(self) -> float:
        return self.read_display().current

    def set_voltage(self, volts: float):
        self._command(CMD_VOLT, encode_setpoint(volts, 10))

    def set_current(self, amps: float):
        self._command(CMD_CURR, encode_setpoint(amps, 100))

    def enable_output(self):
        self._command(CMD_SOUT, 0)

    def disable_output(self):
        self._command(CMD_SOUT, 1)

    def _identify(self) -> dict:
        return {"current_limited": self.read_display().current_limited}


SUPPORTED_DRIVERS = (EAPS2000, PPS11360)
DRIVER_NAMES = {"eaps": EAPS2000, "pps": PPS11360}


def driver_for(vendor_id: str, product_id: str):
    """Driver class for a USB vendor/product id pair, or None."""
    for cls in SUPPORTED_DRIVERS:
        if cls.matches(vendor_id, product_id):
            return cls
    return None


def discover():
    """Find the first attached supported supply via pyserial's port list.

    Returns ``(driver_class, device_path)`` or ``(None, None)``.
    """
    from serial.tools import list_ports

    for info in list_ports.comports():
        if info.vid is None or info.pid is None:
            continue
        cls = driver_for(f"{info.vid:04x}", f"{info.pid:04x}")
        if cls is not None:
            logger.info("Found %s on %s", cls.model, info.device)
            return cls, info.device
    return None, None


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
REPORT_LABELS = [
    ("device_type", "Device Type:", "{}"),
    ("manufacturer", "Manufacturer:", "{}"),
    ("article_no", "Article No.:", "{}"),
    ("serial_no", "Serial Num.:", "{}"),
    ("software_version", "Software Version:", "{}"),
    ("nominal_voltage", "Nominal voltage:", "{:.2f}"),
    ("nominal_current", "Nominal current:", "{:.2f}"),
    ("nominal_power", "Nominal power:", "{:.2f}"),
    ("over_voltage", "Set OVP:", "{:.2f}"),
    ("over_current", "Set OCP:", "{:.2f}"),
    ("voltage_setpoint", "Set voltage:", "{:.2f}"),
    ("current_setpoint", "Set current:", "{:.2f}"),
    ("output_voltage", "Current voltage:", "{:.2f}"),
    ("output_current", "Current current:", "{:.2f}"),
    ("output_power", "Current power:", "{:.2f}"),
    ("output_on", "Output:", "{}"),
    ("mode", "Current mode:", "{}"),
    ("current_limited", "Current limited:", "{}"),
]

# Commands that set a value when followed by a number and read otherwise
VALUE_COMMANDS = {"voltage", "current", "ovp", "ocp"}


def _print_report(report: dict):
    print(f"{report['model']} on {report['port']}")
    for key, label, fmt in REPORT_LABELS:
        value = report.get(key)
        if value is None:
            continue
        print(f" {label:<18}{fmt.format(value):>20}")


def _run_commands(psu: PowerSupply, tokens: list[str]):
    """Execute a command stream such as ``voltage 5 current 0.5 on``."""
    i = 0
    while i < len(tokens):
        cmd = tokens[i].lower()
        i += 1
        value = None
        if cmd in VALUE_COMMANDS and i < len(tokens):
            try:
                value = float(tokens[i])
                i += 1
            except ValueError:
                pass

        if cmd == "status":
            _print_report(psu.describe())
        elif cmd == "on":
            psu.enable_output()
        elif cmd == "off":
            psu.disable_output()
        elif cmd == "voltage":
            if value is None:
                print(f"{psu.get_voltage_actual():.2f}")
            else:
                psu.set_voltage(value)
        elif cmd == "current":
            if value is None:
                print(f"{psu.get_current_actual():.2f}")
            else:
                psu.set_current(value)
        elif cmd == "ovp":
            if value is None:
                print(f"{psu.get_over_voltage():.2f}")
            else:
                psu.set_over_voltage(value)
        elif cmd == "ocp":
            if value is None:
                print(f"{psu.get_over_current():.2f}")
            else:
                psu.set_over_current(value)
        elif cmd == "mode":
            print(psu.get_operating_mode().value)
        elif cmd == "interactive":
            _interactive(psu)
        else:
            raise ValueError(f"Unknown command: {tokens[i - 1]}")


def _interactive(psu: PowerSupply):
    """Read command lines from stdin until EOF or ``quit``."""
    while True:
        try:
            line = input("> ")
        except EOFError:
            break
        tokens = line.split()
        if not tokens:
            continue
        if tokens[0].lower() in ("q", "quit"):
            print("Quit")
            break
        try:
            _run_commands(psu, tokens)
        except (PSUError, ValueError) as exc:
            print(f"Parse command failed: {exc}", file=sys.stderr)


def cli(argv: Optional[list[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        prog="hcs",
        description="Control EA-PS2000 and Voltcraft PPS power supplies",
    )
    parser.add_argument(
        "-p", "--port",
        help=f"serial port (default: ${DEVICE_ENV}, auto-detected, or {DEFAULT_DEVICE})",
    )
    parser.add_argument(
        "-t", "--type", choices=sorted(DRIVER_NAMES),
        help="power supply family (default: auto-detect by USB id)",
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0,
        help="log device traffic (-vv for raw frames)",
    )
    parser.add_argument(
        "commands", nargs="+", metavar="COMMAND",
        help="status, on, off, voltage [V], current [A], ovp [V], ocp [A], "
             "mode, interactive",
    )
    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)-7s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    port = args.port or os.environ.get(DEVICE_ENV)
    if args.type:
        cls = DRIVER_NAMES[args.type]
    else:
        cls, found = discover()
        if cls is None:
            parser.error("no supported power supply found, pass --type")
        port = port or found

    psu = cls(port)
    try:
        psu.open()
    except PSUError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    status = 0
    try:
        _run_commands(psu, args.commands)
    except (PSUError, ValueError) as exc:
        print(f"Parse command failed: {exc}", file=sys.stderr)
        status = 1

    try:
        psu.close()
    except PSUError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        status = 1
    return status


if __name__ == "__main__":
    sys.exit(cli())
