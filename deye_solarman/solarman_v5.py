"""Solarman V5 transport for Deye inverters.

The Solarman Wi-Fi logger (TCP port 8899) does not speak plain Modbus. Every
Modbus ADU is wrapped in a proprietary "V5" frame:

    start(0xA5) | payload_len(2 LE) | control(2 LE) | sequence(2 LE)
    | logger_serial(4 LE) | prefix(15 request / 14 response) | Modbus ADU
    | checksum(1) | end(0x15)

Depending on firmware the inner ADU is either Modbus RTU (CRC terminated) or
Modbus TCP (MBAP header, no CRC). The client starts in RTU mode and follows
whatever the logger actually answers with.

Architecture:
- Pure codec functions (CRC16, V5 checksum, frame encode/decode, ADU parse)
- SolarmanV5Client: one fresh TCP connection per exchange, a cancellable
  response timer, sequential exchanges, persistent transport mode
"""

import random
import socket
import struct
import threading
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .exceptions import (
    FrameFormatError,
    ModbusExceptionError,
    SolarmanError,
    TransportConnectionError,
    TransportMismatchError,
)
from .logging_setup import get_logger
from .timers import RealTimers, Timers

V5_START = 0xA5
V5_END = 0x15
V5_CTRL_REQUEST = 0x4510   # bytes on the wire: 0x10 0x45
V5_CTRL_RESPONSE = 0x1510  # bytes on the wire: 0x10 0x15
V5_HEADER_LEN = 11
V5_TRAILER_LEN = 2
V5_REQUEST_PREFIX_LEN = 15
V5_RESPONSE_PREFIX_LEN = 14
V5_FRAME_TYPE_INVERTER = 0x02

FC_READ_HOLDING = 0x03
FC_READ_INPUT = 0x04
FC_WRITE_SINGLE = 0x06

MODBUS_TCP_PROTOCOL_ID = 0x0000
MODBUS_TCP_HEADER_LEN = 7

DEFAULT_PORT = 8899
DEFAULT_SLAVE_ID = 1
DEFAULT_TIMEOUT = 15.0   # production polling
PAIRING_TIMEOUT = 10.0   # identify / pairing checks
RECV_BUFFER_SIZE = 1024


class TransportMode(Enum):
    """Modbus framing carried inside the V5 frame."""
    RTU = "rtu"
    TCP = "tcp"

    @property
    def other(self) -> "TransportMode":
        return TransportMode.TCP if self is TransportMode.RTU else TransportMode.RTU


def crc16(data: bytes) -> int:
    """Compute CRC-16/Modbus (poly 0xA001 reflected, init 0xFFFF).

    Args:
        data: Bytes to compute CRC for

    Returns:
        16-bit CRC value (transmitted little-endian)
    """
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc & 0xFFFF


def v5_checksum(frame: bytes) -> int:
    """Low 8 bits of the sum of all bytes between start marker and checksum."""
    return sum(frame[1:-2]) & 0xFF


def build_rtu_request(slave_id: int, fc: int, register: int, count_or_value: int) -> bytes:
    """Build a Modbus RTU request ADU (unit, fc, address, count/value, CRC)."""
    pdu = struct.pack('>BBHH', slave_id, fc, register, count_or_value)
    return pdu + struct.pack('<H', crc16(pdu))


def build_tcp_request(transaction_id: int, slave_id: int, fc: int,
                      register: int, count_or_value: int) -> bytes:
    """Build a Modbus TCP request ADU (MBAP header + PDU, no CRC)."""
    pdu = struct.pack('>BHH', fc, register, count_or_value)
    mbap = struct.pack('>HHHB', transaction_id & 0xFFFF, MODBUS_TCP_PROTOCOL_ID,
                       1 + len(pdu), slave_id)
    return mbap + pdu


def _finish_frame(body: bytes) -> bytes:
    return body + bytes([sum(body[1:]) & 0xFF, V5_END])


def encode_v5_frame(adu: bytes, logger_serial: int, sequence: int) -> bytes:
    """
    Wrap a Modbus ADU in a V5 request frame.

    Args:
        adu: Modbus RTU or TCP request ADU
        logger_serial: Logger serial number (uint32)
        sequence: Request sequence number (uint16)

    Returns:
        Complete V5 frame ready to send
    """
    payload_len = V5_REQUEST_PREFIX_LEN + len(adu)
    header = struct.pack('<BHHHI', V5_START, payload_len, V5_CTRL_REQUEST,
                         sequence & 0xFFFF, logger_serial & 0xFFFFFFFF)
    # frame type, sensor type, total working time, power on time, offset time
    prefix = struct.pack('<BHIII', V5_FRAME_TYPE_INVERTER, 0, 0, 0, 0)
    return _finish_frame(header + prefix + adu)


def encode_v5_response(adu: bytes, logger_serial: int, sequence: int) -> bytes:
    """Wrap a Modbus ADU the way the logger answers (14-byte response prefix).

    Used by emulators and tests; the client itself only decodes responses.
    """
    payload_len = V5_RESPONSE_PREFIX_LEN + len(adu)
    header = struct.pack('<BHHHI', V5_START, payload_len, V5_CTRL_RESPONSE,
                         sequence & 0xFFFF, logger_serial & 0xFFFFFFFF)
    # frame type, status, total working time, power on time, offset time
    prefix = struct.pack('<BBIII', V5_FRAME_TYPE_INVERTER, 0x01, 0, 0, 0)
    return _finish_frame(header + prefix + adu)


def _declared_adu_length(adu: bytes) -> Optional[int]:
    """Length the ADU claims for itself, or None when it cannot tell."""
    if len(adu) >= MODBUS_TCP_HEADER_LEN and adu[2:4] == b'\x00\x00':
        return 6 + struct.unpack_from('>H', adu, 4)[0]
    if len(adu) >= 3:
        fc = adu[1]
        if fc & 0x80:
            return 5
        if fc in (FC_READ_HOLDING, FC_READ_INPUT):
            return 3 + adu[2] + 2
        if fc == FC_WRITE_SINGLE:
            return 8
    return None


def decode_v5_frame(frame: bytes) -> bytes:
    """
    Validate a V5 response frame and extract the embedded Modbus ADU.

    Args:
        frame: Complete V5 response frame

    Returns:
        Modbus ADU bytes (RTU or TCP shaped)

    Raises:
        FrameFormatError: bad markers, control code, length or checksum
    """
    min_len = V5_HEADER_LEN + V5_RESPONSE_PREFIX_LEN + V5_TRAILER_LEN
    if len(frame) < min_len:
        raise FrameFormatError(f"V5 frame too short ({len(frame)} bytes)")
    if frame[0] != V5_START:
        raise FrameFormatError(f"Invalid V5 start byte 0x{frame[0]:02X}")
    if frame[-1] != V5_END:
        raise FrameFormatError(f"Invalid V5 end byte 0x{frame[-1]:02X}")

    payload_len, control = struct.unpack_from('<HH', frame, 1)
    if control != V5_CTRL_RESPONSE:
        raise FrameFormatError(f"Unexpected V5 control code 0x{control:04X}")

    modbus_start = V5_HEADER_LEN + V5_RESPONSE_PREFIX_LEN
    modbus_end = V5_HEADER_LEN + payload_len
    if modbus_end < modbus_start or modbus_end != len(frame) - V5_TRAILER_LEN:
        raise FrameFormatError(
            f"V5 payload length {payload_len} inconsistent with frame size {len(frame)}"
        )

    checksum = v5_checksum(frame)
    if frame[-2] != checksum:
        raise FrameFormatError(
            f"V5 checksum mismatch: computed 0x{checksum:02X}, received 0x{frame[-2]:02X}"
        )

    adu = frame[modbus_start:modbus_end]

    # Some loggers append 00 00 after the ADU
    if len(adu) >= 2 and adu[-2:] == b'\x00\x00':
        declared = _declared_adu_length(adu)
        if declared is None or len(adu) - 2 >= declared:
            adu = adu[:-2]

    return adu


def looks_like_modbus_tcp(adu: bytes) -> bool:
    """Heuristic: MBAP header with protocol id 0 and a plausible length."""
    if len(adu) < MODBUS_TCP_HEADER_LEN + 2:
        return False
    protocol_id, length = struct.unpack_from('>HH', adu, 2)
    if protocol_id != MODBUS_TCP_PROTOCOL_ID or length < 2:
        return False
    # allow small truncation, reject wildly inconsistent lengths
    return 6 + length <= len(adu) + 2


def detect_transport(adu: bytes) -> TransportMode:
    return TransportMode.TCP if looks_like_modbus_tcp(adu) else TransportMode.RTU


def _split_pdu(adu: bytes) -> Tuple[TransportMode, bytes]:
    mode = detect_transport(adu)
    if mode is TransportMode.TCP:
        return mode, adu[MODBUS_TCP_HEADER_LEN:]
    if len(adu) < 5:
        raise FrameFormatError(f"Modbus RTU frame too short ({len(adu)} bytes)")
    return mode, adu[1:]


def _check_function(pdu: bytes, expected_fc: int, mode: TransportMode):
    fc = pdu[0]
    if fc & 0x80:
        raise ModbusExceptionError(pdu[1] if len(pdu) > 1 else 0, fc & 0x7F)
    if fc != expected_fc:
        raise FrameFormatError(
            f"Unexpected Modbus {mode.value.upper()} function code: "
            f"expected {expected_fc}, got {fc}"
        )


def parse_read_response(adu: bytes, expected_fc: int) -> Tuple[TransportMode, List[int]]:
    """
    Parse a read-registers response in either framing.

    Args:
        adu: Modbus ADU extracted from the V5 frame
        expected_fc: Function code of the request (3 or 4)

    Returns:
        (detected transport mode, register values)

    Raises:
        ModbusExceptionError: device answered with an exception response
        FrameFormatError: wrong function code, truncated data or bad CRC
    """
    mode, pdu = _split_pdu(adu)
    _check_function(pdu, expected_fc, mode)

    byte_count = pdu[1]
    data = pdu[2:2 + byte_count]
    if byte_count % 2 or len(data) < byte_count:
        raise FrameFormatError(
            f"Modbus response truncated: byte count {byte_count}, got {len(data)} bytes"
        )

    if mode is TransportMode.RTU:
        crc_end = 3 + byte_count + 2
        if len(adu) >= crc_end:
            received = struct.unpack_from('<H', adu, crc_end - 2)[0]
            computed = crc16(adu[:crc_end - 2])
            if received != computed:
                raise FrameFormatError(
                    f"Modbus RTU CRC mismatch: computed 0x{computed:04X}, received 0x{received:04X}"
                )

    return mode, list(struct.unpack(f'>{byte_count // 2}H', data))


def parse_write_response(adu: bytes) -> Tuple[TransportMode, int, int]:
    """Parse a write-single-register echo; returns (mode, register, value)."""
    mode, pdu = _split_pdu(adu)
    _check_function(pdu, FC_WRITE_SINGLE, mode)
    if len(pdu) < 5:
        raise FrameFormatError(f"Write response truncated ({len(pdu)} PDU bytes)")
    register, value = struct.unpack_from('>HH', pdu, 1)
    return mode, register, value


class SolarmanV5Client:
    """Sequential Modbus-over-V5 client for a single logger."""

    def __init__(self, host: str, logger_serial: int, port: int = DEFAULT_PORT,
                 slave_id: int = DEFAULT_SLAVE_ID, timeout: float = DEFAULT_TIMEOUT,
                 timers: Timers = None, socket_factory: Callable = None,
                 transport: TransportMode = TransportMode.RTU):
        self.host = host
        self.logger_serial = int(logger_serial) & 0xFFFFFFFF
        self.port = port
        self.slave_id = slave_id
        self.timeout = timeout
        self.timers = timers or RealTimers()
        self.transport = transport
        self.log = get_logger()

        self._socket_factory = socket_factory or socket.create_connection
        self._socket = None
        self._lock = threading.Lock()  # one outstanding exchange
        self._sequence = random.randint(0, 0xFFFF)
        self._transaction_id = random.randint(0, 0xFFFF)

        self.successful_requests = 0
        self.failed_requests = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()

    def _next_sequence(self) -> int:
        self._sequence = (self._sequence + 1) & 0xFFFF
        return self._sequence

    def _next_transaction_id(self) -> int:
        self._transaction_id = (self._transaction_id + 1) & 0xFFFF
        return self._transaction_id

    def _connect(self):
        """Open a fresh connection; the logger handles one client at a time."""
        self.disconnect()
        try:
            self._socket = self._socket_factory((self.host, self.port), self.timeout)
        except OSError as e:
            raise TransportConnectionError(
                f"Connection to {self.host}:{self.port} failed: {e}"
            ) from e
        return self._socket

    def disconnect(self):
        """Close the current connection, if any."""
        sock, self._socket = self._socket, None
        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                self.log.debug(f"{self.host}: error closing socket: {e}")

    def _send_receive(self, request: bytes) -> bytes:
        """Send one V5 frame and read exactly one V5 frame back."""
        sock = self._connect()
        expired = threading.Event()

        def on_timeout():
            expired.set()
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # already closed by the peer

        timer = self.timers.schedule_after(self.timeout, on_timeout)
        timeout_error = f"Response timeout after {self.timeout:g}s from {self.host}:{self.port}"
        try:
            try:
                sock.sendall(request)
            except OSError as e:
                raise TransportConnectionError(f"Send to {self.host} failed: {e}") from e

            buf = bytearray()
            expected = None
            while expected is None or len(buf) < expected:
                try:
                    chunk = sock.recv(RECV_BUFFER_SIZE)
                except socket.timeout as e:
                    raise TransportConnectionError(timeout_error) from e
                except OSError as e:
                    if expired.is_set():
                        raise TransportConnectionError(timeout_error) from e
                    raise TransportConnectionError(f"Receive from {self.host} failed: {e}") from e

                if expired.is_set():
                    raise TransportConnectionError(timeout_error)
                if not chunk:
                    raise TransportConnectionError("Socket closed before response")

                buf.extend(chunk)
                if expected is None and len(buf) >= 3:
                    if buf[0] != V5_START:
                        raise FrameFormatError(f"Invalid V5 start byte 0x{buf[0]:02X}")
                    payload_len = struct.unpack_from('<H', buf, 1)[0]
                    expected = V5_HEADER_LEN + payload_len + V5_TRAILER_LEN

            return bytes(buf[:expected])
        finally:
            timer.cancel()
            self.disconnect()

    def _build_modbus_request(self, fc: int, register: int, count_or_value: int) -> bytes:
        if self.transport is TransportMode.TCP:
            return build_tcp_request(self._next_transaction_id(), self.slave_id,
                                     fc, register, count_or_value)
        return build_rtu_request(self.slave_id, fc, register, count_or_value)

    def _exchange(self, fc: int, register: int, count_or_value: int) -> bytes:
        adu = self._build_modbus_request(fc, register, count_or_value)
        frame = encode_v5_frame(adu, self.logger_serial, self._next_sequence())
        self.log.debug(f"{self.host}: -> {frame.hex(' ')}")
        response = self._send_receive(frame)
        self.log.debug(f"{self.host}: <- {response.hex(' ')}")
        return decode_v5_frame(response)

    def _check_transport(self, adu: bytes):
        detected = detect_transport(adu)
        if detected is not self.transport:
            raise TransportMismatchError(detected)

    def _request(self, fc: int, register: int, count_or_value: int, parser: Callable):
        """Run one exchange, re-issuing it once if the framing guess was wrong."""
        with self._lock:
            try:
                adu = self._exchange(fc, register, count_or_value)
                try:
                    self._check_transport(adu)
                except TransportMismatchError as mismatch:
                    self.log.info(
                        f"{self.host}: logger answered {mismatch.detected_mode.value.upper()}-framed "
                        f"Modbus, switching transport from {self.transport.value.upper()}"
                    )
                    self.transport = mismatch.detected_mode
                    adu = self._exchange(fc, register, count_or_value)
                    try:
                        self._check_transport(adu)
                    except TransportMismatchError as e:
                        raise FrameFormatError(
                            f"Transport mismatch persists after switching to "
                            f"{self.transport.value.upper()}"
                        ) from e
                result = parser(adu)
            except SolarmanError:
                self.failed_requests += 1
                raise
            self.successful_requests += 1
            return result

    def read_registers(self, fc: int, register: int, count: int) -> List[int]:
        """
        Read ``count`` registers starting at ``register``.

        Args:
            fc: 3 (holding) or 4 (input)
            register: First register address
            count: Number of registers

        Returns:
            List of raw uint16 values
        """
        values = self._request(fc, register, count,
                               lambda adu: parse_read_response(adu, fc)[1])
        if len(values) != count:
            self.log.debug(
                f"{self.host}: asked for {count} registers at {register}, got {len(values)}"
            )
        return values

    def read_holding_registers(self, register: int, count: int) -> List[int]:
        return self.read_registers(FC_READ_HOLDING, register, count)

    def read_input_registers(self, register: int, count: int) -> List[int]:
        return self.read_registers(FC_READ_INPUT, register, count)

    def write_single_register(self, register: int, value: int):
        """Write one holding register (function 6) and verify the echo."""
        if not 0 <= value <= 0xFFFF:
            raise ValueError(f"Register value out of range: {value}")

        _, echoed_register, echoed_value = self._request(
            FC_WRITE_SINGLE, register, value, parse_write_response
        )
        if (echoed_register, echoed_value) != (register, value):
            raise FrameFormatError(
                f"Write echo mismatch: wrote {value} to {register}, "
                f"device echoed {echoed_value} at {echoed_register}"
            )
        self.log.info(f"{self.host}: wrote register {register} = {value}")

    def get_stats(self) -> dict:
        return {
            'transport': self.transport.value,
            'successful_requests': self.successful_requests,
            'failed_requests': self.failed_requests,
        }
