"""USB3 Vision Control Protocol (UVCP) framing.

UVCP wraps every request in a 12 byte little-endian header followed by a
command specific payload.  Requests always ask for an acknowledgement; the
device answers with the matching ACK opcode, or with ``PENDING_ACK`` when it
needs more time.  This module provides explicit encoders/decoders for the
frames used by the terminal client and :class:`UVCPClient`, which turns a
bulk :class:`Transport` into byte-oriented memory reads and writes.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import struct
import threading
from abc import ABC, abstractmethod
from typing import Union

from .errors import PendingAckError, ProtocolError
from .polling import SYSTEM_CLOCK, Clock

LOG = logging.getLogger(__name__)

__all__ = [
    "UVCP_MAGIC",
    "FLAGS_REQUEST_ACK",
    "MAX_MESSAGE_LEN",
    "MAX_PENDING_ACKS",
    "Command",
    "Transport",
    "UVCPHeader",
    "UVCPResponse",
    "UVCPClient",
    "encode_read_memory",
    "encode_write_memory",
    "decode_response",
    "decode_pending_timeout",
    "decode_bytes_written",
]

UVCP_MAGIC = 0x43563355  # "U3VC"
FLAGS_REQUEST_ACK = 1 << 14
MAX_MESSAGE_LEN = 65536
MAX_PENDING_ACKS = 5

HEADER = struct.Struct("<IHHHH")
READ_MEMORY_CMD = struct.Struct("<QHH")
WRITE_MEMORY_ADDRESS = struct.Struct("<Q")
WRITE_MEMORY_ACK = struct.Struct("<HH")
PENDING_ACK = struct.Struct("<HH")

MAX_READ_LENGTH = 0xFFFF
MAX_WRITE_LENGTH = 0xFFFF - WRITE_MEMORY_ADDRESS.size


class Command(enum.IntEnum):
    READ_MEMORY_CMD = 0x0800
    READ_MEMORY_ACK = 0x0801
    WRITE_MEMORY_CMD = 0x0802
    WRITE_MEMORY_ACK = 0x0803
    PENDING_ACK = 0x0805
    EVENT_CMD = 0x0C00
    EVENT_ACK = 0x0C01


def command_name(value: int) -> str:
    try:
        return Command(value).name
    except ValueError:
        return f"0x{value:04x}"


class Transport(ABC):
    """Bulk OUT/IN endpoint pair used to exchange UVCP frames.

    Implementations apply their own fixed per-transfer timeout and raise
    :class:`~u3v_terminal.errors.TransportError` on failure.
    """

    @abstractmethod
    def send(self, data: bytes) -> None:
        """Write one complete frame to the bulk OUT endpoint."""

    @abstractmethod
    def receive(self, max_len: int) -> bytes:
        """Read one frame (at most ``max_len`` bytes) from the bulk IN endpoint."""

    def close(self) -> None:  # pragma: no cover - default implementation
        """Release the underlying device."""

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@dataclasses.dataclass(frozen=True)
class UVCPHeader:
    magic: int
    flags: int
    command: int
    size: int
    request_id: int

    def pack(self) -> bytes:
        return HEADER.pack(self.magic, self.flags, self.command, self.size, self.request_id)

    @classmethod
    def unpack(cls, data: bytes) -> "UVCPHeader":
        if len(data) < HEADER.size:
            raise ProtocolError(
                f"Truncated UVCP header: got {len(data)} bytes, expected {HEADER.size}"
            )
        return cls(*HEADER.unpack_from(data))


@dataclasses.dataclass(frozen=True)
class UVCPResponse:
    header: UVCPHeader
    payload: bytes


def _request_header(command: Command, size: int, request_id: int) -> UVCPHeader:
    return UVCPHeader(UVCP_MAGIC, FLAGS_REQUEST_ACK, int(command), size, request_id & 0xFFFF)


def encode_read_memory(request_id: int, address: int, length: int) -> bytes:
    if not 0 <= length <= MAX_READ_LENGTH:
        raise ValueError(f"Read length {length} outside 0..{MAX_READ_LENGTH}")
    header = _request_header(Command.READ_MEMORY_CMD, READ_MEMORY_CMD.size, request_id)
    return header.pack() + READ_MEMORY_CMD.pack(address, 0, length)


def encode_write_memory(request_id: int, address: int, data: bytes) -> bytes:
    if len(data) > MAX_WRITE_LENGTH:
        raise ValueError(f"Write length {len(data)} exceeds {MAX_WRITE_LENGTH}")
    size = WRITE_MEMORY_ADDRESS.size + len(data)
    header = _request_header(Command.WRITE_MEMORY_CMD, size, request_id)
    return header.pack() + WRITE_MEMORY_ADDRESS.pack(address) + bytes(data)


def decode_response(data: Union[bytes, bytearray]) -> UVCPResponse:
    """Validate and split a raw inbound frame.

    The magic is checked first; the payload is the ``size`` bytes following
    the header and must be fully present in ``data``.
    """

    header = UVCPHeader.unpack(data)
    if header.magic != UVCP_MAGIC:
        raise ProtocolError(
            f"Invalid UVCP magic 0x{header.magic:08x}, expected 0x{UVCP_MAGIC:08x}"
        )
    available = len(data) - HEADER.size
    if header.size > available:
        raise ProtocolError(
            f"Truncated UVCP payload for {command_name(header.command)}: "
            f"header declares {header.size} bytes, received {available}"
        )
    payload = bytes(data[HEADER.size : HEADER.size + header.size])
    return UVCPResponse(header, payload)


def decode_pending_timeout(payload: bytes) -> int:
    """Return the ``timeout_ms`` field of a PENDING_ACK payload."""

    if len(payload) < PENDING_ACK.size:
        raise ProtocolError(f"PENDING_ACK payload too short ({len(payload)} bytes)")
    _reserved, timeout_ms = PENDING_ACK.unpack_from(payload)
    return timeout_ms


def decode_bytes_written(payload: bytes) -> int:
    """Return the ``bytes_written`` field of a WRITE_MEMORY_ACK payload."""

    if len(payload) < WRITE_MEMORY_ACK.size:
        raise ProtocolError(f"WRITE_MEMORY_ACK payload too short ({len(payload)} bytes)")
    _reserved, bytes_written = WRITE_MEMORY_ACK.unpack_from(payload)
    return bytes_written


class UVCPClient:
    """Issue UVCP memory requests over a :class:`Transport`, one at a time."""

    def __init__(
        self,
        transport: Transport,
        *,
        clock: Clock = SYSTEM_CLOCK,
        max_pending: int = MAX_PENDING_ACKS,
    ) -> None:
        self.transport = transport
        self._clock = clock
        self._max_pending = max_pending
        self._request_id = 0
        self._lock = threading.Lock()

    @property
    def last_request_id(self) -> int:
        return self._request_id

    def _next_request_id(self) -> int:
        self._request_id = (self._request_id + 1) & 0xFFFF
        return self._request_id

    def read_memory(self, address: int, length: int) -> bytes:
        """Read ``length`` bytes starting at ``address``."""

        if length == 0:
            return b""
        with self._lock:
            request_id = self._next_request_id()
            frame = encode_read_memory(request_id, address, length)
            response = self._transact(frame, request_id, Command.READ_MEMORY_ACK, address)
        if response.header.size != length:
            raise ProtocolError(
                f"Read size mismatch at 0x{address:x}: got {response.header.size}, expected {length}"
            )
        return response.payload

    def write_memory(self, address: int, data: bytes) -> None:
        """Write ``data`` starting at ``address``."""

        if not data:
            return
        with self._lock:
            request_id = self._next_request_id()
            frame = encode_write_memory(request_id, address, data)
            response = self._transact(frame, request_id, Command.WRITE_MEMORY_ACK, address)
        written = decode_bytes_written(response.payload)
        if written != len(data):
            raise ProtocolError(
                f"Write bytes mismatch at 0x{address:x}: got {written}, expected {len(data)}"
            )

    def _transact(
        self,
        frame: bytes,
        request_id: int,
        expected: Command,
        address: int,
    ) -> UVCPResponse:
        self.transport.send(frame)
        pending = 0
        while True:
            response = decode_response(self.transport.receive(MAX_MESSAGE_LEN))
            header = response.header
            if header.request_id != request_id:
                raise ProtocolError(
                    f"ACK id mismatch: got {header.request_id}, expected {request_id}"
                )
            if header.command == Command.PENDING_ACK:
                pending += 1
                if pending > self._max_pending:
                    raise PendingAckError(
                        f"Too many PENDING_ACK responses for request {request_id} "
                        f"at 0x{address:x}; device never became ready"
                    )
                wait_ms = decode_pending_timeout(response.payload) or 1
                LOG.debug(
                    "Request %d pending (%d/%d), waiting %d ms",
                    request_id,
                    pending,
                    self._max_pending,
                    wait_ms,
                )
                self._clock.sleep(wait_ms / 1000.0)
                continue
            if header.command != expected:
                raise ProtocolError(
                    f"Unexpected ACK command {command_name(header.command)} for request "
                    f"{request_id} at 0x{address:x}, expected {expected.name}"
                )
            return response
