"""Terminal register map and 32-bit register access over UVCP memory."""

from __future__ import annotations

import enum
import struct
from typing import List, Sequence

from .uvcp import UVCPClient

__all__ = [
    "TERMINAL_BASE",
    "TERMINAL_MAGIC",
    "Control",
    "FileCommand",
    "FileStatus",
    "MemoryRegisters",
    "Status",
]

TERMINAL_MAGIC = 0x5445524D  # "TERM"
TERMINAL_BASE = 0x30000

TERMINAL_MAGIC_ADDR = TERMINAL_BASE
TERMINAL_VERSION_ADDR = TERMINAL_BASE + 0x04
TERMINAL_STATUS_ADDR = TERMINAL_BASE + 0x08
TERMINAL_AVAIL_ADDR = TERMINAL_BASE + 0x0C
TERMINAL_CHUNK_HINT_ADDR = TERMINAL_BASE + 0x10
TERMINAL_AUTH_STATUS_ADDR = TERMINAL_BASE + 0x14
TERMINAL_AUTH_CMD_ADDR = TERMINAL_BASE + 0x18
TERMINAL_AUTH_BUF_ADDR = TERMINAL_BASE + 0x1C
TERMINAL_DATA_ADDR = TERMINAL_BASE + 0x100

FILE_CMD_ADDR = TERMINAL_BASE + 0x40
FILE_STATUS_ADDR = TERMINAL_BASE + 0x44
FILE_RESULT_ADDR = TERMINAL_BASE + 0x48
FILE_SIZE_LOW_ADDR = TERMINAL_BASE + 0x4C
FILE_SIZE_HIGH_ADDR = TERMINAL_BASE + 0x50
FILE_CURSOR_LOW_ADDR = TERMINAL_BASE + 0x54
FILE_CURSOR_HIGH_ADDR = TERMINAL_BASE + 0x58
FILE_DATA_AVAIL_ADDR = TERMINAL_BASE + 0x5C
FILE_PATH_ADDR = TERMINAL_BASE + 0x60
FILE_PATH_CAPACITY = 0x60
FILE_DATA_ADDR = TERMINAL_BASE + 0xC0
FILE_DATA_WINDOW = 0x40

# The auth buffer ends where the file registers begin.
AUTH_BUFFER_CAPACITY = FILE_CMD_ADDR - TERMINAL_AUTH_BUF_ADDR

AUTH_CMD_LOCK = 0
AUTH_CMD_AUTHENTICATE = 1


class Status(enum.IntFlag):
    READY = 1 << 0
    CHILD_ALIVE = 1 << 1
    OUTPUT_PENDING = 1 << 2
    OVERFLOW = 1 << 3
    ERROR = 1 << 4


class Control(enum.IntFlag):
    START = 1 << 0
    RESET = 1 << 1
    SIGINT = 1 << 2
    SIGTERM = 1 << 3
    CLEAR_FLAGS = 1 << 4
    ECHO_ENABLE = 1 << 5
    ECHO_DISABLE = 1 << 6


class FileCommand(enum.IntEnum):
    NONE = 0
    OPEN_READ = 1
    OPEN_WRITE = 2
    CLOSE = 3
    RESET = 4


class FileStatus(enum.IntFlag):
    BUSY = 1 << 0
    ERROR = 1 << 1
    EOF = 1 << 2
    READING = 1 << 3
    WRITING = 1 << 4
    OPEN = 1 << 5
    PATH_READY = 1 << 6


class MemoryRegisters:
    """32-bit little-endian register view of the device memory.

    Register ``i`` of a block lives at ``address + 4 * i``.  Raw byte access is
    exposed as well so that higher layers never talk to :class:`UVCPClient`
    directly.
    """

    def __init__(self, client: UVCPClient) -> None:
        self.client = client

    def read_memory(self, address: int, length: int) -> bytes:
        return self.client.read_memory(address, length)

    def write_memory(self, address: int, data: bytes) -> None:
        self.client.write_memory(address, data)

    def read_registers(self, address: int, count: int) -> List[int]:
        if count == 0:
            return []
        raw = self.client.read_memory(address, count * 4)
        return list(struct.unpack(f"<{count}I", raw))

    def write_registers(self, address: int, values: Sequence[int]) -> None:
        if not values:
            return
        for value in values:
            if not 0 <= value <= 0xFFFFFFFF:
                raise ValueError(f"Register value {value!r} does not fit in 32 bits")
        self.client.write_memory(address, struct.pack(f"<{len(values)}I", *values))

    def read_register(self, address: int) -> int:
        return self.read_registers(address, 1)[0]

    def write_register(self, address: int, value: int) -> None:
        self.write_registers(address, [value])

    def read_u64(self, low_address: int, high_address: int) -> int:
        """Combine two 32-bit registers holding the low and high halves."""

        low = self.read_register(low_address)
        high = self.read_register(high_address)
        return (high << 32) | low
