from __future__ import annotations

import struct
from pathlib import Path

import pytest

from u3v_terminal.errors import ProtocolError
from u3v_terminal.registers import (
    AUTH_BUFFER_CAPACITY,
    FILE_SIZE_HIGH_ADDR,
    FILE_SIZE_LOW_ADDR,
    TERMINAL_MAGIC,
    TERMINAL_MAGIC_ADDR,
    TERMINAL_STATUS_ADDR,
    Control,
    MemoryRegisters,
)
from u3v_terminal.uvcp import UVCPClient

from .mocks import FakeClock, MockTransport, ScriptedTransport
from .u3v_emulator import TerminalEmulatorLogic

PROFILE_PATH = Path(__file__).parent / "data" / "sample_terminal_profile.json"


@pytest.fixture()
def emulator() -> TerminalEmulatorLogic:
    return TerminalEmulatorLogic(PROFILE_PATH)


@pytest.fixture()
def registers(emulator: TerminalEmulatorLogic) -> MemoryRegisters:
    return MemoryRegisters(UVCPClient(MockTransport(emulator), clock=FakeClock()))


def test_auth_buffer_capacity():
    assert AUTH_BUFFER_CAPACITY == 36


def test_read_header_block(registers: MemoryRegisters, emulator: TerminalEmulatorLogic):
    magic, version = registers.read_registers(TERMINAL_MAGIC_ADDR, 2)
    assert magic == TERMINAL_MAGIC
    assert version == emulator.version
    assert emulator.requests[-1].length == 8


def test_write_register_is_little_endian(registers: MemoryRegisters, emulator: TerminalEmulatorLogic):
    registers.write_register(TERMINAL_STATUS_ADDR, int(Control.START | Control.ECHO_DISABLE))
    assert emulator.requests[-1].data == struct.pack("<I", 0x41)
    assert emulator.ready
    assert not emulator.echo


def test_read_u64_combines_halves(registers: MemoryRegisters, emulator: TerminalEmulatorLogic):
    emulator.file.size = (3 << 32) | 0x10
    assert registers.read_u64(FILE_SIZE_LOW_ADDR, FILE_SIZE_HIGH_ADDR) == (3 << 32) | 0x10


def test_empty_register_lists_skip_the_device(registers: MemoryRegisters, emulator: TerminalEmulatorLogic):
    assert registers.read_registers(TERMINAL_MAGIC_ADDR, 0) == []
    registers.write_registers(TERMINAL_STATUS_ADDR, [])
    assert emulator.requests == []


@pytest.mark.parametrize("value", [-1, 1 << 32])
def test_register_values_must_fit_u32(registers: MemoryRegisters, value: int):
    with pytest.raises(ValueError):
        registers.write_register(TERMINAL_STATUS_ADDR, value)


def test_unreadable_register_raises_protocol_error(registers: MemoryRegisters, emulator: TerminalEmulatorLogic):
    emulator.unreadable.add(TERMINAL_STATUS_ADDR)
    with pytest.raises(ProtocolError):
        registers.read_register(TERMINAL_STATUS_ADDR)


def test_raw_memory_passthrough():
    payload = b"\x01\x00\x00\x00"
    reply = struct.pack("<IHHHH", 0x43563355, 0, 0x0801, 4, 1) + payload
    registers = MemoryRegisters(UVCPClient(ScriptedTransport([reply])))
    assert registers.read_memory(0x30100, 4) == payload


def test_register_read_survives_pending_acks(registers: MemoryRegisters, emulator: TerminalEmulatorLogic):
    emulator.queue_pending(3, timeout_ms=2)
    assert registers.read_register(TERMINAL_MAGIC_ADDR) == TERMINAL_MAGIC
    assert len([r for r in emulator.requests if r.address == TERMINAL_MAGIC_ADDR]) == 1


def test_short_write_ack_fails_the_register_write(registers: MemoryRegisters, emulator: TerminalEmulatorLogic):
    emulator.short_write = True
    with pytest.raises(ProtocolError):
        registers.write_register(TERMINAL_STATUS_ADDR, int(Control.CLEAR_FLAGS))
