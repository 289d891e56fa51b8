"""u3vget/u3vput transfers through the emulated file channel."""

from __future__ import annotations

import errno
import io
import os
from pathlib import Path

import pytest

from u3v_terminal import filetransfer
from u3v_terminal.errors import FileTransferError, UsageError
from u3v_terminal.filetransfer import (
    ConsoleProgress,
    FileTransfer,
    FileTransferRequest,
    TransferProgress,
    is_file_transfer_command,
    parse_file_command,
)
from u3v_terminal.registers import FILE_DATA_ADDR, FILE_PATH_ADDR, FileCommand, MemoryRegisters
from u3v_terminal.terminal import TerminalSession
from u3v_terminal.uvcp import UVCPClient

from .mocks import FakeClock, MockTransport
from .u3v_emulator import READ_MEMORY_CMD, WRITE_MEMORY_CMD, TerminalEmulatorLogic

PROFILE_PATH = Path(__file__).parent / "data" / "sample_terminal_profile.json"


@pytest.fixture()
def emulator() -> TerminalEmulatorLogic:
    return TerminalEmulatorLogic(PROFILE_PATH)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def progress_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture()
def files(emulator: TerminalEmulatorLogic, clock: FakeClock, progress_stream: io.StringIO) -> FileTransfer:
    registers = MemoryRegisters(UVCPClient(MockTransport(emulator), clock=clock))
    session = TerminalSession(registers, password="s3cret", clock=clock)
    return FileTransfer(session, registers, clock=clock, reporter=ConsoleProgress(progress_stream))


# ----------------------------------------------------------------------
# Command parsing
# ----------------------------------------------------------------------


def test_parse_file_command():
    assert parse_file_command("u3vget /etc/hostname host.txt") == FileTransferRequest(
        "u3vget", "/etc/hostname", "host.txt"
    )
    request = parse_file_command("  u3vput  a.bin   /tmp/a.bin ")
    assert request is not None and not request.is_download
    assert parse_file_command("ls -l") is None
    assert parse_file_command("") is None


@pytest.mark.parametrize("line", ["u3vget", "u3vget /a", "u3vput a b c"])
def test_parse_file_command_usage_errors(line: str):
    with pytest.raises(UsageError, match="Usage"):
        parse_file_command(line)


def test_is_file_transfer_command():
    assert is_file_transfer_command("u3vget x")
    assert is_file_transfer_command("u3vput")
    assert not is_file_transfer_command("u3vgetx a b")
    assert not is_file_transfer_command("   ")


def test_run_ignores_other_lines(files: FileTransfer, emulator: TerminalEmulatorLogic):
    assert files.run("cat /etc/hostname") is False
    assert emulator.requests == []


# ----------------------------------------------------------------------
# Transfers
# ----------------------------------------------------------------------


def test_download_writes_local_file(files: FileTransfer, tmp_path: Path, progress_stream: io.StringIO):
    target = tmp_path / "hostname"
    assert files.run(f"u3vget /etc/hostname {target}") is True
    assert target.read_bytes() == b"ty-cam\n"
    text = progress_stream.getvalue()
    assert "\rDownloading: 7/7 (100.0%)" in text
    assert f"Downloaded '/etc/hostname' -> '{target}' (7 bytes)" in text


def test_download_sends_reset_path_open_close(files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path):
    files.download("/etc/hostname", str(tmp_path / "h"))
    assert emulator.file_commands == [FileCommand.RESET, FileCommand.OPEN_READ, FileCommand.CLOSE]
    path_writes = [r for r in emulator.requests if r.command == WRITE_MEMORY_CMD and r.address == FILE_PATH_ADDR]
    assert len(path_writes) == 1
    assert path_writes[0].data == b"/etc/hostname".ljust(0x60, b"\0")


def test_download_reads_whole_window_chunks(files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path):
    target = tmp_path / "boot.log"
    received = files.download("/var/log/boot.log", str(target))
    expected = emulator.files["/var/log/boot.log"]
    assert received == len(expected)
    assert target.read_bytes() == expected
    reads = [r.length for r in emulator.requests if r.command == READ_MEMORY_CMD and r.address == FILE_DATA_ADDR]
    assert set(reads[:-1]) == {64}


@pytest.mark.parametrize("size", [0, 1, 63, 64, 65, 2 * 1024 * 1024 + 7])
def test_upload_then_download_round_trip(files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path, size: int):
    payload = os.urandom(size)
    source = tmp_path / "source.bin"
    source.write_bytes(payload)

    assert files.upload(str(source), "/tmp/blob.bin") == size
    assert emulator.files["/tmp/blob.bin"] == payload

    target = tmp_path / "copy.bin"
    assert files.download("/tmp/blob.bin", str(target)) == size
    assert target.read_bytes() == payload


def test_upload_uses_64_byte_window(files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path):
    source = tmp_path / "source.bin"
    source.write_bytes(b"a" * 130)
    files.upload(str(source), "/tmp/a")
    writes = [r.length for r in emulator.requests if r.command == WRITE_MEMORY_CMD and r.address == FILE_DATA_ADDR]
    assert writes == [64, 64, 2]


def test_upload_reports_totals(files: FileTransfer, tmp_path: Path, progress_stream: io.StringIO):
    source = tmp_path / "s.txt"
    source.write_bytes(b"x" * 100)
    files.execute(FileTransferRequest("u3vput", str(source), "/tmp/s.txt"))
    text = progress_stream.getvalue()
    assert "\rUploading:   64/100 (64.0%)" in text
    assert f"Uploaded '{source}' -> '/tmp/s.txt' (100 bytes)" in text


def test_download_missing_remote_file(files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path):
    target = tmp_path / "missing"
    with pytest.raises(FileTransferError) as excinfo:
        files.download("/nope", str(target))
    assert excinfo.value.errno == errno.ENOENT
    assert "open file failed: errno=2" in str(excinfo.value)
    assert emulator.file_commands[-1] == FileCommand.CLOSE
    assert not target.exists()


def test_upload_into_readonly_directory(files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path):
    source = tmp_path / "s.txt"
    source.write_bytes(b"data")
    with pytest.raises(FileTransferError) as excinfo:
        files.upload(str(source), "/proc/s.txt")
    assert excinfo.value.errno == errno.EACCES
    assert emulator.file_commands[-1] == FileCommand.CLOSE
    assert "/proc/s.txt" not in emulator.files


def test_upload_failure_mid_transfer_closes_channel(files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path):
    emulator.write_limit = 100
    source = tmp_path / "big.bin"
    source.write_bytes(b"b" * 500)
    with pytest.raises(FileTransferError, match="u3vput failed") as excinfo:
        files.upload(str(source), "/tmp/big.bin")
    assert excinfo.value.errno == errno.ENOSPC
    assert emulator.file_commands[-1] == FileCommand.CLOSE


def test_failure_reported_on_close(files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path, progress_stream: io.StringIO):
    emulator.fail_on_close = True
    with pytest.raises(FileTransferError, match="file transfer failed") as excinfo:
        files.download("/etc/hostname", str(tmp_path / "h"))
    assert excinfo.value.errno == errno.EIO
    assert "Downloaded" not in progress_stream.getvalue()


def test_upload_missing_local_file(files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path):
    with pytest.raises(FileTransferError, match="Unable to open local file"):
        files.upload(str(tmp_path / "absent"), "/tmp/x")
    assert emulator.requests == []


class _FailingReader(io.BufferedReader):
    def read(self, size=-1):
        raise OSError(errno.EIO, "Input/output error")


def test_upload_local_read_error_closes_channel(
    files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path, monkeypatch
):
    source = tmp_path / "s.bin"
    source.write_bytes(b"s" * 10)
    monkeypatch.setattr(
        filetransfer, "open", lambda path, mode: _FailingReader(io.FileIO(path, "r")), raising=False
    )
    with pytest.raises(FileTransferError, match="Failed reading from local file"):
        files.upload(str(source), "/tmp/s.bin")
    assert emulator.file_commands[-1] == FileCommand.CLOSE


def test_upload_local_stat_error_is_a_transfer_error(
    files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path, monkeypatch
):
    source = tmp_path / "s.bin"
    source.write_bytes(b"s")

    def broken_fstat(fd):
        raise OSError(errno.EIO, "Input/output error")

    monkeypatch.setattr(filetransfer.os, "fstat", broken_fstat)
    with pytest.raises(FileTransferError, match="Unable to stat local file"):
        files.upload(str(source), "/tmp/s.bin")
    assert emulator.requests == []


def test_download_into_unwritable_location(files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path):
    with pytest.raises(FileTransferError, match="for writing"):
        files.download("/etc/hostname", str(tmp_path / "no-such-dir" / "h"))
    assert emulator.file_commands[-1] == FileCommand.CLOSE


def test_remote_path_too_long(files: FileTransfer, emulator: TerminalEmulatorLogic, tmp_path: Path):
    source = tmp_path / "s"
    source.write_bytes(b"s")
    with pytest.raises(FileTransferError, match="limit"):
        files.upload(str(source), "/" + "p" * 0x60)
    assert emulator.file_commands == [FileCommand.RESET, FileCommand.CLOSE]


def test_empty_remote_path(files: FileTransfer, tmp_path: Path):
    with pytest.raises(FileTransferError, match="must not be empty"):
        files.download("", str(tmp_path / "x"))


def test_open_timeout(files: FileTransfer, emulator: TerminalEmulatorLogic, clock: FakeClock, tmp_path: Path):
    emulator.open_delay_polls = 10_000
    with pytest.raises(FileTransferError, match="Timed out"):
        files.download("/etc/hostname", str(tmp_path / "h"))
    assert clock.now >= 0.5


def test_open_waits_while_busy(files: FileTransfer, emulator: TerminalEmulatorLogic, clock: FakeClock, tmp_path: Path):
    emulator.open_delay_polls = 3
    target = tmp_path / "h"
    files.download("/etc/hostname", str(target))
    assert target.read_bytes() == b"ty-cam\n"
    assert clock.sleeps.count(0.01) >= 3


def test_interrupt_still_closes_channel(emulator: TerminalEmulatorLogic, clock: FakeClock, tmp_path: Path):
    class InterruptingProgress(ConsoleProgress):
        def update(self, progress: TransferProgress) -> None:
            raise KeyboardInterrupt

    registers = MemoryRegisters(UVCPClient(MockTransport(emulator), clock=clock))
    session = TerminalSession(registers, password="s3cret", clock=clock)
    files = FileTransfer(session, registers, clock=clock, reporter=InterruptingProgress(io.StringIO()))
    with pytest.raises(KeyboardInterrupt):
        files.download("/etc/hostname", str(tmp_path / "h"))
    assert emulator.file_commands[-1] == FileCommand.CLOSE


def test_progress_percent():
    assert TransferProgress("download", "a", "b").percent is None
    assert TransferProgress("upload", "a", "b", 25, 200).percent == 12.5


def test_progress_without_total(progress_stream: io.StringIO):
    reporter = ConsoleProgress(progress_stream)
    progress = TransferProgress("download", "/dev/stream", "out", 10)
    reporter.update(progress)
    reporter.finish(progress, success=True)
    assert progress_stream.getvalue() == "\rDownloading: 10 bytes\nDownloaded '/dev/stream' -> 'out'\n"
