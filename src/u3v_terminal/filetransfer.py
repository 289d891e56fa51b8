"""File transfer sub-protocol multiplexed over the terminal file registers.

``u3vget <remote> <local>`` downloads a file from the camera and
``u3vput <local> <remote>`` uploads one.  Every transfer resets the file
channel, writes the remote path, opens the channel for reading or writing,
moves data through the small file data window and closes the channel again,
whatever happened in between.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import sys
from typing import IO, Optional

from .errors import FileTransferError, U3VError, UsageError
from .polling import SYSTEM_CLOCK, Clock, PollPolicy
from .registers import (
    FILE_CMD_ADDR,
    FILE_DATA_ADDR,
    FILE_DATA_AVAIL_ADDR,
    FILE_DATA_WINDOW,
    FILE_PATH_ADDR,
    FILE_PATH_CAPACITY,
    FILE_RESULT_ADDR,
    FILE_SIZE_HIGH_ADDR,
    FILE_SIZE_LOW_ADDR,
    FILE_STATUS_ADDR,
    FileCommand,
    FileStatus,
    MemoryRegisters,
)
from .terminal import TerminalSession
from .uvcp import MAX_READ_LENGTH

LOG = logging.getLogger(__name__)

__all__ = [
    "ConsoleProgress",
    "FileTransfer",
    "FileTransferRequest",
    "TransferProgress",
    "is_file_transfer_command",
    "parse_file_command",
]

GET_VERB = "u3vget"
PUT_VERB = "u3vput"
FILE_VERBS = (GET_VERB, PUT_VERB)

OPEN_TIMEOUT = 0.5
POLL_INTERVAL = 0.01
CLOSE_SETTLE = 0.005


@dataclasses.dataclass(frozen=True)
class FileTransferRequest:
    verb: str
    source: str
    destination: str

    @property
    def is_download(self) -> bool:
        return self.verb == GET_VERB


def is_file_transfer_command(line: str) -> bool:
    tokens = line.split()
    return bool(tokens) and tokens[0] in FILE_VERBS


def parse_file_command(line: str) -> Optional[FileTransferRequest]:
    """Parse a ``u3vget``/``u3vput`` line; other lines yield ``None``."""

    tokens = line.split()
    if not tokens or tokens[0] not in FILE_VERBS:
        return None
    if len(tokens) != 3:
        if tokens[0] == GET_VERB:
            raise UsageError("Usage: u3vget <remote-path> <local-path>")
        raise UsageError("Usage: u3vput <local-path> <remote-path>")
    return FileTransferRequest(tokens[0], tokens[1], tokens[2])


@dataclasses.dataclass
class TransferProgress:
    """Byte accounting for one transfer.  ``total_bytes`` is 0 when unknown."""

    direction: str
    source: str
    destination: str
    bytes_transferred: int = 0
    total_bytes: int = 0

    @property
    def percent(self) -> Optional[float]:
        if not self.total_bytes:
            return None
        return 100.0 * self.bytes_transferred / self.total_bytes


class ConsoleProgress:
    """Render transfer progress on a text stream (stdout by default)."""

    _LABELS = {"download": "Downloading: ", "upload": "Uploading:   "}

    def __init__(self, stream: Optional[IO[str]] = None) -> None:
        self._stream = stream
        self._printed = False

    @property
    def stream(self) -> IO[str]:
        return self._stream if self._stream is not None else sys.stdout

    def update(self, progress: TransferProgress) -> None:
        label = self._LABELS.get(progress.direction, "")
        if progress.total_bytes:
            text = (
                f"\r{label}{progress.bytes_transferred}/{progress.total_bytes} "
                f"({progress.percent:.1f}%)"
            )
        else:
            text = f"\r{label}{progress.bytes_transferred} bytes"
        self.stream.write(text)
        self.stream.flush()
        self._printed = True

    def finish(self, progress: TransferProgress, success: bool) -> None:
        if self._printed:
            self.stream.write("\n")
            self._printed = False
        if success:
            verb = "Downloaded" if progress.direction == "download" else "Uploaded"
            summary = f"{verb} '{progress.source}' -> '{progress.destination}'"
            if progress.total_bytes:
                summary += f" ({progress.total_bytes} bytes)"
            self.stream.write(summary + "\n")
        self.stream.flush()


class FileTransfer:
    """Run ``u3vget``/``u3vput`` transfers against the device file channel."""

    def __init__(
        self,
        session: TerminalSession,
        registers: MemoryRegisters,
        *,
        clock: Clock = SYSTEM_CLOCK,
        reporter: Optional[ConsoleProgress] = None,
    ) -> None:
        self.session = session
        self.registers = registers
        self.reporter = reporter
        self._clock = clock

    def execute(self, request: FileTransferRequest) -> int:
        if request.is_download:
            return self.download(request.source, request.destination)
        return self.upload(request.source, request.destination)

    def run(self, line: str) -> bool:
        """Execute ``line`` when it is a file-transfer verb.

        Returns ``False`` for any other line so that callers can hand it to
        the remote shell instead.
        """

        request = parse_file_command(line)
        if request is None:
            return False
        self.execute(request)
        return True

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def download(self, remote_path: str, local_path: str) -> int:
        """Copy ``remote_path`` from the device into ``local_path``."""

        self.session.ensure_session()
        progress = TransferProgress("download", remote_path, local_path)
        try:
            self._prepare_path(remote_path)
            self._send_command(FileCommand.OPEN_READ)
            self._wait_for_open(FileStatus.READING)
            progress.total_bytes = self._read_size()
            try:
                handle = open(local_path, "wb")
            except OSError as exc:
                raise FileTransferError(
                    f"Unable to open local file '{local_path}' for writing: {exc}"
                ) from exc
            with handle:
                self._receive_into(handle, progress)
        except BaseException:
            self._abort(progress)
            raise
        self._complete(progress)
        return progress.bytes_transferred

    def upload(self, local_path: str, remote_path: str) -> int:
        """Copy ``local_path`` onto the device as ``remote_path``."""

        try:
            handle = open(local_path, "rb")
        except OSError as exc:
            raise FileTransferError(f"Unable to open local file '{local_path}': {exc}") from exc

        with handle:
            try:
                total = os.fstat(handle.fileno()).st_size
            except OSError as exc:
                raise FileTransferError(f"Unable to stat local file '{local_path}': {exc}") from exc
            self.session.ensure_session()
            progress = TransferProgress("upload", local_path, remote_path, total_bytes=total)
            try:
                self._prepare_path(remote_path)
                self._send_command(FileCommand.OPEN_WRITE)
                self._wait_for_open(FileStatus.WRITING)
                self._send_from(handle, progress)
            except BaseException:
                self._abort(progress)
                raise
        self._complete(progress)
        return progress.bytes_transferred

    def _receive_into(self, handle: IO[bytes], progress: TransferProgress) -> None:
        while True:
            available = self.registers.read_register(FILE_DATA_AVAIL_ADDR)
            if available == 0:
                status = self._read_status()
                if status & FileStatus.ERROR:
                    self._raise_file_error(GET_VERB)
                if status & FileStatus.EOF:
                    return
                self._clock.sleep(POLL_INTERVAL)
                continue

            chunk = self.registers.read_memory(FILE_DATA_ADDR, min(available, MAX_READ_LENGTH))
            try:
                handle.write(chunk)
            except OSError as exc:
                raise FileTransferError(
                    f"Failed writing to local file '{progress.destination}': {exc}"
                ) from exc
            progress.bytes_transferred += len(chunk)
            self._report(progress)

    def _send_from(self, handle: IO[bytes], progress: TransferProgress) -> None:
        while True:
            try:
                chunk = handle.read(FILE_DATA_WINDOW)
            except OSError as exc:
                raise FileTransferError(
                    f"Failed reading from local file '{progress.source}': {exc}"
                ) from exc
            if not chunk:
                return
            self.registers.write_memory(FILE_DATA_ADDR, chunk)
            if self._read_status() & FileStatus.ERROR:
                self._raise_file_error(PUT_VERB)
            progress.bytes_transferred += len(chunk)
            self._report(progress)

    # ------------------------------------------------------------------
    # Channel helpers
    # ------------------------------------------------------------------

    def _prepare_path(self, remote_path: str) -> None:
        if not remote_path:
            raise FileTransferError("Remote path must not be empty")
        self._send_command(FileCommand.RESET)
        encoded = remote_path.encode("utf-8")
        if len(encoded) >= FILE_PATH_CAPACITY:
            raise FileTransferError(
                f"Remote path exceeds {FILE_PATH_CAPACITY - 1} bytes limit"
            )
        self.registers.write_memory(FILE_PATH_ADDR, encoded.ljust(FILE_PATH_CAPACITY, b"\0"))

    def _send_command(self, command: FileCommand) -> None:
        self.registers.write_register(FILE_CMD_ADDR, int(command))

    def _read_status(self) -> FileStatus:
        return FileStatus(self.registers.read_register(FILE_STATUS_ADDR))

    def _read_size(self) -> int:
        return self.registers.read_u64(FILE_SIZE_LOW_ADDR, FILE_SIZE_HIGH_ADDR)

    def _wait_for_open(self, mode: FileStatus) -> None:
        poll = PollPolicy(OPEN_TIMEOUT, POLL_INTERVAL, self._clock)
        while not poll.expired():
            status = self._read_status()
            if status & mode:
                return
            if status & FileStatus.ERROR:
                self._raise_file_error("open file")
            poll.wait()
        raise FileTransferError("Timed out waiting for file channel")

    def _raise_file_error(self, context: str) -> None:
        result = self.registers.read_register(FILE_RESULT_ADDR)
        raise FileTransferError(f"{context} failed", result)

    def _check_error(self, context: str) -> None:
        if self._read_status() & FileStatus.ERROR:
            self._raise_file_error(context)

    def _close_channel(self) -> None:
        self._send_command(FileCommand.CLOSE)
        self._clock.sleep(CLOSE_SETTLE)
        self._check_error("file transfer")

    def _abort(self, progress: TransferProgress) -> None:
        try:
            self._close_channel()
        except U3VError as exc:
            LOG.warning("Closing file channel after failed %s: %s", progress.direction, exc)
        if self.reporter is not None:
            self.reporter.finish(progress, success=False)

    def _complete(self, progress: TransferProgress) -> None:
        try:
            self._close_channel()
        except U3VError:
            if self.reporter is not None:
                self.reporter.finish(progress, success=False)
            raise
        if self.reporter is not None:
            self.reporter.finish(progress, success=True)
        LOG.info(
            "%s complete: '%s' -> '%s' (%d bytes)",
            progress.direction.capitalize(),
            progress.source,
            progress.destination,
            progress.bytes_transferred,
        )

    def _report(self, progress: TransferProgress) -> None:
        if self.reporter is not None:
            self.reporter.update(progress)
