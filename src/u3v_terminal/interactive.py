"""Interactive front ends for the firmware terminal.

Two loops are provided:

* :class:`InteractiveSession` puts the local console in raw mode and relays
  keystrokes byte by byte while draining device output, intercepting the
  ``exit`` line, the ``u3vget``/``u3vput`` verbs and the Ctrl+] escape.
* :class:`LineModeSession` is the line-oriented fallback for firmware that
  predates the raw byte stream.

Local terminal handling lives behind :class:`Console` so that tests can
substitute a scripted console.
"""

from __future__ import annotations

import logging
import os
import select
import sys
from abc import ABC, abstractmethod
from typing import Callable, Optional

try:  # POSIX only
    import termios
except ImportError:  # pragma: no cover - Windows
    termios = None

from .errors import SessionError, U3VError
from .filetransfer import FileTransfer, is_file_transfer_command
from .polling import SYSTEM_CLOCK, Clock
from .terminal import TerminalSession

LOG = logging.getLogger(__name__)

__all__ = [
    "MIN_RAW_MODE_VERSION",
    "Console",
    "InteractiveSession",
    "LineModeSession",
    "PosixConsole",
    "RawModeGuard",
    "select_interactive_mode",
]

MIN_RAW_MODE_VERSION = 0x00010002
MODE_LINE = 1
MODE_RAW = 2

EXIT_KEY = 0x1D  # Ctrl+]
BACKSPACE_KEYS = (0x7F, 0x08)
LINE_ENDINGS = (0x0D, 0x0A)

INPUT_POLL_TIMEOUT = 0.02
OUTPUT_POLL_PERIOD = 0.01
OUTPUT_IDLE_TIMEOUT = 0.01
OUTPUT_MAX_WAIT = 0.01
WARMUP_IDLE_TIMEOUT = 0.05
WARMUP_MAX_WAIT = 0.5
INITIAL_DIRECTORY = "/root"


def select_interactive_mode(requested: int, firmware_version: int) -> int:
    """Downgrade raw mode requests on firmware without raw byte streaming."""

    if requested != MODE_LINE and firmware_version < MIN_RAW_MODE_VERSION:
        LOG.warning(
            "Terminal version 0x%x is below 0x%x, falling back to line mode",
            firmware_version,
            MIN_RAW_MODE_VERSION,
        )
        return MODE_LINE
    return requested


class RawModeGuard:
    """Restore the previous console mode exactly once."""

    def __init__(self, restore: Callable[[], None]) -> None:
        self._restore: Optional[Callable[[], None]] = restore

    @property
    def released(self) -> bool:
        return self._restore is None

    def release(self) -> None:
        restore, self._restore = self._restore, None
        if restore is not None:
            restore()

    def __enter__(self) -> "RawModeGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class Console(ABC):
    """Local keyboard/screen capability used by the interactive loops."""

    @abstractmethod
    def enter_raw_mode(self) -> RawModeGuard:
        """Switch to byte-at-a-time input without echo; the guard restores it."""

    @abstractmethod
    def read_input(self, timeout: float) -> bytes:
        """Return pending keyboard bytes, or ``b""`` after ``timeout`` seconds."""

    @abstractmethod
    def write_output(self, data: bytes) -> None:
        """Write ``data`` to the screen immediately."""

    @abstractmethod
    def read_line(self) -> Optional[str]:
        """Read one line without its terminator; ``None`` on end of input."""

    def write_text(self, text: str) -> None:
        self.write_output(text.encode("utf-8"))


class PosixConsole(Console):
    """:class:`Console` backed by the process stdin/stdout and ``termios``."""

    def __init__(self, stdin=None, stdout=None) -> None:
        self._stdin = stdin if stdin is not None else sys.stdin
        self._stdout = stdout if stdout is not None else sys.stdout

    def enter_raw_mode(self) -> RawModeGuard:
        if termios is None:
            raise U3VError("Raw console mode requires termios")
        fd = self._stdin.fileno()
        try:
            original = termios.tcgetattr(fd)
        except termios.error as exc:
            raise U3VError(f"Unable to read console attributes: {exc}") from exc

        raw = termios.tcgetattr(fd)
        raw[0] &= ~(termios.IXON | termios.ICRNL)
        raw[3] &= ~(termios.ICANON | termios.ECHO | termios.ISIG)
        raw[6][termios.VMIN] = 1
        raw[6][termios.VTIME] = 0
        try:
            termios.tcsetattr(fd, termios.TCSANOW, raw)
        except termios.error as exc:
            raise U3VError(f"Unable to enter raw console mode: {exc}") from exc

        def restore() -> None:
            termios.tcsetattr(fd, termios.TCSANOW, original)

        return RawModeGuard(restore)

    def read_input(self, timeout: float) -> bytes:
        fd = self._stdin.fileno()
        readable, _, _ = select.select([fd], [], [], timeout)
        if not readable:
            return b""
        return os.read(fd, 256)

    def write_output(self, data: bytes) -> None:
        buffer = getattr(self._stdout, "buffer", None)
        if buffer is not None:
            buffer.write(data)
        else:
            self._stdout.write(data.decode("utf-8", errors="replace"))
        self._stdout.flush()

    def read_line(self) -> Optional[str]:
        line = self._stdin.readline()
        if not line:
            return None
        return line.rstrip("\r\n")


class _InteractiveBase:
    def __init__(
        self,
        session: TerminalSession,
        files: FileTransfer,
        console: Console,
        *,
        clock: Clock = SYSTEM_CLOCK,
        initial_directory: Optional[str] = INITIAL_DIRECTORY,
    ) -> None:
        self.session = session
        self.files = files
        self.console = console
        self._clock = clock
        self._initial_directory = initial_directory

    def _preamble(self) -> None:
        self.session.ensure_session()
        self.console.write_text(
            f"Interactive shell ready (firmware version 0x{self.session.firmware_version:x}). "
            "Type 'exit' to quit.\n"
        )
        self._relay(self.session.drain_output(WARMUP_IDLE_TIMEOUT, WARMUP_MAX_WAIT))
        if self._initial_directory:
            self.session.send_command(f"cd {self._initial_directory}")
            self._relay(self.session.drain_output())

    def _relay(self, output: bytes) -> None:
        if output:
            self.console.write_output(output)

    def _run_transfer(self, line: str) -> None:
        try:
            self.files.run(line)
        except U3VError as exc:
            LOG.error("%s", exc)


class LineModeSession(_InteractiveBase):
    """Line oriented shell: one command per line, output drained after each."""

    def run(self) -> None:
        self._preamble()
        while True:
            line = self.console.read_line()
            if line is None:
                self.console.write_text("\n")
                return
            if line in ("exit", "quit"):
                return
            if is_file_transfer_command(line):
                self._run_transfer(line)
                self.session.send_command(" ")
            else:
                self.session.send_command(line)
            self._relay(self.session.drain_output())


class InteractiveSession(_InteractiveBase):
    """Raw byte multiplexer between the local console and the remote shell."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.current_line = bytearray()

    def run(self) -> None:
        self._preamble()
        with self.console.enter_raw_mode():
            self._loop()

    def _loop(self) -> None:
        last_poll = self._clock.monotonic()
        while True:
            data = self.console.read_input(INPUT_POLL_TIMEOUT)
            if data and self.process_input(data):
                return

            now = self._clock.monotonic()
            if now - last_poll >= OUTPUT_POLL_PERIOD:
                try:
                    self._relay(self.session.drain_output(OUTPUT_IDLE_TIMEOUT, OUTPUT_MAX_WAIT))
                except SessionError as exc:
                    LOG.error("%s", exc)
                last_poll = now

    def process_input(self, data: bytes) -> bool:
        """Relay keyboard ``data``; return ``True`` when the loop should stop."""

        exit_requested = False
        outgoing = bytearray()
        for byte in data:
            if byte == EXIT_KEY:
                exit_requested = True
                continue

            if byte in LINE_ENDINGS:
                line = self.current_line.decode("utf-8", errors="replace")
                self.current_line.clear()
                if line == "exit":
                    outgoing += b"\b" * len("exit")
                    self._send(outgoing)
                    outgoing.clear()
                    exit_requested = True
                    continue
                if is_file_transfer_command(line):
                    outgoing += b"\b" * len(line) + b"\n"
                    self._send(outgoing)
                    outgoing.clear()
                    self.console.write_text("\n")
                    self._run_transfer(line)
                    continue
            elif byte in BACKSPACE_KEYS:
                if self.current_line:
                    self.current_line.pop()
            elif 0x20 <= byte < 0x7F:
                self.current_line.append(byte)

            outgoing.append(byte)

        self._send(outgoing)
        return exit_requested

    def _send(self, data: bytearray) -> None:
        if data:
            self.session.write_input(bytes(data))
