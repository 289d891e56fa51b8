"""Top-level wiring: one context object owns the transport and every layer above it."""

from __future__ import annotations

import dataclasses
import logging
import os
import sys
from typing import BinaryIO, Optional

from .core import (
    DEFAULT_PRODUCT_ID,
    DEFAULT_VENDOR_ID,
    TRANSFER_TIMEOUT_MS,
    DeviceChooser,
    PyUsbTransport,
)
from .filetransfer import ConsoleProgress, FileTransfer, parse_file_command
from .interactive import (
    MODE_LINE,
    MODE_RAW,
    Console,
    InteractiveSession,
    LineModeSession,
    select_interactive_mode,
)
from .polling import SYSTEM_CLOCK, Clock
from .registers import MemoryRegisters
from .terminal import TerminalSession
from .uvcp import Transport, UVCPClient

LOG = logging.getLogger(__name__)

__all__ = [
    "TerminalConfig",
    "TerminalContext",
    "open_transport",
]

PASSWORD_ENV = "TY_TERM_PASS"
BACKENDS = ("pyusb", "libusb1")


@dataclasses.dataclass
class TerminalConfig:
    """Everything needed to open a device and run one terminal job."""

    vendor_id: int = DEFAULT_VENDOR_ID
    product_id: int = DEFAULT_PRODUCT_ID
    serial: Optional[str] = None
    password: str = ""
    interactive: bool = True
    interactive_mode: int = MODE_RAW
    command: str = ""
    reset: bool = False
    backend: str = "pyusb"
    timeout_ms: int = TRANSFER_TIMEOUT_MS

    @classmethod
    def from_args(cls, args, environ=None) -> "TerminalConfig":
        environ = os.environ if environ is None else environ
        command = ""
        if args.get is not None:
            command = f"u3vget {args.get[0]} {args.get[1]}"
        elif args.put is not None:
            command = f"u3vput {args.put[0]} {args.put[1]}"
        elif args.command is not None:
            command = args.command
        elif args.words:
            command = " ".join(args.words)

        interactive = args.interactive is not None or not command
        return cls(
            vendor_id=args.vid,
            product_id=args.pid,
            serial=args.serial or None,
            password=args.password or environ.get(PASSWORD_ENV, ""),
            interactive=interactive,
            interactive_mode=args.interactive if args.interactive is not None else MODE_RAW,
            command="" if interactive else command,
            reset=args.reset,
            backend=args.backend,
            timeout_ms=args.timeout_ms,
        )


def open_transport(config: TerminalConfig, chooser: Optional[DeviceChooser] = None) -> Transport:
    """Open the device named by ``config`` with the selected backend."""

    if config.backend == "libusb1":
        from .usb1_transport import Libusb1Transport

        opener = Libusb1Transport.open
    elif config.backend == "pyusb":
        opener = PyUsbTransport.open
    else:
        raise ValueError(f"Unknown USB backend {config.backend!r}; choose from {BACKENDS}")
    return opener(
        config.vendor_id,
        config.product_id,
        config.serial,
        chooser,
        timeout_ms=config.timeout_ms,
    )


class TerminalContext:
    """Owns the transport, UVCP client, register view, session and file channel."""

    def __init__(
        self,
        transport: Transport,
        *,
        password: str = "",
        clock: Clock = SYSTEM_CLOCK,
        reporter: Optional[ConsoleProgress] = None,
        output: Optional[BinaryIO] = None,
    ) -> None:
        self.transport = transport
        self.clock = clock
        self.client = UVCPClient(transport, clock=clock)
        self.registers = MemoryRegisters(self.client)
        self.session = TerminalSession(self.registers, password=password, clock=clock)
        self.files = FileTransfer(self.session, self.registers, clock=clock, reporter=reporter)
        self._output = output

    @property
    def output(self) -> BinaryIO:
        return self._output if self._output is not None else sys.stdout.buffer

    def run_once(self, command: str) -> None:
        """Run one shell command, or one file transfer verb, to completion."""

        request = parse_file_command(command)
        if request is not None:
            self.files.execute(request)
            return
        self.session.send_command(command)
        output = self.session.drain_output()
        if output:
            self.output.write(output)
            self.output.flush()

    def run_interactive(self, mode: int, console: Console) -> None:
        """Run the interactive loop; mode 1 is line mode, anything else raw mode."""

        loop_cls = LineModeSession if mode == MODE_LINE else InteractiveSession
        loop_cls(self.session, self.files, console, clock=self.clock).run()

    def prepare(self, config: TerminalConfig) -> int:
        """Initialise the session for ``config`` and return the effective mode."""

        self.session.initialize()
        mode = config.interactive_mode
        if config.interactive:
            mode = select_interactive_mode(mode, self.session.firmware_version)
            self.session.set_echo_enabled(mode == MODE_RAW)
        else:
            self.session.set_echo_enabled(False)
        if config.reset:
            self.session.reset()
        return mode
