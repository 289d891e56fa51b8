"""Command line entry point for the firmware terminal client."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from .app import BACKENDS, PASSWORD_ENV, TerminalConfig, TerminalContext, open_transport
from .core import DEFAULT_PRODUCT_ID, DEFAULT_VENDOR_ID, TRANSFER_TIMEOUT_MS
from .errors import U3VError, UsageError
from .filetransfer import ConsoleProgress
from .interactive import Console, PosixConsole

LOG = logging.getLogger("u3v_terminal")


def parse_usb_id(value: str) -> int:
    """Parse a 16-bit USB identifier given in decimal or 0x-prefixed hex."""

    try:
        parsed = int(value.strip(), 0)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid USB identifier: {value!r}") from exc
    if not 0 <= parsed <= 0xFFFF:
        raise argparse.ArgumentTypeError("USB identifiers must be between 0x0000 and 0xFFFF")
    return parsed


def parse_mode(value: str) -> int:
    try:
        parsed = int(value.strip(), 0)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid interactive mode value: {value!r}") from exc
    if not 0 <= parsed <= 0xFFFF:
        raise argparse.ArgumentTypeError("Invalid interactive mode value")
    return parsed


def configure_logging(level: str = "INFO", *, name: Optional[str] = None) -> logging.Logger:
    """Initialise basic logging and return the requested logger."""

    logging.basicConfig(level=level.upper(), format="%(levelname)s %(name)s: %(message)s")
    return logging.getLogger(name) if name else logging.getLogger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="u3v-terminal",
        description="Remote shell and file transfer over a USB3 Vision control channel.",
    )
    parser.add_argument(
        "-i",
        "--interactive",
        type=parse_mode,
        metavar="MODE",
        help="Force interactive mode: 1 = line mode, 2 = raw byte stream (default)",
    )
    parser.add_argument("-c", "--command", help="Execute a single command then exit")
    parser.add_argument(
        "-get",
        "--get",
        nargs=2,
        metavar=("REMOTE", "LOCAL"),
        help="Download a file from the device then exit",
    )
    parser.add_argument(
        "-put",
        "--put",
        nargs=2,
        metavar=("LOCAL", "REMOTE"),
        help="Upload a file to the device then exit",
    )
    parser.add_argument("-r", "--reset", action="store_true", help="Reset terminal session before use")
    parser.add_argument(
        "-p",
        "--password",
        help=f"Password for unlocking the terminal (default: ${PASSWORD_ENV})",
    )
    parser.add_argument(
        "-id",
        "--id",
        dest="serial",
        metavar="SERIAL",
        help="Match device by USB serial number (omit to be prompted when several exist)",
    )
    parser.add_argument(
        "--vid",
        type=parse_usb_id,
        default=DEFAULT_VENDOR_ID,
        help=f"USB vendor ID (default 0x{DEFAULT_VENDOR_ID:04x})",
    )
    parser.add_argument(
        "--pid",
        type=parse_usb_id,
        default=DEFAULT_PRODUCT_ID,
        help=f"USB product ID (default 0x{DEFAULT_PRODUCT_ID:04x})",
    )
    parser.add_argument("--backend", choices=BACKENDS, default="pyusb", help="USB library to use")
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=TRANSFER_TIMEOUT_MS,
        help="Timeout applied to every bulk transfer",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    parser.add_argument("words", nargs=argparse.REMAINDER, help="Command to execute")
    return parser


def prompt_device_index(descriptions: List[str]) -> Optional[int]:
    """Ask on stdin which of several matching devices to use."""

    print("Multiple USB3 Vision devices detected:")
    for index, description in enumerate(descriptions):
        print(f"  [{index}] {description}")
    prompt = "Select device index: "
    while True:
        try:
            line = input(prompt)
        except EOFError:
            return None
        line = line.strip()
        if not line:
            continue
        if line.isdigit() and int(line) < len(descriptions):
            return int(line)
        prompt = f"Invalid selection. Enter a number between 0 and {len(descriptions) - 1}: "


def run(context: TerminalContext, config: TerminalConfig, console: Console) -> bool:
    """Run the job described by ``config``; always locks the terminal afterwards."""

    ok = False
    try:
        mode = context.prepare(config)
        if config.interactive:
            context.run_interactive(mode, console)
        else:
            context.run_once(config.command)
        ok = True
    except UsageError as exc:
        LOG.error("%s", exc)
        ok = True
    except U3VError as exc:
        LOG.error("%s", exc)
    finally:
        try:
            context.session.lock()
        except U3VError as exc:
            LOG.error("Failed to lock terminal: %s", exc)
            ok = False
    return ok


def main(argv: Optional[List[str]] = None, *, console: Optional[Console] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    config = TerminalConfig.from_args(args)

    try:
        transport = open_transport(config, chooser=prompt_device_index)
    except U3VError as exc:
        LOG.error("%s", exc)
        return 1

    with transport:
        context = TerminalContext(transport, password=config.password, reporter=ConsoleProgress())
        ok = run(context, config, console or PosixConsole())
    return 0 if ok else 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
