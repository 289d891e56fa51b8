#!/usr/bin/env python3
"""List USB3 Vision devices and dump the terminal registers of one of them.

Nothing is written to the device: the terminal is neither unlocked nor
started, so this is safe to run against a camera that is in use.
"""

from __future__ import annotations

import argparse
import importlib
import logging
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = ROOT / "src"


def ensure_repo_import(package: str = "u3v_terminal") -> None:
    """Ensure the editable checkout is importable before importing *package*."""

    if package in sys.modules:
        return
    try:
        importlib.import_module(package)
        return
    except ImportError:
        pass
    if str(SRC_DIR) not in sys.path:
        sys.path.insert(0, str(SRC_DIR))
    importlib.import_module(package)


ensure_repo_import()
from u3v_terminal import (  # type: ignore  # pylint: disable=wrong-import-position
    DEFAULT_PRODUCT_ID,
    DEFAULT_VENDOR_ID,
    FileStatus,
    MemoryRegisters,
    PyUsbTransport,
    Status,
    U3VError,
    UVCPClient,
    describe_device,
    find_u3v_devices,
    read_serial,
)
from u3v_terminal.cli import configure_logging, parse_usb_id  # type: ignore  # pylint: disable=wrong-import-position
from u3v_terminal.registers import (  # type: ignore  # pylint: disable=wrong-import-position
    FILE_STATUS_ADDR,
    TERMINAL_AUTH_STATUS_ADDR,
    TERMINAL_MAGIC_ADDR,
)

LOG = logging.getLogger("terminal_status")


def print_devices(vid: int, pid: int) -> int:
    devices = find_u3v_devices(vid, pid)
    if not devices:
        print(f"No {vid:04x}:{pid:04x} devices detected.")
        return 0
    print("Detected devices:")
    for index, dev in enumerate(devices):
        print(f"  [{index}] {describe_device(dev, read_serial(dev))}")
    return len(devices)


def dump_registers(registers: MemoryRegisters) -> None:
    magic, version, status, avail, chunk_hint = registers.read_registers(TERMINAL_MAGIC_ADDR, 5)
    authenticated = registers.read_register(TERMINAL_AUTH_STATUS_ADDR)
    file_status = registers.read_register(FILE_STATUS_ADDR)

    print(f"Magic        : 0x{magic:08x}")
    print(f"Version      : 0x{version:08x}")
    print(f"Status       : {Status(status)!r}")
    print(f"Output avail : {avail}")
    print(f"Chunk hint   : {chunk_hint}")
    print(f"Unlocked     : {'yes' if authenticated else 'no'}")
    print(f"File channel : {FileStatus(file_status)!r}")


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--vid", type=parse_usb_id, default=DEFAULT_VENDOR_ID)
    parser.add_argument("--pid", type=parse_usb_id, default=DEFAULT_PRODUCT_ID)
    parser.add_argument("--serial", help="Serial number of the device to inspect")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    configure_logging(args.log_level)
    if not print_devices(args.vid, args.pid):
        return 1

    try:
        with PyUsbTransport.open(args.vid, args.pid, args.serial) as transport:
            dump_registers(MemoryRegisters(UVCPClient(transport)))
    except U3VError as exc:
        LOG.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
