"""PyUSB helpers for locating a USB3 Vision device and talking UVCP to it.

The terminal protocol only needs a bulk OUT/IN endpoint pair.  This module
finds candidate devices, picks the USB3 Vision control interface
(class 0xEF, subclass 0x05, protocol 0x00) and wraps it in
:class:`PyUsbTransport`, which implements :class:`~u3v_terminal.uvcp.Transport`.
"""

from __future__ import annotations

import contextlib
import ctypes
import dataclasses
import logging
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

import usb.core
import usb.util

from .errors import TransportError
from .uvcp import Transport

LOG = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_VENDOR_ID",
    "DEFAULT_PRODUCT_ID",
    "TRANSFER_TIMEOUT_MS",
    "ControlInterface",
    "PyUsbTransport",
    "choose_device",
    "describe_device",
    "find_control_interface",
    "find_u3v_devices",
    "read_serial",
]

DEFAULT_VENDOR_ID = 0x04B4
DEFAULT_PRODUCT_ID = 0x1003
TRANSFER_TIMEOUT_MS = 10000

U3V_CLASS = 0xEF
U3V_SUBCLASS = 0x05
U3V_PROTOCOL = 0x00

ENDPOINT_DIR_IN = 0x80
ENDPOINT_TYPE_MASK = 0x03
ENDPOINT_TYPE_BULK = 0x02

# chooser(descriptions) -> index into descriptions, or None to give up
DeviceChooser = Callable[[List[str]], Optional[int]]

_D = TypeVar("_D")

_NO_DISCOVERY_BACKEND_TRIED = False


def _backend_without_device_discovery():
    """Return a libusb1 backend initialised with device discovery disabled.

    Sandboxed environments may refuse access to udev, making ``libusb_init``
    fail and PyUSB raise :class:`usb.core.NoBackendError`.  Setting
    ``LIBUSB_OPTION_NO_DEVICE_DISCOVERY`` before the first initialisation still
    lets PyUSB enumerate the devices that are already present.
    """

    global _NO_DISCOVERY_BACKEND_TRIED
    from usb.backend import libusb1

    if _NO_DISCOVERY_BACKEND_TRIED:
        return libusb1.get_backend()
    _NO_DISCOVERY_BACKEND_TRIED = True

    try:
        libusb = ctypes.CDLL("libusb-1.0.so.0")
        set_option = libusb.libusb_set_option
    except (OSError, AttributeError):
        return None
    set_option.argtypes = [ctypes.c_void_p, ctypes.c_int]
    set_option.restype = ctypes.c_int
    if set_option(None, 2) != 0:  # LIBUSB_OPTION_NO_DEVICE_DISCOVERY
        return None

    # PyUSB caches the failed library handle; drop it so get_backend() retries.
    libusb1._lib = None  # type: ignore[attr-defined]
    libusb1._lib_object = None  # type: ignore[attr-defined]
    return libusb1.get_backend()


@dataclasses.dataclass(frozen=True)
class ControlInterface:
    """USB3 Vision control interface with its bulk endpoint pair."""

    interface_number: int
    bulk_out: int
    bulk_in: int


def find_u3v_devices(vid: int = DEFAULT_VENDOR_ID, pid: int = DEFAULT_PRODUCT_ID) -> List[usb.core.Device]:
    """Return every attached device matching ``vid``/``pid``."""

    try:
        devices = usb.core.find(find_all=True, idVendor=vid, idProduct=pid)
    except usb.core.NoBackendError:
        backend = _backend_without_device_discovery()
        if backend is None:
            raise
        devices = usb.core.find(find_all=True, idVendor=vid, idProduct=pid, backend=backend)
    if devices is None:
        return []
    return list(devices)


def read_serial(dev: usb.core.Device) -> Optional[str]:
    """Return the iSerialNumber string of ``dev`` or ``None`` when unavailable."""

    try:
        if dev.iSerialNumber:
            return usb.util.get_string(dev, dev.iSerialNumber)
    except (usb.core.USBError, ValueError, NotImplementedError):
        return None
    return None


def describe_device(dev: usb.core.Device, serial: Optional[str] = None) -> str:
    bus = getattr(dev, "bus", "?")
    address = getattr(dev, "address", "?")
    return f"bus {bus} addr {address}, serial: {serial or '<no-serial>'}"


def choose_device(
    candidates: Sequence[Tuple[_D, Optional[str], str]],
    serial: Optional[str] = None,
    chooser: Optional[DeviceChooser] = None,
) -> _D:
    """Pick one device out of ``(device, serial, description)`` candidates.

    A ``serial`` filter must match exactly.  Without a filter a single
    candidate is taken as is; several candidates are handed to ``chooser``.
    """

    if serial:
        for device, candidate_serial, _ in candidates:
            if candidate_serial == serial:
                return device
        raise TransportError(f"No device with serial '{serial}'")

    if not candidates:
        raise TransportError("No matching USB3 Vision device found")
    if len(candidates) == 1:
        return candidates[0][0]

    descriptions = [description for _, _, description in candidates]
    if chooser is None:
        raise TransportError(
            f"{len(candidates)} matching devices found; select one by serial number"
        )
    index = chooser(descriptions)
    if index is None or not 0 <= index < len(candidates):
        raise TransportError("Failed to select device")
    return candidates[index][0]


def find_control_interface(dev: usb.core.Device) -> ControlInterface:
    """Locate the USB3 Vision control interface and its bulk IN/OUT endpoints."""

    try:
        configuration = dev.get_active_configuration()
    except (usb.core.USBError, NotImplementedError, AttributeError):
        configuration = None
    configurations = [configuration] if configuration is not None else list(dev)

    for cfg in configurations:
        for intf in cfg:
            if (
                intf.bInterfaceClass != U3V_CLASS
                or intf.bInterfaceSubClass != U3V_SUBCLASS
                or intf.bInterfaceProtocol != U3V_PROTOCOL
            ):
                continue
            bulk_in = bulk_out = 0
            for ep in intf:
                if ep.bmAttributes & ENDPOINT_TYPE_MASK != ENDPOINT_TYPE_BULK:
                    continue
                if ep.bEndpointAddress & ENDPOINT_DIR_IN:
                    bulk_in = ep.bEndpointAddress
                else:
                    bulk_out = ep.bEndpointAddress
            if bulk_in and bulk_out:
                return ControlInterface(intf.bInterfaceNumber, bulk_out, bulk_in)

    raise TransportError("No USB3 Vision control interface with bulk IN/OUT found")


class PyUsbTransport(Transport):
    """Bulk transport over a claimed USB3 Vision control interface."""

    def __init__(
        self,
        device: usb.core.Device,
        control: ControlInterface,
        *,
        timeout_ms: int = TRANSFER_TIMEOUT_MS,
    ) -> None:
        self.device = device
        self.control = control
        self.timeout_ms = timeout_ms
        self._claimed = False
        self._reattach = False

    @classmethod
    def open(
        cls,
        vid: int = DEFAULT_VENDOR_ID,
        pid: int = DEFAULT_PRODUCT_ID,
        serial: Optional[str] = None,
        chooser: Optional[DeviceChooser] = None,
        *,
        timeout_ms: int = TRANSFER_TIMEOUT_MS,
    ) -> "PyUsbTransport":
        """Find, select and claim a device, returning a ready transport."""

        candidates = []
        for dev in find_u3v_devices(vid, pid):
            dev_serial = read_serial(dev)
            candidates.append((dev, dev_serial, describe_device(dev, dev_serial)))
        if not candidates:
            raise TransportError(f"Unable to open device {vid:04x}:{pid:04x}")

        device = choose_device(candidates, serial, chooser)
        for other, _, _ in candidates:
            if other is not device:
                usb.util.dispose_resources(other)

        transport = cls(device, find_control_interface(device), timeout_ms=timeout_ms)
        transport.claim()
        LOG.info(
            "Opened USB3 Vision device %04x:%04x%s",
            vid,
            pid,
            f" (serial={serial})" if serial else "",
        )
        return transport

    # ------------------------------------------------------------------
    # Interface management
    # ------------------------------------------------------------------

    def claim(self) -> None:
        if self._claimed:
            return

        interface = self.control.interface_number
        try:
            self.device.set_configuration()
        except usb.core.USBError:
            pass

        try:
            if self.device.is_kernel_driver_active(interface):
                self.device.detach_kernel_driver(interface)
                self._reattach = True
        except (usb.core.USBError, NotImplementedError, AttributeError) as exc:
            LOG.debug("Kernel driver check failed for interface %d: %s", interface, exc)

        try:
            usb.util.claim_interface(self.device, interface)
        except usb.core.USBError as exc:
            raise TransportError(f"Failed to claim interface {interface}: {exc}") from exc
        self._claimed = True
        LOG.info(
            "Claimed interface %d (OUT=0x%02x, IN=0x%02x)",
            interface,
            self.control.bulk_out,
            self.control.bulk_in,
        )

    def close(self) -> None:
        if self._claimed:
            interface = self.control.interface_number
            with contextlib.suppress(usb.core.USBError):
                usb.util.release_interface(self.device, interface)
            if self._reattach:
                with contextlib.suppress(usb.core.USBError):
                    self.device.attach_kernel_driver(interface)
            self._claimed = False
            self._reattach = False
        usb.util.dispose_resources(self.device)

    # ------------------------------------------------------------------
    # Bulk I/O
    # ------------------------------------------------------------------

    def send(self, data: bytes) -> None:
        if not self._claimed:
            raise TransportError("Interface not claimed")
        try:
            written = self.device.write(self.control.bulk_out, data, timeout=self.timeout_ms)
        except usb.core.USBError as exc:
            raise TransportError(f"Bulk OUT failed: {exc}") from exc
        if written != len(data):
            raise TransportError(f"Bulk OUT short transfer: bytes={written}/{len(data)}")

    def receive(self, max_len: int) -> bytes:
        if not self._claimed:
            raise TransportError("Interface not claimed")
        try:
            data = self.device.read(self.control.bulk_in, max_len, timeout=self.timeout_ms)
        except usb.core.USBError as exc:
            raise TransportError(f"Bulk IN failed: {exc}") from exc
        if len(data) == 0:
            raise TransportError("Bulk IN returned 0 bytes")
        return bytes(data)
