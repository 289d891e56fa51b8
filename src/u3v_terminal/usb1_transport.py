#!/usr/bin/env python3
"""UVCP bulk transport built on top of libusb1.

PyUSB is the default backend.  ``libusb1`` talks to the same libusb library
through its own bindings and copes better on some platforms with kernel
driver auto-detachment, so it is offered as an alternative implementation of
:class:`~u3v_terminal.uvcp.Transport`.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Optional

import usb1

from .core import (
    DEFAULT_PRODUCT_ID,
    DEFAULT_VENDOR_ID,
    ENDPOINT_DIR_IN,
    ENDPOINT_TYPE_BULK,
    ENDPOINT_TYPE_MASK,
    TRANSFER_TIMEOUT_MS,
    U3V_CLASS,
    U3V_PROTOCOL,
    U3V_SUBCLASS,
    ControlInterface,
    DeviceChooser,
    choose_device,
)
from .errors import TransportError
from .uvcp import Transport

LOG = logging.getLogger(__name__)


def find_usb1_control_interface(device: usb1.USBDevice) -> ControlInterface:
    """Return the USB3 Vision control interface of a libusb1 device."""

    for setting in device.iterSettings():
        if (
            setting.getClass() != U3V_CLASS
            or setting.getSubClass() != U3V_SUBCLASS
            or setting.getProtocol() != U3V_PROTOCOL
        ):
            continue
        bulk_in = bulk_out = 0
        for endpoint in setting.iterEndpoints():
            if endpoint.getAttributes() & ENDPOINT_TYPE_MASK != ENDPOINT_TYPE_BULK:
                continue
            address = endpoint.getAddress()
            if address & ENDPOINT_DIR_IN:
                bulk_in = address
            else:
                bulk_out = address
        if bulk_in and bulk_out:
            return ControlInterface(setting.getNumber(), bulk_out, bulk_in)
    raise TransportError("No USB3 Vision control interface with bulk IN/OUT found")


def _usb1_serial(device: usb1.USBDevice) -> Optional[str]:
    try:
        return device.getSerialNumber()
    except usb1.USBError:
        return None


class Libusb1Transport(Transport):
    """Bulk transport using ``usb1.USBDeviceHandle.bulkWrite``/``bulkRead``."""

    def __init__(
        self,
        context: Optional[usb1.USBContext],
        handle: usb1.USBDeviceHandle,
        control: ControlInterface,
        *,
        timeout_ms: int = TRANSFER_TIMEOUT_MS,
    ) -> None:
        self._ctx = context
        self._handle: Optional[usb1.USBDeviceHandle] = handle
        self.control = control
        self.timeout_ms = timeout_ms
        self._claimed = False

    @classmethod
    def open(
        cls,
        vid: int = DEFAULT_VENDOR_ID,
        pid: int = DEFAULT_PRODUCT_ID,
        serial: Optional[str] = None,
        chooser: Optional[DeviceChooser] = None,
        *,
        timeout_ms: int = TRANSFER_TIMEOUT_MS,
    ) -> "Libusb1Transport":
        context = usb1.USBContext()
        context.open()
        try:
            candidates = []
            for device in context.getDeviceIterator(skip_on_error=True):
                if device.getVendorID() != vid or device.getProductID() != pid:
                    continue
                dev_serial = _usb1_serial(device)
                description = (
                    f"bus {device.getBusNumber()} addr {device.getDeviceAddress()}, "
                    f"serial: {dev_serial or '<no-serial>'}"
                )
                candidates.append((device, dev_serial, description))
            if not candidates:
                raise TransportError(f"Unable to open device {vid:04x}:{pid:04x}")

            device = choose_device(candidates, serial, chooser)
            control = find_usb1_control_interface(device)
            try:
                handle = device.open()
            except usb1.USBError as exc:
                raise TransportError(f"Unable to open device {vid:04x}:{pid:04x}: {exc}") from exc
        except BaseException:
            context.close()
            raise

        transport = cls(context, handle, control, timeout_ms=timeout_ms)
        try:
            transport.claim()
        except BaseException:
            transport.close()
            raise
        LOG.info("Opened USB3 Vision device %04x:%04x via libusb1", vid, pid)
        return transport

    def claim(self) -> None:
        if self._claimed or self._handle is None:
            return
        with contextlib.suppress(usb1.USBErrorNotSupported):
            self._handle.setAutoDetachKernelDriver(True)
        try:
            self._handle.claimInterface(self.control.interface_number)
        except usb1.USBError as exc:
            raise TransportError(
                f"Failed to claim interface {self.control.interface_number}: {exc}"
            ) from exc
        self._claimed = True

    def close(self) -> None:
        if self._handle is not None:
            if self._claimed:
                with contextlib.suppress(usb1.USBError):
                    self._handle.releaseInterface(self.control.interface_number)
                self._claimed = False
            self._handle.close()
            self._handle = None
        if self._ctx is not None:
            self._ctx.close()
            self._ctx = None

    def send(self, data: bytes) -> None:
        if self._handle is None or not self._claimed:
            raise TransportError("Interface not claimed")
        try:
            written = self._handle.bulkWrite(self.control.bulk_out, data, timeout=self.timeout_ms)
        except usb1.USBErrorTimeout as exc:
            raise TransportError(
                f"Bulk OUT timed out: bytes={getattr(exc, 'transferred', 0)}/{len(data)}"
            ) from exc
        except usb1.USBError as exc:
            raise TransportError(f"Bulk OUT failed: {exc}") from exc
        if written != len(data):
            raise TransportError(f"Bulk OUT short transfer: bytes={written}/{len(data)}")

    def receive(self, max_len: int) -> bytes:
        if self._handle is None or not self._claimed:
            raise TransportError("Interface not claimed")
        try:
            data = self._handle.bulkRead(self.control.bulk_in, max_len, timeout=self.timeout_ms)
        except usb1.USBError as exc:
            raise TransportError(f"Bulk IN failed: {exc}") from exc
        if not data:
            raise TransportError("Bulk IN returned 0 bytes")
        return bytes(data)
