"""USB HID transport implementation using PyUSB interrupt endpoints."""

from __future__ import annotations

import errno
import logging

import usb.core
import usb.util

from ledgerctl.core.codec import PACKET_SIZE
from ledgerctl.core.device_match import LEDGER_VENDOR_ID, is_supported
from ledgerctl.core.errors import (
    DeviceBusy,
    DeviceDiscoveryError,
    TransportConnectError,
    TransportError,
    TransportTimeoutError,
)
from ledgerctl.core.model import DetectedDevice

HID_INTERFACE = 0
_BUSY_ERRNOS = frozenset({errno.EBUSY, errno.EACCES})
LOGGER = logging.getLogger(__name__)


def _path(device: usb.core.Device) -> str:
    return f"{device.bus:03d}:{device.address:03d}"


def _product_string(device: usb.core.Device) -> str:
    if not device.iProduct:
        return "<unknown-device>"
    try:
        return usb.util.get_string(device, device.iProduct) or "<unknown-device>"
    except (usb.core.USBError, ValueError):
        return "<unknown-device>"


def _timeout_ms(timeout_s: float) -> int:
    return max(1, int(timeout_s * 1000))


def _interrupt_endpoints(
    device: usb.core.Device,
) -> tuple[usb.core.Endpoint | None, usb.core.Endpoint | None]:
    intf = device.get_active_configuration()[(HID_INTERFACE, 0)]

    def find(direction: int) -> usb.core.Endpoint | None:
        return usb.util.find_descriptor(
            intf,
            custom_match=lambda e: usb.util.endpoint_direction(e.bEndpointAddress) == direction
            and usb.util.endpoint_type(e.bmAttributes) == usb.util.ENDPOINT_TYPE_INTR,
        )

    return find(usb.util.ENDPOINT_IN), find(usb.util.ENDPOINT_OUT)


def _release(device: usb.core.Device) -> None:
    try:
        usb.util.release_interface(device, HID_INTERFACE)
    except usb.core.USBError as exc:
        LOGGER.debug("Releasing interface failed: %s", exc)
    usb.util.dispose_resources(device)


class USBHIDTransport:
    def __init__(
        self,
        device: usb.core.Device,
        endpoint_in: usb.core.Endpoint,
        endpoint_out: usb.core.Endpoint,
    ) -> None:
        self._device = device
        self._endpoint_in = endpoint_in
        self._endpoint_out = endpoint_out
        self._closed = False

    def write(self, packet: bytes, *, timeout_s: float) -> None:
        try:
            written = self._endpoint_out.write(packet, timeout=_timeout_ms(timeout_s))
        except usb.core.USBTimeoutError as exc:
            raise TransportTimeoutError("USB write timed out") from exc
        except usb.core.USBError as exc:
            raise TransportError(f"USB write failed: {exc}") from exc
        if written != len(packet):
            raise TransportError(f"USB short write: {written} of {len(packet)} bytes")

    def read(self, *, timeout_s: float) -> bytes:
        try:
            data = self._endpoint_in.read(PACKET_SIZE, timeout=_timeout_ms(timeout_s))
        except usb.core.USBTimeoutError as exc:
            raise TransportTimeoutError("USB read timed out") from exc
        except usb.core.USBError as exc:
            raise TransportError(f"USB read failed: {exc}") from exc
        return bytes(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        _release(self._device)


class USBHIDBackend:
    def __init__(self, *, vendor_id: int = LEDGER_VENDOR_ID) -> None:
        self.vendor_id = vendor_id

    def _find(self) -> list[usb.core.Device]:
        try:
            return list(usb.core.find(find_all=True, idVendor=self.vendor_id))
        except usb.core.NoBackendError as exc:
            raise DeviceDiscoveryError(
                "No libusb backend available. Install libusb and retry."
            ) from exc
        except usb.core.USBError as exc:
            raise DeviceDiscoveryError(f"USB enumeration failed: {exc}") from exc

    def enumerate(self) -> list[DetectedDevice]:
        devices: list[DetectedDevice] = []
        for raw in self._find():
            detected = DetectedDevice(
                path=_path(raw),
                vendor_id=raw.idVendor,
                product_id=raw.idProduct,
                product=_product_string(raw),
            )
            if is_supported(detected, vendor_id=self.vendor_id):
                devices.append(detected)
        return devices

    def open(self, device: DetectedDevice) -> USBHIDTransport:
        raw = next((d for d in self._find() if _path(d) == device.path), None)
        if raw is None:
            raise TransportConnectError(f"Device {device.path} disappeared before it could be opened")

        try:
            detach = raw.is_kernel_driver_active(HID_INTERFACE)
        except NotImplementedError:
            # Kernel driver queries are unsupported on some platforms.
            detach = False

        try:
            if detach:
                raw.detach_kernel_driver(HID_INTERFACE)
            usb.util.claim_interface(raw, HID_INTERFACE)
        except usb.core.USBError as exc:
            if exc.errno in _BUSY_ERRNOS:
                raise DeviceBusy(f"Device {device.path} is in use by another process") from exc
            raise TransportConnectError(f"Could not claim {device.path}: {exc}") from exc

        try:
            endpoint_in, endpoint_out = _interrupt_endpoints(raw)
        except (usb.core.USBError, KeyError, IndexError) as exc:
            _release(raw)
            raise TransportConnectError(f"Could not read the HID interface of {device.path}: {exc}") from exc
        if endpoint_in is None or endpoint_out is None:
            _release(raw)
            raise TransportConnectError(f"Device {device.path} has no HID interrupt endpoints")

        LOGGER.debug(
            "Opened %s: IN=0x%02X OUT=0x%02X",
            device.path,
            endpoint_in.bEndpointAddress,
            endpoint_out.bEndpointAddress,
        )
        return USBHIDTransport(raw, endpoint_in, endpoint_out)
