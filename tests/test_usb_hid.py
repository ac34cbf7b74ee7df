from __future__ import annotations

import errno
from types import SimpleNamespace

import pytest
import usb.core
import usb.util

from fakes import FakeAuthority, make_config
from ledgerctl.core.errors import DeviceBusy, DeviceDiscoveryError, TransportConnectError, TransportTimeoutError
from ledgerctl.core.model import DetectedDevice, TransactionState
from ledgerctl.core.service import LedgerService
from ledgerctl.transports import usb_hid
from ledgerctl.transports.usb_hid import USBHIDBackend, USBHIDTransport


def _raw(product_id: int, address: int) -> SimpleNamespace:
    return SimpleNamespace(
        bus=1,
        address=address,
        idVendor=0x2C97,
        idProduct=product_id,
        iProduct=0,
        is_kernel_driver_active=lambda interface: False,
    )


def test_missing_libusb_backend_raises_clean_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def no_backend(**kwargs):
        raise usb.core.NoBackendError("No backend available")

    monkeypatch.setattr(usb.core, "find", no_backend)

    with pytest.raises(DeviceDiscoveryError, match="libusb"):
        USBHIDBackend().enumerate()


def test_enumerate_skips_unknown_products(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(usb.core, "find", lambda **kwargs: iter([_raw(0x5011, 4), _raw(0x0001, 5)]))

    devices = USBHIDBackend().enumerate()

    assert devices == [
        DetectedDevice(path="001:004", vendor_id=0x2C97, product_id=0x5011, product="<unknown-device>")
    ]


def test_claim_conflict_maps_to_device_busy(monkeypatch: pytest.MonkeyPatch) -> None:
    raw = _raw(0x5011, 4)
    monkeypatch.setattr(usb.core, "find", lambda **kwargs: iter([raw]))

    def claimed(device, interface):
        raise usb.core.USBError("Resource busy", errno=errno.EBUSY)

    monkeypatch.setattr(usb.util, "claim_interface", claimed)
    device = DetectedDevice(path="001:004", vendor_id=0x2C97, product_id=0x5011)

    with pytest.raises(DeviceBusy):
        USBHIDBackend().open(device)


def _broken_configuration(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    def pipe_error():
        raise usb.core.USBError("Pipe error", errno=errno.EPIPE)

    raw = _raw(0x5011, 4)
    raw.get_active_configuration = pipe_error
    cleanup: list[str] = []
    monkeypatch.setattr(usb.core, "find", lambda **kwargs: iter([raw]))
    monkeypatch.setattr(usb.util, "claim_interface", lambda device, interface: None)
    monkeypatch.setattr(usb.util, "release_interface", lambda device, interface: cleanup.append("release"))
    monkeypatch.setattr(usb.util, "dispose_resources", lambda device: cleanup.append("dispose"))
    return cleanup


def test_configuration_failure_after_claim_releases_interface(monkeypatch: pytest.MonkeyPatch) -> None:
    cleanup = _broken_configuration(monkeypatch)
    device = DetectedDevice(path="001:004", vendor_id=0x2C97, product_id=0x5011)

    with pytest.raises(TransportConnectError, match="Pipe error"):
        USBHIDBackend().open(device)

    assert cleanup == ["release", "dispose"]


def test_configuration_failure_is_a_failed_transaction(monkeypatch: pytest.MonkeyPatch) -> None:
    cleanup = _broken_configuration(monkeypatch)
    service = LedgerService(backend=USBHIDBackend(), authority=FakeAuthority(), config=make_config())

    result = service.genuine_check()

    assert result.state is TransactionState.FAILED
    assert isinstance(result.error, TransportConnectError)
    assert cleanup == ["release", "dispose"]


def test_read_timeout_is_transport_timeout() -> None:
    def timed_out(size, timeout):
        raise usb.core.USBTimeoutError("Operation timed out", errno=errno.ETIMEDOUT)

    endpoint_in = SimpleNamespace(read=timed_out)
    transport = USBHIDTransport(SimpleNamespace(), endpoint_in, SimpleNamespace())

    with pytest.raises(TransportTimeoutError):
        transport.read(timeout_s=0.1)


def test_close_is_idempotent(monkeypatch: pytest.MonkeyPatch) -> None:
    released: list[int] = []
    monkeypatch.setattr(usb_hid.usb.util, "release_interface", lambda device, interface: released.append(interface))
    monkeypatch.setattr(usb_hid.usb.util, "dispose_resources", lambda device: None)
    transport = USBHIDTransport(SimpleNamespace(), SimpleNamespace(), SimpleNamespace())

    transport.close()
    transport.close()

    assert released == [usb_hid.HID_INTERFACE]
