from __future__ import annotations

import pytest

from fakes import FakeBackend, FakeLedger
from ledgerctl.core.errors import DeviceBusy, DeviceNotFound, InvalidHandle, TransportTimeoutError
from ledgerctl.core.model import Command, DeviceInfo
from ledgerctl.core.session import TransportSession

GET_VERSION = Command(cla=0xE0, ins=0x01)


def test_open_unknown_path_raises_not_found() -> None:
    session = TransportSession(FakeBackend())
    with pytest.raises(DeviceNotFound):
        session.open("009:009")


def test_second_session_on_same_device_is_busy() -> None:
    backend = FakeBackend()
    with TransportSession(backend) as first:
        first.open("001:004")
        with pytest.raises(DeviceBusy):
            TransportSession(backend).open("001:004")

    # released on close
    with TransportSession(backend) as again:
        again.open("001:004")


def test_os_level_claim_failure_releases_path() -> None:
    backend = FakeBackend()
    backend.busy.add("001:004")
    with pytest.raises(DeviceBusy):
        TransportSession(backend).open("001:004")

    backend.busy.clear()
    with TransportSession(backend) as session:
        session.open("001:004")


def test_send_round_trip() -> None:
    with TransportSession(FakeBackend()) as session:
        handle = session.open("001:004")
        response = session.send(handle, GET_VERSION, timeout_s=1.0)
    assert response.sw == 0x9000
    assert response.data[:4] == (0x33100004).to_bytes(4, "big")


def test_closed_handle_is_invalid_and_close_is_idempotent() -> None:
    ledger = FakeLedger()
    session = TransportSession(FakeBackend({"001:004": ledger}))
    handle = session.open("001:004")
    session.close(handle)
    session.close(handle)

    assert ledger.closed
    with pytest.raises(InvalidHandle):
        session.send(handle, GET_VERSION, timeout_s=1.0)


def test_foreign_handle_is_rejected() -> None:
    backend = FakeBackend({"001:004": FakeLedger(), "001:005": FakeLedger()})
    with TransportSession(backend) as first, TransportSession(backend) as second:
        first.open("001:004")
        foreign = second.open("001:005")
        with pytest.raises(InvalidHandle):
            first.send(foreign, GET_VERSION, timeout_s=1.0)


def test_timeout_leaves_session_open() -> None:
    ledger = FakeLedger(timeout_on={0x01})
    with TransportSession(FakeBackend({"001:004": ledger})) as session:
        handle = session.open("001:004")
        with pytest.raises(TransportTimeoutError):
            session.send(handle, GET_VERSION, timeout_s=1.0)

        ledger.timeout_on.clear()
        assert session.send(handle, GET_VERSION, timeout_s=1.0).sw == 0x9000


def test_describe_keeps_ownership_token() -> None:
    with TransportSession(FakeBackend()) as session:
        handle = session.open("001:004")
        info = DeviceInfo(target_id=0x33100004, firmware_version="1.1.0", mcu_version="5.12")
        described = session.describe(handle, info)

        assert described.token == handle.token
        assert described.firmware_version == "1.1.0"
        assert described.target_id == 0x33100004
        assert session.send(described, GET_VERSION, timeout_s=1.0).sw == 0x9000
