"""Exclusive, synchronous command/response session with one device."""

from __future__ import annotations

import dataclasses
import logging
import secrets
import threading
import time

from ledgerctl.core import codec
from ledgerctl.core.errors import DeviceBusy, DeviceNotFound, InvalidHandle, TransportTimeoutError
from ledgerctl.core.model import Command, DetectedDevice, DeviceHandle, DeviceInfo, Response
from ledgerctl.transports.base import Transport, TransportBackend

LOGGER = logging.getLogger(__name__)

# Paths held by any session in this process.
_HELD_PATHS: set[str] = set()
_HELD_LOCK = threading.Lock()


def _acquire(path: str) -> None:
    with _HELD_LOCK:
        if path in _HELD_PATHS:
            raise DeviceBusy(f"Device {path} is already held by another session")
        _HELD_PATHS.add(path)


def _release(path: str) -> None:
    with _HELD_LOCK:
        _HELD_PATHS.discard(path)


class TransportSession:
    """Owns one device at a time; every call must present the handle from ``open``."""

    def __init__(self, backend: TransportBackend) -> None:
        self._backend = backend
        self._transport: Transport | None = None
        self._handle: DeviceHandle | None = None
        self._io_lock = threading.Lock()

    def __enter__(self) -> TransportSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._handle is not None:
            self.close(self._handle)

    def open(self, path: str) -> DeviceHandle:
        if self._handle is not None:
            raise DeviceBusy(f"Session already holds {self._handle.path}; close it first")

        device = self._lookup(path)
        _acquire(path)
        try:
            transport = self._backend.open(device)
        except BaseException:
            _release(path)
            raise

        self._transport = transport
        self._handle = DeviceHandle(
            path=device.path,
            vendor_id=device.vendor_id,
            product_id=device.product_id,
            token=secrets.token_hex(16),
        )
        LOGGER.info("Opened device %s (%04x:%04x)", path, device.vendor_id, device.product_id)
        return self._handle

    def _lookup(self, path: str) -> DetectedDevice:
        for device in self._backend.enumerate():
            if device.path == path:
                return device
        raise DeviceNotFound(f"No supported device found at {path}")

    def _check(self, handle: DeviceHandle) -> Transport:
        if self._handle is None or self._transport is None:
            raise InvalidHandle(f"Session for {handle.path} is closed")
        if handle.token != self._handle.token:
            raise InvalidHandle(f"Handle for {handle.path} is not owned by this session")
        return self._transport

    def describe(self, handle: DeviceHandle, info: DeviceInfo) -> DeviceHandle:
        """Return ``handle`` annotated with the firmware metadata from ``info``."""
        self._check(handle)
        self._handle = dataclasses.replace(
            handle,
            firmware_version=info.firmware_version,
            target_id=info.target_id,
        )
        return self._handle

    def send(self, handle: DeviceHandle, command: Command, *, timeout_s: float) -> Response:
        """Write ``command`` and block until its response is complete.

        On ``TransportTimeoutError`` the session stays open but the outcome of
        the command is unknown.
        """
        transport = self._check(handle)
        with self._io_lock:
            deadline = time.monotonic() + timeout_s
            for packet in codec.encode(command):
                transport.write(packet, timeout_s=_remaining(deadline, command))

            reassembler = codec.Reassembler()
            while not reassembler.complete:
                reassembler.feed(transport.read(timeout_s=_remaining(deadline, command)))
            return codec.parse_response(reassembler.payload)

    def close(self, handle: DeviceHandle) -> None:
        if self._handle is None or handle.token != self._handle.token:
            return
        transport, self._transport = self._transport, None
        self._handle = None
        try:
            if transport is not None:
                transport.close()
        finally:
            _release(handle.path)
            LOGGER.info("Closed device %s", handle.path)


def _remaining(deadline: float, command: Command) -> float:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TransportTimeoutError(
            f"Timed out waiting for response to INS {command.ins:#04x}; outcome unknown"
        )
    return remaining
