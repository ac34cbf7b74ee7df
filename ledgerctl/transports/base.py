"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol

from ledgerctl.core.model import DetectedDevice


class Transport(Protocol):
    def write(self, packet: bytes, *, timeout_s: float) -> None:
        """Write one fixed-size packet to the device."""

    def read(self, *, timeout_s: float) -> bytes:
        """Read one packet, raising TransportTimeoutError when none arrives in time."""

    def close(self) -> None:
        """Release the underlying device."""


class TransportBackend(Protocol):
    def enumerate(self) -> list[DetectedDevice]:
        """List connected devices of the supported family."""

    def open(self, device: DetectedDevice) -> Transport:
        """Open exclusive access to ``device``."""
