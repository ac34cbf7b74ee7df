"""Stable public API for building tooling on top of ledgerctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import threading

from ledgerctl.core.authority import AuthorityClient
from ledgerctl.core.errors import (
    AppNotFound,
    AttestationFailed,
    ConfigError,
    DeviceBusy,
    DeviceDiscoveryError,
    DeviceLocked,
    DeviceNotFound,
    DeviceSelectionError,
    InvalidHandle,
    LedgerctlError,
    ManifestRequestFailed,
    ProtocolError,
    TransactionCancelled,
    TransportConnectError,
    TransportError,
    TransportTimeoutError,
    UserRejected,
    VerificationFailed,
)
from ledgerctl.core.config import LedgerctlConfig
from ledgerctl.core.model import (
    AppInfo,
    DetectedDevice,
    DeviceInfo,
    TransactionKind,
    TransactionResult,
    TransactionState,
)
from ledgerctl.core.orchestrator import StateCallback
from ledgerctl.core.service import LedgerService
from ledgerctl.transports.base import TransportBackend

__all__ = [
    "AppNotFound",
    "AttestationFailed",
    "ConfigError",
    "DeviceBusy",
    "DeviceDiscoveryError",
    "DeviceLocked",
    "DeviceNotFound",
    "DeviceSelectionError",
    "InvalidHandle",
    "LedgerctlError",
    "ManifestRequestFailed",
    "ProtocolError",
    "TransactionCancelled",
    "TransportConnectError",
    "TransportError",
    "TransportTimeoutError",
    "UserRejected",
    "VerificationFailed",
    "AppInfo",
    "DetectedDevice",
    "DeviceInfo",
    "TransactionKind",
    "TransactionResult",
    "TransactionState",
    "Client",
]


class Client:
    """Public client for interacting with ledgerctl core capabilities.

    A `Client` instance wraps configuration loading, USB discovery and the
    provisioning transactions behind a stable API intended for third-party
    tools (GUI/TUI/services/scripts). Transactions never raise for device or
    authority failures; inspect `TransactionResult.error` instead.
    """

    def __init__(
        self,
        *,
        backend: TransportBackend | None = None,
        authority: AuthorityClient | None = None,
        config: LedgerctlConfig | None = None,
    ) -> None:
        self._service = LedgerService(backend=backend, authority=authority, config=config)

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    def list_devices(self) -> list[DetectedDevice]:
        return self._service.list_devices()

    def resolve_target(self, *, device_hint: str | None = None) -> DetectedDevice:
        return self._service.resolve_target(device_hint)

    def get_device_info(self, *, device_hint: str | None = None) -> DeviceInfo:
        return self._service.device_info(device_hint)

    def genuine_check(
        self,
        *,
        device_hint: str | None = None,
        on_state: StateCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> TransactionResult:
        return self._service.genuine_check(device_hint=device_hint, on_state=on_state, cancel=cancel)

    def install_app(
        self,
        *,
        testnet: bool = False,
        version: str | None = None,
        device_hint: str | None = None,
        on_state: StateCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> TransactionResult:
        return self._service.install_app(
            testnet=testnet,
            version=version,
            device_hint=device_hint,
            on_state=on_state,
            cancel=cancel,
        )

    def update_app(
        self,
        *,
        testnet: bool = False,
        version: str | None = None,
        device_hint: str | None = None,
        on_state: StateCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> TransactionResult:
        return self._service.update_app(
            testnet=testnet,
            version=version,
            device_hint=device_hint,
            on_state=on_state,
            cancel=cancel,
        )

    def open_app(
        self,
        *,
        testnet: bool = False,
        device_hint: str | None = None,
        on_state: StateCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> TransactionResult:
        return self._service.open_app(
            testnet=testnet,
            device_hint=device_hint,
            on_state=on_state,
            cancel=cancel,
        )
