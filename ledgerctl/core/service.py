"""Service layer used by CLI and future UI frontends."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from ledgerctl.core.authority import AuthorityClient
from ledgerctl.core.commands import DeviceCommands
from ledgerctl.core.config import LedgerctlConfig, load_config
from ledgerctl.core.device_match import matches_hint, model_for_product
from ledgerctl.core.errors import DeviceSelectionError, LedgerctlError
from ledgerctl.core.model import (
    DetectedDevice,
    DeviceInfo,
    TransactionKind,
    TransactionResult,
    TransactionState,
)
from ledgerctl.core.orchestrator import ProvisioningOrchestrator, StateCallback
from ledgerctl.core.session import TransportSession
from ledgerctl.transports.base import TransportBackend
from ledgerctl.transports.usb_hid import USBHIDBackend

LOGGER = logging.getLogger(__name__)


class LedgerService:
    def __init__(
        self,
        *,
        backend: TransportBackend | None = None,
        authority: AuthorityClient | None = None,
        config: LedgerctlConfig | None = None,
    ) -> None:
        self.config = config or load_config()
        self.load_warnings = self.config.warnings
        self.backend = backend or USBHIDBackend(vendor_id=self.config.device.vendor_id)
        self._authority = authority

    def list_devices(self) -> list[DetectedDevice]:
        return self.backend.enumerate()

    def resolve_target(self, device_hint: str | None = None) -> DetectedDevice:
        devices = self.list_devices()
        if not devices:
            raise DeviceSelectionError("No Ledger device found. Ensure it is connected and unlocked.")

        candidates = devices
        if device_hint:
            candidates = [d for d in devices if matches_hint(d, device_hint)]
            if not candidates:
                raise DeviceSelectionError(f"No device found matching '{device_hint}'")

        if len(candidates) > 1:
            candidate_desc = ", ".join(
                f"{d.path} ({model_for_product(d.product_id) or d.product})" for d in candidates
            )
            raise DeviceSelectionError(
                f"Multiple candidate devices found: {candidate_desc}. Use --device to choose one."
            )
        return candidates[0]

    def authority(self, testnet: bool) -> AuthorityClient:
        if self._authority is not None:
            return self._authority
        return AuthorityClient(self.config.authority_for(testnet))

    def app_name(self, testnet: bool) -> str:
        return self.config.network(testnet).app

    @contextmanager
    def connect(self, device_hint: str | None = None) -> Iterator[DeviceCommands]:
        device = self.resolve_target(device_hint)
        with TransportSession(self.backend) as session:
            handle = session.open(device.path)
            yield DeviceCommands(
                session,
                handle,
                timeout_s=self.config.device.timeout_s,
                confirm_timeout_s=self.config.device.confirm_timeout_s,
            )

    def device_info(self, device_hint: str | None = None) -> DeviceInfo:
        with self.connect(device_hint) as commands:
            return commands.get_info()

    def _transaction(
        self,
        kind: TransactionKind,
        device_hint: str | None,
        testnet: bool,
        on_state: StateCallback | None,
        run: Callable[[ProvisioningOrchestrator], TransactionResult],
    ) -> TransactionResult:
        try:
            with self.connect(device_hint) as commands:
                orchestrator = ProvisioningOrchestrator(
                    commands,
                    self.authority(testnet),
                    on_state=on_state,
                )
                return run(orchestrator)
        except LedgerctlError as exc:
            # Failures while obtaining the handle still end in a failed transaction.
            LOGGER.warning("%s transaction could not start: %s", kind.value, exc)
            return TransactionResult(
                kind=kind,
                state=TransactionState.FAILED,
                history=(TransactionState.START, TransactionState.FAILED),
                error=exc,
            )

    def genuine_check(
        self,
        *,
        device_hint: str | None = None,
        on_state: StateCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> TransactionResult:
        return self._transaction(
            TransactionKind.GENUINE_CHECK,
            device_hint,
            False,
            on_state,
            lambda orchestrator: orchestrator.genuine_check(cancel=cancel),
        )

    def install_app(
        self,
        *,
        testnet: bool = False,
        version: str | None = None,
        device_hint: str | None = None,
        on_state: StateCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> TransactionResult:
        app = self.app_name(testnet)
        return self._transaction(
            TransactionKind.INSTALL,
            device_hint,
            testnet,
            on_state,
            lambda orchestrator: orchestrator.install(app, version, cancel=cancel),
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
        app = self.app_name(testnet)
        return self._transaction(
            TransactionKind.UPDATE,
            device_hint,
            testnet,
            on_state,
            lambda orchestrator: orchestrator.update(app, version, cancel=cancel),
        )

    def open_app(
        self,
        *,
        testnet: bool = False,
        device_hint: str | None = None,
        on_state: StateCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> TransactionResult:
        app = self.app_name(testnet)
        return self._transaction(
            TransactionKind.OPEN,
            device_hint,
            testnet,
            on_state,
            lambda orchestrator: orchestrator.open_app(app, cancel=cancel),
        )
