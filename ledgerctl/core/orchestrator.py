"""Provisioning transactions: genuine check, app install/update and app open.

All transactions run through one runner that sequences the same skeleton:
inspect the device, obtain a challenge, fetch the authority's artifact for it,
apply the artifact on the device, then verify. Each transaction kind supplies
its own step implementations. Device and authority calls strictly alternate,
and nothing is retried here: transient network retries live in the authority
client, and a failed device step ends the transaction.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from ledgerctl.core.authority import AuthorityClient
from ledgerctl.core.commands import DeviceCommands
from ledgerctl.core.errors import (
    AppNotFound,
    DeviceBusy,
    LedgerctlError,
    TransactionCancelled,
    VerificationFailed,
)
from ledgerctl.core.model import (
    AppInfo,
    Challenge,
    ChallengeContext,
    DeviceIdentity,
    Manifest,
    Transaction,
    TransactionKind,
    TransactionResult,
    TransactionState,
)

StateCallback = Callable[[Transaction], None]
LOGGER = logging.getLogger(__name__)

_ACTIVE_HANDLES: set[str] = set()
_ACTIVE_LOCK = threading.Lock()


def _major(version: str) -> str:
    return version.strip().lstrip("vV").split(".", 1)[0]


class _Flow:
    kind: TransactionKind
    # Challenge context to request and the state entered while doing so.
    challenge_step: tuple[ChallengeContext, TransactionState] | None = None

    def __init__(self, orchestrator: ProvisioningOrchestrator) -> None:
        self.orchestrator = orchestrator
        self.commands = orchestrator.commands
        self.authority = orchestrator.authority

    def enter(self, txn: Transaction, state: TransactionState) -> None:
        self.orchestrator._enter(txn, state)

    def inspect(self, txn: Transaction) -> TransactionState | None:
        """Read device state; return a terminal state to finish early."""
        raise NotImplementedError

    def fetch(self, txn: Transaction, challenge: Challenge) -> None:
        """Obtain the authority artifact bound to ``challenge``."""

    def apply(self, txn: Transaction) -> None:
        raise NotImplementedError

    def verify(self, txn: Transaction) -> TransactionState:
        raise NotImplementedError


class _GenuineCheckFlow(_Flow):
    kind = TransactionKind.GENUINE_CHECK
    challenge_step = (ChallengeContext.GENUINE_CHECK, TransactionState.CHALLENGE_REQUESTED)

    _identity: DeviceIdentity
    _challenge: Challenge
    _attestation: bytes

    def inspect(self, txn: Transaction) -> TransactionState | None:
        txn.info = self.commands.get_info()
        self._identity = txn.info.identity
        return None

    def fetch(self, txn: Transaction, challenge: Challenge) -> None:
        self.enter(txn, TransactionState.ATTESTATION_FETCHED)
        self._challenge = challenge
        self._attestation = self.authority.request_attestation(self._identity, challenge)

    def apply(self, txn: Transaction) -> None:
        self.commands.genuine_check(self._challenge, self._attestation)

    def verify(self, txn: Transaction) -> TransactionState:
        return TransactionState.VERIFIED


class _AppInstallFlow(_Flow):
    kind = TransactionKind.INSTALL
    challenge_step = (ChallengeContext.INSTALL, TransactionState.MANIFEST_REQUESTED)

    _identity: DeviceIdentity
    _version: str
    _manifest: Manifest

    def __init__(
        self,
        orchestrator: ProvisioningOrchestrator,
        app_name: str,
        version: str | None,
        *,
        require_installed: bool,
    ) -> None:
        super().__init__(orchestrator)
        self.app_name = app_name
        self.requested_version = version
        self.require_installed = require_installed
        self._expected_hash: str | None = None
        self._replace: AppInfo | None = None

    def inspect(self, txn: Transaction) -> TransactionState | None:
        self.enter(txn, TransactionState.LISTING)
        info = self.commands.get_info()
        txn.info = info
        self._identity = info.identity
        existing = info.find_app(self.app_name)
        if self.require_installed and existing is None:
            raise AppNotFound(f"{self.app_name} is not installed; use install instead")

        if self.requested_version is None:
            release = self.authority.latest_release(info.identity, self.app_name)
            self._version = release.version
            self._expected_hash = release.hash
            LOGGER.info("Latest %s release for %s is %s", self.app_name, info.model, release.version)
        else:
            self._version = self.requested_version

        if existing is None:
            return None

        if existing.version == self._version and self._expected_hash in (None, existing.hash.lower()):
            LOGGER.info("%s %s is already installed", existing.name, existing.version)
            txn.app = existing
            return TransactionState.INSTALLED

        txn.kind = TransactionKind.UPDATE
        if _major(existing.version) != _major(self._version):
            self._replace = existing
        return None

    def fetch(self, txn: Transaction, challenge: Challenge) -> None:
        self._manifest = self.authority.request_install_manifest(
            self._identity,
            self.app_name,
            self._version,
            challenge,
        )
        txn.manifest = self._manifest

    def apply(self, txn: Transaction) -> None:
        if self._replace is not None:
            self.enter(txn, TransactionState.DELETING)
            self.commands.delete_app(self._replace.name)

        self.enter(txn, TransactionState.LOADING)
        total = len(self._manifest.blocks)
        for index, block in enumerate(self._manifest.blocks, start=1):
            LOGGER.debug("Loading block %d/%d (%d bytes)", index, total, len(block))
            self.commands.install_app(block)

    def verify(self, txn: Transaction) -> TransactionState:
        self.enter(txn, TransactionState.VERIFYING)
        info = self.commands.get_info()
        txn.info = info
        app = info.find_app(self.app_name)
        if app is None:
            raise VerificationFailed(f"{self.app_name} is missing from the device after loading")
        if app.version != self._version:
            raise VerificationFailed(
                f"{self.app_name} reports version {app.version}, expected {self._version}"
            )
        if app.hash.lower() != self._manifest.hash:
            raise VerificationFailed(
                f"{self.app_name} hash {app.hash} does not match manifest hash {self._manifest.hash}"
            )
        txn.app = app
        return TransactionState.INSTALLED


class _OpenAppFlow(_Flow):
    kind = TransactionKind.OPEN

    _app: AppInfo

    def __init__(self, orchestrator: ProvisioningOrchestrator, app_name: str) -> None:
        super().__init__(orchestrator)
        self.app_name = app_name

    def inspect(self, txn: Transaction) -> TransactionState | None:
        self.enter(txn, TransactionState.LISTING)
        txn.info = self.commands.get_info()
        app = txn.info.find_app(self.app_name)
        if app is None:
            raise AppNotFound(f"{self.app_name} is not installed on the device")
        self._app = txn.app = app
        return None

    def apply(self, txn: Transaction) -> None:
        self.enter(txn, TransactionState.OPENING)
        self.commands.open_app(self._app.name)

    def verify(self, txn: Transaction) -> TransactionState:
        return TransactionState.OPENED


class ProvisioningOrchestrator:
    def __init__(
        self,
        commands: DeviceCommands,
        authority: AuthorityClient,
        *,
        on_state: StateCallback | None = None,
    ) -> None:
        self.commands = commands
        self.authority = authority
        self.on_state = on_state

    def genuine_check(self, *, cancel: threading.Event | None = None) -> TransactionResult:
        return self._run(_GenuineCheckFlow(self), cancel)

    def install(
        self,
        app_name: str,
        version: str | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> TransactionResult:
        return self._run(_AppInstallFlow(self, app_name, version, require_installed=False), cancel)

    def update(
        self,
        app_name: str,
        version: str | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> TransactionResult:
        flow = _AppInstallFlow(self, app_name, version, require_installed=True)
        flow.kind = TransactionKind.UPDATE
        return self._run(flow, cancel)

    def open_app(self, app_name: str, *, cancel: threading.Event | None = None) -> TransactionResult:
        return self._run(_OpenAppFlow(self, app_name), cancel)

    def _enter(self, txn: Transaction, state: TransactionState) -> None:
        txn.advance(state)
        LOGGER.info("%s transaction on %s -> %s", txn.kind.value, txn.handle.path, state.value)
        if self.on_state is not None:
            self.on_state(txn)

    def _checkpoint(self, cancel: threading.Event | None, txn: Transaction) -> None:
        if cancel is not None and cancel.is_set():
            raise TransactionCancelled(f"{txn.kind.value} transaction cancelled in {txn.state.value}")

    def _steps(self, flow: _Flow, txn: Transaction, cancel: threading.Event | None) -> TransactionState:
        self._checkpoint(cancel, txn)
        terminal = flow.inspect(txn)
        if terminal is not None:
            txn.short_circuited = True
            return terminal

        if flow.challenge_step is not None:
            context, state = flow.challenge_step
            self._checkpoint(cancel, txn)
            self._enter(txn, state)
            challenge = self.commands.get_challenge(context)
            txn.challenge = challenge
            self._checkpoint(cancel, txn)
            flow.fetch(txn, challenge)

        # Past this point device-confirmed steps may be issued; no cancellation.
        self._checkpoint(cancel, txn)
        flow.apply(txn)
        return flow.verify(txn)

    def _run(self, flow: _Flow, cancel: threading.Event | None) -> TransactionResult:
        handle = self.commands.handle
        txn = Transaction(kind=flow.kind, handle=handle)
        error: LedgerctlError | None = None

        with _ACTIVE_LOCK:
            busy = handle.token in _ACTIVE_HANDLES
            if not busy:
                _ACTIVE_HANDLES.add(handle.token)

        if busy:
            error = DeviceBusy(f"A transaction is already active on {handle.path}")
            self._enter(txn, TransactionState.FAILED)
        else:
            try:
                self._enter(txn, self._steps(flow, txn, cancel))
            except LedgerctlError as exc:
                error = exc
                LOGGER.warning(
                    "%s transaction on %s failed in %s: %s",
                    txn.kind.value,
                    handle.path,
                    txn.state.value,
                    exc,
                )
                self._enter(txn, TransactionState.FAILED)
            finally:
                with _ACTIVE_LOCK:
                    _ACTIVE_HANDLES.discard(handle.token)

        return TransactionResult(
            kind=txn.kind,
            state=txn.state,
            history=tuple(txn.history),
            error=error,
            info=txn.info,
            app=txn.app,
            short_circuited=txn.short_circuited,
        )
