"""Typer CLI entrypoint."""

from __future__ import annotations

import logging

import typer

from ledgerctl.core.device_match import model_for_product
from ledgerctl.core.errors import LedgerctlError
from ledgerctl.core.model import Transaction, TransactionResult, TransactionState
from ledgerctl.core.service import LedgerService

app = typer.Typer(help="Provision and verify Ledger signing devices without Ledger Live")

_TESTNET_OPTION = typer.Option(
    False,
    "--testnet",
    envvar="LEDGER_TESTNET",
    help="Target the test network app and authority",
)
_DEVICE_OPTION = typer.Option(None, "--device", help="USB path (bus:address) or model name")

_STATE_MESSAGES = {
    TransactionState.LISTING: "Querying installed applications. You might have to confirm on your device.",
    TransactionState.CHALLENGE_REQUESTED: "Requesting a challenge from the device.",
    TransactionState.ATTESTATION_FETCHED: "Querying the provisioning authority to perform the genuine check.",
    TransactionState.MANIFEST_REQUESTED: "Requesting the install manifest from the provisioning authority.",
    TransactionState.DELETING: "Removing the previous app. Confirm on your device.",
    TransactionState.LOADING: "Installing. Allow the manager on your device.",
    TransactionState.VERIFYING: "Verifying the installed app.",
    TransactionState.OPENING: "Opening the app. Confirm on your device.",
}


def _build_service() -> LedgerService:
    service = LedgerService()
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


def _on_state(txn: Transaction) -> None:
    message = _STATE_MESSAGES.get(txn.state)
    if message:
        typer.echo(message)


def _finish(result: TransactionResult, success: str) -> None:
    if result.ok:
        typer.echo(success)
        return
    where = f" during {result.failed_at.value}" if result.failed_at else ""
    typer.echo(f"Error{where}: {result.error}", err=True)
    raise typer.Exit(code=1)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@app.command("devices")
def list_devices() -> None:
    """List connected Ledger devices."""
    try:
        service = _build_service()
        devices = service.list_devices()
        if not devices:
            typer.echo("No Ledger device found")
            return

        for device in devices:
            model = model_for_product(device.product_id) or "<unknown-model>"
            typer.echo(f"{device.path} {device.product} ({model}) {device.vendor_id:04x}:{device.product_id:04x}")
    except LedgerctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("info")
def device_info(device: str | None = _DEVICE_OPTION) -> None:
    """Show firmware information and installed applications."""
    try:
        service = _build_service()
        typer.echo("Querying installed applications. You might have to confirm on your device.")
        info = service.device_info(device_hint=device)
        typer.echo(f"Model: {info.model}")
        typer.echo(f"Target id: {info.target_id:#010x}")
        typer.echo(f"Firmware: {info.firmware_version} (MCU {info.mcu_version})")
        if not info.apps:
            typer.echo("No applications installed")
            return
        typer.echo("Installed applications:")
        for installed in info.apps:
            typer.echo(f"  - {installed.name} {installed.version} ({installed.hash[:16]})")
    except LedgerctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("genuine-check")
def genuine_check(device: str | None = _DEVICE_OPTION) -> None:
    """Prove the device is a genuine, unmodified unit."""
    try:
        service = _build_service()
        result = service.genuine_check(device_hint=device, on_state=_on_state)
    except LedgerctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    _finish(result, "Success. Your Ledger is genuine.")


@app.command("install")
def install_app(
    testnet: bool = _TESTNET_OPTION,
    app_version: str | None = typer.Option(None, "--app-version", help="Version to install (default: latest)"),
    device: str | None = _DEVICE_OPTION,
) -> None:
    """Install the Bitcoin app."""
    try:
        service = _build_service()
        result = service.install_app(
            testnet=testnet,
            version=app_version,
            device_hint=device,
            on_state=_on_state,
        )
    except LedgerctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    if result.short_circuited and result.app is not None:
        _finish(result, f"{result.app.name} {result.app.version} is already installed.")
        return
    _finish(result, "Successfully installed the app.")


@app.command("update")
def update_app(
    testnet: bool = _TESTNET_OPTION,
    app_version: str | None = typer.Option(None, "--app-version", help="Version to update to (default: latest)"),
    device: str | None = _DEVICE_OPTION,
) -> None:
    """Update an installed Bitcoin app."""
    try:
        service = _build_service()
        result = service.update_app(
            testnet=testnet,
            version=app_version,
            device_hint=device,
            on_state=_on_state,
        )
    except LedgerctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    if result.short_circuited and result.app is not None:
        _finish(result, f"{result.app.name} {result.app.version} is already up to date.")
        return
    _finish(result, "Successfully updated the app.")


@app.command("open")
def open_app(
    testnet: bool = _TESTNET_OPTION,
    device: str | None = _DEVICE_OPTION,
) -> None:
    """Open the Bitcoin app on the device."""
    try:
        service = _build_service()
        result = service.open_app(testnet=testnet, device_hint=device, on_state=_on_state)
    except LedgerctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    _finish(result, "App opened.")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
