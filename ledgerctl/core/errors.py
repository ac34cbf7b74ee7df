"""Domain-specific errors for ledgerctl."""

from __future__ import annotations


class LedgerctlError(Exception):
    """Base error for ledgerctl."""


class ConfigError(LedgerctlError):
    """Raised when a configuration file does not conform to schema or semantics."""


class DeviceDiscoveryError(LedgerctlError):
    """Raised when USB enumeration itself fails."""


class DeviceSelectionError(LedgerctlError):
    """Raised when enumeration cannot resolve a single target device."""


class DeviceNotFound(LedgerctlError):
    """Raised when no enumerated device matches the requested path."""


class DeviceBusy(LedgerctlError):
    """Raised when another session or transaction already holds the device."""


class InvalidHandle(LedgerctlError):
    """Raised when a handle is closed or not owned by the session it is used with."""


class TransportError(LedgerctlError):
    """Base transport error: malformed packets, sequence gaps, I/O failures."""


class TransportConnectError(TransportError):
    """Raised when the USB interface cannot be opened or claimed."""


class TransportTimeoutError(TransportError):
    """Raised when a response is not fully received before the deadline.

    The command may or may not have been executed by the device.
    """


class ProtocolError(LedgerctlError):
    """Raised on unrecognized status words or malformed response payloads."""

    def __init__(self, message: str, *, sw: int | None = None) -> None:
        super().__init__(message)
        self.sw = sw


class DeviceLocked(ProtocolError):
    """Raised when the device refuses commands until it is unlocked with its PIN."""


class UserRejected(LedgerctlError):
    """Raised when the user declines the on-device confirmation prompt."""


class AppNotFound(LedgerctlError):
    """Raised when the requested application is not installed on the device."""


class AttestationFailed(LedgerctlError):
    """Raised when the device does not accept the genuine-check attestation."""


class ManifestRequestFailed(LedgerctlError):
    """Raised when the authority refuses a request or retries are exhausted."""

    def __init__(self, message: str, *, retryable: bool = False, attempts: int = 1) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.attempts = attempts


class VerificationFailed(LedgerctlError):
    """Raised when the post-install app list does not show the expected app."""


class TransactionCancelled(LedgerctlError):
    """Raised when the caller abandons a transaction between steps."""
