"""Closed set of status words returned by the device dashboard.

Codes that are not listed here parse to ``StatusWord.UNKNOWN`` and are always
classified as protocol errors.
"""

from __future__ import annotations

from enum import Enum

from ledgerctl.core.errors import (
    AppNotFound,
    AttestationFailed,
    DeviceLocked,
    LedgerctlError,
    ProtocolError,
    UserRejected,
)
from ledgerctl.core.model import Response


class StatusWord(Enum):
    OK = 0x9000
    USER_REFUSED = 0x5501
    DEVICE_LOCKED = 0x5515
    APP_NOT_FOUND = 0x6807
    WRONG_LENGTH = 0x6700
    SECURITY_STATUS_NOT_SATISFIED = 0x6982
    CONDITIONS_NOT_SATISFIED = 0x6985
    INVALID_DATA = 0x6A80
    SIGNATURE_REJECTED = 0x6A8A
    NOT_ENOUGH_MEMORY = 0x6A84
    INCORRECT_PARAMETERS = 0x6B00
    INS_NOT_SUPPORTED = 0x6D00
    CLA_NOT_SUPPORTED = 0x6E00
    UNKNOWN = -1

    @classmethod
    def parse(cls, sw: int) -> StatusWord:
        try:
            status = cls(sw)
        except ValueError:
            return cls.UNKNOWN
        return status


_USER_REJECTION = frozenset({StatusWord.USER_REFUSED, StatusWord.CONDITIONS_NOT_SATISFIED})


def classify(
    response: Response,
    operation: str,
    *,
    overrides: dict[StatusWord, type[LedgerctlError]] | None = None,
) -> Response:
    """Return ``response`` if it succeeded, otherwise raise the matching error.

    ``overrides`` maps operation-specific status words onto error types and is
    consulted before the shared rules.
    """
    status = response.status
    if status is StatusWord.OK:
        return response

    label = f"{status.name} ({response.sw:#06x})"
    if overrides and status in overrides:
        error_cls = overrides[status]
        if issubclass(error_cls, ProtocolError):
            raise error_cls(f"{operation} failed: {label}", sw=response.sw)
        raise error_cls(f"{operation} failed: {label}")
    if status in _USER_REJECTION:
        raise UserRejected(f"{operation} was rejected on the device: {label}")
    if status is StatusWord.DEVICE_LOCKED:
        raise DeviceLocked(f"{operation} failed: device is locked. Is the Ledger unlocked?", sw=response.sw)
    if status is StatusWord.APP_NOT_FOUND:
        raise AppNotFound(f"{operation} failed: application not found on the device")
    raise ProtocolError(f"{operation} failed with status {label}", sw=response.sw)


GENUINE_CHECK_OVERRIDES: dict[StatusWord, type[LedgerctlError]] = {
    StatusWord.SIGNATURE_REJECTED: AttestationFailed,
    StatusWord.SECURITY_STATUS_NOT_SATISFIED: AttestationFailed,
}
