"""USB identifier and target id matching for supported devices."""

from __future__ import annotations

from ledgerctl.core.model import DetectedDevice

LEDGER_VENDOR_ID = 0x2C97

# Product id high byte identifies the model; the low byte encodes the active
# USB interface mask and varies with the running application.
_PRODUCT_MODELS = {
    0x10: "Nano S",
    0x40: "Nano X",
    0x50: "Nano S Plus",
}

_TARGET_MODELS = {
    0x31100002: "Nano S",
    0x31100003: "Nano S",
    0x31100004: "Nano S",
    0x33000004: "Nano X",
    0x33100004: "Nano S Plus",
}


def model_for_product(product_id: int) -> str | None:
    return _PRODUCT_MODELS.get(product_id >> 8)


def model_for_target(target_id: int) -> str:
    return _TARGET_MODELS.get(target_id, "Unknown")


def is_supported(device: DetectedDevice, *, vendor_id: int = LEDGER_VENDOR_ID) -> bool:
    return device.vendor_id == vendor_id and model_for_product(device.product_id) is not None


def matches_hint(device: DetectedDevice, hint: str) -> bool:
    lowered = hint.lower()
    model = model_for_product(device.product_id) or ""
    return (
        device.path.lower() == lowered
        or lowered in device.product.lower()
        or lowered in model.lower()
    )
