from ledgerctl.core.device_match import is_supported, matches_hint, model_for_product, model_for_target
from ledgerctl.core.model import DetectedDevice


def _device(product_id: int, *, vendor_id: int = 0x2C97, product: str = "Nano S Plus") -> DetectedDevice:
    return DetectedDevice(path="003:012", vendor_id=vendor_id, product_id=product_id, product=product)


def test_model_from_product_id_ignores_interface_mask() -> None:
    assert model_for_product(0x5011) == "Nano S Plus"
    assert model_for_product(0x5000) == "Nano S Plus"
    assert model_for_product(0x4015) == "Nano X"
    assert model_for_product(0x1011) == "Nano S"
    assert model_for_product(0x0001) is None


def test_model_from_target_id() -> None:
    assert model_for_target(0x33100004) == "Nano S Plus"
    assert model_for_target(0x31100004) == "Nano S"
    assert model_for_target(0x12345678) == "Unknown"


def test_only_known_ledger_products_are_supported() -> None:
    assert is_supported(_device(0x5011))
    assert not is_supported(_device(0x5011, vendor_id=0x1209))
    assert not is_supported(_device(0x0001))


def test_hint_matches_path_product_or_model() -> None:
    device = _device(0x4011, product="Ledger Nano X")
    assert matches_hint(device, "003:012")
    assert matches_hint(device, "nano x")
    assert matches_hint(device, "LEDGER")
    assert not matches_hint(device, "003:01")
    assert not matches_hint(device, "Nano S")
