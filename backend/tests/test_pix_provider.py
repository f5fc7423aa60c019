import pytest

from tableside.errors import ProviderError
from tableside.services.pix_provider import StaticKeyPixProvider, crc16_ccitt, get_provider


def test_crc16_check_value():
    # CRC-16/CCITT-FALSE check value
    assert crc16_ccitt("123456789") == "29B1"


def test_payload_structure():
    provider = StaticKeyPixProvider("chave@loja.com", "RESTAURANTE", "SAO PAULO")
    charge = provider.create_charge(7, 4250)

    payload = charge.copy_paste_code
    assert payload.startswith("000201")
    assert "0014br.gov.bcb.pix" in payload
    assert "0114chave@loja.com" in payload
    assert "540542.50" in payload
    assert "5802BR" in payload
    assert payload[-8:-4] == "6304"
    assert payload[-4:] == crc16_ccitt(payload[:-4])
    assert charge.external_payment_id.startswith("pix_7_")
    assert charge.qr_code == payload


def test_charges_get_distinct_ids():
    provider = StaticKeyPixProvider("k", "R", "C")
    assert provider.create_charge(1, 100).external_payment_id != provider.create_charge(1, 100).external_payment_id


def test_long_merchant_fields_are_truncated():
    provider = StaticKeyPixProvider("k", "X" * 40, "Y" * 30)
    payload = provider.create_charge(1, 100).copy_paste_code
    assert "5925" + "X" * 25 in payload
    assert "6015" + "Y" * 15 in payload


@pytest.mark.parametrize("key,amount", [("", 100), ("k", 0)])
def test_refuses_unusable_charge(key, amount):
    with pytest.raises(ProviderError):
        StaticKeyPixProvider(key, "R", "C").create_charge(1, amount)


def test_app_provider_from_config(app):
    provider = get_provider()
    assert isinstance(provider, StaticKeyPixProvider)
    assert provider.pix_key == "pix@tableside.test"
