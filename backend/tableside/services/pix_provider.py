"""PIX payment provider interface and the static-key mock used by default."""

from __future__ import annotations

import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass

from flask import current_app

from ..errors import ProviderError


@dataclass
class PixCharge:
    """Payable reference handed back by a provider."""

    external_payment_id: str
    pix_key: str
    copy_paste_code: str
    qr_code: str


class PixProvider(ABC):
    """A provider mints a payable reference now and calls the webhook later."""

    @abstractmethod
    def create_charge(self, payment_id: int, amount_cents: int) -> PixCharge:
        """
        Register a charge with the provider.

        Raises:
            ProviderError: If the provider cannot issue a charge
        """


def _emv_field(field_id: str, value: str) -> str:
    return f"{field_id}{len(value):02d}{value}"


def crc16_ccitt(payload: str) -> str:
    """CRC16/CCITT-FALSE as required by the BR Code spec, 4 uppercase hex digits."""
    crc = 0xFFFF
    for byte in payload.encode("utf-8"):
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return f"{crc:04X}"


class StaticKeyPixProvider(PixProvider):
    """
    Offline provider: builds a static BR Code for the restaurant's PIX key.

    No network call is made; confirmation arrives through the webhook like any
    real provider. The QR image itself is rendered by the client from
    `qr_code` (the same payload as the copy-paste code).
    """

    def __init__(self, pix_key: str, merchant_name: str, merchant_city: str):
        self.pix_key = pix_key
        self.merchant_name = merchant_name
        self.merchant_city = merchant_city

    def create_charge(self, payment_id: int, amount_cents: int) -> PixCharge:
        if not self.pix_key:
            raise ProviderError("PIX key is not configured")
        if amount_cents <= 0:
            raise ProviderError("PIX charge amount must be positive")

        external_id = f"pix_{payment_id}_{secrets.token_hex(8)}"
        txid = external_id.replace("_", "").upper()[:25]

        account = _emv_field("00", "br.gov.bcb.pix") + _emv_field("01", self.pix_key)
        payload = "".join([
            _emv_field("00", "01"),
            _emv_field("26", account),
            _emv_field("52", "0000"),
            _emv_field("53", "986"),
            _emv_field("54", f"{amount_cents // 100}.{amount_cents % 100:02d}"),
            _emv_field("58", "BR"),
            _emv_field("59", self.merchant_name[:25]),
            _emv_field("60", self.merchant_city[:15]),
            _emv_field("62", _emv_field("05", txid)),
            "6304",
        ])
        payload += crc16_ccitt(payload)

        return PixCharge(
            external_payment_id=external_id,
            pix_key=self.pix_key,
            copy_paste_code=payload,
            qr_code=payload,
        )


def get_provider() -> PixProvider:
    """Provider for the current app; tests may install one at extensions["pix_provider"]."""
    provider = current_app.extensions.get("pix_provider")
    if provider is not None:
        return provider
    return StaticKeyPixProvider(
        pix_key=current_app.config["PIX_KEY"],
        merchant_name=current_app.config["PIX_MERCHANT_NAME"],
        merchant_city=current_app.config["PIX_MERCHANT_CITY"],
    )
