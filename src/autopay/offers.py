"""
x402 payment offers.

A 402 response lists one or more offers either in the X-Accept-Payment
header or in a JSON body. Offer fields appear under two naming schemes
(chainId/network, tokenAddress/asset, amount/maxAmountRequired,
receiverAddress/payTo); both are folded into PaymentOffer once, here.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .errors import MissingPaymentDetails
from .networks import ESTIMATED_FEE_LAMPORTS

logger = logging.getLogger(__name__)

ACCEPT_PAYMENT_HEADER = "X-Accept-Payment"
PAYMENT_HEADER = "X-Payment"

_FIELD_ALIASES = {
    "network": ("network", "chainId"),
    "asset": ("asset", "tokenAddress"),
    "amount": ("maxAmountRequired", "amount"),
    "recipient": ("payTo", "receiverAddress", "recipient"),
}


def _first(raw: Mapping[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        value = raw.get(name)
        if value not in (None, ""):
            return value
    return None


@dataclass(frozen=True)
class PaymentOffer:
    """One acceptable way to settle a 402 response."""

    network: str
    asset: str
    amount: int
    recipient: str
    scheme: str = "exact"
    resource: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any]) -> "PaymentOffer":
        if not isinstance(raw, Mapping):
            raise ValueError("Payment offer must be an object")
        values = {key: _first(raw, names) for key, names in _FIELD_ALIASES.items()}
        missing = [key for key, value in values.items() if value is None]
        if missing:
            raise ValueError(f"Payment offer missing fields: {', '.join(missing)}")

        amount_raw = values["amount"]
        if isinstance(amount_raw, bool) or isinstance(amount_raw, float):
            raise ValueError(f"Offer amount must be integer base units, got {amount_raw!r}")
        try:
            amount = int(str(amount_raw).strip())
        except ValueError as exc:
            raise ValueError(f"Offer amount must be integer base units, got {amount_raw!r}") from exc
        if amount <= 0:
            raise ValueError(f"Offer amount must be positive, got {amount}")

        return cls(
            network=str(values["network"]),
            asset=str(values["asset"]),
            amount=amount,
            recipient=str(values["recipient"]),
            scheme=str(raw.get("scheme") or "exact"),
            resource=raw.get("resource"),
            description=raw.get("description"),
        )

    def to_dict(self) -> dict:
        return {
            "network": self.network,
            "asset": self.asset,
            "amount": str(self.amount),
            "recipient": self.recipient,
            "scheme": self.scheme,
            "resource": self.resource,
            "description": self.description,
        }


@dataclass(frozen=True)
class PaymentInstruction:
    """A resolved offer bound to the service it pays for."""

    offer: PaymentOffer
    service_id: str
    estimated_fee: int = ESTIMATED_FEE_LAMPORTS

    @property
    def recipient(self) -> str:
        return self.offer.recipient

    @property
    def amount(self) -> int:
        return self.offer.amount

    @property
    def asset(self) -> str:
        return self.offer.asset

    def to_dict(self) -> dict:
        return {
            "offer": self.offer.to_dict(),
            "service_id": self.service_id,
            "estimated_fee": str(self.estimated_fee),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PaymentInstruction":
        return cls(
            offer=PaymentOffer.from_wire(data["offer"]),
            service_id=data["service_id"],
            estimated_fee=int(data.get("estimated_fee", ESTIMATED_FEE_LAMPORTS)),
        )


def _offers_from_json(payload: Any) -> list[PaymentOffer]:
    if isinstance(payload, Mapping) and "accepts" in payload:
        payload = payload["accepts"]
    if isinstance(payload, Mapping):
        payload = [payload]
    if not isinstance(payload, list):
        return []
    offers = []
    for raw in payload:
        try:
            offers.append(PaymentOffer.from_wire(raw))
        except ValueError as exc:
            logger.debug("Skipping malformed payment offer: %s", exc)
    return offers


def _header_lookup(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, header_value in headers.items():
        if key.lower() == lowered:
            return header_value
    return None


def parse_payment_required(headers: Mapping[str, str], body: Any = None) -> list[PaymentOffer]:
    """
    Extract offers from a 402 response.

    The dedicated header wins; the body is only consulted when the header
    is absent or unparseable. Body may be raw text/bytes or decoded JSON.
    """
    header_value = _header_lookup(headers, ACCEPT_PAYMENT_HEADER)
    if header_value:
        try:
            offers = _offers_from_json(json.loads(header_value))
        except json.JSONDecodeError:
            logger.warning("Unparseable %s header", ACCEPT_PAYMENT_HEADER)
            offers = []
        if offers:
            return offers

    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body) if body else None
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = None
    offers = _offers_from_json(body) if body is not None else []
    if offers:
        return offers

    raise MissingPaymentDetails("402 response did not include payment offers")
