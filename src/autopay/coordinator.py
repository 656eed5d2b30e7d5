"""
Payment coordination on Solana.

Resolves a 402 offer for the configured network, hands the transfer to a
Signer after validating every untrusted field, and confirms settlement by
reading balance deltas out of the parsed transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional

from .audit import AuditTrail, EventType
from .errors import InvalidPaymentParameter, LedgerRpcError, NoMatchingOffer, PaymentExecutionFailed
from .ledger import SolanaRpcClient
from .money import base_units_to_decimal
from .networks import SolanaNetwork, asset_decimals, is_native_asset, resolve_network
from .offers import PaymentInstruction, PaymentOffer
from .signer import Signer
from .validation import is_valid_signature, validate_address, validate_amount, validate_asset

logger = logging.getLogger(__name__)


class TransactionStatus(str, Enum):
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    NOT_FOUND = "not_found"


@dataclass
class PaymentOutcome:
    """What the ledger says happened to one submitted payment."""

    signature: Optional[str]
    verified: bool = False
    amount: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "signature": self.signature,
            "verified": self.verified,
            "amount": str(self.amount) if self.amount is not None else None,
            "error": self.error,
        }


def _account_key(entry: Any) -> Optional[str]:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        return entry.get("pubkey")
    return None


def _token_amount(entry: dict) -> int:
    return int(entry["uiTokenAmount"]["amount"])


def _native_delta(tx: dict, recipient: str) -> Optional[int]:
    keys = [_account_key(k) for k in tx["transaction"]["message"]["accountKeys"]]
    if recipient not in keys:
        return None
    index = keys.index(recipient)
    meta = tx["meta"]
    return int(meta["postBalances"][index]) - int(meta["preBalances"][index])


def _token_delta(tx: dict, recipient: str, mint: str) -> Optional[int]:
    meta = tx["meta"]
    pre_by_index = {
        entry["accountIndex"]: entry for entry in meta.get("preTokenBalances") or []
    }
    deltas = []
    for post in meta.get("postTokenBalances") or []:
        if post.get("mint") != mint or post.get("owner") != recipient:
            continue
        pre = pre_by_index.get(post["accountIndex"])
        delta = _token_amount(post) - (_token_amount(pre) if pre else 0)
        if delta > 0:
            deltas.append(delta)
    if len(deltas) != 1:
        return None
    return deltas[0]


class PaymentCoordinator:
    """Resolve, execute and verify x402 payments on one Solana network."""

    def __init__(
        self,
        network: str | SolanaNetwork,
        rpc: Optional[SolanaRpcClient] = None,
        signer: Optional[Signer] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.network = resolve_network(network)
        self.rpc = rpc
        self.signer = signer
        self.audit = audit

    def resolve_offer(self, offers: Iterable[PaymentOffer], service_id: str) -> PaymentInstruction:
        offers = list(offers)
        for offer in offers:
            if self.network.matches(offer.network):
                return PaymentInstruction(offer=offer, service_id=service_id)
        raise NoMatchingOffer(self.network.caip2, [o.network for o in offers])

    def amount_decimal(self, offer: PaymentOffer) -> Decimal:
        """Offer amount in whole asset units."""
        return base_units_to_decimal(offer.amount, asset_decimals(self.network, offer.asset))

    async def execute_payment(self, offer: PaymentOffer, recipient: str) -> str:
        try:
            recipient = validate_address(recipient)
            asset = validate_asset(offer.asset)
            amount = validate_amount(offer.amount)
        except InvalidPaymentParameter as exc:
            if self.audit:
                self.audit.log(
                    EventType.SECURITY_REJECTED,
                    recipient=str(recipient),
                    success=False,
                    reason=str(exc),
                    details={"field": exc.field},
                )
            raise

        if self.signer is None:
            raise PaymentExecutionFailed("No signer configured")

        logger.info("Submitting payment of %s %s to %s", amount, asset, recipient)
        try:
            signature = await self.signer.submit(recipient, amount, asset)
        except PaymentExecutionFailed:
            raise
        except Exception as exc:
            raise PaymentExecutionFailed(
                f"Signer failed: {exc}", diagnostics=repr(exc)
            ) from exc

        if not is_valid_signature(signature):
            raise PaymentExecutionFailed(
                "Signer returned a malformed signature", diagnostics=str(signature)
            )
        return signature

    async def transferred_amount(self, signature: str, recipient: str, asset: str) -> Optional[int]:
        """
        Amount the transaction moved to recipient, in base units.

        None when the transaction is missing, failed on-chain, the recipient
        is absent, or the balance entries are ambiguous.
        """
        if self.rpc is None:
            logger.warning("No ledger RPC configured; cannot verify %s", signature)
            return None
        try:
            tx = await self.rpc.get_parsed_transaction(signature)
            if not tx:
                logger.info("Transaction not found: %s", signature)
                return None
            if tx.get("meta") is None or tx["meta"].get("err") is not None:
                logger.warning("Transaction %s failed on-chain: %s", signature, (tx.get("meta") or {}).get("err"))
                return None
            if is_native_asset(asset):
                return _native_delta(tx, recipient)
            return _token_delta(tx, recipient, asset)
        except LedgerRpcError as exc:
            logger.warning("Ledger lookup failed for %s: %s", signature, exc)
            return None
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            logger.warning("Unparseable transaction %s: %s", signature, exc)
            return None

    async def verify_transaction(
        self,
        signature: str,
        expected_recipient: str,
        expected_amount: int | str,
        asset: str,
    ) -> bool:
        try:
            expected = int(expected_amount)
        except (TypeError, ValueError):
            return False
        delta = await self.transferred_amount(signature, expected_recipient, asset)
        verified = delta is not None and delta > 0 and delta >= expected
        logger.info("Verification of %s: %s (delta=%s, expected=%s)", signature, verified, delta, expected)
        return verified

    async def settle(self, signature: str, instruction: PaymentInstruction) -> PaymentOutcome:
        delta = await self.transferred_amount(signature, instruction.recipient, instruction.asset)
        if delta is None or delta <= 0:
            return PaymentOutcome(signature=signature, error="Transfer not found on-chain")
        if delta < instruction.amount:
            return PaymentOutcome(
                signature=signature,
                amount=delta,
                error=f"Transferred {delta} below expected {instruction.amount}",
            )
        return PaymentOutcome(signature=signature, verified=True, amount=delta)

    async def get_transaction_status(self, signature: str) -> TransactionStatus:
        if self.rpc is None:
            return TransactionStatus.NOT_FOUND
        try:
            status = await self.rpc.get_signature_status(signature)
        except LedgerRpcError as exc:
            logger.warning("Status lookup failed for %s: %s", signature, exc)
            return TransactionStatus.NOT_FOUND
        if not status:
            return TransactionStatus.NOT_FOUND
        if status.get("confirmationStatus") == "finalized":
            return TransactionStatus.FINALIZED
        return TransactionStatus.CONFIRMED
