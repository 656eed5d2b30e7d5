"""
Health-gated autopay fetch.

One call to fetch_with_autopay() runs the whole x402 loop:

1. HEAD probe; an unhealthy endpoint ends the call before any payment logic
2. Primary request
3. On 402: parse offers, reserve budget, check ceiling and threshold
4. Execute payment through the coordinator and verify it on-chain
5. Retry the request once with a signed payment proof

Outcomes are returned as FetchResult rather than raised.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

import httpx

from .audit import AuditTrail, EventType
from .config import AutopayConfig
from .coordinator import PaymentCoordinator
from .errors import (
    ApprovalRequired,
    AutopayError,
    FulfillmentFailed,
    HealthCheckFailed,
    LimitExceeded,
    MaxPaymentExceeded,
    MissingPaymentDetails,
    NoMatchingOffer,
    PaymentExecutionFailed,
    VerificationFailed,
)
from .health import probe
from .limits import Charge, LimitCheck, SpendingGovernor
from .money import format_amount, to_decimal
from .offers import PAYMENT_HEADER, PaymentOffer, parse_payment_required
from .proof import issue_payment_proof, load_proof_secret

logger = logging.getLogger(__name__)


class FetchOutcome(str, Enum):
    SUCCESS = "success"
    HEALTH_CHECK_FAILED = "health_check_failed"
    REQUEST_FAILED = "request_failed"
    MISSING_PAYMENT_DETAILS = "missing_payment_details"
    NO_MATCHING_OFFER = "no_matching_offer"
    LIMIT_EXCEEDED = "limit_exceeded"
    MAX_PAYMENT_EXCEEDED = "max_payment_exceeded"
    NEEDS_APPROVAL = "needs_approval"
    PAYMENT_FAILED = "payment_failed"
    VERIFICATION_FAILED = "verification_failed"
    FULFILLMENT_FAILED = "fulfillment_failed"
    CANCELLED = "cancelled"


@dataclass
class FetchResult:
    """Result of one fetch_with_autopay call."""

    success: bool
    outcome: FetchOutcome
    status_code: Optional[int] = None
    data: Any = None
    health_check_passed: bool = False
    payment_executed: bool = False
    payment_amount: Optional[str] = None
    payment_recipient: Optional[str] = None
    payment_signature: Optional[str] = None
    needs_user_approval: bool = False
    payment_offer: Optional[PaymentOffer] = None
    limit_check: Optional[LimitCheck] = None
    diagnostics: Optional[str] = None
    error: Optional[str] = None
    exception: Optional[AutopayError] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "outcome": self.outcome.value,
            "status_code": self.status_code,
            "data": self.data,
            "health_check_passed": self.health_check_passed,
            "payment_executed": self.payment_executed,
            "payment_amount": self.payment_amount,
            "payment_recipient": self.payment_recipient,
            "payment_signature": self.payment_signature,
            "needs_user_approval": self.needs_user_approval,
            "payment_offer": self.payment_offer.to_dict() if self.payment_offer else None,
            "limit_check": self.limit_check.to_dict() if self.limit_check else None,
            "diagnostics": self.diagnostics,
            "error": self.error,
        }

    def raise_for_outcome(self) -> None:
        """Raise the error behind a failed fetch; no-op on success."""
        if self.success:
            return
        if self.exception is not None:
            raise self.exception
        raise AutopayError(self.error or self.outcome.value)


def response_body(resp: httpx.Response) -> Any:
    if "json" in resp.headers.get("content-type", ""):
        try:
            return resp.json()
        except ValueError:
            pass
    return resp.text


def _is_cancelled(cancel: Optional[asyncio.Event]) -> bool:
    return cancel is not None and cancel.is_set()


class AutopayClient:
    """Fetch possibly-paid resources under a spending budget."""

    def __init__(
        self,
        coordinator: PaymentCoordinator,
        governor: Optional[SpendingGovernor] = None,
        config: Optional[AutopayConfig] = None,
        http: Optional[httpx.AsyncClient] = None,
        audit: Optional[AuditTrail] = None,
        proof_secret: Optional[bytes | str] = None,
    ):
        self.coordinator = coordinator
        self.governor = governor
        self.config = config or AutopayConfig()
        self.audit = audit
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(follow_redirects=True)
        self._proof_secret = proof_secret

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "AutopayClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def _secret(self) -> bytes | str:
        if self._proof_secret is None:
            self._proof_secret = load_proof_secret()
        return self._proof_secret

    def _log(self, event_type: EventType, **kwargs) -> None:
        if self.audit:
            self.audit.log(event_type, **kwargs)

    async def _send(
        self,
        method: str,
        url: str,
        data: Any,
        headers: Mapping[str, str],
    ) -> httpx.Response:
        request_headers = {"User-Agent": self.config.user_agent, **headers}
        kwargs: dict[str, Any] = {
            "headers": request_headers,
            "timeout": self.config.request_timeout_seconds,
        }
        if data is not None:
            if isinstance(data, (str, bytes)):
                kwargs["content"] = data
            else:
                kwargs["json"] = data
        return await self._http.request(method, url, **kwargs)

    def _settle_charge(self, charge: Optional[Charge], status: str, signature: Optional[str] = None) -> None:
        if charge is None or self.governor is None:
            return
        try:
            self.governor.finalize_charge(charge.charge_id, status, signature=signature)
        except sqlite3.Error as exc:
            logger.error("Failed to mark charge %s as %s (%s): %s", charge.charge_id, status, signature, exc)

    async def fetch_with_autopay(
        self,
        url: str,
        method: str = "GET",
        data: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        max_payment: Optional[str] = None,
        autopay_threshold: Optional[str] = None,
        identity: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> FetchResult:
        method = method.upper()
        headers = dict(headers or {})
        identity = identity or self.config.identity
        max_payment = max_payment or self.config.max_payment
        autopay_threshold = autopay_threshold or self.config.autopay_threshold

        if _is_cancelled(cancel):
            return FetchResult(success=False, outcome=FetchOutcome.CANCELLED, error="Cancelled before health check")

        health = await probe(self._http, url, timeout=self.config.health_timeout_seconds)
        if not health.healthy:
            self._log(
                EventType.HEALTH_CHECK_FAILED,
                identity=identity,
                resource=url,
                success=False,
                reason=health.error,
            )
            return FetchResult(
                success=False,
                outcome=FetchOutcome.HEALTH_CHECK_FAILED,
                status_code=health.status_code,
                error=f"Health check failed for {url}: {health.error}",
                exception=HealthCheckFailed(
                    url, health.status_code, f"Health check failed for {url}: {health.error}"
                ),
            )

        if _is_cancelled(cancel):
            return FetchResult(
                success=False,
                outcome=FetchOutcome.CANCELLED,
                health_check_passed=True,
                error="Cancelled before request",
            )

        try:
            resp = await self._send(method, url, data, headers)
        except httpx.TimeoutException:
            return FetchResult(
                success=False,
                outcome=FetchOutcome.REQUEST_FAILED,
                health_check_passed=True,
                error=f"Request timed out after {self.config.request_timeout_seconds}s",
            )
        except httpx.HTTPError as exc:
            return FetchResult(
                success=False,
                outcome=FetchOutcome.REQUEST_FAILED,
                health_check_passed=True,
                error=f"Request failed: {exc}",
            )

        if resp.is_success:
            return FetchResult(
                success=True,
                outcome=FetchOutcome.SUCCESS,
                status_code=resp.status_code,
                data=response_body(resp),
                health_check_passed=True,
            )
        if resp.status_code != 402:
            return FetchResult(
                success=False,
                outcome=FetchOutcome.REQUEST_FAILED,
                status_code=resp.status_code,
                data=response_body(resp),
                health_check_passed=True,
                error=f"Request failed with status {resp.status_code}",
            )

        return await self._pay_and_retry(
            resp, url, method, data, headers, identity, max_payment, autopay_threshold, cancel
        )

    async def _pay_and_retry(
        self,
        resp: httpx.Response,
        url: str,
        method: str,
        data: Any,
        headers: dict[str, str],
        identity: str,
        max_payment: str,
        autopay_threshold: str,
        cancel: Optional[asyncio.Event],
    ) -> FetchResult:
        try:
            offers = parse_payment_required(resp.headers, resp.content)
            instruction = self.coordinator.resolve_offer(offers, service_id=url)
        except MissingPaymentDetails as exc:
            return FetchResult(
                success=False,
                outcome=FetchOutcome.MISSING_PAYMENT_DETAILS,
                status_code=402,
                health_check_passed=True,
                error=str(exc),
                exception=exc,
            )
        except NoMatchingOffer as exc:
            return FetchResult(
                success=False,
                outcome=FetchOutcome.NO_MATCHING_OFFER,
                status_code=402,
                health_check_passed=True,
                error=str(exc),
                exception=exc,
            )

        offer = instruction.offer
        amount = self.coordinator.amount_decimal(offer)
        amount_text = format_amount(amount)
        base = dict(
            status_code=402,
            health_check_passed=True,
            payment_amount=amount_text,
            payment_recipient=offer.recipient,
            payment_offer=offer,
        )
        self._log(
            EventType.PAYMENT_REQUIRED,
            identity=identity,
            resource=url,
            amount=amount_text,
            recipient=offer.recipient,
            details={"asset": offer.asset, "network": offer.network},
        )

        reservation: Optional[Charge] = None
        if self.governor is not None:
            try:
                check = self.governor.authorize_and_reserve(
                    identity, amount, recipient=offer.recipient, resource=url
                )
            except sqlite3.Error as exc:
                logger.error("Spending check failed for %s: %s", identity, exc)
                return FetchResult(
                    success=False,
                    outcome=FetchOutcome.LIMIT_EXCEEDED,
                    error=f"Spending limit check unavailable: {exc}",
                    exception=LimitExceeded(f"Spending limit check unavailable: {exc}"),
                    **base,
                )
            if not check.allowed:
                self._log(
                    EventType.SPENDING_DENIED,
                    identity=identity,
                    resource=url,
                    amount=amount_text,
                    success=False,
                    reason=check.reason,
                )
                return FetchResult(
                    success=False,
                    outcome=FetchOutcome.LIMIT_EXCEEDED,
                    limit_check=check,
                    error=f"Spending limit exceeded: {check.reason}",
                    exception=LimitExceeded(check.reason, stats=check.current_spending),
                    **base,
                )
            reservation = check.charge
        charge_id = reservation.charge_id if reservation else None

        if amount > to_decimal(max_payment):
            self._settle_charge(reservation, "released")
            return FetchResult(
                success=False,
                outcome=FetchOutcome.MAX_PAYMENT_EXCEEDED,
                error=f"Payment amount {amount_text} exceeds maximum {max_payment}",
                exception=MaxPaymentExceeded(amount_text, max_payment),
                **base,
            )

        if amount > to_decimal(autopay_threshold):
            self._settle_charge(reservation, "released")
            self._log(
                EventType.APPROVAL_REQUIRED,
                identity=identity,
                resource=url,
                amount=amount_text,
                recipient=offer.recipient,
            )
            return FetchResult(
                success=False,
                outcome=FetchOutcome.NEEDS_APPROVAL,
                needs_user_approval=True,
                error=f"Payment of {amount_text} exceeds autopay threshold {autopay_threshold}",
                exception=ApprovalRequired(amount_text, offer.recipient, offer),
                **base,
            )

        if _is_cancelled(cancel):
            self._settle_charge(reservation, "released")
            return FetchResult(
                success=False,
                outcome=FetchOutcome.CANCELLED,
                error="Cancelled before payment",
                **base,
            )

        try:
            signature = await self.coordinator.execute_payment(offer, offer.recipient)
        except PaymentExecutionFailed as exc:
            self._settle_charge(reservation, "released")
            self._log(
                EventType.PAYMENT_FAILED,
                identity=identity,
                resource=url,
                amount=amount_text,
                recipient=offer.recipient,
                charge_id=charge_id,
                success=False,
                reason=str(exc),
            )
            return FetchResult(
                success=False,
                outcome=FetchOutcome.PAYMENT_FAILED,
                diagnostics=exc.diagnostics,
                error=f"Payment execution failed: {exc}",
                exception=exc,
                **base,
            )

        base.update(payment_executed=True, payment_signature=signature)
        self._log(
            EventType.PAYMENT_SUBMITTED,
            identity=identity,
            resource=url,
            amount=amount_text,
            recipient=offer.recipient,
            signature=signature,
            charge_id=charge_id,
        )

        if _is_cancelled(cancel):
            self._settle_charge(reservation, "unverified", signature)
            return FetchResult(
                success=False,
                outcome=FetchOutcome.CANCELLED,
                error="Cancelled after payment submission; verification skipped",
                **base,
            )

        verified = await self.coordinator.verify_transaction(
            signature, offer.recipient, offer.amount, offer.asset
        )
        if not verified:
            self._settle_charge(reservation, "unverified", signature)
            self._log(
                EventType.VERIFICATION_FAILED,
                identity=identity,
                resource=url,
                amount=amount_text,
                recipient=offer.recipient,
                signature=signature,
                charge_id=charge_id,
                success=False,
            )
            return FetchResult(
                success=False,
                outcome=FetchOutcome.VERIFICATION_FAILED,
                error=f"Payment executed but on-chain verification failed ({signature})",
                exception=VerificationFailed(signature),
                **base,
            )

        self._settle_charge(reservation, "completed", signature)
        self._log(
            EventType.PAYMENT_VERIFIED,
            identity=identity,
            resource=url,
            amount=amount_text,
            recipient=offer.recipient,
            signature=signature,
            charge_id=charge_id,
        )

        if _is_cancelled(cancel):
            return FetchResult(
                success=False,
                outcome=FetchOutcome.CANCELLED,
                error="Cancelled after verified payment; request not retried",
                **base,
            )

        proof = issue_payment_proof(
            signature, offer.recipient, offer.amount, self._secret(), asset=offer.asset
        )
        try:
            retry = await self._send(method, url, data, {**headers, PAYMENT_HEADER: proof})
        except httpx.HTTPError as exc:
            self._log(
                EventType.FULFILLMENT_FAILED,
                identity=identity,
                resource=url,
                signature=signature,
                success=False,
                reason=str(exc),
            )
            return FetchResult(
                success=False,
                outcome=FetchOutcome.FULFILLMENT_FAILED,
                error=f"Payment verified but retry failed: {exc}",
                exception=FulfillmentFailed(None, signature, str(exc)),
                **base,
            )

        base["status_code"] = retry.status_code
        if not retry.is_success:
            self._log(
                EventType.FULFILLMENT_FAILED,
                identity=identity,
                resource=url,
                signature=signature,
                success=False,
                reason=f"HTTP {retry.status_code}",
            )
            return FetchResult(
                success=False,
                outcome=FetchOutcome.FULFILLMENT_FAILED,
                data=response_body(retry),
                error=f"Payment verified but service returned {retry.status_code}",
                exception=FulfillmentFailed(retry.status_code, signature),
                **base,
            )

        self._log(
            EventType.FETCH_COMPLETED,
            identity=identity,
            resource=url,
            amount=amount_text,
            signature=signature,
        )
        return FetchResult(
            success=True,
            outcome=FetchOutcome.SUCCESS,
            data=response_body(retry),
            **base,
        )
