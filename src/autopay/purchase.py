"""
Two-phase marketplace purchases.

prepare() discovers and ranks providers, fetches the 402 terms and parks
them in a session. execute() runs on the side that holds the signer.
complete() takes the resulting signature, verifies it on-chain and
delivers the request with a payment proof, falling back to backup
providers with the same proof if the primary fails. A session never
triggers a second payment.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import httpx

from .audit import AuditTrail, EventType
from .client import response_body
from .config import AutopayConfig
from .coordinator import PaymentCoordinator
from .discovery import ServiceCandidate, ServiceDiscovery
from .errors import (
    MissingPaymentDetails,
    NoMatchingOffer,
    PaymentExecutionFailed,
    SessionNotFoundError,
    SessionStateError,
)
from .health import HealthCheckResult, check_services, filter_healthy, rank_services
from .limits import LimitCheck, SpendingGovernor
from .money import format_amount, to_decimal
from .offers import PAYMENT_HEADER, PaymentInstruction, parse_payment_required
from .proof import issue_payment_proof, load_proof_secret
from .sessions import TERMINAL_STATUSES, PurchaseSession, SessionStatus, SessionStore
from .validation import is_valid_signature

logger = logging.getLogger(__name__)

HEALTH_CHECK_CANDIDATES = 5
BACKUP_SERVICES = 2


class PurchaseOutcome(str, Enum):
    PAYMENT_READY = "payment_ready"
    EXECUTED = "executed"
    COMPLETED = "completed"
    NO_SERVICES = "no_services"
    NO_HEALTHY_SERVICES = "no_healthy_services"
    PRICE_EXCEEDED = "price_exceeded"
    LIMIT_EXCEEDED = "limit_exceeded"
    REQUEST_FAILED = "request_failed"
    MISSING_PAYMENT_DETAILS = "missing_payment_details"
    NO_MATCHING_OFFER = "no_matching_offer"
    SESSION_NOT_FOUND = "session_not_found"
    INVALID_STATE = "invalid_state"
    INVALID_SIGNATURE = "invalid_signature"
    PAYMENT_FAILED = "payment_failed"
    VERIFICATION_FAILED = "verification_failed"
    FULFILLMENT_FAILED = "fulfillment_failed"


@dataclass
class PurchaseResult:
    success: bool
    outcome: PurchaseOutcome
    session_id: Optional[str] = None
    status: Optional[SessionStatus] = None
    service: Optional[ServiceCandidate] = None
    alternatives: list[ServiceCandidate] = field(default_factory=list)
    payment_instruction: Optional[PaymentInstruction] = None
    payment_amount: Optional[str] = None
    signature: Optional[str] = None
    service_result: Any = None
    health_check_results: dict[str, HealthCheckResult] = field(default_factory=dict)
    limit_check: Optional[LimitCheck] = None
    retries_used: int = 0
    diagnostics: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "outcome": self.outcome.value,
            "session_id": self.session_id,
            "status": self.status.value if self.status else None,
            "service": self.service.to_dict() if self.service else None,
            "alternatives": [s.to_dict() for s in self.alternatives],
            "payment_instruction": (
                self.payment_instruction.to_dict() if self.payment_instruction else None
            ),
            "payment_amount": self.payment_amount,
            "signature": self.signature,
            "service_result": self.service_result,
            "health_check_results": {k: v.to_dict() for k, v in self.health_check_results.items()},
            "limit_check": self.limit_check.to_dict() if self.limit_check else None,
            "retries_used": self.retries_used,
            "diagnostics": self.diagnostics,
            "error": self.error,
        }


class PurchaseFlow:
    """prepare / execute / complete over a SessionStore."""

    def __init__(
        self,
        discovery: ServiceDiscovery,
        sessions: SessionStore,
        coordinator: PaymentCoordinator,
        governor: Optional[SpendingGovernor] = None,
        http: Optional[httpx.AsyncClient] = None,
        config: Optional[AutopayConfig] = None,
        audit: Optional[AuditTrail] = None,
        proof_secret: Optional[bytes | str] = None,
    ):
        self.discovery = discovery
        self.sessions = sessions
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

    def _secret(self) -> bytes | str:
        if self._proof_secret is None:
            self._proof_secret = load_proof_secret()
        return self._proof_secret

    def _log(self, event_type: EventType, **kwargs) -> None:
        if self.audit:
            self.audit.log(event_type, **kwargs)

    async def _post(self, endpoint: str, request_data: Any, extra_headers: Optional[dict] = None) -> httpx.Response:
        headers = {"User-Agent": self.config.user_agent, **(extra_headers or {})}
        return await self._http.post(
            endpoint,
            json=request_data,
            headers=headers,
            timeout=self.config.request_timeout_seconds,
        )

    def _check_spending(self, identity: str, amount: Decimal) -> Optional[LimitCheck]:
        if self.governor is None:
            return None
        try:
            return self.governor.check_limit(identity, amount)
        except sqlite3.Error as exc:
            logger.error("Spending check failed for %s: %s", identity, exc)
            return LimitCheck(allowed=False, reason=f"Spending limit check unavailable: {exc}")

    # -- phase 1 ----------------------------------------------------------

    async def prepare(
        self,
        capability: str,
        request_data: Any,
        identity: Optional[str] = None,
        max_price: Optional[str] = None,
        min_rating: Optional[float] = None,
        preferred_providers: Optional[list[str]] = None,
        check_health: bool = True,
        max_retries: int = 2,
    ) -> PurchaseResult:
        identity = identity or self.config.identity
        max_price_dec = to_decimal(max_price) if max_price is not None else None

        candidates = await self.discovery.search(capability, max_price=max_price_dec, min_rating=min_rating)
        if not candidates:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.NO_SERVICES,
                error=f"No services found for capability: {capability}",
            )

        if preferred_providers:
            preferred = set(preferred_providers)
            candidates = sorted(candidates, key=lambda s: s.provider not in preferred)

        top = candidates[:HEALTH_CHECK_CANDIDATES]
        health: dict[str, HealthCheckResult] = {}
        if check_health:
            health = await check_services(self._http, top, timeout=self.config.health_timeout_seconds)
            top = filter_healthy(top, health)
            if not top:
                return PurchaseResult(
                    success=False,
                    outcome=PurchaseOutcome.NO_HEALTHY_SERVICES,
                    health_check_results=health,
                    error="No healthy services available",
                )

        ranked = rank_services(top, health)
        selected, alternatives = ranked[0], ranked[1:1 + BACKUP_SERVICES]
        base = dict(service=selected, alternatives=alternatives, health_check_results=health)

        max_payment = to_decimal(self.config.max_payment)
        if selected.price_usd > max_payment:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.PRICE_EXCEEDED,
                error=f"Service price {selected.price} exceeds maximum ${format_amount(max_payment)}",
                **base,
            )

        try:
            resp = await self._post(selected.endpoint, request_data)
        except httpx.HTTPError as exc:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.REQUEST_FAILED,
                error=f"Request to {selected.endpoint} failed: {exc}",
                **base,
            )

        if resp.is_success:
            return PurchaseResult(
                success=True,
                outcome=PurchaseOutcome.COMPLETED,
                service_result=response_body(resp),
                **base,
            )
        if resp.status_code != 402:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.REQUEST_FAILED,
                error=f"Service returned {resp.status_code}",
                **base,
            )

        try:
            offers = parse_payment_required(resp.headers, resp.content)
            instruction = self.coordinator.resolve_offer(offers, service_id=selected.id)
        except MissingPaymentDetails as exc:
            return PurchaseResult(
                success=False, outcome=PurchaseOutcome.MISSING_PAYMENT_DETAILS, error=str(exc), **base
            )
        except NoMatchingOffer as exc:
            return PurchaseResult(
                success=False, outcome=PurchaseOutcome.NO_MATCHING_OFFER, error=str(exc), **base
            )

        amount = self.coordinator.amount_decimal(instruction.offer)
        amount_text = format_amount(amount)
        base.update(payment_instruction=instruction, payment_amount=amount_text)
        if amount > max_payment:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.PRICE_EXCEEDED,
                error=f"Payment amount {amount_text} exceeds maximum {format_amount(max_payment)}",
                **base,
            )

        check = self._check_spending(identity, amount)
        if check is not None and not check.allowed:
            self._log(
                EventType.SPENDING_DENIED,
                identity=identity,
                resource=selected.endpoint,
                amount=amount_text,
                success=False,
                reason=check.reason,
            )
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.LIMIT_EXCEEDED,
                limit_check=check,
                error=f"Spending limit exceeded: {check.reason}",
                **base,
            )

        session = self.sessions.create(user_id=identity, max_retries=max_retries, require_health_check=check_health)
        session = self.sessions.update(
            session.session_id,
            status=SessionStatus.PAYMENT_READY,
            selected_service=selected.to_dict(),
            alternative_services=[s.to_dict() for s in alternatives],
            health_check_results={k: v.to_dict() for k, v in health.items()},
            request_data=request_data,
            payment_instruction=instruction,
        )
        self._log(
            EventType.SESSION_CREATED,
            identity=identity,
            resource=selected.endpoint,
            amount=amount_text,
            recipient=instruction.recipient,
            session_id=session.session_id,
            details={"service_id": selected.id},
        )
        return PurchaseResult(
            success=True,
            outcome=PurchaseOutcome.PAYMENT_READY,
            session_id=session.session_id,
            status=session.status,
            limit_check=check,
            **base,
        )

    # -- phase 2 ----------------------------------------------------------

    def _deadline(self) -> float:
        return self.sessions.clock() + self.sessions.ttl_seconds

    def _save(self, session_id: str, /, **changes) -> None:
        """Store a post-payment change; the caller's result stands even if the session is gone."""
        try:
            self.sessions.update(session_id, **changes)
        except SessionNotFoundError:
            logger.warning(
                "Session %s disappeared after payment; not stored: %s", session_id, ", ".join(sorted(changes))
            )

    async def execute(self, session_id: str) -> PurchaseResult:
        session = self.sessions.get(session_id)
        if session is None:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.SESSION_NOT_FOUND,
                session_id=session_id,
                error=f"Session not found or expired: {session_id}",
            )
        instruction = session.payment_instruction
        try:
            if instruction is None:
                raise SessionStateError("Session has no payment instruction; run prepare first")
            self.sessions.transition(
                session_id,
                [SessionStatus.PAYMENT_READY],
                SessionStatus.EXECUTING,
                expires_at=self._deadline(),
            )
        except SessionStateError as exc:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.INVALID_STATE,
                session_id=session_id,
                status=session.status,
                error=str(exc),
            )
        except SessionNotFoundError as exc:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.SESSION_NOT_FOUND,
                session_id=session_id,
                error=str(exc),
            )

        amount_text = format_amount(self.coordinator.amount_decimal(instruction.offer))
        try:
            signature = await self.coordinator.execute_payment(instruction.offer, instruction.recipient)
        except PaymentExecutionFailed as exc:
            self._save(session_id, status=SessionStatus.FAILED, last_error=str(exc))
            self._log(
                EventType.SESSION_FAILED,
                identity=session.user_id,
                recipient=instruction.recipient,
                session_id=session_id,
                success=False,
                reason=str(exc),
            )
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.PAYMENT_FAILED,
                session_id=session_id,
                status=SessionStatus.FAILED,
                payment_instruction=instruction,
                payment_amount=amount_text,
                diagnostics=exc.diagnostics,
                error=f"Payment execution failed: {exc}",
            )

        self._save(session_id, signature=signature, transaction_id=signature)
        self._log(
            EventType.PAYMENT_SUBMITTED,
            identity=session.user_id,
            amount=amount_text,
            recipient=instruction.recipient,
            signature=signature,
            session_id=session_id,
        )
        return PurchaseResult(
            success=True,
            outcome=PurchaseOutcome.EXECUTED,
            session_id=session_id,
            status=SessionStatus.EXECUTING,
            payment_instruction=instruction,
            payment_amount=amount_text,
            signature=signature,
        )

    # -- phase 3 ----------------------------------------------------------

    def _fail(
        self,
        session: PurchaseSession,
        outcome: PurchaseOutcome,
        error: str,
        charge_id: Optional[int] = None,
        **extra,
    ) -> PurchaseResult:
        self._save(session.session_id, status=SessionStatus.FAILED, last_error=error)
        self._log(
            EventType.SESSION_FAILED,
            identity=session.user_id,
            signature=session.signature,
            charge_id=charge_id,
            session_id=session.session_id,
            success=False,
            reason=error,
            details={"outcome": outcome.value},
        )
        return PurchaseResult(
            success=False,
            outcome=outcome,
            session_id=session.session_id,
            status=SessionStatus.FAILED,
            payment_instruction=session.payment_instruction,
            signature=session.signature,
            error=error,
            **extra,
        )

    async def complete(self, session_id: str, signature: str, retry_on_failure: bool = True) -> PurchaseResult:
        session = self.sessions.get(session_id)
        if session is None:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.SESSION_NOT_FOUND,
                session_id=session_id,
                error=f"Session not found or expired: {session_id}",
            )
        if session.status in TERMINAL_STATUSES:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.INVALID_STATE,
                session_id=session_id,
                status=session.status,
                error=f"Session already {session.status.value}",
            )
        if session.payment_instruction is None or session.selected_service is None:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.INVALID_STATE,
                session_id=session_id,
                status=session.status,
                error="Session has no payment instruction; run prepare first",
            )
        if not is_valid_signature(signature):
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.INVALID_SIGNATURE,
                session_id=session_id,
                status=session.status,
                error="Malformed transaction signature",
            )
        if session.signature and session.signature != signature:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.INVALID_STATE,
                session_id=session_id,
                status=session.status,
                error="Signature does not match the payment executed for this session",
            )

        instruction = session.payment_instruction
        amount = self.coordinator.amount_decimal(instruction.offer)
        amount_text = format_amount(amount)
        try:
            session = self.sessions.transition(
                session_id,
                [SessionStatus.PAYMENT_READY, SessionStatus.EXECUTING],
                SessionStatus.EXECUTING,
                signature=signature,
                transaction_id=signature,
                expires_at=self._deadline(),
            )
        except (SessionStateError, SessionNotFoundError) as exc:
            return PurchaseResult(
                success=False,
                outcome=PurchaseOutcome.INVALID_STATE,
                session_id=session_id,
                error=str(exc),
            )

        outcome = await self.coordinator.settle(signature, instruction)
        if not outcome.verified:
            charge_id = self._record(session, amount, "unverified", signature)
            self._save(session_id, verification_result=outcome.to_dict())
            return self._fail(
                session,
                PurchaseOutcome.VERIFICATION_FAILED,
                f"Payment verification failed: {outcome.error}",
                charge_id=charge_id,
                payment_amount=amount_text,
            )

        charge_id = self._record(session, amount, "completed", signature)
        self._save(session_id, verification_result=outcome.to_dict())
        self._log(
            EventType.PAYMENT_VERIFIED,
            identity=session.user_id,
            amount=amount_text,
            recipient=instruction.recipient,
            signature=signature,
            charge_id=charge_id,
            session_id=session_id,
        )

        proof = issue_payment_proof(
            signature, instruction.recipient, instruction.amount, self._secret(), asset=instruction.asset
        )
        targets = [ServiceCandidate.from_dict(session.selected_service)]
        if retry_on_failure:
            backups = [ServiceCandidate.from_dict(s) for s in session.alternative_services]
            targets.extend(backups[:min(session.max_retries, len(backups))])

        last_error = None
        for attempt, service in enumerate(targets):
            if attempt:
                self._save(session_id, retry_count=attempt)
                logger.info("Retrying session %s with backup %s", session_id, service.id)
            try:
                resp = await self._post(service.endpoint, session.request_data, {PAYMENT_HEADER: proof})
            except httpx.HTTPError as exc:
                last_error = f"{service.id}: {exc}"
                continue
            if resp.is_success:
                result = response_body(resp)
                self._save(session_id, status=SessionStatus.COMPLETED, service_result=result)
                self._log(
                    EventType.SESSION_COMPLETED,
                    identity=session.user_id,
                    resource=service.endpoint,
                    amount=amount_text,
                    signature=signature,
                    charge_id=charge_id,
                    session_id=session_id,
                    details={"service_id": service.id},
                )
                return PurchaseResult(
                    success=True,
                    outcome=PurchaseOutcome.COMPLETED,
                    session_id=session_id,
                    status=SessionStatus.COMPLETED,
                    service=service,
                    payment_instruction=instruction,
                    payment_amount=amount_text,
                    signature=signature,
                    service_result=result,
                    retries_used=attempt,
                )
            last_error = f"{service.id}: HTTP {resp.status_code}"

        self._log(
            EventType.FULFILLMENT_FAILED,
            identity=session.user_id,
            signature=signature,
            charge_id=charge_id,
            session_id=session_id,
            success=False,
            reason=last_error,
        )
        return self._fail(
            session,
            PurchaseOutcome.FULFILLMENT_FAILED,
            f"Payment verified but service request failed ({last_error})",
            charge_id=charge_id,
            payment_amount=amount_text,
            retries_used=len(targets) - 1,
        )

    def _record(self, session: PurchaseSession, amount: Decimal, status: str, signature: str) -> Optional[int]:
        if self.governor is None or not session.user_id:
            return None
        try:
            charge = self.governor.record_charge(
                session.user_id,
                amount,
                status=status,
                signature=signature,
                recipient=session.payment_instruction.recipient if session.payment_instruction else None,
                resource=(session.selected_service or {}).get("endpoint"),
            )
        except sqlite3.Error as exc:
            logger.error("Failed to record charge %s: %s", signature, exc)
            return None
        return charge.charge_id
