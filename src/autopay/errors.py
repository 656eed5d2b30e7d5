"""
Autopay error types.

Specific exceptions for each failure mode of a paid fetch, so callers
can decide whether to retry the request, escalate for approval, or abort.
"""

from __future__ import annotations

from typing import Any, Optional


class AutopayError(Exception):
    """Base error for all autopay operations."""
    pass


# Payment errors
class PaymentError(AutopayError):
    """Base error for payment failures."""
    pass


class MissingPaymentDetails(PaymentError):
    """A 402 response carried no parseable payment offer."""
    pass


class NoMatchingOffer(PaymentError):
    """None of the offers targets the configured network."""
    def __init__(self, network: str, offered: Optional[list[str]] = None):
        self.network = network
        self.offered = offered or []
        offered_text = ", ".join(self.offered) or "none"
        super().__init__(f"No payment offer for network {network} (offered: {offered_text})")


class PaymentExecutionFailed(PaymentError):
    """The signer could not submit the transfer."""
    def __init__(self, message: str, diagnostics: Optional[str] = None):
        self.diagnostics = diagnostics
        super().__init__(message)


class InvalidPaymentParameter(PaymentExecutionFailed):
    """A recipient, asset or amount was rejected before reaching the signer."""
    def __init__(self, field: str, value: Any, message: str):
        self.field = field
        self.value = value
        super().__init__(f"Invalid {field}: {message}")


class VerificationFailed(PaymentError):
    """Payment was submitted but could not be confirmed on-chain."""
    def __init__(self, signature: str):
        self.signature = signature
        super().__init__(f"Payment executed but on-chain verification failed for {signature}")


class FulfillmentFailed(PaymentError):
    """Payment verified, but the resource still refused the request."""
    def __init__(self, status_code: Optional[int], signature: str, message: str = ""):
        self.status_code = status_code
        self.signature = signature
        detail = f" ({message})" if message else ""
        super().__init__(
            f"Payment verified ({signature}) but service returned {status_code}{detail}"
        )


# Reachability
class HealthCheckFailed(AutopayError):
    """Endpoint failed its reachability probe; no payment was attempted."""
    def __init__(self, url: str, status_code: Optional[int] = None, message: str = ""):
        self.url = url
        self.status_code = status_code
        super().__init__(message or f"Health check failed for {url}")


# Spending errors
class SpendingError(AutopayError):
    """Base error for spending limit violations."""
    pass


class LimitExceeded(SpendingError):
    """Charge denied by the spending governor."""
    def __init__(self, reason: str, stats: Optional[Any] = None):
        self.reason = reason
        self.stats = stats
        super().__init__(reason)


class MaxPaymentExceeded(SpendingError):
    """Charge is above the caller's absolute ceiling."""
    def __init__(self, amount: str, ceiling: str):
        self.amount = amount
        self.ceiling = ceiling
        super().__init__(f"Payment amount {amount} exceeds maximum {ceiling}")


class InvalidLimitFormat(SpendingError, ValueError):
    """A spending ceiling is not in $X.XX form."""
    pass


class ApprovalRequired(AutopayError):
    """Charge is above the autopay threshold and needs explicit consent."""
    def __init__(self, amount: str, recipient: str, offer: Any = None):
        self.amount = amount
        self.recipient = recipient
        self.offer = offer
        super().__init__(f"Payment of {amount} to {recipient} requires approval")


# Session errors
class SessionError(AutopayError):
    """Base error for purchase session issues."""
    pass


class SessionNotFoundError(SessionError):
    """Session id is unknown or has expired."""
    pass


class SessionStateError(SessionError):
    """Session is not in the state the requested phase needs."""
    pass


# Ledger errors
class LedgerError(AutopayError):
    """Ledger-level failures."""
    pass


class LedgerRpcError(LedgerError):
    """JSON-RPC call failed or returned an error object."""
    def __init__(self, method: str, message: str, code: Optional[int] = None):
        self.method = method
        self.code = code
        super().__init__(f"{method} failed: {message}")
