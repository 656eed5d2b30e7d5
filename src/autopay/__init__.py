"""
x402 autopay — pay-per-call HTTP resources for agents.

Health-gated fetch → offer resolution → spending limits →
on-chain verified payment → retry with proof.
"""

__version__ = "0.1.0"

from .audit import AuditTrail, EventType
from .client import AutopayClient, FetchOutcome, FetchResult
from .config import AutopayConfig
from .coordinator import PaymentCoordinator, PaymentOutcome, TransactionStatus
from .discovery import ServiceCandidate, StaticDiscovery
from .ledger import SolanaRpcClient
from .limits import Charge, LimitCheck, SpendingGovernor, SpendingLimit, SpendingStats
from .offers import PaymentInstruction, PaymentOffer, parse_payment_required
from .purchase import PurchaseFlow, PurchaseOutcome, PurchaseResult
from .sessions import PurchaseSession, SessionStatus, SessionStore
from .signer import Signer, SubprocessSigner

__all__ = [
    "AutopayClient", "FetchOutcome", "FetchResult", "AutopayConfig",
    "PaymentCoordinator", "PaymentOutcome", "TransactionStatus",
    "PaymentOffer", "PaymentInstruction", "parse_payment_required",
    "SpendingGovernor", "SpendingLimit", "SpendingStats", "LimitCheck", "Charge",
    "SessionStore", "PurchaseSession", "SessionStatus",
    "PurchaseFlow", "PurchaseOutcome", "PurchaseResult",
    "ServiceCandidate", "StaticDiscovery", "SolanaRpcClient",
    "Signer", "SubprocessSigner", "AuditTrail", "EventType",
]
