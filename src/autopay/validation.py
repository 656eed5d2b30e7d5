"""
Checks applied to untrusted offer values before they reach a signer.

Recipient and asset strings come straight out of a remote 402 response and
end up as arguments to a payment-executing process, so they must match the
ledger's address syntax exactly.
"""

from __future__ import annotations

import logging
import re
from decimal import Decimal
from typing import Any

from x402.mechanisms.svm.constants import SVM_ADDRESS_REGEX

from .errors import InvalidPaymentParameter
from .networks import NATIVE_ASSET, is_native_asset

security_logger = logging.getLogger("autopay.security")

_ADDRESS_RE = re.compile(SVM_ADDRESS_REGEX)
_SHELL_META_RE = re.compile(r"[;&|`$(){}\[\]<>'\"\\\s]")
_SIGNATURE_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{64,88}$")


def contains_shell_metacharacters(value: str) -> bool:
    return bool(_SHELL_META_RE.search(value))


def is_valid_signature(value: Any) -> bool:
    return isinstance(value, str) and bool(_SIGNATURE_RE.match(value))


def _reject(field: str, value: Any, message: str) -> InvalidPaymentParameter:
    security_logger.warning("Rejected %s %r: %s", field, value, message)
    return InvalidPaymentParameter(field, value, message)


def validate_address(value: Any, field: str = "recipient") -> str:
    if not isinstance(value, str) or not value:
        raise _reject(field, value, "must be a non-empty string")
    if contains_shell_metacharacters(value):
        raise _reject(field, value, "contains shell metacharacters")
    if not _ADDRESS_RE.match(value):
        raise _reject(field, value, "not a valid Solana address")
    return value


def validate_asset(value: Any) -> str:
    """The native asset symbol or a token mint address."""
    if isinstance(value, str) and is_native_asset(value):
        return NATIVE_ASSET
    return validate_address(value, field="asset")


def validate_amount(value: Any) -> int:
    """Base-unit amounts must be finite, integral and strictly positive."""
    if isinstance(value, bool):
        raise _reject("amount", value, "must be a number")
    try:
        dec = Decimal(str(value).strip())
    except ArithmeticError:
        raise _reject("amount", value, "must be a number")
    if not dec.is_finite() or dec <= 0:
        raise _reject("amount", value, "must be finite and positive")
    if dec != dec.to_integral_value():
        raise _reject("amount", value, "must be whole base units")
    return int(dec)
