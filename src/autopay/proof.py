"""Signed, short-lived payment proof tokens sent with the paid retry."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Optional

import jwt

from .storage import load_or_create_key

PROOF_ALGORITHM = "HS256"
DEFAULT_PROOF_TTL_SECONDS = 3600
DEFAULT_PROOF_KEY_PATH = Path.home() / ".autopay-secrets" / "proof.key"


def load_proof_secret(path: Optional[Path] = None) -> bytes:
    """AUTOPAY_PROOF_SECRET if set, else a private key file created on first use."""
    return load_or_create_key(path or DEFAULT_PROOF_KEY_PATH, env_var="AUTOPAY_PROOF_SECRET")


def issue_payment_proof(
    signature: str,
    recipient: str,
    amount: int | str,
    secret: bytes | str,
    asset: Optional[str] = None,
    ttl_seconds: int = DEFAULT_PROOF_TTL_SECONDS,
    now: Optional[float] = None,
) -> str:
    issued = time.time() if now is None else now
    claims = {
        "signature": signature,
        "recipient": recipient,
        "amount": str(amount),
        "timestamp": int(issued * 1000),
        "iat": int(issued),
        "exp": int(issued) + ttl_seconds,
    }
    if asset:
        claims["asset"] = asset
    return jwt.encode(claims, secret, algorithm=PROOF_ALGORITHM)


def verify_payment_proof(token: str, secret: bytes | str) -> dict:
    """Decode a proof token; raises jwt.InvalidTokenError subclasses on failure."""
    return jwt.decode(
        token,
        secret,
        algorithms=[PROOF_ALGORITHM],
        options={"require": ["exp", "iat", "signature", "recipient", "amount"]},
    )
