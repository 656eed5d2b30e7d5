"""
Payment audit trail.

Every payment decision is appended to a JSONL file. Each entry is sealed
with an HMAC over its content and the seal of the entry before it, so an
edited or deleted line is reported on the next read.

Entries carry the on-chain signature, the governor's charge id and the
purchase session id where they exist. A payment that was submitted but
never verified can therefore be found again and reconciled against the
ledger and the charge history.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import time
from dataclasses import asdict, dataclass
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from .money import format_amount, to_decimal
from .storage import ensure_private_dir, ensure_private_file, load_or_create_key


DEFAULT_AUDIT_PATH = Path.home() / ".autopay" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".autopay-secrets" / "audit_hmac.key"


class EventType(str, Enum):
    HEALTH_CHECK_FAILED = "health_check_failed"
    PAYMENT_REQUIRED = "payment_required"
    SPENDING_DENIED = "spending_denied"
    APPROVAL_REQUIRED = "approval_required"
    PAYMENT_SUBMITTED = "payment_submitted"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_VERIFIED = "payment_verified"
    VERIFICATION_FAILED = "verification_failed"
    FULFILLMENT_FAILED = "fulfillment_failed"
    FETCH_COMPLETED = "fetch_completed"
    LIMITS_UPDATED = "limits_updated"
    LIMITS_RESET = "limits_reset"
    SESSION_CREATED = "session_created"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    SECURITY_REJECTED = "security_rejected"


_SEAL_FIELDS = ("prev_hash", "event_hash")


@dataclass
class AuditEvent:
    """One sealed entry."""

    event_type: str
    timestamp: float
    identity: Optional[str] = None
    resource: Optional[str] = None
    amount: Optional[str] = None
    recipient: Optional[str] = None
    signature: Optional[str] = None
    charge_id: Optional[int] = None
    session_id: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: dict) -> "AuditEvent":
        return cls(**{k: v for k, v in raw.items() if k in cls.__dataclass_fields__})

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Append-only, hash-chained payment log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        self.clock = clock

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)

        self._hmac_key = load_or_create_key(self.key_path, env_var="AUTOPAY_AUDIT_HMAC_KEY")
        self._last_hash = ""
        for _ in self._entries():
            pass

    def _seal(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()

    def _entries(self) -> Iterator[AuditEvent]:
        """Yield every entry in file order, checking the chain as it goes."""
        expected_prev = ""
        with open(self.path, "r") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)
                prev_hash = raw.get("prev_hash") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError(f"Audit chain broken: previous hash mismatch at line {lineno}")
                payload = {k: v for k, v in raw.items() if k not in _SEAL_FIELDS}
                if not hmac.compare_digest(self._seal(payload, prev_hash), raw.get("event_hash") or ""):
                    raise RuntimeError(f"Audit chain broken: event hash mismatch at line {lineno}")
                expected_prev = raw["event_hash"]
                yield AuditEvent.from_raw(raw)
        self._last_hash = expected_prev

    def log(
        self,
        event_type: EventType,
        identity: Optional[str] = None,
        resource: Optional[str] = None,
        amount: Optional[str] = None,
        recipient: Optional[str] = None,
        signature: Optional[str] = None,
        charge_id: Optional[int] = None,
        session_id: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        payload = {
            k: v
            for k, v in {
                "event_type": EventType(event_type).value,
                "timestamp": self.clock(),
                "identity": identity,
                "resource": resource,
                "amount": amount,
                "recipient": recipient,
                "signature": signature,
                "charge_id": charge_id,
                "session_id": session_id,
                "success": success,
                "reason": reason,
                "details": details,
            }.items()
            if v is not None
        }
        event_hash = self._seal(payload, self._last_hash)
        event = AuditEvent(**payload, prev_hash=self._last_hash or None, event_hash=event_hash)

        with open(self.path, "a") as f:
            f.write(event.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

        self._last_hash = event_hash
        return event

    def read_events(
        self,
        identity: Optional[str] = None,
        event_type: Optional[EventType] = None,
        signature: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Most recent matching entries, oldest first. The whole chain is checked."""
        wanted_type = EventType(event_type).value if event_type else None
        events = [
            e
            for e in self._entries()
            if (identity is None or e.identity == identity)
            and (wanted_type is None or e.event_type == wanted_type)
            and (signature is None or e.signature == signature)
            and (session_id is None or e.session_id == session_id)
        ]
        return events[-limit:] if limit else events

    def payment_trail(self, signature: str) -> list[AuditEvent]:
        """Everything recorded against one transaction signature."""
        return self.read_events(signature=signature, limit=0)

    def unreconciled(self, identity: Optional[str] = None) -> list[AuditEvent]:
        """
        Submissions with no later payment_verified entry for the same signature.

        These are payments where funds may have moved without the caller
        ever seeing a confirmed settlement.
        """
        pending: dict[str, AuditEvent] = {}
        for e in self._entries():
            if identity is not None and e.identity != identity:
                continue
            if not e.signature:
                continue
            if e.event_type == EventType.PAYMENT_SUBMITTED.value:
                pending.setdefault(e.signature, e)
            elif e.event_type == EventType.PAYMENT_VERIFIED.value:
                pending.pop(e.signature, None)
        return list(pending.values())

    def summary(self, identity: Optional[str] = None) -> dict:
        events = self.read_events(identity=identity, limit=0)
        by_type: dict[str, int] = {}
        verified_spend = Decimal("0")
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
            if e.event_type == EventType.PAYMENT_VERIFIED.value and e.amount:
                verified_spend += to_decimal(e.amount)
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": sum(1 for e in events if not e.success),
            "payments_submitted": by_type.get(EventType.PAYMENT_SUBMITTED.value, 0),
            "payments_verified": by_type.get(EventType.PAYMENT_VERIFIED.value, 0),
            "verified_spend": format_amount(verified_spend),
            "unreconciled_signatures": [e.signature for e in self.unreconciled(identity)],
            "last_event": events[-1].to_json() if events else None,
        }
