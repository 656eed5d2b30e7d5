"""
Spending governor.

Per-identity ceilings (per transaction, per UTC day, per UTC month) kept in
SQLite next to an append-only charge history. Spending stats are always
derived from the history, never stored.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .errors import InvalidLimitFormat
from .money import (
    amount_usd_to_micros,
    format_usd_from_micros,
    is_valid_limit,
    limit_usd_to_micros,
    micros_to_usd_decimal,
    parse_usd,
)
from .storage import ensure_private_dir, ensure_private_file

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".autopay" / "spending.sqlite3"

DEFAULT_PER_TRANSACTION = "$5.00"
DEFAULT_DAILY = "$50.00"
DEFAULT_MONTHLY = "$500.00"

CHARGE_STATUSES = ("pending", "completed", "unverified", "failed", "released", "refunded")

# Reservations in flight hold budget until they are finalized.
BUDGETED_STATUSES = ("pending", "completed")
FINAL_STATUSES = ("completed", "unverified", "failed", "released")


@dataclass
class SpendingLimit:
    """Ceilings for one identity, each in $X.XX form."""

    identity: str
    per_transaction: str
    daily: str
    monthly: str
    enabled: bool = True
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "per_transaction": self.per_transaction,
            "daily": self.daily,
            "monthly": self.monthly,
            "enabled": self.enabled,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class SpendingStats:
    identity: str
    today_micros: int = 0
    month_micros: int = 0
    transactions_today: int = 0
    transactions_this_month: int = 0
    last_charge_at: Optional[float] = None

    @property
    def total_today(self) -> Decimal:
        return micros_to_usd_decimal(self.today_micros)

    @property
    def total_this_month(self) -> Decimal:
        return micros_to_usd_decimal(self.month_micros)

    def to_dict(self) -> dict:
        return {
            "identity": self.identity,
            "total_today": format_usd_from_micros(self.today_micros),
            "total_this_month": format_usd_from_micros(self.month_micros),
            "transactions_today": self.transactions_today,
            "transactions_this_month": self.transactions_this_month,
            "last_charge_at": self.last_charge_at,
        }


@dataclass
class Charge:
    """A single entry in the charge history."""

    charge_id: int
    identity: str
    amount_micros: int
    status: str
    timestamp: float
    signature: Optional[str] = None
    recipient: Optional[str] = None
    resource: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "charge_id": self.charge_id,
            "identity": self.identity,
            "amount": format_usd_from_micros(self.amount_micros),
            "status": self.status,
            "timestamp": self.timestamp,
            "signature": self.signature,
            "recipient": self.recipient,
            "resource": self.resource,
        }


@dataclass
class LimitCheck:
    """Outcome of check_limit."""

    allowed: bool
    reason: Optional[str] = None
    current_spending: Optional[SpendingStats] = None
    limits: Optional[SpendingLimit] = None
    charge: Optional[Charge] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "current_spending": self.current_spending.to_dict() if self.current_spending else None,
            "limits": self.limits.to_dict() if self.limits else None,
            "charge_id": self.charge.charge_id if self.charge else None,
        }


def _validate_ceiling(name: str, value: str) -> str:
    if not isinstance(value, str) or not is_valid_limit(value):
        raise InvalidLimitFormat(f"Invalid {name} limit {value!r}: expected format $X.XX")
    if parse_usd(value) <= 0:
        raise InvalidLimitFormat(f"Invalid {name} limit {value!r}: must be positive")
    return value


class SpendingGovernor:
    """
    Accepts or rejects proposed charges against stored ceilings.

    An identity without a stored record, or with a disabled one, is
    unlimited.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
        audit: Optional[AuditTrail] = None,
    ):
        self.db_path = db_path or DEFAULT_DB_PATH
        self.clock = clock
        self.audit = audit
        ensure_private_dir(self.db_path.parent)
        self._init_db()
        ensure_private_file(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS spending_limits (
                    identity TEXT PRIMARY KEY,
                    per_transaction TEXT NOT NULL,
                    daily TEXT NOT NULL,
                    monthly TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS charges (
                    charge_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    identity TEXT NOT NULL,
                    amount_micros INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    signature TEXT,
                    recipient TEXT,
                    resource TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_charges_identity_time
                ON charges (identity, timestamp)
                """
            )

    def _row_to_limit(self, row: sqlite3.Row) -> SpendingLimit:
        return SpendingLimit(
            identity=row["identity"],
            per_transaction=row["per_transaction"],
            daily=row["daily"],
            monthly=row["monthly"],
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_charge(self, row: sqlite3.Row) -> Charge:
        return Charge(
            charge_id=row["charge_id"],
            identity=row["identity"],
            amount_micros=row["amount_micros"],
            status=row["status"],
            timestamp=row["timestamp"],
            signature=row["signature"],
            recipient=row["recipient"],
            resource=row["resource"],
        )

    # -- limits -----------------------------------------------------------

    def _read_limits(self, conn: sqlite3.Connection, identity: str) -> Optional[SpendingLimit]:
        row = conn.execute(
            "SELECT * FROM spending_limits WHERE identity = ?", (identity,)
        ).fetchone()
        return self._row_to_limit(row) if row else None

    def get_limits(self, identity: str) -> Optional[SpendingLimit]:
        with self._connect() as conn:
            return self._read_limits(conn, identity)

    def set_limits(
        self,
        identity: str,
        per_transaction: Optional[str] = None,
        daily: Optional[str] = None,
        monthly: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> SpendingLimit:
        """Merge the supplied ceilings into the stored record and upsert it."""
        for name, value in (
            ("per-transaction", per_transaction),
            ("daily", daily),
            ("monthly", monthly),
        ):
            if value is not None:
                _validate_ceiling(name, value)

        now = self.clock()
        existing = self.get_limits(identity)
        merged = SpendingLimit(
            identity=identity,
            per_transaction=per_transaction or (existing.per_transaction if existing else DEFAULT_PER_TRANSACTION),
            daily=daily or (existing.daily if existing else DEFAULT_DAILY),
            monthly=monthly or (existing.monthly if existing else DEFAULT_MONTHLY),
            enabled=enabled if enabled is not None else (existing.enabled if existing else True),
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO spending_limits (
                    identity, per_transaction, daily, monthly, enabled, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(identity) DO UPDATE SET
                    per_transaction = excluded.per_transaction,
                    daily = excluded.daily,
                    monthly = excluded.monthly,
                    enabled = excluded.enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    merged.identity,
                    merged.per_transaction,
                    merged.daily,
                    merged.monthly,
                    int(merged.enabled),
                    merged.created_at,
                    merged.updated_at,
                ),
            )

        logger.info("Spending limits set for %s: %s", identity, merged.to_dict())
        if self.audit:
            self.audit.log(EventType.LIMITS_UPDATED, identity=identity, details=merged.to_dict())
        return merged

    def reset_limits(self, identity: str) -> bool:
        """Delete the record; the identity becomes unlimited."""
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM spending_limits WHERE identity = ?", (identity,))
        removed = cur.rowcount > 0
        if removed and self.audit:
            self.audit.log(EventType.LIMITS_RESET, identity=identity)
        return removed

    # -- history ----------------------------------------------------------

    def record_charge(
        self,
        identity: str,
        amount: Decimal | str,
        status: str = "completed",
        signature: Optional[str] = None,
        recipient: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> Charge:
        """Append a charge to the history."""
        if status not in CHARGE_STATUSES:
            raise ValueError(f"Unknown charge status: {status}")
        if status == "pending":
            raise ValueError("Pending charges are only created by authorize_and_reserve")
        amount_micros = amount_usd_to_micros(amount)
        ts = self.clock()
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO charges (
                    identity, amount_micros, status, timestamp, signature, recipient, resource
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (identity, amount_micros, status, ts, signature, recipient, resource),
            )
            charge_id = cur.lastrowid
        return Charge(
            charge_id=charge_id,
            identity=identity,
            amount_micros=amount_micros,
            status=status,
            timestamp=ts,
            signature=signature,
            recipient=recipient,
            resource=resource,
        )

    def list_charges(self, identity: str, limit: int = 50) -> list[Charge]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM charges WHERE identity = ?
                ORDER BY timestamp DESC, charge_id DESC LIMIT ?
                """,
                (identity, limit),
            ).fetchall()
        return [self._row_to_charge(row) for row in rows]

    def _window_starts(self) -> tuple[float, float]:
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        month = day.replace(day=1)
        return day.timestamp(), month.timestamp()

    def _stats(self, conn: sqlite3.Connection, identity: str) -> SpendingStats:
        day_start, month_start = self._window_starts()
        placeholders = ", ".join("?" for _ in BUDGETED_STATUSES)
        row = conn.execute(
            f"""
            SELECT
                COALESCE(SUM(CASE WHEN timestamp >= ? THEN amount_micros END), 0) AS today,
                COALESCE(SUM(amount_micros), 0) AS month,
                COUNT(CASE WHEN timestamp >= ? THEN 1 END) AS today_count,
                COUNT(*) AS month_count,
                MAX(timestamp) AS last_at
            FROM charges
            WHERE identity = ? AND status IN ({placeholders}) AND timestamp >= ?
            """,
            (day_start, day_start, identity, *BUDGETED_STATUSES, month_start),
        ).fetchone()
        return SpendingStats(
            identity=identity,
            today_micros=row["today"],
            month_micros=row["month"],
            transactions_today=row["today_count"],
            transactions_this_month=row["month_count"],
            last_charge_at=row["last_at"],
        )

    def get_spending_stats(self, identity: str) -> SpendingStats:
        """Completed charges plus pending reservations in the current UTC day and month."""
        with self._connect() as conn:
            return self._stats(conn, identity)

    # -- decisions --------------------------------------------------------

    def _evaluate(self, conn: sqlite3.Connection, identity: str, amount_micros: int) -> LimitCheck:
        limits = self._read_limits(conn, identity)
        if limits is None or not limits.enabled:
            return LimitCheck(allowed=True)

        if amount_micros <= 0:
            return LimitCheck(allowed=False, reason="Amount must be positive", limits=limits)

        per_tx_micros = limit_usd_to_micros(limits.per_transaction)
        if amount_micros > per_tx_micros:
            return LimitCheck(
                allowed=False,
                reason=(
                    f"Transaction amount {format_usd_from_micros(amount_micros)} exceeds "
                    f"per-transaction limit {limits.per_transaction}"
                ),
                limits=limits,
            )

        stats = self._stats(conn, identity)
        daily_micros = limit_usd_to_micros(limits.daily)
        if stats.today_micros + amount_micros > daily_micros:
            return LimitCheck(
                allowed=False,
                reason=(
                    f"Transaction would exceed daily limit. "
                    f"Current: {format_usd_from_micros(stats.today_micros)}, "
                    f"Limit: {limits.daily}, "
                    f"Attempted: {format_usd_from_micros(amount_micros)}"
                ),
                current_spending=stats,
                limits=limits,
            )

        monthly_micros = limit_usd_to_micros(limits.monthly)
        if stats.month_micros + amount_micros > monthly_micros:
            return LimitCheck(
                allowed=False,
                reason=(
                    f"Transaction would exceed monthly limit. "
                    f"Current: {format_usd_from_micros(stats.month_micros)}, "
                    f"Limit: {limits.monthly}, "
                    f"Attempted: {format_usd_from_micros(amount_micros)}"
                ),
                current_spending=stats,
                limits=limits,
            )

        return LimitCheck(allowed=True, current_spending=stats, limits=limits)

    def check_limit(self, identity: str, proposed_amount: Decimal | str) -> LimitCheck:
        """
        Decide whether a charge may proceed, without reserving anything.

        Order: no/disabled record, per-transaction (no history read),
        daily, monthly.
        """
        amount_micros = amount_usd_to_micros(proposed_amount)
        with self._connect() as conn:
            return self._evaluate(conn, identity, amount_micros)

    def authorize_and_reserve(
        self,
        identity: str,
        amount: Decimal | str,
        recipient: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> LimitCheck:
        """
        Atomically check the ceilings and hold the amount as a pending charge.

        The check and the insert share one BEGIN IMMEDIATE transaction, so
        concurrent callers for the same identity see each other's
        reservations. On success the returned check carries the pending
        charge, which must later go through finalize_charge or
        release_charge.
        """
        amount_micros = amount_usd_to_micros(amount)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            check = self._evaluate(conn, identity, amount_micros)
            if not check.allowed:
                conn.execute("COMMIT")
                return check

            ts = self.clock()
            cur = conn.execute(
                """
                INSERT INTO charges (
                    identity, amount_micros, status, timestamp, signature, recipient, resource
                ) VALUES (?, ?, 'pending', ?, NULL, ?, ?)
                """,
                (identity, amount_micros, ts, recipient, resource),
            )
            charge_id = cur.lastrowid
            conn.execute("COMMIT")

        check.charge = Charge(
            charge_id=charge_id,
            identity=identity,
            amount_micros=amount_micros,
            status="pending",
            timestamp=ts,
            recipient=recipient,
            resource=resource,
        )
        logger.debug("Reserved %s for %s as charge %s", format_usd_from_micros(amount_micros), identity, charge_id)
        return check

    def finalize_charge(self, charge_id: int, status: str, signature: Optional[str] = None) -> Charge:
        """Move a pending charge to a final status. Repeating the same status is a no-op."""
        if status not in FINAL_STATUSES:
            raise ValueError(f"Cannot finalize charge to status {status}")
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT * FROM charges WHERE charge_id = ?", (charge_id,)).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                raise ValueError(f"Charge not found: {charge_id}")
            if row["status"] == status:
                conn.execute("COMMIT")
                return self._row_to_charge(row)
            if row["status"] != "pending":
                conn.execute("ROLLBACK")
                raise ValueError(f"Cannot finalize charge in status {row['status']}")

            conn.execute(
                """
                UPDATE charges
                SET status = ?, signature = COALESCE(?, signature)
                WHERE charge_id = ?
                """,
                (status, signature, charge_id),
            )
            conn.execute("COMMIT")
            refreshed = conn.execute("SELECT * FROM charges WHERE charge_id = ?", (charge_id,)).fetchone()
        return self._row_to_charge(refreshed)

    def release_charge(self, charge_id: int) -> Charge:
        """Give a reservation back when no payment was submitted."""
        return self.finalize_charge(charge_id, "released")
