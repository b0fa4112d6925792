"""
Ledger store.

Append-only credit ledger plus the materialized balance rows derived from it
(organization pools and member allocations), usage facts, top-up invoices,
organization membership and the notification outbox, all in one SQLite
database.

Every credit mutation runs inside ``LedgerStore.atomic``: one ``BEGIN
IMMEDIATE`` transaction in which balances are read, new balances computed,
ledger entries appended and balance rows written conditioned on their
``version``. Either all of it commits or none of it does. Lock contention and
version mismatches surface as ConcurrencyConflict and are retried with
bounded exponential backoff.
"""

import calendar
import logging
import sqlite3
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from ai_credit_engine.config.loader import EngineConfig, RetryConfig
from ai_credit_engine.core.errors import (
    ConcurrencyConflict,
    CreditEngineError,
    InsufficientMemberCredits,
    InsufficientOrgCredits,
    InvalidAmount,
    PersistenceFailure,
)
from .db import DEFAULT_DB_PATH, get_connection, is_busy_error
from .models import (
    ALLOCATION_MOVING_TYPES,
    MEMBER_ENTRY_TYPES,
    BalanceKind,
    BalanceRef,
    EntryType,
    LedgerEntry,
    MemberAllocation,
    NotificationRequest,
    OrganizationPool,
    OrgMember,
    PoolTier,
    Posting,
    TopupInvoice,
    UsageFact,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS organization_pool (
        organization_id TEXT PRIMARY KEY,
        monthly_credits_total INTEGER NOT NULL DEFAULT 0,
        monthly_credits_remaining INTEGER NOT NULL DEFAULT 0,
        topup_credits_remaining INTEGER NOT NULL DEFAULT 0,
        period_start TEXT,
        period_end TEXT,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (monthly_credits_remaining >= 0),
        CHECK (monthly_credits_remaining <= monthly_credits_total)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS member_allocation (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        feature TEXT NOT NULL,
        credits_allocated INTEGER NOT NULL DEFAULT 0,
        credits_remaining INTEGER NOT NULL DEFAULT 0,
        allocated_by TEXT,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (organization_id, user_id, feature),
        CHECK (credits_remaining >= 0),
        CHECK (credits_remaining <= credits_allocated)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entry (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        transaction_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        user_id TEXT,
        subject_user_id TEXT,
        feature TEXT,
        balance_kind TEXT NOT NULL,
        entry_type TEXT NOT NULL,
        amount INTEGER NOT NULL,
        monthly_delta INTEGER NOT NULL DEFAULT 0,
        topup_delta INTEGER NOT NULL DEFAULT 0,
        monthly_total INTEGER,
        balance_before INTEGER NOT NULL,
        balance_after INTEGER NOT NULL,
        description TEXT NOT NULL,
        usage_fact_id TEXT,
        invoice_id TEXT,
        is_mirror INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_entry_org ON ledger_entry (organization_id, seq)",
    """
    CREATE TRIGGER IF NOT EXISTS ledger_entry_no_update
    BEFORE UPDATE ON ledger_entry
    BEGIN
        SELECT RAISE(ABORT, 'ledger entries are immutable');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS ledger_entry_no_delete
    BEFORE DELETE ON ledger_entry
    BEGIN
        SELECT RAISE(ABORT, 'ledger entries are immutable');
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_fact (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        organization_id TEXT NOT NULL,
        user_id TEXT,
        model TEXT NOT NULL,
        provider TEXT NOT NULL,
        feature TEXT NOT NULL,
        input_tokens INTEGER NOT NULL,
        output_tokens INTEGER NOT NULL,
        is_free_model INTEGER NOT NULL DEFAULT 0,
        credits_charged INTEGER NOT NULL,
        request_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_fact_created ON usage_fact (created_at)",
    """
    CREATE TRIGGER IF NOT EXISTS usage_fact_no_update
    BEFORE UPDATE ON usage_fact
    BEGIN
        SELECT RAISE(ABORT, 'usage facts are immutable');
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS topup_invoice (
        invoice_id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        credits INTEGER NOT NULL,
        total_cents INTEGER NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS org_member (
        organization_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL,
        display_name TEXT,
        PRIMARY KEY (organization_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_request (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        type TEXT NOT NULL,
        title TEXT NOT NULL,
        body TEXT NOT NULL,
        link TEXT,
        created_at TEXT NOT NULL
    )
    """,
)


# -- Serialization helpers ----------------------------------------------------

def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def add_months(moment: datetime, months: int = 1) -> datetime:
    """Shift a timestamp by calendar months, clamping to the month's last day."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _pool_from_row(row: sqlite3.Row) -> OrganizationPool:
    return OrganizationPool(
        organization_id=row["organization_id"],
        monthly_credits_total=row["monthly_credits_total"],
        monthly_credits_remaining=row["monthly_credits_remaining"],
        topup_credits_remaining=row["topup_credits_remaining"],
        period_start=_parse_ts(row["period_start"]),
        period_end=_parse_ts(row["period_end"]),
        version=row["version"]
    )


def _allocation_from_row(row: sqlite3.Row) -> MemberAllocation:
    return MemberAllocation(
        organization_id=row["organization_id"],
        user_id=row["user_id"],
        feature=row["feature"],
        credits_allocated=row["credits_allocated"],
        credits_remaining=row["credits_remaining"],
        allocated_by=row["allocated_by"],
        version=row["version"]
    )


def _entry_from_row(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        transaction_id=row["transaction_id"],
        organization_id=row["organization_id"],
        user_id=row["user_id"],
        balance_kind=BalanceKind(row["balance_kind"]),
        entry_type=EntryType(row["entry_type"]),
        amount=row["amount"],
        balance_before=row["balance_before"],
        balance_after=row["balance_after"],
        description=row["description"],
        created_at=_parse_ts(row["created_at"]),
        subject_user_id=row["subject_user_id"],
        feature=row["feature"],
        monthly_delta=row["monthly_delta"],
        topup_delta=row["topup_delta"],
        monthly_total=row["monthly_total"],
        usage_fact_id=row["usage_fact_id"],
        invoice_id=row["invoice_id"],
        is_mirror=bool(row["is_mirror"]),
        seq=row["seq"]
    )


def _fact_from_row(row: sqlite3.Row) -> UsageFact:
    return UsageFact(
        id=row["id"],
        organization_id=row["organization_id"],
        user_id=row["user_id"],
        model=row["model"],
        provider=row["provider"],
        feature=row["feature"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        is_free_model=bool(row["is_free_model"]),
        credits_charged=row["credits_charged"],
        created_at=_parse_ts(row["created_at"]),
        request_id=row["request_id"]
    )


def _invoice_from_row(row: sqlite3.Row) -> TopupInvoice:
    return TopupInvoice(
        invoice_id=row["invoice_id"],
        organization_id=row["organization_id"],
        credits=row["credits"],
        total_cents=row["total_cents"],
        status=row["status"],
        created_at=_parse_ts(row["created_at"])
    )


def _is_transient(exc: BaseException) -> bool:
    """Only errors flagged transient (write conflicts, busy store) are retried."""
    return isinstance(exc, CreditEngineError) and exc.transient


def _window_clause(column: str, start: Optional[datetime], end: Optional[datetime],
                   conditions: List[str], params: List[Any]) -> None:
    if start is not None:
        conditions.append(f"{column} >= ?")
        params.append(_ts(start))
    if end is not None:
        conditions.append(f"{column} < ?")
        params.append(_ts(end))


@dataclass(frozen=True)
class LedgerDiscrepancy:
    """A mismatch found while checking balances against the ledger."""
    balance: str
    field: str
    expected: Any
    actual: Any
    message: str = ""


# -- Transaction ----------------------------------------------------------------

class LedgerTransaction:
    """Read-modify-write operations bound to one open write transaction.

    Obtained only through ``LedgerStore.atomic``; never commits on its own.
    """

    def __init__(self, conn: sqlite3.Connection, now: datetime, transaction_id: str):
        self.conn = conn
        self.now = now
        self.transaction_id = transaction_id
        self.entries: List[LedgerEntry] = []

    # Reads

    def read_pool(self, organization_id: str) -> Optional[OrganizationPool]:
        row = self.conn.execute(
            "SELECT * FROM organization_pool WHERE organization_id = ?",
            (organization_id,)
        ).fetchone()
        return _pool_from_row(row) if row else None

    def ensure_pool(self, organization_id: str) -> OrganizationPool:
        """Return the org pool, creating an empty one on first use."""
        pool = self.read_pool(organization_id)
        if pool is not None:
            return pool
        now = _ts(self.now)
        self.conn.execute("""
            INSERT INTO organization_pool
            (organization_id, monthly_credits_total, monthly_credits_remaining,
             topup_credits_remaining, version, created_at, updated_at)
            VALUES (?, 0, 0, 0, 0, ?, ?)
        """, (organization_id, now, now))
        return OrganizationPool(organization_id, 0, 0, 0)

    def read_allocation(self, organization_id: str, user_id: str, feature: str) -> Optional[MemberAllocation]:
        row = self.conn.execute("""
            SELECT * FROM member_allocation
            WHERE organization_id = ? AND user_id = ? AND feature = ?
        """, (organization_id, user_id, feature)).fetchone()
        return _allocation_from_row(row) if row else None

    # Writes

    def _write_pool(self, current: OrganizationPool, new: OrganizationPool) -> OrganizationPool:
        cursor = self.conn.execute("""
            UPDATE organization_pool
            SET monthly_credits_total = ?,
                monthly_credits_remaining = ?,
                topup_credits_remaining = ?,
                period_start = ?,
                period_end = ?,
                version = version + 1,
                updated_at = ?
            WHERE organization_id = ? AND version = ?
        """, (
            new.monthly_credits_total,
            new.monthly_credits_remaining,
            new.topup_credits_remaining,
            _ts(new.period_start),
            _ts(new.period_end),
            _ts(self.now),
            current.organization_id,
            current.version
        ))
        if cursor.rowcount != 1:
            raise ConcurrencyConflict(
                f"Org pool {current.organization_id} changed during update",
                details={'organization_id': current.organization_id, 'version': current.version}
            )
        return replace(new, version=current.version + 1)

    def _write_allocation(self, current: Optional[MemberAllocation], new: MemberAllocation) -> MemberAllocation:
        now = _ts(self.now)
        if current is None:
            try:
                self.conn.execute("""
                    INSERT INTO member_allocation
                    (organization_id, user_id, feature, credits_allocated, credits_remaining,
                     allocated_by, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                """, (
                    new.organization_id, new.user_id, new.feature,
                    new.credits_allocated, new.credits_remaining,
                    new.allocated_by, now, now
                ))
            except sqlite3.IntegrityError as e:
                raise ConcurrencyConflict(
                    f"Allocation {new.ref} was created concurrently",
                    details={'balance': str(new.ref)}
                ) from e
            return replace(new, version=0)

        cursor = self.conn.execute("""
            UPDATE member_allocation
            SET credits_allocated = ?,
                credits_remaining = ?,
                allocated_by = ?,
                version = version + 1,
                updated_at = ?
            WHERE organization_id = ? AND user_id = ? AND feature = ? AND version = ?
        """, (
            new.credits_allocated, new.credits_remaining, new.allocated_by, now,
            current.organization_id, current.user_id, current.feature, current.version
        ))
        if cursor.rowcount != 1:
            raise ConcurrencyConflict(
                f"Allocation {current.ref} changed during update",
                details={'balance': str(current.ref), 'version': current.version}
            )
        return replace(new, version=current.version + 1)

    def new_entry(self, **fields: Any) -> LedgerEntry:
        """Build an entry stamped with this transaction's id and clock."""
        fields.setdefault("id", str(uuid.uuid4()))
        fields.setdefault("transaction_id", self.transaction_id)
        fields.setdefault("created_at", self.now)
        return LedgerEntry(**fields)

    def append_entry(self, entry: LedgerEntry) -> str:
        """Append an immutable ledger entry and return its id."""
        self.conn.execute("""
            INSERT INTO ledger_entry
            (id, transaction_id, organization_id, user_id, subject_user_id, feature,
             balance_kind, entry_type, amount, monthly_delta, topup_delta, monthly_total,
             balance_before, balance_after, description, usage_fact_id, invoice_id,
             is_mirror, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.id,
            entry.transaction_id,
            entry.organization_id,
            entry.user_id,
            entry.subject_user_id,
            entry.feature,
            entry.balance_kind.value,
            entry.entry_type.value,
            entry.amount,
            entry.monthly_delta,
            entry.topup_delta,
            entry.monthly_total,
            entry.balance_before,
            entry.balance_after,
            entry.description,
            entry.usage_fact_id,
            entry.invoice_id,
            int(entry.is_mirror),
            _ts(entry.created_at)
        ))
        self.entries.append(entry)
        return entry.id

    def insert_usage_fact(self, fact: UsageFact) -> str:
        self.conn.execute("""
            INSERT INTO usage_fact
            (id, organization_id, user_id, model, provider, feature, input_tokens,
             output_tokens, is_free_model, credits_charged, request_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            fact.id,
            fact.organization_id,
            fact.user_id,
            fact.model,
            fact.provider,
            fact.feature,
            fact.input_tokens,
            fact.output_tokens,
            int(fact.is_free_model),
            fact.credits_charged,
            fact.request_id,
            _ts(fact.created_at)
        ))
        return fact.id

    def insert_invoice(self, invoice: TopupInvoice) -> None:
        self.conn.execute("""
            INSERT INTO topup_invoice
            (invoice_id, organization_id, credits, total_cents, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            invoice.invoice_id,
            invoice.organization_id,
            invoice.credits,
            invoice.total_cents,
            invoice.status,
            _ts(invoice.created_at)
        ))

    def has_invoice(self, invoice_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM topup_invoice WHERE invoice_id = ?", (invoice_id,)
        ).fetchone()
        return row is not None

    # Balance movements

    def refresh_period(self, organization_id: str, actor_user_id: Optional[str] = None) -> Optional[OrganizationPool]:
        """Reset monthly credits if the pool's cycle has ended.

        Monthly credits are use-it-or-lose-it: once ``period_end`` passes,
        the monthly tier is restored to its total and the period advances by
        whole months until it covers now. Recorded as a renewal entry.
        """
        pool = self.read_pool(organization_id)
        if pool is None or not pool.period_expired(self.now):
            return pool

        period_start = pool.period_end
        period_end = add_months(period_start)
        while period_end <= self.now:
            period_start, period_end = period_end, add_months(period_end)

        renewed = replace(
            pool,
            monthly_credits_remaining=pool.monthly_credits_total,
            period_start=period_start,
            period_end=period_end
        )
        delta = renewed.monthly_credits_remaining - pool.monthly_credits_remaining
        written = self._write_pool(pool, renewed)
        self.append_entry(self.new_entry(
            organization_id=organization_id,
            user_id=actor_user_id,
            balance_kind=BalanceKind.ORG,
            entry_type=EntryType.SUBSCRIPTION_RENEWAL,
            amount=delta,
            balance_before=pool.effective_total,
            balance_after=renewed.effective_total,
            description="Monthly credit reset",
            monthly_delta=delta,
            monthly_total=pool.monthly_credits_total
        ))
        logger.info(
            f"[LEDGER] Monthly reset for {organization_id}: monthly restored to "
            f"{pool.monthly_credits_total}, next period ends {period_end.isoformat()}"
        )
        return written

    def set_monthly_allowance(
        self,
        organization_id: str,
        monthly_total: int,
        actor_user_id: Optional[str],
        description: str,
        entry_type: EntryType,
        period_start: datetime,
        period_end: Optional[datetime],
    ) -> LedgerEntry:
        """Start a new cycle with ``monthly_total`` credits in the monthly tier.

        Unused monthly credits from the previous cycle do not roll over; the
        entry amount is the net change of the monthly tier.
        """
        if monthly_total < 0:
            raise InvalidAmount(monthly_total, "Monthly credits cannot be negative")
        pool = self.ensure_pool(organization_id)
        renewed = replace(
            pool,
            monthly_credits_total=monthly_total,
            monthly_credits_remaining=monthly_total,
            period_start=period_start,
            period_end=period_end
        )
        delta = monthly_total - pool.monthly_credits_remaining
        self._write_pool(pool, renewed)
        entry = self.new_entry(
            organization_id=organization_id,
            user_id=actor_user_id,
            balance_kind=BalanceKind.ORG,
            entry_type=entry_type,
            amount=delta,
            balance_before=pool.effective_total,
            balance_after=renewed.effective_total,
            description=description,
            monthly_delta=delta,
            monthly_total=monthly_total
        )
        self.append_entry(entry)
        return entry

    def zero_pool(self, organization_id: str, actor_user_id: Optional[str], description: str) -> Optional[LedgerEntry]:
        """Zero every tier of the pool (subscription cancellation)."""
        pool = self.read_pool(organization_id)
        if pool is None:
            return None
        zeroed = replace(
            pool,
            monthly_credits_total=0,
            monthly_credits_remaining=0,
            topup_credits_remaining=0,
            period_end=None
        )
        self._write_pool(pool, zeroed)
        entry = self.new_entry(
            organization_id=organization_id,
            user_id=actor_user_id,
            balance_kind=BalanceKind.ORG,
            entry_type=EntryType.ADMIN_ADJUSTMENT,
            amount=-pool.effective_total,
            balance_before=pool.effective_total,
            balance_after=0,
            description=description,
            monthly_delta=-pool.monthly_credits_remaining,
            topup_delta=-pool.topup_credits_remaining,
            monthly_total=0
        )
        self.append_entry(entry)
        return entry

    def post(
        self,
        posting: Posting,
        actor_user_id: Optional[str],
        description: str,
        usage_fact_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Apply one signed amount to one balance and append its ledger entry.

        Raises:
            InsufficientOrgCredits / InsufficientMemberCredits: If the
                balance cannot cover a debit
            InvalidAmount: If the amount is zero or credits an invalid tier
        """
        if posting.amount == 0:
            raise InvalidAmount(0, "Postings must move a non-zero amount")
        if posting.ref.kind == BalanceKind.ORG:
            return self._post_org(posting, actor_user_id, description, usage_fact_id, invoice_id)
        return self._post_member(posting, actor_user_id, description, usage_fact_id)

    def _post_org(self, posting: Posting, actor_user_id: Optional[str], description: str,
                  usage_fact_id: Optional[str], invoice_id: Optional[str]) -> LedgerEntry:
        organization_id = posting.ref.organization_id
        self.refresh_period(organization_id, actor_user_id)
        pool = self.ensure_pool(organization_id)
        amount = posting.amount

        if amount < 0:
            needed = -amount
            if not posting.allow_negative and pool.effective_total < needed:
                raise InsufficientOrgCredits(
                    required=needed,
                    available=pool.effective_total,
                    details={
                        'organization_id': organization_id,
                        'monthly': pool.monthly_credits_remaining,
                        'topup': pool.topup_credits_remaining
                    }
                )
            # Monthly first: it expires with the cycle, top-up does not
            from_monthly = min(needed, max(pool.monthly_credits_remaining, 0))
            monthly_delta = -from_monthly
            topup_delta = -(needed - from_monthly)
        elif (posting.tier or PoolTier.TOPUP) == PoolTier.MONTHLY:
            if pool.monthly_credits_remaining + amount > pool.monthly_credits_total:
                raise InvalidAmount(amount, "Monthly credits cannot exceed the monthly total")
            monthly_delta, topup_delta = amount, 0
        else:
            monthly_delta, topup_delta = 0, amount

        updated = replace(
            pool,
            monthly_credits_remaining=pool.monthly_credits_remaining + monthly_delta,
            topup_credits_remaining=pool.topup_credits_remaining + topup_delta
        )
        self._write_pool(pool, updated)
        entry = self.new_entry(
            organization_id=organization_id,
            user_id=actor_user_id,
            balance_kind=BalanceKind.ORG,
            entry_type=posting.entry_type,
            amount=amount,
            balance_before=pool.effective_total,
            balance_after=updated.effective_total,
            description=description,
            monthly_delta=monthly_delta,
            topup_delta=topup_delta,
            usage_fact_id=usage_fact_id,
            invoice_id=invoice_id
        )
        self.append_entry(entry)
        return entry

    def _post_member(self, posting: Posting, actor_user_id: Optional[str], description: str,
                     usage_fact_id: Optional[str]) -> LedgerEntry:
        ref = posting.ref
        if posting.entry_type not in MEMBER_ENTRY_TYPES:
            raise ValueError(f"{posting.entry_type.value} cannot be posted to a member allocation")

        current = self.read_allocation(ref.organization_id, ref.user_id, ref.feature)
        allocated = current.credits_allocated if current else 0
        remaining = current.credits_remaining if current else 0
        allocated_by = current.allocated_by if current else None
        amount = posting.amount

        if amount > 0:
            if posting.entry_type != EntryType.ALLOCATION_IN:
                raise ValueError("Only allocations can credit a member balance")
            new_allocated = allocated + amount
            new_remaining = remaining + amount
            allocated_by = actor_user_id
        else:
            needed = -amount
            if remaining < needed:
                raise InsufficientMemberCredits(
                    required=needed,
                    available=remaining,
                    details={
                        'organization_id': ref.organization_id,
                        'user_id': ref.user_id,
                        'feature': ref.feature
                    }
                )
            new_remaining = remaining - needed
            if posting.entry_type in ALLOCATION_MOVING_TYPES:
                new_allocated = allocated - needed
            else:
                new_allocated = allocated

        self._write_allocation(current, MemberAllocation(
            organization_id=ref.organization_id,
            user_id=ref.user_id,
            feature=ref.feature,
            credits_allocated=new_allocated,
            credits_remaining=new_remaining,
            allocated_by=allocated_by
        ))
        entry = self.new_entry(
            organization_id=ref.organization_id,
            user_id=actor_user_id,
            balance_kind=BalanceKind.MEMBER,
            entry_type=posting.entry_type,
            amount=amount,
            balance_before=remaining,
            balance_after=new_remaining,
            description=description,
            subject_user_id=ref.user_id,
            feature=ref.feature,
            usage_fact_id=usage_fact_id
        )
        self.append_entry(entry)
        return entry


# -- Store --------------------------------------------------------------------------

class LedgerStore:
    """SQLite-backed ledger with materialized balances.

    Connections are opened per operation, so one store instance may be
    shared by request-handling threads.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        retry: Optional[RetryConfig] = None,
        busy_timeout_ms: int = 5000,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
            retry: Backoff policy for concurrency conflicts
            busy_timeout_ms: How long a writer waits for the write lock
            clock: Source of "now", injectable for tests
        """
        self.db_path = db_path
        self.retry = retry or RetryConfig()
        self.busy_timeout_ms = busy_timeout_ms
        self.clock = clock

    @classmethod
    def from_config(cls, config: EngineConfig, clock: Callable[[], datetime] = utc_now) -> "LedgerStore":
        return cls(
            db_path=config.database.path,
            retry=config.retry,
            busy_timeout_ms=config.database.busy_timeout_ms,
            clock=clock
        )

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path, self.busy_timeout_ms)

    def initialize_schema(self) -> None:
        """Create all tables if they don't exist.

        The ledger and usage tables are append-only; triggers reject any
        UPDATE or DELETE against them.
        """
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        finally:
            conn.close()

    # Atomic execution

    def _run_once(self, fn: Callable[[LedgerTransaction], T]) -> T:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            tx = LedgerTransaction(conn, now=self.clock(), transaction_id=str(uuid.uuid4()))
            result = fn(tx)
            conn.execute("COMMIT")
            return result
        except sqlite3.Error as e:
            self._rollback(conn)
            if is_busy_error(e):
                raise ConcurrencyConflict("Ledger store is busy", details={'error': str(e)}) from e
            logger.error(f"[LEDGER] Write failed: {e}", exc_info=True)
            raise PersistenceFailure(f"Ledger write failed: {e}", details={'db_path': self.db_path}) from e
        except Exception:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    @staticmethod
    def _log_retry(retry_state: Any) -> None:
        logger.warning(
            f"[LEDGER] Concurrency conflict, retrying (attempt {retry_state.attempt_number})"
        )

    def atomic(self, fn: Callable[[LedgerTransaction], T]) -> T:
        """Run ``fn`` in one write transaction, retrying on conflicts.

        Raises:
            ConcurrencyConflict: If every attempt conflicted
            PersistenceFailure: If the database rejected the write
            Any exception raised by ``fn`` (after rolling back)
        """
        retrying = Retrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_exponential(multiplier=self.retry.min_wait_seconds, max=self.retry.max_wait_seconds),
            before_sleep=self._log_retry,
            reraise=True
        )
        return retrying(self._run_once, fn)

    def transfer(
        self,
        postings: Sequence[Posting],
        actor_user_id: Optional[str],
        description: str,
        usage_fact_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> List[LedgerEntry]:
        """Apply every posting atomically, or none of them.

        Args:
            postings: (balance, signed amount) legs of one logical operation
            actor_user_id: User performing the operation
            description: Human-readable description for every entry

        Returns:
            The appended entries, one per posting, sharing a transaction id
        """
        if not postings:
            raise ValueError("transfer requires at least one posting")

        def _apply(tx: LedgerTransaction) -> List[LedgerEntry]:
            return [
                tx.post(posting, actor_user_id, description,
                        usage_fact_id=usage_fact_id, invoice_id=invoice_id)
                for posting in postings
            ]

        return self.atomic(_apply)

    def append_entry(self, entry: LedgerEntry) -> str:
        """Append a standalone entry that moves no balance (e.g. an annotation)."""
        return self.atomic(lambda tx: tx.append_entry(entry))

    # Balance reads

    def current_balance(self, organization_id: str) -> Optional[OrganizationPool]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM organization_pool WHERE organization_id = ?",
                (organization_id,)
            ).fetchone()
            return _pool_from_row(row) if row else None
        finally:
            conn.close()

    def current_allocation(self, organization_id: str, user_id: str, feature: str) -> Optional[MemberAllocation]:
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT * FROM member_allocation
                WHERE organization_id = ? AND user_id = ? AND feature = ?
            """, (organization_id, user_id, feature)).fetchone()
            return _allocation_from_row(row) if row else None
        finally:
            conn.close()

    def list_allocations(self, organization_id: str, user_id: Optional[str] = None) -> List[MemberAllocation]:
        conn = self._connect()
        try:
            query = "SELECT * FROM member_allocation WHERE organization_id = ?"
            params: List[Any] = [organization_id]
            if user_id:
                query += " AND user_id = ?"
                params.append(user_id)
            query += " ORDER BY created_at DESC, id DESC"
            return [_allocation_from_row(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def list_entries(
        self,
        organization_id: str,
        balance_ref: Optional[BalanceRef] = None,
        include_mirrors: bool = True,
    ) -> List[LedgerEntry]:
        """Ledger entries of an organization in append order."""
        conn = self._connect()
        try:
            query = "SELECT * FROM ledger_entry WHERE organization_id = ?"
            params: List[Any] = [organization_id]
            if balance_ref is not None:
                query += " AND balance_kind = ?"
                params.append(balance_ref.kind.value)
                if balance_ref.kind == BalanceKind.MEMBER:
                    query += " AND subject_user_id = ? AND feature = ?"
                    params.extend([balance_ref.user_id, balance_ref.feature])
                include_mirrors = False
            if not include_mirrors:
                query += " AND is_mirror = 0"
            query += " ORDER BY seq"
            return [_entry_from_row(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def entries_for_usage_fact(self, usage_fact_id: str) -> List[LedgerEntry]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM ledger_entry WHERE usage_fact_id = ? ORDER BY seq",
                (usage_fact_id,)
            ).fetchall()
            return [_entry_from_row(row) for row in rows]
        finally:
            conn.close()

    # Usage facts and invoices

    def insert_usage_fact(self, fact: UsageFact) -> str:
        return self.atomic(lambda tx: tx.insert_usage_fact(fact))

    def list_usage_facts(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        organization_id: Optional[str] = None,
    ) -> List[UsageFact]:
        """Usage facts in ``[start, end)``, oldest first. Read-only, takes no lock."""
        conn = self._connect()
        try:
            query = "SELECT * FROM usage_fact"
            conditions: List[str] = []
            params: List[Any] = []
            if organization_id:
                conditions.append("organization_id = ?")
                params.append(organization_id)
            _window_clause("created_at", start, end, conditions, params)
            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " ORDER BY created_at, seq"
            return [_fact_from_row(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def list_paid_topup_invoices(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        organization_id: Optional[str] = None,
    ) -> List[TopupInvoice]:
        conn = self._connect()
        try:
            query = "SELECT * FROM topup_invoice"
            conditions = ["status = ?"]
            params: List[Any] = ["paid"]
            if organization_id:
                conditions.append("organization_id = ?")
                params.append(organization_id)
            _window_clause("created_at", start, end, conditions, params)
            query += " WHERE " + " AND ".join(conditions) + " ORDER BY created_at"
            return [_invoice_from_row(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def list_pools(self) -> List[OrganizationPool]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM organization_pool ORDER BY organization_id").fetchall()
            return [_pool_from_row(row) for row in rows]
        finally:
            conn.close()

    # Membership

    def upsert_member(self, member: OrgMember) -> None:
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO org_member (organization_id, user_id, role, display_name)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (organization_id, user_id)
                DO UPDATE SET role = excluded.role, display_name = excluded.display_name
            """, (member.organization_id, member.user_id, member.role, member.display_name))
        finally:
            conn.close()

    def get_member(self, organization_id: str, user_id: str) -> Optional[OrgMember]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM org_member WHERE organization_id = ? AND user_id = ?",
                (organization_id, user_id)
            ).fetchone()
            if not row:
                return None
            return OrgMember(row["organization_id"], row["user_id"], row["role"], row["display_name"])
        finally:
            conn.close()

    def list_members(self, organization_id: str, roles: Optional[Iterable[str]] = None) -> List[OrgMember]:
        conn = self._connect()
        try:
            query = "SELECT * FROM org_member WHERE organization_id = ?"
            params: List[Any] = [organization_id]
            roles = list(roles) if roles is not None else None
            if roles:
                query += " AND role IN (" + ", ".join("?" for _ in roles) + ")"
                params.extend(roles)
            query += " ORDER BY user_id"
            return [
                OrgMember(row["organization_id"], row["user_id"], row["role"], row["display_name"])
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()

    # Notification outbox

    def enqueue_notification(self, request: NotificationRequest) -> None:
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO notification_request
                (user_id, organization_id, type, title, body, link, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                request.user_id,
                request.org_id,
                request.type,
                request.title,
                request.body,
                request.link,
                _ts(request.created_at or self.clock())
            ))
        finally:
            conn.close()

    def list_notifications(self, organization_id: Optional[str] = None,
                           user_id: Optional[str] = None) -> List[NotificationRequest]:
        conn = self._connect()
        try:
            query = "SELECT * FROM notification_request"
            conditions: List[str] = []
            params: List[Any] = []
            if organization_id:
                conditions.append("organization_id = ?")
                params.append(organization_id)
            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)
            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " ORDER BY id"
            return [
                NotificationRequest(
                    user_id=row["user_id"],
                    org_id=row["organization_id"],
                    type=row["type"],
                    title=row["title"],
                    body=row["body"],
                    link=row["link"],
                    created_at=_parse_ts(row["created_at"])
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()

    # Replay and reconciliation

    def replay_pool(self, organization_id: str) -> Optional[OrganizationPool]:
        """Recompute an org pool by folding its ledger entries in order."""
        entries = self.list_entries(organization_id, BalanceRef.org(organization_id))
        if not entries:
            return None
        total = monthly = topup = 0
        for entry in entries:
            monthly += entry.monthly_delta
            topup += entry.topup_delta
            if entry.monthly_total is not None:
                total = entry.monthly_total
        return OrganizationPool(organization_id, total, monthly, topup)

    def replay_allocation(self, organization_id: str, user_id: str, feature: str) -> Optional[MemberAllocation]:
        """Recompute a member allocation by folding its ledger entries in order."""
        ref = BalanceRef.member(organization_id, user_id, feature)
        entries = self.list_entries(organization_id, ref)
        if not entries:
            return None
        allocated = remaining = 0
        for entry in entries:
            remaining += entry.amount
            if entry.entry_type in ALLOCATION_MOVING_TYPES:
                allocated += entry.amount
        return MemberAllocation(organization_id, user_id, feature, allocated, remaining)

    def _allocation_keys(self, organization_id: str) -> List[Tuple[str, str]]:
        keys = {(a.user_id, a.feature) for a in self.list_allocations(organization_id)}
        for entry in self.list_entries(organization_id, include_mirrors=False):
            if entry.balance_kind == BalanceKind.MEMBER:
                keys.add((entry.subject_user_id, entry.feature))
        return sorted(keys)

    def verify(self, organization_id: str) -> List[LedgerDiscrepancy]:
        """Compare materialized balances with a ledger replay.

        Also checks that every balance's entries chain: each entry's
        ``balance_before`` equals the preceding entry's ``balance_after`` and
        ``balance_after - balance_before == amount``.

        Returns:
            Discrepancies found (empty when counters and ledger agree)
        """
        problems: List[LedgerDiscrepancy] = []

        stored_pool = self.current_balance(organization_id)
        replayed_pool = self.replay_pool(organization_id)
        label = str(BalanceRef.org(organization_id))
        if (stored_pool is None) != (replayed_pool is None):
            if stored_pool is None or stored_pool.effective_total != 0 or stored_pool.monthly_credits_total != 0:
                problems.append(LedgerDiscrepancy(
                    label, "row", "present" if replayed_pool else "absent",
                    "present" if stored_pool else "absent", "pool row and ledger disagree on existence"
                ))
        elif stored_pool is not None:
            for field_name in ("monthly_credits_total", "monthly_credits_remaining", "topup_credits_remaining"):
                expected = getattr(replayed_pool, field_name)
                actual = getattr(stored_pool, field_name)
                if expected != actual:
                    problems.append(LedgerDiscrepancy(label, field_name, expected, actual, "counter diverged from ledger"))
        problems.extend(self._verify_chain(organization_id, BalanceRef.org(organization_id)))

        for user_id, feature in self._allocation_keys(organization_id):
            ref = BalanceRef.member(organization_id, user_id, feature)
            stored = self.current_allocation(organization_id, user_id, feature)
            replayed = self.replay_allocation(organization_id, user_id, feature)
            stored_values = (stored.credits_allocated, stored.credits_remaining) if stored else (0, 0)
            replayed_values = (replayed.credits_allocated, replayed.credits_remaining) if replayed else (0, 0)
            for field_name, expected, actual in zip(
                ("credits_allocated", "credits_remaining"), replayed_values, stored_values
            ):
                if expected != actual:
                    problems.append(LedgerDiscrepancy(str(ref), field_name, expected, actual, "counter diverged from ledger"))
            problems.extend(self._verify_chain(organization_id, ref))

        return problems

    def _verify_chain(self, organization_id: str, ref: BalanceRef) -> List[LedgerDiscrepancy]:
        problems: List[LedgerDiscrepancy] = []
        previous: Optional[LedgerEntry] = None
        for entry in self.list_entries(organization_id, ref):
            if entry.balance_after - entry.balance_before != entry.amount:
                problems.append(LedgerDiscrepancy(
                    str(ref), "amount", entry.balance_after - entry.balance_before, entry.amount,
                    f"entry {entry.id} amount does not match before/after"
                ))
            if previous is not None and entry.balance_before != previous.balance_after:
                problems.append(LedgerDiscrepancy(
                    str(ref), "balance_before", previous.balance_after, entry.balance_before,
                    f"entry {entry.id} does not chain from entry {previous.id}"
                ))
            previous = entry
        return problems

    def repair(self, organization_id: str) -> int:
        """Rewrite materialized balances from the ledger.

        The ledger is the source of truth; this is the operational repair
        tool for counters that diverged. Appends no entries.

        Returns:
            Number of balance rows rewritten
        """
        replayed_pool = self.replay_pool(organization_id)
        replayed_allocations = [
            self.replay_allocation(organization_id, user_id, feature)
            for user_id, feature in self._allocation_keys(organization_id)
        ]

        def _apply(tx: LedgerTransaction) -> int:
            fixed = 0
            if replayed_pool is not None:
                pool = tx.ensure_pool(organization_id)
                target = replace(
                    pool,
                    monthly_credits_total=replayed_pool.monthly_credits_total,
                    monthly_credits_remaining=replayed_pool.monthly_credits_remaining,
                    topup_credits_remaining=replayed_pool.topup_credits_remaining
                )
                if target != pool:
                    tx._write_pool(pool, target)
                    fixed += 1
            for replayed in replayed_allocations:
                if replayed is None:
                    continue
                current = tx.read_allocation(organization_id, replayed.user_id, replayed.feature)
                target = replace(
                    replayed,
                    allocated_by=current.allocated_by if current else None,
                    version=current.version if current else 0
                )
                if current != target:
                    tx._write_allocation(current, target)
                    fixed += 1
            return fixed

        fixed = self.atomic(_apply)
        if fixed:
            logger.warning(f"[LEDGER] Repaired {fixed} balance row(s) for {organization_id} from ledger")
        return fixed


def summarize_entries(entries: Iterable[LedgerEntry]) -> Dict[str, int]:
    """Net amount per entry type, mirrors excluded."""
    totals: Dict[str, int] = {}
    for entry in entries:
        if entry.is_mirror:
            continue
        totals[entry.entry_type.value] = totals.get(entry.entry_type.value, 0) + entry.amount
    return totals
