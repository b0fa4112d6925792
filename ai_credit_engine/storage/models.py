"""
Data models for storage layer.

Defines ledger entities, balance projections and the records the engine
exchanges with its collaborators.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EntryType(Enum):
    """Kinds of balance-affecting events recorded on the ledger."""
    GRANT = "grant"
    SUBSCRIPTION_RENEWAL = "subscription-renewal"
    TOPUP = "topup"
    ALLOCATION_OUT = "allocation-out"
    ALLOCATION_IN = "allocation-in"
    RECLAIM_OUT = "reclaim-out"
    RECLAIM_IN = "reclaim-in"
    USAGE_DEDUCTION = "usage-deduction"
    ADMIN_ADJUSTMENT = "admin-adjustment"


# Member entry types that move credits_allocated as well as credits_remaining
ALLOCATION_MOVING_TYPES = (EntryType.ALLOCATION_IN, EntryType.RECLAIM_OUT)

MEMBER_ENTRY_TYPES = (EntryType.ALLOCATION_IN, EntryType.RECLAIM_OUT, EntryType.USAGE_DEDUCTION)


class BalanceKind(Enum):
    ORG = "org"
    MEMBER = "member"


class PoolTier(Enum):
    """Org pool tiers. Monthly credits expire with the cycle, top-up credits never do."""
    MONTHLY = "monthly"
    TOPUP = "topup"


@dataclass(frozen=True)
class BalanceRef:
    """Identifies one mutable balance row: an org pool or a member allocation."""
    organization_id: str
    user_id: Optional[str] = None
    feature: Optional[str] = None

    def __post_init__(self):
        if (self.user_id is None) != (self.feature is None):
            raise ValueError("member balance refs need both user_id and feature")

    @classmethod
    def org(cls, organization_id: str) -> "BalanceRef":
        return cls(organization_id)

    @classmethod
    def member(cls, organization_id: str, user_id: str, feature: str) -> "BalanceRef":
        return cls(organization_id, user_id, feature)

    @property
    def kind(self) -> BalanceKind:
        return BalanceKind.ORG if self.user_id is None else BalanceKind.MEMBER

    def __str__(self) -> str:
        if self.kind == BalanceKind.ORG:
            return f"org:{self.organization_id}"
        return f"member:{self.organization_id}:{self.user_id}:{self.feature}"


@dataclass(frozen=True)
class Posting:
    """One leg of a transfer: a signed amount applied to one balance.

    ``tier`` picks the org-pool tier for credits; debits from the org pool
    always consume monthly credits before top-up credits.
    """
    ref: BalanceRef
    amount: int
    entry_type: EntryType
    tier: Optional[PoolTier] = None
    allow_negative: bool = False


@dataclass(frozen=True)
class OrganizationPool:
    """Materialized org-level balance."""
    organization_id: str
    monthly_credits_total: int
    monthly_credits_remaining: int
    topup_credits_remaining: int
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    version: int = 0

    @property
    def effective_total(self) -> int:
        """Credits spendable right now (monthly + top-up)."""
        return self.monthly_credits_remaining + self.topup_credits_remaining

    def period_expired(self, now: datetime) -> bool:
        return self.period_end is not None and self.period_end <= now


@dataclass(frozen=True)
class MemberAllocation:
    """Materialized per-member, per-feature carve-out of the org pool."""
    organization_id: str
    user_id: str
    feature: str
    credits_allocated: int
    credits_remaining: int
    allocated_by: Optional[str] = None
    version: int = 0

    @property
    def ref(self) -> BalanceRef:
        return BalanceRef.member(self.organization_id, self.user_id, self.feature)

    @property
    def remaining_fraction(self) -> float:
        if self.credits_allocated <= 0:
            return 0.0
        return self.credits_remaining / self.credits_allocated


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of one balance-affecting event.

    ``balance_before``/``balance_after`` are the org pool's effective total
    for org entries and the allocation's remaining credits for member
    entries. Mirror entries are org-level copies of member deductions
    tagged ``[Team]``; they never move the org pool.
    """
    id: str
    transaction_id: str
    organization_id: str
    user_id: Optional[str]
    balance_kind: BalanceKind
    entry_type: EntryType
    amount: int
    balance_before: int
    balance_after: int
    description: str
    created_at: datetime
    subject_user_id: Optional[str] = None
    feature: Optional[str] = None
    monthly_delta: int = 0
    topup_delta: int = 0
    monthly_total: Optional[int] = None  # set when the entry redefines the monthly total
    usage_fact_id: Optional[str] = None
    invoice_id: Optional[str] = None
    is_mirror: bool = False
    seq: Optional[int] = None

    @property
    def balance_ref(self) -> BalanceRef:
        if self.balance_kind == BalanceKind.ORG:
            return BalanceRef.org(self.organization_id)
        return BalanceRef.member(self.organization_id, self.subject_user_id, self.feature)


@dataclass(frozen=True)
class UsageFact:
    """Immutable record of one metered AI call."""
    id: str
    organization_id: str
    user_id: Optional[str]
    model: str
    provider: str
    feature: str
    input_tokens: int
    output_tokens: int
    is_free_model: bool
    credits_charged: int
    created_at: datetime
    request_id: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class TopupInvoice:
    """A top-up purchase, as reported by the payment webhook."""
    invoice_id: str
    organization_id: str
    credits: int
    total_cents: int
    status: str
    created_at: datetime


@dataclass(frozen=True)
class OrgMember:
    organization_id: str
    user_id: str
    role: str
    display_name: Optional[str] = None


@dataclass(frozen=True)
class NotificationRequest:
    """Request handed to the external notification collaborator."""
    user_id: str
    org_id: str
    type: str
    title: str
    body: str
    link: Optional[str] = None
    created_at: Optional[datetime] = None
