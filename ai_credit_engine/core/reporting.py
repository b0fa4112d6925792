"""
Cost and margin reporting.

Read-only batch report over usage facts and paid top-up invoices. Provider
cost is always recomputed from the pricing catalog (using the entry in effect
when each call happened), never taken from the credits charged at call time,
so corrected prices flow into every later report.

Like the rest of the read side, building a report:
1. Takes no locks and writes nothing
2. Raises nothing for an empty or not-yet-initialized database
3. Is deterministic for the same facts, catalog and window
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from ai_credit_engine.storage.models import TopupInvoice, UsageFact, utc_now
from ai_credit_engine.storage.repository import LedgerStore
from .pricing import PricingCatalog, calculate_provider_cost
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CREDITS_PER_CURRENCY_UNIT = Decimal("100")

RECENT_REQUEST_LIMIT = 50
UNKNOWN_USER = "Unknown"
SYSTEM_USER = "system"

PERIOD_DAYS = {
    "7d": 7,
    "30d": 30,
    "90d": 90,
}


@dataclass(frozen=True)
class ReportWindow:
    """Half-open time window ``[start, end)``; None means unbounded."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def from_period(cls, period: str, now: Optional[datetime] = None) -> "ReportWindow":
        """Window for a named period: "7d", "30d", "90d" or "all".

        Raises:
            ValueError: If the period name is not recognised
        """
        if period == "all":
            return cls()
        if period not in PERIOD_DAYS:
            raise ValueError(f"Unknown report period: {period} (expected 7d, 30d, 90d or all)")
        now = now or utc_now()
        return cls(start=now - timedelta(days=PERIOD_DAYS[period]), end=None)

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment >= self.end:
            return False
        return True


@dataclass
class OrgCost:
    organization_id: str
    credits_used: int = 0
    requests: int = 0
    cost_usd: Decimal = ZERO
    monthly_allocation: int = 0


@dataclass
class ModelCost:
    model: str
    display_name: str
    provider: str
    is_free: bool
    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    credits_charged: int = 0
    cost_usd: Decimal = ZERO


@dataclass
class FeatureCost:
    feature: str
    requests: int = 0
    credits_charged: int = 0
    cost_usd: Decimal = ZERO


@dataclass
class UserCost:
    user_id: str
    user_name: str
    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    credits_charged: int = 0
    cost_usd: Decimal = ZERO


@dataclass(frozen=True)
class RecentRequest:
    """One metered call, listed when a report is filtered to a single model."""
    usage_fact_id: str
    user_id: str
    user_name: str
    feature: str
    input_tokens: int
    output_tokens: int
    credits_charged: int
    is_free: bool
    created_at: datetime


@dataclass(frozen=True)
class TopupRevenue:
    """Paid top-up invoices in the window, for cross-checking revenue."""
    total: Decimal
    count: int


@dataclass(frozen=True)
class CostSummary:
    total_cost_usd: Decimal
    total_cost: Decimal  # billing currency
    total_credits_charged: int
    revenue: Decimal
    profit: Decimal
    margin_pct: Decimal
    total_requests: int
    free_model_requests: int


@dataclass
class CostReport:
    """Cost, revenue and margin over a window."""
    window: ReportWindow
    summary: CostSummary
    by_organization: List[OrgCost] = field(default_factory=list)
    by_model: List[ModelCost] = field(default_factory=list)
    by_feature: List[FeatureCost] = field(default_factory=list)
    by_user: List[UserCost] = field(default_factory=list)
    topup_revenue: TopupRevenue = field(default_factory=lambda: TopupRevenue(ZERO, 0))
    unpriced_models: List[str] = field(default_factory=list)
    recent_requests: List[RecentRequest] = field(default_factory=list)


def summarize(facts_cost_usd: Decimal, credits: int, requests: int, free_requests: int,
              usd_exchange_rate: Decimal) -> CostSummary:
    """Derive revenue, profit and margin. One credit is one cent of revenue."""
    cost = facts_cost_usd * usd_exchange_rate
    revenue = Decimal(credits) / CREDITS_PER_CURRENCY_UNIT
    profit = revenue - cost
    margin_pct = (profit / revenue * Decimal("100")) if revenue > 0 else ZERO
    return CostSummary(
        total_cost_usd=facts_cost_usd,
        total_cost=cost,
        total_credits_charged=credits,
        revenue=revenue,
        profit=profit,
        margin_pct=margin_pct,
        total_requests=requests,
        free_model_requests=free_requests
    )


def build_cost_report(
    store: LedgerStore,
    catalog: PricingCatalog,
    window: ReportWindow,
    org_id: Optional[str] = None,
    usd_exchange_rate: Decimal = Decimal("1.0"),
    model: Optional[str] = None,
) -> CostReport:
    """Aggregate provider cost, credits charged and margin over a window.

    Args:
        store: Ledger store to read usage facts and invoices from
        catalog: Pricing catalog used to recompute provider cost
        window: Time window to report on
        org_id: Restrict to one organization; None reports on all of them
        usd_exchange_rate: Billing-currency units per USD
        model: Restrict to one model, by model id or catalog display name.
            A filtered report also lists its most recent requests.

    Returns:
        CostReport. Organizations are sorted by credits used, models by
        cost, features and users by credits charged, all descending.
    """
    try:
        facts = store.list_usage_facts(window.start, window.end, organization_id=org_id)
        invoices = store.list_paid_topup_invoices(window.start, window.end, organization_id=org_id)
        pools = {pool.organization_id: pool for pool in store.list_pools()}
    except sqlite3.OperationalError as e:
        # Database not initialized yet
        if "no such table" in str(e).lower():
            facts, invoices, pools = [], [], {}
        else:
            raise

    if model:
        model_ids = _resolve_model_filter(catalog, model)
        facts = [fact for fact in facts if fact.model in model_ids]

    user_names = _user_names(store, facts)
    orgs: Dict[str, OrgCost] = {}
    models: Dict[str, ModelCost] = {}
    features: Dict[str, FeatureCost] = {}
    users: Dict[str, UserCost] = {}
    unpriced = set()
    total_cost_usd = ZERO
    total_credits = 0
    free_requests = 0

    for fact in facts:
        cost_usd = _fact_cost(catalog, fact, unpriced)
        total_cost_usd += cost_usd
        total_credits += fact.credits_charged
        if fact.is_free_model:
            free_requests += 1

        org = orgs.get(fact.organization_id)
        if org is None:
            pool = pools.get(fact.organization_id)
            org = OrgCost(fact.organization_id, monthly_allocation=pool.monthly_credits_total if pool else 0)
            orgs[fact.organization_id] = org
        org.credits_used += fact.credits_charged
        org.requests += 1
        org.cost_usd += cost_usd

        model_cost = models.get(fact.model)
        if model_cost is None:
            pricing = catalog.find(fact.model)
            model_cost = ModelCost(
                model=fact.model,
                display_name=pricing.name if pricing else fact.model,
                provider=fact.provider,
                is_free=fact.is_free_model
            )
            models[fact.model] = model_cost
        model_cost.requests += 1
        model_cost.input_tokens += fact.input_tokens
        model_cost.output_tokens += fact.output_tokens
        model_cost.credits_charged += fact.credits_charged
        model_cost.cost_usd += cost_usd

        feature = features.setdefault(fact.feature, FeatureCost(fact.feature))
        feature.requests += 1
        feature.credits_charged += fact.credits_charged
        feature.cost_usd += cost_usd

        user_key = fact.user_id or SYSTEM_USER
        user = users.setdefault(user_key, UserCost(user_key, user_names[(fact.organization_id, fact.user_id)]))
        user.requests += 1
        user.input_tokens += fact.input_tokens
        user.output_tokens += fact.output_tokens
        user.credits_charged += fact.credits_charged
        user.cost_usd += cost_usd

    # Every catalog model is listed, even without usage
    if not model:
        for pricing in catalog.models():
            if pricing.model_id not in models:
                models[pricing.model_id] = ModelCost(
                    model=pricing.model_id,
                    display_name=pricing.name,
                    provider=pricing.provider,
                    is_free=pricing.is_free
                )

    if unpriced:
        logger.warning(f"[REPORT] No pricing for models {sorted(unpriced)}; their cost is reported as 0")

    report = CostReport(
        window=window,
        summary=summarize(total_cost_usd, total_credits, len(facts), free_requests, usd_exchange_rate),
        by_organization=sorted(orgs.values(), key=lambda o: (-o.credits_used, o.organization_id)),
        by_model=sorted(models.values(), key=lambda m: (-m.cost_usd, m.model)),
        by_feature=sorted(features.values(), key=lambda f: (-f.credits_charged, f.feature)),
        by_user=sorted(users.values(), key=lambda u: (-u.credits_charged, u.user_id)),
        topup_revenue=_topup_revenue(invoices),
        unpriced_models=sorted(unpriced),
        recent_requests=_recent_requests(facts, user_names) if model else []
    )
    logger.info(
        f"[REPORT] {len(facts)} usage facts, cost ${report.summary.total_cost_usd:.2f}, "
        f"margin {report.summary.margin_pct:.1f}%"
    )
    return report


def _resolve_model_filter(catalog: PricingCatalog, model: str) -> Set[str]:
    """Model ids matching a filter given as a model id or a catalog display name."""
    wanted = model.strip().lower()
    ids = {model}
    for pricing in catalog.models():
        if pricing.model_id.lower() == wanted or pricing.name.lower() == wanted:
            ids.add(pricing.model_id)
    return ids


def _user_names(store: LedgerStore, facts: List[UsageFact]) -> Dict[Tuple[str, Optional[str]], str]:
    names: Dict[Tuple[str, Optional[str]], str] = {}
    for fact in facts:
        key = (fact.organization_id, fact.user_id)
        if key in names:
            continue
        if fact.user_id is None:
            names[key] = "System"
            continue
        member = store.get_member(fact.organization_id, fact.user_id)
        names[key] = member.display_name if member and member.display_name else UNKNOWN_USER
    return names


def _recent_requests(facts: List[UsageFact], user_names: Dict[Tuple[str, Optional[str]], str]) -> List[RecentRequest]:
    newest_first = sorted(facts, key=lambda fact: fact.created_at, reverse=True)
    return [
        RecentRequest(
            usage_fact_id=fact.id,
            user_id=fact.user_id or SYSTEM_USER,
            user_name=user_names[(fact.organization_id, fact.user_id)],
            feature=fact.feature,
            input_tokens=fact.input_tokens,
            output_tokens=fact.output_tokens,
            credits_charged=fact.credits_charged,
            is_free=fact.is_free_model,
            created_at=fact.created_at
        )
        for fact in newest_first[:RECENT_REQUEST_LIMIT]
    ]


def _fact_cost(catalog: PricingCatalog, fact: UsageFact, unpriced: set) -> Decimal:
    pricing = catalog.find(fact.model, fact.created_at)
    if pricing is None:
        unpriced.add(fact.model)
        return ZERO
    return calculate_provider_cost(pricing, TokenUsage(fact.input_tokens, fact.output_tokens))


def _topup_revenue(invoices: List[TopupInvoice]) -> TopupRevenue:
    total_cents = sum(invoice.total_cents for invoice in invoices)
    return TopupRevenue(total=Decimal(total_cents) / CREDITS_PER_CURRENCY_UNIT, count=len(invoices))
