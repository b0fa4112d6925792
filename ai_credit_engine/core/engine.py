"""
Credit engine facade.

Wires the ledger store, allocation manager, deduction processor, metering
bridge, notification trigger and cost reporting together, and exposes the
operations the surrounding application calls. Every mutating operation
returns an OperationResult; none raise for expected outcomes.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from ai_credit_engine.config.loader import EngineConfig
from ai_credit_engine.storage.models import (
    BalanceRef,
    EntryType,
    MemberAllocation,
    OrganizationPool,
    OrgMember,
    PoolTier,
    Posting,
    TopupInvoice,
    utc_now,
)
from ai_credit_engine.storage.repository import LedgerDiscrepancy, LedgerStore, LedgerTransaction, add_months
from .actor import ActorContext
from .allocation import AllocationManager, validate_amount
from .deduction import CreditCheck, DeductionProcessor
from .errors import CreditEngineError, InvalidAmount, InvalidRequest, OperationResult, PermissionDenied
from .metering import AICallRecord, MeteringResult, UsageMeteringBridge
from .notifications import NotificationSink, NotificationTrigger, OutboxNotificationSink
from .pricing import PricingCatalog
from .reporting import CostReport, ReportWindow, build_cost_report

logger = logging.getLogger(__name__)

SYSTEM_USER = "system"


class CreditEngine:
    """Entry point for credit accounting."""

    def __init__(
        self,
        store: LedgerStore,
        config: Optional[EngineConfig] = None,
        catalog: Optional[PricingCatalog] = None,
        sink: Optional[NotificationSink] = None,
    ):
        """Initialize the engine.

        Args:
            store: Ledger store (schema must already exist)
            config: Engine configuration; defaults when None
            catalog: Pricing catalog; built from config when None
            sink: Notification sink; the store's outbox when None
        """
        self.config = config or EngineConfig()
        self.store = store
        self.catalog = catalog or self.config.build_catalog()
        self.notifier = NotificationTrigger(
            sink or OutboxNotificationSink(store),
            threshold_pct=self.config.credits.low_balance_threshold
        )
        self.allocations = AllocationManager(store, self.notifier, self.config.is_known_feature)
        self.deductions = DeductionProcessor(store, self.notifier, self.config.is_known_feature)
        self.metering = UsageMeteringBridge(
            store,
            self.deductions,
            self.catalog,
            markup=self.config.credits.markup,
            usd_exchange_rate=self.config.credits.usd_exchange_rate
        )

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        sink: Optional[NotificationSink] = None,
        clock: Callable[[], datetime] = utc_now,
        initialize: bool = True,
    ) -> "CreditEngine":
        """Build an engine (and optionally its schema) from configuration."""
        store = LedgerStore.from_config(config, clock=clock)
        if initialize:
            store.initialize_schema()
        return cls(store, config=config, sink=sink)

    # Balances

    def get_balance(self, org_id: str) -> Optional[OrganizationPool]:
        return self.store.current_balance(org_id)

    def get_member_allocation(self, org_id: str, user_id: str, feature: str) -> Optional[MemberAllocation]:
        return self.store.current_allocation(org_id, user_id, feature)

    def team_summary(self, org_id: str) -> List[MemberAllocation]:
        return self.allocations.team_summary(org_id)

    def check_credits(self, actor: ActorContext, feature: str, required: int = 0) -> CreditCheck:
        return self.deductions.check_credits(actor, feature, required)

    # Credit movements

    def deduct(self, actor: ActorContext, feature: str, amount: int, description: str,
               usage_fact_id: Optional[str] = None) -> OperationResult:
        return self.deductions.deduct(actor, feature, amount, description, usage_fact_id)

    def allocate(self, actor: ActorContext, target_user_id: str, feature: str, amount: int) -> OperationResult:
        return self.allocations.allocate(actor, target_user_id, feature, amount)

    def reclaim(self, actor: ActorContext, target_user_id: str, feature: str, amount: int) -> OperationResult:
        return self.allocations.reclaim(actor, target_user_id, feature, amount)

    def record_usage(self, actor: ActorContext, call: AICallRecord) -> MeteringResult:
        return self.metering.record_usage(actor, call)

    def estimate_charge(self, model: str, input_tokens: int, output_tokens: int) -> int:
        return self.metering.estimate_charge(model, input_tokens, output_tokens)

    # Subscription and billing collaborators

    def grant_monthly_credits(self, org_id: str, amount: int, actor_user_id: str = SYSTEM_USER) -> OperationResult:
        """Start a new billing cycle with ``amount`` monthly credits.

        Called on subscription activation and renewal. The first grant creates
        the pool and is recorded as ``grant``; later ones as
        ``subscription-renewal``. Unused monthly credits do not roll over.
        """
        try:
            if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
                raise InvalidAmount(amount, "Monthly credits must be a non-negative whole number")

            def _apply(tx: LedgerTransaction):
                existing = tx.read_pool(org_id)
                entry_type = EntryType.GRANT if existing is None else EntryType.SUBSCRIPTION_RENEWAL
                return tx.set_monthly_allowance(
                    org_id,
                    amount,
                    actor_user_id,
                    description=f"Monthly credit grant: {amount} credits",
                    entry_type=entry_type,
                    period_start=tx.now,
                    period_end=add_months(tx.now)
                )

            entry = self.store.atomic(_apply)
        except CreditEngineError as e:
            logger.error(f"[CREDITS] Monthly grant for {org_id} failed: {e.message}")
            return OperationResult.fail(e)

        logger.info(f"[CREDITS] Granted {amount} monthly credits to {org_id}")
        return OperationResult.ok(entry=entry, balance=self.store.current_balance(org_id))

    def grant_topup(self, org_id: str, amount: int, invoice_id: str, total_cents: Optional[int] = None,
                    actor_user_id: str = SYSTEM_USER) -> OperationResult:
        """Credit purchased top-up credits and record the paid invoice.

        A repeated invoice id is acknowledged without crediting twice, so
        webhook redeliveries are harmless.

        Args:
            org_id: Organization that bought the credits
            amount: Credits purchased
            invoice_id: Payment provider invoice id
            total_cents: Amount paid in billing-currency cents; defaults to
                ``amount`` (one credit per cent)
        """
        try:
            validate_amount(amount)
            if not invoice_id:
                raise InvalidAmount(amount, "invoice_id is required for a top-up")

            def _apply(tx: LedgerTransaction):
                if tx.has_invoice(invoice_id):
                    return None
                tx.insert_invoice(TopupInvoice(
                    invoice_id=invoice_id,
                    organization_id=org_id,
                    credits=amount,
                    total_cents=amount if total_cents is None else total_cents,
                    status="paid",
                    created_at=tx.now
                ))
                return tx.post(
                    Posting(BalanceRef.org(org_id), amount, EntryType.TOPUP, tier=PoolTier.TOPUP),
                    actor_user_id,
                    f"Top-up purchase: {amount} credits",
                    invoice_id=invoice_id
                )

            entry = self.store.atomic(_apply)
        except CreditEngineError as e:
            logger.error(f"[CREDITS] Top-up {invoice_id} for {org_id} failed: {e.message}")
            return OperationResult.fail(e)

        if entry is None:
            logger.info(f"[CREDITS] Top-up invoice {invoice_id} already applied, skipping")
            return OperationResult.ok(entry=None, duplicate=True, balance=self.store.current_balance(org_id))
        logger.info(f"[CREDITS] Added {amount} top-up credits to {org_id} (invoice {invoice_id})")
        return OperationResult.ok(entry=entry, duplicate=False, balance=self.store.current_balance(org_id))

    def cancel_subscription(self, org_id: str, actor_user_id: str = SYSTEM_USER) -> OperationResult:
        """Zero the org pool. The pool row and its history are kept."""
        try:
            entry = self.store.atomic(
                lambda tx: tx.zero_pool(org_id, actor_user_id, "Subscription cancelled: credits zeroed")
            )
        except CreditEngineError as e:
            logger.error(f"[CREDITS] Cancellation for {org_id} failed: {e.message}")
            return OperationResult.fail(e)
        logger.info(f"[CREDITS] Zeroed credit pool for cancelled subscription {org_id}")
        return OperationResult.ok(entry=entry, balance=self.store.current_balance(org_id))

    def admin_adjustment(self, actor: ActorContext, amount: int, reason: str) -> OperationResult:
        """Manually correct an org pool by a signed amount.

        Credits land on the top-up tier; debits follow the normal
        monthly-first order and may only overdraw for super-admins.
        """
        try:
            if not actor.uses_org_pool:
                raise PermissionDenied("Only owners, admins and super-admins can adjust credits", user_id=actor.user_id)
            if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
                raise InvalidAmount(amount, "Adjustment must be a non-zero whole number of credits")
            if not reason:
                raise InvalidRequest("reason is required for an adjustment", field_name="reason")
            entries = self.store.transfer(
                [Posting(
                    BalanceRef.org(actor.org_id),
                    amount,
                    EntryType.ADMIN_ADJUSTMENT,
                    tier=PoolTier.TOPUP,
                    allow_negative=actor.is_super_admin
                )],
                actor.user_id,
                f"Admin adjustment: {reason}"
            )
        except CreditEngineError as e:
            logger.warning(f"[CREDITS] Adjustment of {amount} for {actor.org_id} refused: {e.message}")
            return OperationResult.fail(e)
        logger.info(f"[CREDITS] {actor.user_id} adjusted {actor.org_id} by {amount}: {reason}")
        return OperationResult.ok(entry=entries[0], balance=self.store.current_balance(actor.org_id))

    # Membership

    def add_member(self, org_id: str, user_id: str, role: str = "member",
                   display_name: Optional[str] = None) -> OrgMember:
        """Register an org member so owners and admins receive team notifications."""
        if role not in ("owner", "admin", "member"):
            raise ValueError(f"Invalid member role: {role}")
        member = OrgMember(org_id, user_id, role, display_name)
        self.store.upsert_member(member)
        return member

    # Reporting and reconciliation

    def get_cost_report(self, window: ReportWindow, org_id: Optional[str] = None,
                        model: Optional[str] = None) -> CostReport:
        return build_cost_report(
            self.store,
            self.catalog,
            window,
            org_id=org_id,
            usd_exchange_rate=Decimal(self.config.credits.usd_exchange_rate),
            model=model
        )

    def verify_ledger(self, org_id: str) -> List[LedgerDiscrepancy]:
        problems = self.store.verify(org_id)
        if problems:
            logger.warning(f"[LEDGER] {len(problems)} discrepancies found for {org_id}")
        return problems

    def repair_balances(self, org_id: str) -> OperationResult:
        try:
            fixed = self.store.repair(org_id)
        except CreditEngineError as e:
            return OperationResult.fail(e)
        return OperationResult.ok(repaired=fixed)
