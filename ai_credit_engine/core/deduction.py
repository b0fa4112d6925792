"""
Deduction processor.

Routes a credit deduction to the right balance based on the acting role:

1. super-admin: org pool, may go negative, never blocked
2. owner/admin: org pool, rejected if the effective balance would go negative
3. member: the member's allocation for the feature, rejected if it would go
   negative (a missing allocation counts as zero)

Org-pool deductions consume monthly credits before top-up credits. Member
deductions also append an org-level ``[Team]`` mirror entry so org-wide
usage history is complete without charging the pool twice.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from ai_credit_engine.storage.models import BalanceKind, BalanceRef, EntryType, NotificationRequest, Posting
from ai_credit_engine.storage.repository import LedgerStore, LedgerTransaction
from .actor import ORG_ADMIN_ROLES, ActorContext
from .errors import CreditEngineError, InvalidAmount, OperationResult, UnknownFeature
from .notifications import NotificationTrigger

logger = logging.getLogger(__name__)

MIRROR_TAG = "[Team]"


def notify_low_balance(
    store: LedgerStore,
    notifier: NotificationTrigger,
    org_id: str,
    user_id: str,
    feature: str,
    before: int,
    after: int,
    allocated: int,
) -> List[NotificationRequest]:
    """Notify the member and the org's owners/admins if an allocation just ran low.

    Shared by deductions and reclaims: both lower ``credits_remaining``.
    Recipient lookup failures are logged and swallowed like sink failures.
    """
    try:
        admins = store.list_members(org_id, roles=[role.value for role in ORG_ADMIN_ROLES])
        member = store.get_member(org_id, user_id)
    except Exception as e:
        logger.error(f"[NOTIFY] Could not resolve recipients for {org_id}: {e}", exc_info=True)
        return []
    return notifier.member_deducted(
        org_id,
        user_id,
        feature,
        before=before,
        after=after,
        allocated=allocated,
        admin_user_ids=[m.user_id for m in admins],
        member_name=member.display_name if member else None
    )


@dataclass(frozen=True)
class CreditCheck:
    """Pre-flight view of the balance a deduction would hit."""
    remaining: int
    allocated: int
    has_credits: bool
    scope: str  # "org" or "member"


class DeductionProcessor:
    """Deduct credits for AI usage."""

    def __init__(
        self,
        store: LedgerStore,
        notifier: Optional[NotificationTrigger] = None,
        is_known_feature: Callable[[str], bool] = lambda feature: True,
    ):
        self.store = store
        self.notifier = notifier
        self.is_known_feature = is_known_feature

    def deduct(
        self,
        actor: ActorContext,
        feature: str,
        amount: int,
        description: str,
        usage_fact_id: Optional[str] = None,
    ) -> OperationResult:
        """Deduct ``amount`` credits on behalf of ``actor``.

        Args:
            actor: Acting user; its role picks the balance
            feature: Feature the usage belongs to
            amount: Credits to deduct (>= 0; zero is a successful no-op)
            description: Human-readable ledger description
            usage_fact_id: Usage fact that caused the deduction, if any

        Returns:
            OperationResult with the ``entry`` (and ``mirror`` for members),
            ``scope`` and before/after balances. Insufficiency comes back as
            InsufficientOrgCredits or InsufficientMemberCredits.
        """
        try:
            if isinstance(amount, bool) or not isinstance(amount, int):
                raise InvalidAmount(amount, "Amount must be a whole number of credits")
            if amount < 0:
                raise InvalidAmount(amount, "Deduction amount cannot be negative")
            if not self.is_known_feature(feature):
                raise UnknownFeature(feature)
        except CreditEngineError as e:
            return OperationResult.fail(e)

        if amount == 0:
            return OperationResult.ok(entry=None, mirror=None, scope=None, charged=0)

        if actor.uses_org_pool:
            return self._deduct_from_org(actor, feature, amount, description, usage_fact_id)
        return self._deduct_from_member(actor, feature, amount, description, usage_fact_id)

    def _deduct_from_org(self, actor: ActorContext, feature: str, amount: int,
                         description: str, usage_fact_id: Optional[str]) -> OperationResult:
        posting = Posting(
            BalanceRef.org(actor.org_id),
            -amount,
            EntryType.USAGE_DEDUCTION,
            allow_negative=actor.is_super_admin
        )
        try:
            entries = self.store.transfer([posting], actor.user_id, description, usage_fact_id=usage_fact_id)
        except CreditEngineError as e:
            logger.info(f"[CREDITS] Org deduction of {amount} for {actor.org_id}/{feature} refused: {e.message}")
            return OperationResult.fail(e)

        entry = entries[0]
        if entry.balance_after < 0:
            logger.warning(
                f"[CREDITS] Super-admin {actor.user_id} overdrew {actor.org_id} to {entry.balance_after}"
            )
        logger.info(
            f"[CREDITS] Deducted {amount} from org {actor.org_id} for {feature} "
            f"({entry.balance_before} -> {entry.balance_after})"
        )
        return OperationResult.ok(
            entry=entry,
            mirror=None,
            scope=BalanceKind.ORG.value,
            charged=amount,
            balance_before=entry.balance_before,
            balance_after=entry.balance_after
        )

    def _deduct_from_member(self, actor: ActorContext, feature: str, amount: int,
                            description: str, usage_fact_id: Optional[str]) -> OperationResult:
        def _apply(tx: LedgerTransaction):
            entry = tx.post(
                Posting(BalanceRef.member(actor.org_id, actor.user_id, feature), -amount, EntryType.USAGE_DEDUCTION),
                actor.user_id,
                description,
                usage_fact_id=usage_fact_id
            )
            pool = tx.read_pool(actor.org_id)
            pool_total = pool.effective_total if pool else 0
            mirror = tx.new_entry(
                organization_id=actor.org_id,
                user_id=actor.user_id,
                balance_kind=BalanceKind.ORG,
                entry_type=EntryType.USAGE_DEDUCTION,
                amount=-amount,
                balance_before=pool_total,
                balance_after=pool_total,
                description=f"{MIRROR_TAG} {description}",
                subject_user_id=actor.user_id,
                feature=feature,
                usage_fact_id=usage_fact_id,
                is_mirror=True
            )
            tx.append_entry(mirror)
            allocation = tx.read_allocation(actor.org_id, actor.user_id, feature)
            return entry, mirror, allocation

        try:
            entry, mirror, allocation = self.store.atomic(_apply)
        except CreditEngineError as e:
            logger.info(
                f"[CREDITS] Member deduction of {amount} for {actor.user_id}/{feature} refused: {e.message}"
            )
            return OperationResult.fail(e)

        logger.info(
            f"[CREDITS] Deducted {amount} from {actor.user_id}/{feature} "
            f"({entry.balance_before} -> {entry.balance_after})"
        )
        notified = []
        if self.notifier:
            notified = notify_low_balance(self.store, self.notifier, actor.org_id, actor.user_id, feature,
                                          entry.balance_before, entry.balance_after, allocation.credits_allocated)
        return OperationResult.ok(
            entry=entry,
            mirror=mirror,
            scope=BalanceKind.MEMBER.value,
            charged=amount,
            balance_before=entry.balance_before,
            balance_after=entry.balance_after,
            allocation=allocation,
            notifications=notified
        )

    def check_credits(self, actor: ActorContext, feature: str, required: int = 0) -> CreditCheck:
        """Report whether the balance ``actor`` would spend from covers ``required``.

        Read-only. An org pool whose cycle has ended is reported as if the
        monthly reset already happened.
        """
        if actor.uses_org_pool:
            pool = self.store.current_balance(actor.org_id)
            if pool is None:
                remaining, allocated = 0, 0
            elif pool.period_expired(self.store.clock()):
                remaining = pool.monthly_credits_total + pool.topup_credits_remaining
                allocated = pool.monthly_credits_total
            else:
                remaining, allocated = pool.effective_total, pool.monthly_credits_total
            has_credits = actor.is_super_admin or remaining >= required
            return CreditCheck(remaining, allocated, has_credits, BalanceKind.ORG.value)

        allocation = self.store.current_allocation(actor.org_id, actor.user_id, feature)
        if allocation is None:
            return CreditCheck(0, 0, required == 0, BalanceKind.MEMBER.value)
        return CreditCheck(
            allocation.credits_remaining,
            allocation.credits_allocated,
            allocation.credits_remaining >= required,
            BalanceKind.MEMBER.value
        )
