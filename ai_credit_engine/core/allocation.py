"""
Allocation manager.

Moves credits between an organization's pool and its members' per-feature
allocations. Both directions are a single two-posting transfer, so the org
pool and the allocation always change together or not at all.
"""

import logging
from typing import Callable, List, Optional

from ai_credit_engine.storage.models import BalanceRef, EntryType, MemberAllocation, PoolTier, Posting
from ai_credit_engine.storage.repository import LedgerStore
from .actor import ActorContext
from .deduction import notify_low_balance
from .errors import (
    CreditEngineError,
    InvalidAmount,
    InvalidRequest,
    OperationResult,
    PermissionDenied,
    UnknownFeature,
)
from .notifications import NotificationTrigger

logger = logging.getLogger(__name__)


def validate_amount(amount: int) -> None:
    """Reject anything that is not a positive whole number of credits."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(amount, "Amount must be a whole number of credits")
    if amount <= 0:
        raise InvalidAmount(amount, "Amount must be positive")


class AllocationManager:
    """Allocate and reclaim member credits."""

    def __init__(
        self,
        store: LedgerStore,
        notifier: Optional[NotificationTrigger] = None,
        is_known_feature: Callable[[str], bool] = lambda feature: True,
    ):
        """Initialize the manager.

        Args:
            store: Ledger store
            notifier: Receives allocated/reclaimed events; None disables notifications
            is_known_feature: Predicate for accepted feature names
        """
        self.store = store
        self.notifier = notifier
        self.is_known_feature = is_known_feature

    def _check_request(self, actor: ActorContext, target_user_id: str, feature: str, amount: int) -> None:
        if not actor.can_manage_team:
            raise PermissionDenied("Only owners and admins can manage team credits", user_id=actor.user_id)
        if not target_user_id:
            raise InvalidRequest("target_user_id is required", field_name="target_user_id")
        if not self.is_known_feature(feature):
            raise UnknownFeature(feature)
        validate_amount(amount)

    def allocate(self, actor: ActorContext, target_user_id: str, feature: str, amount: int) -> OperationResult:
        """Carve ``amount`` credits out of the org pool for one member's feature.

        Args:
            actor: Owner, admin or super-admin performing the allocation
            target_user_id: Member receiving the credits
            feature: Feature the credits are reserved for
            amount: Credits to allocate (> 0)

        Returns:
            OperationResult with ``entries`` and the updated ``allocation``;
            InsufficientOrgCredits when the pool cannot cover the amount
        """
        try:
            self._check_request(actor, target_user_id, feature, amount)
            entries = self.store.transfer(
                [
                    Posting(BalanceRef.org(actor.org_id), -amount, EntryType.ALLOCATION_OUT),
                    Posting(BalanceRef.member(actor.org_id, target_user_id, feature), amount, EntryType.ALLOCATION_IN),
                ],
                actor_user_id=actor.user_id,
                description=f"Allocated {amount} credits to {target_user_id} for {feature}"
            )
        except CreditEngineError as e:
            logger.warning(f"[ALLOCATION] Allocation of {amount} to {target_user_id}/{feature} refused: {e.message}")
            return OperationResult.fail(e)

        logger.info(f"[ALLOCATION] {actor.user_id} allocated {amount} credits to {target_user_id} for {feature}")
        if self.notifier:
            self.notifier.credits_allocated(actor.org_id, target_user_id, feature, amount)
        return OperationResult.ok(
            entries=entries,
            transaction_id=entries[0].transaction_id,
            allocation=self.store.current_allocation(actor.org_id, target_user_id, feature)
        )

    def reclaim(self, actor: ActorContext, target_user_id: str, feature: str, amount: int) -> OperationResult:
        """Return unused member credits to the org pool's top-up tier.

        Returns:
            OperationResult with ``entries`` and the updated ``allocation``;
            InsufficientMemberCredits when the allocation holds fewer than
            ``amount`` credits (or does not exist)
        """
        try:
            self._check_request(actor, target_user_id, feature, amount)
            entries = self.store.transfer(
                [
                    Posting(BalanceRef.member(actor.org_id, target_user_id, feature), -amount, EntryType.RECLAIM_OUT),
                    Posting(BalanceRef.org(actor.org_id), amount, EntryType.RECLAIM_IN, tier=PoolTier.TOPUP),
                ],
                actor_user_id=actor.user_id,
                description=f"Reclaimed {amount} credits from {target_user_id} for {feature}"
            )
        except CreditEngineError as e:
            logger.warning(f"[ALLOCATION] Reclaim of {amount} from {target_user_id}/{feature} refused: {e.message}")
            return OperationResult.fail(e)

        logger.info(f"[ALLOCATION] {actor.user_id} reclaimed {amount} credits from {target_user_id} for {feature}")
        allocation = self.store.current_allocation(actor.org_id, target_user_id, feature)
        notified = []
        if self.notifier:
            self.notifier.credits_reclaimed(actor.org_id, target_user_id, feature, amount)
            # A reclaim lowers the remaining balance like a deduction does
            member_entry = entries[0]
            notified = notify_low_balance(self.store, self.notifier, actor.org_id, target_user_id, feature,
                                          member_entry.balance_before, member_entry.balance_after,
                                          allocation.credits_allocated)
        return OperationResult.ok(
            entries=entries,
            transaction_id=entries[0].transaction_id,
            allocation=allocation,
            notifications=notified
        )

    def team_summary(self, org_id: str) -> List[MemberAllocation]:
        """All member allocations of an organization, newest first."""
        return self.store.list_allocations(org_id)
