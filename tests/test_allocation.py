"""
Unit tests for the allocation manager.

Tests allocate/reclaim transfers, role restrictions and notifications.
"""

from ai_credit_engine.core.actor import ActorContext, ActorRole
from ai_credit_engine.core.errors import (
    InsufficientMemberCredits,
    InsufficientOrgCredits,
    InvalidAmount,
    InvalidRequest,
    PermissionDenied,
    UnknownFeature,
)
from ai_credit_engine.core.notifications import CREDITS_ALLOCATED, CREDITS_LOW, CREDITS_RECLAIMED
from ai_credit_engine.storage.models import EntryType

from .conftest import ADMIN, MEMBER, ORG, OWNER, SUPER_ADMIN


class TestAllocate:
    """Allocating org credits to members."""

    def test_allocate_moves_credits_from_pool(self, engine, sink):
        engine.grant_monthly_credits(ORG, 1000)

        result = engine.allocate(OWNER, "member-1", "content_generation", 100)

        assert result.success
        assert engine.get_balance(ORG).effective_total == 900
        allocation = engine.get_member_allocation(ORG, "member-1", "content_generation")
        assert (allocation.credits_allocated, allocation.credits_remaining) == (100, 100)
        assert [e.entry_type for e in result["entries"]] == [EntryType.ALLOCATION_OUT, EntryType.ALLOCATION_IN]
        assert result["allocation"] == allocation

        sent = sink.of_type(CREDITS_ALLOCATED)
        assert len(sent) == 1
        assert sent[0].user_id == "member-1"
        assert sent[0].body == "You've been allocated 100 credits for content generation."
        assert sent[0].link == "/team"

    def test_repeated_allocation_accumulates(self, engine):
        engine.grant_monthly_credits(ORG, 1000)
        engine.allocate(OWNER, "member-1", "chat", 100)
        engine.allocate(ADMIN, "member-1", "chat", 50)

        allocation = engine.get_member_allocation(ORG, "member-1", "chat")
        assert (allocation.credits_allocated, allocation.credits_remaining) == (150, 150)
        assert allocation.allocated_by == "admin-1"

    def test_allocate_more_than_pool_is_rejected(self, engine, sink):
        engine.grant_monthly_credits(ORG, 100)

        result = engine.allocate(OWNER, "member-1", "chat", 101)

        assert not result.success
        assert isinstance(result.error, InsufficientOrgCredits)
        assert result.error_code == "INSUFFICIENT_ORG_CREDITS"
        assert engine.get_balance(ORG).effective_total == 100
        assert engine.get_member_allocation(ORG, "member-1", "chat") is None
        assert sink.requests == []

    def test_super_admin_cannot_overdraw_by_allocating(self, engine):
        engine.grant_monthly_credits(ORG, 10)
        result = engine.allocate(SUPER_ADMIN, "member-1", "chat", 20)
        assert isinstance(result.error, InsufficientOrgCredits)

    def test_member_cannot_allocate(self, engine):
        engine.grant_monthly_credits(ORG, 1000)
        result = engine.allocate(MEMBER, "member-2", "chat", 10)
        assert isinstance(result.error, PermissionDenied)
        assert engine.get_balance(ORG).effective_total == 1000

    def test_invalid_amounts(self, engine):
        engine.grant_monthly_credits(ORG, 1000)
        for amount in (0, -5, 1.5, True):
            result = engine.allocate(OWNER, "member-1", "chat", amount)
            assert isinstance(result.error, InvalidAmount), amount

    def test_missing_target_user_is_returned_not_raised(self, engine):
        engine.grant_monthly_credits(ORG, 1000)

        result = engine.allocate(OWNER, "", "chat", 10)

        assert not result.success
        assert isinstance(result.error, InvalidRequest)
        assert result.error_code == "INVALID_REQUEST"
        assert result.error.details == {"field": "target_user_id"}
        assert engine.get_balance(ORG).effective_total == 1000

    def test_unknown_feature(self, engine):
        engine.grant_monthly_credits(ORG, 1000)
        result = engine.allocate(OWNER, "member-1", "time_travel", 10)
        assert isinstance(result.error, UnknownFeature)


class TestReclaim:
    """Reclaiming member credits back to the org pool."""

    def test_reclaim_returns_credits_to_topup(self, engine, sink):
        engine.grant_monthly_credits(ORG, 1000)
        engine.allocate(OWNER, "member-1", "chat", 100)

        result = engine.reclaim(OWNER, "member-1", "chat", 40)

        assert result.success
        pool = engine.get_balance(ORG)
        assert pool.monthly_credits_remaining == 900
        assert pool.topup_credits_remaining == 40
        allocation = engine.get_member_allocation(ORG, "member-1", "chat")
        assert (allocation.credits_allocated, allocation.credits_remaining) == (60, 60)
        assert [e.entry_type for e in result["entries"]] == [EntryType.RECLAIM_OUT, EntryType.RECLAIM_IN]
        assert len(sink.of_type(CREDITS_RECLAIMED)) == 1

    def test_reclaim_more_than_remaining_is_rejected(self, engine):
        engine.grant_monthly_credits(ORG, 1000)
        engine.allocate(OWNER, "member-1", "chat", 10)

        result = engine.reclaim(OWNER, "member-1", "chat", 11)

        assert isinstance(result.error, InsufficientMemberCredits)
        assert engine.get_member_allocation(ORG, "member-1", "chat").credits_remaining == 10
        assert engine.get_balance(ORG).topup_credits_remaining == 0

    def test_reclaim_without_allocation_is_rejected(self, engine):
        engine.grant_monthly_credits(ORG, 1000)
        result = engine.reclaim(OWNER, "member-1", "chat", 1)
        assert result.error_code == "INSUFFICIENT_MEMBER_CREDITS"
        assert result.error.details["available"] == 0

    def test_reclaim_missing_target_user(self, engine):
        engine.grant_monthly_credits(ORG, 1000)
        result = engine.reclaim(OWNER, None, "chat", 1)
        assert result.error_code == "INVALID_REQUEST"
        assert engine.get_balance(ORG).topup_credits_remaining == 0

    def test_reclaim_below_threshold_notifies_low_balance(self, engine, sink):
        engine.add_member(ORG, "owner-1", "owner", "Olivia")
        engine.add_member(ORG, "member-1", "member", "Max")
        engine.grant_monthly_credits(ORG, 1000)
        engine.allocate(OWNER, "member-1", "chat", 100)
        engine.deduct(MEMBER, "chat", 50, "draft")

        # 60 allocated, 10 remaining: below 20% of 60
        result = engine.reclaim(OWNER, "member-1", "chat", 40)

        assert result.success
        low = sink.of_type(CREDITS_LOW)
        assert {n.user_id for n in low} == {"member-1", "owner-1"}
        assert len(result["notifications"]) == 2

    def test_reclaim_above_threshold_sends_no_low_balance(self, engine, sink):
        engine.add_member(ORG, "owner-1", "owner", "Olivia")
        engine.grant_monthly_credits(ORG, 1000)
        engine.allocate(OWNER, "member-1", "chat", 100)

        result = engine.reclaim(OWNER, "member-1", "chat", 40)

        assert result.success
        assert result["notifications"] == []
        assert sink.of_type(CREDITS_LOW) == []

    def test_member_cannot_reclaim(self, engine):
        result = engine.reclaim(ActorContext(ORG, "member-1", ActorRole.MEMBER), "member-2", "chat", 1)
        assert isinstance(result.error, PermissionDenied)


class TestTeamSummary:
    """Listing allocations for a team."""

    def test_team_summary_lists_allocations(self, engine):
        engine.grant_monthly_credits(ORG, 1000)
        engine.allocate(OWNER, "member-1", "chat", 10)
        engine.allocate(OWNER, "member-2", "brand_audit", 20)
        engine.allocate(OWNER, "member-2", "chat", 30)

        summary = engine.team_summary(ORG)

        assert len(summary) == 3
        assert {(a.user_id, a.feature) for a in summary} == {
            ("member-1", "chat"), ("member-2", "brand_audit"), ("member-2", "chat")
        }
        assert engine.team_summary("org-empty") == []
