"""
Unit tests for the credit engine facade.

Tests subscription and billing entry points, admin adjustments, membership,
reconciliation and credit conservation across a mixed workload.
"""

import os

import pytest

from ai_credit_engine.config.loader import DatabaseConfig, EngineConfig
from ai_credit_engine.core.actor import ActorContext, ActorRole
from ai_credit_engine.core.engine import CreditEngine
from ai_credit_engine.core.errors import InsufficientOrgCredits, InvalidAmount, PermissionDenied
from ai_credit_engine.core.metering import AICallRecord
from ai_credit_engine.storage.db import get_connection
from ai_credit_engine.storage.models import EntryType
from ai_credit_engine.storage.repository import summarize_entries

from .conftest import ADMIN, MEMBER, ORG, OWNER, SUPER_ADMIN


class TestSubscriptionGrants:
    """Monthly grants, renewals and cancellation."""

    def test_first_grant_then_renewal(self, engine, clock):
        first = engine.grant_monthly_credits(ORG, 1000)
        engine.deduct(OWNER, "chat", 300, "usage")
        clock.advance(days=31)
        second = engine.grant_monthly_credits(ORG, 2000)

        assert first["entry"].entry_type == EntryType.GRANT
        assert second["entry"].entry_type == EntryType.SUBSCRIPTION_RENEWAL
        # no rollover: 700 unused monthly credits are replaced
        assert second["entry"].amount == 1300
        pool = engine.get_balance(ORG)
        assert (pool.monthly_credits_total, pool.monthly_credits_remaining) == (2000, 2000)
        assert pool.period_start == clock.now

    def test_grant_keeps_topup(self, engine):
        engine.grant_topup(ORG, 250, "inv-1")
        engine.grant_monthly_credits(ORG, 100)
        assert engine.get_balance(ORG).effective_total == 350

    def test_negative_grant_rejected(self, engine):
        result = engine.grant_monthly_credits(ORG, -1)
        assert isinstance(result.error, InvalidAmount)
        assert engine.get_balance(ORG) is None

    def test_cancel_subscription_zeroes_pool(self, engine):
        engine.grant_monthly_credits(ORG, 1000)
        engine.grant_topup(ORG, 50, "inv-1")

        result = engine.cancel_subscription(ORG)

        assert result.success
        assert result["entry"].amount == -1050
        pool = engine.get_balance(ORG)
        assert pool.effective_total == 0
        assert pool.monthly_credits_total == 0
        assert engine.verify_ledger(ORG) == []

    def test_cancel_without_pool_is_noop(self, engine):
        result = engine.cancel_subscription("org-none")
        assert result.success
        assert result["entry"] is None


class TestTopups:
    """Purchased credits and invoice idempotency."""

    def test_topup_credits_topup_tier(self, engine):
        result = engine.grant_topup(ORG, 500, "inv-1", total_cents=45000)

        assert result.success
        assert not result["duplicate"]
        assert result["entry"].invoice_id == "inv-1"
        assert result["balance"].topup_credits_remaining == 500
        invoices = engine.store.list_paid_topup_invoices()
        assert [(i.invoice_id, i.credits, i.total_cents) for i in invoices] == [("inv-1", 500, 45000)]

    def test_repeated_invoice_is_applied_once(self, engine):
        engine.grant_topup(ORG, 500, "inv-1")

        again = engine.grant_topup(ORG, 500, "inv-1")

        assert again.success
        assert again["duplicate"]
        assert engine.get_balance(ORG).topup_credits_remaining == 500
        assert len(engine.store.list_paid_topup_invoices()) == 1

    def test_topup_requires_invoice(self, engine):
        assert isinstance(engine.grant_topup(ORG, 10, "").error, InvalidAmount)

    def test_topup_survives_monthly_reset(self, engine, clock):
        engine.grant_monthly_credits(ORG, 100)
        engine.grant_topup(ORG, 40, "inv-1")
        engine.deduct(OWNER, "chat", 120, "usage")
        clock.advance(days=32)

        engine.deduct(OWNER, "chat", 1, "usage")

        pool = engine.get_balance(ORG)
        assert (pool.monthly_credits_remaining, pool.topup_credits_remaining) == (99, 20)


class TestAdminAdjustment:
    """Manual corrections to an org pool."""

    def test_positive_adjustment_lands_on_topup(self, engine):
        engine.grant_monthly_credits(ORG, 100)
        result = engine.admin_adjustment(ADMIN, 25, "goodwill")
        assert result.success
        assert result["entry"].description == "Admin adjustment: goodwill"
        assert engine.get_balance(ORG).topup_credits_remaining == 25

    def test_negative_adjustment_cannot_overdraw(self, engine):
        engine.grant_monthly_credits(ORG, 10)
        result = engine.admin_adjustment(OWNER, -11, "correction")
        assert isinstance(result.error, InsufficientOrgCredits)

    def test_super_admin_may_overdraw(self, engine):
        engine.grant_monthly_credits(ORG, 10)
        result = engine.admin_adjustment(SUPER_ADMIN, -30, "chargeback")
        assert result.success
        assert engine.get_balance(ORG).effective_total == -20

    def test_member_cannot_adjust(self, engine):
        result = engine.admin_adjustment(MEMBER, 10, "free credits")
        assert isinstance(result.error, PermissionDenied)

    def test_zero_adjustment_rejected(self, engine):
        assert engine.admin_adjustment(OWNER, 0, "nothing").error_code == "INVALID_AMOUNT"

    def test_missing_reason_is_returned_not_raised(self, engine):
        engine.grant_monthly_credits(ORG, 100)

        result = engine.admin_adjustment(SUPER_ADMIN, 5, "")

        assert not result.success
        assert result.error_code == "INVALID_REQUEST"
        assert result.error.details == {"field": "reason"}
        assert engine.get_balance(ORG).effective_total == 100


class TestMembership:
    """Org membership used for notification routing."""

    def test_add_member(self, engine):
        member = engine.add_member(ORG, "admin-1", "admin", "Ada")
        assert engine.store.get_member(ORG, "admin-1") == member
        engine.add_member(ORG, "admin-1", "owner", "Ada")
        assert engine.store.get_member(ORG, "admin-1").role == "owner"

    def test_invalid_role(self, engine):
        with pytest.raises(ValueError, match="Invalid member role"):
            engine.add_member(ORG, "root", "super_admin")


class TestConservation:
    """Credits are never created or destroyed by internal transfers."""

    def test_mixed_workload_conserves_credits(self, engine):
        engine.grant_monthly_credits(ORG, 1000)
        engine.grant_topup(ORG, 300, "inv-1")
        engine.allocate(OWNER, "member-1", "chat", 200)
        engine.allocate(ADMIN, "member-2", "brand_audit", 150)
        engine.deduct(MEMBER, "chat", 75, "usage")
        engine.deduct(ActorContext(ORG, "member-2", ActorRole.MEMBER), "brand_audit", 150, "usage")
        engine.deduct(OWNER, "chat", 900, "usage")
        engine.reclaim(OWNER, "member-1", "chat", 100)
        engine.record_usage(MEMBER, AICallRecord("gpt-4o", "openai", "chat", 10_000, 2_000))
        engine.admin_adjustment(OWNER, 5, "rounding")
        engine.deduct(MEMBER, "chat", 10_000, "rejected")

        entries = engine.store.list_entries(ORG)
        totals = summarize_entries(entries)
        assert totals["allocation-out"] + totals["allocation-in"] == 0
        assert totals["reclaim-out"] + totals["reclaim-in"] == 0

        pool = engine.get_balance(ORG)
        held = pool.effective_total + sum(a.credits_remaining for a in engine.team_summary(ORG))
        external = totals["grant"] + totals["topup"] + totals["admin-adjustment"] + totals["usage-deduction"]
        assert held == external == 1300 + 5 - 75 - 150 - 900 - 9
        assert engine.verify_ledger(ORG) == []


class TestReconciliation:
    """verify_ledger and repair_balances."""

    def test_repair_balances(self, engine):
        engine.grant_monthly_credits(ORG, 100)
        conn = get_connection(engine.store.db_path)
        try:
            conn.execute("UPDATE organization_pool SET monthly_credits_remaining = 7")
        finally:
            conn.close()

        problems = engine.verify_ledger(ORG)
        assert [p.field for p in problems] == ["monthly_credits_remaining"]
        assert (problems[0].expected, problems[0].actual) == (100, 7)

        result = engine.repair_balances(ORG)

        assert result["repaired"] == 1
        assert engine.get_balance(ORG).monthly_credits_remaining == 100
        assert engine.verify_ledger(ORG) == []


class TestFromConfig:
    """Building an engine from configuration."""

    def test_from_config_initializes_schema(self, temp_dir):
        path = os.path.join(temp_dir, "fresh.db")
        engine = CreditEngine.from_config(EngineConfig(database=DatabaseConfig(path=path)))

        assert os.path.exists(path)
        assert engine.grant_monthly_credits(ORG, 10).success

    def test_cost_report_uses_engine_catalog(self, engine):
        from ai_credit_engine.core.reporting import ReportWindow

        engine.record_usage(OWNER, AICallRecord("gpt-4o", "openai", "chat", 1_000_000, 0))

        report = engine.get_cost_report(ReportWindow())

        assert str(report.summary.total_cost_usd) == "2.50"
        # the deduction failed for lack of a pool, but the fact keeps its charge
        assert report.summary.total_credits_charged == 500
