"""
Tests for the demo data seed.
"""

from unittest.mock import patch

from ai_credit_engine.config.loader import EngineConfig
from ai_credit_engine.core.engine import CreditEngine
from ai_credit_engine.core.reporting import ReportWindow
from ai_credit_engine.demo.seed_demo_data import DEMO_ORG, seed


class TestSeed:
    """The demo org is consistent and reportable."""

    def test_seed_creates_consistent_org(self, config):
        engine = seed(config)

        assert len(engine.store.list_usage_facts()) == 4
        # 1000 monthly + 500 top-up - 100 allocated - 12 owner usage
        assert engine.get_balance(DEMO_ORG).effective_total == 1388
        # 3 credits for the mini call; the large call exceeds the allocation
        assert engine.get_member_allocation(DEMO_ORG, "member-1", "content_generation").credits_remaining == 97
        assert engine.verify_ledger(DEMO_ORG) == []

        report = engine.get_cost_report(ReportWindow(), org_id=DEMO_ORG)
        assert report.summary.total_requests == 4
        assert report.summary.free_model_requests == 1

    def test_seed_without_config_builds_a_fresh_default(self):
        with patch.object(CreditEngine, "from_config") as from_config:
            seed()
            seed()

        first, second = (call.args[0] for call in from_config.call_args_list)
        assert isinstance(first, EngineConfig)
        assert first is not second
