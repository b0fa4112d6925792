"""
Unit tests for pricing calculations.

Tests catalog lookups, effective dating, cost accuracy and charge rounding.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ai_credit_engine.core.errors import UnknownPricingModel
from ai_credit_engine.core.pricing import (
    ModelPricing,
    PricingCatalog,
    calculate_credit_charge,
    calculate_provider_cost,
    default_catalog,
)
from ai_credit_engine.core.token_counter import TokenUsage


def _pricing(model="test-model", input_price="1.00", output_price="2.00", **kwargs):
    return ModelPricing(
        model_id=model,
        provider="acme",
        input_price_per_1m=Decimal(input_price),
        output_price_per_1m=Decimal(output_price),
        **kwargs
    )


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        usage = TokenUsage(input_tokens=100, output_tokens=50)
        assert usage.total_tokens == 150

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError, match="input_tokens"):
            TokenUsage(input_tokens=-1, output_tokens=0)
        with pytest.raises(ValueError, match="output_tokens"):
            TokenUsage(input_tokens=0, output_tokens=-5)


class TestPricingCatalog:
    """Test catalog lookups."""

    def test_default_catalog_has_known_models(self):
        catalog = default_catalog()
        pricing = catalog.get_pricing("gpt-4o")
        assert pricing.provider == "openai"
        assert pricing.input_price_per_1m == Decimal("2.50")
        assert pricing.output_price_per_1m == Decimal("10.00")
        assert pricing.name == "GPT-4o"

    def test_unknown_model_raises_value_error(self):
        catalog = default_catalog()
        with pytest.raises(ValueError, match="Unsupported model: unknown-model"):
            catalog.get_pricing("unknown-model")
        with pytest.raises(UnknownPricingModel):
            catalog.get_pricing("unknown-model")

    def test_find_returns_none_for_unknown(self):
        assert default_catalog().find("nope") is None

    def test_models_lists_latest_entry_sorted(self):
        catalog = PricingCatalog([
            _pricing("b-model"),
            _pricing("a-model", effective_from=datetime(2024, 1, 1, tzinfo=timezone.utc)),
            _pricing("a-model", input_price="5.00", effective_from=datetime(2024, 6, 1, tzinfo=timezone.utc)),
        ])
        models = catalog.models()
        assert [m.model_id for m in models] == ["a-model", "b-model"]
        assert models[0].input_price_per_1m == Decimal("5.00")
        assert len(catalog) == 2

    def test_negative_price_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            _pricing(input_price="-1")


class TestEffectiveDating:
    """Price changes apply from their effective date onwards."""

    def setup_method(self):
        self.catalog = PricingCatalog([
            _pricing(input_price="1.00", effective_from=datetime(2024, 1, 1, tzinfo=timezone.utc)),
            _pricing(input_price="4.00", effective_from=datetime(2024, 7, 1, tzinfo=timezone.utc)),
        ])

    def test_lookup_at_past_moment_uses_old_price(self):
        pricing = self.catalog.get_pricing("test-model", datetime(2024, 3, 1, tzinfo=timezone.utc))
        assert pricing.input_price_per_1m == Decimal("1.00")

    def test_lookup_on_boundary_uses_new_price(self):
        pricing = self.catalog.get_pricing("test-model", datetime(2024, 7, 1, tzinfo=timezone.utc))
        assert pricing.input_price_per_1m == Decimal("4.00")

    def test_lookup_without_moment_uses_latest(self):
        assert self.catalog.get_pricing("test-model").input_price_per_1m == Decimal("4.00")

    def test_lookup_before_first_entry_is_unknown(self):
        with pytest.raises(UnknownPricingModel):
            self.catalog.get_pricing("test-model", datetime(2023, 1, 1, tzinfo=timezone.utc))

    def test_same_date_entry_replaces_correction(self):
        self.catalog.add(_pricing(input_price="1.50", effective_from=datetime(2024, 1, 1, tzinfo=timezone.utc)))
        assert len(self.catalog.versions("test-model")) == 2
        pricing = self.catalog.get_pricing("test-model", datetime(2024, 2, 1, tzinfo=timezone.utc))
        assert pricing.input_price_per_1m == Decimal("1.50")


class TestCostCalculation:
    """Test provider cost and credit charge calculations."""

    def test_provider_cost_per_million(self):
        cost = calculate_provider_cost(_pricing(), TokenUsage(2_000_000, 500_000))
        assert cost == Decimal("3.00")

    def test_provider_cost_is_unrounded(self):
        cost = calculate_provider_cost(_pricing(), TokenUsage(1, 0))
        assert cost == Decimal("0.000001")

    def test_credit_charge_applies_markup(self):
        # $0.05 * 100 cents * 2.0 markup = 10 credits
        charge = calculate_credit_charge(_pricing(), TokenUsage(50_000, 0), Decimal("2.0"))
        assert charge == 10

    def test_credit_charge_rounds_up(self):
        # $0.000001 * 100 * 2 = 0.0002 credits -> 1
        assert calculate_credit_charge(_pricing(), TokenUsage(1, 0), Decimal("2.0")) == 1

    def test_credit_charge_uses_exchange_rate(self):
        # $0.01 * 18 * 100 * 1.5 = 27 credits
        charge = calculate_credit_charge(
            _pricing(), TokenUsage(10_000, 0), Decimal("1.5"), usd_exchange_rate=Decimal("18")
        )
        assert charge == 27

    def test_free_model_charges_zero(self):
        pricing = _pricing(input_price="3.00", output_price="15.00", is_free=True)
        assert calculate_credit_charge(pricing, TokenUsage(1_000_000, 1_000_000), Decimal("2.0")) == 0

    def test_zero_tokens_charge_zero(self):
        assert calculate_credit_charge(_pricing(), TokenUsage(0, 0), Decimal("2.0")) == 0
