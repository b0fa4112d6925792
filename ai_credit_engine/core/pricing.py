"""
Pricing catalog and charge calculations.

Maps model identifiers to provider prices (USD per 1M tokens) and converts
metered token usage into provider cost and marked-up credit charges.

Catalog entries are effective-dated: a model may carry several entries and a
lookup returns the one in effect at the requested moment (latest entry when no
moment is given). Reports recompute historical cost with the price that was in
effect when the usage happened, while corrections to that entry still flow
into every later report.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_CEILING
from typing import Dict, Iterable, List, Optional

from .errors import UnknownPricingModel
from .token_counter import TokenUsage

TOKENS_PER_PRICE_UNIT = Decimal("1000000")

# Catalog entries without an explicit date are effective from the epoch
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class ModelPricing:
    """Provider pricing for a model, effective from a point in time."""
    model_id: str
    provider: str
    input_price_per_1m: Decimal  # USD per 1M input tokens
    output_price_per_1m: Decimal  # USD per 1M output tokens
    is_free: bool = False
    display_name: Optional[str] = None
    effective_from: datetime = EPOCH

    def __post_init__(self):
        """Validate prices are non-negative."""
        if not self.model_id:
            raise ValueError("model_id is required")
        if self.input_price_per_1m < 0:
            raise ValueError("input_price_per_1m cannot be negative")
        if self.output_price_per_1m < 0:
            raise ValueError("output_price_per_1m cannot be negative")

    @property
    def name(self) -> str:
        return self.display_name or self.model_id


class PricingCatalog:
    """Effective-dated pricing table for supported models."""

    def __init__(self, entries: Iterable[ModelPricing] = ()):
        self._entries: Dict[str, List[ModelPricing]] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: ModelPricing) -> None:
        """Add a pricing entry, replacing one with the same effective date."""
        versions = [
            e for e in self._entries.get(entry.model_id, [])
            if e.effective_from != entry.effective_from
        ]
        versions.append(entry)
        versions.sort(key=lambda e: e.effective_from)
        self._entries[entry.model_id] = versions

    def __contains__(self, model: str) -> bool:
        return model in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_pricing(self, model: str, at: Optional[datetime] = None) -> ModelPricing:
        """Get pricing for a model, as in effect at ``at``.

        Args:
            model: Model identifier
            at: Moment of usage; latest entry when None

        Returns:
            ModelPricing for the model

        Raises:
            UnknownPricingModel: If the model is not in the catalog, or
                has no entry effective at ``at``
        """
        versions = self._entries.get(model)
        if not versions:
            raise UnknownPricingModel(model)
        if at is None:
            return versions[-1]

        in_effect = None
        for entry in versions:
            if entry.effective_from <= at:
                in_effect = entry
            else:
                break
        if in_effect is None:
            raise UnknownPricingModel(model)
        return in_effect

    def find(self, model: str, at: Optional[datetime] = None) -> Optional[ModelPricing]:
        """Like get_pricing, but returns None for unknown models."""
        try:
            return self.get_pricing(model, at)
        except UnknownPricingModel:
            return None

    def models(self) -> List[ModelPricing]:
        """Latest entry for every model, ordered by model id."""
        return [self._entries[model][-1] for model in sorted(self._entries)]

    def versions(self, model: str) -> List[ModelPricing]:
        return list(self._entries.get(model, []))


def _entry(model_id: str, provider: str, input_price: str, output_price: str,
           display_name: str, is_free: bool = False) -> ModelPricing:
    return ModelPricing(
        model_id=model_id,
        provider=provider,
        input_price_per_1m=Decimal(input_price),
        output_price_per_1m=Decimal(output_price),
        is_free=is_free,
        display_name=display_name,
    )


# Built-in catalog; config may add models or effective-dated price changes
DEFAULT_CATALOG_ENTRIES = (
    _entry("gpt-4o", "openai", "2.50", "10.00", "GPT-4o"),
    _entry("gpt-4o-mini", "openai", "0.15", "0.60", "GPT-4o mini"),
    _entry("claude-sonnet-4", "anthropic", "3.00", "15.00", "Claude Sonnet 4"),
    _entry("claude-haiku-3.5", "anthropic", "0.80", "4.00", "Claude Haiku 3.5"),
    _entry("gemini-2.0-flash", "google", "0.10", "0.40", "Gemini 2.0 Flash"),
    _entry("llama-3.3-70b-free", "openrouter", "0", "0", "Llama 3.3 70B (free)", is_free=True),
)


def default_catalog() -> PricingCatalog:
    """Build a fresh catalog holding the built-in entries."""
    return PricingCatalog(DEFAULT_CATALOG_ENTRIES)


def calculate_provider_cost(pricing: ModelPricing, usage: TokenUsage) -> Decimal:
    """Compute the true provider cost in USD, unrounded.

    cost = input_tokens / 1M * input_price + output_tokens / 1M * output_price

    Free-tier models still report their list price here (zero for most);
    the free flag only affects what the customer is charged.
    """
    input_cost = (Decimal(usage.input_tokens) / TOKENS_PER_PRICE_UNIT) * pricing.input_price_per_1m
    output_cost = (Decimal(usage.output_tokens) / TOKENS_PER_PRICE_UNIT) * pricing.output_price_per_1m
    return input_cost + output_cost


def calculate_credit_charge(
    pricing: ModelPricing,
    usage: TokenUsage,
    markup: Decimal,
    usd_exchange_rate: Decimal = Decimal("1"),
) -> int:
    """Convert usage into a whole-credit charge.

    One credit is one cent of the billing currency at marked-up price.
    Free models always charge zero; anything else rounds UP to the next
    whole credit.

    Args:
        pricing: Catalog entry for the model
        usage: Token usage data
        markup: Multiplier applied over provider cost
        usd_exchange_rate: Billing-currency units per USD

    Returns:
        Credits to charge
    """
    if pricing.is_free:
        return 0
    cost_usd = calculate_provider_cost(pricing, usage)
    cents = cost_usd * usd_exchange_rate * Decimal("100") * markup
    return int(cents.quantize(Decimal("1"), rounding=ROUND_CEILING))
