"""
Usage metering bridge.

Turns a completed AI call into a usage fact and a credit deduction. The fact
is committed first, so a call that happened is never lost even when the
deduction is refused or fails.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

from ai_credit_engine.storage.models import UsageFact
from ai_credit_engine.storage.repository import LedgerStore
from .actor import ActorContext
from .deduction import DeductionProcessor
from .errors import CreditEngineError, OperationResult, PersistenceFailure, UnknownPricingModel
from .pricing import ModelPricing, PricingCatalog, calculate_credit_charge, calculate_provider_cost
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AICallRecord:
    """Usage report from an AI-provider adapter."""
    model: str
    provider: str
    feature: str
    input_tokens: int
    output_tokens: int
    request_id: Optional[str] = None

    def __post_init__(self):
        if not self.model or not self.model.strip():
            raise ValueError("model is required and cannot be empty")
        if not self.feature or not self.feature.strip():
            raise ValueError("feature is required and cannot be empty")
        TokenUsage(self.input_tokens, self.output_tokens)

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(input_tokens=self.input_tokens, output_tokens=self.output_tokens)


@dataclass(frozen=True)
class MeteringResult:
    """Outcome of metering one AI call.

    ``usage_fact`` is set whenever the fact was persisted, including when the
    deduction that followed was refused.
    """
    success: bool
    credits_charged: int
    provider_cost_usd: Decimal
    usage_fact: Optional[UsageFact] = None
    deduction: Optional[OperationResult] = None
    error: Optional[CreditEngineError] = None
    pricing_known: bool = True

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None


class UsageMeteringBridge:
    """Prices AI calls, records usage facts and deducts credits."""

    def __init__(
        self,
        store: LedgerStore,
        deductions: DeductionProcessor,
        catalog: PricingCatalog,
        markup: Decimal = Decimal("2.0"),
        usd_exchange_rate: Decimal = Decimal("1.0"),
    ):
        self.store = store
        self.deductions = deductions
        self.catalog = catalog
        self.markup = markup
        self.usd_exchange_rate = usd_exchange_rate

    def _price(self, model: str, usage: TokenUsage, at=None) -> Tuple[Optional[ModelPricing], int, Decimal]:
        try:
            pricing = self.catalog.get_pricing(model, at)
        except UnknownPricingModel as e:
            logger.warning(f"[METERING] {e.message}; charging 0 credits. Add it to the pricing catalog.")
            return None, 0, Decimal("0")
        credits = calculate_credit_charge(pricing, usage, self.markup, self.usd_exchange_rate)
        return pricing, credits, calculate_provider_cost(pricing, usage)

    def estimate_charge(self, model: str, input_tokens: int, output_tokens: int) -> int:
        """Credits a call of this size would cost now. Unknown models estimate 0."""
        _, credits, _ = self._price(model, TokenUsage(input_tokens, output_tokens))
        return credits

    def record_usage(self, actor: ActorContext, call: AICallRecord) -> MeteringResult:
        """Record one completed AI call and charge for it.

        Never raises into the AI call path: insufficiency and persistence
        problems come back in the result.

        Args:
            actor: User (and organization) the call was made for
            call: Token usage reported by the adapter

        Returns:
            MeteringResult with the persisted fact and the deduction outcome
        """
        now = self.store.clock()
        pricing, credits, cost_usd = self._price(call.model, call.usage, now)

        fact = UsageFact(
            id=str(uuid.uuid4()),
            organization_id=actor.org_id,
            user_id=actor.user_id,
            model=call.model,
            provider=call.provider or (pricing.provider if pricing else "unknown"),
            feature=call.feature,
            input_tokens=call.input_tokens,
            output_tokens=call.output_tokens,
            is_free_model=pricing.is_free if pricing else False,
            credits_charged=credits,
            created_at=now,
            request_id=call.request_id
        )

        try:
            self.store.insert_usage_fact(fact)
        except CreditEngineError as e:
            logger.error(f"[METERING] Failed to record usage fact for {actor.org_id}: {e.message}; call={call!r}",
                         exc_info=True)
            error = e if isinstance(e, PersistenceFailure) else PersistenceFailure(
                f"Usage fact was not recorded: {e.message}", details={'request_id': call.request_id}
            )
            return MeteringResult(
                success=False,
                credits_charged=credits,
                provider_cost_usd=cost_usd,
                error=error,
                pricing_known=pricing is not None
            )

        label = pricing.name if pricing else call.model
        deduction = self.deductions.deduct(
            actor,
            call.feature,
            credits,
            description=f"AI usage: {label} ({call.input_tokens} in / {call.output_tokens} out)",
            usage_fact_id=fact.id
        )

        if deduction.success:
            logger.info(f"[METERING] {actor.org_id}/{actor.user_id} {call.feature} on {call.model}: {credits} credits")
        elif isinstance(deduction.error, PersistenceFailure):
            logger.error(
                f"[METERING] Usage fact {fact.id} recorded but deduction failed: {deduction.error.message}; "
                f"call={call!r}"
            )
        else:
            logger.warning(
                f"[METERING] Usage fact {fact.id} recorded but {credits} credits not deducted: "
                f"{deduction.error.message}"
            )

        return MeteringResult(
            success=deduction.success,
            credits_charged=credits,
            provider_cost_usd=cost_usd,
            usage_fact=fact,
            deduction=deduction,
            error=deduction.error,
            pricing_known=pricing is not None
        )
