# ai_credit_engine/demo/seed_demo_data.py

from typing import Optional

from ai_credit_engine.config.loader import EngineConfig
from ai_credit_engine.core.actor import ActorContext, ActorRole
from ai_credit_engine.core.engine import CreditEngine
from ai_credit_engine.core.metering import AICallRecord

DEMO_ORG = "demo-org"


def seed(config: Optional[EngineConfig] = None) -> CreditEngine:
    """Create a demo organization with an owner, a member and some usage."""
    engine = CreditEngine.from_config(config or EngineConfig())

    engine.add_member(DEMO_ORG, "owner-1", "owner", "Olivia Owner")
    engine.add_member(DEMO_ORG, "member-1", "member", "Max Member")

    engine.grant_monthly_credits(DEMO_ORG, 1000)
    engine.grant_topup(DEMO_ORG, 500, "demo-invoice-1", total_cents=500)

    owner = ActorContext(DEMO_ORG, "owner-1", ActorRole.OWNER)
    member = ActorContext(DEMO_ORG, "member-1", ActorRole.MEMBER)
    engine.allocate(owner, "member-1", "content_generation", 100)

    calls = [
        (owner, AICallRecord("gpt-4o", "openai", "campaign_planning", 12000, 3000, "demo-req-1")),
        (member, AICallRecord("gpt-4o-mini", "openai", "content_generation", 40000, 8000, "demo-req-2")),
        (member, AICallRecord("claude-sonnet-4", "anthropic", "content_generation", 150000, 90000, "demo-req-3")),
        (member, AICallRecord("llama-3.3-70b-free", "openrouter", "chat", 5000, 1000, "demo-req-4")),
    ]
    for actor, call in calls:
        engine.record_usage(actor, call)

    return engine


if __name__ == "__main__":
    seed()
    print("Demo credit data inserted")
